"""Tests for embedding helpers and the OpenAI adapter."""

import asyncio
from types import SimpleNamespace

import pytest

from app.features.knowledge.embedding import (
    EmbeddingClient,
    cosine_similarity,
    normalize_question,
    parse_embedding,
    question_hash,
    try_embed,
)
from app.shared.errors import EmbeddingUnavailable


class _Embeddings:
    def __init__(self, vector=None, delay=0.0):
        self.vector = vector
        self.delay = delay
        self.inputs = []

    async def create(self, model, input):
        self.inputs.append(input)
        if self.delay:
            await asyncio.sleep(self.delay)
        return SimpleNamespace(data=[SimpleNamespace(embedding=self.vector)])


def _client(vector=None, delay=0.0):
    return SimpleNamespace(embeddings=_Embeddings(vector, delay))


def test_normalize_and_hash_ignore_case_and_padding():
    assert normalize_question("  What Are Your HOURS? ") == "what are your hours?"
    assert question_hash("What are your hours?") == question_hash("  what are your hours?  ")
    assert question_hash("What are your hours?") != question_hash("What are your prices?")


def test_cosine_similarity():
    assert cosine_similarity([1, 0], [1, 0]) == pytest.approx(1.0)
    assert cosine_similarity([1, 0], [0, 1]) == pytest.approx(0.0)
    assert cosine_similarity([1, 0], [-1, 0]) == pytest.approx(-1.0)
    assert cosine_similarity([0, 0], [1, 0]) == 0.0


def test_cosine_similarity_dimension_mismatch():
    with pytest.raises(ValueError):
        cosine_similarity([1, 0], [1, 0, 0])


def test_parse_embedding_accepts_pgvector_strings():
    assert parse_embedding("[0.5,0.25]") == [0.5, 0.25]
    assert parse_embedding([1, 2]) == [1.0, 2.0]
    assert parse_embedding(None) is None
    assert parse_embedding("") is None


def test_embed_truncates_long_input():
    client = _client([0.1, 0.2])
    embedder = EmbeddingClient(client=client, model="test-model", timeout=1)
    vector = asyncio.run(embedder.embed("x" * 10000))
    assert vector == [0.1, 0.2]
    assert len(client.embeddings.inputs[0]) == 8000


def test_embed_rejects_empty_text():
    embedder = EmbeddingClient(client=_client([0.1]), model="test-model", timeout=1)
    with pytest.raises(EmbeddingUnavailable):
        asyncio.run(embedder.embed("   "))


def test_embed_timeout_raises_unavailable():
    embedder = EmbeddingClient(client=_client([0.1], delay=0.5), model="test-model", timeout=0.01)
    with pytest.raises(EmbeddingUnavailable):
        asyncio.run(embedder.embed("hello"))


def test_try_embed_returns_none_on_failure():
    embedder = EmbeddingClient(client=_client([0.1], delay=0.5), model="test-model", timeout=0.01)
    assert asyncio.run(try_embed(embedder, "hello")) is None
