"""
Embedding adapter and vector helpers.

`EmbeddingClient.embed` raises EmbeddingUnavailable on any provider
failure or timeout. Callers decide what degraded behaviour means for them;
`try_embed` is the shortcut for "no vector, carry on".
"""

import asyncio
import hashlib
import json
import logging
from typing import List, Optional, Sequence

import numpy as np
from openai import AsyncOpenAI, OpenAIError

from app.core.config import settings
from app.shared.errors import ConfigurationError, EmbeddingUnavailable

logger = logging.getLogger("Chatbot.Knowledge.Embedding")

MAX_INPUT_CHARS = 8000


def normalize_question(question: str) -> str:
    """Lowercased and trimmed. Two questions that normalize equally share one hash."""
    return (question or "").strip().lower()


def question_hash(question: str) -> str:
    return hashlib.md5(normalize_question(question).encode("utf-8")).hexdigest()


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine similarity in [-1, 1].

    Zero-magnitude vectors score 0.

    Raises:
        ValueError: If the vectors have different dimensions
    """
    vec_a = np.asarray(a, dtype=float)
    vec_b = np.asarray(b, dtype=float)
    if vec_a.shape != vec_b.shape:
        raise ValueError(f"Vector dimension mismatch: {vec_a.shape[0]} vs {vec_b.shape[0]}")

    norm = np.linalg.norm(vec_a) * np.linalg.norm(vec_b)
    if norm == 0:
        return 0.0
    return float(np.dot(vec_a, vec_b) / norm)


def parse_embedding(value) -> Optional[List[float]]:
    """
    Vector from the store as a float list.

    PostgREST returns pgvector columns as strings like "[0.1,0.2]".
    """
    if value is None or value == "":
        return None
    if isinstance(value, str):
        value = json.loads(value)
    return [float(x) for x in value]


class EmbeddingClient:
    """OpenAI embeddings with a hard per-call timeout."""

    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self._client = client
        self.model = model or settings.EMBEDDING_MODEL
        self.timeout = timeout or settings.EMBEDDING_TIMEOUT_SECONDS

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            from app.services.openai_client import get_openai_client
            self._client = get_openai_client()
        return self._client

    async def embed(self, text: str) -> List[float]:
        """
        Embedding vector for `text` (truncated to 8000 chars).

        Raises:
            EmbeddingUnavailable: Provider error, timeout, empty input or missing key
        """
        if not text or not text.strip():
            raise EmbeddingUnavailable("Cannot embed empty text", retryable=False)

        try:
            response = await asyncio.wait_for(
                self.client.embeddings.create(model=self.model, input=text[:MAX_INPUT_CHARS]),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as exc:
            raise EmbeddingUnavailable(f"Embedding timed out after {self.timeout}s") from exc
        except ConfigurationError as exc:
            raise EmbeddingUnavailable(str(exc), retryable=False) from exc
        except OpenAIError as exc:
            raise EmbeddingUnavailable(f"Embedding provider error: {exc}") from exc

        return list(response.data[0].embedding)


async def try_embed(embedder: EmbeddingClient, text: str) -> Optional[List[float]]:
    """Embedding or None; failures are logged, never raised."""
    try:
        return await embedder.embed(text)
    except EmbeddingUnavailable as exc:
        logger.warning(f"Embedding unavailable, continuing without vector: {exc.message}")
        return None
