"""Tests for hybrid retrieval and context assembly."""

import asyncio

from app.features.database.models import Chatbot, KnowledgeChunk, SourceType
from app.features.knowledge.retriever import (
    CONTEXT_SEPARATOR,
    build_context,
    build_fallback_context,
    extract_terms,
    hybrid_rank,
    retrieval_limit,
    retrieve_context,
)
from conftest import CHATBOT_ID


def _chunk(chunk_id, text, url="https://acme.example/a", index=0, title=None):
    return KnowledgeChunk(
        id=chunk_id,
        chatbot_id=CHATBOT_ID,
        source_type=SourceType.WEBSITE,
        source_url=url,
        source_title=title,
        chunk_index=index,
        chunk_text=text,
        content_hash=chunk_id,
    )


def test_extract_terms_drops_stopwords_and_short_words():
    assert extract_terms("What are your opening hours on Sunday?") == ["opening", "hours", "sunday"]


def test_retrieval_limit_scales_with_chunk_count():
    assert retrieval_limit(5, 3, 8) == 3
    assert retrieval_limit(50, 3, 8) == 5
    assert retrieval_limit(500, 3, 8) == 8


def test_lexical_only_ranking_without_embedding():
    chunks = [
        _chunk("c1", "Our pricing starts at ten dollars."),
        _chunk("c2", "Opening hours are nine to five on weekdays.", index=1),
        _chunk("c3", "We ship worldwide.", index=2),
    ]
    ranked = hybrid_rank("What are your opening hours?", chunks, None, limit=3)
    assert [r.chunk.id for r in ranked] == ["c2"]


def test_semantic_scores_blend_with_lexical():
    chunks = [
        _chunk("c1", "Opening hours are nine to five."),
        _chunk("c2", "When can I visit the store?", index=1),
    ]
    ranked = hybrid_rank(
        "opening hours", chunks, {"c1": 0.4, "c2": 0.9}, limit=2, semantic_weight=0.7
    )
    # c1: 0.7*0.4 + 0.3*1.0 = 0.58, c2: 0.7*0.9 = 0.63
    assert [r.chunk.id for r in ranked] == ["c2", "c1"]


def test_ties_keep_source_and_ordinal_order():
    chunks = [
        _chunk("b1", "refund policy", url="https://acme.example/b", index=0),
        _chunk("a2", "refund policy", url="https://acme.example/a", index=1),
        _chunk("a1", "refund policy", url="https://acme.example/a", index=0),
    ]
    ranked = hybrid_rank("refund", chunks, None, limit=3)
    assert [r.chunk.id for r in ranked] == ["a1", "a2", "b1"]


def test_build_context_tags_sources_and_respects_budget():
    chunks = [_chunk(f"c{i}", "x" * 100, index=i, title="Hours") for i in range(5)]
    ranked = hybrid_rank("xxx", chunks, {c.id: 0.9 for c in chunks}, limit=5)
    context = build_context(ranked, max_chars=300)
    assert context.startswith("[Source: Hours (https://acme.example/a)]")
    assert len(context) <= 300
    assert context.count(CONTEXT_SEPARATOR) == 1


def test_fallback_context_splits_budget_between_sources():
    chatbot = Chatbot(id=CHATBOT_ID, website_content="w" * 1000, document_content="d" * 1000)
    context = build_fallback_context(chatbot, [], max_chars=400)
    assert context.count("w") == 200
    assert context.count("d") == 200
    assert "[Website content]" in context


def test_fallback_context_uses_chunks_without_raw_content():
    chatbot = Chatbot(id=CHATBOT_ID)
    chunks = [_chunk("c2", "second", index=1), _chunk("c1", "first", index=0)]
    context = build_fallback_context(chatbot, chunks, max_chars=1000)
    assert context.index("first") < context.index("second")


def test_fallback_context_empty_without_any_knowledge():
    assert build_fallback_context(Chatbot(id=CHATBOT_ID), [], max_chars=1000) == ""


def test_retrieve_context_uses_vector_scan_fallback(db, supabase):
    supabase.add("knowledge_chunks", {
        **_chunk("c1", "Opening hours are nine to five.").model_dump(mode="json"),
        "embedding": [1.0, 0.0],
    })
    supabase.add("knowledge_chunks", {
        **_chunk("c2", "Returns accepted within thirty days.", index=1).model_dump(mode="json"),
        "embedding": [0.0, 1.0],
    })
    chatbot = db.chatbots.get(CHATBOT_ID)

    context, ranked = asyncio.run(retrieve_context(db, chatbot, "when do you open", [1.0, 0.0]))
    assert [r.chunk.id for r in ranked] == ["c1"]
    assert ranked[0].semantic == 1.0
    assert "nine to five" in context
