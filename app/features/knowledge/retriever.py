"""
Retrieval - hybrid chunk ranking and context assembly for the LLM call.

Chunks are scored by a blend of embedding similarity (from the store's
match function) and lexical overlap with the question's salient terms.
Without a question embedding the ranking is lexical only.
"""

import logging
import math
import re
from dataclasses import dataclass
from typing import Dict, List, Optional

from app.core.config import settings
from app.features.database.models import Chatbot, KnowledgeChunk
from app.features.knowledge.chunker import STOPWORDS

logger = logging.getLogger("Chatbot.Knowledge.Retriever")

CONTEXT_SEPARATOR = "\n\n---\n\n"
# Semantic-only candidates below this similarity are noise
MIN_SEMANTIC_SCORE = 0.3

_TERM = re.compile(r"[a-z0-9]+(?:[-'][a-z0-9]+)*")


@dataclass
class ScoredChunk:
    chunk: KnowledgeChunk
    score: float
    semantic: float = 0.0
    lexical: float = 0.0


def extract_terms(text: str) -> List[str]:
    """Distinct salient lowercase terms, in order of appearance."""
    terms: Dict[str, None] = {}
    for term in _TERM.findall((text or "").lower()):
        if len(term) >= 3 and term not in STOPWORDS:
            terms[term] = None
    return list(terms)


def lexical_score(terms: List[str], chunk: KnowledgeChunk) -> float:
    """Share of question terms found in the chunk text, title or keywords."""
    if not terms:
        return 0.0
    keywords = " ".join(str(k) for k in chunk.metadata.get("keywords", []))
    haystack = " ".join(filter(None, [chunk.chunk_text, chunk.source_title or "", keywords])).lower()
    chunk_terms = set(_TERM.findall(haystack))
    hits = sum(1 for term in terms if term in chunk_terms)
    return hits / len(terms)


def retrieval_limit(chunk_count: int, min_k: Optional[int] = None, max_k: Optional[int] = None) -> int:
    """Top-K grows with the knowledge base: one chunk per ten, within [min_k, max_k]."""
    min_k = min_k or settings.RETRIEVAL_MIN_CHUNKS
    max_k = max_k or settings.RETRIEVAL_MAX_CHUNKS
    return min(max_k, max(min_k, math.ceil(chunk_count / 10)))


def hybrid_rank(
    question: str,
    chunks: List[KnowledgeChunk],
    semantic_scores: Optional[Dict[str, float]] = None,
    limit: Optional[int] = None,
    semantic_weight: Optional[float] = None,
) -> List[ScoredChunk]:
    """
    Rank chunks for a question.

    Args:
        question: Raw visitor question
        chunks: Candidate chunks (usually every chunk of the chatbot)
        semantic_scores: chunk id -> cosine similarity; None when no question embedding
        limit: Top-K; defaults to retrieval_limit(len(chunks))
        semantic_weight: Weight of the semantic score in the blend

    Returns:
        Best chunks first; ties keep source and ordinal order
    """
    if not chunks:
        return []

    limit = limit or retrieval_limit(len(chunks))
    weight = settings.RETRIEVAL_SEMANTIC_WEIGHT if semantic_weight is None else semantic_weight
    terms = extract_terms(question)

    scored = []
    for chunk in chunks:
        lexical = lexical_score(terms, chunk)
        if semantic_scores is None:
            semantic, score = 0.0, lexical
        else:
            semantic = semantic_scores.get(chunk.id or "", 0.0)
            score = weight * semantic + (1 - weight) * lexical
        if lexical > 0 or semantic >= MIN_SEMANTIC_SCORE:
            scored.append(ScoredChunk(chunk=chunk, score=score, semantic=semantic, lexical=lexical))

    scored.sort(key=lambda s: (-s.score, s.chunk.source_url, s.chunk.chunk_index))
    return scored[:limit]


def format_chunk(chunk: KnowledgeChunk) -> str:
    label = chunk.source_url
    if chunk.source_title and chunk.source_title != chunk.source_url:
        label = f"{chunk.source_title} ({chunk.source_url})"
    return f"[Source: {label}]\n{chunk.chunk_text}"


def build_context(ranked: List[ScoredChunk], max_chars: Optional[int] = None) -> str:
    """Join ranked chunks with their source labels, stopping at the character budget."""
    max_chars = max_chars or settings.CONTEXT_MAX_CHARS
    parts: List[str] = []
    total = 0
    for item in ranked:
        text = format_chunk(item.chunk)
        added = len(text) + (len(CONTEXT_SEPARATOR) if parts else 0)
        if total + added > max_chars:
            if not parts:
                parts.append(text[:max_chars])
            break
        parts.append(text)
        total += added
    return CONTEXT_SEPARATOR.join(parts)


def build_fallback_context(
    chatbot: Chatbot,
    chunks: Optional[List[KnowledgeChunk]] = None,
    max_chars: Optional[int] = None,
) -> str:
    """
    Context when retrieval found nothing.

    The chatbot's raw website and document content share the budget evenly.
    Without raw content the first stored chunks are used instead.
    """
    max_chars = max_chars or settings.FALLBACK_CONTEXT_MAX_CHARS

    sources = [
        (label, content.strip())
        for label, content in (
            ("Website content", chatbot.website_content or ""),
            ("Document content", chatbot.document_content or ""),
        )
        if content.strip()
    ]
    if sources:
        share = max_chars // len(sources)
        return "\n\n".join(f"[{label}]\n{content[:share]}" for label, content in sources)

    if chunks:
        ordered = sorted(chunks, key=lambda c: (c.source_url, c.chunk_index))
        return build_context([ScoredChunk(chunk=c, score=0.0) for c in ordered], max_chars)

    return ""


async def retrieve_context(
    db,
    chatbot: Chatbot,
    question: str,
    embedding: Optional[List[float]],
) -> tuple[str, List[ScoredChunk]]:
    """
    Knowledge context for a question.

    Returns:
        (context text, ranked chunks); the chunk list is empty when the
        fallback content was used
    """
    chunks = db.chunks.list_for_retrieval(chatbot.id)
    ranked: List[ScoredChunk] = []

    if chunks:
        limit = retrieval_limit(len(chunks))
        semantic_scores = None
        if embedding is not None:
            matches = db.chunks.search_similar(chatbot.id, embedding, MIN_SEMANTIC_SCORE, limit * 4)
            semantic_scores = {chunk.id: similarity for chunk, similarity in matches if chunk.id}
        ranked = hybrid_rank(question, chunks, semantic_scores, limit=limit)

    if ranked:
        logger.info(f"Retrieved {len(ranked)} of {len(chunks)} chunks for chatbot {chatbot.id}")
        return build_context(ranked), ranked

    logger.info(f"No chunks retrieved for chatbot {chatbot.id}, using fallback content")
    return build_fallback_context(chatbot, chunks), []
