"""
Knowledge Service - maintenance operations on a chatbot's knowledge.

Manual overrides, cache clearing, source removal and full purge. Answering
lives in the resolver and ingestion in the indexing orchestrator; this is
what the dashboard calls when an operator edits the knowledge directly.
"""

import logging
from typing import Any, Dict, List, Optional

from app.features.database.models import ManualOverride, SourceType
from app.features.indexing.fetchers import normalize_url
from app.features.knowledge.embedding import (
    EmbeddingClient,
    normalize_question,
    question_hash,
    try_embed,
)
from app.shared.errors import ErrorCode, KnowledgePipelineError, ResourceNotFound

logger = logging.getLogger("Chatbot.Knowledge.Service")


def _require_text(value: Optional[str], field: str) -> str:
    text = (value or "").strip()
    if not text:
        raise KnowledgePipelineError(f"{field} must not be empty", code=ErrorCode.VALIDATION_ERROR)
    return text


class KnowledgeService:
    """
    Usage:
        knowledge = KnowledgeService(get_database_client())
        override = await knowledge.create_override(chatbot_id, "Opening hours?", "9 to 5, Mon-Fri")
        knowledge.clear_cache(chatbot_id)
    """

    def __init__(self, db=None, embedder: Optional[EmbeddingClient] = None):
        self._db = db
        self.embedder = embedder or EmbeddingClient()

    @property
    def db(self):
        """Lazy-load database client."""
        if self._db is None:
            from app.features.database import get_database_client
            self._db = get_database_client()
        return self._db

    # ==================== OVERRIDES ====================

    async def create_override(
        self,
        chatbot_id: str,
        question: str,
        answer: str,
        original_answer: Optional[str] = None,
        conversation_id: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> ManualOverride:
        """
        Store an operator-authored answer for a question.

        The question is normalized and hashed; its embedding is best-effort,
        so an override without a vector still matches verbatim repeats.
        """
        if self.db.chatbots.get(chatbot_id) is None:
            raise ResourceNotFound("chatbot", chatbot_id)

        normalized = normalize_question(_require_text(question, "question"))
        fields: Dict[str, Any] = {
            "chatbot_id": chatbot_id,
            "question": normalized,
            "question_hash": question_hash(normalized),
            "manual_answer": _require_text(answer, "answer"),
            "original_answer": original_answer,
            "conversation_id": conversation_id,
            "created_by": created_by,
            "embedding": await try_embed(self.embedder, normalized),
        }
        override = self.db.overrides.create(fields)
        logger.info(f"Created override {override.id} for chatbot {chatbot_id}")
        return override

    async def update_override(
        self,
        override_id: str,
        question: Optional[str] = None,
        answer: Optional[str] = None,
    ) -> ManualOverride:
        """Change the answer and/or question; a new question is re-hashed and re-embedded."""
        current = self.db.overrides.get(override_id)
        if current is None:
            raise ResourceNotFound("override", override_id)

        fields: Dict[str, Any] = {}
        if answer is not None:
            fields["manual_answer"] = _require_text(answer, "answer")
        if question is not None:
            normalized = normalize_question(_require_text(question, "question"))
            if normalized != current.question:
                fields["question"] = normalized
                fields["question_hash"] = question_hash(normalized)
                fields["embedding"] = await try_embed(self.embedder, normalized)

        if not fields:
            return current
        updated = self.db.overrides.update(override_id, fields)
        if updated is None:
            raise ResourceNotFound("override", override_id)
        return updated

    def delete_override(self, override_id: str) -> None:
        if not self.db.overrides.delete(override_id):
            raise ResourceNotFound("override", override_id)
        logger.info(f"Deleted override {override_id}")

    def list_overrides(self, chatbot_id: str) -> List[ManualOverride]:
        return self.db.overrides.list_for_chatbot(chatbot_id)

    # ==================== CACHE & SOURCES ====================

    def clear_cache(self, chatbot_id: str) -> int:
        """Delete every automated answer of a chatbot. Overrides stay."""
        removed = self.db.qa_cache.clear(chatbot_id)
        logger.info(f"Cleared {removed} cache entries for chatbot {chatbot_id}")
        return removed

    def remove_source(self, chatbot_id: str, source_type: SourceType, locator: str) -> int:
        """Delete all chunks of one source; cached answers may depend on it, so the cache goes too."""
        locator = _require_text(locator, "source")
        if source_type == SourceType.WEBSITE:
            locator = normalize_url(locator)
        removed = self.db.chunks.delete_source(chatbot_id, source_type, locator)
        if removed:
            self.db.qa_cache.clear(chatbot_id)
        logger.info(f"Removed {removed} chunks of {locator} for chatbot {chatbot_id}")
        return removed

    def purge_chatbot(self, chatbot_id: str) -> Dict[str, int]:
        """Delete chunks, cache entries and overrides of a chatbot."""
        result = {
            "chunks": self.db.chunks.delete_for_chatbot(chatbot_id),
            "cache_entries": self.db.qa_cache.clear(chatbot_id),
            "overrides": self.db.overrides.delete_for_chatbot(chatbot_id),
        }
        logger.info(f"Purged knowledge of chatbot {chatbot_id}: {result}")
        return result
