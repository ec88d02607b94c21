"""
Q&A Cache Repository - automated answers keyed by question hash.

Writes are upserts on (chatbot_id, question_hash): two requests racing to
cache the same question both succeed and the last one wins.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from app.features.database.models import CacheEntry, utc_iso
from app.features.database.repositories.counters import increment_counter
from app.features.database.repositories.vector_search import SCAN_LIMIT, match_or_scan

logger = logging.getLogger("Chatbot.Database.QACache")

TABLE = "qa_cache"


class QACacheRepository:
    """Repository for cached automated answers."""

    def __init__(self, client):
        self.client = client

    def find_by_hash(self, chatbot_id: str, question_hash: str) -> Optional[CacheEntry]:
        result = self.client.table(TABLE).select("*").eq(
            "chatbot_id", chatbot_id
        ).eq("question_hash", question_hash).order(
            "created_at", desc=True
        ).limit(1).execute()
        if not result.data:
            return None
        return CacheEntry.model_validate(result.data[0])

    def search_similar(
        self,
        chatbot_id: str,
        embedding: List[float],
        threshold: float,
        limit: int = 1,
    ) -> List[Tuple[CacheEntry, float]]:
        matches = match_or_scan(
            self.client,
            "match_qa_cache",
            {
                "p_chatbot_id": chatbot_id,
                "query_embedding": embedding,
                "match_threshold": threshold,
                "match_count": limit,
            },
            scan=lambda: self._scan(chatbot_id),
            query_embedding=embedding,
            threshold=threshold,
            limit=limit,
        )
        return [(CacheEntry.model_validate(row), similarity) for row, similarity in matches]

    def store(
        self,
        chatbot_id: str,
        question: str,
        question_hash: str,
        answer: str,
        embedding: Optional[List[float]] = None,
        suggested_questions: Optional[List[str]] = None,
    ) -> None:
        now = utc_iso()
        row: Dict[str, Any] = {
            "chatbot_id": chatbot_id,
            "question": question,
            "question_hash": question_hash,
            "answer": answer,
            "embedding": embedding,
            "suggested_questions": suggested_questions or [],
            "hit_count": 0,
            "last_used_at": now,
        }
        self.client.table(TABLE).upsert(row, on_conflict="chatbot_id,question_hash").execute()
        logger.info(f"Cached answer for chatbot {chatbot_id}")

    def record_hit(self, entry: CacheEntry) -> None:
        increment_counter(
            self.client, "increment_qa_cache_hit", TABLE, entry.id, "hit_count",
            extra={"last_used_at": utc_iso()},
        )

    def clear(self, chatbot_id: str) -> int:
        """Delete every cached answer of a chatbot. Returns rows deleted."""
        result = self.client.table(TABLE).delete().eq("chatbot_id", chatbot_id).execute()
        deleted = len(result.data or [])
        logger.info(f"Cleared {deleted} cached answers for chatbot {chatbot_id}")
        return deleted

    def _scan(self, chatbot_id: str) -> List[Dict[str, Any]]:
        result = self.client.table(TABLE).select("*").eq("chatbot_id", chatbot_id).limit(SCAN_LIMIT).execute()
        return result.data or []
