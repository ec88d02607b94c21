"""
Manual Q&A Overrides Repository - operator-authored answers.

Overrides are never created automatically; they take precedence over the
automated cache for the same question.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from app.features.database.models import ManualOverride, utc_iso
from app.features.database.repositories.counters import increment_counter
from app.features.database.repositories.vector_search import SCAN_LIMIT, match_or_scan

logger = logging.getLogger("Chatbot.Database.Overrides")

TABLE = "manual_qa_overrides"


class OverridesRepository:
    """Repository for manual answer overrides."""

    def __init__(self, client):
        self.client = client

    def get(self, override_id: str) -> Optional[ManualOverride]:
        result = self.client.table(TABLE).select("*").eq("id", override_id).limit(1).execute()
        if not result.data:
            return None
        return ManualOverride.model_validate(result.data[0])

    def list_for_chatbot(self, chatbot_id: str) -> List[ManualOverride]:
        result = self.client.table(TABLE).select("*").eq(
            "chatbot_id", chatbot_id
        ).order("created_at", desc=True).execute()
        return [ManualOverride.model_validate(row) for row in result.data or []]

    def find_by_hash(self, chatbot_id: str, question_hash: str) -> Optional[ManualOverride]:
        """Most recent override for an exact (normalized) question."""
        result = self.client.table(TABLE).select("*").eq(
            "chatbot_id", chatbot_id
        ).eq("question_hash", question_hash).order(
            "created_at", desc=True
        ).limit(1).execute()
        if not result.data:
            return None
        return ManualOverride.model_validate(result.data[0])

    def search_similar(
        self,
        chatbot_id: str,
        embedding: List[float],
        threshold: float,
        limit: int = 1,
    ) -> List[Tuple[ManualOverride, float]]:
        matches = match_or_scan(
            self.client,
            "match_qa_overrides",
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
        return [(ManualOverride.model_validate(row), similarity) for row, similarity in matches]

    def create(self, fields: Dict[str, Any]) -> ManualOverride:
        now = utc_iso()
        row = {**fields, "use_count": 0, "created_at": now, "updated_at": now}
        result = self.client.table(TABLE).insert(row).execute()
        return ManualOverride.model_validate(result.data[0])

    def update(self, override_id: str, fields: Dict[str, Any]) -> Optional[ManualOverride]:
        result = self.client.table(TABLE).update({
            **fields,
            "updated_at": utc_iso(),
        }).eq("id", override_id).execute()
        if not result.data:
            return None
        return ManualOverride.model_validate(result.data[0])

    def delete(self, override_id: str) -> bool:
        result = self.client.table(TABLE).delete().eq("id", override_id).execute()
        return bool(result.data)

    def delete_for_chatbot(self, chatbot_id: str) -> int:
        result = self.client.table(TABLE).delete().eq("chatbot_id", chatbot_id).execute()
        return len(result.data or [])

    def record_use(self, override: ManualOverride) -> None:
        increment_counter(self.client, "increment_override_use", TABLE, override.id, "use_count")

    def _scan(self, chatbot_id: str) -> List[Dict[str, Any]]:
        result = self.client.table(TABLE).select("*").eq("chatbot_id", chatbot_id).limit(SCAN_LIMIT).execute()
        return result.data or []
