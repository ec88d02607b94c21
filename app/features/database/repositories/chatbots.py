"""
Chatbots Repository - the parts of the chatbot row this service reads or owns.

Chatbot metadata is managed by the dashboard; this service reads sources,
prompts and escalation settings, and writes indexing status and the
reindex schedule fields.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from app.features.database.models import Chatbot, ReindexRunStatus, ScheduleMode, utc_iso

logger = logging.getLogger("Chatbot.Database.Chatbots")

TABLE = "chatbots"


class ChatbotsRepository:
    """Repository for chatbot operations."""

    def __init__(self, client):
        self.client = client

    def get(self, chatbot_id: str) -> Optional[Chatbot]:
        result = self.client.table(TABLE).select("*").eq("id", chatbot_id).limit(1).execute()
        if not result.data:
            return None
        return Chatbot.model_validate(result.data[0])

    def update(self, chatbot_id: str, fields: Dict[str, Any]) -> None:
        fields = {**fields, "updated_at": utc_iso()}
        self.client.table(TABLE).update(fields).eq("id", chatbot_id).execute()

    def set_indexing_status(self, chatbot_id: str, status: str, job_id: Optional[str] = None) -> None:
        fields: Dict[str, Any] = {"indexing_status": status}
        if job_id:
            fields["last_indexing_job_id"] = job_id
        self.update(chatbot_id, fields)

    def list_due_for_reindex(self, now: datetime, limit: int = 5) -> List[Chatbot]:
        """
        Enabled schedules whose next run is due and that are not already running.

        Returns:
            Up to `limit` chatbots, earliest due first
        """
        result = self.client.table(TABLE).select("*").eq(
            "reindex_enabled", True
        ).in_(
            "reindex_mode", [ScheduleMode.ONCE.value, ScheduleMode.DAILY.value, ScheduleMode.WEEKLY.value]
        ).lte(
            "reindex_next_run_at", utc_iso(now)
        ).order("reindex_next_run_at").limit(limit * 4).execute()

        due = [
            Chatbot.model_validate(row)
            for row in result.data or []
            if row.get("reindex_last_status") != ReindexRunStatus.RUNNING.value
        ]
        return due[:limit]

    def list_running_reindex(self, limit: int = 10) -> List[Chatbot]:
        result = self.client.table(TABLE).select("*").eq(
            "reindex_last_status", ReindexRunStatus.RUNNING.value
        ).limit(limit).execute()
        return [Chatbot.model_validate(row) for row in result.data or []]
