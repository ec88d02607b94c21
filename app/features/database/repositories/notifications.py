"""Admin Notifications Repository - in-app notifications shown on the dashboard."""

import logging
from typing import Any, Dict, Optional

from app.features.database.models import utc_iso

logger = logging.getLogger("Chatbot.Database.Notifications")

TABLE = "admin_notifications"


class NotificationsRepository:
    def __init__(self, client):
        self.client = client

    def create(
        self,
        user_id: str,
        notification_type: str,
        title: str,
        message: str,
        chatbot_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Insert an unread notification.

        Returns:
            Notification ID
        """
        result = self.client.table(TABLE).insert({
            "user_id": user_id,
            "chatbot_id": chatbot_id,
            "type": notification_type,
            "title": title,
            "message": message,
            "metadata": metadata or {},
            "read": False,
            "created_at": utc_iso(),
        }).execute()
        return result.data[0]["id"]
