"""
Reindex failure notifications.

Two independent sinks, both best-effort:
- an unread row in admin_notifications for the dashboard bell
- an email to the chatbot owner through the Resend HTTP API

A failing sink is logged and reported as False; it never stops the other
one and never raises into the scheduler.
"""

import logging
from html import escape
from typing import Dict, Optional

import httpx

from app.core.config import settings
from app.features.database.models import Chatbot
from app.services.http_client import http_client_manager

logger = logging.getLogger("Chatbot.Notifications")

RESEND_URL = "https://api.resend.com/emails"
REINDEX_FAILED = "reindex_failed"


def build_failure_email(chatbot: Chatbot, error: str) -> Dict[str, str]:
    name = chatbot.name or "your chatbot"
    link = f"{settings.DASHBOARD_URL.rstrip('/')}/chatbots/{chatbot.id}"
    subject = f"Scheduled reindex failed for {name}"
    html = (
        f"<p>The scheduled knowledge reindex for <strong>{escape(name)}</strong> did not finish.</p>"
        f"<p><strong>Error:</strong> {escape(error)}</p>"
        f"<p>Your chatbot keeps answering from its previous knowledge. "
        f'You can retry from the <a href="{escape(link)}">dashboard</a>.</p>'
    )
    return {"subject": subject, "html": html}


class ReindexNotifier:
    def __init__(self, db, client: Optional[httpx.AsyncClient] = None, api_key: Optional[str] = None):
        self.db = db
        self._client = client
        self.api_key = api_key if api_key is not None else settings.RESEND_API_KEY

    async def send_email(self, to: str, subject: str, html: str) -> bool:
        """
        Send one email through Resend.

        Returns:
            True if Resend accepted the message
        """
        if not self.api_key:
            logger.warning("RESEND_API_KEY not configured, skipping email")
            return False

        client = self._client or await http_client_manager.get_client()
        try:
            response = await client.post(
                RESEND_URL,
                headers={"Authorization": f"Bearer {self.api_key}"},
                json={
                    "from": settings.NOTIFICATION_FROM_EMAIL,
                    "to": [to],
                    "subject": subject,
                    "html": html,
                },
                timeout=15.0,
            )
        except httpx.HTTPError as e:
            logger.error(f"Error sending email: {e}")
            return False

        if response.status_code >= 400:
            logger.error(f"Failed to send email: {response.status_code} - {response.text[:200]}")
            return False
        logger.info(f"Email sent: {subject}")
        return True

    def create_in_app(self, chatbot: Chatbot, error: str) -> bool:
        if not chatbot.user_id:
            logger.warning(f"Chatbot {chatbot.id} has no owner, skipping in-app notification")
            return False
        try:
            self.db.notifications.create(
                user_id=chatbot.user_id,
                notification_type=REINDEX_FAILED,
                title="Scheduled reindex failed",
                message=f"Reindexing {chatbot.name or 'your chatbot'} failed: {error}",
                chatbot_id=chatbot.id,
                metadata={"error": error},
            )
        except Exception as e:
            logger.error(f"Failed to create in-app notification for chatbot {chatbot.id}: {e}")
            return False
        return True

    async def notify_reindex_failed(self, chatbot: Chatbot, error: str) -> Dict[str, bool]:
        """
        Tell the owner a scheduled reindex failed.

        Returns:
            {"in_app": bool, "email": bool}
        """
        in_app = self.create_in_app(chatbot, error)

        email_sent = False
        try:
            to = self.db.users.get_email(chatbot.user_id) if chatbot.user_id else None
            if to:
                message = build_failure_email(chatbot, error)
                email_sent = await self.send_email(to, message["subject"], message["html"])
            else:
                logger.warning(f"No owner email for chatbot {chatbot.id}, skipping email")
        except Exception as e:
            logger.error(f"Failed to email owner of chatbot {chatbot.id}: {e}")

        return {"in_app": in_app, "email": email_sent}
