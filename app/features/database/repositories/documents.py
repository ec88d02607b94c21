"""Documents Repository - text extracted from uploaded files by the dashboard."""

import logging
from typing import Dict, Optional

logger = logging.getLogger("Chatbot.Database.Documents")

TABLE = "chatbot_documents"


class DocumentsRepository:
    """Read-only access to uploaded document text."""

    def __init__(self, client):
        self.client = client

    def get_by_name(self, chatbot_id: str, file_name: str) -> Optional[Dict]:
        """
        Uploaded document row (file_name, extracted_text) or None.
        """
        result = self.client.table(TABLE).select("id, file_name, extracted_text").eq(
            "chatbot_id", chatbot_id
        ).eq("file_name", file_name).order("created_at", desc=True).limit(1).execute()
        if not result.data:
            return None
        return result.data[0]
