"""Users Repository - owner lookups for notifications."""

import logging
from typing import Optional

logger = logging.getLogger("Chatbot.Database.Users")


class UsersRepository:
    def __init__(self, client):
        self.client = client

    def get_email(self, user_id: str) -> Optional[str]:
        result = self.client.table("users").select("email").eq("id", user_id).limit(1).execute()
        if not result.data:
            return None
        return result.data[0].get("email")
