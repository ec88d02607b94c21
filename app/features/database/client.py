"""
Database Client - unified access to the Knowledge Store repositories.

A thin wrapper that hands the same Supabase client to one repository per
aggregate.
"""

import logging
from functools import lru_cache

from app.features.database.repositories.chatbots import ChatbotsRepository
from app.features.database.repositories.chunks import ChunksRepository
from app.features.database.repositories.documents import DocumentsRepository
from app.features.database.repositories.jobs import JobsRepository
from app.features.database.repositories.notifications import NotificationsRepository
from app.features.database.repositories.overrides import OverridesRepository
from app.features.database.repositories.qa_cache import QACacheRepository
from app.features.database.repositories.users import UsersRepository

logger = logging.getLogger("Chatbot.Database")


class DatabaseClient:
    """
    Usage:
        db = get_database_client()
        chatbot = db.chatbots.get(chatbot_id)
        entry = db.qa_cache.find_by_hash(chatbot_id, question_hash)
    """

    def __init__(self, client=None):
        if client is None:
            from app.core.database import get_supabase
            client = get_supabase()
        self._client = client

        self.chatbots = ChatbotsRepository(client)
        self.chunks = ChunksRepository(client)
        self.qa_cache = QACacheRepository(client)
        self.overrides = OverridesRepository(client)
        self.jobs = JobsRepository(client)
        self.documents = DocumentsRepository(client)
        self.notifications = NotificationsRepository(client)
        self.users = UsersRepository(client)

        logger.info("Database client initialized with all repositories")

    @property
    def client(self):
        """Direct access to the Supabase client for one-off queries."""
        return self._client


@lru_cache(maxsize=1)
def get_database_client() -> DatabaseClient:
    return DatabaseClient()
