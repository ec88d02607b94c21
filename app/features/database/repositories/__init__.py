"""Knowledge Store repositories, one per aggregate."""

from app.features.database.repositories.chatbots import ChatbotsRepository
from app.features.database.repositories.chunks import ChunksRepository
from app.features.database.repositories.documents import DocumentsRepository
from app.features.database.repositories.jobs import JobsRepository
from app.features.database.repositories.notifications import NotificationsRepository
from app.features.database.repositories.overrides import OverridesRepository
from app.features.database.repositories.qa_cache import QACacheRepository
from app.features.database.repositories.users import UsersRepository

__all__ = [
    "ChatbotsRepository",
    "ChunksRepository",
    "DocumentsRepository",
    "JobsRepository",
    "NotificationsRepository",
    "OverridesRepository",
    "QACacheRepository",
    "UsersRepository",
]
