from functools import lru_cache

from app.core.config import settings
from app.features.database import DatabaseClient, get_database_client
from app.features.indexing.fetchers import DocumentFetcher, SourceFetcher, WebsiteFetcher
from app.features.indexing.orchestrator import IndexingOrchestrator
from app.features.indexing.worker import IndexingWorker
from app.features.knowledge.embedding import EmbeddingClient
from app.features.knowledge.resolver import AnswerResolver
from app.features.knowledge.service import KnowledgeService
from app.features.notifications.reindex import ReindexNotifier
from app.features.scheduling.scheduler import ReindexScheduler
from app.services.llm import AnswerGenerator


def get_database() -> DatabaseClient:
    """Provide the singleton Knowledge Store client for request handlers."""
    return get_database_client()


@lru_cache(maxsize=1)
def get_resolver() -> AnswerResolver:
    """Live-path resolver: short embedding timeout, bounded LLM timeout."""
    return AnswerResolver(get_database(), EmbeddingClient(), AnswerGenerator())


@lru_cache(maxsize=1)
def get_orchestrator() -> IndexingOrchestrator:
    db = get_database()
    fetcher = SourceFetcher(WebsiteFetcher(), DocumentFetcher(db))
    embedder = EmbeddingClient(timeout=settings.INDEX_EMBEDDING_TIMEOUT_SECONDS)
    return IndexingOrchestrator(db, fetcher, embedder)


@lru_cache(maxsize=1)
def get_indexing_worker() -> IndexingWorker:
    return IndexingWorker(get_orchestrator())


@lru_cache(maxsize=1)
def get_scheduler() -> ReindexScheduler:
    db = get_database()
    return ReindexScheduler(db, get_orchestrator(), ReindexNotifier(db))


@lru_cache(maxsize=1)
def get_knowledge_service() -> KnowledgeService:
    return KnowledgeService(get_database())
