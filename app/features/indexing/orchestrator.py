"""
Indexing job orchestration.

A job is one reindex of a chatbot; it owns one task per source. Job state
lives only in the Knowledge Store:

    pending -> processing -> completed | partial | failed | cancelled

Tasks run with bounded parallelism (separate pools for crawling and for
embedding). Cancellation is cooperative: the job status is re-read before
each task is dispatched, and tasks already running finish normally.
"""

import asyncio
import logging
from typing import Iterable, List, Optional, Tuple

from app.core.config import settings
from app.core.tracing import get_tracer
from app.features.database.models import (
    Chatbot,
    IndexingJob,
    IndexingTask,
    JobStatus,
    KnowledgeChunk,
    SourceType,
    TaskStatus,
    utc_iso,
)
from app.features.indexing.fetchers import SourceFetcher, normalize_url
from app.features.knowledge.chunker import chunk_document_content, chunk_website_content
from app.features.knowledge.embedding import EmbeddingClient, try_embed
from app.shared.correlation import CorrelationContext
from app.shared.errors import (
    ConfigurationError,
    InvalidJobState,
    KnowledgePipelineError,
    ResourceNotFound,
)

logger = logging.getLogger("Chatbot.Indexing.Orchestrator")
tracer = get_tracer("Chatbot.Indexing.Orchestrator")

Source = Tuple[SourceType, str]

CANCELLABLE = (JobStatus.PENDING, JobStatus.PROCESSING)
RETRYABLE = (JobStatus.FAILED, JobStatus.PARTIAL)


def sources_for_chatbot(chatbot: Chatbot) -> List[Source]:
    """Website URLs then document names, de-duplicated."""
    sources: List[Source] = [(SourceType.WEBSITE, url) for url in chatbot.website_urls]
    sources += [(SourceType.DOCUMENT, name) for name in chatbot.documents]
    return dedupe_sources(sources)


def dedupe_sources(sources: Iterable[Source]) -> List[Source]:
    seen = set()
    result: List[Source] = []
    for source_type, locator in sources:
        locator = (locator or "").strip()
        if not locator:
            continue
        if source_type == SourceType.WEBSITE:
            locator = normalize_url(locator)
        key = (source_type, locator)
        if key not in seen:
            seen.add(key)
            result.append(key)
    return result


def resolve_job_status(total: int, completed: int, failed: int) -> JobStatus:
    """Final status of a job whose tasks are all terminal."""
    if total == 0 or completed == 0:
        return JobStatus.FAILED
    if failed == 0 and completed == total:
        return JobStatus.COMPLETED
    return JobStatus.PARTIAL


def _error_text(exc: BaseException) -> str:
    if isinstance(exc, KnowledgePipelineError):
        return exc.message
    return str(exc) or exc.__class__.__name__


class IndexingOrchestrator:
    """
    Creates, runs, cancels and retries indexing jobs.

    Usage:
        orchestrator = IndexingOrchestrator(db, fetcher, EmbeddingClient(timeout=30))
        job = await orchestrator.create_job(chatbot_id, [(SourceType.WEBSITE, "https://example.com")])
        await orchestrator.run_job(job.id)
    """

    def __init__(
        self,
        db,
        fetcher: SourceFetcher,
        embedder: EmbeddingClient,
        crawl_concurrency: Optional[int] = None,
        embedding_concurrency: Optional[int] = None,
    ):
        self.db = db
        self.fetcher = fetcher
        self.embedder = embedder
        self._crawl_slots = asyncio.Semaphore(crawl_concurrency or settings.CRAWL_CONCURRENCY)
        self._embed_slots = asyncio.Semaphore(embedding_concurrency or settings.EMBEDDING_CONCURRENCY)

    # -------------------------------------------------------------------------
    # Job lifecycle
    # -------------------------------------------------------------------------

    async def create_job(
        self,
        chatbot_id: str,
        sources: Iterable[Source],
        retry_of_job_id: Optional[str] = None,
    ) -> IndexingJob:
        """
        Raises:
            ResourceNotFound: Unknown chatbot
            ConfigurationError: No valid sources
        """
        if self.db.chatbots.get(chatbot_id) is None:
            raise ResourceNotFound("chatbot", chatbot_id)

        unique = dedupe_sources(sources)
        if not unique:
            raise ConfigurationError(f"Chatbot {chatbot_id} has no valid sources to index")

        job = self.db.jobs.create(chatbot_id, unique, retry_of_job_id=retry_of_job_id)
        self.db.chatbots.set_indexing_status(chatbot_id, JobStatus.PENDING.value, job.id)
        return job

    async def reindex_chatbot(self, chatbot_id: str) -> IndexingJob:
        """Queue a job covering every configured source of the chatbot."""
        chatbot = self.db.chatbots.get(chatbot_id)
        if chatbot is None:
            raise ResourceNotFound("chatbot", chatbot_id)
        return await self.create_job(chatbot_id, sources_for_chatbot(chatbot))

    def get_job(self, job_id: str) -> IndexingJob:
        job = self.db.jobs.get(job_id)
        if job is None:
            raise ResourceNotFound("indexing job", job_id)
        return job

    async def cancel_job(self, job_id: str) -> IndexingJob:
        """
        Stop dispatching new tasks of a pending or processing job. Idempotent.

        Raises:
            ResourceNotFound: Unknown job
            InvalidJobState: Job already finished
        """
        job = self.get_job(job_id)
        if job.status == JobStatus.CANCELLED:
            return job
        if job.status not in CANCELLABLE:
            raise InvalidJobState(f"Job {job_id} is {job.status.value} and cannot be cancelled")

        now = utc_iso()
        if not self.db.jobs.transition(job_id, JobStatus.CANCELLED, CANCELLABLE, cancelled_at=now, completed_at=now):
            job = self.get_job(job_id)
            if job.status != JobStatus.CANCELLED:
                raise InvalidJobState(f"Job {job_id} finished as {job.status.value} before it could be cancelled")
            return job

        logger.info(f"Cancelled indexing job {job_id}")
        self._set_chatbot_status(job.chatbot_id, job_id, JobStatus.CANCELLED)
        return self.get_job(job_id)

    async def retry_job(self, job_id: str) -> IndexingJob:
        """
        New job with only the failed sources of a failed or partial job.

        Raises:
            ResourceNotFound: Unknown job
            InvalidJobState: Job not failed/partial, or no failed tasks
        """
        job = self.get_job(job_id)
        if job.status not in RETRYABLE:
            raise InvalidJobState(f"Job {job_id} is {job.status.value}; only failed or partial jobs can be retried")

        failed = self.db.jobs.list_tasks(job_id, TaskStatus.FAILED)
        if not failed:
            raise InvalidJobState(f"Job {job_id} has no failed tasks to retry")

        retry = await self.create_job(
            job.chatbot_id,
            [(task.source_type, task.source_url) for task in failed],
            retry_of_job_id=job_id,
        )
        logger.info(f"Retrying {len(failed)} failed tasks of job {job_id} as job {retry.id}")
        return retry

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def run_job(self, job_id: str) -> IndexingJob:
        """
        Claim a pending job and run its tasks to completion.

        Returns the job as stored afterwards. A job that another worker
        already claimed (or that was cancelled first) is left untouched.
        """
        with CorrelationContext(f"job-{job_id[:8]}"), tracer.start_as_current_span("run_indexing_job") as span:
            span.set_attribute("job_id", job_id)
            job = self.get_job(job_id)
            tasks = self.db.jobs.list_tasks(job_id, TaskStatus.PENDING)

            if not tasks:
                now = utc_iso()
                if self.db.jobs.transition(
                    job_id, JobStatus.FAILED, [JobStatus.PENDING],
                    error_message="Job has no sources to index", completed_at=now,
                ):
                    self._set_chatbot_status(job.chatbot_id, job_id, JobStatus.FAILED)
                return self.get_job(job_id)

            if not self.db.jobs.transition(job_id, JobStatus.PROCESSING, [JobStatus.PENDING], started_at=utc_iso()):
                logger.info(f"Job {job_id} was already claimed or cancelled, skipping")
                return self.get_job(job_id)

            self._set_chatbot_status(job.chatbot_id, job_id, JobStatus.PROCESSING)
            logger.info(f"Running indexing job {job_id} with {len(tasks)} tasks")

            in_flight: List[asyncio.Task] = []
            for position, task in enumerate(tasks):
                await self._crawl_slots.acquire()
                if self.db.jobs.get_status(job_id) == JobStatus.CANCELLED:
                    self._crawl_slots.release()
                    logger.info(f"Job {job_id} cancelled, {len(tasks) - position} tasks not dispatched")
                    break
                in_flight.append(asyncio.create_task(self._run_task_slot(job, task)))

            results = await asyncio.gather(*in_flight, return_exceptions=True)
            job = self._finalize(job, results)
            span.set_attribute("job_status", job.status.value)
            return job

    async def _run_task_slot(self, job: IndexingJob, task: IndexingTask) -> bool:
        try:
            return await self._run_task(job, task)
        finally:
            self._crawl_slots.release()

    async def _run_task(self, job: IndexingJob, task: IndexingTask) -> bool:
        """
        Index one source. Returns True if the source's chunks changed.

        Any error marks the task failed with its text; chunks already
        written for the source stay in place.
        """
        if not self.db.jobs.transition_task(task.id, TaskStatus.PROCESSING, [TaskStatus.PENDING], started_at=utc_iso()):
            return False

        try:
            changed, chunk_count = await self._index_source(job.chatbot_id, task.source_type, task.source_url)
        except Exception as exc:
            logger.warning(f"Task {task.id} ({task.source_url}) failed: {_error_text(exc)}")
            self.db.jobs.transition_task(
                task.id, TaskStatus.FAILED, [TaskStatus.PROCESSING],
                error_message=_error_text(exc)[:1000], completed_at=utc_iso(),
            )
            changed = False
        else:
            self.db.jobs.transition_task(
                task.id, TaskStatus.COMPLETED, [TaskStatus.PROCESSING],
                chunks_created=chunk_count, completed_at=utc_iso(),
            )

        self.db.jobs.refresh_counters(job.id)
        return changed

    async def _index_source(self, chatbot_id: str, source_type: SourceType, locator: str) -> Tuple[bool, int]:
        """
        Fetch, chunk, embed and store one source.

        Chunks whose hash is unchanged and that already have a vector are
        not re-embedded, only their title and metadata are refreshed; chunks
        past the new chunk count are deleted.

        Returns:
            (content changed, number of chunks for the source)
        """
        content = await self.fetcher.fetch(chatbot_id, source_type, locator)
        if source_type == SourceType.WEBSITE:
            chunks = chunk_website_content(locator, content.text, content.title)
        else:
            chunks = chunk_document_content(locator, content.text)

        existing = {c.chunk_index: c for c in self.db.chunks.list_for_source(chatbot_id, source_type, locator)}

        pending = []
        refreshed = 0
        changed = False
        for chunk in chunks:
            previous = existing.get(chunk["chunk_index"])
            same_text = previous is not None and previous.content_hash == chunk["content_hash"]
            if not same_text:
                changed = True
            if same_text and previous.embedding is not None:
                # Text and vector still valid; only the page title may have moved
                if previous.source_title != content.title or previous.metadata != chunk["metadata"]:
                    self.db.chunks.update_details(previous.id, content.title, chunk["metadata"])
                    refreshed += 1
                continue
            pending.append(chunk)

        vectors = await asyncio.gather(*(self._embed(chunk["content"]) for chunk in pending))
        for chunk, vector in zip(pending, vectors):
            self.db.chunks.upsert(KnowledgeChunk(
                chatbot_id=chatbot_id,
                source_type=source_type,
                source_url=locator,
                source_title=content.title,
                chunk_index=chunk["chunk_index"],
                chunk_text=chunk["content"],
                content_hash=chunk["content_hash"],
                embedding=vector,
                metadata=chunk["metadata"],
            ))

        removed = self.db.chunks.delete_beyond(chatbot_id, source_type, locator, len(chunks))
        if removed:
            changed = True

        logger.info(
            f"Indexed {locator}: {len(chunks)} chunks, {len(pending)} written, "
            f"{refreshed} refreshed, {removed} removed"
        )
        return changed, len(chunks)

    async def _embed(self, text: str) -> Optional[List[float]]:
        async with self._embed_slots:
            return await try_embed(self.embedder, text)

    def _finalize(self, job: IndexingJob, results: list) -> IndexingJob:
        for result in results:
            if isinstance(result, BaseException):
                logger.error(f"Task runner for job {job.id} crashed: {_error_text(result)}")

        # Tasks a crashed runner left behind cannot finish any more
        for task in self.db.jobs.list_tasks(job.id, TaskStatus.PROCESSING):
            self.db.jobs.transition_task(
                task.id, TaskStatus.FAILED, [TaskStatus.PROCESSING],
                error_message="Task did not finish", completed_at=utc_iso(),
            )

        current = self.db.jobs.refresh_counters(job.id) or self.get_job(job.id)
        if current.status == JobStatus.CANCELLED:
            self._set_chatbot_status(job.chatbot_id, job.id, JobStatus.CANCELLED)
            return current

        tasks = self.db.jobs.list_tasks(job.id)
        completed = sum(1 for t in tasks if t.status == TaskStatus.COMPLETED)
        failed_tasks = [t for t in tasks if t.status != TaskStatus.COMPLETED]
        status = resolve_job_status(len(tasks), completed, len(failed_tasks))

        error_message = None
        if status == JobStatus.PARTIAL:
            error_message = f"{len(failed_tasks)} of {len(tasks)} sources failed"
        elif status == JobStatus.FAILED:
            first_error = next((t.error_message for t in failed_tasks if t.error_message), None)
            error_message = f"All {len(tasks)} sources failed" + (f": {first_error}" if first_error else "")

        if not self.db.jobs.transition(
            job.id, status, [JobStatus.PROCESSING],
            error_message=error_message, completed_at=utc_iso(),
        ):
            current = self.get_job(job.id)
            logger.info(f"Job {job.id} ended as {current.status.value} before finalizing")
            self._set_chatbot_status(job.chatbot_id, job.id, current.status)
            return current

        changed = any(result is True for result in results)
        if status in (JobStatus.COMPLETED, JobStatus.PARTIAL) and changed:
            self.db.qa_cache.clear(job.chatbot_id)

        self._set_chatbot_status(job.chatbot_id, job.id, status)
        logger.info(f"Indexing job {job.id} finished: {status.value} ({completed}/{len(tasks)} sources)")
        return self.get_job(job.id)

    def _set_chatbot_status(self, chatbot_id: str, job_id: str, status: JobStatus) -> None:
        """Mirror the job status on the chatbot unless a newer job took over."""
        chatbot = self.db.chatbots.get(chatbot_id)
        if chatbot is None:
            return
        if chatbot.last_indexing_job_id not in (None, job_id):
            return
        self.db.chatbots.set_indexing_status(chatbot_id, status.value, job_id)
