"""
Indexing worker - background loop that runs pending jobs.

Jobs are picked up from the store, so any instance can run them; the
orchestrator's conditional claim makes sure only one does.
"""

import asyncio
import logging
from typing import Dict, Optional

from app.core.config import settings
from app.features.indexing.orchestrator import IndexingOrchestrator
from app.shared.correlation import CorrelationContext, generate_correlation_id

logger = logging.getLogger("Chatbot.Indexing.Worker")


class IndexingWorker:
    def __init__(
        self,
        orchestrator: IndexingOrchestrator,
        poll_interval: Optional[float] = None,
        jobs_per_poll: Optional[int] = None,
    ):
        self.orchestrator = orchestrator
        self.poll_interval = poll_interval or settings.INDEXING_POLL_INTERVAL_SECONDS
        self.jobs_per_poll = jobs_per_poll or settings.INDEXING_JOBS_PER_POLL
        self._loop_task: Optional[asyncio.Task] = None
        self._running: Dict[str, asyncio.Task] = {}

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    async def start(self) -> None:
        if self.is_running:
            return
        self._loop_task = asyncio.create_task(self._loop())
        logger.info(f"Indexing worker started (poll every {self.poll_interval}s)")

    async def stop(self) -> None:
        """Stop polling and wait for jobs already running."""
        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None
        if self._running:
            await asyncio.gather(*self._running.values(), return_exceptions=True)
        logger.info("Indexing worker stopped")

    async def _loop(self) -> None:
        while True:
            try:
                await self.poll()
            except Exception as e:
                logger.error(f"Indexing poll failed: {e}", exc_info=True)
            await asyncio.sleep(self.poll_interval)

    async def poll(self) -> int:
        """
        Start pending jobs that are not already running here.

        Returns:
            Number of jobs started
        """
        with CorrelationContext(generate_correlation_id("idx")):
            jobs = self.orchestrator.db.jobs.list_pending(self.jobs_per_poll)
            started = 0
            for job in jobs:
                if job.id in self._running:
                    continue
                task = asyncio.create_task(self._run(job.id))
                self._running[job.id] = task
                started += 1
            if started:
                logger.info(f"Started {started} indexing jobs")
            return started

    async def _run(self, job_id: str) -> None:
        try:
            await self.orchestrator.run_job(job_id)
        except Exception as e:
            logger.error(f"Indexing job {job_id} crashed: {e}", exc_info=True)
        finally:
            self._running.pop(job_id, None)
