"""
Reindex scheduler - the periodic loop behind scheduled knowledge refreshes.

Every tick runs two independent passes:
1. Due-check: chatbots whose next run has passed get a new indexing job,
   and their next run is recomputed.
2. Reconciliation: chatbots whose scheduled run is still marked running
   are checked against their job; finished runs are recorded as success
   or failure, and failures notify the owner.

The loop itself does no indexing work; it only creates jobs for the
indexing worker to pick up.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Iterable, Optional

from app.core.config import settings
from app.features.database.models import (
    Chatbot,
    JobStatus,
    ReindexRunStatus,
    ScheduleMode,
    utc_iso,
)
from app.features.indexing.orchestrator import IndexingOrchestrator
from app.features.notifications.reindex import ReindexNotifier
from app.features.scheduling.recurrence import compute_next_run, validate_schedule
from app.shared.correlation import CorrelationContext, generate_correlation_id
from app.shared.errors import ConfigurationError, KnowledgePipelineError, ResourceNotFound

logger = logging.getLogger("Chatbot.Scheduling")

ACTIVE_JOB_STATUSES = (JobStatus.PENDING, JobStatus.PROCESSING)


def next_run_for(chatbot: Chatbot, now: datetime) -> Optional[datetime]:
    try:
        return compute_next_run(
            chatbot.reindex_mode,
            chatbot.reindex_time,
            chatbot.reindex_timezone,
            chatbot.reindex_days,
            chatbot.reindex_once_date,
            now=now,
        )
    except ConfigurationError as e:
        logger.warning(f"Chatbot {chatbot.id} has an invalid reindex schedule: {e.message}")
        return None


class ReindexScheduler:
    """
    Usage:
        scheduler = ReindexScheduler(db, orchestrator, ReindexNotifier(db))
        await scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        db,
        orchestrator: IndexingOrchestrator,
        notifier: ReindexNotifier,
        poll_interval: Optional[float] = None,
        batch_size: Optional[int] = None,
    ):
        self.db = db
        self.orchestrator = orchestrator
        self.notifier = notifier
        self.poll_interval = poll_interval or settings.SCHEDULER_POLL_INTERVAL_SECONDS
        self.batch_size = batch_size or settings.SCHEDULER_BATCH_SIZE
        self._loop_task: Optional[asyncio.Task] = None

    # -------------------------------------------------------------------------
    # Loop
    # -------------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    async def start(self) -> None:
        if self.is_running:
            return
        self._loop_task = asyncio.create_task(self._loop())
        logger.info(f"Reindex scheduler started (tick every {self.poll_interval}s)")

    async def stop(self) -> None:
        if self._loop_task is None:
            return
        self._loop_task.cancel()
        try:
            await self._loop_task
        except asyncio.CancelledError:
            pass
        self._loop_task = None
        logger.info("Reindex scheduler stopped")

    async def _loop(self) -> None:
        while True:
            await self.tick()
            await asyncio.sleep(self.poll_interval)

    async def tick(self, now: Optional[datetime] = None) -> dict:
        """
        Run both passes once. A failing pass is logged and never stops the other.

        Returns:
            {"triggered": int, "reconciled": int}
        """
        now = now or datetime.now(timezone.utc)
        result = {"triggered": 0, "reconciled": 0}
        with CorrelationContext(generate_correlation_id("tick")):
            try:
                result["triggered"] = await self.check_due(now)
            except Exception as e:
                logger.error(f"Due-check pass failed: {e}", exc_info=True)
            try:
                result["reconciled"] = await self.reconcile()
            except Exception as e:
                logger.error(f"Reconciliation pass failed: {e}", exc_info=True)
        return result

    # -------------------------------------------------------------------------
    # Due-check
    # -------------------------------------------------------------------------

    async def check_due(self, now: datetime) -> int:
        due = self.db.chatbots.list_due_for_reindex(now, limit=self.batch_size)
        for chatbot in due:
            try:
                await self.trigger(chatbot, now)
            except Exception as e:
                logger.error(f"Scheduled reindex trigger failed for chatbot {chatbot.id}: {e}", exc_info=True)
        return len(due)

    async def trigger(self, chatbot: Chatbot, now: datetime) -> Optional[str]:
        """
        Start a scheduled reindex and move the schedule forward.

        Returns:
            The new job id, or None if the job could not be created
        """
        logger.info(f"Scheduled reindex due for chatbot {chatbot.id}")
        self.db.chatbots.update(chatbot.id, {
            "reindex_last_status": ReindexRunStatus.RUNNING.value,
            "reindex_last_run_at": utc_iso(now),
            "reindex_last_error": None,
            "reindex_job_id": None,
        })

        job_id = None
        error = None
        try:
            job = await self.orchestrator.reindex_chatbot(chatbot.id)
            job_id = job.id
        except KnowledgePipelineError as e:
            error = e.message
            logger.warning(f"Could not start scheduled reindex for chatbot {chatbot.id}: {error}")
        except Exception as e:
            error = f"Could not create indexing job: {getattr(e, 'message', None) or e}"
            logger.error(f"Scheduled reindex of chatbot {chatbot.id} failed to start: {e}", exc_info=True)

        next_run = next_run_for(chatbot, now)
        fields = {
            "reindex_next_run_at": utc_iso(next_run) if next_run else None,
            "reindex_job_id": job_id,
        }
        if chatbot.reindex_mode == ScheduleMode.ONCE or next_run is None:
            fields["reindex_enabled"] = False
        if error:
            fields["reindex_last_status"] = ReindexRunStatus.FAILED.value
            fields["reindex_last_error"] = error
        self.db.chatbots.update(chatbot.id, fields)

        if error:
            await self.notifier.notify_reindex_failed(chatbot, error)
        return job_id

    # -------------------------------------------------------------------------
    # Reconciliation
    # -------------------------------------------------------------------------

    async def reconcile(self) -> int:
        finished = 0
        for chatbot in self.db.chatbots.list_running_reindex(limit=self.batch_size * 2):
            if await self._reconcile_one(chatbot):
                finished += 1
        return finished

    async def _reconcile_one(self, chatbot: Chatbot) -> bool:
        job = self.db.jobs.get(chatbot.reindex_job_id) if chatbot.reindex_job_id else None

        if job is not None and job.status in ACTIVE_JOB_STATUSES:
            return False

        if job is not None and job.status == JobStatus.COMPLETED:
            self.db.chatbots.update(chatbot.id, {
                "reindex_last_status": ReindexRunStatus.SUCCESS.value,
                "reindex_last_error": None,
            })
            logger.info(f"Scheduled reindex of chatbot {chatbot.id} succeeded")
            return True

        if job is None:
            error = "No indexing job found for the scheduled run"
        else:
            error = job.error_message or f"Indexing job ended as {job.status.value}"

        self.db.chatbots.update(chatbot.id, {
            "reindex_last_status": ReindexRunStatus.FAILED.value,
            "reindex_last_error": error,
        })
        logger.warning(f"Scheduled reindex of chatbot {chatbot.id} failed: {error}")
        await self.notifier.notify_reindex_failed(chatbot, error)
        return True

    # -------------------------------------------------------------------------
    # Configuration
    # -------------------------------------------------------------------------

    def configure_schedule(
        self,
        chatbot_id: str,
        enabled: bool,
        mode: ScheduleMode,
        time_of_day: str = "03:00",
        timezone_name: str = "America/New_York",
        days_of_week: Optional[Iterable[str]] = None,
        one_time_date: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Chatbot:
        """
        Validate and store a chatbot's reindex schedule with its next run.

        Raises:
            ResourceNotFound: Unknown chatbot
            ConfigurationError: Invalid time, timezone, weekdays or date
        """
        if self.db.chatbots.get(chatbot_id) is None:
            raise ResourceNotFound("chatbot", chatbot_id)

        mode = ScheduleMode(mode)
        days = [d.strip().lower() for d in days_of_week or []]
        validate_schedule(mode, time_of_day, timezone_name, days, one_time_date)

        next_run = None
        if enabled and mode != ScheduleMode.DISABLED:
            next_run = compute_next_run(mode, time_of_day, timezone_name, days, one_time_date, now=now)

        self.db.chatbots.update(chatbot_id, {
            "reindex_enabled": bool(enabled and next_run is not None),
            "reindex_mode": mode.value,
            "reindex_time": time_of_day,
            "reindex_timezone": timezone_name,
            "reindex_days": days,
            "reindex_once_date": one_time_date,
            "reindex_next_run_at": utc_iso(next_run) if next_run else None,
        })
        logger.info(f"Reindex schedule for chatbot {chatbot_id}: {mode.value}, next run {next_run}")
        return self.db.chatbots.get(chatbot_id)
