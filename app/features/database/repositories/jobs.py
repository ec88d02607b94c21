"""
Indexing Jobs Repository - jobs and their per-source tasks.

The store is the single source of truth for job state, so every status
change is a conditional update (`status IN allowed_from`). A terminal job
or task can never be re-opened, whichever worker tries.
"""

import logging
from collections import Counter
from typing import Any, Dict, Iterable, List, Optional, Tuple

from app.features.database.models import (
    IndexingJob,
    IndexingTask,
    JobStatus,
    SourceType,
    TaskStatus,
    utc_iso,
)

logger = logging.getLogger("Chatbot.Database.Jobs")

JOBS_TABLE = "indexing_jobs"
TASKS_TABLE = "indexing_tasks"


class JobsRepository:
    """Repository for indexing jobs and tasks."""

    def __init__(self, client):
        self.client = client

    # -------------------------------------------------------------------------
    # Jobs
    # -------------------------------------------------------------------------

    def create(
        self,
        chatbot_id: str,
        sources: List[Tuple[SourceType, str]],
        retry_of_job_id: Optional[str] = None,
    ) -> IndexingJob:
        """
        Create a pending job with one pending task per source.

        Returns:
            The stored job
        """
        job_row: Dict[str, Any] = {
            "chatbot_id": chatbot_id,
            "status": JobStatus.PENDING.value,
            "total_tasks": len(sources),
            "completed_tasks": 0,
            "failed_tasks": 0,
            "created_at": utc_iso(),
        }
        if retry_of_job_id:
            job_row["retry_of_job_id"] = retry_of_job_id

        job = IndexingJob.model_validate(self.client.table(JOBS_TABLE).insert(job_row).execute().data[0])

        task_rows = [
            {
                "job_id": job.id,
                "chatbot_id": chatbot_id,
                "source_type": source_type.value,
                "source_url": source_url,
                "status": TaskStatus.PENDING.value,
                "chunks_created": 0,
                "created_at": utc_iso(),
            }
            for source_type, source_url in sources
        ]
        if task_rows:
            self.client.table(TASKS_TABLE).insert(task_rows).execute()

        logger.info(f"Created indexing job {job.id} with {len(task_rows)} tasks for chatbot {chatbot_id}")
        return job

    def get(self, job_id: str) -> Optional[IndexingJob]:
        result = self.client.table(JOBS_TABLE).select("*").eq("id", job_id).limit(1).execute()
        if not result.data:
            return None
        return IndexingJob.model_validate(result.data[0])

    def get_status(self, job_id: str) -> Optional[JobStatus]:
        result = self.client.table(JOBS_TABLE).select("status").eq("id", job_id).limit(1).execute()
        if not result.data:
            return None
        return JobStatus(result.data[0]["status"])

    def list_pending(self, limit: int = 5) -> List[IndexingJob]:
        """Oldest pending jobs first."""
        result = self.client.table(JOBS_TABLE).select("*").eq(
            "status", JobStatus.PENDING.value
        ).order("created_at").limit(limit).execute()
        return [IndexingJob.model_validate(row) for row in result.data or []]

    def transition(
        self,
        job_id: str,
        to_status: JobStatus,
        allowed_from: Iterable[JobStatus],
        **fields: Any,
    ) -> bool:
        """
        Move a job to `to_status` if it is currently in `allowed_from`.

        Returns:
            True if this call performed the transition
        """
        update = {"status": to_status.value, **fields}
        result = self.client.table(JOBS_TABLE).update(update).eq(
            "id", job_id
        ).in_("status", [s.value for s in allowed_from]).execute()
        return bool(result.data)

    def refresh_counters(self, job_id: str) -> Optional[IndexingJob]:
        """
        Recompute completed/failed counters from the task rows.

        Counting rather than incrementing keeps the counters bounded by the
        task count and non-decreasing, even with concurrent task updates.
        """
        result = self.client.table(TASKS_TABLE).select("status").eq("job_id", job_id).execute()
        counts = Counter(row["status"] for row in result.data or [])
        updated = self.client.table(JOBS_TABLE).update({
            "completed_tasks": counts.get(TaskStatus.COMPLETED.value, 0),
            "failed_tasks": counts.get(TaskStatus.FAILED.value, 0),
        }).eq("id", job_id).execute()
        if not updated.data:
            return None
        return IndexingJob.model_validate(updated.data[0])

    # -------------------------------------------------------------------------
    # Tasks
    # -------------------------------------------------------------------------

    def list_tasks(self, job_id: str, status: Optional[TaskStatus] = None) -> List[IndexingTask]:
        query = self.client.table(TASKS_TABLE).select("*").eq("job_id", job_id)
        if status is not None:
            query = query.eq("status", status.value)
        result = query.order("created_at").execute()
        return [IndexingTask.model_validate(row) for row in result.data or []]

    def transition_task(
        self,
        task_id: str,
        to_status: TaskStatus,
        allowed_from: Iterable[TaskStatus],
        **fields: Any,
    ) -> bool:
        update = {"status": to_status.value, **fields}
        result = self.client.table(TASKS_TABLE).update(update).eq(
            "id", task_id
        ).in_("status", [s.value for s in allowed_from]).execute()
        return bool(result.data)
