"""Recurring reindex schedules."""

from app.features.scheduling.recurrence import compute_next_run, validate_schedule
from app.features.scheduling.scheduler import ReindexScheduler

__all__ = ["compute_next_run", "validate_schedule", "ReindexScheduler"]
