"""Tests for the reindex scheduler: due-checks, reconciliation and schedule configuration."""

import asyncio
from datetime import datetime, timezone

import pytest
from postgrest.exceptions import APIError

from app.features.database.models import JobStatus, ReindexRunStatus, ScheduleMode, SourceType, utc_iso
from app.features.indexing import IndexingOrchestrator
from app.features.scheduling import ReindexScheduler
from app.shared.errors import ConfigurationError, ResourceNotFound
from conftest import CHATBOT_ID, OWNER_ID, FakeEmbedder, FakeFetcher, chatbot_row

NOW = datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    async def notify_reindex_failed(self, chatbot, error):
        self.sent.append((chatbot.id, error))
        return {"in_app": True, "email": True}


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def orchestrator(db):
    pages = {
        "https://acme.example/hours": "We open at nine.",
        "https://acme.example/pricing": "Plans start at ten dollars.",
    }
    return IndexingOrchestrator(db, FakeFetcher(pages), FakeEmbedder(default=[1.0, 0.0]))


@pytest.fixture
def scheduler(db, orchestrator, notifier):
    return ReindexScheduler(db, orchestrator, notifier, poll_interval=60, batch_size=5)


def _schedule(db, **fields):
    values = {
        "reindex_enabled": True,
        "reindex_mode": "daily",
        "reindex_time": "03:00",
        "reindex_timezone": "UTC",
        "reindex_next_run_at": utc_iso(datetime(2024, 1, 1, 3, 0, tzinfo=timezone.utc)),
    }
    values.update(fields)
    db.chatbots.update(CHATBOT_ID, values)


def test_due_schedule_creates_job_and_advances(db, scheduler):
    _schedule(db)

    result = asyncio.run(scheduler.tick(NOW))

    assert result == {"triggered": 1, "reconciled": 0}
    chatbot = db.chatbots.get(CHATBOT_ID)
    assert chatbot.reindex_last_status == ReindexRunStatus.RUNNING
    assert chatbot.reindex_last_run_at == NOW
    assert chatbot.reindex_next_run_at == datetime(2024, 1, 2, 3, 0, tzinfo=timezone.utc)
    assert chatbot.reindex_enabled is True
    job = db.jobs.get(chatbot.last_indexing_job_id)
    assert job.status == JobStatus.PENDING
    assert job.total_tasks == 2


def test_schedule_not_yet_due_is_left_alone(db, scheduler):
    _schedule(db, reindex_next_run_at=utc_iso(datetime(2024, 1, 2, 3, 0, tzinfo=timezone.utc)))

    assert asyncio.run(scheduler.tick(NOW)) == {"triggered": 0, "reconciled": 0}
    assert db.chatbots.get(CHATBOT_ID).last_indexing_job_id is None


def test_running_schedule_is_not_triggered_twice(db, scheduler):
    _schedule(db)
    asyncio.run(scheduler.tick(NOW))
    # Still pending; force the schedule due again
    _schedule(db)

    result = asyncio.run(scheduler.tick(NOW))

    assert result["triggered"] == 0
    assert len(db.client.rows("indexing_jobs")) == 1


def test_once_schedule_disables_itself(db, scheduler):
    _schedule(db, reindex_mode="once", reindex_once_date="2024-01-01")

    asyncio.run(scheduler.tick(NOW))

    chatbot = db.chatbots.get(CHATBOT_ID)
    assert chatbot.reindex_enabled is False
    assert chatbot.reindex_next_run_at is None
    assert chatbot.last_indexing_job_id is not None


def test_job_creation_failure_is_recorded_and_notified(db, scheduler, notifier):
    _schedule(db, website_urls=[], documents=[])

    asyncio.run(scheduler.tick(NOW))

    chatbot = db.chatbots.get(CHATBOT_ID)
    assert chatbot.reindex_last_status == ReindexRunStatus.FAILED
    assert "no valid sources" in chatbot.reindex_last_error
    assert chatbot.reindex_next_run_at == datetime(2024, 1, 2, 3, 0, tzinfo=timezone.utc)
    assert notifier.sent == [(CHATBOT_ID, chatbot.reindex_last_error)]


def test_store_error_on_job_creation_is_recorded_as_failure(db, scheduler, orchestrator, notifier, monkeypatch):
    earlier = asyncio.run(orchestrator.reindex_chatbot(CHATBOT_ID))
    asyncio.run(orchestrator.run_job(earlier.id))
    _schedule(db)

    def unavailable(*args, **kwargs):
        raise APIError({"message": "connection reset", "code": "08006"})

    monkeypatch.setattr(db.jobs, "create", unavailable)

    asyncio.run(scheduler.tick(NOW))

    chatbot = db.chatbots.get(CHATBOT_ID)
    assert chatbot.reindex_last_status == ReindexRunStatus.FAILED
    assert "connection reset" in chatbot.reindex_last_error
    assert chatbot.reindex_next_run_at == datetime(2024, 1, 2, 3, 0, tzinfo=timezone.utc)
    assert chatbot.reindex_job_id is None
    assert notifier.sent == [(CHATBOT_ID, chatbot.reindex_last_error)]

    # The older completed job must not turn the failed run into a success
    asyncio.run(scheduler.tick(NOW))
    assert db.chatbots.get(CHATBOT_ID).reindex_last_status == ReindexRunStatus.FAILED
    assert len(notifier.sent) == 1


def test_one_failing_trigger_does_not_skip_the_batch(db, supabase, scheduler, monkeypatch):
    supabase.add("chatbots", chatbot_row(id="bot-2", user_id=OWNER_ID))
    _schedule(db)
    db.chatbots.update("bot-2", {
        "reindex_enabled": True,
        "reindex_mode": "daily",
        "reindex_time": "03:00",
        "reindex_timezone": "UTC",
        "reindex_next_run_at": utc_iso(datetime(2024, 1, 1, 3, 0, tzinfo=timezone.utc)),
    })
    original = scheduler.trigger
    attempted = []

    async def flaky(chatbot, now):
        attempted.append(chatbot.id)
        if len(attempted) == 1:
            raise RuntimeError("store unavailable")
        return await original(chatbot, now)

    monkeypatch.setattr(scheduler, "trigger", flaky)

    assert asyncio.run(scheduler.check_due(NOW)) == 2
    assert sorted(attempted) == [CHATBOT_ID, "bot-2"]
    assert len(db.client.rows("indexing_jobs")) == 1


def test_reconcile_follows_scheduled_job_not_manual_one(db, scheduler, orchestrator, notifier):
    db.chatbots.update(CHATBOT_ID, {"website_urls": ["https://acme.example/hours", "https://acme.example/gone"]})
    _schedule(db)
    asyncio.run(scheduler.tick(NOW))
    scheduled_id = db.chatbots.get(CHATBOT_ID).reindex_job_id
    asyncio.run(orchestrator.run_job(scheduled_id))
    manual = asyncio.run(orchestrator.create_job(CHATBOT_ID, [(SourceType.WEBSITE, "https://acme.example/hours")]))
    asyncio.run(orchestrator.run_job(manual.id))
    assert db.chatbots.get(CHATBOT_ID).last_indexing_job_id == manual.id

    asyncio.run(scheduler.tick(NOW))

    chatbot = db.chatbots.get(CHATBOT_ID)
    assert chatbot.reindex_last_status == ReindexRunStatus.FAILED
    assert chatbot.reindex_last_error == "1 of 2 sources failed"


def test_reconcile_records_success(db, scheduler, orchestrator, notifier):
    _schedule(db)
    asyncio.run(scheduler.tick(NOW))
    job_id = db.chatbots.get(CHATBOT_ID).last_indexing_job_id
    asyncio.run(orchestrator.run_job(job_id))

    result = asyncio.run(scheduler.tick(NOW))

    assert result["reconciled"] == 1
    chatbot = db.chatbots.get(CHATBOT_ID)
    assert chatbot.reindex_last_status == ReindexRunStatus.SUCCESS
    assert chatbot.reindex_last_error is None
    assert notifier.sent == []


def test_reconcile_partial_job_counts_as_failure(db, scheduler, notifier):
    db.chatbots.update(CHATBOT_ID, {"website_urls": ["https://acme.example/hours", "https://acme.example/gone"]})
    _schedule(db)
    asyncio.run(scheduler.tick(NOW))
    job_id = db.chatbots.get(CHATBOT_ID).last_indexing_job_id
    finished = asyncio.run(scheduler.orchestrator.run_job(job_id))
    assert finished.status == JobStatus.PARTIAL

    asyncio.run(scheduler.tick(NOW))

    chatbot = db.chatbots.get(CHATBOT_ID)
    assert chatbot.reindex_last_status == ReindexRunStatus.FAILED
    assert chatbot.reindex_last_error == "1 of 2 sources failed"
    assert notifier.sent == [(CHATBOT_ID, "1 of 2 sources failed")]


def test_reconcile_without_job(db, scheduler, notifier):
    db.chatbots.update(CHATBOT_ID, {"reindex_last_status": "running"})

    assert asyncio.run(scheduler.reconcile()) == 1

    assert db.chatbots.get(CHATBOT_ID).reindex_last_error == "No indexing job found for the scheduled run"
    assert len(notifier.sent) == 1


def test_failing_pass_does_not_stop_the_other(db, scheduler, monkeypatch):
    def broken(*args, **kwargs):
        raise RuntimeError("store unavailable")

    monkeypatch.setattr(db.chatbots, "list_due_for_reindex", broken)
    db.chatbots.update(CHATBOT_ID, {"reindex_last_status": "running"})

    result = asyncio.run(scheduler.tick(NOW))

    assert result == {"triggered": 0, "reconciled": 1}


def test_start_and_stop(scheduler):
    async def scenario():
        await scheduler.start()
        running = scheduler.is_running
        await scheduler.stop()
        return running

    assert asyncio.run(scenario()) is True
    assert scheduler.is_running is False


def test_configure_weekly_schedule(db, scheduler):
    wednesday = datetime(2024, 1, 3, 8, 0, tzinfo=timezone.utc)

    chatbot = scheduler.configure_schedule(
        CHATBOT_ID, True, ScheduleMode.WEEKLY, "09:00", "UTC", ["Monday"], now=wednesday,
    )

    assert chatbot.reindex_enabled is True
    assert chatbot.reindex_mode == ScheduleMode.WEEKLY
    assert chatbot.reindex_days == ["monday"]
    assert chatbot.reindex_next_run_at == datetime(2024, 1, 8, 9, 0, tzinfo=timezone.utc)


def test_configure_once_in_the_past_is_stored_disabled(db, scheduler):
    chatbot = scheduler.configure_schedule(
        CHATBOT_ID, True, "once", "03:00", "UTC", one_time_date="2023-12-31", now=NOW,
    )
    assert chatbot.reindex_enabled is False
    assert chatbot.reindex_next_run_at is None


def test_configure_disabled_clears_next_run(db, scheduler):
    _schedule(db)
    chatbot = scheduler.configure_schedule(CHATBOT_ID, False, "daily", "03:00", "UTC", now=NOW)
    assert chatbot.reindex_enabled is False
    assert chatbot.reindex_next_run_at is None


def test_configure_rejects_invalid_schedule(db, scheduler):
    with pytest.raises(ConfigurationError):
        scheduler.configure_schedule(CHATBOT_ID, True, "daily", "03:00", "Not/AZone")
    with pytest.raises(ResourceNotFound):
        scheduler.configure_schedule("missing", True, "daily")
