"""Tests for indexing jobs: lifecycle, partial failure, retry, cancellation and re-indexing."""

import asyncio

import pytest

from app.features.database.models import Chatbot, JobStatus, SourceType, TaskStatus
from app.features.indexing import IndexingOrchestrator, IndexingWorker, resolve_job_status, sources_for_chatbot
from app.features.indexing.fetchers import FetchedContent
from app.shared.errors import ConfigurationError, InvalidJobState, ResourceNotFound
from conftest import CHATBOT_ID, FakeEmbedder, FakeFetcher

URLS = [f"https://acme.example/p{i}" for i in range(5)]


def _page(paragraphs: int, tag: str = "") -> str:
    return "\n\n".join(
        " ".join(f"{tag}p{p}w{w}" for w in range(40)) + "." for p in range(paragraphs)
    )


def _sources(urls):
    return [(SourceType.WEBSITE, url) for url in urls]


def _orchestrator(db, pages, embedder=None, crawl=2):
    fetcher = FakeFetcher(pages)
    orchestrator = IndexingOrchestrator(
        db, fetcher, embedder or FakeEmbedder(default=[1.0, 0.0]),
        crawl_concurrency=crawl, embedding_concurrency=2,
    )
    return orchestrator, fetcher


def _create_and_run(orchestrator, sources):
    async def scenario():
        job = await orchestrator.create_job(CHATBOT_ID, sources)
        return await orchestrator.run_job(job.id)

    return asyncio.run(scenario())


def test_resolve_job_status():
    assert resolve_job_status(3, 3, 0) == JobStatus.COMPLETED
    assert resolve_job_status(5, 3, 2) == JobStatus.PARTIAL
    assert resolve_job_status(2, 0, 2) == JobStatus.FAILED
    assert resolve_job_status(0, 0, 0) == JobStatus.FAILED


def test_sources_for_chatbot_dedupes_and_normalizes():
    chatbot = Chatbot(
        id=CHATBOT_ID,
        website_urls=["https://ACME.example/hours/", "https://acme.example/hours", "  "],
        documents=["faq.pdf", "faq.pdf"],
    )
    assert sources_for_chatbot(chatbot) == [
        (SourceType.WEBSITE, "https://acme.example/hours"),
        (SourceType.DOCUMENT, "faq.pdf"),
    ]


def test_successful_job_completes_and_stores_chunks(db, supabase):
    orchestrator, _ = _orchestrator(db, {url: f"Content of page {i}." for i, url in enumerate(URLS[:2])})

    job = _create_and_run(orchestrator, _sources(URLS[:2]))

    assert job.status == JobStatus.COMPLETED
    assert (job.completed_tasks, job.failed_tasks, job.progress) == (2, 0, 100)
    assert job.started_at is not None and job.completed_at is not None
    chunks = supabase.rows("knowledge_chunks")
    assert sorted(c["source_url"] for c in chunks) == URLS[:2]
    assert all(c["embedding"] == [1.0, 0.0] for c in chunks)
    assert all(t.chunks_created == 1 for t in db.jobs.list_tasks(job.id))

    chatbot = db.chatbots.get(CHATBOT_ID)
    assert chatbot.indexing_status == "completed"
    assert chatbot.last_indexing_job_id == job.id


def test_partial_job_and_retry_of_failed_sources(db, supabase):
    pages = {url: f"Content of page {i}." for i, url in enumerate(URLS[:3])}
    orchestrator, fetcher = _orchestrator(db, pages)

    job = _create_and_run(orchestrator, _sources(URLS))

    assert job.status == JobStatus.PARTIAL
    assert (job.completed_tasks, job.failed_tasks) == (3, 2)
    assert job.error_message == "2 of 5 sources failed"
    failed = db.jobs.list_tasks(job.id, TaskStatus.FAILED)
    assert sorted(t.source_url for t in failed) == URLS[3:]
    assert all("HTTP 404" in t.error_message for t in failed)

    fetcher.pages.update({url: "Now available." for url in URLS[3:]})

    async def retry():
        new_job = await orchestrator.retry_job(job.id)
        return new_job, await orchestrator.run_job(new_job.id)

    created, finished = asyncio.run(retry())
    assert created.retry_of_job_id == job.id
    assert created.total_tasks == 2
    assert sorted(t.source_url for t in db.jobs.list_tasks(created.id)) == URLS[3:]
    assert finished.status == JobStatus.COMPLETED
    assert len(supabase.rows("knowledge_chunks")) == 5


def test_all_sources_failing_fails_the_job(db):
    orchestrator, _ = _orchestrator(db, {})

    job = _create_and_run(orchestrator, _sources(URLS[:2]))

    assert job.status == JobStatus.FAILED
    assert job.error_message.startswith("All 2 sources failed: HTTP 404")
    assert db.chatbots.get(CHATBOT_ID).indexing_status == "failed"


def test_retry_requires_failed_or_partial_job(db):
    orchestrator, _ = _orchestrator(db, {URLS[0]: "Fine."})
    job = _create_and_run(orchestrator, _sources(URLS[:1]))

    with pytest.raises(InvalidJobState):
        asyncio.run(orchestrator.retry_job(job.id))


def test_cancel_stops_dispatch_and_keeps_running_tasks(db):
    orchestrator, fetcher = _orchestrator(db, {url: "Some content." for url in URLS}, crawl=2)

    async def scenario():
        job = await orchestrator.create_job(CHATBOT_ID, _sources(URLS))
        gates = {url: asyncio.Event() for url in URLS[:2]}
        fetcher.gates.update(gates)
        runner = asyncio.create_task(orchestrator.run_job(job.id))
        while len(fetcher.started) < 2:
            await asyncio.sleep(0)

        cancelled = await orchestrator.cancel_job(job.id)
        for gate in gates.values():
            gate.set()
        return cancelled, await runner

    cancelled, final = asyncio.run(scenario())

    assert cancelled.status == JobStatus.CANCELLED
    assert cancelled.cancelled_at is not None
    assert final.status == JobStatus.CANCELLED
    assert fetcher.started == URLS[:2]
    statuses = [t.status for t in db.jobs.list_tasks(final.id)]
    assert statuses.count(TaskStatus.COMPLETED) == 2
    assert statuses.count(TaskStatus.PENDING) == 3
    assert final.completed_tasks == 2
    assert db.chatbots.get(CHATBOT_ID).indexing_status == "cancelled"


def test_cancel_is_idempotent_and_rejects_finished_jobs(db):
    orchestrator, _ = _orchestrator(db, {URLS[0]: "Fine."})

    async def scenario():
        pending = await orchestrator.create_job(CHATBOT_ID, _sources(URLS[1:2]))
        first = await orchestrator.cancel_job(pending.id)
        second = await orchestrator.cancel_job(pending.id)
        return first, second

    first, second = asyncio.run(scenario())
    assert first.status == second.status == JobStatus.CANCELLED
    assert first.cancelled_at == second.cancelled_at

    done = _create_and_run(orchestrator, _sources(URLS[:1]))
    with pytest.raises(InvalidJobState):
        asyncio.run(orchestrator.cancel_job(done.id))


def test_cancelled_pending_job_is_never_run(db):
    orchestrator, fetcher = _orchestrator(db, {URLS[0]: "Fine."})

    async def scenario():
        job = await orchestrator.create_job(CHATBOT_ID, _sources(URLS[:1]))
        await orchestrator.cancel_job(job.id)
        return await orchestrator.run_job(job.id)

    job = asyncio.run(scenario())
    assert job.status == JobStatus.CANCELLED
    assert fetcher.started == []


def test_finished_job_is_not_run_again(db):
    orchestrator, fetcher = _orchestrator(db, {URLS[0]: "Fine."})
    job = _create_and_run(orchestrator, _sources(URLS[:1]))

    again = asyncio.run(orchestrator.run_job(job.id))

    assert again.status == JobStatus.COMPLETED
    assert fetcher.started == [URLS[0]]


def test_job_without_tasks_fails(db):
    orchestrator, _ = _orchestrator(db, {})
    job = db.jobs.create(CHATBOT_ID, [])

    result = asyncio.run(orchestrator.run_job(job.id))

    assert result.status == JobStatus.FAILED
    assert result.error_message == "Job has no sources to index"


def test_create_job_validation(db):
    orchestrator, _ = _orchestrator(db, {})
    with pytest.raises(ConfigurationError):
        asyncio.run(orchestrator.create_job(CHATBOT_ID, [(SourceType.WEBSITE, "  ")]))
    with pytest.raises(ResourceNotFound):
        asyncio.run(orchestrator.create_job("missing", _sources(URLS[:1])))
    with pytest.raises(ResourceNotFound):
        orchestrator.get_job("missing")


def test_reindex_chatbot_covers_configured_sources(db):
    orchestrator, _ = _orchestrator(db, {})

    job = asyncio.run(orchestrator.reindex_chatbot(CHATBOT_ID))

    assert job.total_tasks == 2
    assert {t.source_url for t in db.jobs.list_tasks(job.id)} == {
        "https://acme.example/hours", "https://acme.example/pricing",
    }
    chatbot = db.chatbots.get(CHATBOT_ID)
    assert (chatbot.indexing_status, chatbot.last_indexing_job_id) == ("pending", job.id)


def test_older_job_does_not_overwrite_chatbot_status(db):
    orchestrator, _ = _orchestrator(db, {URLS[0]: "Fine."})

    async def scenario():
        older = await orchestrator.create_job(CHATBOT_ID, _sources(URLS[:1]))
        newer = await orchestrator.create_job(CHATBOT_ID, _sources(URLS[1:2]))
        await orchestrator.run_job(older.id)
        return newer

    newer = asyncio.run(scenario())
    chatbot = db.chatbots.get(CHATBOT_ID)
    assert (chatbot.indexing_status, chatbot.last_indexing_job_id) == ("pending", newer.id)


def test_embedding_outage_still_stores_chunks(db, supabase):
    orchestrator, _ = _orchestrator(db, {URLS[0]: "Opening hours are nine to five."}, embedder=FakeEmbedder())

    job = _create_and_run(orchestrator, _sources(URLS[:1]))

    assert job.status == JobStatus.COMPLETED
    rows = supabase.rows("knowledge_chunks")
    assert len(rows) == 1 and rows[0]["embedding"] is None

    # A later run fills in the missing vector
    orchestrator.embedder = FakeEmbedder(default=[0.0, 1.0])
    _create_and_run(orchestrator, _sources(URLS[:1]))
    assert supabase.rows("knowledge_chunks")[0]["embedding"] == [0.0, 1.0]


def test_reindex_skips_unchanged_chunks_and_removes_stale_tail(db, supabase):
    embedder = FakeEmbedder(default=[1.0, 0.0])
    long_page = _page(8)
    orchestrator, fetcher = _orchestrator(db, {URLS[0]: long_page}, embedder=embedder)

    _create_and_run(orchestrator, _sources(URLS[:1]))
    first_count = len(supabase.rows("knowledge_chunks"))
    assert first_count > 1
    embedded = len(embedder.calls)
    assert embedded == first_count

    # Unchanged content: nothing re-embedded, cache kept
    supabase.add("qa_cache", {"chatbot_id": CHATBOT_ID, "question": "q", "question_hash": "h", "answer": "a"})
    job = _create_and_run(orchestrator, _sources(URLS[:1]))
    assert job.status == JobStatus.COMPLETED
    assert len(embedder.calls) == embedded
    assert len(supabase.rows("qa_cache")) == 1
    assert db.jobs.list_tasks(job.id)[0].chunks_created == first_count

    # Shorter content: first slot rewritten, the rest deleted, cache cleared
    fetcher.pages[URLS[0]] = _page(1, tag="new")
    _create_and_run(orchestrator, _sources(URLS[:1]))
    rows = supabase.rows("knowledge_chunks")
    assert [r["chunk_index"] for r in rows] == [0]
    assert rows[0]["chunk_text"].startswith("newp0w0")
    assert supabase.rows("qa_cache") == []


def test_reindex_refreshes_title_of_unchanged_chunks(db, supabase):
    embedder = FakeEmbedder(default=[1.0, 0.0])
    text = _page(3)
    orchestrator, fetcher = _orchestrator(db, {URLS[0]: FetchedContent(text=text, title="Hours")}, embedder=embedder)

    _create_and_run(orchestrator, _sources(URLS[:1]))
    embedded = len(embedder.calls)
    supabase.add("qa_cache", {"chatbot_id": CHATBOT_ID, "question": "q", "question_hash": "h", "answer": "a"})

    # Same text under a new page title
    fetcher.pages[URLS[0]] = FetchedContent(text=text, title="Opening Hours")
    job = _create_and_run(orchestrator, _sources(URLS[:1]))

    assert job.status == JobStatus.COMPLETED
    assert len(embedder.calls) == embedded
    rows = supabase.rows("knowledge_chunks")
    assert rows and all(r["source_title"] == "Opening Hours" for r in rows)
    assert all(r["metadata"]["title"] == "Opening Hours" for r in rows)
    assert all(r["embedding"] == [1.0, 0.0] for r in rows)
    assert len(supabase.rows("qa_cache")) == 1


def test_worker_poll_runs_pending_jobs(db):
    orchestrator, _ = _orchestrator(db, {url: "Fine." for url in URLS[:2]})
    worker = IndexingWorker(orchestrator, poll_interval=60, jobs_per_poll=5)

    async def scenario():
        first = await orchestrator.create_job(CHATBOT_ID, _sources(URLS[:1]))
        second = await orchestrator.create_job(CHATBOT_ID, _sources(URLS[1:2]))
        started = await worker.poll()
        await worker.stop()
        return started, first, second

    started, first, second = asyncio.run(scenario())
    assert started == 2
    assert orchestrator.get_job(first.id).status == JobStatus.COMPLETED
    assert orchestrator.get_job(second.id).status == JobStatus.COMPLETED
    assert not worker.is_running
