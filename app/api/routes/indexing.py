"""
Indexing API Routes.

Jobs are only queued here; the indexing worker runs them. Poll
GET /index-jobs/{job_id} for progress.
"""

import logging
from typing import List

from fastapi import APIRouter, Depends, status

from app.api.dependencies import get_orchestrator
from app.api.models import CreateJobRequest, JobResponse, TaskResponse
from app.features.indexing.orchestrator import IndexingOrchestrator

logger = logging.getLogger("Chatbot.API.Indexing")
router = APIRouter(tags=["Indexing"])


@router.post(
    "/chatbots/{chatbot_id}/index-jobs",
    response_model=JobResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def create_index_job(
    chatbot_id: str,
    request: CreateJobRequest,
    orchestrator: IndexingOrchestrator = Depends(get_orchestrator),
):
    """Queue a reindex of the given sources, or of every configured source."""
    if request.sources is None:
        job = await orchestrator.reindex_chatbot(chatbot_id)
    else:
        job = await orchestrator.create_job(
            chatbot_id, [(source.type, source.locator) for source in request.sources]
        )
    logger.info(f"Queued indexing job {job.id} for chatbot {chatbot_id}")
    return JobResponse.from_job(job)


@router.get("/index-jobs/{job_id}", response_model=JobResponse)
async def get_index_job(job_id: str, orchestrator: IndexingOrchestrator = Depends(get_orchestrator)):
    return JobResponse.from_job(orchestrator.get_job(job_id))


@router.get("/index-jobs/{job_id}/tasks", response_model=List[TaskResponse])
async def list_index_tasks(job_id: str, orchestrator: IndexingOrchestrator = Depends(get_orchestrator)):
    orchestrator.get_job(job_id)
    return [TaskResponse.from_task(task) for task in orchestrator.db.jobs.list_tasks(job_id)]


@router.post("/index-jobs/{job_id}/cancel", response_model=JobResponse)
async def cancel_index_job(job_id: str, orchestrator: IndexingOrchestrator = Depends(get_orchestrator)):
    return JobResponse.from_job(await orchestrator.cancel_job(job_id))


@router.post(
    "/index-jobs/{job_id}/retry",
    response_model=JobResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def retry_index_job(job_id: str, orchestrator: IndexingOrchestrator = Depends(get_orchestrator)):
    """New job with the failed sources of a failed or partial job."""
    return JobResponse.from_job(await orchestrator.retry_job(job_id))
