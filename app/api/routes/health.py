from fastapi import APIRouter, Request

router = APIRouter(tags=["Health"])


@router.get("/health")
async def health_check(request: Request):
    """Simple health endpoint for monitoring."""
    worker = getattr(request.app.state, "indexing_worker", None)
    scheduler = getattr(request.app.state, "scheduler", None)
    return {
        "status": "healthy",
        "indexing_worker": bool(worker and worker.is_running),
        "scheduler": bool(scheduler and scheduler.is_running),
    }
