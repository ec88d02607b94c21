import logging

from fastapi import APIRouter, Depends

from app.api.dependencies import get_scheduler
from app.api.models import ScheduleRequest, ScheduleResponse
from app.features.scheduling.scheduler import ReindexScheduler

logger = logging.getLogger("Chatbot.API.Schedule")
router = APIRouter(tags=["Schedule"])


@router.put("/chatbots/{chatbot_id}/reindex-schedule", response_model=ScheduleResponse)
async def configure_reindex_schedule(
    chatbot_id: str,
    request: ScheduleRequest,
    scheduler: ReindexScheduler = Depends(get_scheduler),
):
    """Store a recurring reindex schedule and return it with its next run."""
    chatbot = scheduler.configure_schedule(
        chatbot_id,
        enabled=request.enabled,
        mode=request.mode,
        time_of_day=request.time,
        timezone_name=request.timezone,
        days_of_week=request.days,
        one_time_date=request.once_date,
    )
    return ScheduleResponse.from_chatbot(chatbot)
