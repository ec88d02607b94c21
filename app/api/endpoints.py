from fastapi import APIRouter

from app.api.routes import chat, health, indexing, knowledge, schedule


router = APIRouter()

router.include_router(chat.router)
router.include_router(indexing.router)
router.include_router(knowledge.router)
router.include_router(schedule.router)
router.include_router(health.router)
