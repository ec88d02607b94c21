"""
Knowledge API Routes.

Operator edits to a chatbot's knowledge:
1. Manual answer overrides (list, create, update, delete)
2. Clearing the automated answer cache
3. Removing one source's chunks, or purging everything
"""

import logging
from typing import List

from fastapi import APIRouter, Depends, Query, status

from app.api.dependencies import get_knowledge_service
from app.api.models import OverrideCreateRequest, OverrideResponse, OverrideUpdateRequest
from app.features.database.models import SourceType
from app.features.knowledge.service import KnowledgeService

logger = logging.getLogger("Chatbot.API.Knowledge")
router = APIRouter(tags=["Knowledge"])


# ===================== Overrides =====================

@router.get("/chatbots/{chatbot_id}/overrides", response_model=List[OverrideResponse])
async def list_overrides(chatbot_id: str, knowledge: KnowledgeService = Depends(get_knowledge_service)):
    return [OverrideResponse.from_override(o) for o in knowledge.list_overrides(chatbot_id)]


@router.post(
    "/chatbots/{chatbot_id}/overrides",
    response_model=OverrideResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_override(
    chatbot_id: str,
    request: OverrideCreateRequest,
    knowledge: KnowledgeService = Depends(get_knowledge_service),
):
    override = await knowledge.create_override(
        chatbot_id,
        request.question,
        request.answer,
        original_answer=request.original_answer,
        conversation_id=request.conversation_id,
        created_by=request.created_by,
    )
    return OverrideResponse.from_override(override)


@router.patch("/overrides/{override_id}", response_model=OverrideResponse)
async def update_override(
    override_id: str,
    request: OverrideUpdateRequest,
    knowledge: KnowledgeService = Depends(get_knowledge_service),
):
    override = await knowledge.update_override(override_id, question=request.question, answer=request.answer)
    return OverrideResponse.from_override(override)


@router.delete("/overrides/{override_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_override(override_id: str, knowledge: KnowledgeService = Depends(get_knowledge_service)):
    knowledge.delete_override(override_id)


# ===================== Cache & sources =====================

@router.delete("/chatbots/{chatbot_id}/cache")
async def clear_cache(chatbot_id: str, knowledge: KnowledgeService = Depends(get_knowledge_service)):
    return {"status": "success", "deleted": knowledge.clear_cache(chatbot_id)}


@router.delete("/chatbots/{chatbot_id}/sources")
async def remove_source(
    chatbot_id: str,
    source_type: SourceType = Query(...),
    locator: str = Query(..., min_length=1, description="Website URL or document name"),
    knowledge: KnowledgeService = Depends(get_knowledge_service),
):
    return {"status": "success", "deleted": knowledge.remove_source(chatbot_id, source_type, locator)}


@router.delete("/chatbots/{chatbot_id}/knowledge")
async def purge_knowledge(chatbot_id: str, knowledge: KnowledgeService = Depends(get_knowledge_service)):
    """Delete chunks, cache entries and overrides of a chatbot."""
    return {"status": "success", "deleted": knowledge.purge_chatbot(chatbot_id)}
