"""
Chat API Routes.

Answers website visitors' questions. Answer failures never reach the
visitor as an error: they get an apology with the escalation contact,
and `error_code` tells the widget why.
"""

import json
import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from app.api.dependencies import get_resolver
from app.api.models import ChatRequest, ChatResponse
from app.core.logging_utils import sanitize_for_logging
from app.features.knowledge.resolver import AnswerResolver
from app.services.llm import FALLBACK_USER_MESSAGE
from app.shared.errors import AnswerGenerationError, ErrorCode, KnowledgePipelineError

logger = logging.getLogger("Chatbot.API.Chat")
router = APIRouter(tags=["Chat"])


def _fallback(exc: AnswerGenerationError) -> ChatResponse:
    return ChatResponse(
        message=exc.user_message or FALLBACK_USER_MESSAGE,
        should_escalate=True,
        error_code=exc.code.value,
    )


def _internal_fallback() -> ChatResponse:
    return ChatResponse(
        message=FALLBACK_USER_MESSAGE,
        should_escalate=True,
        error_code=ErrorCode.INTERNAL_ERROR.value,
    )


def _sse(event: str, payload: Dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(payload)}\n\n"


@router.post("/chat", response_model=ChatResponse)
async def chat(request: ChatRequest, resolver: AnswerResolver = Depends(get_resolver)):
    """
    Answer one visitor message.

    Unknown chatbots and empty questions are client errors (404/400);
    everything else returns 200 with either the answer or a fallback.
    """
    history = [turn.model_dump() for turn in request.history]
    try:
        answer = await resolver.resolve(request.chatbot_id, request.message, history)
    except AnswerGenerationError as exc:
        logger.warning(f"Chat fallback for chatbot {request.chatbot_id}: {exc.code.value}")
        return _fallback(exc)
    except KnowledgePipelineError:
        raise
    except Exception:
        logger.exception(f"Chat failed for question {sanitize_for_logging(request.message)}")
        return _internal_fallback()

    return ChatResponse.from_answer(answer)


@router.post("/chat/stream")
async def chat_stream(request: ChatRequest, resolver: AnswerResolver = Depends(get_resolver)):
    """
    Server-sent events: `delta` events with text, then one `final` event
    with the full ChatResponse. Failures end the stream with a `final`
    fallback response instead.
    """
    history = [turn.model_dump() for turn in request.history]

    async def events():
        try:
            async for event in resolver.resolve_stream(request.chatbot_id, request.message, history):
                if event["type"] == "delta":
                    yield _sse("delta", {"text": event["text"]})
                else:
                    yield _sse("final", ChatResponse.from_answer(event["answer"]).model_dump(mode="json"))
        except AnswerGenerationError as exc:
            logger.warning(f"Streamed chat fallback for chatbot {request.chatbot_id}: {exc.code.value}")
            yield _sse("final", _fallback(exc).model_dump(mode="json"))
        except KnowledgePipelineError as exc:
            yield _sse("error", {"code": exc.code.value, "message": exc.message})
        except Exception:
            logger.exception("Streamed chat failed")
            yield _sse("final", _internal_fallback().model_dump(mode="json"))

    return StreamingResponse(
        events(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
