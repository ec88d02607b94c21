"""Claude-backed answer generation for the chat widget."""

from __future__ import annotations

import asyncio
import logging
import re
import time
from typing import AsyncIterator, Dict, List, Optional

from anthropic import APIError, APITimeoutError, AsyncAnthropic, NotFoundError

from app.core.config import settings
from app.core.logging_utils import log_llm_usage
from app.shared.errors import AnswerGenerationError, ConfigurationError, ErrorCode

logger = logging.getLogger("Chatbot.Services.LLM")

FALLBACK_USER_MESSAGE = (
    "I apologize, but I'm having trouble processing your request right now. "
    "Please try again later."
)

SUGGESTION_PROMPT = """A website visitor asked the question below. Using the knowledge excerpt, suggest 3-5 short follow-up questions they might ask next.
Each question must be under 60 characters and answerable from the same knowledge.
Return one question per line with no numbering and no other text.

QUESTION: {question}

KNOWLEDGE EXCERPT:
{context}"""

_LIST_MARKER = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s*")


def parse_suggested_questions(text: str, limit: int = 5) -> List[str]:
    """One question per line, list markers stripped, long lines dropped."""
    questions: List[str] = []
    for line in (text or "").splitlines():
        candidate = _LIST_MARKER.sub("", line).strip().strip('"')
        if candidate and len(candidate) < 100 and candidate not in questions:
            questions.append(candidate)
        if len(questions) >= limit:
            break
    return questions


def build_messages(history: Optional[List[Dict[str, str]]], question: str) -> List[Dict[str, str]]:
    """
    Turn stored chat history plus the new question into Anthropic messages.

    The API wants alternating roles starting with `user`, so unknown roles
    and empty turns are dropped and consecutive turns of one role are merged.
    """
    messages: List[Dict[str, str]] = []
    for turn in history or []:
        role = turn.get("role")
        content = (turn.get("content") or "").strip()
        if role not in ("user", "assistant") or not content:
            continue
        if not messages and role == "assistant":
            continue
        if messages and messages[-1]["role"] == role:
            messages[-1]["content"] += "\n\n" + content
        else:
            messages.append({"role": role, "content": content})

    if messages and messages[-1]["role"] == "user":
        messages[-1]["content"] += "\n\n" + question
    else:
        messages.append({"role": "user", "content": question})
    return messages


class AnswerGenerator:
    """
    Wraps AsyncAnthropic with model fallback and a bounded live-path timeout.

    Every failure surfaces as AnswerGenerationError carrying TIMEOUT or
    EXTERNAL_SERVICE_ERROR and the visitor-safe fallback message.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> None:
        key = api_key or settings.ANTHROPIC_API_KEY
        if not key:
            raise ConfigurationError("ANTHROPIC_API_KEY environment variable not set")

        self.timeout = timeout or settings.LLM_TIMEOUT_SECONDS
        self.max_tokens = max_tokens or settings.LLM_MAX_TOKENS
        self.client = AsyncAnthropic(api_key=key, timeout=self.timeout, max_retries=0)

        primary_model = model or settings.CLAUDE_MODEL_PRIMARY
        self.model_candidates = [primary_model] + [
            m for m in settings.CLAUDE_MODEL_OPTIONS if m and m != primary_model
        ]
        # Cheapest configured model writes follow-up suggestions
        self.suggestion_model = self.model_candidates[-1]

        logger.info("Answer generator initialized with models: %s", ", ".join(self.model_candidates))

    async def complete(
        self,
        system_prompt: str,
        context: str,
        history: Optional[List[Dict[str, str]]],
        question: str,
        chatbot_id: Optional[str] = None,
    ) -> str:
        """Full answer text. Raises AnswerGenerationError."""
        system = _compose_system(system_prompt, context)
        messages = build_messages(history, question)
        try:
            return await asyncio.wait_for(
                self._complete_with_fallback(system, messages, self.max_tokens, "answer", chatbot_id),
                timeout=self.timeout,
            )
        except (asyncio.TimeoutError, APITimeoutError) as exc:
            logger.warning("LLM answer timed out after %.1fs", self.timeout)
            raise _timeout_error() from exc

    async def stream(
        self,
        system_prompt: str,
        context: str,
        history: Optional[List[Dict[str, str]]],
        question: str,
        chatbot_id: Optional[str] = None,
    ) -> AsyncIterator[str]:
        """Yield text deltas from the primary model. Raises AnswerGenerationError."""
        system = _compose_system(system_prompt, context)
        messages = build_messages(history, question)
        model_name = self.model_candidates[0]
        started = time.monotonic()
        # Whole stream shares one budget; a slow trickle of deltas still times out
        deadline = started + self.timeout
        try:
            async with self.client.messages.stream(
                model=model_name,
                max_tokens=self.max_tokens,
                system=system,
                messages=messages,
            ) as stream:
                deltas = stream.text_stream.__aiter__()
                while True:
                    try:
                        text = await asyncio.wait_for(deltas.__anext__(), timeout=_remaining(deadline))
                    except StopAsyncIteration:
                        break
                    yield text
                final = await asyncio.wait_for(stream.get_final_message(), timeout=_remaining(deadline))
        except (asyncio.TimeoutError, APITimeoutError) as exc:
            logger.warning("LLM stream timed out after %.1fs", self.timeout)
            raise _timeout_error() from exc
        except APIError as exc:
            logger.error("Streaming with model %s failed: %s", model_name, exc)
            raise _provider_error(exc) from exc

        log_llm_usage(
            model=model_name,
            input_tokens=final.usage.input_tokens,
            output_tokens=final.usage.output_tokens,
            duration_ms=int((time.monotonic() - started) * 1000),
            purpose="answer_stream",
            chatbot_id=chatbot_id,
        )

    async def suggest_questions(self, question: str, context: str, chatbot_id: Optional[str] = None) -> List[str]:
        """
        Follow-up questions for the widget.

        Runs alongside the answer call, so it sees the knowledge context
        rather than the answer. Raises AnswerGenerationError.
        """
        prompt = SUGGESTION_PROMPT.format(question=question, context=context[:3000])
        try:
            text = await asyncio.wait_for(
                self._invoke_model(
                    self.suggestion_model,
                    system="You write short follow-up questions for a customer support chat.",
                    messages=[{"role": "user", "content": prompt}],
                    max_tokens=300,
                    purpose="suggestions",
                    chatbot_id=chatbot_id,
                ),
                timeout=self.timeout,
            )
        except (asyncio.TimeoutError, APITimeoutError) as exc:
            raise _timeout_error() from exc
        except (APIError, ValueError) as exc:
            raise _provider_error(exc) from exc
        return parse_suggested_questions(text)

    async def _complete_with_fallback(
        self,
        system: str,
        messages: List[Dict[str, str]],
        max_tokens: int,
        purpose: str,
        chatbot_id: Optional[str],
    ) -> str:
        last_error: Optional[Exception] = None
        for model_name in self.model_candidates:
            try:
                return await self._invoke_model(model_name, system, messages, max_tokens, purpose, chatbot_id)
            except APITimeoutError:
                raise
            except (APIError, ValueError) as exc:
                logger.warning("Model %s failed: %s", model_name, exc)
                last_error = exc
                if not isinstance(exc, NotFoundError) and not _is_overloaded(exc):
                    break

        raise _provider_error(last_error)

    async def _invoke_model(
        self,
        model_name: str,
        system: str,
        messages: List[Dict[str, str]],
        max_tokens: int,
        purpose: str,
        chatbot_id: Optional[str],
    ) -> str:
        started = time.monotonic()
        response = await self.client.messages.create(
            model=model_name,
            max_tokens=max_tokens,
            system=system,
            messages=messages,
        )

        text = "".join(block.text for block in response.content if getattr(block, "type", None) == "text").strip()
        if not text:
            raise ValueError(f"Model {model_name} returned empty content")

        log_llm_usage(
            model=model_name,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
            duration_ms=int((time.monotonic() - started) * 1000),
            purpose=purpose,
            chatbot_id=chatbot_id,
        )
        return text


def _compose_system(system_prompt: str, context: str) -> str:
    if not context:
        return system_prompt
    return f"{system_prompt}\n\nKNOWLEDGE BASE:\n{context}"


def _remaining(deadline: float) -> float:
    remaining = deadline - time.monotonic()
    if remaining <= 0:
        raise asyncio.TimeoutError()
    return remaining


def _is_overloaded(exc: Exception) -> bool:
    return getattr(exc, "status_code", None) in (429, 500, 502, 503, 529)


def _timeout_error() -> AnswerGenerationError:
    return AnswerGenerationError(
        "LLM request timed out",
        code=ErrorCode.TIMEOUT,
        user_message=FALLBACK_USER_MESSAGE,
    )


def _provider_error(exc: Optional[Exception]) -> AnswerGenerationError:
    return AnswerGenerationError(
        f"LLM provider error: {exc}",
        code=ErrorCode.EXTERNAL_SERVICE_ERROR,
        user_message=FALLBACK_USER_MESSAGE,
    )
