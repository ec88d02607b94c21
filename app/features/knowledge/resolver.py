"""
Answer resolution - the multi-tier path from a visitor question to an answer.

Tiers, in order, each short-circuiting on a hit:
1. Manual override, exact question hash
2. Manual override, embedding similarity >= threshold
3. Automated cache, exact question hash
4. Automated cache, embedding similarity >= threshold
5. Hybrid chunk retrieval + LLM call, result written back to the cache

Embedding failures only skip the semantic tiers. Counter updates and
cache writes run as background tasks and never delay the answer.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from app.core.config import settings
from app.core.logging_utils import log_resolution, sanitize_for_logging
from app.core.tracing import get_tracer
from app.features.database.models import Chatbot
from app.features.knowledge.embedding import (
    EmbeddingClient,
    normalize_question,
    question_hash,
    try_embed,
)
from app.features.knowledge.retriever import retrieve_context
from app.services.llm import FALLBACK_USER_MESSAGE
from app.shared.errors import (
    AnswerGenerationError,
    ErrorCode,
    KnowledgePipelineError,
    ResourceNotFound,
)

logger = logging.getLogger("Chatbot.Knowledge.Resolver")
tracer = get_tracer("Chatbot.Knowledge.Resolver")

ESCALATION_KEYWORDS = (
    "contact support",
    "speak with",
    "human representative",
    "don't know",
    "do not know",
    "cannot find",
    "can't find",
    "unable to help",
    "not sure",
)

DEFAULT_ESCALATION_MESSAGE = "If you need more help, you can reach our team at {phone}."

DEFAULT_SYSTEM_PROMPT = (
    "You are a friendly customer support assistant for this website. "
    "Answer visitors' questions clearly and concisely."
)

NO_KNOWLEDGE_USER_MESSAGE = (
    "I don't have enough information to answer that yet. "
    "Please reach out to our team for help."
)


class ResolutionSource(str, Enum):
    OVERRIDE_EXACT = "override_exact"
    OVERRIDE_SEMANTIC = "override_semantic"
    CACHE_EXACT = "cache_exact"
    CACHE_SEMANTIC = "cache_semantic"
    LLM = "llm"


class ResolvedAnswer(BaseModel):
    message: str
    source: ResolutionSource
    should_escalate: bool = False
    suggested_questions: List[str] = Field(default_factory=list)
    similarity: Optional[float] = None
    context_chunks: int = 0


# =============================================================================
# PROMPT AND ESCALATION
# =============================================================================

def needs_escalation(text: str) -> bool:
    lowered = (text or "").lower().replace("’", "'")
    return any(keyword in lowered for keyword in ESCALATION_KEYWORDS)


def escalation_text(chatbot: Chatbot) -> Optional[str]:
    """The chatbot's escalation line with its phone number filled in."""
    phone = (chatbot.support_phone_number or "").strip()
    template = (chatbot.escalation_message or "").strip() or DEFAULT_ESCALATION_MESSAGE
    if "{phone}" in template:
        if not phone:
            return None
        return template.replace("{phone}", phone)
    return template


def apply_escalation(text: str, chatbot: Chatbot) -> Tuple[str, bool]:
    """
    Flag answers that admit they cannot help and append the contact line once.

    Returns:
        (final text, should_escalate)
    """
    if not needs_escalation(text):
        return text, False

    addition = escalation_text(chatbot)
    if not addition:
        return text, True

    phone = (chatbot.support_phone_number or "").strip()
    if (phone and phone in text) or addition in text:
        return text, True
    return f"{text.rstrip()}\n\n{addition}", True


def build_system_prompt(chatbot: Chatbot) -> str:
    parts = [(chatbot.system_prompt or "").strip() or DEFAULT_SYSTEM_PROMPT]
    if (chatbot.custom_instructions or "").strip():
        parts.append(f"Additional instructions:\n{chatbot.custom_instructions.strip()}")

    guidance = (
        "Answer using the knowledge base provided. If the answer is not in the "
        "knowledge base, say you don't know and suggest contacting support"
    )
    if (chatbot.support_phone_number or "").strip():
        guidance += f" at {chatbot.support_phone_number.strip()}"
    parts.append(guidance + ". Do not make up facts, prices or policies.")
    return "\n\n".join(parts)


def fallback_message(chatbot: Optional[Chatbot], base: str = FALLBACK_USER_MESSAGE) -> str:
    """Visitor-safe apology with the escalation contact, for error paths."""
    if chatbot is None:
        return base
    addition = escalation_text(chatbot)
    return f"{base}\n\n{addition}" if addition else base


# =============================================================================
# RESOLVER
# =============================================================================

class AnswerResolver:
    """
    Resolves questions for any chatbot.

    Usage:
        resolver = AnswerResolver(db, EmbeddingClient(), AnswerGenerator())
        answer = await resolver.resolve(chatbot_id, "What are your opening hours?")
    """

    def __init__(
        self,
        db,
        embedder: EmbeddingClient,
        llm,
        similarity_threshold: Optional[float] = None,
        history_turns: Optional[int] = None,
    ):
        self.db = db
        self.embedder = embedder
        self.llm = llm
        self.similarity_threshold = (
            settings.SIMILARITY_THRESHOLD if similarity_threshold is None else similarity_threshold
        )
        self.history_turns = history_turns or settings.HISTORY_MAX_TURNS
        self._background: set = set()

    async def resolve(
        self,
        chatbot_id: str,
        question: str,
        history: Optional[List[Dict[str, str]]] = None,
    ) -> ResolvedAnswer:
        """
        Answer a question.

        Raises:
            ResourceNotFound: Unknown chatbot
            AnswerGenerationError: LLM timeout, provider error or no knowledge
        """
        started = time.monotonic()
        with tracer.start_as_current_span("resolve_answer") as span:
            span.set_attribute("chatbot_id", chatbot_id)
            chatbot = self._load_chatbot(chatbot_id)
            logger.info(f"Resolving question for chatbot {chatbot_id}: {sanitize_for_logging(question)}")

            hit, embedding = await self._lookup(chatbot, question)
            if hit is None:
                hit = await self._generate(chatbot, question, embedding, history)

            span.set_attribute("resolution_source", hit.source.value)
            log_resolution(chatbot_id, hit.source.value, _elapsed_ms(started), hit.similarity)
            return hit

    async def resolve_stream(
        self,
        chatbot_id: str,
        question: str,
        history: Optional[List[Dict[str, str]]] = None,
    ) -> AsyncIterator[Dict[str, Any]]:
        """
        Streaming variant of `resolve`.

        Yields `{"type": "delta", "text": ...}` events while the model writes,
        then one `{"type": "final", "answer": ResolvedAnswer}` event. Cache and
        override hits yield only the final event.
        """
        started = time.monotonic()
        chatbot = self._load_chatbot(chatbot_id)
        logger.info(f"Resolving streamed question for chatbot {chatbot_id}: {sanitize_for_logging(question)}")

        hit, embedding = await self._lookup(chatbot, question)
        if hit is not None:
            log_resolution(chatbot_id, hit.source.value, _elapsed_ms(started), hit.similarity)
            yield {"type": "final", "answer": hit}
            return

        context, ranked = await self._knowledge_context(chatbot, question, embedding)
        suggestions_task = asyncio.create_task(self._suggest(chatbot, question, context))
        parts: List[str] = []
        try:
            async for delta in self.llm.stream(
                build_system_prompt(chatbot), context, self._recent(history), question, chatbot_id=chatbot.id
            ):
                parts.append(delta)
                yield {"type": "delta", "text": delta}
        except BaseException:
            suggestions_task.cancel()
            raise

        raw_answer = "".join(parts).strip()
        if not raw_answer:
            suggestions_task.cancel()
            raise AnswerGenerationError(
                "LLM returned an empty answer",
                code=ErrorCode.EXTERNAL_SERVICE_ERROR,
                user_message=fallback_message(chatbot),
            )

        answer = self._finish(chatbot, question, embedding, raw_answer, await suggestions_task, len(ranked))
        log_resolution(chatbot_id, answer.source.value, _elapsed_ms(started))
        yield {"type": "final", "answer": answer}

    async def drain(self) -> None:
        """Wait for pending background writes (shutdown and tests)."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # -------------------------------------------------------------------------
    # Tiers
    # -------------------------------------------------------------------------

    def _load_chatbot(self, chatbot_id: str) -> Chatbot:
        chatbot = self.db.chatbots.get(chatbot_id)
        if chatbot is None:
            raise ResourceNotFound("chatbot", chatbot_id)
        return chatbot

    async def _lookup(self, chatbot: Chatbot, question: str) -> Tuple[Optional[ResolvedAnswer], Optional[List[float]]]:
        """
        Run the override and cache tiers.

        Returns:
            (answer or None, question embedding or None); the embedding is
            reused by retrieval on a miss
        """
        normalized = normalize_question(question)
        if not normalized:
            raise KnowledgePipelineError("Question must not be empty", code=ErrorCode.VALIDATION_ERROR)
        qhash = question_hash(question)

        override = self.db.overrides.find_by_hash(chatbot.id, qhash)
        if override is not None:
            self._spawn(self.db.overrides.record_use, override)
            return ResolvedAnswer(
                message=override.manual_answer,
                source=ResolutionSource.OVERRIDE_EXACT,
                similarity=1.0,
            ), None

        embedding = await try_embed(self.embedder, normalized)

        if embedding is not None:
            matches = self.db.overrides.search_similar(chatbot.id, embedding, self.similarity_threshold)
            if matches:
                override, similarity = matches[0]
                self._spawn(self.db.overrides.record_use, override)
                return ResolvedAnswer(
                    message=override.manual_answer,
                    source=ResolutionSource.OVERRIDE_SEMANTIC,
                    similarity=similarity,
                ), embedding

        entry = self.db.qa_cache.find_by_hash(chatbot.id, qhash)
        if entry is not None:
            self._spawn(self.db.qa_cache.record_hit, entry)
            return self._cached_answer(chatbot, entry, ResolutionSource.CACHE_EXACT, 1.0), embedding

        if embedding is not None:
            matches = self.db.qa_cache.search_similar(chatbot.id, embedding, self.similarity_threshold)
            if matches:
                entry, similarity = matches[0]
                self._spawn(self.db.qa_cache.record_hit, entry)
                return self._cached_answer(chatbot, entry, ResolutionSource.CACHE_SEMANTIC, similarity), embedding

        return None, embedding

    def _cached_answer(self, chatbot: Chatbot, entry, source: ResolutionSource, similarity: float) -> ResolvedAnswer:
        message, should_escalate = apply_escalation(entry.answer, chatbot)
        return ResolvedAnswer(
            message=message,
            source=source,
            should_escalate=should_escalate,
            suggested_questions=entry.suggested_questions,
            similarity=similarity,
        )

    async def _generate(
        self,
        chatbot: Chatbot,
        question: str,
        embedding: Optional[List[float]],
        history: Optional[List[Dict[str, str]]],
    ) -> ResolvedAnswer:
        context, ranked = await self._knowledge_context(chatbot, question, embedding)

        suggestions_task = asyncio.create_task(self._suggest(chatbot, question, context))
        try:
            raw_answer = await self.llm.complete(
                build_system_prompt(chatbot), context, self._recent(history), question, chatbot_id=chatbot.id
            )
        except AnswerGenerationError as exc:
            suggestions_task.cancel()
            exc.user_message = fallback_message(chatbot)
            logger.error(f"Answer generation failed for chatbot {chatbot.id}: {exc.message}")
            raise
        except BaseException:
            suggestions_task.cancel()
            raise

        return self._finish(chatbot, question, embedding, raw_answer, await suggestions_task, len(ranked))

    async def _knowledge_context(self, chatbot: Chatbot, question: str, embedding: Optional[List[float]]):
        context, ranked = await retrieve_context(self.db, chatbot, question, embedding)
        if not context.strip():
            reason = "is still being indexed" if chatbot.has_knowledge else "has no knowledge configured"
            raise AnswerGenerationError(
                f"Chatbot {chatbot.id} {reason}",
                code=ErrorCode.NO_KNOWLEDGE,
                retryable=False,
                user_message=fallback_message(chatbot, NO_KNOWLEDGE_USER_MESSAGE),
            )
        return context, ranked

    def _finish(
        self,
        chatbot: Chatbot,
        question: str,
        embedding: Optional[List[float]],
        raw_answer: str,
        suggestions: List[str],
        context_chunks: int,
    ) -> ResolvedAnswer:
        # The raw answer is cached; escalation is re-applied on every hit
        self._spawn(
            self.db.qa_cache.store,
            chatbot.id,
            normalize_question(question),
            question_hash(question),
            raw_answer,
            embedding,
            suggestions,
        )
        message, should_escalate = apply_escalation(raw_answer, chatbot)
        return ResolvedAnswer(
            message=message,
            source=ResolutionSource.LLM,
            should_escalate=should_escalate,
            suggested_questions=suggestions,
            context_chunks=context_chunks,
        )

    async def _suggest(self, chatbot: Chatbot, question: str, context: str) -> List[str]:
        try:
            return await self.llm.suggest_questions(question, context, chatbot_id=chatbot.id)
        except AnswerGenerationError as exc:
            logger.warning(f"Follow-up suggestions unavailable for chatbot {chatbot.id}: {exc.message}")
            return []

    def _recent(self, history: Optional[List[Dict[str, str]]]) -> List[Dict[str, str]]:
        return list(history or [])[-self.history_turns:]

    def _spawn(self, func, *args) -> None:
        """Run a store write in the background; failures are logged."""
        async def runner():
            try:
                await asyncio.to_thread(func, *args)
            except Exception:
                logger.exception(f"Background write {getattr(func, '__qualname__', func)} failed")

        task = asyncio.create_task(runner())
        self._background.add(task)
        task.add_done_callback(self._background.discard)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
