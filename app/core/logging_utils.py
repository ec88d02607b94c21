"""
Safe logging helpers for visitor-supplied text and structured LLM usage events.

Visitor questions can contain emails, phone numbers or pasted secrets, so
they go through `sanitize_for_logging` before they reach a log line.
"""
import json
import logging
import re
from typing import Any, Optional


SENSITIVE_KEYS = [
    "api_key", "token", "password", "secret", "auth",
    "email", "phone", "authorization",
]

_CONTROL_CHARS = re.compile(r'[\x00-\x1F\x7F]')
_EMAIL_PATTERN = re.compile(r'\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b')
_PHONE_PATTERN = re.compile(r'\+?\(?\d{1,4}\)?(?:[-.\s]?\d{2,4}){2,4}')


def redact_emails(text: str) -> str:
    return _EMAIL_PATTERN.sub('[EMAIL_REDACTED]', text)


def redact_phone_numbers(text: str) -> str:
    return _PHONE_PATTERN.sub('[PHONE_REDACTED]', text)


def sanitize_for_logging(data: Any, max_len: int = 100) -> Any:
    """
    Make data safe to log.

    Dict values under sensitive keys are redacted, strings lose control
    characters, emails and phone numbers and are truncated to `max_len`.
    """
    if data is None:
        return "None"

    if isinstance(data, dict):
        return {
            k: "***REDACTED***" if any(s in str(k).lower() for s in SENSITIVE_KEYS)
            else sanitize_for_logging(v, max_len)
            for k, v in data.items()
        }

    if isinstance(data, (list, tuple)):
        return [sanitize_for_logging(item, max_len) for item in data]

    if isinstance(data, str):
        cleaned = redact_phone_numbers(redact_emails(_CONTROL_CHARS.sub('', data)))
        if len(cleaned) > max_len:
            return cleaned[:max_len] + "..."
        return cleaned

    return sanitize_for_logging(str(data), max_len)


# =============================================================================
# STRUCTURED USAGE LOGGING
# =============================================================================

_usage_logger = logging.getLogger("Chatbot.Usage")


def log_llm_usage(
    model: str,
    input_tokens: int,
    output_tokens: int,
    duration_ms: Optional[int] = None,
    purpose: str = "answer",
    chatbot_id: Optional[str] = None,
) -> None:
    """
    Emit one `LLM_USAGE {...}` line per model call.

    Paired with the `resolution` events from the resolver this shows how
    many questions were answered without calling the model.
    """
    event = {
        "event": "llm_usage",
        "model": model,
        "purpose": purpose,
        "input_tokens": input_tokens,
        "output_tokens": output_tokens,
        "total_tokens": input_tokens + output_tokens,
    }
    if duration_ms is not None:
        event["duration_ms"] = duration_ms
    if chatbot_id:
        event["chatbot_id"] = chatbot_id

    _usage_logger.info("LLM_USAGE %s", json.dumps(event))


def log_resolution(chatbot_id: str, source: str, duration_ms: int, similarity: Optional[float] = None) -> None:
    """Emit one `RESOLUTION {...}` line per answered question (which tier answered)."""
    event = {
        "event": "resolution",
        "chatbot_id": chatbot_id,
        "source": source,
        "duration_ms": duration_ms,
    }
    if similarity is not None:
        event["similarity"] = round(similarity, 4)

    _usage_logger.info("RESOLUTION %s", json.dumps(event))
