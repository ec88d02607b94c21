"""Shared OpenAI client, used for question and chunk embeddings."""

import logging
from functools import lru_cache

from openai import AsyncOpenAI

from app.core.config import settings
from app.shared.errors import ConfigurationError

logger = logging.getLogger("Chatbot.Services.OpenAI")


@lru_cache(maxsize=1)
def get_openai_client() -> AsyncOpenAI:
    """
    Singleton AsyncOpenAI client.

    Raises:
        ConfigurationError: If OPENAI_API_KEY is not set
    """
    if not settings.OPENAI_API_KEY:
        raise ConfigurationError("OPENAI_API_KEY environment variable not set")

    # Retries stay with callers; the live chat path cannot afford hidden backoff
    client = AsyncOpenAI(api_key=settings.OPENAI_API_KEY, max_retries=0)
    logger.info("OpenAI client initialized")
    return client
