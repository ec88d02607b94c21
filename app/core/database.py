"""Supabase connection for the Knowledge Store."""

import logging
from functools import lru_cache

from supabase import Client, create_client

from app.core.config import settings
from app.shared.errors import ConfigurationError

logger = logging.getLogger("Chatbot.Database.Connection")


@lru_cache(maxsize=1)
def get_supabase() -> Client:
    """
    Singleton Supabase client, created on first use.

    Raises:
        ConfigurationError: If SUPABASE_URL or SUPABASE_KEY is missing
    """
    if not settings.SUPABASE_URL or not settings.SUPABASE_KEY:
        raise ConfigurationError("SUPABASE_URL and SUPABASE_KEY must be set")

    client = create_client(settings.SUPABASE_URL, settings.SUPABASE_KEY)
    logger.info("Supabase client initialized")
    return client
