"""
Shared pooled httpx client.

The website crawler and the Resend email sink both go through one
AsyncClient so connections are reused across indexing tasks.

Lifecycle (main.py lifespan):
    await http_client_manager.startup()
    ...
    await http_client_manager.shutdown()
"""

import logging
from typing import Optional

import httpx

from app.core.config import settings

logger = logging.getLogger("Chatbot.HTTP.Client")

USER_AGENT = "ChatbotKnowledgeBot/1.0 (+knowledge indexing)"


class HTTPClientManager:
    """
    Owns the shared httpx.AsyncClient.

    Redirects are NOT followed automatically: the crawler re-validates every
    redirect target against its address rules before following it.
    """

    def __init__(
        self,
        max_connections: int = 50,
        max_keepalive_connections: int = 10,
        default_timeout: float = 30.0,
    ):
        self._max_connections = max_connections
        self._max_keepalive_connections = max_keepalive_connections
        self._default_timeout = default_timeout
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def limits(self) -> httpx.Limits:
        return httpx.Limits(
            max_connections=self._max_connections,
            max_keepalive_connections=self._max_keepalive_connections,
        )

    @property
    def is_initialized(self) -> bool:
        return self._client is not None

    async def startup(self) -> None:
        if self._client is not None:
            logger.warning("HTTP client manager already initialized")
            return

        self._client = httpx.AsyncClient(
            limits=self.limits,
            timeout=httpx.Timeout(self._default_timeout),
            headers={"User-Agent": USER_AGENT},
            follow_redirects=False,
        )
        logger.info(
            f"HTTP client manager initialized "
            f"(max_connections={self._max_connections}, "
            f"max_keepalive={self._max_keepalive_connections})"
        )

    async def shutdown(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("HTTP client manager shut down")

    async def get_client(self) -> httpx.AsyncClient:
        """Shared client; starts it lazily when used outside the app lifespan."""
        if self._client is None:
            logger.warning("HTTP client accessed before startup - initializing now")
            await self.startup()
        return self._client


http_client_manager = HTTPClientManager(default_timeout=settings.CRAWL_TIMEOUT_SECONDS)
