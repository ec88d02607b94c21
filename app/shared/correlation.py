"""
Correlation ids for request, job and scheduler-tick tracing.

HTTP requests get their id from CorrelationMiddleware (taken from an
incoming X-Correlation-ID / X-Request-ID header or generated). Background
work has no request, so the indexing worker and the scheduler wrap each
unit of work in CorrelationContext:

    with CorrelationContext(f"job-{job_id[:8]}"):
        await orchestrator.run_job(job_id)
"""

import contextvars
import uuid
from typing import Callable, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response


_correlation_id_ctx: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "correlation_id",
    default=None,
)

CORRELATION_HEADERS = ("X-Correlation-ID", "X-Request-ID")
RESPONSE_HEADER = "X-Correlation-ID"


def get_correlation_id() -> Optional[str]:
    return _correlation_id_ctx.get()


def generate_correlation_id(prefix: Optional[str] = None) -> str:
    """Short random id (8 hex chars), optionally prefixed, e.g. `tick-1a2b3c4d`."""
    short = uuid.uuid4().hex[:8]
    return f"{prefix}-{short}" if prefix else short


class CorrelationMiddleware(BaseHTTPMiddleware):
    """Reads or creates the request's correlation id and echoes it in the response."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = None
        for header in CORRELATION_HEADERS:
            correlation_id = request.headers.get(header)
            if correlation_id:
                break
        if not correlation_id:
            correlation_id = generate_correlation_id()

        request.state.correlation_id = correlation_id
        token = _correlation_id_ctx.set(correlation_id)
        try:
            response = await call_next(request)
            response.headers[RESPONSE_HEADER] = correlation_id
            return response
        finally:
            _correlation_id_ctx.reset(token)


def propagate_correlation_headers(headers: Optional[dict] = None) -> dict:
    """Copy of `headers` with the current correlation id added for outgoing calls."""
    headers = dict(headers or {})
    cid = get_correlation_id()
    if cid:
        headers[RESPONSE_HEADER] = cid
    return headers


class CorrelationContext:
    """
    Sets a correlation id for code running outside an HTTP request.

    Works for async code too: the context variable is copied into tasks
    created inside the block.
    """

    def __init__(self, correlation_id: Optional[str] = None):
        self.correlation_id = correlation_id or generate_correlation_id()
        self._token: Optional[contextvars.Token] = None

    def __enter__(self) -> str:
        self._token = _correlation_id_ctx.set(self.correlation_id)
        return self.correlation_id

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._token is not None:
            _correlation_id_ctx.reset(self._token)
