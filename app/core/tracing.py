"""
OpenTelemetry tracing for the knowledge service.

Disabled unless OTEL_ENABLED=true. When disabled, `get_tracer` still works
and hands out the no-op tracer, so spans around answer resolution and job
execution cost nothing.

    tracer = get_tracer("Chatbot.Knowledge.Resolver")
    with tracer.start_as_current_span("resolve_answer") as span:
        span.set_attribute("chatbot_id", chatbot_id)
"""

import logging
import os
from typing import Optional

from opentelemetry import trace
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.trace import Tracer

logger = logging.getLogger("Chatbot.Tracing")

DEFAULT_SERVICE_NAME = "chatbot-knowledge-service"

_tracer_provider: Optional[TracerProvider] = None
_is_initialized = False


def is_tracing_enabled() -> bool:
    return os.getenv("OTEL_ENABLED", "false").lower() == "true"


def setup_tracing(service_name: Optional[str] = None) -> Optional[TracerProvider]:
    """Install a global TracerProvider exporting to the console. No-op when disabled."""
    global _tracer_provider, _is_initialized

    if _is_initialized:
        return _tracer_provider

    _is_initialized = True
    if not is_tracing_enabled():
        logger.info("OpenTelemetry tracing is disabled (set OTEL_ENABLED=true to enable)")
        return None

    effective_service_name = service_name or os.getenv("OTEL_SERVICE_NAME") or DEFAULT_SERVICE_NAME
    _tracer_provider = TracerProvider(resource=Resource.create({SERVICE_NAME: effective_service_name}))
    _tracer_provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
    trace.set_tracer_provider(_tracer_provider)

    logger.info(f"OpenTelemetry tracing initialized for service: {effective_service_name}")
    return _tracer_provider


def get_tracer(name: str) -> Tracer:
    return trace.get_tracer(name)


def instrument_app(app) -> None:
    """Trace incoming FastAPI requests."""
    if not is_tracing_enabled():
        return
    FastAPIInstrumentor.instrument_app(app)
    logger.info("FastAPI instrumentation enabled")


def instrument_httpx() -> None:
    """Trace outbound crawler and notification requests."""
    if not is_tracing_enabled():
        return
    HTTPXClientInstrumentor().instrument()
    logger.info("httpx instrumentation enabled")


def shutdown_tracing() -> None:
    """Flush pending spans. Called from the app lifespan on shutdown."""
    global _tracer_provider, _is_initialized

    if _tracer_provider is not None:
        _tracer_provider.shutdown()
        logger.info("OpenTelemetry tracing shut down")

    _tracer_provider = None
    _is_initialized = False
