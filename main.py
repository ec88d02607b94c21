import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError

from app.api.dependencies import get_indexing_worker, get_resolver, get_scheduler
from app.api.endpoints import router
from app.core.config import settings
from app.core.tracing import instrument_app, instrument_httpx, setup_tracing, shutdown_tracing
from app.services.http_client import http_client_manager
from app.shared.correlation import CorrelationMiddleware
from app.shared.errors import (
    KnowledgePipelineError,
    get_correlation_id,
    internal_error,
    pipeline_error_response,
    validation_error,
)
from app.shared.logging_config import setup_logging

SERVICE_NAME = "chatbot-knowledge-service"

setup_logging(SERVICE_NAME)
logger = logging.getLogger("Chatbot.Startup")


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_tracing(SERVICE_NAME)
    instrument_httpx()
    await http_client_manager.startup()

    if settings.BACKGROUND_WORKERS_ENABLED:
        app.state.indexing_worker = get_indexing_worker()
        app.state.scheduler = get_scheduler()
        await app.state.indexing_worker.start()
        await app.state.scheduler.start()
    else:
        logger.info("Background workers disabled (BACKGROUND_WORKERS_ENABLED=false)")

    yield

    if settings.BACKGROUND_WORKERS_ENABLED:
        await app.state.scheduler.stop()
        await app.state.indexing_worker.stop()
    if get_resolver.cache_info().currsize:
        await get_resolver().drain()
    await http_client_manager.shutdown()
    shutdown_tracing()


def create_app() -> FastAPI:
    app = FastAPI(
        title="Chatbot Knowledge Service",
        description="Knowledge ingestion and answer resolution for website chatbots",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.add_middleware(CorrelationMiddleware)

    @app.exception_handler(KnowledgePipelineError)
    async def handle_pipeline_error(request: Request, exc: KnowledgePipelineError):
        return pipeline_error_response(exc, correlation_id=get_correlation_id(request))

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return validation_error(
            "Invalid request",
            details={"errors": [{"loc": list(e["loc"]), "msg": e["msg"]} for e in exc.errors()]},
            correlation_id=get_correlation_id(request),
        )

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        logger.exception("Unhandled error")
        return internal_error(correlation_id=get_correlation_id(request))

    app.include_router(router, prefix="/api/v1")

    @app.get("/")
    async def root():
        return {"message": "Chatbot Knowledge Service Running"}

    instrument_app(app)
    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
