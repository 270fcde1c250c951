"""Drill evaluation FastAPI application entry point."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from drill_eval.config import get_settings
from drill_eval.dependencies import build_container
from drill_eval.exception_handlers import register_exception_handlers
from drill_eval.middleware import configure_logging, register_middleware
from drill_eval.routers import evaluate_router
from drill_eval.schemas import HealthResponse

SERVICE_NAME = "drill-eval-api"
SERVICE_VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Build the service container on startup and drain it on shutdown."""
    settings = get_settings()
    configure_logging()
    logger.info(
        "Application starting",
        environment=settings.environment,
        debug=settings.debug,
        store_backend=settings.store_backend,
    )

    container = getattr(app.state, "container", None)
    if container is None:
        container = build_container(settings)
        app.state.container = container
    await container.start()
    try:
        yield
    finally:
        logger.info("Application shutting down")
        await container.shutdown()
        app.state.container = None


app = FastAPI(
    title="Drill Evaluation API",
    description="Resilient scoring and feedback for interview practice answers",
    version=SERVICE_VERSION,
    lifespan=lifespan,
)

register_middleware(app)

register_exception_handlers(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(evaluate_router, prefix="/api")


@app.get(
    "/health",
    response_model=HealthResponse,
    tags=["Health"],
    summary="Health check endpoint",
)
async def health_check() -> HealthResponse:
    """Health check endpoint for container orchestration."""
    return HealthResponse(
        status="healthy",
        service=SERVICE_NAME,
        version=SERVICE_VERSION,
    )
