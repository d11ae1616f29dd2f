"""FastAPI application factory."""

import asyncio
from contextlib import asynccontextmanager
from typing import Callable, Coroutine, Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from mjrelay.api.routes import admin, full_generation, generation
from mjrelay.core import timezone  # noqa: F401  # sets TZ=UTC
from mjrelay.core.config import Settings, configure_logging
from mjrelay.core.database import init_db, setup_db_session
from mjrelay.services.attachment_resolver import AttachmentResolver
from mjrelay.services.discord.sessions import ClientFactory, SessionRegistry
from mjrelay.services.exceptions import RateLimitedError, ServiceError
from mjrelay.services.task_registry import TaskRegistry
from mjrelay.services.upscale.executor import UpscaleExecutor
from mjrelay.uow import create_uow_factory
from mjrelay.workers.full_generation_pipeline import FullGenerationPipeline
from mjrelay.workers.job_orchestrator import JobOrchestrator
from mjrelay.workers.registry_sweeper import run_registry_sweeper

logger = structlog.get_logger()


def create_resilient_worker(
    coro_factory: Callable[[], Coroutine],
    worker_name: str,
    shutdown_event: asyncio.Event,
) -> asyncio.Task:
    """Create a worker with automatic restart on failure.

    Args:
        coro_factory: Zero-argument callable returning a fresh worker coroutine
        worker_name: Human-readable worker name for logging
        shutdown_event: Event to signal graceful shutdown

    Returns:
        Initial task handle (will be auto-recreated on crash)
    """
    RESTART_DELAY = 1  # Fixed 1 second delay between restarts

    def on_worker_done(task: asyncio.Task):
        if shutdown_event.is_set():
            logger.info("worker.shutdown_complete", worker=worker_name)
            return

        if task.cancelled():
            logger.info("worker.cancelled", worker=worker_name)
            return

        exc = task.exception()
        if exc:
            logger.error(
                "worker.crashed",
                worker=worker_name,
                error=str(exc),
                error_type=type(exc).__name__,
                retry_in_seconds=RESTART_DELAY,
                exc_info=exc,
            )
        else:
            # Worker stopped cleanly (unexpected for infinite loop workers)
            logger.warning(
                "worker.stopped_unexpectedly",
                worker=worker_name,
                retry_in_seconds=RESTART_DELAY,
            )

        async def restart_worker():
            await asyncio.sleep(RESTART_DELAY)

            if shutdown_event.is_set():
                return

            logger.info("worker.restarting", worker=worker_name)
            new_task = asyncio.create_task(coro_factory())
            new_task.add_done_callback(on_worker_done)

        asyncio.create_task(restart_worker())

    task = asyncio.create_task(coro_factory())
    task.add_done_callback(on_worker_done)
    return task


def init_app_state(
    app: FastAPI,
    settings: Settings,
    session_factory,
    client_factory: Optional[ClientFactory] = None,
) -> None:
    """Build the core services and store them in app.state for route dependencies."""
    uow_factory = create_uow_factory(session_factory)
    sessions = SessionRegistry(settings, client_factory=client_factory)
    registry = TaskRegistry(ttl_seconds=settings.task_ttl_seconds)
    resolver = AttachmentResolver(sessions, settings)
    executor = UpscaleExecutor(sessions, settings)
    orchestrator = JobOrchestrator(registry, sessions, resolver, uow_factory, settings)
    pipeline = FullGenerationPipeline(orchestrator, executor, uow_factory, settings)

    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.uow_factory = uow_factory
    app.state.sessions = sessions
    app.state.registry = registry
    app.state.executor = executor
    app.state.orchestrator = orchestrator
    app.state.pipeline = pipeline


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager.

    Handles startup and shutdown tasks:
    - Startup: Configure logging, create tables, build services, start the registry sweeper
    - Shutdown: Stop the sweeper, cancel in-flight jobs, close Discord sessions and the DB pool
    """
    settings: Settings = app.state.settings
    configure_logging(settings)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    await init_db(session_factory)
    init_app_state(app, settings, session_factory)

    shutdown_event = asyncio.Event()
    sweeper_task = create_resilient_worker(
        lambda: run_registry_sweeper(app.state.registry, settings),
        "registry_sweeper",
        shutdown_event,
    )

    logger.info("application.startup", db_url=settings.database_url.split("@")[-1])

    yield

    logger.info("application.shutdown")
    shutdown_event.set()

    sweeper_task.cancel()
    await asyncio.gather(sweeper_task, return_exceptions=True)

    await app.state.orchestrator.shutdown()
    await app.state.sessions.close_all()
    await session_factory.kw["bind"].dispose()


async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    """Render every ServiceError as {"error": {"kind", "message", "hint"}}."""
    if exc.status_code >= 500:
        logger.warning(
            "request.failed",
            path=request.url.path,
            error_kind=exc.kind,
            error_message=exc.message,
        )
    headers = None
    if isinstance(exc, RateLimitedError):
        headers = {"Retry-After": str(max(1, round(exc.retry_after)))}
    return JSONResponse(
        status_code=exc.status_code, content={"error": exc.to_dict()}, headers=headers
    )


async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Report malformed bodies as 400 in the same shape as ServiceError."""
    problems = [
        f"{'.'.join(str(part) for part in err['loc'] if part != 'body')}: {err['msg']}"
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "error": {
                "kind": "validation_error",
                "message": "; ".join(problems) or "Invalid request",
                "hint": "See /docs for request examples",
            }
        },
    )


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Create and configure FastAPI application.

    Args:
        settings: Explicit settings (loaded from the environment when omitted)

    Returns:
        Configured FastAPI application instance
    """
    settings = settings or Settings()  # type: ignore[call-arg]

    app = FastAPI(
        title="mjrelay API",
        description="Task-based HTTP API for Midjourney generation and upscaling over Discord",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(ServiceError, service_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    app.include_router(generation.router)
    app.include_router(full_generation.router)
    app.include_router(admin.router)

    @app.get("/health")
    async def health_check(response: Response):
        """Health check endpoint with database connectivity test.

        Returns:
            200: {"status": "healthy", ...} if database connection succeeds
            503: {"status": "unhealthy", "error": {...}} if database connection fails
        """
        try:
            async with app.state.session_factory() as session:
                result = await session.execute(text("SELECT 1"))
                result.scalar()
        except SQLAlchemyError as e:
            logger.error(
                "health_check.failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return {
                "status": "unhealthy",
                "error": {
                    "type": type(e).__name__,
                    "message": str(e),
                },
            }

        logger.debug("health_check.success")
        return {
            "status": "healthy",
            "environment": app.state.settings.app_env,
            "active_tasks": len(app.state.registry),
            "active_jobs": app.state.orchestrator.active_jobs,
            "active_sessions": len(app.state.sessions),
        }

    return app


# Create app instance for uvicorn
app = create_app()
