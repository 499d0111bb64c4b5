"""FastAPI application setup with lifespan and exception handlers."""

from contextlib import asynccontextmanager
import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from pubpipe import validate_dependencies
from pubpipe.config import settings
from pubpipe.db import init_database, shutdown
from pubpipe.orchestrator.publication import PublicationScheduler
from pubpipe.orchestrator.runtime import Runtime, build_runtime
from pubpipe.orchestrator.service import SchedulerService
from pubpipe.api.routes import router

logger = logging.getLogger(__name__)


def create_app(runtime: Optional[Runtime] = None, start_schedulers: bool = True) -> FastAPI:
    """Build the API application.

    Args:
        runtime: Collaborators to serve; built from settings on startup when omitted.
        start_schedulers: Run the ingestion and publication loops in-process.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager.

        Startup:
            - Initialize database schema and runtime (when not injected)
            - Validate external tools and start both schedulers

        Shutdown:
            - Stop schedulers, close clients and database connections
        """
        # Startup
        logger.info("Starting pubpipe API...")
        owns_runtime = runtime is None
        if owns_runtime:
            await init_database()
            app.state.runtime = build_runtime()
        else:
            app.state.runtime = runtime

        service = None
        if start_schedulers:
            tools = app.state.runtime.settings.tools
            validate_dependencies(tools.ffmpeg_path, tools.ytdlp_path)
            service = SchedulerService(app.state.runtime)
            await service.start()
        app.state.scheduler = service
        app.state.publication = service.publication if service else PublicationScheduler(app.state.runtime)
        logger.info("API startup complete")

        yield

        # Shutdown
        logger.info("Shutting down pubpipe API...")
        if service is not None:
            await service.stop()
        if owns_runtime:
            await app.state.runtime.aclose()
            await shutdown()
        logger.info("API shutdown complete")

    app = FastAPI(
        title="pubpipe API",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:5173"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """Catch-all exception handler to prevent stack traces in API responses."""
        logger.error(f"Unhandled exception in {request.method} {request.url.path}: {type(exc).__name__}: {str(exc)}")
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "detail": str(exc),
            }
        )

    return app


app = create_app()
