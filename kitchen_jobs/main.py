"""Main entry point for the kitchen jobs service."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from kitchen_jobs import __version__
from kitchen_jobs.config import get_settings
from kitchen_jobs.handlers import Collaborators
from kitchen_jobs.lib.json_logger import setup_json_logging
from kitchen_jobs.routes import events, health, imports
from kitchen_jobs.routes.metrics import router as metrics_router
from kitchen_jobs.services import KitchenJobs

logger = logging.getLogger(__name__)

# Configure logging based on settings
settings = get_settings()

if settings.log_format == "json":
    setup_json_logging(level=settings.log_level, redact_secrets=True)
else:
    logging.basicConfig(level=settings.log_level.upper())


def create_app(
    collaborators: Optional[Collaborators] = None,
    start_workers: bool = True,
    jobs: Optional[KitchenJobs] = None,
) -> FastAPI:
    """Build the app; the domain services are supplied by the embedding application."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Run the worker pools alongside the HTTP server."""
        service = jobs or KitchenJobs(settings=get_settings(), collaborators=collaborators)
        await service.open()
        if start_workers:
            await service.start_workers()
            logger.info("Background workers started")
        app.state.jobs = service
        yield
        await service.close()
        logger.info("Background workers stopped")

    app = FastAPI(
        title="Kitchen Jobs",
        description="Background jobs and real-time events for the recipe planner",
        version=__version__,
        lifespan=lifespan,
    )

    # CORS middleware - origins from environment variable
    cors_origins = [origin.strip() for origin in get_settings().cors_origins.split(",") if origin.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health.router, prefix="/health", tags=["Health"])
    app.include_router(imports.router, prefix="/imports", tags=["Imports"])
    app.include_router(events.router, prefix="/events", tags=["Events"])
    app.include_router(metrics_router, tags=["Metrics"])

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "service": "kitchen-jobs",
            "version": __version__,
            "status": "running",
        }

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run(
        "kitchen_jobs.main:app",
        host="0.0.0.0",
        port=settings.port,
        reload=settings.debug,
    )
