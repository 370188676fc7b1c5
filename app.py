"""
app.py: FastAPI application factory and startup lifecycle.

This is the ASGI application object imported by uvicorn.
It wires the repository and optimization service, registers the schedule
router, and prepares the database on startup.

Usage (via launcher):
    python main.py

Usage (direct uvicorn):
    uvicorn app:app --reload
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from schedule_optimizer.controllers.schedule_controller import router as schedule_router
from schedule_optimizer.repository.data_repository import DataRepository
from schedule_optimizer.services.optimization_service import ScheduleOptimizationService
from schedule_optimizer.utils.config import Settings, get_settings
from schedule_optimizer.utils.logger import get_logger


logger = get_logger(__name__)


def create_app(settings: Optional[Settings] = None, seed_demo: bool = True) -> FastAPI:
    """
    Build and wire the FastAPI application.

    The single DataRepository serves as schedule store and as both
    availability gateways; everything is reachable from app.state.
    """
    settings = settings or get_settings()

    repository = DataRepository(settings)
    optimization_service = ScheduleOptimizationService(
        schedule_store=repository,
        therapist_gateway=repository,
        room_gateway=repository,
        settings=settings,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Run startup initialization before accepting requests."""
        _startup(app, seed_demo=seed_demo)
        yield

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        lifespan=lifespan,
    )

    app.include_router(schedule_router)

    app.state.repository = repository
    app.state.optimization_service = optimization_service

    return app


def _startup(app: FastAPI, seed_demo: bool = True) -> None:
    """
    Idempotent startup sequence. Safe to re-run on server restarts.

    Schema must exist before the demo roster and day are seeded.
    """
    repository: DataRepository = app.state.repository

    logger.info("Startup: initializing database schema")
    repository.initialize_database()

    if seed_demo:
        logger.info("Startup: seeding demo roster and schedule (skipped if already present)")
        repository.seed_demo_data()

    logger.info("Startup complete | database=%s", repository.database_path)


# Module-level app object for uvicorn
app = create_app()
