"""
app.py: FastAPI application factory and startup lifecycle.

This is the ASGI application object imported by uvicorn.
It wires the repository, gateway and scheduler session, registers routers,
and runs startup initialization.

Usage (via launcher):
    python main.py

Usage (direct uvicorn):
    uvicorn app:app --reload
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from backend.controllers.booking_controller import router as booking_router
from backend.controllers.scheduler_controller import router as timeline_router
from backend.repository.data_repository import DataRepository
from backend.services.gateway import RepositoryScheduleGateway
from backend.services.scheduler_service import SchedulerSession
from backend.utils.config import Settings, get_settings
from backend.utils.logger import configure_logging, get_logger


logger = get_logger(__name__)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build and wire the FastAPI application.

    Services are injected through app.state so every dependency is traceable
    from this function.
    """
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    # --- Repository (SQLite connection factory) ---
    repository = DataRepository(settings)

    # --- Collaborator gateway and the per-process scheduler session ---
    gateway = RepositoryScheduleGateway(repository)
    scheduler_session = SchedulerSession(gateway=gateway, settings=settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Run startup initialization before accepting requests."""
        await _startup(app, settings)
        yield

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        lifespan=lifespan,
    )

    # --- Routers ---
    app.include_router(timeline_router)
    app.include_router(booking_router)

    # --- Inject services into app.state for dependency resolution ---
    app.state.repository = repository
    app.state.gateway = gateway
    app.state.scheduler_session = scheduler_session

    return app


async def _startup(app: FastAPI, settings: Settings) -> None:
    """
    Idempotent startup sequence. Safe to re-run on server restarts.

    Order matters:
      1. Schema must exist before seeding.
      2. The demo fleet is seeded only into an empty database.
      3. The first schedule fetch runs last so the timeline is ready.
    """
    repository: DataRepository = app.state.repository
    session: SchedulerSession = app.state.scheduler_session

    logger.info("Startup: initializing database schema")
    repository.initialize_database()

    if settings.seed_demo_fleet:
        logger.info("Startup: seeding demo fleet (skipped if Cars table not empty)")
        repository.seed_demo_fleet()

    logger.info("Startup: loading initial schedule window")
    await session.refresh()

    logger.info("Startup complete; scheduler ready")


# Module-level app object for uvicorn
app = create_app()
