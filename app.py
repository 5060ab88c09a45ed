"""
app.py: FastAPI application factory and startup lifecycle.

This is the ASGI application object imported by uvicorn.
It wires the engine services, registers routers, and runs startup initialization.

Usage (via launcher):
    python main.py

Usage (direct uvicorn):
    uvicorn app:app --reload
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from turnkeeper.controllers.reservation_controller import router as reservation_router
from turnkeeper.controllers.rotation_controller import router as rotation_router
from turnkeeper.controllers.selection_controller import router as selection_router
from turnkeeper.controllers.settlement_controller import router as settlement_router
from turnkeeper.repository.data_repository import DataRepository
from turnkeeper.services.billing_service import billing_from_settings
from turnkeeper.services.reservation_service import ReservationService
from turnkeeper.services.rotation_service import RotationService, selection_rotation_year
from turnkeeper.services.season_summary_service import SeasonSummaryService
from turnkeeper.services.selection_service import SelectionService
from turnkeeper.services.settlement_service import SettlementEngine
from turnkeeper.services.usage_ledger import UsageLedger
from turnkeeper.services.window_service import WindowService
from turnkeeper.utils.clock import Clock, utc_now
from turnkeeper.utils.config import Settings, get_settings
from turnkeeper.utils.logger import get_logger


logger = get_logger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    clock: Clock = utc_now,
    seed_demo: bool = True,
) -> FastAPI:
    """
    Build and wire the FastAPI application.

    Every service shares one repository and one clock through app.state.
    """
    settings = settings or get_settings()

    # --- Repository (SQLite connection factory) ---
    repository = DataRepository(settings)

    # --- Services ---
    rotation_service = RotationService(repository=repository, settings=settings, clock=clock)
    usage_ledger = UsageLedger(repository=repository, settings=settings, clock=clock)
    window_service = WindowService(
        repository=repository,
        settings=settings,
        clock=clock,
        rotation_service=rotation_service,
    )
    selection_service = SelectionService(
        repository=repository,
        settings=settings,
        clock=clock,
        rotation_service=rotation_service,
        ledger=usage_ledger,
    )
    reservation_service = ReservationService(
        repository=repository,
        settings=settings,
        clock=clock,
        billing=billing_from_settings(settings),
        selection_service=selection_service,
        window_service=window_service,
    )
    settlement_engine = SettlementEngine(repository=repository, settings=settings, clock=clock)
    summary_service = SeasonSummaryService(repository=repository, settings=settings)

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

    # --- Routers ---
    app.include_router(rotation_router)
    app.include_router(selection_router)
    app.include_router(reservation_router)
    app.include_router(settlement_router)

    # --- Inject services into app.state for dependency resolution ---
    app.state.settings = settings
    app.state.clock = clock
    app.state.repository = repository
    app.state.rotation_service = rotation_service
    app.state.usage_ledger = usage_ledger
    app.state.window_service = window_service
    app.state.selection_service = selection_service
    app.state.reservation_service = reservation_service
    app.state.settlement_engine = settlement_engine
    app.state.summary_service = summary_service

    return app


def _startup(app: FastAPI, *, seed_demo: bool) -> None:
    """
    Idempotent startup sequence. Safe to re-run on server restarts.

    The schema must exist before the demo organization is seeded.
    """
    repository: DataRepository = app.state.repository
    settings: Settings = app.state.settings

    logger.info("Startup: initializing database schema")
    repository.initialize_database()

    if seed_demo:
        rotation_year = selection_rotation_year(
            settings.default_start_month,
            app.state.clock().date(),
        )
        logger.info("Startup: seeding demo organization for %s", rotation_year)
        repository.seed_demo_organization(settings.demo_organization_id, rotation_year)

    logger.info("Startup complete; engine ready")


# Module-level app object for uvicorn
app = create_app()
