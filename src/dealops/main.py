"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS, Sentry,
the error envelope handlers, lifespan events for database initialization and
the reconciliation background loops, and the v1 API router.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.dealops.api.middleware import LoggingMiddleware, register_error_handlers
from src.dealops.api.middleware.logging import configure_structlog
from src.dealops.api.v1 import health
from src.dealops.api.v1.router import router as v1_router
from src.dealops.config import get_settings
from src.dealops.core.database import close_db, get_session, init_db
from src.dealops.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.dealops.ledger.repository import LedgerRepository
from src.dealops.ledger.scheduler import (
    setup_reconciliation_tasks,
    start_scheduler_background,
    stop_scheduler_background,
    task_intervals,
)
from src.dealops.ledger.services import LedgerServices


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB, services and background loops; tear down on shutdown."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()
    await init_db()

    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    ledger = LedgerServices(LedgerRepository(session_factory=get_session), settings)
    app.state.ledger = ledger
    log.info("ledger.services_initialized", environment=settings.ENVIRONMENT.value)

    if settings.SCHEDULER_ENABLED:
        tasks = setup_reconciliation_tasks(
            replication_engine=ledger.replication_engine,
            import_runner=ledger.import_runner,
            duplicate_detector=ledger.duplicate_detector,
        )
        await start_scheduler_background(tasks, task_intervals(settings), app.state)
    else:
        log.info("scheduler.disabled")

    yield

    # ── Shutdown ──────────────────────────────────────────────────────────
    await stop_scheduler_background(app.state)
    app.state.ledger = None
    await close_db()
    log.info("app.shutdown_complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Dealops Reconciliation API",
        version="0.1.0",
        description="Deal ledger reconciliation, replication, distribution and CSV import",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)

    # CORS middleware (answers OPTIONS preflight requests)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_cors_origins(),
        allow_credentials=settings.CORS_ALLOWED_ORIGINS != "*",
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    register_error_handlers(app)

    app.include_router(health.router)
    app.include_router(v1_router)

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
