"""
TicketDesk - Main Application
=============================

IT help desk ticket lifecycle and SLA/escalation engine.

Modules:
- Tickets: Lifecycle state machine, assignment, comments, audit trail
- SLA: Policy table, deadlines, live SLA state and the escalation sweep

Clean Architecture Layers:
- Interfaces: FastAPI controllers
- Application: Services and DTOs
- Domain: Entities, value objects and rules
- Infrastructure: Database, staff directory, notifications
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

# Configuration and Core
from ticketdesk.config import Settings, settings as default_settings
from ticketdesk.core import ApplicationException

# Infrastructure
from ticketdesk.infrastructure.database import Database
from ticketdesk.shared.infrastructure.clock import SystemClock
from ticketdesk.shared.infrastructure.locks import KeyedLockRegistry

# SLA Module
from ticketdesk.sla.application import SLAService
from ticketdesk.sla.infrastructure import SLAConfigManager, EscalationScheduler

# Tickets Module
from ticketdesk.tickets.application import TicketLifecycleService, EscalationEngine
from ticketdesk.tickets.application.dto import HealthResponse
from ticketdesk.tickets.infrastructure import (
    InMemoryTicketRepository,
    InMemoryStaffDirectory,
    SQLAlchemyTicketRepository,
    SQLAlchemyStaffDirectory,
    WebhookNotificationDispatcher,
    LoggingNotificationDispatcher,
    load_staff_profiles,
)
from ticketdesk.tickets.interfaces import tickets_router, escalations_router

# Shared API plumbing
from ticketdesk.shared.api.middleware import (
    CorrelationIDMiddleware,
    LoggingMiddleware,
    application_exception_handler,
    request_validation_exception_handler,
    global_exception_handler,
)

# Logging
from ticketdesk.shared.infrastructure.logging import setup_logging, get_logger

logger = get_logger(__name__)


async def _build_storage(app: FastAPI, config: Settings):
    """Repository and staff directory for the configured backend."""
    if config.storage_backend == "memory":
        logger.warning("Using in-memory storage; tickets are lost on restart")
        directory = (
            InMemoryStaffDirectory.from_yaml(config.staff_directory_path)
            if config.staff_directory_path else InMemoryStaffDirectory()
        )
        return InMemoryTicketRepository(), directory

    logger.info("Initializing database")
    database = Database(
        config.database_url,
        echo=config.debug,
        pool_size=config.db_pool_size,
        max_overflow=config.db_max_overflow,
    )
    # Create tables (for development - use Alembic in production)
    await database.create_tables()
    app.state.database = database

    directory = SQLAlchemyStaffDirectory(database)
    if config.staff_directory_path:
        seeded = await directory.seed(load_staff_profiles(config.staff_directory_path))
        logger.info("Seeded staff directory", extra={"profiles": seeded})
    return SQLAlchemyTicketRepository(database), directory


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Application lifespan manager.

    STARTUP:
    1. Setup structured logging
    2. Load SLA policy and watch the file for changes
    3. Open storage (database or in-memory) and the staff directory
    4. Build the lifecycle service and escalation engine
    5. Start the escalation scheduler

    SHUTDOWN:
    1. Stop escalation scheduler
    2. Stop policy watcher
    3. Close notification dispatcher
    4. Close database connections
    """
    config: Settings = app.state.settings

    # === STARTUP ===
    setup_logging(config.log_level, config.environment)
    logger.info("Starting TicketDesk", extra={
        "version": config.app_version,
        "environment": config.environment,
        "storage_backend": config.storage_backend
    })

    logger.info("Loading SLA configuration")
    sla_config_manager = SLAConfigManager()
    sla_config_manager.load(config.sla_config_path)
    sla_config_manager.start_watching()
    app.state.sla_config_manager = sla_config_manager
    app.state.database = None

    repository, directory = await _build_storage(app, config)

    if config.notification_webhook_url:
        notifier = WebhookNotificationDispatcher(
            config.notification_webhook_url,
            timeout_seconds=config.notification_timeout_seconds
        )
    else:
        notifier = LoggingNotificationDispatcher()

    clock = SystemClock()
    locks = KeyedLockRegistry()
    lifecycle_service = TicketLifecycleService(
        repository,
        directory,
        notifier,
        SLAService(sla_config_manager),
        locks,
        clock,
        recompute_sla_on_escalation=config.recompute_sla_on_escalation
    )
    escalation_engine = EscalationEngine(
        repository,
        lifecycle_service,
        clock,
        concurrency=config.escalation_sweep_concurrency,
        budget_seconds=config.escalation_sweep_budget_seconds,
        batch_size=config.escalation_sweep_batch_size
    )

    scheduler: Optional[EscalationScheduler] = None
    if config.escalation_sweep_interval > 0:
        scheduler = EscalationScheduler(interval_seconds=config.escalation_sweep_interval)
        await scheduler.start(escalation_engine.scheduled_sweep)
    else:
        logger.info("Escalation scheduler disabled")

    # Store services in app state for dependency injection
    app.state.clock = clock
    app.state.locks = locks
    app.state.notifier = notifier
    app.state.lifecycle_service = lifecycle_service
    app.state.escalation_engine = escalation_engine
    app.state.scheduler = scheduler

    logger.info("TicketDesk started successfully")

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Shutting down TicketDesk")

    if scheduler:
        await scheduler.stop()

    sla_config_manager.stop_watching()
    await notifier.close()
    locks.close()

    if app.state.database is not None:
        await app.state.database.close()

    logger.info("TicketDesk shutdown complete")


async def health_check(request: Request) -> HealthResponse:
    """
    Health check endpoint for load balancers and orchestrators.

    Returns service health status including:
    - Database connectivity
    - SLA policy status
    - Scheduler state
    """
    config: Settings = request.app.state.settings
    state = request.app.state
    checks = {
        "database": "not_used",
        "sla_config": "loaded" if getattr(state, "sla_config_manager", None) else "not_loaded",
        "escalation_scheduler": "stopped",
        "notifications": "webhook" if config.notification_webhook_url else "log",
    }

    scheduler = getattr(state, "scheduler", None)
    if scheduler is not None and scheduler.is_running:
        checks["escalation_scheduler"] = "running"

    healthy = True
    database = getattr(state, "database", None)
    if database is not None:
        try:
            await database.ping()
            checks["database"] = "connected"
        except Exception as e:
            healthy = False
            checks["database"] = f"error: {type(e).__name__}"

    return HealthResponse(
        status="healthy" if healthy else "degraded",
        version=config.app_version,
        environment=config.environment,
        storage_backend=config.storage_backend,
        checks=checks,
    )


async def root(request: Request) -> dict:
    """Root endpoint with API information."""
    return {
        "service": "TicketDesk",
        "version": request.app.state.settings.app_version,
        "architecture": "Clean Architecture / Modular Monolith",
        "docs": "/docs",
        "health": "/health",
        "modules": {
            "tickets": {
                "prefix": "/tickets",
                "endpoints": [
                    "POST /tickets - Create ticket",
                    "GET /tickets - List visible tickets",
                    "GET /tickets/{ref} - Get ticket by id or number",
                    "POST /tickets/{ref}/status - Change status",
                    "POST /tickets/{ref}/escalate - Escalate",
                    "GET /tickets/{ref}/audit - Audit trail"
                ]
            },
            "escalations": {
                "prefix": "/escalations",
                "endpoints": ["POST /escalations/sweep - Run escalation sweep"]
            }
        }
    }


def create_app(config: Optional[Settings] = None, use_lifespan: bool = True) -> FastAPI:
    """
    Build the FastAPI application.

    ``use_lifespan=False`` leaves ``app.state`` for the caller to populate,
    which is how tests inject in-memory services and a fixed clock.
    """
    config = config or default_settings

    app = FastAPI(
        title="TicketDesk API",
        description="""
    ## IT Help Desk Ticket Lifecycle & SLA Engine

    ### 🎫 Tickets

    - Daily sequential ticket numbers (`TKT-YYYYMMDD-NNNN`)
    - Auto-assignment to the least-loaded available technician
    - Lifecycle state machine with role-based transition rules
    - Comments (public / internal), attachments, satisfaction ratings
    - Field-level audit trail for every change

    ### ⏱️ SLA & Escalation

    | Priority | Response | Resolution |
    |----------|----------|------------|
    | Critical | 30 min   | 4 h        |
    | High     | 2 h      | 24 h       |
    | Medium   | 8 h      | 3 days     |
    | Low      | 24 h     | 7 days     |

    Overdue tickets are escalated automatically by a periodic sweep, up to
    level 3 (admin).

    Every request must carry the caller's user id in `X-Actor-Id`.
    """,
        version=config.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan if use_lifespan else None
    )
    app.state.settings = config

    # === CORS Middleware ===
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # === Custom Middleware (from shared) ===
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(CorrelationIDMiddleware)
    app.add_exception_handler(ApplicationException, application_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    # === Include Module Routers ===
    app.include_router(tickets_router)
    app.include_router(escalations_router)

    # === Health Check and Root ===
    app.add_api_route(
        "/health", health_check, methods=["GET"], tags=["Health"], response_model=HealthResponse
    )
    app.add_api_route("/", root, methods=["GET"], tags=["Root"])

    return app


# Create FastAPI application
app = create_app()


# === Development Entry Point ===

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "ticketdesk.main:app",
        host=default_settings.host,
        port=default_settings.port,
        reload=default_settings.environment == "development",
        log_level="info"
    )
