"""
Mintops API - FastAPI Backend

Recurring-workflow automation core: run ledger, prepaid billing ledger,
notification delivery tracking and the scheduler supervisor.

Workflows and reminders only run once their data collaborators are
attached. Register them before the app starts:

    from mintops.services.scheduler_service import add_startup_hook

    @add_startup_hook
    def attach_sources(supervisor):
        supervisor.register_snapshot_builder("daily_briefing_email", build_briefing)
        supervisor.register_reminder_source(MintReminderStore())

The lifespan runs every hook right before arming the timers.
"""

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from sqlalchemy import text
import structlog

from mintops.routers import automation
from mintops.infrastructure.config import get_settings
from mintops.infrastructure.database import close_database, create_tables, get_engine, init_database
from mintops.infrastructure.exceptions import register_exception_handlers

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.dev.ConsoleRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()

SERVICE_NAME = "Mintops API"
VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("mintops_api_starting")
    settings = get_settings()
    logger.info(
        "configuration_loaded",
        pay_per_use_enabled=settings.pay_per_use_enabled,
        interval_seconds=settings.scheduler_interval_seconds,
    )

    await init_database(settings.database_url)
    if settings.auto_create_tables:
        await create_tables()

    # Apply startup hooks, then arm the automation and reminder timers
    try:
        from mintops.services.scheduler_service import start_scheduler
        await start_scheduler()
        logger.info("automation_scheduler_started")
    except Exception as e:
        logger.warning("automation_scheduler_start_failed", error=str(e))

    yield

    try:
        from mintops.services.scheduler_service import stop_scheduler
        await stop_scheduler()
        logger.info("automation_scheduler_stopped")
    except Exception as e:
        logger.warning("automation_scheduler_stop_failed", error=str(e))

    await close_database()
    logger.info("mintops_api_stopped")


app = FastAPI(
    title=SERVICE_NAME,
    description="Recurring-workflow automation with metered billing and retrying notification delivery",
    version=VERSION,
    lifespan=lifespan,
)

# Register global exception handlers
register_exception_handlers(app)

# Include routers
app.include_router(automation.router, prefix="/api/automation", tags=["Automation"])


@app.get("/")
async def root():
    """Health check endpoint."""
    return {
        "status": "ok",
        "service": SERVICE_NAME,
        "version": VERSION,
    }


@app.get("/health")
async def health():
    """
    Readiness check: database reachable and scheduler state.
    Returns 503 if the database is down.
    """
    checks = {}
    is_ready = True

    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except Exception as e:
        logger.warning("health_database_check_failed", error=str(e))
        checks["database"] = "error"
        is_ready = False

    from mintops.services.scheduler_service import get_scheduler_supervisor
    supervisor = get_scheduler_supervisor()
    checks["scheduler"] = "ok" if supervisor.get_status()["running"] else "stopped"

    body = {"status": "healthy" if is_ready else "unhealthy", "components": checks}
    if not is_ready:
        return JSONResponse(status_code=503, content=body)
    return body
