import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from restobot.core.config import CORS_ORIGINS, DATABASE_URL, RESTAURANT_NAME, SCHEDULER_ENABLED
from restobot.core.database import Base, engine
from restobot.core.logging_setup import configure_logging
from restobot.core.startup_checks import (
    ensure_migrations_applied,
    report_integration_config,
    validate_database_environment,
)
from restobot.middleware.observability import ObservabilityMiddleware
import restobot.models  # models must be imported before create_all
import restobot.services.event_handlers  # registers event bus handlers
import restobot.services.reconciliation  # registers the auto-confirm task handler
from restobot.services.scheduler import TaskRunner

from restobot.routers.webhook import router as webhook_router
from restobot.routers.payments import router as payments_router
from restobot.routers.menu import router as menu_router
from restobot.routers.orders import router as orders_router
from restobot.routers.reservations import router as reservations_router
from restobot.routers.realtime import router as realtime_router

configure_logging()

logger = logging.getLogger(__name__)
STARTUP_PREFIX = "[STARTUP]"
REPO_ROOT = Path(__file__).resolve().parents[1]
ALEMBIC_CONFIG_PATH = Path(
    os.getenv("ALEMBIC_CONFIG", str(REPO_ROOT / "alembic.ini"))
)

_task_runner: TaskRunner | None = None


def _startup_tasks() -> None:
    try:
        validate_database_environment()
        if DATABASE_URL.startswith("sqlite"):
            Base.metadata.create_all(bind=engine)
        ensure_migrations_applied(engine=engine, alembic_config_path=ALEMBIC_CONFIG_PATH)
        report_integration_config()
    except Exception:
        logger.exception("%s ERROR startup failed", STARTUP_PREFIX)
        raise


def _start_task_runner() -> None:
    global _task_runner
    if not SCHEDULER_ENABLED:
        logger.info("%s task runner disabled", STARTUP_PREFIX)
        return
    _task_runner = TaskRunner()
    _task_runner.start()


def _stop_task_runner() -> None:
    global _task_runner
    if _task_runner is not None:
        _task_runner.stop()
        _task_runner = None


@asynccontextmanager
async def lifespan(_: FastAPI):
    _startup_tasks()
    _start_task_runner()
    logger.info("%s %s bot ready", STARTUP_PREFIX, RESTAURANT_NAME)
    try:
        yield
    finally:
        _stop_task_runner()


app = FastAPI(
    title="Restaurant WhatsApp Bot API",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(ObservabilityMiddleware)

# Routers
app.include_router(webhook_router)
app.include_router(payments_router)
app.include_router(menu_router)
app.include_router(orders_router)
app.include_router(reservations_router)
app.include_router(realtime_router)


@app.get("/")
def root():
    return {"status": "ok"}


@app.get("/health")
def health():
    return {"status": "healthy"}
