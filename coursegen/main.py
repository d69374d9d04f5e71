"""Main FastAPI application."""

import logging
import re
import time
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from sqlalchemy import text
from sqlalchemy.orm import Session

from . import __version__
from .api import admin_router, jobs_router
from .core.config import ConfigurationError, settings
from .core.logging_config import setup_logging
from .database import DATABASE_URL, get_db, init_db
from .exceptions import CourseGenException
from .middleware.exception_handler import coursegen_exception_handler

setup_logging(log_level=settings.log_level, log_format=settings.log_format)
logger = logging.getLogger(__name__)


def _mask_url(url: str) -> str:
    """Mask password in database URL for safe logging."""
    return re.sub(r'://([^:]+):([^@]+)@', r'://\1:***@', url)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle for the pipeline API."""
    logger.info(f"Environment: {settings.environment.value}")
    try:
        settings.validate_production_config()
    except ConfigurationError as e:
        logger.critical(f"STARTUP BLOCKED: {e}")
        raise SystemExit(1) from e

    if not settings.generator_configured():
        logger.warning(
            "GENERATOR_MODEL is empty. Only syntax repair and the emergency "
            "fallback can run; LLM-backed repair strategies will be skipped."
        )

    logger.info(f"Connecting to database: {_mask_url(DATABASE_URL)}")
    init_db()

    yield


app = FastAPI(
    title="Course Generation Pipeline API",
    description=(
        "Job lifecycle, stage progress and generation traces for the "
        "multi-stage course generation pipeline."
    ),
    version=__version__,
    lifespan=lifespan,
)

app.add_exception_handler(CourseGenException, coursegen_exception_handler)

app.include_router(jobs_router)
app.include_router(admin_router)


_startup_time = time.monotonic()


@app.get("/health")
def health_check(db: Session = Depends(get_db)):
    """Health check endpoint returning database status and uptime.

    Never raises; returns degraded status on DB failure so load balancers
    can still poll it without receiving 5xx.
    """
    db_status = "ok"
    try:
        db.execute(text("SELECT 1"))
    except Exception:
        db_status = "error"

    return {
        "status": "healthy" if db_status == "ok" else "degraded",
        "db": db_status,
        "uptime_seconds": round(time.monotonic() - _startup_time),
        "version": __version__,
    }
