"""BallotGate API - Main FastAPI application."""

import logging
import os
import sys
from contextlib import asynccontextmanager

import redis
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from ballotgate_api.errors import BallotGateError
from ballotgate_api.middleware.auth import AuthMiddleware
from ballotgate_api.middleware.correlation import CorrelationIDMiddleware
from ballotgate_api.middleware.rate_limit import RateLimitMiddleware
from ballotgate_api.routes import admin, ballots, tokens
from ballotgate_api.settings import get_settings
from ballotgate_api.storage.partition import TRANSIENT_ERRORS

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=settings.log_level,
    format='{"time": "%(asctime)s", "level": "%(levelname)s", "message": "%(message)s", "module": "%(name)s"}',
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)

RETRY_AFTER_SECONDS = "2"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    logger.info("Starting BallotGate API...")
    try:
        settings.validate_production_settings()
    except ValueError as e:
        logger.error(f"Configuration validation failed: {e}")
        raise

    from ballotgate_api.admission.coordinator import get_coordinator
    from ballotgate_api.storage.partition import get_partition_registry

    for store in get_partition_registry().stores():
        try:
            store.ensure_schema()
        except TRANSIENT_ERRORS as e:
            logger.error(f"Partition {store.partition_id} unreachable at startup: {e}")

    coordinator = get_coordinator()
    logger.info(f"Shard topology: {coordinator.router.describe()}")

    yield
    logger.info("Shutting down BallotGate API...")


app = FastAPI(
    title="BallotGate API",
    description="Vote admission: identity resolution, ballot tokens, sharded single-write admission",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=settings.cors_allow_methods,
    allow_headers=settings.cors_allow_headers,
)

# Custom middleware (order matters - last added is first executed)
app.add_middleware(RateLimitMiddleware)  # Needs the client set by auth
app.add_middleware(AuthMiddleware)
app.add_middleware(CorrelationIDMiddleware)

# Prometheus metrics
metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)

# Register routers
app.include_router(tokens.router)
app.include_router(ballots.router)
app.include_router(admin.router)


@app.exception_handler(BallotGateError)
async def ballotgate_error_handler(request: Request, exc: BallotGateError):
    """Render admission errors with their stable error code."""
    headers = {"Retry-After": RETRY_AFTER_SECONDS} if exc.retryable else None
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict(), headers=headers)


@app.get("/health")
async def health_check():
    """Health check endpoint (basic liveness)."""
    return {
        "status": "healthy",
        "service": "ballotgate-api",
        "version": "0.1.0",
    }


def check_database() -> bool:
    from ballotgate_api.db.session import SessionLocal

    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError as e:
        logger.error(f"Database check failed: {e}")
        return False
    finally:
        db.close()


def check_migrations() -> bool:
    """Whether the control-plane schema is at the Alembic head revision."""
    from alembic.config import Config
    from alembic.runtime.migration import MigrationContext
    from alembic.script import ScriptDirectory

    from ballotgate_api.db.session import engine

    alembic_ini_path = os.path.join(os.path.dirname(__file__), "..", "alembic.ini")
    script = ScriptDirectory.from_config(Config(alembic_ini_path))
    head_rev = script.get_current_head()
    try:
        with engine.connect() as connection:
            current_rev = MigrationContext.configure(connection).get_current_revision()
    except SQLAlchemyError as e:
        logger.error(f"Migration check failed: {e}")
        return False
    if current_rev != head_rev:
        logger.warning(f"Migrations not at head: current={current_rev}, head={head_rev}")
        return False
    return True


def check_redis() -> bool:
    try:
        redis.from_url(settings.redis_url, decode_responses=True).ping()
        return True
    except redis.RedisError as e:
        logger.error(f"Redis check failed: {e}")
        return False


@app.get("/ready")
def readiness_check():
    """Readiness check endpoint (verifies dependencies)."""
    from ballotgate_api.audit.ledger import get_audit_ledger
    from ballotgate_api.storage.partition import get_partition_registry

    checks = {
        "database": check_database(),
        "migrations": False,
        "redis": check_redis(),
        "partitions": {store.partition_id: store.ping() for store in get_partition_registry().stores()},
    }
    if checks["database"]:
        checks["migrations"] = check_migrations()

    ledger = get_audit_ledger()
    ledger.flush()
    audit = ledger.status()

    # A degraded audit ledger or a down partition is reported but does not
    # take the instance out of rotation; other partitions keep admitting.
    required = [checks["database"], checks["migrations"], any(checks["partitions"].values())]
    if settings.rate_limit_enabled:
        required.append(checks["redis"])
    all_ready = all(required)

    return JSONResponse(
        content={
            "status": "ready" if all_ready else "not_ready",
            "checks": checks,
            "audit": audit,
        },
        status_code=200 if all_ready else 503,
    )


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": "BallotGate API",
        "version": "0.1.0",
        "docs": "/docs",
        "health": "/health",
    }
