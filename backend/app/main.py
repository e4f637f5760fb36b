"""
backend/app/main.py

Purpose:
    FastAPI application bootstrap: logging, database and executor selection,
    bet-mode rule seeding, event bus and scheduler lifecycle, router wiring
    and exception mapping.

Dependencies:
    - app.database
    - app.services.atomic_scope
    - app.services.bet_rules
    - app.workers
"""

import logging
from contextlib import asynccontextmanager

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from bson.errors import InvalidId
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import (
    ConnectionFailure,
    DuplicateKeyError,
    ServerSelectionTimeoutError,
)

from app.config import settings
import app.database as _db
from app.database import connect_db, close_db
from app.middleware.logging import StructuredLoggingMiddleware, setup_logging
from app.services.errors import EngineError

logger = logging.getLogger("sportsbook")
scheduler = AsyncIOScheduler()


def _register_jobs() -> list[str]:
    from app.workers.odds_poller import poll_odds
    from app.workers.settlement_sweeper import sweep_settlements

    specs = [
        {"id": "settlement_sweeper", "func": sweep_settlements, "minutes": settings.SETTLEMENT_SWEEP_MINUTES},
    ]
    if settings.MANUAL_FETCH_MODE:
        logger.info("MANUAL_FETCH_MODE=true, scheduled odds polling disabled")
    else:
        specs.append({"id": "odds_poller", "func": poll_odds, "minutes": settings.ODDS_POLL_MINUTES})

    for spec in specs:
        scheduler.add_job(
            spec["func"],
            "interval",
            id=spec["id"],
            minutes=spec["minutes"],
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
    return [spec["id"] for spec in specs]


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    await connect_db()
    from app.providers.odds_api import odds_provider
    from app.services import atomic_scope
    from app.services.bet_rules import seed_bet_mode_rules
    from app.services.event_bus import event_bus

    atomic_scope.configure()

    seeded = await seed_bet_mode_rules()
    logger.info("Bet mode rules seeded on startup: %d new", seeded)

    if settings.EVENT_BUS_ENABLED:
        await event_bus.start()
        logger.info("Event bus enabled")
    else:
        logger.info("Event bus disabled via config")

    job_ids = _register_jobs()
    scheduler.start()
    logger.info("Background scheduler started: %s", ", ".join(job_ids))

    yield

    if scheduler.running:
        scheduler.shutdown(wait=False)
    if settings.EVENT_BUS_ENABLED:
        await event_bus.stop()
    await odds_provider.aclose()
    await close_db()


app = FastAPI(
    title="Sportsbook Engine",
    description="Wagering, settlement and odds ingestion",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.BACKEND_CORS_ORIGINS.split(","),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
)

# Structured logging
app.add_middleware(StructuredLoggingMiddleware)

# Routers
from app.routers.accounts import router as accounts_router
from app.routers.bets import router as bets_router
from app.routers.betting import router as betting_router
from app.routers.matches import router as matches_router

app.include_router(accounts_router)
app.include_router(bets_router)
app.include_router(betting_router)
app.include_router(matches_router)


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError):
    if exc.status_code >= 500:
        logger.error("Engine error on %s %s: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(InvalidId)
async def invalid_object_id_handler(request: Request, exc: InvalidId):
    return JSONResponse(status_code=400, content={"detail": "Invalid ID."})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Return clean validation errors without leaking internal field paths."""
    errors = []
    for err in exc.errors():
        loc = err.get("loc", ())
        # Strip the "body" / "query" prefix for cleaner messages
        field = ".".join(str(part) for part in loc[1:]) if len(loc) > 1 else str(loc[-1]) if loc else "unknown"
        errors.append({"field": field, "message": err.get("msg", "Invalid value.")})
    return JSONResponse(status_code=422, content={"detail": "Validation error.", "errors": errors})


@app.exception_handler(DuplicateKeyError)
async def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
    return JSONResponse(status_code=409, content={"detail": "Duplicate entry."})


@app.exception_handler(ServerSelectionTimeoutError)
async def db_timeout_handler(request: Request, exc: ServerSelectionTimeoutError):
    logger.error("Database timeout: %s %s", request.method, request.url.path)
    return JSONResponse(status_code=503, content={"detail": "Service temporarily unavailable."})


@app.exception_handler(ConnectionFailure)
async def db_connection_handler(request: Request, exc: ConnectionFailure):
    logger.error("Database connection failure: %s %s", request.method, request.url.path)
    return JSONResponse(status_code=503, content={"detail": "Service temporarily unavailable."})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    """Catch-all: log the real error, return a safe generic message."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "An internal error occurred."})


@app.get("/health")
async def health():
    """Health check: DB connectivity, executor mode and provider state."""
    from app.providers.odds_api import odds_provider
    from app.services.atomic_scope import get_runner
    from app.workers._state import get_synced_at

    try:
        result = await _db.db.command("ping")
        db_ok = result.get("ok") == 1.0
    except Exception:
        db_ok = False

    workers = {}
    if db_ok:
        for worker_id in ("odds_poller", "settlement_sweeper"):
            workers[worker_id] = await get_synced_at(worker_id)

    return {
        "status": "healthy" if db_ok else "degraded",
        "db": "connected" if db_ok else "disconnected",
        "executor": get_runner().mode,
        "odds_provider": odds_provider.status(),
        "workers_synced_at": workers,
    }
