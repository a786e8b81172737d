"""
Caption Studio API.

Credit-metered caption and hashtag generation with Stripe top-ups.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import settings, validate_security_settings
from database import Base, async_session_maker, engine
import models  # noqa: F401
from routers import auth, billing, generation, health, profile
from services.errors import CaptionServiceError
from services.orchestrator import get_orchestrator
from services.payments import prune_processed_events

logging.basicConfig(
    level=getattr(logging, str(settings.LOG_LEVEL).upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("caption_studio")

API_VERSION = "0.1.0"


async def _prune_payment_events_forever(interval_minutes: int) -> None:
    """Periodically drop webhook idempotency records past their retention window."""
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            async with async_session_maker() as db:
                removed = await prune_processed_events(db)
        except SQLAlchemyError as exc:
            logger.warning("Payment event prune failed, retrying next interval: %s", exc)
            continue
        if removed:
            logger.info(
                "Pruned %s payment events older than %s days",
                removed,
                settings.PAYMENT_EVENT_RETENTION_DAYS,
            )


async def _evict_idle_sessions_forever(interval_seconds: float) -> None:
    while True:
        await asyncio.sleep(interval_seconds)
        get_orchestrator().evict_idle_sessions()


async def _bootstrap_schema() -> None:
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    except (SQLAlchemyError, OSError) as exc:
        logger.warning("Schema bootstrap skipped: %s", exc)
        return
    logger.info("Database schema verified")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Caption Studio API %s", API_VERSION)
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        await _bootstrap_schema()

    prune_task = None
    interval = int(settings.PAYMENT_EVENT_PRUNE_INTERVAL_MINUTES)
    if interval > 0:
        prune_task = asyncio.create_task(_prune_payment_events_forever(interval))
        logger.info("Payment event pruning every %s minutes", interval)
    session_ttl = float(settings.SESSION_IDLE_TTL_SECONDS)
    eviction_task = asyncio.create_task(_evict_idle_sessions_forever(max(session_ttl / 4, 1.0)))

    yield

    for task in (prune_task, eviction_task):
        if task is None:
            continue
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
    # Let in-flight balance refreshes settle before the engine goes away.
    await get_orchestrator().drain()
    await engine.dispose()
    logger.info("Caption Studio API stopped")


app = FastAPI(
    title="Caption Studio API",
    description="Credit-metered AI captions and hashtag strategies",
    version=API_VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(CaptionServiceError)
async def caption_service_error_handler(request: Request, exc: CaptionServiceError):
    if exc.status_code >= 500:
        logger.warning("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": str(exc.detail), "code": f"http_{exc.status_code}"},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content={"error": "Invalid request.", "code": "validation_error", "details": jsonable_encoder(exc.errors())},
    )


app.include_router(health.router, tags=["Health"])
app.include_router(auth.router, prefix="/auth", tags=["Authentication"])
app.include_router(profile.router, prefix="/profile", tags=["Profile"])
app.include_router(generation.router, prefix="/generate", tags=["Generation"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])


@app.get("/")
async def root():
    return {"name": "Caption Studio API", "version": API_VERSION, "status": "running"}
