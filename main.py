"""
main.py
BloodCare coordination API: app factory, middleware, error mapping, lifespan.

One process only. Open WebSocket channels live in app.state.registry, so
running several workers would split donors across registries.
"""

import json
import logging
import os
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from sqlalchemy import func, select

import config.redis_client as redis_state
from config.database import AsyncSessionLocal, close_db, init_db
from config.redis_client import FixedWindowRateLimiter, close_redis, init_redis
from config.settings import settings
from services.donors.router import router as donors_router
from services.inventory.router import router as inventory_router
from services.inventory.service import seed_inventory
from services.realtime.registry import ConnectionRegistry
from services.realtime.router import router as realtime_router
from services.requests.router import router as requests_router
from shared.exceptions import CoordinationError, IntegrityFault, InvalidStateError
from shared.models.models import BloodGroup, BloodInventory


# ── Logging ──────────────────────────────────────────────────

class JSONFormatter(logging.Formatter):
    """One JSON object per line. Pass request_id via `extra` to tag an entry."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "instance": os.getenv("INSTANCE_NAME", "bloodcare-api"),
        }
        request_id = getattr(record, "request_id", None)
        if request_id:
            entry["request_id"] = request_id
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry)


def configure_logging() -> None:
    stream = logging.StreamHandler()
    stream.setFormatter(JSONFormatter())
    logging.basicConfig(
        level=logging.DEBUG if settings.DEBUG else logging.INFO,
        handlers=[stream],
    )


configure_logging()
logger = logging.getLogger(__name__)


# ── Lifespan ─────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    await init_redis()
    async with AsyncSessionLocal() as db:
        added = await seed_inventory(db)
    logger.info(
        f"{settings.APP_NAME} v{settings.APP_VERSION} started "
        f"(env={settings.APP_ENV}, inventory rows seeded={added})"
    )
    yield
    await close_redis()
    await close_db()
    logger.info("Shutdown complete")


# ── Error mapping ────────────────────────────────────────────

async def coordination_error_handler(request: Request, exc: CoordinationError):
    request_id = getattr(request.state, "request_id", None)
    if isinstance(exc, IntegrityFault):
        logger.error(f"Integrity fault: {exc.message}", extra={"request_id": request_id})
    body = {"success": False, "detail": exc.message}
    if isinstance(exc, InvalidStateError) and exc.current_status:
        body["status"] = exc.current_status
    return JSONResponse(status_code=exc.status_code, content=body)


async def unhandled_error_handler(request: Request, exc: Exception):
    """Last resort. Stack traces go to the log, never to the client outside debug."""
    request_id = getattr(request.state, "request_id", None)
    logger.error(
        f"Unhandled {type(exc).__name__}: {exc}",
        exc_info=True,
        extra={"request_id": request_id},
    )
    show_detail = settings.DEBUG and not settings.is_production
    return JSONResponse(
        status_code=500,
        content={
            "detail": str(exc) if show_detail else "An internal server error occurred",
            "request_id": request_id,
        },
    )


# ── App Factory ──────────────────────────────────────────────

RATE_LIMIT_EXEMPT = {"/health", "/metrics", "/docs", "/redoc", "/openapi.json"}


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description=(
            "Emergency blood request coordination: an operator raises a CRITICAL request "
            "for one donor, the donor is alerted in-app, over WebSocket and by SMS with a "
            "6-digit code, the donor accepts or declines, and the operator confirms the "
            "donation with the code, adding one unit to inventory.\n\n"
            "HTTP calls take `Authorization: Bearer <token>`; the socket takes `/ws?token=<token>`."
        ),
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.registry = ConnectionRegistry()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID", "X-Process-Time"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=1000)

    @app.middleware("http")
    async def throttle_anonymous(request: Request, call_next):
        """Per-IP cap on calls without a bearer token. Fails open when Redis is unavailable."""
        client = redis_state.redis_client
        has_bearer = request.headers.get("Authorization", "").startswith("Bearer ")
        if client is None or has_bearer or request.url.path in RATE_LIMIT_EXEMPT:
            return await call_next(request)

        ip = request.client.host if request.client else "unknown"
        limiter = FixedWindowRateLimiter(client, settings.RATE_LIMIT_UNAUTH_PER_MINUTE)
        try:
            allowed = await limiter.hit(f"rate:unauth:{ip}")
        except Exception as e:
            logger.warning(f"Rate limiter unavailable, allowing request: {e}")
            allowed = True
        if not allowed:
            return JSONResponse(
                status_code=429,
                content={"detail": "Rate limit exceeded. Please slow down."},
                headers={"Retry-After": "60"},
            )
        return await call_next(request)

    # Added last, so outermost: every response carries these headers
    @app.middleware("http")
    async def request_context(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        request.state.request_id = request_id
        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{elapsed_ms:.2f}ms"
        logger.debug(
            f"{request.method} {request.url.path} -> {response.status_code} ({elapsed_ms:.1f}ms)",
            extra={"request_id": request_id},
        )
        return response

    app.add_exception_handler(CoordinationError, coordination_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    @app.get("/health", include_in_schema=False)
    async def health(request: Request):
        """Database, inventory seeding, Redis and live socket count."""
        report = {"status": "ok", "version": settings.APP_VERSION}

        try:
            async with AsyncSessionLocal() as db:
                rows = (await db.execute(select(func.count(BloodInventory.id)))).scalar_one()
            report["database"] = "ok"
            expected = len(BloodGroup)
            report["inventory"] = "ok" if rows == expected else f"{rows}/{expected} groups"
        except Exception as e:
            logger.warning(f"Health check: database unavailable: {e}")
            report["database"] = "error"
            report["status"] = "degraded"

        client = redis_state.redis_client
        try:
            if client is not None:
                await client.ping()
            report["redis"] = "ok" if client is not None else "not initialized"
        except Exception as e:
            logger.warning(f"Health check: redis unavailable: {e}")
            report["redis"] = "error"
            report["status"] = "degraded"

        report["websocket_connections"] = await request.app.state.registry.connection_count()
        return JSONResponse(content=report, status_code=200 if report["status"] == "ok" else 503)

    @app.get("/", include_in_schema=False)
    async def index():
        return {"name": settings.APP_NAME, "version": settings.APP_VERSION, "docs": "/docs"}

    app.include_router(requests_router)
    app.include_router(donors_router)
    app.include_router(inventory_router)
    app.include_router(realtime_router)

    Instrumentator(excluded_handlers=["/metrics", "/health"]).instrument(app).expose(
        app, endpoint="/metrics", include_in_schema=False
    )
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        workers=settings.WORKERS,
        log_level="debug" if settings.DEBUG else "info",
    )
