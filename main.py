"""
main.py
FastAPI application entry point.
Registers routers, middleware, exception handlers and startup/shutdown events.

Reminder delivery runs in Celery (tasks/), not in this process.
"""

import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from config.database import close_db, init_db
from config.log_config import configure_logging
from config.redis_client import close_redis, init_redis
from config.settings import settings
from services.booking.exceptions import (
    BookingLockTimeout,
    BookingNotFoundError,
    BookingPermissionError,
    BookingServiceError,
    BookingValidationError,
    DailyCapacityError,
)

# Service routers
from services.booking.router import router as booking_router
from services.notification.router import router as notification_router


# ── Logging ──────────────────────────────────────────────────

configure_logging()
logger = logging.getLogger(__name__)


# ── Lifespan (startup/shutdown) ───────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle handler."""
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")

    await init_db()
    logger.info("Database connected")

    await init_redis()
    logger.info("Redis connected")

    yield

    await close_redis()
    await close_db()
    logger.info("Server shutdown complete")


# ── Error mapping ─────────────────────────────────────────────

_ERROR_STATUS = (
    (BookingNotFoundError, 404, "booking_not_found"),
    (BookingPermissionError, 403, "booking_forbidden"),
    (DailyCapacityError, 422, "daily_capacity_exceeded"),
    (BookingValidationError, 422, "booking_invalid"),
    (BookingLockTimeout, 503, "booking_busy"),
)


def _error_status(exc: BookingServiceError) -> tuple:
    for exc_type, status_code, code in _ERROR_STATUS:
        if isinstance(exc, exc_type):
            return status_code, code
    return 400, "booking_error"


# ── App Factory ───────────────────────────────────────────────

def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="""
## Resource Booking Scheduler API

- **Bookings**: rooms, vehicles and sample equipment, with conflict
  detection, a daily booking cap and recurring series
- **Notifications**: reminders and change notices by email and push,
  filtered by each user's preferences and quiet hours

### Authentication
All endpoints require `Authorization: Bearer <access_token>` issued by
the identity service.

### Roles
- `EMPLOYEE`: book and manage their own bookings
- `ADMIN` / `PRESIDENT`: manage any booking, requeue failed notifications
        """,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # ── Middleware (outermost first) ──────────────────────────
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Process-Time"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=500)

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        """Add unique X-Request-ID to every request for tracing."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    @app.middleware("http")
    async def process_time_middleware(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        process_time = round((time.perf_counter() - start) * 1000, 2)
        response.headers["X-Process-Time"] = f"{process_time}ms"
        return response

    # ── Exception Handlers ────────────────────────────────────

    @app.exception_handler(BookingServiceError)
    async def booking_error_handler(request: Request, exc: BookingServiceError):
        status_code, code = _error_status(exc)
        content = {"detail": str(exc), "code": code}
        if isinstance(exc, DailyCapacityError):
            content.update({"date": exc.day.isoformat(), "cap": exc.cap})
        headers = {"Retry-After": "1"} if isinstance(exc, BookingLockTimeout) else None
        return JSONResponse(status_code=status_code, content=content, headers=headers)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Catch-all. Never expose stack traces in production."""
        request_id = getattr(request.state, "request_id", None)
        logger.error(f"[{request_id}] Exception: {str(exc)}", exc_info=True, extra={"request_id": request_id})
        detail = str(exc) if settings.DEBUG else "An internal server error occurred"
        return JSONResponse(status_code=500, content={"detail": detail, "request_id": request_id})

    # ── Routes ────────────────────────────────────────────────

    @app.get("/health", tags=["Health"], include_in_schema=False)
    async def health_check():
        from config.redis_client import redis_client
        from sqlalchemy import text
        from config.database import AsyncSessionLocal

        checks = {"status": "ok", "version": settings.APP_VERSION}

        try:
            async with AsyncSessionLocal() as session:
                await session.execute(text("SELECT 1"))
            checks["database"] = "ok"
        except Exception:
            checks["database"] = "error"
            checks["status"] = "degraded"

        try:
            if redis_client:
                await redis_client.ping()
            checks["redis"] = "ok"
        except Exception:
            checks["redis"] = "error"
            checks["status"] = "degraded"

        status_code = 200 if checks["status"] == "ok" else 503
        return JSONResponse(content=checks, status_code=status_code)

    @app.get("/", include_in_schema=False)
    async def root():
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "docs": "/docs",
            "health": "/health",
        }

    app.include_router(booking_router)
    app.include_router(notification_router)

    # ── Prometheus Metrics ────────────────────────────────────
    Instrumentator().instrument(app).expose(app, endpoint="/metrics", tags=["Monitoring"])

    return app


# ── Entry Point ───────────────────────────────────────────────

app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        workers=1 if settings.DEBUG else settings.WORKERS,
        log_level="debug" if settings.DEBUG else "info",
        access_log=True,
    )
