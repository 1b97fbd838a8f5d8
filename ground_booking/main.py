import asyncio
import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy import text

from .config import ENABLE_EXPIRY_WORKER, LOG_LEVEL, RATE_LIMIT_PER_MINUTE, SWEEP_INTERVAL_SECONDS
from .db import SessionLocal
from .errors import BookingError
from .expiry_worker import expiry_loop
from .gateway import PaymentGateway
from .middleware import RateLimitMiddleware, RequestLoggingMiddleware
from .notifications import notifier
from .publisher import publisher
from .routes import router

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

OPENAPI_TAGS = [
    {"name": "System", "description": "Health and operational endpoints."},
    {"name": "Holds", "description": "Short-lived slot holds."},
    {"name": "Bookings", "description": "Booking creation, lookup and status changes."},
    {"name": "Availability", "description": "Per-day slot availability."},
    {"name": "Payments", "description": "Gateway orders, verification and webhooks."},
]

app = FastAPI(title="Ground Booking Service", openapi_tags=OPENAPI_TAGS)

app.add_middleware(RateLimitMiddleware, max_per_minute=RATE_LIMIT_PER_MINUTE)
app.add_middleware(RequestLoggingMiddleware)
app.include_router(router)

_stop_event = asyncio.Event()
_expiry_task = None


@app.exception_handler(BookingError)
async def booking_error_handler(request: Request, exc: BookingError):
    if exc.status_code >= 500:
        logger.warning("%s %s -> %s: %s", request.method, request.url.path, exc.status_code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"detail": "Invalid request", "error": "ValidationFailed", "errors": jsonable_encoder(exc.errors())},
    )


@app.get("/health", tags=["System"])
async def health():
    database = "up"
    try:
        async with SessionLocal() as db:
            await db.execute(text("SELECT 1"))
    except Exception as e:
        logger.error("health check: database down: %s", e)
        database = "down"

    return {
        "status": "ok" if database == "up" else "degraded",
        "service": "ground-booking-service",
        "database": database,
        "payments_configured": PaymentGateway().configured,
        "events_enabled": publisher.enabled,
    }


@app.on_event("startup")
async def startup():
    global _expiry_task
    try:
        await publisher.connect()
    except Exception as e:
        logger.warning("RabbitMQ connect failed at startup; continuing: %s", e)

    if ENABLE_EXPIRY_WORKER:
        _stop_event.clear()
        _expiry_task = asyncio.create_task(expiry_loop(_stop_event, SWEEP_INTERVAL_SECONDS, notifier=notifier))


@app.on_event("shutdown")
async def shutdown():
    _stop_event.set()
    if _expiry_task:
        try:
            await asyncio.wait_for(_expiry_task, timeout=5.0)
        except asyncio.TimeoutError:
            _expiry_task.cancel()
    await notifier.drain()
    await publisher.close()
