import json
import logging
import time
import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse, Response

from . import redis_client as _redis

logger = logging.getLogger("ground_booking.access")

UNLIMITED_PATHS = ("/docs", "/openapi.json", "/health", "/payments/webhook")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
        request.state.request_id = request_id

        start = time.perf_counter()
        try:
            response: Response = await call_next(request)
        except Exception:
            duration_ms = (time.perf_counter() - start) * 1000
            logger.error(json.dumps({
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status": 500,
                "duration_ms": round(duration_ms, 2),
            }))
            raise

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-Id"] = request_id

        logger.info(json.dumps({
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "duration_ms": round(duration_ms, 2),
            "user_sub": getattr(request.state, "user_sub", None),
        }))
        return response


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Fixed one-minute window per client IP, counted in Redis."""

    def __init__(self, app, max_per_minute: int = 120):
        super().__init__(app)
        self.max_per_minute = max_per_minute

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if path in UNLIMITED_PATHS or path.startswith("/docs/"):
            return await call_next(request)

        ip = request.client.host if request.client else "unknown"
        key = f"rl:ip:{ip}:{int(time.time() // 60)}"

        try:
            count = await _redis.redis_client.incr(key)
            if count == 1:
                await _redis.redis_client.expire(key, 70)
        except Exception as e:
            # fail open
            logger.warning("rate limiter unavailable: %s", e)
            return await call_next(request)

        if count > self.max_per_minute:
            return JSONResponse(status_code=429, content={"detail": "Too many requests", "error": "RateLimited"})

        return await call_next(request)
