"""Per-client request throttling."""
from __future__ import annotations

import logging
import math
import time
from datetime import timedelta

from limits import RateLimitItemPerSecond
from limits.storage import MemoryStorage
from limits.strategies import FixedWindowRateLimiter
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp

logger = logging.getLogger("kartapi.ratelimit")

RATE_LIMIT_MESSAGE = "Too many requests, please try again later"


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Fixed-window request limit keyed on the client address.

    Counters live in process memory, so each worker enforces its own window.
    """

    def __init__(self, app: ASGIApp, *, max_requests: int, window: timedelta) -> None:
        super().__init__(app)
        self._item = RateLimitItemPerSecond(max_requests, max(1, int(window.total_seconds())))
        self._limiter = FixedWindowRateLimiter(MemoryStorage())

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        client = request.client.host if request.client else "unknown"
        allowed = self._limiter.hit(self._item, client)
        reset_at, remaining = self._limiter.get_window_stats(self._item, client)
        headers = {
            "X-RateLimit-Limit": str(self._item.amount),
            "X-RateLimit-Remaining": str(max(remaining, 0)),
            "X-RateLimit-Reset": str(int(math.ceil(reset_at))),
        }

        if not allowed:
            logger.warning("Rate limit exceeded for %s on %s", client, request.url.path)
            headers["Retry-After"] = str(max(1, int(math.ceil(reset_at - time.time()))))
            return JSONResponse(
                status_code=429,
                content={"success": False, "message": RATE_LIMIT_MESSAGE},
                headers=headers,
            )

        response = await call_next(request)
        response.headers.update(headers)
        return response


__all__ = ["RATE_LIMIT_MESSAGE", "RateLimitMiddleware"]
