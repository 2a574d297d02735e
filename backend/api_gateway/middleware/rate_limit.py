"""
Rate Limiting Middleware
========================
Fixed-window request limit per client on top of the shared cache, so every
gateway instance counts against the same window when Redis is configured.
"""

from typing import Callable, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
import structlog

from shared.config import settings

logger = structlog.get_logger(__name__)

EXEMPT_PATHS = frozenset({"/health", "/ready", "/live", "/metrics"})


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Limits requests per client IP using `app.state.rate_counter`."""

    def __init__(
        self,
        app,
        requests_per_window: Optional[int] = None,
        window_seconds: Optional[int] = None,
    ):
        super().__init__(app)
        self.requests_per_window = requests_per_window or settings.rate_limit_requests
        self.window_seconds = window_seconds or settings.rate_limit_window_seconds

    def _get_client_key(self, request: Request) -> str:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return f"ip:{forwarded.split(',')[0].strip()}"
        client_ip = request.client.host if request.client else "unknown"
        return f"ip:{client_ip}"

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        counter = getattr(request.app.state, "rate_counter", None)
        if counter is None or request.url.path in EXEMPT_PATHS:
            return await call_next(request)

        client_key = self._get_client_key(request)
        decision = await counter.hit(client_key, self.requests_per_window, self.window_seconds)

        if not decision.ok:
            logger.warning(
                "Rate limit exceeded",
                client_key=client_key,
                path=request.url.path,
            )
            return JSONResponse(
                status_code=429,
                content={
                    "ok": False,
                    "error": "rate_limited",
                    "detail": "Too many requests. Please try again later.",
                    "retry_after_seconds": decision.retry_after,
                },
                headers={"Retry-After": str(decision.retry_after)},
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(self.requests_per_window)
        response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
        return response
