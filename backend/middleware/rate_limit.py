"""Rate limiting middleware for the planner API."""

import time
from collections import defaultdict
from typing import Callable

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

WINDOW_SECONDS = 60

# Planner actions that call the language model
AI_ROUTE_SUFFIXES = (
    "/start",
    "/messages",
    "/plan",
    "/plan/adjust",
    "/structure",
    "/structure/generate-all",
    "/structure/generate-activities",
    "/agent/packing-list",
    "/agent/budget-categories",
)

CREDENTIAL_ROUTES = ("/api/auth/signup", "/api/auth/login")
EXEMPT_ROUTES = ("/api/health",)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Sliding one-minute window per client address, in three buckets.

    Every request counts toward the general bucket; model-calling planner
    actions and credential endpoints additionally count toward their own,
    stricter bucket. Counters live in this process only.
    """

    _CLEANUP_INTERVAL = 300

    def __init__(self, app, requests_per_minute: int = 60, ai_requests_per_minute: int = 10, auth_requests_per_minute: int = 5):
        super().__init__(app)
        self.limits = {
            "general": requests_per_minute,
            "ai": ai_requests_per_minute,
            "auth": auth_requests_per_minute,
        }
        self._hits: dict[str, list[float]] = defaultdict(list)
        self._last_cleanup = time.monotonic()

    @staticmethod
    def client_address(request: Request) -> str:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
        return request.client.host if request.client else "unknown"

    @staticmethod
    def buckets_for(request: Request) -> list[str]:
        """Strictest bucket first; polling routes only count as general traffic."""
        path = request.url.path
        buckets = []
        if path in CREDENTIAL_ROUTES:
            buckets.append("auth")
        if request.method == "POST" and path.startswith("/api/planner/") and path.endswith(AI_ROUTE_SUFFIXES):
            buckets.append("ai")
        buckets.append("general")
        return buckets

    def _prune(self, now: float) -> None:
        if now - self._last_cleanup < self._CLEANUP_INTERVAL:
            return
        self._last_cleanup = now
        cutoff = now - WINDOW_SECONDS
        for key in [k for k, hits in self._hits.items() if not hits or hits[-1] < cutoff]:
            del self._hits[key]

    def _allow(self, key: str, limit: int, now: float) -> bool:
        cutoff = now - WINDOW_SECONDS
        hits = [t for t in self._hits[key] if t > cutoff]
        self._hits[key] = hits
        if len(hits) >= limit:
            return False
        hits.append(now)
        return True

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in EXEMPT_ROUTES:
            return await call_next(request)

        now = time.monotonic()
        self._prune(now)
        client = self.client_address(request)
        for bucket in self.buckets_for(request):
            if not self._allow(f"{client}:{bucket}", self.limits[bucket], now):
                return JSONResponse(
                    status_code=429,
                    content={
                        "detail": f"Too many requests ({bucket}). Please wait a minute before trying again.",
                        "kind": "rate_limited",
                    },
                )
        return await call_next(request)
