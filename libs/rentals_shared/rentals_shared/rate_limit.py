import os
import time
from collections import defaultdict, deque
from typing import Deque, Dict, Iterable, Optional

import redis
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse


def _limited(retry_after: int) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content={"detail": "Too many requests", "kind": "RateLimited", "retry_after": retry_after},
        headers={"Retry-After": str(retry_after)},
    )


class _LimiterBase(BaseHTTPMiddleware):
    def __init__(self, app, limit_per_minute: int = 60, auth_boost: int = 2, exclude_paths: Optional[Iterable[str]] = None):
        super().__init__(app)
        self.limit_per_minute = limit_per_minute
        self.auth_boost = auth_boost
        self.exclude_paths = set(exclude_paths or ["/health", "/metrics"])

    def _key(self, request: Request) -> str:
        auth = request.headers.get("authorization")
        if auth:
            return f"token:{auth[-24:]}"
        client = request.client.host if request.client else "unknown"
        return f"ip:{client}"

    def _budget(self, request: Request) -> int:
        # allow runtime override via env
        try:
            base = int(os.getenv("RL_LIMIT_PER_MINUTE_OVERRIDE", str(self.limit_per_minute)))
        except ValueError:
            base = self.limit_per_minute
        if request.url.path.startswith("/auth/"):
            base = min(base, 20)
        if request.headers.get("authorization"):
            base *= max(1, self.auth_boost)
        return base

    def _disabled(self, request: Request) -> bool:
        if request.url.path in self.exclude_paths:
            return True
        return os.getenv("RL_DISABLE", "false").lower() == "true"


class SlidingWindowLimiter(_LimiterBase):
    def __init__(self, app, **kwargs):
        super().__init__(app, **kwargs)
        self.window_seconds = 60
        self.store: Dict[str, Deque[float]] = defaultdict(deque)
        self._last_sweep = 0.0

    def _prune(self, dq: Deque[float], now: float) -> None:
        while dq and now - dq[0] > self.window_seconds:
            dq.popleft()

    def sweep(self, now: Optional[float] = None) -> None:
        """Drop clients with no hits left in the window."""
        now = time.time() if now is None else now
        for key in list(self.store):
            self._prune(self.store[key], now)
            if not self.store[key]:
                del self.store[key]
        self._last_sweep = now

    async def dispatch(self, request: Request, call_next):
        if self._disabled(request):
            return await call_next(request)
        now = time.time()
        if now - self._last_sweep >= self.window_seconds:
            self.sweep(now)
        dq = self.store[self._key(request)]
        self._prune(dq, now)
        if len(dq) >= self._budget(request):
            return _limited(max(1, int(self.window_seconds - (now - dq[0]))))
        dq.append(now)
        return await call_next(request)


class RedisRateLimiter(_LimiterBase):
    def __init__(self, app, redis_url: str, prefix: str = "rl_rentals", **kwargs):
        super().__init__(app, **kwargs)
        self.prefix = prefix
        self.redis = None
        try:
            self.redis = redis.from_url(redis_url, decode_responses=True)
        except Exception:
            self.redis = None

    async def dispatch(self, request: Request, call_next):
        if self._disabled(request) or self.redis is None:
            # fail open without redis
            return await call_next(request)
        now = int(time.time())
        key = f"{self.prefix}:{self._key(request)}:{now // 60}"
        try:
            count = self.redis.incr(key)
            if count == 1:
                self.redis.expire(key, 70)
        except Exception:
            return await call_next(request)
        if count > self._budget(request):
            return _limited(60 - (now % 60))
        return await call_next(request)
