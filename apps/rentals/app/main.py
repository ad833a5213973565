import logging
import time

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST

from rentals_shared import RedisRateLimiter, SlidingWindowLimiter

from .config import settings
from .database import engine
from .errors import RentalsError
from .models import Base
from .middleware_request_id import RequestIDMiddleware
from .routers import admin as admin_router
from .routers import auth as auth_router
from .routers import bookings as bookings_router
from .routers import items as items_router
from .routers import me as me_router
from .routers import provider_webhooks as provider_webhooks_router
from .routers import relations as relations_router


log = logging.getLogger("rentals.errors")

REQ = Counter("http_requests_total", "HTTP requests", ["method", "path", "status"])
REQ_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10),
)


async def rentals_error_handler(request: Request, exc: RentalsError) -> JSONResponse:
    if exc.status_code >= 500:
        log.warning("%s %s -> %s: %s", request.method, request.url.path, exc.kind, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def create_app() -> FastAPI:
    app = FastAPI(title="Rentals API", version="0.1.0")

    allowed_origins = settings.ALLOWED_ORIGINS or ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestIDMiddleware)

    backend = (settings.RATE_LIMIT_BACKEND or "").lower()
    common_excludes = ["/health", "/metrics", "/openapi.json", "/docs", "/provider/webhooks"]
    if backend == "redis":
        app.add_middleware(
            RedisRateLimiter,
            redis_url=settings.REDIS_URL,
            limit_per_minute=settings.RATE_LIMIT_PER_MINUTE,
            auth_boost=settings.RATE_LIMIT_AUTH_BOOST,
            prefix=settings.RATE_LIMIT_REDIS_PREFIX,
            exclude_paths=common_excludes,
        )
    else:
        app.add_middleware(
            SlidingWindowLimiter,
            limit_per_minute=settings.RATE_LIMIT_PER_MINUTE,
            auth_boost=settings.RATE_LIMIT_AUTH_BOOST,
            exclude_paths=common_excludes,
        )

    if settings.AUTO_CREATE_SCHEMA:
        Base.metadata.create_all(bind=engine)

    app.add_exception_handler(RentalsError, rentals_error_handler)

    @app.get("/health")
    def health():
        with engine.connect() as conn:
            conn.exec_driver_sql("SELECT 1")
        return {"status": "ok", "env": settings.ENV}

    @app.middleware("http")
    async def _metrics_mw(request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start
        try:
            route = getattr(request.scope.get("route"), "path", None) or request.url.path
            REQ.labels(request.method, route, str(response.status_code)).inc()
            REQ_DURATION.labels(request.method, route).observe(duration)
        except Exception:
            pass
        return response

    @app.get("/metrics")
    def metrics():
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(auth_router.router)
    app.include_router(me_router.router)
    app.include_router(items_router.router)
    app.include_router(bookings_router.router)
    app.include_router(relations_router.router)
    app.include_router(provider_webhooks_router.router)
    app.include_router(admin_router.router)
    return app


app = create_app()
