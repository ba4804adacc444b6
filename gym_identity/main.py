"""FastAPI application wiring for the identity service."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import redis
from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from psycopg_pool import ConnectionPool

from .api.errors import install_error_handlers
from .api.routes import router
from .config import Settings, get_settings
from .domain.service import AuthService
from .notifications import EmailService
from .repository import AccountRepository
from .security.rate_limiter import FixedWindowRateLimiter, RateLimiter
from .security.redis_rate_limiter import RedisFixedWindowRateLimiter

settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)


def build_rate_limiter(settings: Settings, *, max_requests: int, window_seconds: int, key_prefix: str) -> RateLimiter:
    """Instantiate the configured rate limiter backend, preferring Redis when available."""
    if settings.rate_limit_backend == "redis" and settings.redis_url:
        try:
            client = redis.from_url(settings.redis_url)
            # ensure connectivity early to fail fast and fall back
            client.ping()
            logger.info("%s rate limiter configured for redis backend", key_prefix)
            return RedisFixedWindowRateLimiter(
                client,
                max_requests=max_requests,
                window_seconds=window_seconds,
                key_prefix=key_prefix,
            )
        except (redis.RedisError, ValueError) as exc:
            logger.warning("redis rate limiter unavailable, falling back to in-memory: %s", exc)

    logger.info("%s rate limiter using in-memory backend", key_prefix)
    return FixedWindowRateLimiter(max_requests=max_requests, window_seconds=window_seconds)


def build_service(pool: ConnectionPool, settings: Settings) -> AuthService:
    return AuthService(
        AccountRepository(pool),
        login_limiter=build_rate_limiter(
            settings,
            max_requests=settings.auth_rate_limit_attempts,
            window_seconds=settings.auth_rate_limit_window_seconds,
            key_prefix="rate:auth",
        ),
        register_limiter=build_rate_limiter(
            settings,
            max_requests=settings.register_rate_limit_attempts,
            window_seconds=settings.register_rate_limit_window_seconds,
            key_prefix="rate:register",
        ),
        email_service=EmailService(settings),
        settings=settings,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialise shared resources (Postgres pool, services) for the app lifecycle."""
    pool = ConnectionPool(settings.database_url, open=False)
    pool.open()
    app.state.pool = pool
    app.state.auth_service = build_service(pool, settings)
    logger.info("%s %s started in %s mode", settings.app_name, settings.version, settings.environment)
    try:
        yield
    finally:
        pool.close()


app = FastAPI(title=settings.app_name, version=settings.version, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in settings.cors_origins.split(",") if origin.strip()],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=600,
)

install_error_handlers(app)


@app.get("/healthz", tags=["health"])
def healthz() -> dict[str, str]:
    """Return a minimal readiness indicator used by orchestration systems."""
    return {"status": "ok"}


@app.get("/metrics", tags=["health"])
def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


app.include_router(router)
