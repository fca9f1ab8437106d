"""FastAPI application wiring for the accessgate service."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from .api.routes import router as v1_router
from .cache import build_cache
from .config import get_settings
from .domain.activation import ActivationService, LogNotifier
from .domain.sessions import SessionAuthenticator
from .repository import ActivationTokenStore, SessionRepository, UserRepository, build_pool
from .schema import ensure_schema
from .security.passwords import PasslibPasswordHasher
from .security.throttle import LoginThrottle

settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialise shared resources (Postgres pool, cache, services) for the app lifecycle."""
    pool = build_pool(settings)
    pool.open()
    ensure_schema(pool)
    cache = build_cache(settings.cache_backend, settings.redis_url)
    hasher = PasslibPasswordHasher()
    users = UserRepository(pool)

    app.state.pool = pool
    app.state.users = users
    app.state.password_hasher = hasher
    app.state.activation_service = ActivationService(
        ActivationTokenStore(
            pool,
            token_bytes=settings.token_bytes,
            retry_budget=settings.token_retry_budget,
        ),
        users,
        notifier=LogNotifier(),
        ttl=timedelta(hours=settings.activation_ttl_hours),
    )
    app.state.session_authenticator = SessionAuthenticator(
        users,
        SessionRepository(pool),
        cache,
        hasher,
        ttl_seconds=settings.session_ttl_seconds,
        token_bytes=settings.token_bytes,
        retry_budget=settings.token_retry_budget,
        throttle=LoginThrottle(
            cache,
            max_attempts=settings.login_max_attempts,
            window_seconds=settings.login_window_seconds,
        ),
    )
    try:
        yield
    finally:
        pool.close()


app = FastAPI(title=settings.app_name, version=settings.version, lifespan=lifespan)


@app.get("/healthz", tags=["health"])
def healthz() -> dict[str, str]:
    """Return a minimal readiness indicator used by orchestration systems."""
    return {"status": "ok"}


@app.get("/metrics")
def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


app.include_router(v1_router)


def run() -> None:
    """Console entry point serving the app with uvicorn."""
    import uvicorn

    uvicorn.run(app, host=settings.http_host, port=settings.http_port)
