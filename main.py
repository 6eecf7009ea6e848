"""FastAPI application entry point.

Wires together: middleware, exception handlers, routes, metrics.
Startup builds the secret vault (a missing or malformed key aborts here),
applies additive schema changes, and creates the provider client, the
aggregator and the session refresh registry. Shutdown cancels every
background refresh timer.
"""

from contextlib import asynccontextmanager

import httpx
import structlog
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from leaderboard.adapters.whoop_client import WhoopClient
from leaderboard.aggregator import TieredAggregator
from leaderboard.api import router as leaderboard_router
from leaderboard.repository import ensure_schema
from leaderboard.session_refresh import SessionRefreshRegistry
from leaderboard.vault import SecretVault
from shared.config import settings
from shared.database import async_session_factory, engine
from shared.exceptions import ProblemDetailError
from shared.logging import configure_logging
from shared.metrics import create_metrics_app
from shared.middleware import (
    RequestIdMiddleware,
    http_exception_handler,
    problem_detail_handler,
    request_validation_handler,
)

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle."""
    configure_logging(json_output=settings.log_json)
    logger.info(
        "app_starting",
        database_url=settings.database_url.split("@")[-1],  # hide credentials
        reference_timezone=settings.reference_timezone,
    )

    # Raises ConfigurationError; the process must not start without a usable key
    vault = SecretVault.from_base64(settings.encryption_key)
    await ensure_schema(engine)

    http_client = httpx.AsyncClient(timeout=settings.http_timeout_seconds)
    provider = WhoopClient.from_settings(settings, http_client=http_client)
    registry = SessionRefreshRegistry(
        provider, interval_seconds=settings.session_refresh_interval_seconds
    )

    app.state.vault = vault
    app.state.provider = provider
    app.state.session_registry = registry
    app.state.aggregator = TieredAggregator.from_settings(
        settings, async_session_factory, vault, provider
    )

    yield

    logger.info("app_shutting_down", background_sessions=len(registry))
    await registry.shutdown()
    await http_client.aclose()
    await engine.dispose()


app = FastAPI(
    title="Gym Leaderboard API",
    description=(
        "Custodies members' WHOOP refresh tokens, aggregates daily sleep, recovery "
        "and strain with tiered caching, and keeps interactive sessions' tokens warm."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestIdMiddleware)

# All errors emit application/problem+json (RFC 9457)
app.add_exception_handler(ProblemDetailError, problem_detail_handler)
app.add_exception_handler(RequestValidationError, request_validation_handler)
app.add_exception_handler(StarletteHTTPException, http_exception_handler)

app.include_router(leaderboard_router)

metrics_app = create_metrics_app()
app.mount("/metrics", metrics_app)


@app.get("/health")
async def health():
    return {"status": "ok"}
