# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Starlette ASGI application for the airc identity server.

Provides HTTP transport for message authentication, identity registration,
key rotation and revocation, plus health checks and metrics.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import Any

from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from ..core.exceptions import StoreUnavailableError
from ..core.logging import configure_logging
from ..identity.postgres_store import PostgresAuthStore
from .config import get_settings
from .endpoints.identity import (
    get_identity_endpoint,
    register_identity_endpoint,
    revoke_identity_endpoint,
    rotate_key_endpoint,
)
from .endpoints.messages import post_message_endpoint
from .metrics import MetricsMiddleware, get_metrics_collector, metrics_endpoint
from .services import get_services

logger = logging.getLogger(__name__)

API_V1 = "/api/v1"


async def health_endpoint(request: Request) -> JSONResponse:
    """Health check endpoint."""
    settings = get_settings()
    services = get_services()

    health_data: dict[str, Any] = {
        "status": "healthy",
        "server": settings.server_name,
        "version": settings.server_version,
        "store": settings.store_backend,
        "strict_mode": services.authenticator.policy.is_strict(),
    }

    reachable = await asyncio.to_thread(services.store.ping)
    health_data["store_status"] = "connected" if reachable else "unreachable"
    if not reachable:
        health_data["status"] = "degraded"

    status_code = 200 if health_data["status"] == "healthy" else 503
    return JSONResponse(health_data, status_code=status_code)


async def _prune_nonces_periodically(interval_seconds: int) -> None:
    """Opportunistically drop expired nonce records.

    Each sweep is a single store call; replay checks never wait on it.
    """
    collector = get_metrics_collector()
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            removed = await asyncio.to_thread(get_services().ledger.prune)
        except StoreUnavailableError as e:
            logger.warning(f"Nonce prune skipped: {e.message}")
            continue
        collector.record_pruned(removed)
        if removed:
            logger.debug(f"Pruned {removed} expired nonces")


@asynccontextmanager
async def lifespan(app: Starlette):
    """Application lifespan handler."""
    settings = get_settings()
    logger.info(f"Starting airc server on {settings.host}:{settings.port}")

    services = get_services()
    if isinstance(services.store, PostgresAuthStore):
        await asyncio.to_thread(services.store.init_schema)
        logger.info("PostgreSQL schema ensured")

    policy = services.authenticator.policy
    if policy.in_grace_period():
        logger.warning(f"Grace period active: unsigned messages accepted until {policy.grace_period_ends}")

    prune_task: asyncio.Task | None = None
    if settings.nonce_prune_interval_seconds > 0:
        prune_task = asyncio.create_task(_prune_nonces_periodically(settings.nonce_prune_interval_seconds))

    yield

    if prune_task is not None:
        prune_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await prune_task

    if isinstance(services.store, PostgresAuthStore):
        from ..core.db import close_pool

        close_pool()

    logger.info("airc server shutting down")


def create_app() -> Starlette:
    """Create the Starlette ASGI application."""
    settings = get_settings()

    routes = [
        Route(f"{API_V1}/health", health_endpoint, methods=["GET"]),
        # Messaging
        Route(f"{API_V1}/messages", post_message_endpoint, methods=["POST"]),
        # Identity registry
        Route(f"{API_V1}/identity", register_identity_endpoint, methods=["POST"]),
        Route(f"{API_V1}/identity/{{handle}}", get_identity_endpoint, methods=["GET"]),
        # Recovery-key authorised operations (unversioned paths kept for existing clients)
        Route("/identity/{handle}/rotate", rotate_key_endpoint, methods=["POST"]),
        Route("/identity/{handle}/revoke", revoke_identity_endpoint, methods=["POST"]),
        Route(f"{API_V1}/identity/{{handle}}/rotate", rotate_key_endpoint, methods=["POST"]),
        Route(f"{API_V1}/identity/{{handle}}/revoke", revoke_identity_endpoint, methods=["POST"]),
        # Prometheus metrics endpoint
        Route("/metrics", metrics_endpoint, methods=["GET"]),
        Route(f"{API_V1}/metrics", metrics_endpoint, methods=["GET"]),
    ]

    middleware = [
        Middleware(
            CORSMiddleware,
            allow_origins=settings.allowed_origins,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["Content-Type"],
            expose_headers=[
                "Retry-After",
                "X-RateLimit-Limit",
                "X-RateLimit-Remaining",
                "X-RateLimit-Reset",
                "X-AIRC-Strict-Mode",
                "X-AIRC-Grace-Period-Ends",
            ],
        ),
        Middleware(MetricsMiddleware),
    ]

    return Starlette(
        routes=routes,
        middleware=middleware,
        lifespan=lifespan,
    )


def run() -> None:
    """Run the server using uvicorn."""
    import uvicorn

    configure_logging()
    settings = get_settings()

    logger.info(f"Starting airc HTTP server on {settings.host}:{settings.port}")

    uvicorn.run(
        "airc.server.app:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
