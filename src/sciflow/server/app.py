# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Starlette ASGI application for the SciFlow settlement API.

Bearer JWT authentication on every command endpoint, signed callbacks for
the card processor, per-client rate limiting and Prometheus metrics.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import yaml
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from ..core.engine import BountyLifecycleEngine
from ..core.exceptions import SciflowError
from ..core.inbound import InboundProcessor
from ..core.models import Lab
from ..core.store import LedgerStore, create_store
from ..rails import RailRegistry
from .bounty_endpoints import (
    accept_proposal_endpoint,
    approve_bounty_endpoint,
    cancel_bounty_endpoint,
    confirm_funding_endpoint,
    create_bounty_endpoint,
    get_bounty_endpoint,
    get_escrow_endpoint,
    init_funding_endpoint,
    list_bounties_endpoint,
    list_proposals_endpoint,
    reject_proposal_endpoint,
    settle_bounty_endpoint,
    submit_bounty_endpoint,
    submit_evidence_endpoint,
    submit_proposal_endpoint,
    update_bounty_endpoint,
    verify_milestone_endpoint,
    withdraw_proposal_endpoint,
)
from .config import ServerSettings, get_settings
from .dispute_endpoints import (
    escalate_dispute_endpoint,
    get_dispute_endpoint,
    open_dispute_endpoint,
    resolve_dispute_endpoint,
)
from .lab_endpoints import (
    deposit_stake_endpoint,
    get_lab_endpoint,
    get_stake_endpoint,
    register_lab_endpoint,
    set_tier_endpoint,
    withdraw_stake_endpoint,
)
from .metrics import MetricsCollector, MetricsMiddleware, metrics_endpoint
from .rate_limit import CounterStore, RateLimiter, RateLimitMiddleware, create_counter_store
from .webhook_endpoints import card_webhook_endpoint

logger = logging.getLogger(__name__)

# API version prefix for all REST endpoints
API_V1 = "/api/v1"

_openapi_spec_cache: dict | None = None


async def info_endpoint(request: Request) -> JSONResponse:
    """Root discovery endpoint."""
    settings: ServerSettings = request.app.state.settings
    return JSONResponse(
        {
            "server": "sciflow",
            "version": settings.server_version,
            "rails": request.app.state.engine.rails.names(),
            "endpoints": {
                "health": f"{API_V1}/health",
                "openapi": f"{API_V1}/openapi.json",
                "metrics": "/metrics",
            },
        }
    )


async def health_endpoint(request: Request) -> JSONResponse:
    """Health check endpoint. Reports storage connectivity."""
    settings: ServerSettings = request.app.state.settings
    store: LedgerStore = request.app.state.engine.store

    health_data: dict[str, Any] = {
        "status": "healthy",
        "version": settings.server_version,
        "storage": settings.storage_backend,
    }

    try:
        with store.transaction() as session:
            session.exists(Lab, "health-check")
        health_data["database"] = "connected"
    except SciflowError as e:
        health_data["database"] = f"error: {e.message}"
        health_data["status"] = "degraded"

    status_code = 200 if health_data["status"] == "healthy" else 503
    return JSONResponse(health_data, status_code=status_code)


def _load_openapi_spec() -> dict:
    """Load and cache the OpenAPI specification."""
    global _openapi_spec_cache
    if _openapi_spec_cache is None:
        spec_path = Path(__file__).parent.parent.parent.parent / "docs" / "openapi.yaml"
        if spec_path.exists():
            with open(spec_path) as f:
                _openapi_spec_cache = yaml.safe_load(f)
        else:
            # Fallback minimal spec if file not found
            _openapi_spec_cache = {
                "openapi": "3.0.3",
                "info": {"title": "SciFlow Settlement API", "version": "1.0.0"},
                "paths": {},
            }
    return _openapi_spec_cache


async def openapi_spec_endpoint(request: Request) -> JSONResponse:
    """Serve the OpenAPI specification as JSON."""
    return JSONResponse(_load_openapi_spec())


@asynccontextmanager
async def lifespan(app: Starlette):
    """Application lifespan handler."""
    settings: ServerSettings = app.state.settings
    processor: InboundProcessor = app.state.processor
    logger.info(f"Starting SciFlow API on {settings.host}:{settings.port} (rails: {', '.join(app.state.engine.rails.names()) or 'none'})")

    # Events that arrived while the server was down
    backlog = processor.pending()
    if backlog:
        logger.info(f"Processing {len(backlog)} queued rail event(s)")
        await processor.process_pending()

    yield

    await app.state.engine.events.drain()
    logger.info("SciFlow API shutting down")


def create_app(
    settings: ServerSettings | None = None,
    engine: BountyLifecycleEngine | None = None,
    store: LedgerStore | None = None,
    counter_store: CounterStore | None = None,
) -> Starlette:
    """Create the Starlette ASGI application.

    Args:
        settings: Server settings; the global settings when omitted.
        engine: Lifecycle engine; built from ``store`` and the configured
            rails when omitted.
        store: Ledger store for a new engine; the configured backend when omitted.
        counter_store: Rate-limit counters; the configured backend when omitted.
    """
    settings = settings or get_settings()
    if engine is None:
        store = store or create_store(settings.storage_backend)
        engine = BountyLifecycleEngine(store, RailRegistry.from_config(settings), config=settings)

    collector = MetricsCollector(engine.store)
    counters = counter_store or create_counter_store(settings.rate_limit_backend, settings.redis_url)
    limiter = RateLimiter(counters, settings.rate_limit_rpm)

    routes = [
        # Root info (no version prefix - serves as discovery endpoint)
        Route("/", info_endpoint, methods=["GET"]),
        Route(f"{API_V1}/health", health_endpoint, methods=["GET"]),
        Route(f"{API_V1}/openapi.json", openapi_spec_endpoint, methods=["GET"]),
        # Bounties
        Route(f"{API_V1}/bounties", create_bounty_endpoint, methods=["POST"]),
        Route(f"{API_V1}/bounties", list_bounties_endpoint, methods=["GET"]),
        Route(f"{API_V1}/bounties/{{id}}", get_bounty_endpoint, methods=["GET"]),
        Route(f"{API_V1}/bounties/{{id}}", update_bounty_endpoint, methods=["PATCH"]),
        Route(f"{API_V1}/bounties/{{id}}/submit", submit_bounty_endpoint, methods=["POST"]),
        Route(f"{API_V1}/bounties/{{id}}/cancel", cancel_bounty_endpoint, methods=["POST"]),
        Route(f"{API_V1}/bounties/{{id}}/settle", settle_bounty_endpoint, methods=["POST"]),
        Route(f"{API_V1}/admin/bounties/{{id}}/approve", approve_bounty_endpoint, methods=["POST"]),
        # Funding
        Route(f"{API_V1}/bounties/{{id}}/funding", init_funding_endpoint, methods=["POST"]),
        Route(f"{API_V1}/escrows/{{id}}", get_escrow_endpoint, methods=["GET"]),
        Route(f"{API_V1}/escrows/{{id}}/confirm", confirm_funding_endpoint, methods=["POST"]),
        # Proposals
        Route(f"{API_V1}/bounties/{{id}}/proposals", submit_proposal_endpoint, methods=["POST"]),
        Route(f"{API_V1}/bounties/{{id}}/proposals", list_proposals_endpoint, methods=["GET"]),
        Route(f"{API_V1}/bounties/{{id}}/proposals/{{pid}}/accept", accept_proposal_endpoint, methods=["POST"]),
        Route(f"{API_V1}/proposals/{{id}}/withdraw", withdraw_proposal_endpoint, methods=["POST"]),
        Route(f"{API_V1}/proposals/{{id}}/reject", reject_proposal_endpoint, methods=["POST"]),
        # Milestones
        Route(f"{API_V1}/milestones/{{id}}/evidence", submit_evidence_endpoint, methods=["POST"]),
        Route(f"{API_V1}/milestones/{{id}}/verify", verify_milestone_endpoint, methods=["POST"]),
        # Disputes
        Route(f"{API_V1}/disputes", open_dispute_endpoint, methods=["POST"]),
        Route(f"{API_V1}/disputes/{{id}}", get_dispute_endpoint, methods=["GET"]),
        Route(f"{API_V1}/disputes/{{id}}/escalate", escalate_dispute_endpoint, methods=["POST"]),
        Route(f"{API_V1}/disputes/{{id}}/resolve", resolve_dispute_endpoint, methods=["POST"]),
        # Labs and stake
        Route(f"{API_V1}/labs", register_lab_endpoint, methods=["POST"]),
        Route(f"{API_V1}/labs/{{id}}", get_lab_endpoint, methods=["GET"]),
        Route(f"{API_V1}/admin/labs/{{id}}/tier", set_tier_endpoint, methods=["POST"]),
        Route(f"{API_V1}/labs/{{id}}/stake", get_stake_endpoint, methods=["GET"]),
        Route(f"{API_V1}/labs/{{id}}/stake", deposit_stake_endpoint, methods=["POST"]),
        Route(f"{API_V1}/labs/{{id}}/stake/withdraw", withdraw_stake_endpoint, methods=["POST"]),
        # Rail callbacks (signed, no bearer token)
        Route(f"{API_V1}/webhooks/card", card_webhook_endpoint, methods=["POST"]),
        # Prometheus metrics endpoint
        Route("/metrics", metrics_endpoint, methods=["GET"]),
    ]

    middleware = [
        Middleware(
            CORSMiddleware,
            allow_origins=settings.allowed_origins,
            allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
            allow_headers=["Authorization", "Content-Type"],
        ),
        Middleware(MetricsMiddleware, collector=collector),
        Middleware(RateLimitMiddleware, limiter=limiter, prefix=API_V1, exempt=(f"{API_V1}/health", f"{API_V1}/webhooks/card")),
    ]

    app = Starlette(routes=routes, middleware=middleware, lifespan=lifespan, debug=settings.debug)
    app.state.settings = settings
    app.state.engine = engine
    app.state.processor = InboundProcessor(engine.store, engine)
    app.state.metrics = collector
    return app


def run() -> None:
    """Run the server using uvicorn."""
    import uvicorn

    settings = get_settings()

    logger.info(f"Starting SciFlow API server on {settings.host}:{settings.port}")

    uvicorn.run(
        "sciflow.server.app:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        log_level="info",
    )


if __name__ == "__main__":
    run()
