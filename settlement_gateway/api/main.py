"""FastAPI application factory"""

import asyncio
import logging
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import Response

from settlement_gateway.api.middleware import RequestIDMiddleware, MetricsMiddleware
from settlement_gateway.api.v1 import assignments, gateway, keys, payouts
from settlement_gateway.config import settings
from settlement_gateway.infrastructure.cache import ResponseCache
from settlement_gateway.infrastructure.clients.platform import PlatformTransport
from settlement_gateway.infrastructure.clients.terminals import RevenueSource, TerminalClient
from settlement_gateway.infrastructure.credentials import CredentialStore
from settlement_gateway.infrastructure.database.session import session_scope
from settlement_gateway.infrastructure.gateway import Gateway
from settlement_gateway.infrastructure.observability.logging import setup_logging
from settlement_gateway.infrastructure.signing import RequestSigner
from settlement_gateway.services.scheduler import PayoutScheduler, RunGuard, run_forever

# Setup structured logging
setup_logging(settings.log_level)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    loaded = app.state.credentials.load()
    logger.info("Signing credentials loaded", extra={"layers": loaded})

    task = None
    if settings.scheduler_enabled:
        task = asyncio.create_task(
            run_forever(
                session_scope,
                lambda db: PayoutScheduler(db, app.state.gateway, app.state.revenue_source, app.state.run_guard),
                settings.scheduler_poll_seconds,
            )
        )
    yield
    if task is not None:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task


def create_app(
    credentials: CredentialStore | None = None,
    platform_transport: PlatformTransport | None = None,
    revenue_source: RevenueSource | None = None,
) -> FastAPI:
    """Create and configure FastAPI application"""
    app = FastAPI(
        title="Settlement Gateway",
        description="Signed platform gateway and vending payout settlement",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # Process-wide collaborators shared by every request
    app.state.credentials = credentials or CredentialStore(settings.keys_storage_path, settings.keys_master_password)
    app.state.cache = ResponseCache()
    app.state.gateway = Gateway(
        RequestSigner(app.state.credentials),
        platform_transport or PlatformTransport(),
        app.state.cache,
    )
    app.state.revenue_source = revenue_source or TerminalClient()
    app.state.run_guard = RunGuard()

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIDMiddleware)

    # Health check endpoint
    @app.get("/health")
    def health_check():
        return {
            "status": "ok",
            "service": settings.service_name,
            "credentials": {layer: s["configured"] for layer, s in app.state.credentials.status().items()},
        }

    # Prometheus metrics endpoint
    @app.get("/metrics")
    def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # Register API routers
    app.include_router(gateway.router, prefix="/v1", tags=["gateway"])
    app.include_router(payouts.router, prefix="/v1", tags=["payouts"])
    app.include_router(assignments.router, prefix="/v1", tags=["assignments"])
    app.include_router(keys.router, prefix="/v1", tags=["keys"])

    return app


app = create_app()
