"""
FastAPI application entry point with health check and metrics routes.
"""
import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.responses import Response
from fastapi.exceptions import RequestValidationError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from bema_sync import __version__
from bema_sync.api.routes import admin_sync
from bema_sync.api.middleware.error_handler import (
    AppException,
    app_exception_handler,
    sync_exception_handler,
    validation_exception_handler,
    http_exception_handler,
    unhandled_exception_handler,
)
from bema_sync.container import Container, build_container
from bema_sync.lib.errors import SyncError
from bema_sync.lib.logging import get_logger

logger = get_logger(__name__)


# Correlation ID middleware
class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """
    Middleware to add correlation_id to all requests for tracing.
    Accepts X-Correlation-ID from incoming requests or generates a new one.
    """

    async def dispatch(self, request: Request, call_next):
        correlation_id = request.headers.get("X-Correlation-ID", str(uuid.uuid4()))
        request.state.correlation_id = correlation_id

        logger.info(
            "Incoming request",
            extra={"extra_fields": {
                "correlation_id": correlation_id,
                "method": request.method,
                "path": request.url.path,
            }},
        )

        response = await call_next(request)
        response.headers["X-Correlation-ID"] = correlation_id

        logger.info(
            "Response sent",
            extra={"extra_fields": {
                "correlation_id": correlation_id,
                "status_code": response.status_code,
            }},
        )

        return response


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager: builds the service graph on startup if one
    was not injected, runs the background scheduler, tears both down.
    """
    owns_container = getattr(app.state, "container", None) is None
    if owns_container:
        app.state.container = build_container()
    container: Container = app.state.container

    logger.info("Bema CRM Sync starting up...")
    if container.settings.scheduler_enabled:
        container.scheduler.start()
    yield
    logger.info("Bema CRM Sync shutting down...")
    if owns_container:
        container.close()
    else:
        container.scheduler.shutdown(wait=False)


def create_app(container: Optional[Container] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        container: Pre-built service graph; built from the environment on
            startup when omitted
    """
    app = FastAPI(
        title="Bema CRM Sync",
        version=__version__,
        description="Tier-transition and batch-sync engine for album campaigns",
        lifespan=lifespan,
    )
    app.state.container = container

    app.add_middleware(CorrelationIdMiddleware)

    # Register exception handlers
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(SyncError, sync_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(admin_sync.router)

    @app.get("/health")
    def health_check(request: Request):
        """Health check endpoint; ``degraded`` when a job exceeded its execution ceiling."""
        health = request.app.state.container.health.get_status()
        return {"status": "ok" if health["healthy"] else "degraded", "health": health}

    @app.get("/metrics", include_in_schema=False)
    def metrics_endpoint(request: Request):
        """
        Prometheus-compatible metrics endpoint.

        Metrics exposed:
        - sync_runs_total: Reconciliation runs by job type and outcome
        - tier_transitions_total: Subscribers moved between tiers
        - batch_chunks_total: Chunks processed by outcome
        - memory_cleanups_total, stale_locks_cleared_total
        - external_push_failures_total: Failed subscriber pushes
        """
        metrics = request.app.state.container.metrics
        return Response(
            content=metrics.export_prometheus(),
            media_type="text/plain; version=0.0.4; charset=utf-8",
        )

    return app


app = create_app()
