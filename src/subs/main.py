"""
FastAPI application entry point for the subscription billing service.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import APIRouter, FastAPI, Request

from subs.billing.dependencies import BillingContainer
from subs.billing.middleware import setup_billing_middleware
from subs.billing.subscriptions.router import router as subscriptions_router
from subs.billing.webhooks.router import router as webhooks_router
from subs.db import check_database_health
from subs.logging import setup_logging
from subs.settings import get_settings

API_PREFIX = "/api/v1/billing"


def create_app(container: BillingContainer | None = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        container: Pre-built billing components. When omitted the container
            is built from settings at startup and disposed at shutdown.
    """
    settings = get_settings()
    setup_logging(settings)
    logger = structlog.get_logger(__name__)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
        owned = getattr(app.state, "billing", None) is None
        if owned:
            app.state.billing = BillingContainer.from_settings(settings)
        logger.info(
            "service.startup.complete",
            service=settings.app_name,
            version=settings.app_version,
            environment=settings.environment.value,
        )
        try:
            yield
        finally:
            if owned:
                await app.state.billing.dispose()
            logger.info("service.shutdown.complete")

    app = FastAPI(
        title="Subscription Billing",
        description="Recurring subscription billing with Stripe",
        version=settings.app_version,
        lifespan=lifespan,
        docs_url="/docs" if not settings.is_production else None,
        redoc_url="/redoc" if not settings.is_production else None,
    )
    if container is not None:
        app.state.billing = container

    setup_billing_middleware(
        app,
        settings.observability.correlation_id_header,
        enable_correlation_ids=settings.observability.enable_correlation_ids,
    )

    api = APIRouter(prefix=API_PREFIX)
    api.include_router(subscriptions_router)
    api.include_router(webhooks_router)
    app.include_router(api)

    @app.get("/health", tags=["Health"])
    async def health(request: Request) -> dict[str, Any]:
        billing = getattr(request.app.state, "billing", None)
        database = billing is not None and await check_database_health(billing.session_factory)
        return {
            "status": "healthy" if database else "degraded",
            "version": settings.app_version,
            "database": database,
        }

    return app
