"""
Billing composition root and FastAPI dependencies.

``BillingContainer`` wires the store, lifecycle, provider, processor,
synchronizer and service from one ``BillingConfig``. The HTTP layer reads
the container from ``app.state``; Celery tasks build one per run.
"""

import importlib
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Annotated

import structlog
from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from subs.billing.catalog import CatalogGateway
from subs.billing.config import BillingConfig
from subs.billing.exceptions import ActionNotPermittedError, BillingConfigurationError
from subs.billing.payments.processor import PaymentProcessor
from subs.billing.payments.providers import PaymentProvider, StripePaymentProvider
from subs.billing.subscriptions.lifecycle import SubscriptionLifecycle
from subs.billing.subscriptions.service import SubscriptionService
from subs.billing.subscriptions.store import SubscriptionStore
from subs.billing.sweeps import BillingSweeps
from subs.billing.webhooks.handlers import BillingSynchronizer
from subs.db import create_engine_from_settings, create_session_factory, utcnow
from subs.events import EventPublisher, get_event_bus
from subs.settings import Settings, get_settings

logger = structlog.get_logger(__name__)


def load_catalog_gateway(path: str | None) -> CatalogGateway:
    """Instantiate the catalog gateway named by a ``module:attribute`` path."""
    if not path:
        raise BillingConfigurationError(
            "No catalog gateway configured",
            config_key="billing.catalog_gateway",
            recovery_hint="Set BILLING__CATALOG_GATEWAY to 'package.module:ClassName'",
        )
    module_name, _, attribute = path.partition(":")
    if not module_name or not attribute:
        raise BillingConfigurationError(
            f"Catalog gateway path must look like 'module:attribute', got {path!r}",
            config_key="billing.catalog_gateway",
        )
    try:
        target = getattr(importlib.import_module(module_name), attribute)
    except (ImportError, AttributeError) as e:
        raise BillingConfigurationError(
            f"Cannot load catalog gateway {path!r}: {e}",
            config_key="billing.catalog_gateway",
        ) from e
    return target() if callable(target) else target


@dataclass
class BillingContainer:
    """Fully wired billing components sharing one store and config."""

    config: BillingConfig
    store: SubscriptionStore
    lifecycle: SubscriptionLifecycle
    provider: PaymentProvider
    processor: PaymentProcessor
    synchronizer: BillingSynchronizer
    service: SubscriptionService
    sweeps: BillingSweeps
    session_factory: async_sessionmaker[AsyncSession]
    engine: AsyncEngine | None = None

    @classmethod
    def build(
        cls,
        session_factory: async_sessionmaker[AsyncSession],
        catalog: CatalogGateway,
        config: BillingConfig,
        provider: PaymentProvider | None = None,
        event_bus: EventPublisher | None = None,
        clock: Callable[[], datetime] = utcnow,
        engine: AsyncEngine | None = None,
    ) -> "BillingContainer":
        event_bus = event_bus or get_event_bus()
        provider = provider or StripePaymentProvider(config.stripe)
        store = SubscriptionStore(session_factory, clock=clock)
        lifecycle = SubscriptionLifecycle(store, event_bus, clock=clock)
        processor = PaymentProcessor(store, provider, config, clock=clock)
        return cls(
            config=config,
            store=store,
            lifecycle=lifecycle,
            provider=provider,
            processor=processor,
            synchronizer=BillingSynchronizer(store, lifecycle, provider, event_bus, clock=clock),
            service=SubscriptionService(
                store, lifecycle, provider, catalog, config, event_bus, clock=clock
            ),
            sweeps=BillingSweeps(store, processor, lifecycle, config, clock=clock),
            session_factory=session_factory,
            engine=engine,
        )

    @classmethod
    def from_settings(
        cls, settings: Settings | None = None, catalog: CatalogGateway | None = None
    ) -> "BillingContainer":
        """Build from application settings with a new engine."""
        settings = settings or get_settings()
        if catalog is None:
            catalog = load_catalog_gateway(settings.billing.catalog_gateway)
        engine = create_engine_from_settings(settings)
        container = cls.build(
            create_session_factory(engine),
            catalog,
            BillingConfig.from_settings(settings),
            engine=engine,
        )
        logger.info(
            "billing.container.built",
            test_mode=container.config.stripe.test_mode,
            currency=container.config.default_currency,
        )
        return container

    async def dispose(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()


# ============================================================================
# FastAPI dependencies
# ============================================================================


def get_container(request: Request) -> BillingContainer:
    container = getattr(request.app.state, "billing", None)
    if container is None:
        raise BillingConfigurationError("Billing is not configured on this application")
    return container


def get_subscription_service(
    container: Annotated[BillingContainer, Depends(get_container)],
) -> SubscriptionService:
    return container.service


def get_payment_processor(
    container: Annotated[BillingContainer, Depends(get_container)],
) -> PaymentProcessor:
    return container.processor


def get_synchronizer(
    container: Annotated[BillingContainer, Depends(get_container)],
) -> BillingSynchronizer:
    return container.synchronizer


def get_actor_id(x_actor_id: Annotated[str | None, Header()] = None) -> str | None:
    """Acting user as forwarded by the authenticating gateway."""
    return x_actor_id


def get_customer_id(x_customer_id: Annotated[str | None, Header()] = None) -> str:
    """
    Authenticated customer as forwarded by the gateway.

    Self-service routes take the customer from this header only, never
    from the request body.
    """
    if not x_customer_id or not x_customer_id.strip():
        raise ActionNotPermittedError(
            "Self-service actions require an authenticated customer", action="self_service"
        )
    return x_customer_id.strip()


__all__ = [
    "BillingContainer",
    "get_actor_id",
    "get_container",
    "get_customer_id",
    "get_payment_processor",
    "get_subscription_service",
    "get_synchronizer",
    "load_catalog_gateway",
]
