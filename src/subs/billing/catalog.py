"""
Catalog and order collaborator interface.

Billing does not own products, orders or customers. It reads what it needs
through ``CatalogGateway`` and writes back only the two order flags and the
provider customer id.
"""

from decimal import Decimal
from typing import Protocol

from pydantic import BaseModel, ConfigDict, Field


class OrderItem(BaseModel):
    """A line on an order."""

    model_config = ConfigDict(frozen=True)

    product_id: str
    quantity: int = Field(1, ge=1)


class OrderInfo(BaseModel):
    """Order data billing needs to create subscriptions."""

    model_config = ConfigDict(frozen=True)

    order_id: str
    customer_id: str
    items: list[OrderItem] = Field(default_factory=list)
    delivery_address: str = ""
    currency: str = "USD"
    is_subscription_order: bool = False
    subscription_processed: bool = False
    payment_method_id: str | None = None


class ProductSubscriptionConfig(BaseModel):
    """Per-product subscription settings from the catalog."""

    model_config = ConfigDict(frozen=True)

    product_id: str
    name: str
    base_price: Decimal
    period: str = "month"
    interval: int = Field(1, ge=1)
    # None uses the configured default trial length
    trial_days: int | None = Field(None, ge=0)
    # None inherits the global pass-fees setting
    pass_fee_to_customer: bool | None = None


class CustomerInfo(BaseModel):
    """Customer contact data and provider linkage."""

    model_config = ConfigDict(frozen=True)

    customer_id: str
    email: str
    name: str = ""
    provider_customer_id: str | None = None


class CatalogGateway(Protocol):
    """Access to orders, products and customers owned by the shop."""

    async def get_order(self, order_id: str) -> OrderInfo | None: ...

    async def mark_order_processed(self, order_id: str) -> None: ...

    async def get_product_subscription_config(
        self, product_id: str
    ) -> ProductSubscriptionConfig | None: ...

    async def get_customer(self, customer_id: str) -> CustomerInfo | None: ...

    async def set_provider_customer_id(self, customer_id: str, provider_customer_id: str) -> None: ...
