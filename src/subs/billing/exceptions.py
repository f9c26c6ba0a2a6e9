"""
Billing system exceptions.

Custom exceptions for billing operations with clear error messages.
Every error carries a status code, a machine-readable error code, context
and a recovery hint so the HTTP layer can render it without inspecting
the type.
"""

from typing import Any


class BillingError(Exception):
    """
    Base billing system error with enhanced context.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code for API responses
        status_code: HTTP status code for this error type
        context: Additional context data about the error
        recovery_hint: Suggested action to resolve the error
    """

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int = 400,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        self.message = message
        self.error_code = error_code or "BILLING_ERROR"
        self.status_code = status_code
        self.context = context or {}
        self.recovery_hint = recovery_hint
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "status_code": self.status_code,
            "context": self.context,
            "recovery_hint": self.recovery_hint,
        }


class BillingConfigurationError(BillingError):
    """Provider credentials or billing settings are missing or invalid."""

    def __init__(
        self, message: str, config_key: str | None = None, recovery_hint: str | None = None
    ):
        context = {}
        if config_key:
            context["config_key"] = config_key

        super().__init__(
            message,
            "BILLING_CONFIG_ERROR",
            status_code=500,
            context=context,
            recovery_hint=recovery_hint or "Check billing configuration settings",
        )


# ============================================================================
# Not found
# ============================================================================


class NotFoundError(BillingError):
    """A referenced subscription, customer, product or order does not exist."""

    def __init__(
        self,
        message: str,
        error_code: str = "NOT_FOUND",
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        super().__init__(
            message, error_code, status_code=404, context=context, recovery_hint=recovery_hint
        )


class SubscriptionNotFoundError(NotFoundError):
    """Subscription not found error."""

    def __init__(
        self,
        message: str,
        subscription_id: str | None = None,
        external_subscription_id: str | None = None,
    ):
        context = {}
        if subscription_id:
            context["subscription_id"] = subscription_id
        if external_subscription_id:
            context["external_subscription_id"] = external_subscription_id

        super().__init__(
            message,
            "SUBSCRIPTION_NOT_FOUND",
            context=context,
            recovery_hint="Verify the subscription ID and ensure it exists",
        )


class CustomerNotFoundError(NotFoundError):
    """Customer not found error."""

    def __init__(self, message: str, customer_id: str | None = None) -> None:
        super().__init__(
            message,
            "CUSTOMER_NOT_FOUND",
            context={"customer_id": customer_id} if customer_id else None,
            recovery_hint="Verify the customer ID",
        )


class ProductNotFoundError(NotFoundError):
    """Product not found or not configured for subscriptions."""

    def __init__(self, message: str, product_id: str | None = None) -> None:
        super().__init__(
            message,
            "PRODUCT_NOT_FOUND",
            context={"product_id": product_id} if product_id else None,
            recovery_hint="Verify the product ID and its subscription settings",
        )


class OrderNotFoundError(NotFoundError):
    """Order not found error."""

    def __init__(self, message: str, order_id: str | None = None) -> None:
        super().__init__(
            message,
            "ORDER_NOT_FOUND",
            context={"order_id": order_id} if order_id else None,
            recovery_hint="Verify the order ID",
        )


# ============================================================================
# State transitions
# ============================================================================


class InvalidTransitionError(BillingError):
    """Illegal or terminal-state status change attempted."""

    def __init__(
        self,
        message: str,
        current_state: str | None = None,
        requested_state: str | None = None,
        error_code: str = "INVALID_SUBSCRIPTION_STATE",
    ) -> None:
        context = {}
        if current_state:
            context["current_state"] = current_state
        if requested_state:
            context["requested_state"] = requested_state

        super().__init__(
            message,
            error_code,
            status_code=409,
            context=context,
            recovery_hint="Check the subscription status before requesting this change",
        )


class AlreadyCancelledError(InvalidTransitionError):
    """Cancel requested for a subscription that is already cancelled."""

    def __init__(self, subscription_id: str) -> None:
        super().__init__(
            "Subscription is already cancelled",
            current_state="cancelled",
            requested_state="cancelled",
            error_code="ALREADY_CANCELLED",
        )
        self.context["subscription_id"] = subscription_id


class SubscriptionNotActiveError(InvalidTransitionError):
    """Operation requires an active or trialing subscription."""

    def __init__(self, message: str, subscription_id: str, current_state: str) -> None:
        super().__init__(
            message,
            current_state=current_state,
            error_code="SUBSCRIPTION_NOT_ACTIVE",
        )
        self.context["subscription_id"] = subscription_id


# ============================================================================
# Validation
# ============================================================================


class BillingValidationError(BillingError):
    """Malformed input or out-of-enum value."""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        value: Any = None,
        error_code: str = "VALIDATION_ERROR",
    ) -> None:
        context: dict[str, Any] = {}
        if field:
            context["field"] = field
        if value is not None:
            context["value"] = str(value)

        super().__init__(
            message,
            error_code,
            status_code=422,
            context=context,
            recovery_hint="Correct the request data and try again",
        )


class WebhookPayloadError(BillingValidationError):
    """Webhook body could not be decoded into a provider event."""

    def __init__(self, message: str) -> None:
        super().__init__(message, error_code="WEBHOOK_PAYLOAD_INVALID")
        self.status_code = 400


class UnknownProviderStatusError(BillingValidationError):
    """Provider reported a subscription status with no local equivalent."""

    def __init__(self, provider_status: str) -> None:
        super().__init__(
            f"Unknown provider subscription status: {provider_status}",
            field="status",
            value=provider_status,
            error_code="UNKNOWN_PROVIDER_STATUS",
        )
        self.provider_status = provider_status


# ============================================================================
# Provider
# ============================================================================


class ProviderError(BillingError):
    """Upstream payment provider call failed.

    The provider's own error code and message are preserved so operators can
    look the failure up in the provider dashboard.
    """

    def __init__(
        self,
        message: str,
        operation: str | None = None,
        provider_code: str | None = None,
        provider_message: str | None = None,
    ) -> None:
        context = {}
        if operation:
            context["operation"] = operation
        if provider_code:
            context["provider_code"] = provider_code
        if provider_message:
            context["provider_message"] = provider_message

        super().__init__(
            message,
            "PROVIDER_ERROR",
            status_code=502,
            context=context,
            recovery_hint="Check the payment provider dashboard and retry the operation",
        )
        self.operation = operation
        self.provider_code = provider_code
        self.provider_message = provider_message


# ============================================================================
# Authorization and authenticity
# ============================================================================


class ActionNotPermittedError(BillingError):
    """Actor lacks rights for the requested action."""

    def __init__(self, message: str, action: str, actor: str | None = None) -> None:
        context = {"action": action}
        if actor:
            context["actor"] = actor

        super().__init__(
            message,
            "ACTION_NOT_PERMITTED",
            status_code=403,
            context=context,
            recovery_hint="Contact support if you need this change made",
        )


class WebhookSignatureError(BillingError):
    """Webhook authenticity check failed."""

    def __init__(self, message: str, provider: str = "stripe") -> None:
        super().__init__(
            message,
            "WEBHOOK_SIGNATURE_INVALID",
            status_code=400,
            context={"provider": provider},
            recovery_hint="Check the webhook signing secret configured for this endpoint",
        )


# ============================================================================
# Concurrency
# ============================================================================


class StaleSubscriptionError(BillingError):
    """Write was based on an outdated version of the subscription."""

    def __init__(self, subscription_id: str, expected_version: int) -> None:
        super().__init__(
            "Subscription was modified concurrently",
            "SUBSCRIPTION_VERSION_CONFLICT",
            status_code=409,
            context={"subscription_id": subscription_id, "expected_version": expected_version},
            recovery_hint="Reload the subscription and retry",
        )
        self.subscription_id = subscription_id
