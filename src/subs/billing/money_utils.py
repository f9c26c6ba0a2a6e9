"""
Money and fee utilities using py-moneyed and Babel.

Provides processing fee computation with proper currency precision,
minor-unit conversion for the payment provider, and locale-aware
formatting for notifications.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from babel import Locale
from babel.core import UnknownLocaleError
from babel.numbers import format_currency, get_currency_precision
from moneyed import Currency, Money, get_currency
from moneyed.classes import CurrencyDoesNotExist

from subs.billing.exceptions import BillingValidationError

# Default locale for formatting
DEFAULT_LOCALE = "en_US"

AmountLike = int | float | Decimal | str


def _to_decimal(value: AmountLike, field: str) -> Decimal:
    """Convert to Decimal without float noise."""
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise BillingValidationError(f"Invalid amount: {value}", field=field, value=value)


def validate_currency(currency_code: str) -> Currency:
    """Validate and return Currency object."""
    try:
        return get_currency(currency_code.upper())
    except CurrencyDoesNotExist:
        raise BillingValidationError(
            f"Invalid currency code: {currency_code}", field="currency", value=currency_code
        )


def currency_quantum(currency_code: str) -> Decimal:
    """Smallest representable amount for a currency (0.01 for USD, 1 for JPY)."""
    precision = get_currency_precision(currency_code.upper())
    return Decimal(1).scaleb(-precision)


def round_amount(amount: AmountLike, currency: str = "USD") -> Decimal:
    """Round half-up to the currency's minor unit."""
    validate_currency(currency)
    return _to_decimal(amount, "amount").quantize(currency_quantum(currency), rounding=ROUND_HALF_UP)


def compute_fee(
    amount: AmountLike,
    percentage: AmountLike,
    fixed: AmountLike,
    currency: str = "USD",
) -> Decimal:
    """
    Compute the provider processing fee for a charge.

    fee = amount * percentage / 100 + fixed, rounded half-up to the
    currency's minor unit.

    Args:
        amount: Charge amount before fees
        percentage: Percentage fee, e.g. 2.9 for 2.9%
        fixed: Fixed fee per charge
        currency: ISO currency code

    Returns:
        The rounded fee
    """
    amount_dec = _to_decimal(amount, "amount")
    percentage_dec = _to_decimal(percentage, "percentage")
    fixed_dec = _to_decimal(fixed, "fixed")

    if amount_dec < 0:
        raise BillingValidationError("Amount cannot be negative", field="amount", value=amount)
    if percentage_dec < 0 or fixed_dec < 0:
        raise BillingValidationError("Fee components cannot be negative", field="fee")

    return round_amount(amount_dec * percentage_dec / Decimal(100) + fixed_dec, currency)


def total(amount: AmountLike, fee: AmountLike) -> Decimal:
    """Total charge: amount plus fee."""
    return _to_decimal(amount, "amount") + _to_decimal(fee, "fee")


def to_minor_units(amount: AmountLike, currency: str = "USD") -> int:
    """Convert an amount to minor units (e.g., cents for USD).

    Rounds to the currency precision first so 19.999 never truncates to 1999.
    """
    precision = get_currency_precision(currency.upper())
    rounded = round_amount(amount, currency)
    return int(rounded.scaleb(precision))


def from_minor_units(minor_units: int, currency: str = "USD") -> Decimal:
    """Create an amount from minor units (e.g., cents)."""
    validate_currency(currency)
    precision = get_currency_precision(currency.upper())
    return Decimal(minor_units).scaleb(-precision)


def create_money(amount: AmountLike, currency: str = "USD") -> Money:
    """Create Money object with proper validation."""
    return Money(amount=_to_decimal(amount, "amount"), currency=validate_currency(currency))


def format_amount(amount: AmountLike, currency: str = "USD", locale: str | None = None) -> str:
    """Format an amount with locale-aware formatting."""
    locale = locale or DEFAULT_LOCALE
    try:
        Locale.parse(locale)
    except (UnknownLocaleError, ValueError):
        locale = DEFAULT_LOCALE

    money = create_money(amount, currency)
    try:
        return format_currency(number=money.amount, currency=money.currency.code, locale=locale)
    except (TypeError, ValueError):
        # Fallback to simple formatting if locale issues
        return f"{money.currency.code} {money.amount}"


def amount_to_dict(amount: AmountLike, currency: str = "USD") -> dict[str, Any]:
    """Convert an amount to a dictionary for serialization."""
    rounded = round_amount(amount, currency)
    return {
        "amount": str(rounded),
        "currency": currency.upper(),
        "minor_units": to_minor_units(rounded, currency),
    }


__all__ = [
    "DEFAULT_LOCALE",
    "validate_currency",
    "currency_quantum",
    "round_amount",
    "compute_fee",
    "total",
    "to_minor_units",
    "from_minor_units",
    "create_money",
    "format_amount",
    "amount_to_dict",
]
