"""
Tests for fee and money helpers.
"""

from decimal import Decimal

import pytest

from subs.billing.exceptions import BillingValidationError
from subs.billing.money_utils import (
    amount_to_dict,
    compute_fee,
    format_amount,
    from_minor_units,
    round_amount,
    to_minor_units,
    total,
)

pytestmark = pytest.mark.unit


class TestFees:
    """Test processing fee calculation."""

    def test_standard_card_fee(self):
        fee = compute_fee(Decimal("29.99"), Decimal("2.9"), Decimal("0.30"))
        assert fee == Decimal("1.17")
        assert total(Decimal("29.99"), fee) == Decimal("31.16")

    def test_accepts_strings_and_floats_without_float_noise(self):
        assert compute_fee("100", 2.9, "0.30") == Decimal("3.20")

    def test_half_up_rounding(self):
        # 10.50 * 1% = 0.105 -> 0.11
        assert compute_fee("10.50", "1", "0") == Decimal("0.11")

    def test_zero_decimal_currency(self):
        assert compute_fee(1000, "2.9", "30", currency="JPY") == Decimal("59")

    def test_zero_amount_still_charges_fixed_fee(self):
        assert compute_fee(0, "2.9", "0.30") == Decimal("0.30")

    @pytest.mark.parametrize(
        "amount,percentage,fixed",
        [("-1", "2.9", "0.30"), ("10", "-2.9", "0.30"), ("10", "2.9", "-0.30")],
    )
    def test_negative_inputs_rejected(self, amount, percentage, fixed):
        with pytest.raises(BillingValidationError):
            compute_fee(amount, percentage, fixed)

    def test_garbage_amount_rejected(self):
        with pytest.raises(BillingValidationError):
            compute_fee("twelve", "2.9", "0.30")


class TestMinorUnits:
    def test_rounds_before_converting(self):
        assert to_minor_units(Decimal("19.999")) == 2000
        assert to_minor_units("31.16") == 3116
        assert to_minor_units(500, "JPY") == 500

    def test_from_minor_units(self):
        assert from_minor_units(3116) == Decimal("31.16")
        assert from_minor_units(500, "JPY") == Decimal("500")

    def test_unknown_currency_rejected(self):
        with pytest.raises(BillingValidationError):
            round_amount("1.00", "XXQ")


class TestFormatting:
    def test_format_amount_us_locale(self):
        assert format_amount(Decimal("31.16"), "USD") == "$31.16"

    def test_unknown_locale_falls_back_to_default(self):
        assert format_amount(Decimal("31.16"), "USD", locale="zz_ZZ") == "$31.16"

    def test_amount_to_dict(self):
        assert amount_to_dict("31.155", "usd") == {
            "amount": "31.16",
            "currency": "USD",
            "minor_units": 3116,
        }
