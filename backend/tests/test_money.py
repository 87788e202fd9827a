# Overview: Pytest coverage for fixed-point money arithmetic.

"""
Money Tests

Money is the only type allowed for currency fields:
1. Floats are refused at construction
2. Rounding is HALF_UP to the currency's minor units
3. Mixing currencies without an explicit conversion fails
4. Values beyond the ten integer digits of the money columns overflow loudly
"""

from decimal import Decimal

import pytest
from billing.money import (
    CurrencyMismatchError,
    Money,
    MoneyOverflowError,
    minor_units,
    round_quantity,
    to_decimal,
)


class TestConstruction:

    def test_float_rejected(self):
        """0.1 never becomes an amount."""
        with pytest.raises(TypeError):
            Money(0.1, "USD")

    def test_bool_rejected(self):
        with pytest.raises(TypeError):
            to_decimal(True)

    def test_string_and_int_accepted(self):
        assert Money.of("10.5", "usd") == Money(Decimal("10.50"), "USD")
        assert Money.of(3, "USD").amount == Decimal("3.00")

    def test_non_finite_rejected(self):
        with pytest.raises(ValueError):
            Money("NaN", "USD")

    def test_garbage_rejected(self):
        with pytest.raises(ValueError):
            Money("ten", "USD")

    def test_invalid_currency_code(self):
        with pytest.raises(ValueError):
            Money("1", "US")


class TestRounding:

    def test_half_up(self):
        """0.005 rounds away from zero, not to even."""
        assert Money("0.005", "USD").round().amount == Decimal("0.01")
        assert Money("0.125", "USD").round().amount == Decimal("0.13")
        assert Money("-0.005", "USD").round().amount == Decimal("-0.01")

    def test_minor_units_per_currency(self):
        assert minor_units("USD") == 2
        assert minor_units("JPY") == 0
        assert minor_units("KWD") == 3
        assert Money.of("100.5", "JPY").amount == Decimal("101")
        assert Money.of("1.2345", "KWD").amount == Decimal("1.235")

    def test_point_one_plus_point_two(self):
        total = Money.of("0.1", "USD") + Money.of("0.2", "USD")
        assert total == Money.of("0.3", "USD")

    def test_multiply_rounds_once(self):
        """Unit price times fractional quantity is rounded at the end only."""
        line = Money.of("19.99", "USD").multiply("1.5").round()
        assert line.amount == Decimal("29.99")

    def test_round_quantity_scale(self):
        assert round_quantity("1.23456") == Decimal("1.2346")


class TestArithmetic:

    def test_currency_mismatch(self):
        with pytest.raises(CurrencyMismatchError):
            Money.of("1", "USD") + Money.of("1", "EUR")

    def test_compare_requires_same_currency(self):
        with pytest.raises(CurrencyMismatchError):
            Money.of("1", "USD") < Money.of("2", "EUR")

    def test_money_times_money_rejected(self):
        with pytest.raises(TypeError):
            Money.of("1", "USD").multiply(Money.of("2", "USD"))

    def test_convert_explicit_rate(self):
        eur = Money.of("100.00", "USD").convert("0.91234567", "EUR")
        assert eur == Money(Decimal("91.23"), "EUR")

    def test_convert_rejects_non_positive_rate(self):
        with pytest.raises(ValueError):
            Money.of("1", "USD").convert("0", "EUR")

    def test_sum_and_negation(self):
        values = [Money.of("60.00", "USD"), Money.of("48.00", "USD")]
        assert Money.sum(values, "USD").amount == Decimal("108.00")
        assert (-Money.of("48.00", "USD")).is_negative()
        assert Money.zero("USD").is_zero()


class TestOverflow:

    def test_overflow_raises(self):
        """Ten integer digits fit, eleven do not."""
        assert Money.of("9999999999.99", "USD").amount == Decimal("9999999999.99")
        with pytest.raises(MoneyOverflowError):
            Money.of("10000000000.00", "USD")

    def test_sum_overflow_raises(self):
        big = Money.of("9999999999.99", "USD")
        with pytest.raises(MoneyOverflowError):
            (big + big).round()
