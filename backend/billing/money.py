"""
Fixed-point money for every currency field.

INVARIANTS:
- Amounts are decimal.Decimal, never float. Constructing Money from a float is
  rejected outright.
- Arithmetic between two currencies is a programming error
  (CurrencyMismatchError). Conversion is explicit through convert(rate, ...).
- Rounding is HALF_UP to the currency's minor units unless told otherwise.
- Storage columns are Numeric(MONEY_PRECISION, MONEY_SCALE). The scale covers
  the largest minor unit in MINOR_UNITS, so no currency is re-rounded on write.
- A rounded value that does not fit those columns raises MoneyOverflowError;
  nothing is silently truncated.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Iterable


# ISO 4217 minor units for currencies that differ from the default of 2
MINOR_UNITS = {
    "BHD": 3,
    "CLP": 0,
    "IQD": 3,
    "ISK": 0,
    "JOD": 3,
    "JPY": 0,
    "KRW": 0,
    "KWD": 3,
    "LYD": 3,
    "OMR": 3,
    "TND": 3,
    "UGX": 0,
    "VND": 0,
    "XAF": 0,
    "XOF": 0,
}
DEFAULT_MINOR_UNITS = 2

# Shared by every money column: Numeric(MONEY_PRECISION, MONEY_SCALE)
MONEY_PRECISION = 13
MONEY_SCALE = 3
MAX_INTEGER_DIGITS = MONEY_PRECISION - MONEY_SCALE

QUANTITY_SCALE = 4
RATE_SCALE = 8


class CurrencyMismatchError(TypeError):
    """Two amounts in different currencies were combined without conversion."""


class MoneyOverflowError(ArithmeticError):
    """A value exceeds the representable precision."""


def minor_units(currency: str) -> int:
    return MINOR_UNITS.get(currency.upper(), DEFAULT_MINOR_UNITS)


def to_decimal(value) -> Decimal:
    """
    Coerce int / str / Decimal to Decimal.

    Floats are refused: 0.1 + 0.2 is exactly the bug this module exists to
    prevent. Booleans are refused because they are ints by accident.
    """
    if isinstance(value, bool):
        raise TypeError("Boolean is not a valid amount")
    if isinstance(value, float):
        raise TypeError("Float amounts are not accepted; pass a string or Decimal")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, str)):
        try:
            result = Decimal(value.strip() if isinstance(value, str) else value)
        except InvalidOperation:
            raise ValueError(f"Invalid decimal value: {value!r}")
    else:
        raise TypeError(f"Unsupported amount type: {type(value).__name__}")

    if not result.is_finite():
        raise ValueError(f"Amount must be finite, got {value!r}")
    return result


def quantize(
    value: Decimal,
    scale: int,
    *,
    integer_digits: int | None = None,
    mode: str = ROUND_HALF_UP,
) -> Decimal:
    """Round to `scale` places and enforce the integer-digit ceiling."""
    exponent = Decimal(1).scaleb(-scale)
    try:
        result = value.quantize(exponent, rounding=mode)
    except InvalidOperation:
        raise MoneyOverflowError(f"{value} cannot be represented with scale {scale}")
    if integer_digits is not None and abs(result) >= Decimal(10) ** integer_digits:
        raise MoneyOverflowError(
            f"{value} exceeds {integer_digits} integer digits"
        )
    return result


def round_quantity(value) -> Decimal:
    return quantize(to_decimal(value), QUANTITY_SCALE, integer_digits=14)


def round_rate(value) -> Decimal:
    return quantize(to_decimal(value), RATE_SCALE, integer_digits=12)


def format_amount(value, currency: str | None = None) -> str | None:
    """
    Render a stored amount for API output.

    Money columns come back at MONEY_SCALE places, so 108.00 USD reads as
    108.000. With a currency the value is shown at its minor units; without
    one (catalog prices in the tenant currency) a zero third place is dropped.
    """
    if value is None:
        return None
    amount = to_decimal(value)
    if currency is not None:
        return str(quantize(amount, minor_units(currency)))
    cents = amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return str(cents if cents == amount else amount)


@dataclass(frozen=True)
class Money:
    amount: Decimal
    currency: str

    def __post_init__(self):
        object.__setattr__(self, "amount", to_decimal(self.amount))
        if not self.currency or len(self.currency.strip()) != 3:
            raise ValueError(f"Invalid currency code: {self.currency!r}")
        object.__setattr__(self, "currency", self.currency.strip().upper())

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------

    @classmethod
    def of(cls, amount, currency: str) -> "Money":
        """Build and round to the currency's minor units."""
        return cls(amount, currency).round()

    @classmethod
    def zero(cls, currency: str) -> "Money":
        return cls(Decimal(0), currency).round()

    @classmethod
    def sum(cls, values: Iterable["Money"], currency: str) -> "Money":
        total = cls.zero(currency)
        for value in values:
            total = total.add(value)
        return total

    # ------------------------------------------------------------------
    # Arithmetic
    # ------------------------------------------------------------------

    def _require_same_currency(self, other: "Money") -> None:
        if not isinstance(other, Money):
            raise TypeError(f"Expected Money, got {type(other).__name__}")
        if other.currency != self.currency:
            raise CurrencyMismatchError(
                f"Cannot combine {self.currency} with {other.currency} without conversion"
            )

    def add(self, other: "Money") -> "Money":
        self._require_same_currency(other)
        return Money(self.amount + other.amount, self.currency)

    def subtract(self, other: "Money") -> "Money":
        self._require_same_currency(other)
        return Money(self.amount - other.amount, self.currency)

    def multiply(self, quantity) -> "Money":
        """Unrounded product; callers round once at the end of a computation."""
        if isinstance(quantity, Money):
            raise TypeError("Money cannot be multiplied by Money")
        return Money(self.amount * to_decimal(quantity), self.currency)

    def round(self, scale: int | None = None, mode: str = ROUND_HALF_UP) -> "Money":
        places = minor_units(self.currency) if scale is None else scale
        rounded = quantize(self.amount, places, integer_digits=MAX_INTEGER_DIGITS, mode=mode)
        return Money(rounded, self.currency)

    def compare(self, other: "Money") -> int:
        self._require_same_currency(other)
        if self.amount < other.amount:
            return -1
        if self.amount > other.amount:
            return 1
        return 0

    def convert(self, rate, to_currency: str) -> "Money":
        """
        Convert into another currency using an explicit rate
        (units of `to_currency` per one unit of this currency).
        """
        rate_value = to_decimal(rate)
        if rate_value <= 0:
            raise ValueError("Conversion rate must be positive")
        return Money(self.amount * rate_value, to_currency).round()

    # ------------------------------------------------------------------
    # Predicates / operators
    # ------------------------------------------------------------------

    def is_zero(self) -> bool:
        return self.amount == 0

    def is_negative(self) -> bool:
        return self.amount < 0

    def is_positive(self) -> bool:
        return self.amount > 0

    def __add__(self, other: "Money") -> "Money":
        return self.add(other)

    def __sub__(self, other: "Money") -> "Money":
        return self.subtract(other)

    def __neg__(self) -> "Money":
        return Money(-self.amount, self.currency)

    def __lt__(self, other: "Money") -> bool:
        return self.compare(other) < 0

    def __le__(self, other: "Money") -> bool:
        return self.compare(other) <= 0

    def __gt__(self, other: "Money") -> bool:
        return self.compare(other) > 0

    def __ge__(self, other: "Money") -> bool:
        return self.compare(other) >= 0

    def __str__(self) -> str:
        return f"{self.amount} {self.currency}"
