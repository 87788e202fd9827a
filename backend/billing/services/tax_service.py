# Overview: Tax collaborator seam used by invoice totals.

"""
Tax calculation is an external collaborator: a pure function
(subtotal, jurisdiction) -> tax. The engine only enforces that the answer is
non-negative Money in the invoice currency, rounded to minor units.

A deployment plugs its own calculator in with:

    app.extensions[TAX_CALCULATOR_KEY] = my_calculator

Without one, a flat rate applies: the tenant's "tax_rate" setting, else
BILLING_DEFAULT_TAX_RATE.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Callable

from flask import current_app

from ..errors import ValidationError
from ..extensions import TAX_CALCULATOR_KEY
from billing.money import Money, to_decimal


TaxCalculator = Callable[[Money, "str | None"], Money]


def flat_rate_calculator(rate) -> TaxCalculator:
    rate_value = to_decimal(rate)
    if rate_value < 0:
        raise ValidationError("Tax rate cannot be negative")

    def _calculate(subtotal: Money, jurisdiction: str | None = None) -> Money:
        return subtotal.multiply(rate_value).round()

    return _calculate


def _tenant_rate(tenant) -> Decimal:
    configured = tenant.setting("tax_rate") if tenant is not None else None
    if configured is None:
        configured = current_app.config.get("BILLING_DEFAULT_TAX_RATE", "0")
    return to_decimal(str(configured))


def calculate_tax(tenant, subtotal: Money, jurisdiction: str | None = None) -> Money:
    calculator = current_app.extensions.get(TAX_CALCULATOR_KEY)
    if calculator is None:
        calculator = flat_rate_calculator(_tenant_rate(tenant))

    tax = calculator(subtotal, jurisdiction)
    if not isinstance(tax, Money):
        raise TypeError("Tax calculator must return Money")
    tax = tax.round()
    if tax.currency != subtotal.currency:
        raise ValidationError(
            f"Tax returned in {tax.currency}, invoice is in {subtotal.currency}"
        )
    if tax.is_negative():
        raise ValidationError("Tax calculator returned a negative amount")
    return tax
