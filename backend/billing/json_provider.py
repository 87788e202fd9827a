# Overview: JSON provider that keeps request decimals exact.

from decimal import Decimal

from flask.json.provider import DefaultJSONProvider


class DecimalJSONProvider(DefaultJSONProvider):
    """
    Parse JSON numbers with a fraction as Decimal.

    Request bodies carry money as numbers ("amount": 60.00); a float would be
    refused by billing.money. Responses already render Decimal as strings.
    """

    def loads(self, s, **kwargs):
        kwargs.setdefault("parse_float", Decimal)
        return super().loads(s, **kwargs)
