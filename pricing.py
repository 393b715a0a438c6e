"""
Money and tax

Amounts are stored as integer cents. Decimals only appear at the HTTP edge.
"""
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Union

import config

CENT = Decimal("0.01")

Amount = Union[Decimal, int, float, str]


def to_cents(amount: Amount) -> int:
    value = Decimal(str(amount)).quantize(CENT, rounding=ROUND_HALF_UP)
    return int(value * 100)


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)


def as_amount(cents: int) -> float:
    """Response form of a stored amount."""
    return float(from_cents(cents))


class TaxPolicy:
    def tax_for(self, subtotal_cents: int, shipping_address: Optional[str] = None) -> int:
        raise NotImplementedError


class FlatRateTax(TaxPolicy):
    """Same rate everywhere, whatever the shipping address."""

    def __init__(self, rate: Decimal = config.TAX_RATE):
        if rate < 0:
            raise ValueError("tax rate must not be negative")
        self.rate = Decimal(rate)

    def tax_for(self, subtotal_cents: int, shipping_address: Optional[str] = None) -> int:
        tax = (Decimal(subtotal_cents) * self.rate).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
        return int(tax)

    def __repr__(self):
        return f"FlatRateTax(rate={self.rate})"


def get_tax_policy() -> TaxPolicy:
    return FlatRateTax()
