"""VAT decomposition of VAT-inclusive KRW amounts.

supply = floor(total / (1 + rate)), vat = total - supply.

With the default rate of 0.1 this is the familiar "divide by 1.1" split,
e.g. 11000 -> 10000 + 1000. Negative amounts (cancellations) decompose the
absolute value and negate both parts, so a cancel exactly reverses the sale.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_FLOOR
from typing import Union

Number = Union[int, Decimal]


@dataclass(frozen=True)
class VatBreakdown:
    supply: int
    vat: int
    total: int

    def negate(self) -> "VatBreakdown":
        return VatBreakdown(supply=-self.supply, vat=-self.vat, total=-self.total)

    def __add__(self, other: "VatBreakdown") -> "VatBreakdown":
        return VatBreakdown(
            supply=self.supply + other.supply,
            vat=self.vat + other.vat,
            total=self.total + other.total,
        )


ZERO = VatBreakdown(supply=0, vat=0, total=0)


def _as_int(amount: Number) -> int:
    if isinstance(amount, bool):
        raise TypeError("amount must be an integer KRW amount")
    if isinstance(amount, Decimal):
        if amount != amount.to_integral_value():
            raise ValueError(f"amount must be a whole KRW amount, got {amount}")
        return int(amount)
    if not isinstance(amount, int):
        raise TypeError(f"amount must be an integer KRW amount, got {type(amount).__name__}")
    return amount


def split_vat(total: Number, rate: Decimal) -> VatBreakdown:
    """Split a non-negative VAT-inclusive total into supply and VAT.

    Raises:
        ValueError: If total is negative or rate is negative
    """
    total = _as_int(total)
    rate = Decimal(rate)
    if total < 0:
        raise ValueError(f"total must be >= 0, got {total}; use split_signed() for reversals")
    if rate < 0:
        raise ValueError(f"VAT rate must be >= 0, got {rate}")

    supply = int((Decimal(total) / (Decimal(1) + rate)).to_integral_value(rounding=ROUND_FLOOR))
    return VatBreakdown(supply=supply, vat=total - supply, total=total)


def split_signed(total: Number, rate: Decimal) -> VatBreakdown:
    """Split a possibly negative total; negatives mirror the positive split."""
    total = _as_int(total)
    if total < 0:
        return split_vat(-total, rate).negate()
    return split_vat(total, rate)


def no_vat(total: Number) -> VatBreakdown:
    """Breakdown for amounts outside the VAT scope (e.g. payout receipts)."""
    total = _as_int(total)
    return VatBreakdown(supply=total, vat=0, total=total)
