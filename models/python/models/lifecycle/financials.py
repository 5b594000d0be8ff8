from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

PLATFORM_FEE_RATE = Decimal("0.025")
PROCESSING_FEE_RATE = Decimal("0.029")

CENTS = Decimal("0.01")


def to_cents(value) -> Decimal:
    """Round to two decimal places, half away from zero."""
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


def to_minor_units(value) -> int:
    return int((to_cents(value) * 100).to_integral_value(rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class Financials:
    total_amount: float
    platform_fee: float
    processing_fee: float
    total_fees: float


def recompute_financials(quantity: int, price_per_credit: float) -> Financials:
    """Derive order total and fees from quantity and unit price.

    Pure and idempotent. Each fee is rounded to cents on its own and
    ``total_fees`` is the sum of the rounded fees.
    """
    total = to_cents(Decimal(quantity) * Decimal(str(price_per_credit)))
    platform = to_cents(total * PLATFORM_FEE_RATE)
    processing = to_cents(total * PROCESSING_FEE_RATE)
    return Financials(
        total_amount=float(total),
        platform_fee=float(platform),
        processing_fee=float(processing),
        total_fees=float(platform + processing),
    )
