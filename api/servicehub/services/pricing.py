"""Pricing engine: booking totals, tax, platform fee and cancellation refunds.

All amounts are whole currency units (rupees). The gateway works in minor
units (paise); conversion happens only at the gateway boundary via
``to_minor_units`` / ``from_minor_units``. Rounding is half-up, matching how
amounts are quoted to customers.
"""

from collections.abc import Iterable
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import NamedTuple

from servicehub.domain.booking import AdditionalCharge, DiscountType

DEFAULT_TAX_RATE = 0.18  # GST
DEFAULT_PLATFORM_FEE_RATE = 0.05
MINOR_UNITS_PER_UNIT = 100

# Refund tiers: (hours until service strictly greater than, fraction refunded).
# Anything at or below the last threshold, including times already past,
# falls through to LATE_CANCELLATION_REFUND.
REFUND_TIERS = (
    (24, Decimal("1.0")),
    (12, Decimal("0.75")),
    (2, Decimal("0.5")),
)
LATE_CANCELLATION_REFUND = Decimal("0.25")


class Totals(NamedTuple):
    tax_amount: int
    total_amount: int


class PlatformFee(NamedTuple):
    fee: int
    net_amount: int


def round_amount(value: Decimal | float | int) -> int:
    """Round half-up to a whole currency amount."""
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _scaled(amount: int, rate: float | Decimal) -> int:
    return round_amount(Decimal(amount) * Decimal(str(rate)))


def discount_value(base_amount: int, discount: int, discount_type: DiscountType | None) -> int:
    if not discount:
        return 0
    if discount_type == DiscountType.PERCENTAGE:
        return _scaled(base_amount, Decimal(discount) / 100)
    return discount


def compute_totals(
    base_amount: int,
    additional_charges: Iterable[AdditionalCharge] = (),
    discount: int = 0,
    discount_type: DiscountType | None = None,
    tax_rate: float = DEFAULT_TAX_RATE,
) -> Totals:
    """Compute tax and the total owed for a booking.

    Tax is levied on the base amount. The total is
    base + additional charges - discount + tax, never negative.
    """
    if base_amount < 0 or discount < 0:
        raise ValueError("Amounts cannot be negative")
    charges = sum(c.amount for c in additional_charges)
    tax_amount = _scaled(base_amount, tax_rate)
    total = base_amount + charges - discount_value(base_amount, discount, discount_type) + tax_amount
    return Totals(tax_amount=tax_amount, total_amount=max(total, 0))


def calculate_tax(amount: int, rate: float = DEFAULT_TAX_RATE) -> Totals:
    tax = _scaled(amount, rate)
    return Totals(tax_amount=tax, total_amount=amount + tax)


def calculate_platform_fee(amount: int, rate: float = DEFAULT_PLATFORM_FEE_RATE) -> PlatformFee:
    fee = _scaled(amount, rate)
    return PlatformFee(fee=fee, net_amount=amount - fee)


def hours_until_service(scheduled_date: datetime, now: datetime) -> float:
    return (scheduled_date - now).total_seconds() / 3600


def refund_fraction(hours: float) -> Decimal:
    for threshold, fraction in REFUND_TIERS:
        if hours > threshold:
            return fraction
    return LATE_CANCELLATION_REFUND


def compute_refund_amount(total_amount: int, scheduled_date: datetime, now: datetime) -> int:
    """Refund owed when a booking is cancelled at ``now``.

    Pure function of its inputs: >24h 100%, 12-24h 75%, 2-12h 50%, else 25%.
    """
    return _scaled(total_amount, refund_fraction(hours_until_service(scheduled_date, now)))


def to_minor_units(amount: int) -> int:
    return int(amount) * MINOR_UNITS_PER_UNIT


def from_minor_units(amount: int) -> int:
    return round_amount(Decimal(amount) / MINOR_UNITS_PER_UNIT)
