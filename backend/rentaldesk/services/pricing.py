# Overview: Pure money arithmetic for orders (line totals, GST, order totals) in integer cents.

from __future__ import annotations

from dataclasses import dataclass


BPS_DENOMINATOR = 10_000

# Maximum per-day price: 9,999,999.99 (999,999,999 cents)
MAX_PRICE_CENTS = 999_999_999


def _round_div(numerator: int, denominator: int) -> int:
    """Integer division rounding half up (inputs are non-negative)."""
    return (2 * numerator + denominator) // (2 * denominator)


def line_total(quantity: int, price_per_day_cents: int, days: int) -> int:
    return quantity * price_per_day_cents * days


@dataclass(frozen=True)
class Charges:
    """
    Rental charges before fees.

    subtotal_cents + gst_cents always equals what the customer pays for the
    rental itself. When GST is included in prices the tax is carved out of
    the line sum; otherwise it is added on top.
    """
    subtotal_cents: int
    gst_cents: int

    @property
    def rental_cents(self) -> int:
        return self.subtotal_cents + self.gst_cents


def compute_charges(line_sum_cents: int, gst_rate_bps: int, gst_included: bool) -> Charges:
    if gst_rate_bps <= 0 or line_sum_cents <= 0:
        return Charges(subtotal_cents=line_sum_cents, gst_cents=0)

    if gst_included:
        net = _round_div(line_sum_cents * BPS_DENOMINATOR, BPS_DENOMINATOR + gst_rate_bps)
        return Charges(subtotal_cents=net, gst_cents=line_sum_cents - net)

    gst = _round_div(line_sum_cents * gst_rate_bps, BPS_DENOMINATOR)
    return Charges(subtotal_cents=line_sum_cents, gst_cents=gst)


def order_total(subtotal_cents: int, gst_cents: int, late_fee_cents: int, damage_fees_cents) -> int:
    """total = subtotal + tax + late fee + sum of item damage fees."""
    return subtotal_cents + gst_cents + late_fee_cents + sum(damage_fees_cents)


def late_fee_limit(subtotal_cents: int, gst_cents: int, multiplier: int) -> int:
    """Largest late fee accepted without explicit confirmation."""
    return (subtotal_cents + gst_cents) * multiplier


def recompute_order_totals(order) -> None:
    """
    Recompute damage total and grand total on an Order from its items.

    Stored totals are never trusted or accumulated; they are rebuilt from
    subtotal, tax, late fee, and the items' current damage fees.
    """
    damage_fees = [item.damage_fee_cents or 0 for item in order.items]
    order.damage_fee_total_cents = sum(damage_fees)
    order.total_cents = order_total(
        order.subtotal_cents or 0,
        order.gst_cents or 0,
        order.late_fee_cents or 0,
        damage_fees,
    )
