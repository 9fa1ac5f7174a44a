# model/pricing.py
from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from ..errors import InvalidPlantPrice, ValidationError
from ..helpers import parse_int, to_decimal, round_half_up


@dataclass(frozen=True)
class BookingQuote:
    qty: int
    advance_percent: int
    unit_price: Decimal
    amount_total: Decimal
    amount_advance: Decimal
    amount_balance: Decimal


def valid_unit_price(value: Any) -> Decimal:
    """Positive whole currency units; fractional prices are refused."""
    price = to_decimal(value)
    if price is None or price <= 0 or price != price.to_integral_value():
        raise InvalidPlantPrice("unit price must be a positive whole amount")
    return price


def compute_booking(
    unit_price: Any,
    quantity: Any,
    min_order_qty: Any,
    requested_advance_percent: Any,
    advance_floor_percent: int,
) -> BookingQuote:
    """
    Price a booking request.

    - qty = max(min_order_qty, quantity) for a positive integer quantity,
      else min_order_qty
    - advance% = max(floor, requested) for an integer request, else floor
    - advance = round-half-up(total * advance% / 100), balance = rest

    Prices are whole currency units, so the total is whole too and
    0 <= advance <= total; advance + balance == total holds exactly.
    """
    price = valid_unit_price(unit_price)

    min_qty = parse_int(min_order_qty)
    if min_qty is None or min_qty < 1:
        min_qty = 1

    requested_qty = parse_int(quantity)
    if requested_qty is not None and requested_qty > 0:
        qty = max(min_qty, requested_qty)
    else:
        qty = min_qty

    requested_pct = parse_int(requested_advance_percent)
    if requested_pct is None:
        pct = advance_floor_percent
    else:
        pct = max(advance_floor_percent, requested_pct)
    if pct > 100:
        raise ValidationError("advancePercent cannot exceed 100")

    total = price * qty
    advance = round_half_up(total * pct / Decimal(100))
    balance = total - advance
    return BookingQuote(
        qty=qty,
        advance_percent=pct,
        unit_price=price,
        amount_total=total,
        amount_advance=advance,
        amount_balance=balance,
    )


def to_minor_units(amount: Decimal) -> int:
    """Whole currency units -> gateway minor units (x100), at least 1."""
    return max(1, int(round_half_up(amount * 100)))
