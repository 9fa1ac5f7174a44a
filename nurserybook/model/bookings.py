# model/bookings.py
"""
Booking lifecycle.

    pending  -> approved | rejected
    approved -> completed | cancelled

Every transition is a conditional UPDATE on the current status, so two
concurrent deciders cannot both win. Approval takes the stock in the same
transaction: if the ledger refuses, the status change rolls back with it.

An approved booking holds its stock until `reservation_expires_at`. Past that
point, with the balance unpaid, the hold is released back to the plant and the
booking is cancelled; the release is guarded by `reserved_stock > 0` and runs
at most once whether the sweep or a lazy read gets there first.
"""

from __future__ import annotations
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import (
    NotFound, ValidationError, AdvanceNotPaid, InvalidStateTransition,
)
from ..helpers import new_id, now_ts
from ..infra.sql import GatedAsyncSession
from .centers import _get_active_center
from .inventory import _decrement_stock, _increment_stock
from .orm import (
    Booking, Plant,
    B_PENDING, B_APPROVED, B_REJECTED, B_CANCELLED, B_COMPLETED,
)
from .pricing import compute_booking

log = logging.getLogger(__name__)

EXPIRED_NOTE = "reservation expired"


# ------------------------------------------------------------------------------
# UN-GATED internal functions
# ------------------------------------------------------------------------------

async def _load(db: AsyncSession, booking_id: str) -> Booking:
    booking = await db.get(Booking, booking_id, populate_existing=True)
    if booking is None:
        raise NotFound("booking not found")
    return booking


async def _release(
    db: AsyncSession,
    booking_id: str,
    now: float,
    notes: str,
    expired_only: bool,
) -> bool:
    """
    approved -> cancelled, giving the reserved units back to the plant.
    Returns False when nothing matched (wrong state or already released).
    """
    conds = [
        Booking.id == booking_id,
        Booking.status == B_APPROVED,
        Booking.reserved_stock > 0,
    ]
    if expired_only:
        conds += [
            Booking.balance_paid.is_(False),
            Booking.reservation_expires_at.is_not(None),
            Booking.reservation_expires_at < now,
        ]
    row = (await db.execute(
        update(Booking)
        .where(*conds)
        .values(status=B_CANCELLED, reserved_stock=0,
                decision_notes=notes, updated_at=now)
        .returning(Booking.plant_id, Booking.quantity)
        .execution_options(synchronize_session=False)
    )).first()
    if row is None:
        return False
    plant_id, qty = row[0], int(row[1])
    stock = await _increment_stock(db, plant_id, qty)
    log.info("booking %s cancelled (%s), %d units back to plant %s -> %d",
             booking_id, notes or "no notes", qty, plant_id, stock)
    return True


async def _release_if_expired(
    db: AsyncSession, booking: Booking, now: float
) -> bool:
    if (booking.status != B_APPROVED
            or booking.reservation_expires_at is None
            or booking.reservation_expires_at >= now
            or booking.balance_paid):
        return False
    released = await _release(db, booking.id, now, EXPIRED_NOTE,
                              expired_only=True)
    await db.refresh(booking)
    return released


async def _complete(
    db: AsyncSession, booking_id: str, payment_id: str, order_id: str,
    signature: str, now: float,
) -> bool:
    """approved -> completed once the balance is verified. The reserved units
    stay consumed; only the reservation bookkeeping is cleared."""
    row = (await db.execute(
        update(Booking)
        .where(
            Booking.id == booking_id,
            Booking.status == B_APPROVED,
            Booking.balance_paid.is_(False),
        )
        .values(
            status=B_COMPLETED,
            balance_paid=True,
            balance_txn_id=payment_id,
            balance_intent_id=order_id,
            balance_signature=signature,
            reserved_stock=0,
            reservation_expires_at=None,
            updated_at=now,
        )
        .returning(Booking.id)
        .execution_options(synchronize_session=False)
    )).first()
    return row is not None


# ------------------------------------------------------------------------------
# Public API
# ------------------------------------------------------------------------------

async def create_booking(
    db: GatedAsyncSession,
    farmer_id: str,
    plant_id: str,
    center_id: str,
    quantity: Any,
    advance_percent: Any,
    advance_floor_percent: int,
    currency: str = "INR",
) -> Dict[str, Any]:
    if not farmer_id:
        raise ValidationError("farmer id is required")
    now = now_ts()
    async with db.gated():
        async with db.session.begin():
            plant = await db.session.get(Plant, plant_id,
                                         populate_existing=True)
            if plant is None or not plant.is_active:
                raise NotFound("plant not found")
            center = await _get_active_center(db.session, center_id)
            if plant.center_id != center.id:
                raise ValidationError(
                    "plant is not stocked at this nursery center"
                )

            quote = compute_booking(
                plant.unit_price, quantity, plant.min_order_qty,
                advance_percent, advance_floor_percent,
            )
            booking = Booking(
                id=new_id(),
                farmer_id=farmer_id,
                center_id=center.id,
                plant_id=plant.id,
                plant_name=plant.name or plant.variety or "Rubber Plant",
                unit_price=quote.unit_price,
                quantity=quote.qty,
                advance_percent=quote.advance_percent,
                amount_total=quote.amount_total,
                amount_advance=quote.amount_advance,
                amount_balance=quote.amount_balance,
                currency=currency,
                status=B_PENDING,
                advance_paid=False,
                balance_paid=False,
                reserved_stock=0,
                created_at=now,
                updated_at=now,
            )
            db.session.add(booking)

    log.info("booking %s created: farmer=%s plant=%s qty=%d total=%s "
             "advance=%s", booking.id, farmer_id, plant_id, quote.qty,
             quote.amount_total, quote.amount_advance)
    return booking.to_dict()


async def decide_booking(
    db: GatedAsyncSession,
    booking_id: str,
    action: str,
    notes: Optional[str],
    reservation_seconds: int,
    now: Optional[float] = None,
) -> Dict[str, Any]:
    """Admin/staff decision on a pending booking (caller checks the role)."""
    if action not in ("approve", "reject"):
        raise ValidationError("invalid action")
    now = now_ts() if now is None else now
    notes = notes or ""

    async with db.gated():
        async with db.session.begin():
            booking = await _load(db.session, booking_id)
            if booking.status != B_PENDING:
                raise InvalidStateTransition(
                    f"booking is {booking.status}, not pending"
                )

            if action == "approve":
                if not booking.advance_paid:
                    raise AdvanceNotPaid("advance not paid yet")
                row = (await db.session.execute(
                    update(Booking)
                    .where(
                        Booking.id == booking_id,
                        Booking.status == B_PENDING,
                        Booking.advance_paid.is_(True),
                    )
                    .values(
                        status=B_APPROVED,
                        decision_notes=notes,
                        reserved_stock=Booking.quantity,
                        reservation_expires_at=now + reservation_seconds,
                        updated_at=now,
                    )
                    .returning(Booking.plant_id, Booking.quantity)
                    .execution_options(synchronize_session=False)
                )).first()
                if row is None:
                    raise InvalidStateTransition("booking already decided")
                # raises InsufficientStock -> whole transaction rolls back
                stock = await _decrement_stock(db.session, row[0],
                                               int(row[1]))
            else:
                row = (await db.session.execute(
                    update(Booking)
                    .where(Booking.id == booking_id,
                           Booking.status == B_PENDING)
                    .values(status=B_REJECTED, decision_notes=notes,
                            updated_at=now)
                    .returning(Booking.id)
                    .execution_options(synchronize_session=False)
                )).first()
                if row is None:
                    raise InvalidStateTransition("booking already decided")
            await db.session.refresh(booking)

    if action == "approve":
        log.info("booking %s approved, %d units reserved until %s "
                 "(plant %s stock -> %d)", booking_id, booking.quantity,
                 booking.reservation_expires_at, booking.plant_id, stock)
    else:
        log.info("booking %s rejected", booking_id)
    return booking.to_dict()


async def cancel_booking(
    db: GatedAsyncSession,
    booking_id: str,
    notes: Optional[str] = None,
    now: Optional[float] = None,
) -> Dict[str, Any]:
    now = now_ts() if now is None else now
    async with db.gated():
        async with db.session.begin():
            booking = await _load(db.session, booking_id)
            if booking.status != B_APPROVED:
                raise InvalidStateTransition(
                    f"only approved bookings can be cancelled "
                    f"(booking is {booking.status})"
                )
            if not await _release(db.session, booking_id, now,
                                  notes or "cancelled", expired_only=False):
                raise InvalidStateTransition("booking already released")
            await db.session.refresh(booking)
    return booking.to_dict()


async def get_booking(
    db: GatedAsyncSession, booking_id: str, now: Optional[float] = None
) -> Dict[str, Any]:
    now = now_ts() if now is None else now
    async with db.gated():
        async with db.session.begin():
            booking = await _load(db.session, booking_id)
            await _release_if_expired(db.session, booking, now)
    return booking.to_dict()


async def list_bookings(
    db: GatedAsyncSession,
    farmer_id: Optional[str] = None,
    limit: int = 200,
) -> List[Dict[str, Any]]:
    stmt = select(Booking)
    if farmer_id is not None:
        stmt = stmt.where(Booking.farmer_id == farmer_id)
    stmt = stmt.order_by(Booking.created_at.desc()).limit(
        max(1, min(limit, 500))
    )
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(stmt)).scalars().all()
    return [b.to_dict() for b in rows]


async def expire_reservations(
    db: GatedAsyncSession, now: Optional[float] = None, limit: int = 500
) -> int:
    """Sweep: release every approved booking whose hold has lapsed."""
    now = now_ts() if now is None else now
    async with db.gated():
        async with db.session.begin():
            ids = (await db.session.execute(
                select(Booking.id)
                .where(
                    Booking.status == B_APPROVED,
                    Booking.reserved_stock > 0,
                    Booking.balance_paid.is_(False),
                    Booking.reservation_expires_at < now,
                )
                .order_by(Booking.reservation_expires_at)
                .limit(limit)
            )).scalars().all()

    released = 0
    for booking_id in ids:
        # one transaction per booking so a failure does not undo the others
        async with db.gated():
            async with db.session.begin():
                if await _release(db.session, booking_id, now, EXPIRED_NOTE,
                                  expired_only=True):
                    released += 1
    if released:
        log.info("expiry sweep released %d reservations", released)
    return released
