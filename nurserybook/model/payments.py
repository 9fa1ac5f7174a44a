# model/payments.py
"""
Advance and balance payments against the external gateway.

Flow: create an intent for the amount (gateway minor units, i.e. whole
currency units x 100), the farmer pays out of band, the checkout widget hands
back (order_id, payment_id, signature), and we check

    signature == hex(HMAC-SHA256(secret, order_id + "|" + payment_id))

before touching the booking. `verify_*` is the only code path that sets
`advance_paid` / `balance_paid`. Repeating a verification that already
succeeded is a no-op.

An unpaid intent that is still open in the intent store is handed back again
instead of creating a second one at the gateway.
"""

from __future__ import annotations
import logging
from typing import Any, Dict, Optional

from sqlalchemy import update

from ..errors import (
    InvalidStateTransition, SignatureMismatch, GatewayNotConfigured,
    ValidationError,
)
from ..gateway import PaymentGateway
from ..helpers import now_ts, money
from ..infra.sql import GatedAsyncSession
from ..infra.timings import timeit
from .bookings import _load, _complete, _release_if_expired
from .orm import Booking, B_PENDING, B_APPROVED, B_COMPLETED
from .pricing import to_minor_units

log = logging.getLogger(__name__)

K_ADVANCE = "advance"
K_BALANCE = "balance"


def _intent_response(booking: Booking, intent: Dict[str, Any],
                     gateway: PaymentGateway, reused: bool) -> Dict[str, Any]:
    return {
        "booking_id": booking.id,
        "order_id": intent["intent_id"],
        "amount": int(intent["amount"]),
        "currency": intent["currency"],
        "key": gateway.key_id,
        "reused": reused,
    }


async def _open_intent(store, intent_id: Optional[str], booking_id: str,
                       kind: str) -> Optional[Dict[str, Any]]:
    if not intent_id:
        return None
    intent = await store.get_intent(intent_id)
    if intent and intent["booking_id"] == booking_id \
            and intent["kind"] == kind:
        return intent
    return None


async def _new_intent(store, gateway: PaymentGateway, booking: Booking,
                      kind: str, amount) -> Dict[str, Any]:
    async with timeit("gateway.create_intent"):
        intent = await gateway.create_intent(
            to_minor_units(amount),
            booking.currency,
            receipt=f"nursery-{kind[:3]}-{booking.id}",
            notes={
                "bookingId": booking.id,
                "plantName": booking.plant_name,
                "farmerId": booking.farmer_id,
                "paymentType": kind,
            },
        )
    await store.save_intent(intent["intent_id"], {
        "booking_id": booking.id,
        "kind": kind,
        "amount": intent["amount"],
        "currency": intent["currency"],
        "created_at": now_ts(),
    })
    log.info("%s intent %s created for booking %s: %d %s (minor units)",
             kind, intent["intent_id"], booking.id, intent["amount"],
             intent["currency"])
    return intent


async def _owns_order(store, booking_id: str, current: Optional[str],
                      order_id: str, kind: str) -> bool:
    if current and current == order_id:
        return True
    return await _open_intent(store, order_id, booking_id, kind) is not None


# ------------------------------------------------------------------------------
# Advance
# ------------------------------------------------------------------------------

async def create_advance_intent(
    db: GatedAsyncSession, store, gateway: PaymentGateway, booking_id: str,
) -> Dict[str, Any]:
    if not gateway.configured:
        raise GatewayNotConfigured("payment gateway keys not configured")

    async with db.gated():
        async with db.session.begin():
            booking = await _load(db.session, booking_id)
    if booking.advance_paid:
        raise InvalidStateTransition("advance already paid")
    if booking.status != B_PENDING:
        raise InvalidStateTransition(f"booking is {booking.status}")

    existing = await _open_intent(store, booking.advance_intent_id,
                                  booking.id, K_ADVANCE)
    if existing is not None:
        return _intent_response(booking, existing, gateway, reused=True)

    intent = await _new_intent(store, gateway, booking, K_ADVANCE,
                               booking.amount_advance)
    async with db.gated():
        async with db.session.begin():
            await db.session.execute(
                update(Booking)
                .where(Booking.id == booking.id,
                       Booking.advance_paid.is_(False))
                .values(advance_intent_id=intent["intent_id"],
                        updated_at=now_ts())
                .execution_options(synchronize_session=False)
            )
    return _intent_response(booking, intent, gateway, reused=False)


async def verify_advance_payment(
    db: GatedAsyncSession, store, gateway: PaymentGateway, booking_id: str,
    order_id: str, payment_id: str, signature: str,
) -> Dict[str, Any]:
    gateway.require_secret()

    async with db.gated():
        async with db.session.begin():
            booking = await _load(db.session, booking_id)

    if not gateway.verify(order_id, payment_id, signature):
        log.warning("advance signature mismatch for booking %s (order %s)",
                    booking_id, order_id)
        raise SignatureMismatch("signature verification failed")

    if booking.advance_paid:
        log.info("advance for booking %s already verified", booking_id)
        return booking.to_dict()

    if not await _owns_order(store, booking.id, booking.advance_intent_id,
                             order_id, K_ADVANCE):
        raise ValidationError("payment order does not belong to this booking")

    now = now_ts()
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(
                update(Booking)
                .where(Booking.id == booking_id,
                       Booking.advance_paid.is_(False))
                .values(
                    advance_paid=True,
                    advance_intent_id=order_id,
                    advance_txn_id=payment_id,
                    advance_signature=signature,
                    updated_at=now,
                )
                .returning(Booking.id)
                .execution_options(synchronize_session=False)
            )).first()
            await db.session.refresh(booking)

    if row is not None:
        await store.remove_pending(order_id)
        log.info("advance verified for booking %s: payment %s, %s %s",
                 booking_id, payment_id, money(booking.amount_advance),
                 booking.currency)
    return booking.to_dict()


# ------------------------------------------------------------------------------
# Balance
# ------------------------------------------------------------------------------

async def create_balance_intent(
    db: GatedAsyncSession, store, gateway: PaymentGateway, booking_id: str,
    now: Optional[float] = None,
) -> Dict[str, Any]:
    if not gateway.configured:
        raise GatewayNotConfigured("payment gateway keys not configured")
    now = now_ts() if now is None else now

    async with db.gated():
        async with db.session.begin():
            booking = await _load(db.session, booking_id)
            await _release_if_expired(db.session, booking, now)
    if booking.status != B_APPROVED or booking.balance_paid:
        raise InvalidStateTransition(
            f"balance can only be paid on approved bookings "
            f"(booking is {booking.status})"
        )

    existing = await _open_intent(store, booking.balance_intent_id,
                                  booking.id, K_BALANCE)
    if existing is not None:
        return _intent_response(booking, existing, gateway, reused=True)

    intent = await _new_intent(store, gateway, booking, K_BALANCE,
                               booking.amount_balance)
    async with db.gated():
        async with db.session.begin():
            await db.session.execute(
                update(Booking)
                .where(Booking.id == booking.id,
                       Booking.balance_paid.is_(False))
                .values(balance_intent_id=intent["intent_id"],
                        updated_at=now_ts())
                .execution_options(synchronize_session=False)
            )
    return _intent_response(booking, intent, gateway, reused=False)


async def verify_balance_payment(
    db: GatedAsyncSession, store, gateway: PaymentGateway, booking_id: str,
    order_id: str, payment_id: str, signature: str,
    now: Optional[float] = None,
) -> Dict[str, Any]:
    gateway.require_secret()
    now = now_ts() if now is None else now

    async with db.gated():
        async with db.session.begin():
            booking = await _load(db.session, booking_id)

    if not gateway.verify(order_id, payment_id, signature):
        log.warning("balance signature mismatch for booking %s (order %s)",
                    booking_id, order_id)
        raise SignatureMismatch("signature verification failed")

    if booking.balance_paid:
        return booking.to_dict()

    if not await _owns_order(store, booking.id, booking.balance_intent_id,
                             order_id, K_BALANCE):
        raise ValidationError("payment order does not belong to this booking")

    async with db.gated():
        async with db.session.begin():
            booking = await _load(db.session, booking_id)
            # a lapsed hold is released (and committed) before refusing
            await _release_if_expired(db.session, booking, now)
            completed = False
            if booking.status == B_APPROVED:
                completed = await _complete(db.session, booking_id,
                                            payment_id, order_id, signature,
                                            now)
                await db.session.refresh(booking)

    if booking.status not in (B_APPROVED, B_COMPLETED):
        raise InvalidStateTransition(
            f"booking is {booking.status}, not approved"
        )
    if completed:
        await store.remove_pending(order_id)
        log.info("balance verified for booking %s: payment %s, "
                 "booking completed", booking_id, payment_id)
    return booking.to_dict()
