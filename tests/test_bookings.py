import asyncio

import pytest

from conftest import add_plant, pay_advance
from nurserybook.errors import (
    AdvanceNotPaid, InsufficientStock, InvalidStateTransition, NotFound,
    ValidationError,
)
from nurserybook.helpers import now_ts
from nurserybook.model import bookings, inventory

pytestmark = pytest.mark.anyio

HOLD = 72 * 3600


async def _book(db, plant, qty=10, pct=10, farmer="farmer-1"):
    return await bookings.create_booking(
        db, farmer, plant["id"], plant["center_id"], qty, pct, 10,
    )


async def _stock(db, plant):
    return (await inventory.get_plant(db, plant["id"]))["stock_available"]


@pytest.fixture
async def plant(db, pool, center_ids):
    return await add_plant(db, pool, center_ids[0], "RRII 105", stock=10,
                           price=150)


class TestCreate:
    async def test_amounts(self, db, plant):
        b = await _book(db, plant, qty=10, pct=5)
        assert b["status"] == "pending"
        assert b["quantity"] == 10
        assert b["advance_percent"] == 10
        assert b["amount_total"] == 1500
        assert b["amount_advance"] == 150
        assert b["amount_balance"] == 1350
        assert b["reserved_stock"] == 0
        assert b["payment"]["advance_paid"] is False

    async def test_near_full_advance_keeps_balance_non_negative(
        self, db, pool, center_ids
    ):
        p = await add_plant(db, pool, center_ids[0], "RRII 105", price=199)
        b = await _book(db, p, qty=7, pct=99)
        assert b["amount_total"] == 1393
        assert b["amount_advance"] == 1379
        assert b["amount_balance"] == 14
        assert 0 <= b["amount_advance"] <= b["amount_total"]

    async def test_booking_does_not_touch_stock(self, db, plant):
        await _book(db, plant, qty=4)
        assert await _stock(db, plant) == 10

    async def test_plant_must_belong_to_center(self, db, plant, center_ids):
        with pytest.raises(ValidationError):
            await bookings.create_booking(db, "farmer-1", plant["id"],
                                          center_ids[1], 1, 10, 10)

    async def test_unknown_plant(self, db, center_ids):
        with pytest.raises(NotFound):
            await bookings.create_booking(db, "farmer-1", "missing",
                                          center_ids[0], 1, 10, 10)

    async def test_list_by_farmer(self, db, plant):
        await _book(db, plant, farmer="a")
        await _book(db, plant, farmer="b")
        await _book(db, plant, farmer="a")
        assert len(await bookings.list_bookings(db, farmer_id="a")) == 2
        assert len(await bookings.list_bookings(db)) == 3


class TestDecide:
    async def test_approve_requires_advance(self, db, plant):
        b = await _book(db, plant, qty=2)
        with pytest.raises(AdvanceNotPaid):
            await bookings.decide_booking(db, b["id"], "approve", "", HOLD)
        after = await bookings.get_booking(db, b["id"])
        assert after["status"] == "pending"
        assert after["reserved_stock"] == 0
        assert await _stock(db, plant) == 10

    async def test_approve_reserves_stock(self, db, store, gateway, plant):
        b = await _book(db, plant, qty=3)
        await pay_advance(db, store, gateway, b["id"])
        now = now_ts()
        out = await bookings.decide_booking(db, b["id"], "approve", "ok",
                                            HOLD, now=now)
        assert out["status"] == "approved"
        assert out["decision_notes"] == "ok"
        assert out["reserved_stock"] == 3
        assert out["reservation_expires_at"] is not None
        assert await _stock(db, plant) == 7

    async def test_reject(self, db, plant):
        b = await _book(db, plant)
        out = await bookings.decide_booking(db, b["id"], "reject", "no", HOLD)
        assert out["status"] == "rejected"
        assert await _stock(db, plant) == 10

    async def test_decided_booking_cannot_be_decided_again(
        self, db, store, gateway, plant
    ):
        b = await _book(db, plant, qty=1)
        await pay_advance(db, store, gateway, b["id"])
        await bookings.decide_booking(db, b["id"], "approve", "", HOLD)
        for action in ("approve", "reject"):
            with pytest.raises(InvalidStateTransition):
                await bookings.decide_booking(db, b["id"], action, "", HOLD)
        assert await _stock(db, plant) == 9

    async def test_invalid_action(self, db, plant):
        b = await _book(db, plant)
        with pytest.raises(ValidationError):
            await bookings.decide_booking(db, b["id"], "maybe", "", HOLD)

    async def test_insufficient_stock_rolls_back_approval(
        self, db, store, gateway, pool, center_ids
    ):
        p = await add_plant(db, pool, center_ids[0], "RRII 105", stock=2)
        b = await _book(db, p, qty=3)
        await pay_advance(db, store, gateway, b["id"])
        with pytest.raises(InsufficientStock):
            await bookings.decide_booking(db, b["id"], "approve", "", HOLD)
        after = await bookings.get_booking(db, b["id"])
        assert after["status"] == "pending"
        assert after["reserved_stock"] == 0
        assert await _stock(db, p) == 2

    async def test_concurrent_approvals_do_not_oversell(
        self, database, db, store, gateway, pool, center_ids
    ):
        p = await add_plant(db, pool, center_ids[0], "RRII 105", stock=5)
        first = await _book(db, p, qty=3, farmer="a")
        second = await _book(db, p, qty=3, farmer="b")
        await pay_advance(db, store, gateway, first["id"])
        await pay_advance(db, store, gateway, second["id"])

        async def approve(booking_id):
            async with database() as own:
                return await bookings.decide_booking(own, booking_id,
                                                     "approve", "", HOLD)

        results = await asyncio.gather(
            approve(first["id"]), approve(second["id"]),
            return_exceptions=True,
        )
        ok = [r for r in results if isinstance(r, dict)]
        failed = [r for r in results if isinstance(r, InsufficientStock)]
        assert len(ok) == 1 and len(failed) == 1
        assert ok[0]["status"] == "approved"
        assert await _stock(db, p) == 2


class TestRelease:
    async def _approved(self, db, store, gateway, plant, qty=4, now=None):
        b = await _book(db, plant, qty=qty)
        await pay_advance(db, store, gateway, b["id"])
        return await bookings.decide_booking(db, b["id"], "approve", "",
                                             HOLD, now=now)

    async def test_cancel_restores_stock(self, db, store, gateway, plant):
        b = await self._approved(db, store, gateway, plant)
        assert await _stock(db, plant) == 6
        out = await bookings.cancel_booking(db, b["id"], "farmer asked")
        assert out["status"] == "cancelled"
        assert out["reserved_stock"] == 0
        assert await _stock(db, plant) == 10
        with pytest.raises(InvalidStateTransition):
            await bookings.cancel_booking(db, b["id"])
        assert await _stock(db, plant) == 10

    async def test_pending_cannot_be_cancelled(self, db, plant):
        b = await _book(db, plant)
        with pytest.raises(InvalidStateTransition):
            await bookings.cancel_booking(db, b["id"])

    async def test_sweep_releases_once(self, db, store, gateway, plant):
        now = now_ts()
        b = await self._approved(db, store, gateway, plant, now=now)
        assert await bookings.expire_reservations(db, now=now + 10) == 0
        assert await _stock(db, plant) == 6

        later = now + HOLD + 1
        assert await bookings.expire_reservations(db, now=later) == 1
        assert await bookings.expire_reservations(db, now=later) == 0
        assert await _stock(db, plant) == 10

        out = await bookings.get_booking(db, b["id"], now=later)
        assert out["status"] == "cancelled"
        assert out["decision_notes"] == bookings.EXPIRED_NOTE
        assert out["reserved_stock"] == 0

    async def test_lazy_expiry_on_read(self, db, store, gateway, plant):
        now = now_ts()
        b = await self._approved(db, store, gateway, plant, now=now)
        later = now + HOLD + 1
        out = await bookings.get_booking(db, b["id"], now=later)
        assert out["status"] == "cancelled"
        assert await _stock(db, plant) == 10
        # the sweep finds nothing left to release
        assert await bookings.expire_reservations(db, now=later) == 0
        assert await _stock(db, plant) == 10

    async def test_unexpired_read_keeps_hold(self, db, store, gateway, plant):
        now = now_ts()
        b = await self._approved(db, store, gateway, plant, now=now)
        out = await bookings.get_booking(db, b["id"], now=now + 60)
        assert out["status"] == "approved"
        assert out["reserved_stock"] == 4
