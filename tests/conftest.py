"""Shared fixtures: a file-backed SQLite database per test."""

import os
from contextlib import asynccontextmanager

os.environ.setdefault("INTENT_BACKEND", "pg")
os.environ.setdefault("EXPIRY_SWEEP_SECONDS", "0")

import pytest

from nurserybook.gateway import MockGateway
from nurserybook.infra.sql import (
    GatedAsyncSession, create_schema, make_async_engine,
)
from nurserybook.model import centers, inventory, paymentintent, payments
from nurserybook.model.orm import Base
from nurserybook.model.varieties import DEFAULT_POOL


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def pool():
    return DEFAULT_POOL


@pytest.fixture
async def database(tmp_path):
    engine, SessionAsync, gated = make_async_engine(
        f"sqlite:///{tmp_path / 'nursery.db'}"
    )
    await create_schema(engine, Base.metadata)
    async with engine.begin() as conn:
        await paymentintent.create_schema(conn)

    @asynccontextmanager
    async def open_db():
        async with SessionAsync() as session:
            yield GatedAsyncSession(session=session, gated=gated)

    yield open_db
    await engine.dispose()


@pytest.fixture
async def db(database):
    async with database() as gdb:
        yield gdb


@pytest.fixture
async def store(database):
    async with database() as gdb:
        yield paymentintent.new_store(
            backend="pg", db=gdb.session, gated=gdb.gated, ttl_seconds=600,
        )


@pytest.fixture
def gateway():
    return MockGateway()


@pytest.fixture
async def center_ids(db):
    rows = await centers.upsert_centers(db, [
        {"name": "Kottayam Nursery", "location": "Kottayam, Kerala",
         "email": "kottayam@nursery.test"},
        {"name": "Thrissur Nursery", "location": "Thrissur, Kerala",
         "email": "thrissur@nursery.test"},
        {"name": "Palakkad Nursery", "location": "Palakkad, Kerala",
         "email": "palakkad@nursery.test"},
    ])
    return [r["id"] for r in rows]


async def add_plant(db, pool, center_id, variety, stock=10, price=150,
                    min_qty=1, enforce=True):
    return await inventory.create_plant(
        db, pool, center_id,
        {"name": f"{variety} sapling", "variety": variety,
         "unit_price": price, "stock_available": stock,
         "min_order_qty": min_qty},
        enforce_assignment=enforce,
    )


async def pay_advance(db, store, gateway, booking_id):
    intent = await payments.create_advance_intent(db, store, gateway,
                                                  booking_id)
    paid = gateway.pay(intent["order_id"])
    return await payments.verify_advance_payment(
        db, store, gateway, booking_id,
        paid["order_id"], paid["payment_id"], paid["signature"],
    )
