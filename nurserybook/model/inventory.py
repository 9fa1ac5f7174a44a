# model/inventory.py
"""
Inventory ledger for nursery plants.

- a center never carries more than two distinct varieties among its active
  plants (checked at creation and whenever the variety label changes)
- `stock_available` is only changed here, and only by single-statement
  conditional updates: a decrement applies iff the result stays >= 0, so
  concurrent approvals against one plant behave as if serialized
"""

from __future__ import annotations
import logging
from typing import Any, Dict, List, Optional, Set

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import (
    NotFound, ValidationError, InsufficientStock,
    VarietyLimitExceeded, UnknownVariety, VarietyNotAssignedToCenter,
)
from ..helpers import new_id, now_ts, parse_int
from ..infra.sql import GatedAsyncSession
from .centers import _center_slot, _get_active_center
from .orm import NurseryCenter, Plant
from .pricing import valid_unit_price
from .varieties import VarietyPool, VARIETIES_PER_CENTER

log = logging.getLogger(__name__)

# stock races: one retry of the conditional decrement, then give up
DECREMENT_ATTEMPTS = 2


# ------------------------------------------------------------------------------
# Variety cap (UN-GATED internal functions)
# ------------------------------------------------------------------------------

async def _distinct_varieties(
    db: AsyncSession,
    pool: VarietyPool,
    center_id: str,
    exclude_plant_id: Optional[str] = None,
) -> Set[str]:
    stmt = select(Plant).where(
        Plant.center_id == center_id,
        Plant.is_active.is_(True),
    )
    if exclude_plant_id is not None:
        stmt = stmt.where(Plant.id != exclude_plant_id)
    plants = (await db.execute(stmt)).scalars().all()
    out = set()
    for p in plants:
        label = p.variety_label()
        if label:
            out.add(pool.canonical(label))
    return out


async def _check_variety(
    db: AsyncSession,
    pool: VarietyPool,
    center: NurseryCenter,
    variety: str,
    enforce_assignment: bool,
    exclude_plant_id: Optional[str] = None,
) -> None:
    if not variety or not variety.strip():
        return

    existing = await _distinct_varieties(db, pool, center.id,
                                         exclude_plant_id)
    if (len(existing) >= VARIETIES_PER_CENTER
            and pool.canonical(variety) not in existing):
        raise VarietyLimitExceeded(
            f"{center.name} already has {VARIETIES_PER_CENTER} varieties. "
            f"Each nursery center is limited to {VARIETIES_PER_CENTER} "
            f"varieties only."
        )

    if not pool.is_known(variety):
        raise UnknownVariety(
            f"unknown variety {variety!r}; select one from the catalog"
        )

    if enforce_assignment:
        index, total = await _center_slot(db, center.id)
        if not pool.is_available_for_center(variety, index, total):
            names = ", ".join(v.name for v in pool.assign(index, total))
            raise VarietyNotAssignedToCenter(
                f"this variety is not available at {center.name}. "
                f"Available varieties: {names}"
            )


async def _lock_center(db: AsyncSession, center_id: str) -> NurseryCenter:
    # serializes variety-cap checks per center (FOR UPDATE on postgres)
    center = (await db.execute(
        select(NurseryCenter)
        .where(NurseryCenter.id == center_id)
        .with_for_update()
    )).scalars().first()
    if center is None or not center.is_active:
        raise NotFound("nursery center not found")
    return center


# ------------------------------------------------------------------------------
# Stock (UN-GATED: callers hold the transaction)
# ------------------------------------------------------------------------------

async def _decrement_stock(db: AsyncSession, plant_id: str, qty: int) -> int:
    """
    Atomically take `qty` units. Returns the new stock.
    Raises InsufficientStock when the conditional update matches nothing
    twice in a row.
    """
    if qty <= 0:
        raise ValidationError("quantity must be positive")
    stmt = (
        update(Plant)
        .where(Plant.id == plant_id, Plant.stock_available >= qty)
        .values(stock_available=Plant.stock_available - qty)
        .returning(Plant.stock_available)
        .execution_options(synchronize_session=False)
    )
    for _ in range(DECREMENT_ATTEMPTS):
        row = (await db.execute(stmt)).first()
        if row is not None:
            return int(row[0])

    plant = await db.get(Plant, plant_id, populate_existing=True)
    if plant is None:
        raise NotFound("plant not found")
    raise InsufficientStock(
        f"insufficient stock: requested {qty}, "
        f"available {plant.stock_available}"
    )


async def _increment_stock(db: AsyncSession, plant_id: str, qty: int) -> int:
    if qty <= 0:
        raise ValidationError("quantity must be positive")
    row = (await db.execute(
        update(Plant)
        .where(Plant.id == plant_id)
        .values(stock_available=Plant.stock_available + qty)
        .returning(Plant.stock_available)
        .execution_options(synchronize_session=False)
    )).first()
    if row is None:
        raise NotFound("plant not found")
    return int(row[0])


# ------------------------------------------------------------------------------
# Public API
# ------------------------------------------------------------------------------

async def create_plant(
    db: GatedAsyncSession,
    pool: VarietyPool,
    center_id: str,
    attrs: Dict[str, Any],
    enforce_assignment: bool = True,
) -> Dict[str, Any]:
    name = (attrs.get("name") or "").strip()
    variety = (attrs.get("variety") or "").strip() or None
    if not name and not variety:
        raise ValidationError("plant name or variety is required")
    price = valid_unit_price(attrs.get("unit_price"))

    stock = parse_int(attrs.get("stock_available", 0))
    if stock is None or stock < 0:
        raise ValidationError("invalid stockAvailable value")
    min_qty = parse_int(attrs.get("min_order_qty", 1))
    if min_qty is None or min_qty < 1:
        raise ValidationError("minOrderQty must be >= 1")

    async with db.gated():
        async with db.session.begin():
            center = await _lock_center(db.session, center_id)
            await _check_variety(
                db.session, pool, center, variety or name,
                enforce_assignment,
            )
            plant = Plant(
                id=new_id(),
                center_id=center.id,
                name=name or variety,
                variety=variety,
                description=attrs.get("description"),
                unit_price=price,
                stock_available=stock,
                min_order_qty=min_qty,
                is_active=True,
                created_at=now_ts(),
            )
            db.session.add(plant)

    log.info("plant %s (%s) created at center %s with stock %d",
             plant.id, plant.variety_label(), center_id, stock)
    return plant.to_dict()


async def update_plant(
    db: GatedAsyncSession,
    pool: VarietyPool,
    plant_id: str,
    changes: Dict[str, Any],
    enforce_assignment: bool = True,
) -> Dict[str, Any]:
    """Update catalog fields of a plant. Stock is not writable here."""
    if "stock_available" in changes:
        raise ValidationError(
            "stock is changed through restock or bookings only"
        )
    fields = {}
    if "unit_price" in changes:
        fields["unit_price"] = valid_unit_price(changes["unit_price"])
    if "min_order_qty" in changes:
        min_qty = parse_int(changes["min_order_qty"])
        if min_qty is None or min_qty < 1:
            raise ValidationError("minOrderQty must be >= 1")
        fields["min_order_qty"] = min_qty
    if "description" in changes:
        fields["description"] = changes["description"]
    for f in ("name", "variety"):
        if f in changes:
            fields[f] = (changes[f] or "").strip() or None
    if not fields:
        raise ValidationError("no valid fields to update")

    async with db.gated():
        async with db.session.begin():
            plant = await db.session.get(Plant, plant_id,
                                         populate_existing=True)
            if plant is None:
                raise NotFound("plant not found")
            if "name" in fields or "variety" in fields:
                new_variety = fields.get("variety", plant.variety)
                new_name = fields.get("name", plant.name)
                if not new_name and not new_variety:
                    raise ValidationError("plant name or variety is required")
                center = await _lock_center(db.session, plant.center_id)
                await _check_variety(
                    db.session, pool, center, new_variety or new_name,
                    enforce_assignment, exclude_plant_id=plant.id,
                )
                if "name" in fields and not fields["name"]:
                    fields["name"] = new_variety
            for k, v in fields.items():
                setattr(plant, k, v)

    log.info("plant %s updated: %s", plant_id, ", ".join(sorted(fields)))
    return plant.to_dict()


async def restock(
    db: GatedAsyncSession, plant_id: str, qty: Any
) -> Dict[str, Any]:
    n = parse_int(qty)
    if n is None or n <= 0:
        raise ValidationError("restock quantity must be a positive integer")
    async with db.gated():
        async with db.session.begin():
            stock = await _increment_stock(db.session, plant_id, n)
    log.info("plant %s restocked by %d -> %d", plant_id, n, stock)
    return {"plant_id": plant_id, "stock_available": stock}


async def deactivate_plant(db: GatedAsyncSession, plant_id: str) -> None:
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(
                update(Plant)
                .where(Plant.id == plant_id)
                .values(is_active=False)
                .returning(Plant.id)
                .execution_options(synchronize_session=False)
            )).first()
    if row is None:
        raise NotFound("plant not found")
    log.info("plant %s deactivated", plant_id)


async def get_plant(db: GatedAsyncSession, plant_id: str) -> Dict[str, Any]:
    async with db.gated():
        async with db.session.begin():
            plant = await db.session.get(Plant, plant_id,
                                         populate_existing=True)
    if plant is None:
        raise NotFound("plant not found")
    return plant.to_dict()


async def list_plants(
    db: GatedAsyncSession, center_id: Optional[str] = None
) -> List[Dict[str, Any]]:
    stmt = select(Plant).where(Plant.is_active.is_(True))
    if center_id is not None:
        stmt = stmt.where(Plant.center_id == center_id)
    stmt = stmt.order_by(Plant.name)
    async with db.gated():
        async with db.session.begin():
            if center_id is not None:
                await _get_active_center(db.session, center_id)
            plants = (await db.session.execute(stmt)).scalars().all()
    return [p.to_dict() for p in plants]
