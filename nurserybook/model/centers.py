# model/centers.py
from __future__ import annotations
import logging
from typing import Any, Dict, List, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import NotFound, ValidationError
from ..helpers import new_id, now_ts
from ..infra.sql import GatedAsyncSession
from .orm import NurseryCenter, Plant
from .varieties import VarietyPool, VARIETIES_PER_CENTER

log = logging.getLogger(__name__)

CENTER_FIELDS = ("name", "location", "lat", "lng", "contact", "email",
                 "specialty")


# UN-GATED internal functions
async def _active_centers(db: AsyncSession) -> List[NurseryCenter]:
    # creation order fixes each center's slot in the variety cycle
    rows = await db.execute(
        select(NurseryCenter)
        .where(NurseryCenter.is_active.is_(True))
        .order_by(NurseryCenter.created_at, NurseryCenter.id)
    )
    return list(rows.scalars().all())


async def _get_active_center(db: AsyncSession,
                             center_id: str) -> NurseryCenter:
    center = await db.get(NurseryCenter, center_id)
    if center is None or not center.is_active:
        raise NotFound("nursery center not found")
    return center


async def _center_slot(db: AsyncSession, center_id: str) -> Tuple[int, int]:
    """(center_index, total_centers) among active centers."""
    centers = await _active_centers(db)
    for i, c in enumerate(centers):
        if c.id == center_id:
            return i, len(centers)
    raise NotFound("center not found in active centers")


# Public API

async def list_centers(db: GatedAsyncSession) -> List[Dict[str, Any]]:
    async with db.gated():
        async with db.session.begin():
            centers = await _active_centers(db.session)
    return [c.to_dict() for c in centers]


async def upsert_centers(
    db: GatedAsyncSession, items: List[Dict[str, Any]]
) -> List[Dict[str, Any]]:
    """Bulk insert/update keyed by (name, email); upserted centers are
    (re)activated."""
    if not items:
        raise ValidationError("no items")
    for item in items:
        if not item.get("name") or not item.get("location"):
            raise ValidationError("center name and location are required")

    out = []
    now = now_ts()
    async with db.gated():
        async with db.session.begin():
            for i, item in enumerate(items):
                row = (await db.session.execute(
                    select(NurseryCenter).where(
                        NurseryCenter.name == item["name"],
                        NurseryCenter.email == item.get("email"),
                    )
                )).scalars().first()
                if row is None:
                    # input order becomes creation order
                    row = NurseryCenter(id=new_id(),
                                        created_at=now + i * 1e-3)
                    db.session.add(row)
                for f in CENTER_FIELDS:
                    if f in item:
                        setattr(row, f, item[f])
                row.is_active = True
                out.append(row)
    log.info("upserted %d nursery centers", len(out))
    return [c.to_dict() for c in out]


async def variety_assignment(
    db: GatedAsyncSession, pool: VarietyPool, center_id: str
) -> Dict[str, Any]:
    """Advisory pair from the pool plus what the center actually stocks."""
    async with db.gated():
        async with db.session.begin():
            center = await _get_active_center(db.session, center_id)
            index, total = await _center_slot(db.session, center_id)
            plants = (await db.session.execute(
                select(Plant).where(
                    Plant.center_id == center_id,
                    Plant.is_active.is_(True),
                )
            )).scalars().all()

    assigned = pool.assign(index, total)
    stocked: Dict[str, str] = {}
    for p in plants:
        label = p.variety_label()
        if label:
            stocked.setdefault(pool.canonical(label), label)
    return {
        "center": center.to_dict(),
        "center_index": index,
        "total_centers": total,
        "varieties": [v.to_dict() for v in assigned],
        "stocked_varieties": list(stocked.values()),
        "variety_count": len(stocked),
        "max_varieties": VARIETIES_PER_CENTER,
    }
