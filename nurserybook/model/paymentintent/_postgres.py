# open payment intents, SQL backend (postgres; the DDL also runs on sqlite)
from __future__ import annotations
from typing import Optional, Dict, Any, List, Tuple
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, AsyncConnection
import time
from typing import Callable, AsyncContextManager


# ------------------------------------------------------------------------------
# DDL (idempotent)
# ------------------------------------------------------------------------------
SQL_CREATE_INTENTS_HOT = r"""
CREATE TABLE IF NOT EXISTS payment_intents_hot (
  intent_id    TEXT PRIMARY KEY,
  booking_id   TEXT NOT NULL,
  kind         TEXT NOT NULL,
  amount       INTEGER NOT NULL,
  currency     TEXT NOT NULL,
  created_at   DOUBLE PRECISION NOT NULL,
  expires_at   DOUBLE PRECISION NOT NULL
);
"""

SQL_CREATE_INTENTS_PENDING = r"""
CREATE TABLE IF NOT EXISTS payment_intents_pending (
  intent_id  TEXT PRIMARY KEY,
  created_at DOUBLE PRECISION NOT NULL
);
"""

SQL_CREATE_IDX_INTENTS_CREATED_AT = r"""
CREATE INDEX IF NOT EXISTS idx_intents_pending_created_at
  ON payment_intents_pending (created_at DESC);
"""


async def create_schema(db_or_conn: AsyncSession | AsyncConnection):
    exec_ = db_or_conn.execute
    await exec_(text(SQL_CREATE_INTENTS_HOT))
    await exec_(text(SQL_CREATE_INTENTS_PENDING))
    await exec_(text(SQL_CREATE_IDX_INTENTS_CREATED_AT))


class PaymentIntentStore:
    def __init__(
        self, *, db: AsyncSession, ttl_seconds: int,
        gated: Callable[[], AsyncContextManager[None]]
    ) -> None:
        self.db = db
        self.ttl = ttl_seconds
        self.gated = gated

    async def save_intent(
            self, intent_id: str, mapping: Dict[str, Any]
    ) -> None:
        created = float(mapping.get("created_at") or time.time())
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(text("""
                  INSERT INTO payment_intents_hot(
                    intent_id, booking_id, kind, amount, currency,
                    created_at, expires_at
                  ) VALUES (
                    :intent_id, :booking_id, :kind, :amount, :currency,
                    :created_at, :expires_at
                  )
                  ON CONFLICT (intent_id) DO UPDATE SET
                    booking_id=EXCLUDED.booking_id, kind=EXCLUDED.kind,
                    amount=EXCLUDED.amount, currency=EXCLUDED.currency,
                    created_at=EXCLUDED.created_at,
                    expires_at=EXCLUDED.expires_at
                """), {
                    "intent_id": intent_id,
                    "booking_id": mapping["booking_id"],
                    "kind": mapping.get("kind", "advance"),
                    "amount": int(mapping["amount"]),
                    "currency": mapping["currency"],
                    "created_at": created,
                    "expires_at": created + self.ttl,
                })
                await self.db.execute(text("""
                  INSERT INTO payment_intents_pending(intent_id, created_at)
                  VALUES(:intent_id, :created_at)
                  ON CONFLICT (intent_id) DO UPDATE
                  SET created_at=EXCLUDED.created_at
                """), {"intent_id": intent_id, "created_at": created})

    async def get_intent(self, intent_id: str) -> Optional[Dict[str, Any]]:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                  SELECT intent_id, booking_id, kind, amount, currency,
                         created_at
                  FROM payment_intents_hot
                  WHERE intent_id=:intent_id AND expires_at > :now
                """), {"intent_id": intent_id, "now": time.time()}
                )).mappings().first()
                return _decode(row) if row else None

    async def remove_pending(self, intent_id: str) -> None:
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(
                    text("DELETE FROM payment_intents_pending "
                         "WHERE intent_id=:intent_id"),
                    {"intent_id": intent_id}
                )
                await self.db.execute(
                    text("DELETE FROM payment_intents_hot "
                         "WHERE intent_id=:intent_id"),
                    {"intent_id": intent_id}
                )

    async def get_recent_intents(
        self, limit: int = 200
    ) -> Tuple[int, List[Dict[str, Any]]]:
        now = time.time()
        async with self.gated():
            async with self.db.begin():
                # house-keeping: drop expired intents first
                await self.db.execute(text("""
                    DELETE FROM payment_intents_pending WHERE intent_id IN (
                      SELECT intent_id FROM payment_intents_hot
                      WHERE expires_at <= :now)
                """), {"now": now})
                await self.db.execute(
                    text("DELETE FROM payment_intents_hot "
                         "WHERE expires_at <= :now"),
                    {"now": now},
                )

                total = (await self.db.execute(
                    text("SELECT COUNT(*) FROM payment_intents_pending")
                )).scalar_one()

                rows = (await self.db.execute(text("""
                    SELECT h.intent_id, h.booking_id, h.kind, h.amount,
                           h.currency, h.created_at
                    FROM payment_intents_pending AS p
                    JOIN payment_intents_hot AS h
                      ON h.intent_id = p.intent_id
                    ORDER BY p.created_at DESC
                    LIMIT :lim
                """), {"lim": int(limit)})).mappings().all()

        items: List[Dict[str, Any]] = []
        for r in rows:
            item = _decode(r)
            item["age_ms"] = int(max(0.0, now - item["created_at"]) * 1000)
            items.append(item)
        return int(total), items


def _decode(row) -> Dict[str, Any]:
    return {
        "intent_id": row["intent_id"],
        "booking_id": row["booking_id"],
        "kind": row["kind"],
        "amount": int(row["amount"]),
        "currency": row["currency"],
        "created_at": float(row["created_at"]),
    }
