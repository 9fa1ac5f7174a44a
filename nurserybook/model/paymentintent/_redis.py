# open payment intents, redis backend
from __future__ import annotations
from typing import Optional, Dict, Any, Tuple, List
import time
import redis.asyncio as redis


# ---- keys
def k_intent(intent_id: str) -> str: return f"intent:{intent_id}"


PENDING_INDEX = "intents:pending"


class PaymentIntentStore:
    def __init__(self, r: redis.Redis, ttl_seconds: int) -> None:
        self.r = r
        self.ttl = ttl_seconds

    async def save_intent(
            self, intent_id: str, mapping: Dict[str, Any]) -> None:
        # values must be strings for decode_responses=True
        m = {k: str(v) for k, v in mapping.items()}
        pipe = self.r.pipeline(transaction=True)
        pipe.hset(k_intent(intent_id), mapping=m)
        pipe.expire(k_intent(intent_id), self.ttl)
        pipe.zadd(
            PENDING_INDEX,
            {intent_id: float(mapping.get("created_at", time.time()))}
        )
        await pipe.execute()

    async def get_intent(self, intent_id: str) -> Optional[Dict[str, Any]]:
        h = await self.r.hgetall(k_intent(intent_id))
        return _decode(intent_id, h) if h else None

    async def remove_pending(self, intent_id: str) -> None:
        pipe = self.r.pipeline(transaction=True)
        pipe.zrem(PENDING_INDEX, intent_id)
        pipe.delete(k_intent(intent_id))
        await pipe.execute()

    async def get_recent_intents(
            self, limit: int = 200
    ) -> Tuple[int, List[Dict[str, Any]]]:
        total = await self.r.zcard(PENDING_INDEX)
        ids = await self.r.zrevrange(PENDING_INDEX, 0, max(0, limit - 1))

        pipe = self.r.pipeline()
        for intent_id in ids:
            pipe.hgetall(k_intent(intent_id))
        rows = await pipe.execute()

        now = time.time()
        items = []
        for intent_id, h in zip(ids, rows):
            # house-keeping: hash expired, index entry left behind
            if not h:
                await self.r.zrem(PENDING_INDEX, intent_id)
                total -= 1
                continue
            item = _decode(intent_id, h)
            item["age_ms"] = int(max(0.0, now - item["created_at"]) * 1000)
            items.append(item)
        return int(total), items


def _decode(intent_id: str, h: Dict[str, str]) -> Dict[str, Any]:
    try:
        created = float(h.get("created_at", "0"))
    except ValueError:
        created = 0.0
    return {
        "intent_id": intent_id,
        "booking_id": h.get("booking_id", ""),
        "kind": h.get("kind", "advance"),
        "amount": int(h.get("amount", "0")),
        "currency": h.get("currency", "INR"),
        "created_at": created,
    }
