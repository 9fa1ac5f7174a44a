from typing import Optional, Callable, AsyncContextManager
from sqlalchemy.ext.asyncio import AsyncSession
import redis.asyncio as redis

from . import _postgres, _redis

Gated = Callable[[], AsyncContextManager[None]]


# Factory keeps server.py simple and constructor-agnostic:
def new_store(*, backend: str,
              db: Optional[AsyncSession] = None,
              r: Optional[redis.Redis] = None,
              ttl_seconds: int = 1800,
              gated: Gated = None):
    if backend.lower() == "pg":
        if db is None:
            raise RuntimeError(
                "PaymentIntentStore(pg) requires db=AsyncSession"
            )
        if gated is None:
            raise RuntimeError(
                "PaymentIntentStore(pg) requires gated=Gated"
            )
        return _postgres.PaymentIntentStore(db=db, ttl_seconds=ttl_seconds,
                                            gated=gated)
    if r is None:
        raise RuntimeError(
            "PaymentIntentStore(redis) requires r=redis.Redis"
        )
    return _redis.PaymentIntentStore(r=r, ttl_seconds=ttl_seconds)


PaymentIntentStore = _postgres.PaymentIntentStore | _redis.PaymentIntentStore
create_schema = _postgres.create_schema
__all__ = ["PaymentIntentStore", "new_store", "create_schema"]
