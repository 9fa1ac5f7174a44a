import time
import math
import uuid
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
import hmac
from typing import Any, Optional


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def new_id() -> str:
    return uuid.uuid4().hex


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


def parse_int(value: Any) -> Optional[int]:
    """Lenient integer parse for request fields; None when not an integer."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            return None
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def to_decimal(value: Any) -> Optional[Decimal]:
    """Finite Decimal or None. Floats go through str() to keep 0.1 as 0.1."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        d = value
    else:
        try:
            d = Decimal(str(value).strip())
        except ArithmeticError:
            return None
    if not d.is_finite():
        return None
    return d


def round_half_up(value: Decimal) -> Decimal:
    return value.quantize(Decimal("1"), rounding=ROUND_HALF_UP)


def money(value: Decimal | None) -> int | float | None:
    # orjson has no Decimal support
    if value is None:
        return None
    if value == value.to_integral_value():
        return int(value)
    return float(value)
