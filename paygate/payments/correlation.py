# paygate/payments/correlation.py
from __future__ import annotations
import time
from typing import Optional

from paygate.core.errors import UnrecognizedCorrelationId


def build_order_reference(user_id: str, now_ms: Optional[int] = None) -> str:
    """`{user_id}-{unix_ms}`; the suffix keeps repeat checkouts distinct."""
    ts = int(time.time() * 1000) if now_ms is None else int(now_ms)
    return f"{user_id}-{ts}"


def user_id_from_reference(reference: Optional[str]) -> str:
    # user ids may themselves contain dashes (uuids), so only the last segment is the timestamp
    if not reference:
        raise UnrecognizedCorrelationId("Missing order reference")
    user_id, sep, ts = str(reference).rpartition("-")
    if not sep or not user_id or not ts.isdigit():
        raise UnrecognizedCorrelationId(f"Unrecognized order reference '{reference}'")
    return user_id
