# paygate/payments/signatures.py
"""
HMAC helpers shared by the provider webhook verifiers.

`generate_signature` and `verify_signature` are the outbound signing pair:
they produce and check a deterministic `sha256=<hex>` signature over
`"{timestamp}.{payload}"`, for payloads handed to other systems. No inbound
provider uses that layout, so the request handlers do not call them.
Inbound provider webhooks use `hmac_hex` and `constant_time_equals` with
each provider's own message layout.
"""
from __future__ import annotations
import hashlib
import hmac
import time
from typing import Dict, Optional, Union

Payload = Union[str, bytes]

DEFAULT_TOLERANCE_SECONDS = 300


def _to_bytes(value: Payload) -> bytes:
    return value if isinstance(value, bytes) else value.encode("utf-8")


def hmac_hex(secret: str, message: Payload, digest=hashlib.sha256) -> str:
    return hmac.new(secret.encode("utf-8"), _to_bytes(message), digest).hexdigest()


def constant_time_equals(expected: str, received: Optional[str]) -> bool:
    if not received:
        return False
    return hmac.compare_digest(expected.lower().encode("utf-8"), received.strip().lower().encode("utf-8"))


def generate_signature(secret: str, timestamp: int, payload: Payload) -> str:
    """`sha256=<hex>` over `"{timestamp}.{payload}"`."""
    signed = _to_bytes(f"{timestamp}.") + _to_bytes(payload)
    return "sha256=" + hmac_hex(secret, signed)


def verify_signature(secret: str, timestamp: int, payload: Payload, signature: Optional[str]) -> bool:
    return constant_time_equals(generate_signature(secret, timestamp, payload), signature)


def is_timestamp_valid(timestamp: int, tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS, now: Optional[float] = None) -> bool:
    if tolerance_seconds <= 0:
        return True
    current = time.time() if now is None else now
    return abs(current - int(timestamp)) <= tolerance_seconds


def parse_signature_header(header: Optional[str], separator: str = ";") -> Dict[str, str]:
    """Split `ts=..;h1=..` style headers into a dict; malformed pieces are skipped."""
    parts: Dict[str, str] = {}
    for piece in (header or "").split(separator):
        key, eq, value = piece.strip().partition("=")
        if eq and key:
            parts[key.strip()] = value.strip()
    return parts
