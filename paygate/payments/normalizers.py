# paygate/payments/normalizers.py
"""
Turn a verified provider payload into the canonical WebhookEvent.

These functions never look at signatures; adapters call them only after the
raw body has been authenticated and its shape checked against the provider
schema.
"""
from __future__ import annotations
import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from paygate.payments.status import (
    event_type_for_payment_status,
    paymob_payment_status,
    paytabs_payment_status,
)
from paygate.payments.types import EventType, PaymentProviderName, WebhookEvent

_FRACTION = re.compile(r"(\d*)(.*)")


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Epoch seconds or ISO-8601 (with `Z`) to an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    text = str(value).strip()
    if text.isdigit():
        return datetime.fromtimestamp(int(text), tz=timezone.utc)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    # Paddle sends nanosecond precision; fromisoformat takes at most microseconds
    head, dot, rest = text.partition(".")
    if dot:
        fraction = _FRACTION.match(rest)
        digits, tz_part = fraction.group(1), fraction.group(2)
        text = f"{head}.{digits[:6].ljust(6, '0')}{tz_part}" if digits else f"{head}{tz_part}"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


# -------------------- stripe --------------------

STRIPE_EVENT_TYPES: Dict[str, EventType] = {
    "customer.subscription.created": EventType.SUBSCRIPTION_CREATED,
    "customer.subscription.updated": EventType.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": EventType.SUBSCRIPTION_DELETED,
    # invoice.paid fires alongside payment_succeeded for the same invoice; one is enough
    "invoice.payment_succeeded": EventType.PAYMENT_SUCCESS,
    "invoice.payment_failed": EventType.PAYMENT_FAILED,
    "charge.refunded": EventType.PAYMENT_REFUNDED,
}


def normalize_stripe(payload: Dict[str, Any]) -> WebhookEvent:
    native = payload["type"]
    return WebhookEvent(
        id=payload["id"],
        type=STRIPE_EVENT_TYPES.get(native, EventType.UNHANDLED),
        provider=PaymentProviderName.STRIPE,
        data=payload["data"]["object"],
        timestamp=parse_timestamp(payload.get("created")) or _now(),
        native_type=native,
    )


# -------------------- paymob --------------------

def normalize_paymob(payload: Dict[str, Any]) -> WebhookEvent:
    obj = payload["obj"]
    status = paymob_payment_status(obj)
    # one transaction id is re-sent on every state change, so the status is part of the key
    return WebhookEvent(
        id=f"{obj['id']}:{status.value}",
        type=event_type_for_payment_status(status),
        provider=PaymentProviderName.PAYMOB,
        data=obj,
        timestamp=parse_timestamp(obj.get("created_at")) or _now(),
        native_type=str(payload.get("type") or "TRANSACTION"),
    )


# -------------------- paytabs --------------------

def normalize_paytabs(payload: Dict[str, Any]) -> WebhookEvent:
    result = payload.get("payment_result") or {}
    status = paytabs_payment_status(result.get("response_status"))
    return WebhookEvent(
        id=f"{payload['tran_ref']}:{status.value}",
        type=event_type_for_payment_status(status),
        provider=PaymentProviderName.PAYTABS,
        data=payload,
        timestamp=parse_timestamp(result.get("transaction_time")) or _now(),
        native_type=str(payload.get("tran_type") or "Sale"),
    )


# -------------------- paddle --------------------

PADDLE_EVENT_TYPES: Dict[str, EventType] = {
    "subscription.created": EventType.SUBSCRIPTION_CREATED,
    "subscription.activated": EventType.SUBSCRIPTION_CREATED,
    "subscription.updated": EventType.SUBSCRIPTION_UPDATED,
    "subscription.paused": EventType.SUBSCRIPTION_UPDATED,
    "subscription.resumed": EventType.SUBSCRIPTION_UPDATED,
    "subscription.past_due": EventType.SUBSCRIPTION_UPDATED,
    "subscription.canceled": EventType.SUBSCRIPTION_DELETED,
    "transaction.completed": EventType.PAYMENT_SUCCESS,
    "transaction.payment_failed": EventType.PAYMENT_FAILED,
}


def _paddle_event_type(native: str, data: Dict[str, Any]) -> EventType:
    if native in ("adjustment.created", "adjustment.updated"):
        if data.get("action") == "refund" and data.get("status") == "approved":
            return EventType.PAYMENT_REFUNDED
        return EventType.UNHANDLED
    return PADDLE_EVENT_TYPES.get(native, EventType.UNHANDLED)


def normalize_paddle(payload: Dict[str, Any]) -> WebhookEvent:
    native = payload["event_type"]
    data = payload["data"]
    return WebhookEvent(
        id=payload["event_id"],
        type=_paddle_event_type(native, data),
        provider=PaymentProviderName.PADDLE,
        data=data,
        timestamp=parse_timestamp(payload.get("occurred_at")) or _now(),
        native_type=native,
    )
