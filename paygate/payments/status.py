# paygate/payments/status.py
"""
Provider status vocabularies mapped onto the canonical enums.

Every table is total: a code nobody listed maps to FAILED for payments and
INCOMPLETE for subscriptions, never to a success or ACTIVE state.
"""
from __future__ import annotations
from typing import Any, Dict, Mapping, Optional

from paygate.payments.types import EventType, PaymentStatus as PS, SubscriptionStatus as SS

# -------------------- payments --------------------

PAYTABS_PAYMENT_STATUS: Dict[str, PS] = {
    "A": PS.COMPLETED,   # authorised
    "H": PS.PENDING,     # hold
    "P": PS.PENDING,     # pending
    "V": PS.CANCELLED,   # voided
    "E": PS.FAILED,      # error
    "D": PS.FAILED,      # declined
}

STRIPE_INVOICE_STATUS: Dict[str, PS] = {
    "paid": PS.COMPLETED,
    "open": PS.PENDING,
    "draft": PS.PENDING,
    "void": PS.CANCELLED,
    "uncollectible": PS.FAILED,
}

PADDLE_TRANSACTION_STATUS: Dict[str, PS] = {
    "completed": PS.COMPLETED,
    "paid": PS.COMPLETED,
    "draft": PS.PENDING,
    "ready": PS.PENDING,
    "billed": PS.PENDING,
    "canceled": PS.CANCELLED,
    "past_due": PS.FAILED,
}

# -------------------- subscriptions --------------------

STRIPE_SUBSCRIPTION_STATUS: Dict[str, SS] = {
    "active": SS.ACTIVE,
    "canceled": SS.CANCELED,
    "past_due": SS.PAST_DUE,
    "unpaid": SS.PAST_DUE,
    "paused": SS.PAST_DUE,
    "trialing": SS.TRIALING,
    "incomplete": SS.INCOMPLETE,
    "incomplete_expired": SS.INCOMPLETE,
}

PADDLE_SUBSCRIPTION_STATUS: Dict[str, SS] = {
    "active": SS.ACTIVE,
    "canceled": SS.CANCELED,
    "past_due": SS.PAST_DUE,
    "paused": SS.PAST_DUE,
    "trialing": SS.TRIALING,
}


def _lookup(table: Mapping[str, Any], code: Optional[str], default: Any, *, upper: bool = False) -> Any:
    if code is None:
        return default
    key = str(code).strip()
    key = key.upper() if upper else key.lower()
    return table.get(key, default)


def paytabs_payment_status(code: Optional[str]) -> PS:
    return _lookup(PAYTABS_PAYMENT_STATUS, code, PS.FAILED, upper=True)


def stripe_invoice_status(code: Optional[str]) -> PS:
    return _lookup(STRIPE_INVOICE_STATUS, code, PS.FAILED)


def paddle_transaction_status(code: Optional[str]) -> PS:
    return _lookup(PADDLE_TRANSACTION_STATUS, code, PS.FAILED)


def stripe_subscription_status(code: Optional[str]) -> SS:
    return _lookup(STRIPE_SUBSCRIPTION_STATUS, code, SS.INCOMPLETE)


def paddle_subscription_status(code: Optional[str]) -> SS:
    return _lookup(PADDLE_SUBSCRIPTION_STATUS, code, SS.INCOMPLETE)


def paymob_payment_status(obj: Mapping[str, Any]) -> PS:
    """Paymob reports booleans instead of a status code; order matters."""
    if obj.get("pending") is True:
        return PS.PENDING
    if obj.get("is_voided") is True:
        return PS.CANCELLED
    if obj.get("is_refunded") is True:
        return PS.REFUNDED
    if obj.get("success") is True:
        return PS.COMPLETED
    return PS.FAILED


def event_type_for_payment_status(status: PS) -> EventType:
    if status == PS.COMPLETED:
        return EventType.PAYMENT_SUCCESS
    if status in (PS.PENDING, PS.PROCESSING):
        return EventType.PAYMENT_PENDING
    if status == PS.REFUNDED:
        return EventType.PAYMENT_REFUNDED
    return EventType.PAYMENT_FAILED
