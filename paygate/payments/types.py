# paygate/payments/types.py
from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Protocol, Optional, Dict, Any, TYPE_CHECKING

if TYPE_CHECKING:
    from paygate.engine.reconciliation import ReconciliationService


class PaymentProviderName(str, Enum):
    STRIPE = "stripe"
    PAYMOB = "paymob"
    PAYTABS = "paytabs"
    PADDLE = "paddle"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class SubscriptionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    CANCELED = "CANCELED"
    PAST_DUE = "PAST_DUE"
    TRIALING = "TRIALING"
    INCOMPLETE = "INCOMPLETE"


class Plan(str, Enum):
    FREE = "FREE"
    STARTER = "STARTER"
    PRO = "PRO"
    BUSINESS = "BUSINESS"
    ENTERPRISE = "ENTERPRISE"


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class EventType(str, Enum):
    PAYMENT_SUCCESS = "payment.success"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_PENDING = "payment.pending"
    PAYMENT_REFUNDED = "payment.refunded"
    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_UPDATED = "subscription.updated"
    SUBSCRIPTION_DELETED = "subscription.deleted"
    UNHANDLED = "unhandled"


# -------------------------
# Gateway inputs / outputs
# -------------------------
@dataclass
class CheckoutParams:
    user_id: str
    email: str
    plan_id: Plan
    billing_cycle: BillingCycle
    success_url: str
    cancel_url: str
    payment_method: Optional[str] = None
    currency: Optional[str] = None
    locale: str = "en"
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class CheckoutResult:
    session_id: str
    checkout_url: str
    provider: PaymentProviderName
    expires_at: Optional[datetime] = None
    order_reference: Optional[str] = None
    amount: Optional[int] = None            # minor units, when the adapter priced it locally
    currency: Optional[str] = None
    kiosk_bill_reference: Optional[str] = None


@dataclass
class SubscriptionParams:
    user_id: str
    customer_id: str
    plan_id: Plan
    billing_cycle: BillingCycle
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class SubscriptionResult:
    subscription_id: str
    status: SubscriptionStatus
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    customer_id: Optional[str] = None


@dataclass
class CustomerParams:
    email: str
    user_id: str
    name: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class RefundParams:
    payment_id: str                 # provider payment / transaction reference
    amount: Optional[int] = None    # minor units; None refunds in full
    currency: Optional[str] = None
    reason: Optional[str] = None
    order_reference: Optional[str] = None


@dataclass
class RefundResult:
    refund_id: str
    status: str
    amount: Optional[int] = None


# -------------------------
# Webhooks
# -------------------------
@dataclass
class WebhookEvent:
    """Canonical event; only ever built from a payload whose signature checked out."""

    id: str
    type: EventType
    provider: PaymentProviderName
    data: Dict[str, Any]
    timestamp: datetime
    native_type: str = ""


@dataclass
class WebhookVerification:
    valid: bool
    event: Optional[WebhookEvent] = None
    error: Optional[str] = None


class PaymentGateway(Protocol):
    provider: PaymentProviderName

    def is_configured(self) -> bool: ...

    # --- checkout ---
    async def create_checkout_session(self, params: CheckoutParams) -> CheckoutResult: ...

    # --- subscriptions ---
    async def create_subscription(self, params: SubscriptionParams) -> SubscriptionResult: ...
    async def get_subscription(self, subscription_id: str) -> Optional[SubscriptionResult]: ...
    async def cancel_subscription(self, subscription_id: str, immediate: bool = False) -> SubscriptionResult: ...
    async def resume_subscription(self, subscription_id: str) -> SubscriptionResult: ...

    # --- customers / refunds ---
    async def create_customer(self, params: CustomerParams) -> str: ...
    async def create_refund(self, params: RefundParams) -> RefundResult: ...

    # --- webhooks ---
    def verify_webhook(self, raw_body: bytes, signature: str) -> WebhookVerification: ...
    async def handle_webhook(self, event: WebhookEvent, reconciler: "ReconciliationService") -> None: ...
