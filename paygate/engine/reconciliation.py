from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

import structlog

from paygate.payments.types import PaymentStatus, Plan, SubscriptionStatus
from paygate.persistence.models import Payment, Subscription, utcnow

logger = structlog.get_logger(__name__)


class ReconciliationError(ValueError):
    pass


# ---------------- repository seams ----------------

class PaymentRepository(Protocol):
    async def create(self, **kwargs) -> Payment: ...
    async def update_status(
        self, *, provider: str, status: str, failure_reason: Optional[str] = None,
        provider_payment_id: Optional[str] = None, provider_order_id: Optional[str] = None,
    ) -> int: ...
    async def get_pending_kiosk(self, bill_ref: str, now: datetime) -> Optional[Payment]: ...
    async def list_for_user(self, user_id: str, limit: int = 50, offset: int = 0) -> List[Payment]: ...


class SubscriptionRepository(Protocol):
    async def get_for_user_provider(self, user_id: str, provider: str) -> Optional[Subscription]: ...
    async def get_by_provider_subscription_id(self, provider: str, provider_subscription_id: str) -> Optional[Subscription]: ...
    async def latest_for_user(self, user_id: str) -> Optional[Subscription]: ...
    async def upsert(self, *, user_id: str, provider: str, values: Dict[str, Any]) -> Subscription: ...
    async def update(
        self, sub: Subscription, *, plan: Optional[str] = None, status: Optional[str] = None,
        cancel_at_period_end: Optional[bool] = None,
    ) -> Subscription: ...


# ---------------- inputs ----------------

@dataclass
class PaymentEventData:
    user_id: str
    provider: str
    amount: int                      # minor units
    currency: str
    status: PaymentStatus
    provider_payment_id: Optional[str] = None
    provider_order_id: Optional[str] = None
    payment_method: Optional[str] = None
    last4: Optional[str] = None
    brand: Optional[str] = None
    failure_reason: Optional[str] = None
    subscription_id: Optional[Any] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SubscriptionEventData:
    user_id: str
    provider: str
    status: SubscriptionStatus
    plan: Optional[Plan] = None                   # None keeps the stored plan (FREE on insert)
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    provider_subscription_id: Optional[str] = None
    provider_customer_id: Optional[str] = None
    cancel_at_period_end: Optional[bool] = None   # None leaves the stored flag untouched


class ReconciliationService:
    """
    Applies canonical payment and subscription events to persistence.

    Every write is keyed so that applying the same event twice leaves the
    same state behind: payments by (provider_payment_id, provider), and
    subscriptions by the unique (user_id, payment_provider) pair.
    """

    def __init__(self, payments: PaymentRepository, subscriptions: SubscriptionRepository):
        self.payments = payments
        self.subscriptions = subscriptions

    # ---------------- payments ----------------

    async def record_payment(self, data: PaymentEventData) -> str:
        if isinstance(data.amount, bool) or not isinstance(data.amount, int):
            raise ReconciliationError(f"amount must be an integer in minor units, got {data.amount!r}")
        if data.amount < 0:
            raise ReconciliationError("amount must not be negative")

        subscription_id = data.subscription_id
        if subscription_id is None:
            sub = await self.subscriptions.get_for_user_provider(data.user_id, data.provider)
            subscription_id = sub.id if sub else None

        row = await self.payments.create(
            user_id=data.user_id,
            subscription_id=subscription_id,
            provider=data.provider,
            amount=data.amount,
            currency=data.currency.upper(),
            status=PaymentStatus(data.status).value,
            provider_payment_id=data.provider_payment_id,
            provider_order_id=data.provider_order_id,
            payment_method=data.payment_method,
            last4=data.last4,
            brand=data.brand,
            failure_reason=data.failure_reason,
            payment_metadata=dict(data.metadata),
        )
        logger.info(
            "payment_recorded",
            payment_id=str(row.id),
            user_id=data.user_id,
            provider=data.provider,
            status=row.status,
            amount=data.amount,
            currency=row.currency,
        )
        return str(row.id)

    async def update_payment_status(
        self,
        provider_payment_id: str,
        provider: str,
        status: PaymentStatus,
        reason: Optional[str] = None,
        fallback: Optional[PaymentEventData] = None,
    ) -> int:
        count = await self.payments.update_status(
            provider=provider,
            status=PaymentStatus(status).value,
            failure_reason=reason,
            provider_payment_id=provider_payment_id,
        )
        return await self._after_status_update(count, provider, provider_payment_id, status, fallback)

    async def update_order_payment_status(
        self,
        provider_order_id: str,
        provider: str,
        status: PaymentStatus,
        reason: Optional[str] = None,
        fallback: Optional[PaymentEventData] = None,
    ) -> int:
        count = await self.payments.update_status(
            provider=provider,
            status=PaymentStatus(status).value,
            failure_reason=reason,
            provider_order_id=provider_order_id,
        )
        return await self._after_status_update(count, provider, provider_order_id, status, fallback)

    async def _after_status_update(
        self, count: int, provider: str, key: str, status: PaymentStatus, fallback: Optional[PaymentEventData]
    ) -> int:
        if count:
            logger.info("payment_status_updated", provider=provider, key=key, status=PaymentStatus(status).value, rows=count)
            return count
        if fallback is None:
            logger.warning("payment_status_update_unmatched", provider=provider, key=key)
            return 0
        await self.record_payment(fallback)
        return 0

    # ---------------- subscriptions ----------------

    async def handle_subscription_event(self, data: SubscriptionEventData) -> str:
        values: Dict[str, Any] = {"status": SubscriptionStatus(data.status).value}
        if data.plan is not None:
            values["plan"] = Plan(data.plan).value
        if data.current_period_start is not None:
            values["current_period_start"] = data.current_period_start
        if data.current_period_end is not None:
            values["current_period_end"] = data.current_period_end
        if data.provider_subscription_id is not None:
            values["provider_subscription_id"] = data.provider_subscription_id
        if data.provider_customer_id is not None:
            values["provider_customer_id"] = data.provider_customer_id
        if data.cancel_at_period_end is not None:
            values["cancel_at_period_end"] = data.cancel_at_period_end

        sub = await self.subscriptions.upsert(user_id=data.user_id, provider=data.provider, values=values)
        logger.info(
            "subscription_upserted",
            subscription_id=str(sub.id),
            user_id=data.user_id,
            provider=data.provider,
            plan=sub.plan,
            status=sub.status,
        )
        return str(sub.id)

    async def handle_subscription_cancellation(
        self, provider: str, provider_subscription_id: str, immediate: bool
    ) -> Optional[str]:
        sub = await self.subscriptions.get_by_provider_subscription_id(provider, provider_subscription_id)
        if sub is None:
            logger.warning(
                "subscription_cancel_unmatched", provider=provider, provider_subscription_id=provider_subscription_id
            )
            return None

        if immediate:
            await self.subscriptions.update(
                sub, plan=Plan.FREE.value, status=SubscriptionStatus.CANCELED.value, cancel_at_period_end=False
            )
        else:
            await self.subscriptions.update(sub, cancel_at_period_end=True)
        logger.info("subscription_canceled", subscription_id=str(sub.id), provider=provider, immediate=immediate)
        return str(sub.id)

    async def handle_subscription_resume(self, provider: str, provider_subscription_id: str) -> Optional[str]:
        sub = await self.subscriptions.get_by_provider_subscription_id(provider, provider_subscription_id)
        if sub is None:
            logger.warning(
                "subscription_resume_unmatched", provider=provider, provider_subscription_id=provider_subscription_id
            )
            return None
        await self.subscriptions.update(sub, cancel_at_period_end=False)
        logger.info("subscription_resumed", subscription_id=str(sub.id), provider=provider)
        return str(sub.id)

    async def get_active_subscription(self, user_id: str) -> Optional[Subscription]:
        return await self.subscriptions.latest_for_user(user_id)

    async def list_payments(self, user_id: str, limit: int = 50, offset: int = 0) -> List[Payment]:
        return await self.payments.list_for_user(user_id, limit=limit, offset=offset)

    # ---------------- kiosk ----------------

    async def create_kiosk_payment_record(
        self,
        *,
        user_id: str,
        amount: int,
        currency: str,
        bill_reference: str,
        expires_at: datetime,
        provider_order_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise ReconciliationError(f"amount must be an integer in minor units, got {amount!r}")
        row = await self.payments.create(
            user_id=user_id,
            provider="paymob",
            amount=amount,
            currency=currency.upper(),
            status=PaymentStatus.PENDING.value,
            provider_order_id=provider_order_id,
            payment_method="kiosk",
            kiosk_bill_ref=bill_reference,
            kiosk_expiry=expires_at,
            payment_metadata=dict(metadata or {}),
        )
        logger.info("kiosk_payment_created", payment_id=str(row.id), user_id=user_id, bill_reference=bill_reference)
        return str(row.id)

    async def get_kiosk_payment_by_bill_ref(self, bill_reference: str) -> Optional[Payment]:
        return await self.payments.get_pending_kiosk(bill_reference, utcnow())
