from __future__ import annotations
from typing import Any, Dict, Optional, List
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from paygate.persistence.models import (
    Payment,
    ProcessedWebhookEvent,
    Subscription,
    utcnow,
)


def _insert_for(db: AsyncSession):
    """Dialect-specific INSERT so ON CONFLICT clauses are available."""
    name = db.get_bind().dialect.name
    if name == "postgresql":
        return postgresql.insert
    if name == "sqlite":
        return sqlite.insert
    raise RuntimeError(f"Unsupported database dialect for upserts: {name}")


# -------------------- Payments --------------------

class PaymentRepo:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(self, **kwargs) -> Payment:
        row = Payment(**kwargs)
        self.db.add(row)
        await self.db.flush()
        await self.db.refresh(row)
        return row

    async def update_status(
        self,
        *,
        provider: str,
        status: str,
        failure_reason: Optional[str] = None,
        provider_payment_id: Optional[str] = None,
        provider_order_id: Optional[str] = None,
    ) -> int:
        """Update every row matching the provider key; returns the number of rows touched."""
        stmt = update(Payment).where(Payment.provider == provider)
        if provider_payment_id is not None:
            stmt = stmt.where(Payment.provider_payment_id == provider_payment_id)
        elif provider_order_id is not None:
            stmt = stmt.where(Payment.provider_order_id == provider_order_id)
        else:
            raise ValueError("provider_payment_id or provider_order_id is required")

        values: Dict[str, Any] = {"status": status, "updated_at": utcnow()}
        if failure_reason is not None:
            values["failure_reason"] = failure_reason
        res = await self.db.execute(stmt.values(**values).execution_options(synchronize_session=False))
        return res.rowcount or 0

    async def get_pending_kiosk(self, bill_ref: str, now: datetime) -> Optional[Payment]:
        res = await self.db.execute(
            select(Payment)
            .where(
                Payment.kiosk_bill_ref == bill_ref,
                Payment.status == "PENDING",
                Payment.kiosk_expiry > now,
            )
            .order_by(Payment.created_at.desc())
            .limit(1)
        )
        return res.scalar_one_or_none()

    async def list_for_user(self, user_id: str, limit: int = 50, offset: int = 0) -> List[Payment]:
        res = await self.db.execute(
            select(Payment)
            .where(Payment.user_id == user_id)
            .order_by(Payment.created_at.desc())
            .offset(offset)
            .limit(limit)
        )
        return list(res.scalars().all())


# -------------------- Subscriptions --------------------

class SubscriptionRepo:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_for_user_provider(self, user_id: str, provider: str) -> Optional[Subscription]:
        res = await self.db.execute(
            select(Subscription).where(
                Subscription.user_id == user_id,
                Subscription.payment_provider == provider,
            )
        )
        return res.scalar_one_or_none()

    async def get_by_provider_subscription_id(self, provider: str, provider_subscription_id: str) -> Optional[Subscription]:
        res = await self.db.execute(
            select(Subscription)
            .where(
                Subscription.payment_provider == provider,
                Subscription.provider_subscription_id == provider_subscription_id,
            )
            .limit(1)
        )
        return res.scalar_one_or_none()

    async def latest_for_user(self, user_id: str) -> Optional[Subscription]:
        res = await self.db.execute(
            select(Subscription)
            .where(Subscription.user_id == user_id)
            .order_by(Subscription.updated_at.desc())
            .limit(1)
        )
        return res.scalar_one_or_none()

    async def upsert(self, *, user_id: str, provider: str, values: Dict[str, Any]) -> Subscription:
        """
        Single INSERT .. ON CONFLICT (user_id, payment_provider) DO UPDATE.
        Only keys present in `values` are overwritten on conflict.
        """
        insert = _insert_for(self.db)
        now = utcnow()
        stmt = insert(Subscription).values(
            user_id=user_id, payment_provider=provider, created_at=now, updated_at=now, **values
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[Subscription.user_id, Subscription.payment_provider],
            set_={**values, "updated_at": now},
        )
        await self.db.execute(stmt)

        res = await self.db.execute(
            select(Subscription)
            .where(Subscription.user_id == user_id, Subscription.payment_provider == provider)
            .execution_options(populate_existing=True)
        )
        return res.scalar_one()

    async def update(
        self,
        sub: Subscription,
        *,
        plan: Optional[str] = None,
        status: Optional[str] = None,
        cancel_at_period_end: Optional[bool] = None,
    ) -> Subscription:
        if plan is not None:
            sub.plan = plan
        if status is not None:
            sub.status = status
        if cancel_at_period_end is not None:
            sub.cancel_at_period_end = cancel_at_period_end
        await self.db.flush()
        await self.db.refresh(sub)
        return sub


# -------------------- Webhook events --------------------

class EventRepo:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def record_if_new(self, *, provider: str, event_id: str, event_type: str) -> bool:
        """
        Insert the (provider, event_id) marker unless it already exists.
        Runs in the caller's transaction, so a failed handler rolls it back.
        """
        insert = _insert_for(self.db)
        stmt = (
            insert(ProcessedWebhookEvent)
            .values(provider=provider, event_id=event_id, event_type=event_type)
            .on_conflict_do_nothing(index_elements=[ProcessedWebhookEvent.provider, ProcessedWebhookEvent.event_id])
            .returning(ProcessedWebhookEvent.id)
        )
        res = await self.db.execute(stmt)
        return res.scalar_one_or_none() is not None
