from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    Index,
    String,
    TIMESTAMP,
    JSON,
    Integer,
    ForeignKey,
    Text,
    UniqueConstraint,
    Boolean,
    Uuid,
)
from .base import Base


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


# -------------------------
# Subscriptions
# -------------------------
class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(String, nullable=False, index=True)

    plan = Column(String, nullable=False, default="FREE")           # FREE | STARTER | PRO | BUSINESS | ENTERPRISE
    status = Column(String, nullable=False, default="INCOMPLETE")   # ACTIVE | CANCELED | PAST_DUE | TRIALING | INCOMPLETE
    current_period_start = Column(TIMESTAMP(timezone=True), nullable=True)
    current_period_end = Column(TIMESTAMP(timezone=True), nullable=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)

    payment_provider = Column(String, nullable=False)               # stripe | paymob | paytabs | paddle
    provider_subscription_id = Column(String, nullable=True)        # stripe sub id, paddle sub id, paymob order id, paytabs tran_ref
    provider_customer_id = Column(String, nullable=True)

    created_at = Column(TIMESTAMP(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "payment_provider", name="uq_subscriptions_user_provider"),
        Index("ix_subscriptions_provider_sub", "payment_provider", "provider_subscription_id"),
    )


# -------------------------
# Payments
# -------------------------
class Payment(Base):
    __tablename__ = "payments"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(String, nullable=False, index=True)
    subscription_id = Column(Uuid(as_uuid=True), ForeignKey("subscriptions.id"), nullable=True, index=True)

    provider = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)                 # minor units of `currency`
    currency = Column(String(3), nullable=False)
    status = Column(String, nullable=False, default="PENDING")

    provider_payment_id = Column(String, nullable=True)
    provider_order_id = Column(String, nullable=True)
    payment_method = Column(String, nullable=True)           # card | wallet | kiosk | mada | apple_pay | ...
    last4 = Column(String(4), nullable=True)
    brand = Column(String, nullable=True)

    kiosk_bill_ref = Column(String, nullable=True, index=True)
    kiosk_expiry = Column(TIMESTAMP(timezone=True), nullable=True)

    failure_reason = Column(Text, nullable=True)
    payment_metadata = Column("metadata", JSON, nullable=False, default=dict)

    created_at = Column(TIMESTAMP(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_payments_provider_payment", "provider", "provider_payment_id"),
        Index("ix_payments_provider_order", "provider", "provider_order_id"),
    )


# -------------------------
# Processed webhook events (dedup)
# -------------------------
class ProcessedWebhookEvent(Base):
    __tablename__ = "processed_webhook_events"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    provider = Column(String, nullable=False)
    event_id = Column(String, nullable=False)
    event_type = Column(String, nullable=False)
    received_at = Column(TIMESTAMP(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("provider", "event_id", name="uq_processed_webhook_events_provider_event"),
    )
