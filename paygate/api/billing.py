# paygate/api/billing.py
from __future__ import annotations
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, Query
from sqlalchemy.ext.asyncio import AsyncSession

from paygate.core.deps import get_db, get_gateway_factory, get_reconciler
from paygate.core.errors import NotFound, ValidationError
from paygate.core.security import SessionUser, require_session_user
from paygate.engine.checkout import iso
from paygate.engine.reconciliation import ReconciliationService
from paygate.payments.currency import format_currency, from_smallest_unit
from paygate.payments.factory import GatewayFactory
from paygate.payments.regions import PAYMENT_METHODS, available_payment_methods, normalize_country, preferred_gateways
from paygate.payments.types import Plan
from paygate.persistence.models import Payment, Subscription
from paygate.schemas.api_models import (
    CancelRequest,
    KioskPaymentResponse,
    PaymentMethodItem,
    PaymentMethodsResponse,
    PaymentResponse,
    SubscriptionResponse,
)

router = APIRouter(prefix="/api/payment", tags=["Billing"])

DEFAULT_COUNTRY = "US"


# -------------------- helpers --------------------

def _amount_display(amount: int, currency: str) -> str:
    return format_currency(from_smallest_unit(amount, currency), currency)


def _subscription_out(sub: Subscription) -> SubscriptionResponse:
    return SubscriptionResponse(
        id=str(sub.id),
        plan=sub.plan,
        status=sub.status,
        provider=sub.payment_provider,
        providerSubscriptionId=sub.provider_subscription_id,
        currentPeriodStart=iso(sub.current_period_start),
        currentPeriodEnd=iso(sub.current_period_end),
        cancelAtPeriodEnd=bool(sub.cancel_at_period_end),
    )


def _payment_out(p: Payment) -> PaymentResponse:
    return PaymentResponse(
        id=str(p.id),
        provider=p.provider,
        amount=p.amount,
        currency=p.currency,
        amountDisplay=_amount_display(p.amount, p.currency),
        status=p.status,
        paymentMethod=p.payment_method,
        last4=p.last4,
        brand=p.brand,
        kioskBillRef=p.kiosk_bill_ref,
        failureReason=p.failure_reason,
        createdAt=iso(p.created_at),
    )


async def _cancellable(reconciler: ReconciliationService, user: SessionUser) -> Subscription:
    sub = await reconciler.get_active_subscription(user.id)
    if sub is None or sub.plan == Plan.FREE.value or not sub.provider_subscription_id:
        raise NotFound("No active paid subscription")
    return sub


# -------------------- routes --------------------

@router.get("/methods", response_model=PaymentMethodsResponse)
async def payment_methods(
    country: Optional[str] = Query(None, min_length=2, max_length=2),
    cf_country: Optional[str] = Header(None, alias="CF-IPCountry"),
    vercel_country: Optional[str] = Header(None, alias="X-Vercel-IP-Country"),
    factory: GatewayFactory = Depends(get_gateway_factory),
):
    code = normalize_country(country or cf_country or vercel_country) or DEFAULT_COUNTRY
    gateway = factory.resolve(country_code=code)
    return PaymentMethodsResponse(
        countryCode=code,
        provider=gateway.provider.value,
        configured=gateway.is_configured(),
        preferredGateways=[p.value for p in preferred_gateways(code)],
        configuredGateways=[p.value for p in factory.configured_gateways()],
        methods=[
            PaymentMethodItem(id=m.id, name=m.name, description=m.description)
            for m in (PAYMENT_METHODS[i] for i in available_payment_methods(code))
        ],
    )


@router.get("/subscription", response_model=Optional[SubscriptionResponse])
async def current_subscription(
    user: SessionUser = Depends(require_session_user),
    reconciler: ReconciliationService = Depends(get_reconciler),
):
    sub = await reconciler.get_active_subscription(user.id)
    return _subscription_out(sub) if sub else None


@router.get("/payments", response_model=List[PaymentResponse])
async def list_payments(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user: SessionUser = Depends(require_session_user),
    reconciler: ReconciliationService = Depends(get_reconciler),
):
    rows = await reconciler.list_payments(user.id, limit=limit, offset=offset)
    return [_payment_out(p) for p in rows]


@router.post("/subscription/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(
    body: Optional[CancelRequest] = None,
    user: SessionUser = Depends(require_session_user),
    db: AsyncSession = Depends(get_db),
    factory: GatewayFactory = Depends(get_gateway_factory),
    reconciler: ReconciliationService = Depends(get_reconciler),
):
    sub = await _cancellable(reconciler, user)
    provider, remote_id = sub.payment_provider, sub.provider_subscription_id
    immediate = body.immediate if body else False

    # provider first, so a failed remote call leaves the local row untouched
    await factory.get(provider).cancel_subscription(remote_id, immediate=immediate)
    await reconciler.handle_subscription_cancellation(provider, remote_id, immediate=immediate)
    await db.commit()

    await db.refresh(sub)
    return _subscription_out(sub)


@router.post("/subscription/resume", response_model=SubscriptionResponse)
async def resume_subscription(
    user: SessionUser = Depends(require_session_user),
    db: AsyncSession = Depends(get_db),
    factory: GatewayFactory = Depends(get_gateway_factory),
    reconciler: ReconciliationService = Depends(get_reconciler),
):
    sub = await _cancellable(reconciler, user)
    if not sub.cancel_at_period_end:
        raise ValidationError(
            "Subscription is not scheduled for cancellation",
            details=[{"field": "subscription", "message": "Nothing to resume"}],
        )
    provider, remote_id = sub.payment_provider, sub.provider_subscription_id

    await factory.get(provider).resume_subscription(remote_id)
    await reconciler.handle_subscription_resume(provider, remote_id)
    await db.commit()

    await db.refresh(sub)
    return _subscription_out(sub)


@router.get("/kiosk/{bill_ref}", response_model=KioskPaymentResponse)
async def kiosk_payment(
    bill_ref: str,
    user: SessionUser = Depends(require_session_user),
    reconciler: ReconciliationService = Depends(get_reconciler),
):
    p = await reconciler.get_kiosk_payment_by_bill_ref(bill_ref)
    # another user's bill reference is reported the same as a missing one
    if p is None or p.user_id != user.id:
        raise NotFound("Kiosk payment not found or expired")
    return KioskPaymentResponse(
        billReference=p.kiosk_bill_ref,
        amount=p.amount,
        currency=p.currency,
        amountDisplay=_amount_display(p.amount, p.currency),
        status=p.status,
        expiresAt=iso(p.kiosk_expiry),
        metadata=p.payment_metadata or None,
    )
