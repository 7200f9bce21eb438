# paygate/api/payment_webhooks.py
from __future__ import annotations
import asyncio
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Header, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from paygate.core.deps import get_db, get_event_store, get_gateway_factory, get_reconciler
from paygate.core.errors import UnrecognizedCorrelationId
from paygate.core.settings import settings
from paygate.engine.reconciliation import ReconciliationService
from paygate.payments.factory import GatewayFactory
from paygate.payments.types import PaymentProviderName
from paygate.persistence.event_store import ProcessedEventStore

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/payment/webhooks", tags=["Webhooks"])


# -------------------- pipeline --------------------

async def _process(
    provider: PaymentProviderName,
    request: Request,
    signature: Optional[str],
    db: AsyncSession,
    factory: GatewayFactory,
    reconciler: ReconciliationService,
    store: ProcessedEventStore,
):
    """
    verify -> dedup -> reconcile -> commit, all in one transaction.

    400 tells the provider the delivery is bad and nothing was written; 500
    asks it to retry; 200 acknowledges (including replays and events we can
    never attribute to a user).
    """
    gateway = factory.get(provider)
    raw = await request.body()

    verification = gateway.verify_webhook(raw, signature or "")
    if not verification.valid or verification.event is None:
        logger.warning("webhook_rejected", provider=provider.value, error=verification.error)
        return JSONResponse({"error": "Invalid signature"}, status_code=400)

    event = verification.event
    log = logger.bind(provider=provider.value, event_id=event.id, event_type=event.type.value)

    async def _apply() -> bool:
        fresh = await store.record_if_new(provider=provider.value, event_id=event.id, event_type=event.native_type)
        if not fresh:
            return False
        await gateway.handle_webhook(event, reconciler)
        await db.commit()
        return True

    try:
        applied = await asyncio.wait_for(_apply(), timeout=settings.WEBHOOK_TIMEOUT_SECONDS)
    except UnrecognizedCorrelationId as e:
        await db.rollback()
        await store.release(provider=provider.value, event_id=event.id)
        log.warning("webhook_unattributed", error=str(e))
        return {"received": True}
    except asyncio.TimeoutError:
        await db.rollback()
        await store.release(provider=provider.value, event_id=event.id)
        log.error("webhook_handler_timeout", timeout=settings.WEBHOOK_TIMEOUT_SECONDS)
        return JSONResponse({"error": "Webhook handler failed"}, status_code=500)
    except Exception as e:
        await db.rollback()
        await store.release(provider=provider.value, event_id=event.id)
        log.exception("webhook_handler_failed", error=str(e))
        return JSONResponse({"error": "Webhook handler failed"}, status_code=500)

    if not applied:
        log.info("webhook_duplicate")
        return {"received": True, "duplicate": True}

    log.info("webhook_processed", native_type=event.native_type)
    return {"received": True}


# -------------------- routes --------------------

@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    db: AsyncSession = Depends(get_db),
    factory: GatewayFactory = Depends(get_gateway_factory),
    reconciler: ReconciliationService = Depends(get_reconciler),
    store: ProcessedEventStore = Depends(get_event_store),
):
    return await _process(PaymentProviderName.STRIPE, request, stripe_signature, db, factory, reconciler, store)


@router.post("/paymob")
async def paymob_webhook(
    request: Request,
    hmac_param: Optional[str] = Query(None, alias="hmac"),
    db: AsyncSession = Depends(get_db),
    factory: GatewayFactory = Depends(get_gateway_factory),
    reconciler: ReconciliationService = Depends(get_reconciler),
    store: ProcessedEventStore = Depends(get_event_store),
):
    return await _process(PaymentProviderName.PAYMOB, request, hmac_param, db, factory, reconciler, store)


@router.post("/paytabs")
async def paytabs_webhook(
    request: Request,
    signature: Optional[str] = Header(None, alias="signature"),
    db: AsyncSession = Depends(get_db),
    factory: GatewayFactory = Depends(get_gateway_factory),
    reconciler: ReconciliationService = Depends(get_reconciler),
    store: ProcessedEventStore = Depends(get_event_store),
):
    return await _process(PaymentProviderName.PAYTABS, request, signature, db, factory, reconciler, store)


@router.post("/paddle")
async def paddle_webhook(
    request: Request,
    paddle_signature: Optional[str] = Header(None, alias="Paddle-Signature"),
    db: AsyncSession = Depends(get_db),
    factory: GatewayFactory = Depends(get_gateway_factory),
    reconciler: ReconciliationService = Depends(get_reconciler),
    store: ProcessedEventStore = Depends(get_event_store),
):
    return await _process(PaymentProviderName.PADDLE, request, paddle_signature, db, factory, reconciler, store)
