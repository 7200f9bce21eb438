from __future__ import annotations
import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, TYPE_CHECKING

import structlog
from pydantic import ValidationError as PydanticValidationError

from paygate.core.errors import (
    CheckoutFailed,
    GatewayNotConfigured,
    PaymentError,
    ProviderTimeout,
    Unauthorized,
    ValidationError,
)
from paygate.payments.plans import price_display
from paygate.payments.types import BillingCycle, CheckoutParams, CheckoutResult, Plan
from paygate.schemas.api_models import CheckoutRequest, CheckoutResponse

if TYPE_CHECKING:
    from paygate.core.security import SessionUser
    from paygate.core.settings import Settings
    from paygate.engine.reconciliation import ReconciliationService
    from paygate.payments.factory import GatewayFactory

logger = structlog.get_logger(__name__)


def iso(dt: Optional[datetime]) -> Optional[str]:
    if not dt:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def validation_details(exc: PydanticValidationError) -> List[Dict[str, str]]:
    return [
        {"field": ".".join(str(p) for p in err["loc"]) or "body", "message": err["msg"]}
        for err in exc.errors()
    ]


class CheckoutOrchestrator:
    """
    Authenticated checkout: validate, pick a gateway, open a hosted session.

    Order of checks is fixed: authentication, then payload validation, then
    gateway configuration. Provider failures are logged with full detail and
    surfaced to the caller as a generic CHECKOUT_FAILED.
    """

    def __init__(self, factory: "GatewayFactory", reconciler: "ReconciliationService", settings: "Settings"):
        self.factory = factory
        self.reconciler = reconciler
        self.settings = settings

    def _urls(self, provider: str) -> Dict[str, str]:
        base = self.settings.APP_URL
        return {
            "success_url": f"{base}/dashboard?payment=success&provider={provider}",
            "cancel_url": f"{base}/pricing?payment=cancelled&provider={provider}",
        }

    async def create_checkout(self, user: Optional["SessionUser"], payload: Any) -> CheckoutResponse:
        if user is None or not user.id or not user.email:
            raise Unauthorized("Please sign in to continue")

        if not isinstance(payload, dict):
            raise ValidationError("Invalid request", details=[{"field": "body", "message": "Expected a JSON object"}])
        try:
            req = CheckoutRequest.model_validate(payload)
        except PydanticValidationError as e:
            raise ValidationError("Invalid request", details=validation_details(e))

        gateway = self.factory.resolve(req.provider, req.countryCode)
        provider = gateway.provider.value
        if not gateway.is_configured():
            raise GatewayNotConfigured(provider)

        plan, cycle = Plan(req.planId), BillingCycle(req.billingCycle)
        params = CheckoutParams(
            user_id=user.id,
            email=user.email,
            plan_id=plan,
            billing_cycle=cycle,
            payment_method=req.paymentMethod,
            metadata={"countryCode": req.countryCode} if req.countryCode else {},
            **self._urls(provider),
        )

        log = logger.bind(user_id=user.id, provider=provider, plan=plan.value, billing_cycle=cycle.value)
        try:
            result: CheckoutResult = await asyncio.wait_for(
                gateway.create_checkout_session(params), timeout=self.settings.PROVIDER_TIMEOUT_SECONDS
            )
        except (asyncio.TimeoutError, ProviderTimeout):
            log.error("checkout_provider_timeout")
            raise ProviderTimeout(provider)
        except PaymentError as e:
            log.error("checkout_failed", code=e.code, error=str(e))
            raise CheckoutFailed(provider) from e
        except Exception as e:
            log.exception("checkout_failed", error=str(e))
            raise CheckoutFailed(provider) from e

        if result.kiosk_bill_reference:
            await self.reconciler.create_kiosk_payment_record(
                user_id=user.id,
                amount=result.amount or 0,
                currency=result.currency or "EGP",
                bill_reference=result.kiosk_bill_reference,
                expires_at=result.expires_at,
                provider_order_id=result.session_id,
                metadata={"planId": plan.value, "billingCycle": cycle.value, "orderReference": result.order_reference},
            )

        log.info("checkout_session_created", session_id=result.session_id)
        return CheckoutResponse(
            provider=provider,
            sessionId=result.session_id,
            checkoutUrl=result.checkout_url,
            expiresAt=iso(result.expires_at),
            priceDisplay=price_display(plan, cycle),
            kioskReference=result.kiosk_bill_reference,
        )
