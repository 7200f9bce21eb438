from __future__ import annotations
import asyncio
import json
from typing import Any, Callable, Dict, Optional, TYPE_CHECKING

import stripe
import structlog

from paygate.core.errors import ProviderAPIError, ProviderTimeout, UnrecognizedCorrelationId
from paygate.payments.correlation import build_order_reference, user_id_from_reference
from paygate.payments.currency import normalize_amount
from paygate.payments.normalizers import normalize_stripe, parse_timestamp
from paygate.payments.plans import map_plan_id, plan_by_price_id, price_id_for
from paygate.payments.status import stripe_subscription_status
from paygate.payments.types import (
    CheckoutParams,
    CheckoutResult,
    CustomerParams,
    EventType,
    PaymentProviderName,
    PaymentStatus,
    RefundParams,
    RefundResult,
    SubscriptionParams,
    SubscriptionResult,
    WebhookEvent,
    WebhookVerification,
)
from paygate.schemas.validator import webhook_payload_error

if TYPE_CHECKING:
    from paygate.core.settings import Settings
    from paygate.engine.reconciliation import ReconciliationService

logger = structlog.get_logger(__name__)

SIGNATURE_TOLERANCE_SECONDS = 300


def _get(obj: Any, *path: str) -> Any:
    """Walk nested dicts / Stripe objects; None as soon as a hop is missing."""
    cur = obj
    for key in path:
        if cur is None:
            return None
        if isinstance(cur, dict):
            cur = cur.get(key)
        else:
            cur = getattr(cur, key, None)
    return cur


def _first_line(obj: Dict[str, Any], collection: str) -> Dict[str, Any]:
    data = _get(obj, collection, "data") or []
    return data[0] if data else {}


class StripePaymentProvider:
    provider = PaymentProviderName.STRIPE

    def __init__(self, settings: "Settings", client: Optional[Any] = None):
        self.settings = settings
        self.timeout = settings.PROVIDER_TIMEOUT_SECONDS
        self._client = client

    # ---------------- plumbing ----------------

    def is_configured(self) -> bool:
        s = self.settings
        return bool(s.STRIPE_SECRET_KEY and s.STRIPE_WEBHOOK_SECRET and s.STRIPE_PUBLISHABLE_KEY)

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = stripe.StripeClient(self.settings.STRIPE_SECRET_KEY)
        return self._client

    async def _call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        # the SDK is synchronous; keep it off the event loop and bound its duration
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args, **kwargs), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            logger.error("stripe_api_timeout", operation=getattr(fn, "__name__", "call"))
            raise ProviderTimeout("stripe") from e
        except stripe.StripeError as e:
            logger.error("stripe_api_error", operation=getattr(fn, "__name__", "call"), error=str(e))
            raise ProviderAPIError("stripe") from e

    def _to_result(self, sub: Any) -> SubscriptionResult:
        item = _first_line(sub, "items")
        start = _get(sub, "current_period_start") or _get(item, "current_period_start")
        end = _get(sub, "current_period_end") or _get(item, "current_period_end")
        return SubscriptionResult(
            subscription_id=_get(sub, "id"),
            status=stripe_subscription_status(_get(sub, "status")),
            current_period_start=parse_timestamp(start),
            current_period_end=parse_timestamp(end),
            cancel_at_period_end=bool(_get(sub, "cancel_at_period_end")),
            customer_id=_get(sub, "customer"),
        )

    # ---------------- checkout ----------------

    async def create_checkout_session(self, params: CheckoutParams) -> CheckoutResult:
        price_id = price_id_for(self.provider, params.plan_id, params.billing_cycle, self.settings)
        if not price_id:
            raise ProviderAPIError("stripe", f"No Stripe price configured for {params.plan_id.value} {params.billing_cycle.value}")

        reference = build_order_reference(params.user_id)
        tags = {
            "userId": params.user_id,
            "planId": params.plan_id.value,
            "billingCycle": params.billing_cycle.value,
        }
        session = await self._call(
            self.client.checkout.sessions.create,
            params={
                "mode": "subscription",
                "customer_email": params.email,
                "client_reference_id": reference,
                "line_items": [{"price": price_id, "quantity": 1}],
                "success_url": params.success_url,
                "cancel_url": params.cancel_url,
                "allow_promotion_codes": True,
                "metadata": {**params.metadata, **tags},
                "subscription_data": {"metadata": tags},
            },
        )
        return CheckoutResult(
            session_id=_get(session, "id"),
            checkout_url=_get(session, "url"),
            provider=self.provider,
            expires_at=parse_timestamp(_get(session, "expires_at")),
            order_reference=reference,
        )

    # ---------------- subscriptions ----------------

    async def create_subscription(self, params: SubscriptionParams) -> SubscriptionResult:
        price_id = price_id_for(self.provider, params.plan_id, params.billing_cycle, self.settings)
        if not price_id:
            raise ProviderAPIError("stripe", f"No Stripe price configured for {params.plan_id.value} {params.billing_cycle.value}")
        sub = await self._call(
            self.client.subscriptions.create,
            params={
                "customer": params.customer_id,
                "items": [{"price": price_id}],
                "payment_behavior": "default_incomplete",
                "metadata": {
                    **params.metadata,
                    "userId": params.user_id,
                    "planId": params.plan_id.value,
                    "billingCycle": params.billing_cycle.value,
                },
            },
        )
        return self._to_result(sub)

    async def get_subscription(self, subscription_id: str) -> Optional[SubscriptionResult]:
        def _retrieve():
            try:
                return self.client.subscriptions.retrieve(subscription_id)
            except stripe.InvalidRequestError:
                return None

        sub = await self._call(_retrieve)
        return self._to_result(sub) if sub is not None else None

    async def _retrieve_raw(self, subscription_id: str) -> Any:
        return await self._call(self.client.subscriptions.retrieve, subscription_id)

    async def cancel_subscription(self, subscription_id: str, immediate: bool = False) -> SubscriptionResult:
        if immediate:
            sub = await self._call(self.client.subscriptions.cancel, subscription_id)
        else:
            sub = await self._call(
                self.client.subscriptions.update, subscription_id, params={"cancel_at_period_end": True}
            )
        return self._to_result(sub)

    async def resume_subscription(self, subscription_id: str) -> SubscriptionResult:
        sub = await self._call(
            self.client.subscriptions.update, subscription_id, params={"cancel_at_period_end": False}
        )
        return self._to_result(sub)

    # ---------------- customers / refunds ----------------

    async def create_customer(self, params: CustomerParams) -> str:
        existing = await self._call(self.client.customers.list, params={"email": params.email, "limit": 1})
        found = _get(existing, "data") or []
        if found:
            return _get(found[0], "id")
        created = await self._call(
            self.client.customers.create,
            params={
                "email": params.email,
                "name": params.name,
                "metadata": {**params.metadata, "userId": params.user_id},
            },
        )
        return _get(created, "id")

    async def create_refund(self, params: RefundParams) -> RefundResult:
        body: Dict[str, Any] = {"payment_intent": params.payment_id, "reason": "requested_by_customer"}
        if params.amount is not None:
            body["amount"] = params.amount
        refund = await self._call(self.client.refunds.create, params=body)
        return RefundResult(refund_id=_get(refund, "id"), status=_get(refund, "status"), amount=_get(refund, "amount"))

    # ---------------- webhooks ----------------

    def verify_webhook(self, raw_body: bytes, signature: str) -> WebhookVerification:
        secret = self.settings.STRIPE_WEBHOOK_SECRET
        if not secret:
            return WebhookVerification(valid=False, error="Webhook secret not configured")
        if not signature:
            return WebhookVerification(valid=False, error="Missing Stripe-Signature header")
        try:
            text = raw_body.decode("utf-8")
            stripe.WebhookSignature.verify_header(text, signature, secret, SIGNATURE_TOLERANCE_SECONDS)
        except (stripe.SignatureVerificationError, UnicodeDecodeError):
            return WebhookVerification(valid=False, error="Invalid signature")

        try:
            payload = json.loads(text)
        except ValueError:
            return WebhookVerification(valid=False, error="Malformed JSON")
        problem = webhook_payload_error(self.provider.value, payload)
        if problem:
            return WebhookVerification(valid=False, error=f"Malformed payload: {problem}")
        return WebhookVerification(valid=True, event=normalize_stripe(payload))

    async def handle_webhook(self, event: WebhookEvent, reconciler: "ReconciliationService") -> None:
        from paygate.engine.reconciliation import PaymentEventData, SubscriptionEventData

        obj = event.data

        if event.type in (EventType.SUBSCRIPTION_CREATED, EventType.SUBSCRIPTION_UPDATED):
            user_id = _get(obj, "metadata", "userId")
            if not user_id:
                raise UnrecognizedCorrelationId(f"Stripe subscription {obj.get('id')} has no userId metadata")
            result = self._to_result(obj)
            price_id = _get(_first_line(obj, "items"), "price", "id")
            plan = plan_by_price_id(price_id, self.settings) or map_plan_id(_get(obj, "metadata", "planId"))
            await reconciler.handle_subscription_event(
                SubscriptionEventData(
                    user_id=user_id,
                    provider=self.provider.value,
                    plan=plan,
                    status=result.status,
                    current_period_start=result.current_period_start,
                    current_period_end=result.current_period_end,
                    provider_subscription_id=result.subscription_id,
                    provider_customer_id=result.customer_id,
                    cancel_at_period_end=result.cancel_at_period_end,
                )
            )

        elif event.type == EventType.SUBSCRIPTION_DELETED:
            await reconciler.handle_subscription_cancellation(self.provider.value, obj["id"], immediate=True)

        elif event.type in (EventType.PAYMENT_SUCCESS, EventType.PAYMENT_FAILED):
            sub_id = _get(obj, "subscription") or _get(obj, "parent", "subscription_details", "subscription")
            user_id = await self._invoice_user_id(obj, sub_id)
            currency = (obj.get("currency") or "usd").upper()
            succeeded = event.type == EventType.PAYMENT_SUCCESS
            amount_field = "amount_paid" if succeeded else "amount_due"
            await reconciler.record_payment(
                PaymentEventData(
                    user_id=user_id,
                    provider=self.provider.value,
                    amount=normalize_amount(obj.get(amount_field) or 0, currency, "minor"),
                    currency=currency,
                    status=PaymentStatus.COMPLETED if succeeded else PaymentStatus.FAILED,
                    provider_payment_id=_get(obj, "payment_intent") or obj.get("id"),
                    provider_order_id=obj.get("id"),
                    payment_method="card",
                    failure_reason=None if succeeded else "invoice payment failed",
                    metadata={"invoiceId": obj.get("id"), "eventId": event.id},
                )
            )
            if succeeded and sub_id:
                line = _first_line(obj, "lines")
                price_id = _get(line, "price", "id") or _get(line, "pricing", "price_details", "price")
                await reconciler.handle_subscription_event(
                    SubscriptionEventData(
                        user_id=user_id,
                        provider=self.provider.value,
                        plan=plan_by_price_id(price_id, self.settings),
                        status=stripe_subscription_status("active"),
                        current_period_start=parse_timestamp(_get(line, "period", "start")),
                        current_period_end=parse_timestamp(_get(line, "period", "end")),
                        provider_subscription_id=sub_id,
                        provider_customer_id=obj.get("customer"),
                    )
                )

        elif event.type == EventType.PAYMENT_REFUNDED:
            intent = _get(obj, "payment_intent")
            if intent:
                await reconciler.update_payment_status(intent, self.provider.value, PaymentStatus.REFUNDED)

        else:
            logger.info("stripe_event_ignored", event_id=event.id, native_type=event.native_type)

    async def _invoice_user_id(self, invoice: Dict[str, Any], sub_id: Optional[str]) -> str:
        user_id = (
            _get(invoice, "subscription_details", "metadata", "userId")
            or _get(invoice, "parent", "subscription_details", "metadata", "userId")
            or _get(invoice, "metadata", "userId")
        )
        if user_id:
            return user_id
        if sub_id:
            remote = await self._retrieve_raw(sub_id)
            user_id = _get(remote, "metadata", "userId")
            if user_id:
                return user_id
        reference = _get(invoice, "metadata", "client_reference_id")
        if reference:
            return user_id_from_reference(reference)
        raise UnrecognizedCorrelationId(f"Stripe invoice {invoice.get('id')} cannot be attributed to a user")
