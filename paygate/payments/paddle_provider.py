from __future__ import annotations
import json
from typing import Any, Dict, Optional, TYPE_CHECKING

import httpx
import structlog

from paygate.core.errors import ProviderAPIError, UnrecognizedCorrelationId
from paygate.payments.currency import normalize_amount
from paygate.payments.normalizers import normalize_paddle, parse_timestamp
from paygate.payments.http import ProviderHTTPClient
from paygate.payments.plans import map_plan_id, plan_by_price_id, price_id_for
from paygate.payments.signatures import constant_time_equals, hmac_hex, is_timestamp_valid, parse_signature_header
from paygate.payments.status import paddle_subscription_status, paddle_transaction_status
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
    SubscriptionStatus,
    WebhookEvent,
    WebhookVerification,
)
from paygate.schemas.validator import webhook_payload_error

if TYPE_CHECKING:
    from paygate.core.settings import Settings
    from paygate.engine.reconciliation import ReconciliationService

logger = structlog.get_logger(__name__)

API_URLS = {
    "sandbox": "https://sandbox-api.paddle.com",
    "production": "https://api.paddle.com",
}


def _custom(data: Dict[str, Any]) -> Dict[str, Any]:
    return data.get("custom_data") or {}


def _first_price_id(data: Dict[str, Any]) -> Optional[str]:
    items = data.get("items") or []
    if not items:
        return None
    return ((items[0] or {}).get("price") or {}).get("id")


class PaddlePaymentProvider:
    provider = PaymentProviderName.PADDLE

    def __init__(self, settings: "Settings", http_client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self.http = ProviderHTTPClient(
            "paddle",
            API_URLS[settings.PADDLE_ENVIRONMENT],
            timeout=settings.PROVIDER_TIMEOUT_SECONDS,
            client=http_client,
        )

    def is_configured(self) -> bool:
        return bool(self.settings.PADDLE_API_KEY and self.settings.PADDLE_WEBHOOK_SECRET)

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.settings.PADDLE_API_KEY}", "Content-Type": "application/json"}

    async def _api(self, method: str, endpoint: str, **kwargs: Any) -> Any:
        payload = await self.http.request(method, endpoint, headers=self._headers(), **kwargs)
        return payload.get("data")

    def _to_result(self, sub: Dict[str, Any]) -> SubscriptionResult:
        period = sub.get("current_billing_period") or {}
        scheduled = sub.get("scheduled_change") or {}
        return SubscriptionResult(
            subscription_id=sub["id"],
            status=paddle_subscription_status(sub.get("status")),
            current_period_start=parse_timestamp(period.get("starts_at")),
            current_period_end=parse_timestamp(period.get("ends_at")),
            cancel_at_period_end=scheduled.get("action") == "cancel",
            customer_id=sub.get("customer_id"),
        )

    # ---------------- checkout ----------------

    async def create_checkout_session(self, params: CheckoutParams) -> CheckoutResult:
        price_id = price_id_for(self.provider, params.plan_id, params.billing_cycle, self.settings)
        if not price_id:
            raise ProviderAPIError(
                "paddle", f"No Paddle price configured for {params.plan_id.value} {params.billing_cycle.value}"
            )
        customer_id = await self.create_customer(CustomerParams(email=params.email, user_id=params.user_id))
        txn = await self._api(
            "POST",
            "/transactions",
            json={
                "items": [{"price_id": price_id, "quantity": 1}],
                "customer_id": customer_id,
                "collection_mode": "automatic",
                "custom_data": {
                    "user_id": params.user_id,
                    "plan_id": params.plan_id.value,
                    "billing_cycle": params.billing_cycle.value,
                    **params.metadata,
                },
                "checkout": {"url": params.success_url},
            },
        ) or {}
        url = (txn.get("checkout") or {}).get("url")
        if not txn.get("id") or not url:
            raise ProviderAPIError("paddle", "Paddle did not return a checkout URL")
        return CheckoutResult(session_id=txn["id"], checkout_url=url, provider=self.provider)

    # ---------------- subscriptions ----------------

    async def create_subscription(self, params: SubscriptionParams) -> SubscriptionResult:
        raise ProviderAPIError("paddle", "Paddle subscriptions are created from a completed checkout transaction")

    async def get_subscription(self, subscription_id: str) -> Optional[SubscriptionResult]:
        try:
            sub = await self._api("GET", f"/subscriptions/{subscription_id}")
        except ProviderAPIError:
            logger.warning("paddle_subscription_lookup_failed", subscription_id=subscription_id)
            return None
        return self._to_result(sub) if sub else None

    async def cancel_subscription(self, subscription_id: str, immediate: bool = False) -> SubscriptionResult:
        sub = await self._api(
            "POST",
            f"/subscriptions/{subscription_id}/cancel",
            json={"effective_from": "immediately" if immediate else "next_billing_period"},
        )
        return self._to_result(sub)

    async def resume_subscription(self, subscription_id: str) -> SubscriptionResult:
        # clearing the scheduled change withdraws a pending cancellation
        sub = await self._api("PATCH", f"/subscriptions/{subscription_id}", json={"scheduled_change": None})
        return self._to_result(sub)

    async def create_customer(self, params: CustomerParams) -> str:
        existing = await self._api("GET", "/customers", params={"email": params.email}) or []
        if existing:
            return existing[0]["id"]
        body: Dict[str, Any] = {"email": params.email, "custom_data": {"user_id": params.user_id, **params.metadata}}
        if params.name:
            body["name"] = params.name
        created = await self._api("POST", "/customers", json=body)
        return created["id"]

    async def create_refund(self, params: RefundParams) -> RefundResult:
        # partial refunds need transaction line items; only full refunds are issued here
        body: Dict[str, Any] = {
            "action": "refund",
            "type": "full",
            "transaction_id": params.payment_id,
            "reason": params.reason or "requested_by_customer",
        }
        adjustment = await self._api("POST", "/adjustments", json=body) or {}
        return RefundResult(
            refund_id=str(adjustment.get("id") or params.payment_id),
            status=str(adjustment.get("status") or "pending_approval"),
            amount=params.amount,
        )

    # ---------------- webhooks ----------------

    def verify_webhook(self, raw_body: bytes, signature: str) -> WebhookVerification:
        secret = self.settings.PADDLE_WEBHOOK_SECRET
        if not secret:
            return WebhookVerification(valid=False, error="Webhook secret not configured")
        parts = parse_signature_header(signature)
        ts, h1 = parts.get("ts"), parts.get("h1")
        if not ts or not h1 or not ts.isdigit():
            return WebhookVerification(valid=False, error="Malformed Paddle-Signature header")
        if not is_timestamp_valid(int(ts), self.settings.PADDLE_SIGNATURE_TOLERANCE_SECONDS):
            return WebhookVerification(valid=False, error="Signature timestamp outside tolerance")
        if not constant_time_equals(hmac_hex(secret, ts.encode("utf-8") + b":" + raw_body), h1):
            return WebhookVerification(valid=False, error="Invalid signature")
        try:
            payload = json.loads(raw_body)
        except ValueError:
            return WebhookVerification(valid=False, error="Malformed JSON")
        problem = webhook_payload_error(self.provider.value, payload)
        if problem:
            return WebhookVerification(valid=False, error=f"Malformed payload: {problem}")
        return WebhookVerification(valid=True, event=normalize_paddle(payload))

    async def handle_webhook(self, event: WebhookEvent, reconciler: "ReconciliationService") -> None:
        from paygate.engine.reconciliation import PaymentEventData, SubscriptionEventData

        data = event.data

        if event.type in (EventType.SUBSCRIPTION_CREATED, EventType.SUBSCRIPTION_UPDATED):
            user_id = _custom(data).get("user_id")
            if not user_id:
                raise UnrecognizedCorrelationId(f"Paddle subscription {data.get('id')} has no user_id custom data")
            result = self._to_result(data)
            plan = plan_by_price_id(_first_price_id(data), self.settings, self.provider)
            if plan is None and _custom(data).get("plan_id"):
                plan = map_plan_id(_custom(data).get("plan_id"))
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
            await reconciler.handle_subscription_cancellation(self.provider.value, data["id"], immediate=True)

        elif event.type in (EventType.PAYMENT_SUCCESS, EventType.PAYMENT_FAILED):
            user_id = _custom(data).get("user_id")
            if not user_id:
                raise UnrecognizedCorrelationId(f"Paddle transaction {data.get('id')} has no user_id custom data")
            currency = str(data.get("currency_code") or "USD").upper()
            totals = (data.get("details") or {}).get("totals") or {}
            payments = data.get("payments") or []
            attempt = payments[0] if payments else {}
            method = attempt.get("method_details") or {}
            card = method.get("card") or {}
            succeeded = event.type == EventType.PAYMENT_SUCCESS
            await reconciler.record_payment(
                PaymentEventData(
                    user_id=user_id,
                    provider=self.provider.value,
                    amount=normalize_amount(totals.get("total") or 0, currency, "minor"),
                    currency=currency,
                    status=paddle_transaction_status(data.get("status")) if succeeded else PaymentStatus.FAILED,
                    provider_payment_id=data.get("id"),
                    provider_order_id=data.get("invoice_id") or data.get("id"),
                    payment_method=method.get("type") or "card",
                    last4=card.get("last4"),
                    brand=card.get("type"),
                    failure_reason=None if succeeded else attempt.get("error_code") or "payment failed",
                    metadata={"eventId": event.id, "subscriptionId": data.get("subscription_id")},
                )
            )
            sub_id = data.get("subscription_id")
            if succeeded and sub_id:
                period = data.get("billing_period") or {}
                await reconciler.handle_subscription_event(
                    SubscriptionEventData(
                        user_id=user_id,
                        provider=self.provider.value,
                        plan=plan_by_price_id(_first_price_id(data), self.settings, self.provider),
                        status=SubscriptionStatus.ACTIVE,
                        current_period_start=parse_timestamp(period.get("starts_at")),
                        current_period_end=parse_timestamp(period.get("ends_at")),
                        provider_subscription_id=sub_id,
                        provider_customer_id=data.get("customer_id"),
                    )
                )

        elif event.type == EventType.PAYMENT_REFUNDED:
            txn_id = data.get("transaction_id")
            if txn_id:
                await reconciler.update_payment_status(txn_id, self.provider.value, PaymentStatus.REFUNDED)

        else:
            logger.info("paddle_event_ignored", event_id=event.id, native_type=event.native_type)

    async def aclose(self) -> None:
        await self.http.aclose()
