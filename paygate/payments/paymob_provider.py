from __future__ import annotations
import hashlib
import json
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple, TYPE_CHECKING

import httpx
import structlog

from paygate.core.errors import ProviderAPIError, UnrecognizedCorrelationId
from paygate.payments.correlation import build_order_reference, user_id_from_reference
from paygate.payments.currency import normalize_amount
from paygate.payments.http import ProviderHTTPClient
from paygate.payments.normalizers import normalize_paymob
from paygate.payments.plans import PAYMOB_PRICES_EGP, billing_period, map_billing_cycle, map_plan_id
from paygate.payments.signatures import constant_time_equals, hmac_hex
from paygate.payments.status import paymob_payment_status
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

CURRENCY = "EGP"
AUTH_TOKEN_TTL_SECONDS = 55 * 60      # Paymob tokens live for an hour
PAYMENT_KEY_EXPIRATION_SECONDS = 3600
KIOSK_EXPIRY = timedelta(hours=48)

# Paymob signs the concatenation of these transaction fields, in this order
HMAC_FIELDS: Tuple[str, ...] = (
    "amount_cents",
    "created_at",
    "currency",
    "error_occured",
    "has_parent_transaction",
    "id",
    "integration_id",
    "is_3d_secure",
    "is_auth",
    "is_capture",
    "is_refunded",
    "is_standalone_payment",
    "is_voided",
    "order.id",
    "owner",
    "pending",
    "source_data.pan",
    "source_data.sub_type",
    "source_data.type",
    "success",
)


def _field(obj: Dict[str, Any], dotted: str) -> Any:
    cur: Any = obj
    for key in dotted.split("."):
        if isinstance(cur, dict):
            cur = cur.get(key)
        elif key == "id" and cur is not None and not isinstance(cur, (dict, list)):
            # `order` is sometimes sent as a bare id
            return cur
        else:
            return None
    return cur


def _hmac_part(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def hmac_message(obj: Dict[str, Any]) -> str:
    return "".join(_hmac_part(_field(obj, name)) for name in HMAC_FIELDS)


def payment_method_for(source_type: Optional[str], sub_type: Optional[str]) -> str:
    kind = (source_type or "").lower()
    if kind == "wallet":
        return "wallet"
    if kind == "aggregator":
        return "kiosk"
    if (sub_type or "").upper() == "MADA":
        return "mada"
    return "card"


class PaymobPaymentProvider:
    provider = PaymentProviderName.PAYMOB

    def __init__(self, settings: "Settings", http_client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self.http = ProviderHTTPClient(
            "paymob", settings.PAYMOB_BASE_URL, timeout=settings.PROVIDER_TIMEOUT_SECONDS, client=http_client
        )
        self._auth_token: Optional[str] = None
        self._auth_expires_at: float = 0.0

    def is_configured(self) -> bool:
        s = self.settings
        return bool(s.PAYMOB_API_KEY and s.PAYMOB_INTEGRATION_ID_CARD and s.PAYMOB_HMAC_SECRET)

    # ---------------- accept api ----------------

    async def _authenticate(self) -> str:
        now = time.monotonic()
        if self._auth_token and now < self._auth_expires_at:
            return self._auth_token
        data = await self.http.request("POST", "/auth/tokens", json={"api_key": self.settings.PAYMOB_API_KEY})
        token = data.get("token")
        if not token:
            raise ProviderAPIError("paymob", "Paymob authentication returned no token")
        self._auth_token, self._auth_expires_at = token, now + AUTH_TOKEN_TTL_SECONDS
        return token

    async def _create_order(self, token: str, amount_cents: int, reference: str, items: List[Dict[str, Any]]) -> str:
        data = await self.http.request(
            "POST",
            "/ecommerce/orders",
            json={
                "auth_token": token,
                "delivery_needed": False,
                "amount_cents": amount_cents,
                "currency": CURRENCY,
                "merchant_order_id": reference,
                "items": items,
            },
        )
        if not data.get("id"):
            raise ProviderAPIError("paymob", "Paymob order creation returned no id")
        return str(data["id"])

    async def _payment_key(
        self, token: str, order_id: str, amount_cents: int, integration_id: str, params: CheckoutParams
    ) -> str:
        data = await self.http.request(
            "POST",
            "/acceptance/payment_keys",
            json={
                "auth_token": token,
                "amount_cents": amount_cents,
                "expiration": PAYMENT_KEY_EXPIRATION_SECONDS,
                "order_id": order_id,
                "billing_data": {
                    "first_name": "Customer",
                    "last_name": "NA",
                    "email": params.email,
                    "phone_number": "+201000000000",
                    "street": "NA",
                    "building": "NA",
                    "floor": "NA",
                    "apartment": "NA",
                    "city": "Cairo",
                    "state": "Cairo",
                    "country": "EG",
                    "postal_code": "00000",
                },
                "currency": CURRENCY,
                "integration_id": int(integration_id),
                "lock_order_when_paid": True,
                "extras": {
                    "user_id": params.user_id,
                    "plan_id": params.plan_id.value,
                    "billing_cycle": params.billing_cycle.value,
                },
            },
        )
        if not data.get("token"):
            raise ProviderAPIError("paymob", "Paymob payment key request returned no token")
        return data["token"]

    async def _pay_kiosk(self, payment_key: str) -> str:
        data = await self.http.request(
            "POST",
            "/acceptance/payments/pay",
            json={"source": {"identifier": "AGGREGATOR", "subtype": "AGGREGATOR"}, "payment_token": payment_key},
        )
        reference = data.get("bill_reference") or (data.get("data") or {}).get("bill_reference") or data.get("id")
        if not reference:
            raise ProviderAPIError("paymob", "Paymob kiosk payment returned no bill reference")
        return str(reference)

    # ---------------- checkout ----------------

    async def create_checkout_session(self, params: CheckoutParams) -> CheckoutResult:
        prices = PAYMOB_PRICES_EGP.get(params.plan_id)
        if not prices:
            raise ProviderAPIError("paymob", f"No Paymob price for plan {params.plan_id.value}")
        amount_cents = prices[params.billing_cycle]
        kiosk = params.payment_method == "kiosk"
        integration_id = self.settings.PAYMOB_INTEGRATION_ID_KIOSK if kiosk else self.settings.PAYMOB_INTEGRATION_ID_CARD
        if not integration_id:
            raise ProviderAPIError("paymob", "Paymob kiosk payments are not enabled")

        reference = build_order_reference(params.user_id)
        token = await self._authenticate()
        order_id = await self._create_order(
            token,
            amount_cents,
            reference,
            [{
                "name": params.plan_id.value,
                "description": params.billing_cycle.value,
                "amount_cents": amount_cents,
                "quantity": 1,
            }],
        )
        payment_key = await self._payment_key(token, order_id, amount_cents, integration_id, params)

        if kiosk:
            bill_reference = await self._pay_kiosk(payment_key)
            sep = "&" if "?" in params.success_url else "?"
            return CheckoutResult(
                session_id=order_id,
                checkout_url=f"{params.success_url}{sep}kiosk_ref={bill_reference}",
                provider=self.provider,
                expires_at=datetime.now(tz=timezone.utc) + KIOSK_EXPIRY,
                order_reference=reference,
                amount=amount_cents,
                currency=CURRENCY,
                kiosk_bill_reference=bill_reference,
            )

        return CheckoutResult(
            session_id=order_id,
            checkout_url=(
                f"{self.settings.PAYMOB_BASE_URL}/acceptance/iframes/"
                f"{self.settings.PAYMOB_IFRAME_ID}?payment_token={payment_key}"
            ),
            provider=self.provider,
            expires_at=datetime.now(tz=timezone.utc) + timedelta(seconds=PAYMENT_KEY_EXPIRATION_SECONDS),
            order_reference=reference,
            amount=amount_cents,
            currency=CURRENCY,
        )

    # ---------------- subscriptions ----------------
    # Paymob has no recurring billing here: each period is a new checkout and
    # the local subscription row is the source of truth.

    async def create_subscription(self, params: SubscriptionParams) -> SubscriptionResult:
        raise ProviderAPIError("paymob", "Paymob subscriptions are started through checkout")

    async def get_subscription(self, subscription_id: str) -> Optional[SubscriptionResult]:
        return None

    async def cancel_subscription(self, subscription_id: str, immediate: bool = False) -> SubscriptionResult:
        return SubscriptionResult(
            subscription_id=subscription_id,
            status=SubscriptionStatus.CANCELED if immediate else SubscriptionStatus.ACTIVE,
            cancel_at_period_end=not immediate,
        )

    async def resume_subscription(self, subscription_id: str) -> SubscriptionResult:
        return SubscriptionResult(subscription_id=subscription_id, status=SubscriptionStatus.ACTIVE)

    async def create_customer(self, params: CustomerParams) -> str:
        return f"paymob_{params.user_id}"

    async def create_refund(self, params: RefundParams) -> RefundResult:
        if params.amount is None:
            raise ProviderAPIError("paymob", "Paymob refunds need an explicit amount")
        token = await self._authenticate()
        data = await self.http.request(
            "POST",
            "/acceptance/void_refund/refund",
            json={"auth_token": token, "transaction_id": params.payment_id, "amount_cents": params.amount},
        )
        return RefundResult(
            refund_id=str(data.get("id") or params.payment_id),
            status="succeeded" if data.get("success") else "failed",
            amount=params.amount,
        )

    # ---------------- webhooks ----------------

    def verify_webhook(self, raw_body: bytes, signature: str) -> WebhookVerification:
        secret = self.settings.PAYMOB_HMAC_SECRET
        if not secret:
            return WebhookVerification(valid=False, error="HMAC secret not configured")
        if not signature:
            return WebhookVerification(valid=False, error="Missing hmac parameter")
        try:
            payload = json.loads(raw_body)
        except ValueError:
            return WebhookVerification(valid=False, error="Malformed JSON")
        # the signed fields live inside the payload, so the shape is checked first
        problem = webhook_payload_error(self.provider.value, payload)
        if problem:
            return WebhookVerification(valid=False, error=f"Malformed payload: {problem}")

        expected = hmac_hex(secret, hmac_message(payload["obj"]), digest=hashlib.sha512)
        if not constant_time_equals(expected, signature):
            return WebhookVerification(valid=False, error="Invalid HMAC signature")
        return WebhookVerification(valid=True, event=normalize_paymob(payload))

    async def handle_webhook(self, event: WebhookEvent, reconciler: "ReconciliationService") -> None:
        from paygate.engine.reconciliation import PaymentEventData, SubscriptionEventData

        obj = event.data
        order = obj.get("order") if isinstance(obj.get("order"), dict) else {"id": obj.get("order")}
        order_id = str(order.get("id"))
        extras = (obj.get("payment_key_claims") or {}).get("extra") or {}
        items = order.get("items") or [{}]

        reference = order.get("merchant_order_id")
        user_id = user_id_from_reference(reference) if reference else extras.get("user_id")
        if not user_id:
            raise UnrecognizedCorrelationId(f"Paymob transaction {obj.get('id')} has no merchant order id")

        source = obj.get("source_data") or {}
        method = payment_method_for(source.get("type"), source.get("sub_type"))
        pan = str(source.get("pan") or "")
        currency = (obj.get("currency") or CURRENCY).upper()
        status = paymob_payment_status(obj)
        reason = None
        if status in (PaymentStatus.FAILED, PaymentStatus.CANCELLED):
            reason = str((obj.get("data") or {}).get("message") or "Payment failed")

        payment = PaymentEventData(
            user_id=user_id,
            provider=self.provider.value,
            amount=normalize_amount(obj["amount_cents"], currency, "minor"),
            currency=currency,
            status=status,
            provider_payment_id=str(obj["id"]),
            provider_order_id=order_id,
            payment_method=method,
            last4=pan[-4:] if pan[-4:].isdigit() else None,
            brand=source.get("sub_type"),
            failure_reason=reason,
            metadata={"eventId": event.id},
        )
        logger.info("paymob_transaction_received", transaction_id=payment.provider_payment_id, status=status.value, method=method)

        if event.type == EventType.PAYMENT_REFUNDED:
            await reconciler.update_payment_status(payment.provider_payment_id, payment.provider, status)
            return

        if event.type == EventType.PAYMENT_PENDING:
            if method == "kiosk":
                # customer has the bill reference and has not paid yet
                payment.status = PaymentStatus.PROCESSING
                await reconciler.update_order_payment_status(
                    order_id, payment.provider, PaymentStatus.PROCESSING, fallback=payment
                )
            else:
                await reconciler.update_payment_status(
                    payment.provider_payment_id, payment.provider, status, fallback=payment
                )
            return

        if method == "kiosk":
            await reconciler.update_order_payment_status(order_id, payment.provider, status, reason, fallback=payment)
        else:
            # later callbacks for the same transaction move its row forward
            await reconciler.update_payment_status(
                payment.provider_payment_id, payment.provider, status, reason, fallback=payment
            )

        if event.type == EventType.PAYMENT_SUCCESS:
            plan = map_plan_id(extras.get("plan_id") or items[0].get("name"))
            cycle = map_billing_cycle(extras.get("billing_cycle") or items[0].get("description"))
            start, end = billing_period(cycle)
            await reconciler.handle_subscription_event(
                SubscriptionEventData(
                    user_id=user_id,
                    provider=self.provider.value,
                    plan=plan,
                    status=SubscriptionStatus.ACTIVE,
                    current_period_start=start,
                    current_period_end=end,
                    provider_subscription_id=order_id,
                    cancel_at_period_end=False,
                )
            )

    async def aclose(self) -> None:
        await self.http.aclose()
