from __future__ import annotations
import json
import re
from typing import Any, Dict, Optional, TYPE_CHECKING

import httpx
import structlog

from paygate.core.errors import ProviderAPIError
from paygate.payments.correlation import build_order_reference, user_id_from_reference
from paygate.payments.currency import from_smallest_unit, normalize_amount, to_smallest_unit
from paygate.payments.http import ProviderHTTPClient
from paygate.payments.normalizers import normalize_paytabs
from paygate.payments.plans import PAYTABS_PRICES, billing_period, map_billing_cycle, map_plan_id
from paygate.payments.signatures import constant_time_equals, hmac_hex
from paygate.payments.status import paytabs_payment_status
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

# region -> (endpoint, currency, country)
REGIONS: Dict[str, tuple] = {
    "SAU": ("https://secure.paytabs.sa", "SAR", "SA"),
    "ARE": ("https://secure.paytabs.com", "AED", "AE"),
    "EGY": ("https://secure-egypt.paytabs.com", "EGP", "EG"),
    "JOR": ("https://secure-jordan.paytabs.com", "JOD", "JO"),
    "OMN": ("https://secure-oman.paytabs.com", "OMR", "OM"),
    "KWT": ("https://secure-kuwait.paytabs.com", "KWD", "KW"),
    "BHR": ("https://secure-bahrain.paytabs.com", "BHD", "BH"),
    "QAT": ("https://secure-qatar.paytabs.com", "QAR", "QA"),
}

CHECKOUT_METHODS = {"mada": ["mada"], "apple_pay": ["applepay"], "google_pay": ["googlepay"]}


def payment_method_for(reported: Optional[str]) -> str:
    value = (reported or "").lower()
    if "mada" in value:
        return "mada"
    if "apple" in value:
        return "apple_pay"
    if "google" in value:
        return "google_pay"
    return "card"


def _last4(description: Optional[str]) -> Optional[str]:
    digits = re.sub(r"\D", "", description or "")
    return digits[-4:] if len(digits) >= 4 else None


class PayTabsPaymentProvider:
    provider = PaymentProviderName.PAYTABS

    def __init__(self, settings: "Settings", http_client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self.base_url, self.currency, self.country = REGIONS.get(settings.PAYTABS_REGION, REGIONS["SAU"])
        self.http = ProviderHTTPClient(
            "paytabs", self.base_url, timeout=settings.PROVIDER_TIMEOUT_SECONDS, client=http_client
        )

    def is_configured(self) -> bool:
        return bool(self.settings.PAYTABS_PROFILE_ID and self.settings.PAYTABS_SERVER_KEY)

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": self.settings.PAYTABS_SERVER_KEY, "Content-Type": "application/json"}

    # ---------------- checkout ----------------

    async def create_checkout_session(self, params: CheckoutParams) -> CheckoutResult:
        prices = PAYTABS_PRICES.get(params.plan_id)
        if not prices:
            raise ProviderAPIError("paytabs", f"No PayTabs price for plan {params.plan_id.value}")
        amount = prices[params.billing_cycle]
        reference = build_order_reference(params.user_id)

        body: Dict[str, Any] = {
            "profile_id": int(self.settings.PAYTABS_PROFILE_ID),
            "tran_type": "sale",
            "tran_class": "ecom",
            "cart_id": reference,
            "cart_description": f"{params.plan_id.value} Plan - {params.billing_cycle.value}",
            "cart_currency": self.currency,
            "cart_amount": amount,
            "callback": f"{self.settings.APP_URL}/api/payment/webhooks/paytabs",
            "return": params.success_url,
            "paypage_lang": params.locale,
            "customer_details": {
                "name": "Customer",
                "email": params.email,
                "phone": "+000000000000",
                "street1": "NA",
                "city": "City",
                "state": "State",
                "country": self.country,
                "zip": "00000",
            },
            "hide_shipping": True,
            "framed": False,
            "user_defined": {
                "udf1": params.user_id,
                "udf2": params.plan_id.value,
                "udf3": params.billing_cycle.value,
            },
        }
        if params.payment_method in CHECKOUT_METHODS:
            body["payment_methods"] = CHECKOUT_METHODS[params.payment_method]

        data = await self.http.request("POST", "/payment/request", headers=self._headers(), json=body)
        if not data.get("redirect_url"):
            raise ProviderAPIError("paytabs", "PayTabs did not return a redirect URL")
        return CheckoutResult(
            session_id=str(data.get("tran_ref") or reference),
            checkout_url=data["redirect_url"],
            provider=self.provider,
            order_reference=reference,
            amount=to_smallest_unit(amount, self.currency),
            currency=self.currency,
        )

    # ---------------- subscriptions ----------------
    # Charges are one-off; the local subscription row is the source of truth.

    async def create_subscription(self, params: SubscriptionParams) -> SubscriptionResult:
        raise ProviderAPIError("paytabs", "PayTabs subscriptions are started through checkout")

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
        return f"paytabs_{params.user_id}"

    async def create_refund(self, params: RefundParams) -> RefundResult:
        if params.amount is None:
            raise ProviderAPIError("paytabs", "PayTabs refunds need an explicit amount")
        currency = (params.currency or self.currency).upper()
        data = await self.http.request(
            "POST",
            "/payment/request",
            headers=self._headers(),
            json={
                "profile_id": int(self.settings.PAYTABS_PROFILE_ID),
                "tran_type": "refund",
                "tran_class": "ecom",
                "cart_id": params.order_reference or f"refund-{params.payment_id}",
                "cart_description": params.reason or "Refund",
                "cart_currency": currency,
                "cart_amount": float(from_smallest_unit(params.amount, currency)),
                "tran_ref": params.payment_id,
            },
        )
        approved = (data.get("payment_result") or {}).get("response_status") == "A"
        return RefundResult(
            refund_id=str(data.get("tran_ref") or params.payment_id),
            status="succeeded" if approved else "failed",
            amount=params.amount,
        )

    # ---------------- webhooks ----------------

    def verify_webhook(self, raw_body: bytes, signature: str) -> WebhookVerification:
        server_key = self.settings.PAYTABS_SERVER_KEY
        if not server_key:
            return WebhookVerification(valid=False, error="Server key not configured")
        if not signature:
            return WebhookVerification(valid=False, error="Missing signature header")
        if not constant_time_equals(hmac_hex(server_key, raw_body), signature):
            return WebhookVerification(valid=False, error="Invalid signature")
        try:
            payload = json.loads(raw_body)
        except ValueError:
            return WebhookVerification(valid=False, error="Malformed JSON")
        problem = webhook_payload_error(self.provider.value, payload)
        if problem:
            return WebhookVerification(valid=False, error=f"Malformed payload: {problem}")
        return WebhookVerification(valid=True, event=normalize_paytabs(payload))

    async def handle_webhook(self, event: WebhookEvent, reconciler: "ReconciliationService") -> None:
        from paygate.engine.reconciliation import PaymentEventData, SubscriptionEventData

        data = event.data
        result = data.get("payment_result") or {}
        status = paytabs_payment_status(result.get("response_status"))
        tran_type = str(data.get("tran_type") or "").lower()

        # follow-up transactions act on the original payment
        previous = data.get("previous_tran_ref")
        if tran_type in ("refund", "void") and previous:
            if status == PaymentStatus.COMPLETED:
                target = PaymentStatus.REFUNDED if tran_type == "refund" else PaymentStatus.CANCELLED
                await reconciler.update_payment_status(str(previous), self.provider.value, target)
            else:
                logger.info("paytabs_followup_not_approved", tran_ref=data.get("tran_ref"), tran_type=tran_type)
            return

        udf = data.get("user_defined") or {}
        user_id = udf.get("udf1") or user_id_from_reference(data.get("cart_id"))
        currency = str(data["cart_currency"]).upper()
        info = data.get("payment_info") or {}

        payment = PaymentEventData(
            user_id=user_id,
            provider=self.provider.value,
            amount=normalize_amount(data.get("tran_total") or data["cart_amount"], currency, "major"),
            currency=currency,
            status=status,
            provider_payment_id=str(data["tran_ref"]),
            provider_order_id=str(data["cart_id"]),
            payment_method=payment_method_for(info.get("payment_method")),
            last4=_last4(info.get("payment_description")),
            brand=info.get("card_scheme"),
            failure_reason=None if status in (PaymentStatus.COMPLETED, PaymentStatus.PENDING) else result.get("response_message"),
            metadata={"eventId": event.id, "responseCode": result.get("response_code")},
        )
        # a held or pending sale is re-sent under the same tran_ref once it settles
        await reconciler.update_payment_status(
            payment.provider_payment_id, payment.provider, status, payment.failure_reason, fallback=payment
        )

        if event.type == EventType.PAYMENT_SUCCESS:
            cycle = map_billing_cycle(udf.get("udf3"))
            start, end = billing_period(cycle)
            await reconciler.handle_subscription_event(
                SubscriptionEventData(
                    user_id=user_id,
                    provider=self.provider.value,
                    plan=map_plan_id(udf.get("udf2")),
                    status=SubscriptionStatus.ACTIVE,
                    current_period_start=start,
                    current_period_end=end,
                    provider_subscription_id=str(data["tran_ref"]),
                    provider_customer_id=(data.get("customer_details") or {}).get("email"),
                    cancel_at_period_end=False,
                )
            )

    async def aclose(self) -> None:
        await self.http.aclose()
