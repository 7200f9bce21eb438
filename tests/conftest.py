import os

# settings are read once at import time, so the test environment goes first
os.environ.update({
    "ENV": "development",
    "APP_URL": "https://app.test/",
    "DATABASE_URL": "sqlite+aiosqlite:///:memory:",
    "WEBHOOK_DEDUP_BACKEND": "database",
    "JWT_SECRET": "test-secret",
    "STRIPE_SECRET_KEY": "sk_test_123",
    "STRIPE_WEBHOOK_SECRET": "whsec_test",
    "STRIPE_PUBLISHABLE_KEY": "pk_test_123",
    "STRIPE_STARTER_MONTHLY_PRICE_ID": "price_starter_m",
    "STRIPE_STARTER_YEARLY_PRICE_ID": "price_starter_y",
    "STRIPE_PRO_MONTHLY_PRICE_ID": "price_pro_m",
    "STRIPE_PRO_YEARLY_PRICE_ID": "price_pro_y",
    "PAYMOB_API_KEY": "paymob_key",
    "PAYMOB_INTEGRATION_ID_CARD": "1001",
    "PAYMOB_INTEGRATION_ID_KIOSK": "1002",
    "PAYMOB_IFRAME_ID": "777",
    "PAYMOB_HMAC_SECRET": "paymob_hmac",
    "PAYTABS_PROFILE_ID": "12345",
    "PAYTABS_SERVER_KEY": "SKTEST",
    "PAYTABS_REGION": "SAU",
    "PADDLE_API_KEY": "pdl_key",
    "PADDLE_WEBHOOK_SECRET": "pdl_secret",
    "PADDLE_ENVIRONMENT": "sandbox",
    "PADDLE_PRICE_PRO_MONTHLY": "pri_pro_m",
    "PADDLE_PRICE_PRO_YEARLY": "pri_pro_y",
})

import hashlib
import hmac
import json
import time
import uuid
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from paygate.core.security import mint_dev_token
from paygate.core.settings import Settings
from paygate.payments.types import (
    CheckoutParams,
    CheckoutResult,
    CustomerParams,
    PaymentProviderName,
    RefundParams,
    RefundResult,
    SubscriptionParams,
    SubscriptionResult,
    SubscriptionStatus,
    WebhookVerification,
)
from paygate.persistence import models  # noqa: F401
from paygate.persistence.base import Base


# ----------------------- settings / db -----------------------

@pytest.fixture
def settings() -> Settings:
    return Settings()


@pytest.fixture
async def engine():
    eng = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


# ----------------------- in-memory repositories -----------------------

class MemoryPaymentRepo:
    def __init__(self):
        self.rows: List[SimpleNamespace] = []

    async def create(self, **kwargs):
        kwargs.setdefault("subscription_id", None)
        kwargs.setdefault("kiosk_bill_ref", None)
        kwargs.setdefault("kiosk_expiry", None)
        row = SimpleNamespace(id=uuid.uuid4(), created_at=datetime.now(tz=timezone.utc), **kwargs)
        self.rows.append(row)
        return row

    async def update_status(self, *, provider, status, failure_reason=None, provider_payment_id=None, provider_order_id=None):
        count = 0
        for row in self.rows:
            if row.provider != provider:
                continue
            if provider_payment_id is not None and getattr(row, "provider_payment_id", None) != provider_payment_id:
                continue
            if provider_payment_id is None and getattr(row, "provider_order_id", None) != provider_order_id:
                continue
            row.status = status
            if failure_reason is not None:
                row.failure_reason = failure_reason
            count += 1
        return count

    async def get_pending_kiosk(self, bill_ref, now):
        for row in reversed(self.rows):
            if row.kiosk_bill_ref == bill_ref and row.status == "PENDING" and row.kiosk_expiry > now:
                return row
        return None

    async def list_for_user(self, user_id, limit=50, offset=0):
        mine = [r for r in reversed(self.rows) if r.user_id == user_id]
        return mine[offset: offset + limit]


class MemorySubscriptionRepo:
    def __init__(self):
        self.rows: Dict[tuple, SimpleNamespace] = {}

    async def get_for_user_provider(self, user_id, provider):
        return self.rows.get((user_id, provider))

    async def get_by_provider_subscription_id(self, provider, provider_subscription_id):
        for row in self.rows.values():
            if row.payment_provider == provider and row.provider_subscription_id == provider_subscription_id:
                return row
        return None

    async def latest_for_user(self, user_id):
        mine = [r for r in self.rows.values() if r.user_id == user_id]
        return max(mine, key=lambda r: r.updated_at) if mine else None

    async def upsert(self, *, user_id, provider, values):
        row = self.rows.get((user_id, provider))
        if row is None:
            row = SimpleNamespace(
                id=uuid.uuid4(), user_id=user_id, payment_provider=provider, plan="FREE", status="INCOMPLETE",
                current_period_start=None, current_period_end=None, cancel_at_period_end=False,
                provider_subscription_id=None, provider_customer_id=None,
            )
            self.rows[(user_id, provider)] = row
        for key, value in values.items():
            setattr(row, key, value)
        row.updated_at = time.monotonic()
        return row

    async def update(self, sub, *, plan=None, status=None, cancel_at_period_end=None):
        if plan is not None:
            sub.plan = plan
        if status is not None:
            sub.status = status
        if cancel_at_period_end is not None:
            sub.cancel_at_period_end = cancel_at_period_end
        sub.updated_at = time.monotonic()
        return sub


@pytest.fixture
def payment_repo():
    return MemoryPaymentRepo()


@pytest.fixture
def subscription_repo():
    return MemorySubscriptionRepo()


@pytest.fixture
def reconciler(payment_repo, subscription_repo):
    from paygate.engine.reconciliation import ReconciliationService
    return ReconciliationService(payment_repo, subscription_repo)


# ----------------------- fakes -----------------------

class FakeGateway:
    """
    In-memory gateway for orchestrator and route tests.

    - checkout: returns a predictable hosted URL, or a kiosk bill reference
      when `kiosk_reference` is set.
    - failures: `fail_with` raises on checkout; `delay` sleeps before answering.
    - webhooks: the signature `valid` accepts any JSON body.
    """

    def __init__(self, provider: PaymentProviderName, configured: bool = True):
        self.provider = provider
        self.configured = configured
        self.checkouts: List[CheckoutParams] = []
        self.kiosk_reference: Optional[str] = None
        self.fail_with: Optional[Exception] = None
        self.delay: float = 0.0
        self.closed = False

    def is_configured(self) -> bool:
        return self.configured

    async def create_checkout_session(self, params: CheckoutParams) -> CheckoutResult:
        import asyncio
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with
        self.checkouts.append(params)
        n = len(self.checkouts)
        if self.kiosk_reference:
            return CheckoutResult(
                session_id=f"order_{n}",
                checkout_url=f"{params.success_url}&kiosk_ref={self.kiosk_reference}",
                provider=self.provider,
                expires_at=datetime.now(tz=timezone.utc) + timedelta(hours=48),
                amount=60_000,
                currency="EGP",
                kiosk_bill_reference=self.kiosk_reference,
            )
        return CheckoutResult(
            session_id=f"{self.provider.value}_session_{n}",
            checkout_url=f"https://pay.test/{self.provider.value}/{n}",
            provider=self.provider,
            expires_at=datetime(2030, 1, 1, tzinfo=timezone.utc),
        )

    async def create_subscription(self, params: SubscriptionParams) -> SubscriptionResult:
        return SubscriptionResult(subscription_id="sub_fake", status=SubscriptionStatus.ACTIVE)

    async def get_subscription(self, subscription_id: str) -> Optional[SubscriptionResult]:
        return None

    async def cancel_subscription(self, subscription_id: str, immediate: bool = False) -> SubscriptionResult:
        return SubscriptionResult(subscription_id=subscription_id, status=SubscriptionStatus.CANCELED)

    async def resume_subscription(self, subscription_id: str) -> SubscriptionResult:
        return SubscriptionResult(subscription_id=subscription_id, status=SubscriptionStatus.ACTIVE)

    async def create_customer(self, params: CustomerParams) -> str:
        return f"cus_{params.user_id}"

    async def create_refund(self, params: RefundParams) -> RefundResult:
        return RefundResult(refund_id="re_fake", status="succeeded", amount=params.amount)

    def verify_webhook(self, raw_body: bytes, signature: str) -> WebhookVerification:
        return WebhookVerification(valid=False, error="fake gateway does not take webhooks")

    async def handle_webhook(self, event, reconciler) -> None:
        return None

    async def aclose(self) -> None:
        self.closed = True


class FakeStripeClient:
    """Stands in for `stripe.StripeClient`; records every call."""

    def __init__(self):
        self.calls: List[tuple] = []
        self.remote_subscriptions: Dict[str, Dict[str, Any]] = {}
        self.checkout = SimpleNamespace(sessions=SimpleNamespace(create=self._create_session))
        self.subscriptions = SimpleNamespace(
            create=self._create_subscription,
            retrieve=self._retrieve_subscription,
            cancel=self._cancel_subscription,
            update=self._update_subscription,
        )
        self.customers = SimpleNamespace(list=self._list_customers, create=self._create_customer)
        self.refunds = SimpleNamespace(create=self._create_refund)

    def _create_session(self, params):
        self.calls.append(("checkout.sessions.create", params))
        return {"id": "cs_test_1", "url": "https://checkout.stripe.test/cs_test_1", "expires_at": 1_900_000_000}

    def _create_subscription(self, params):
        self.calls.append(("subscriptions.create", params))
        return {"id": "sub_new", "status": "incomplete", "customer": params["customer"], "metadata": params["metadata"]}

    def _retrieve_subscription(self, subscription_id):
        self.calls.append(("subscriptions.retrieve", subscription_id))
        return self.remote_subscriptions.get(subscription_id, {"id": subscription_id, "status": "active", "metadata": {}})

    def _cancel_subscription(self, subscription_id):
        self.calls.append(("subscriptions.cancel", subscription_id))
        return {"id": subscription_id, "status": "canceled", "cancel_at_period_end": False}

    def _update_subscription(self, subscription_id, params):
        self.calls.append(("subscriptions.update", subscription_id, params))
        return {"id": subscription_id, "status": "active", **params}

    def _list_customers(self, params):
        self.calls.append(("customers.list", params))
        return {"data": []}

    def _create_customer(self, params):
        self.calls.append(("customers.create", params))
        return {"id": "cus_new"}

    def _create_refund(self, params):
        self.calls.append(("refunds.create", params))
        return {"id": "re_1", "status": "succeeded", "amount": params.get("amount")}


@pytest.fixture
def fake_stripe_client():
    return FakeStripeClient()


# ----------------------- signing helpers -----------------------

def stripe_signature_header(payload: bytes, secret: str = "whsec_test", ts: Optional[int] = None) -> str:
    ts = int(time.time()) if ts is None else ts
    sig = hmac.new(secret.encode(), f"{ts}.".encode() + payload, hashlib.sha256).hexdigest()
    return f"t={ts},v1={sig}"


def paddle_signature_header(payload: bytes, secret: str = "pdl_secret", ts: Optional[int] = None) -> str:
    ts = int(time.time()) if ts is None else ts
    sig = hmac.new(secret.encode(), f"{ts}:".encode() + payload, hashlib.sha256).hexdigest()
    return f"ts={ts};h1={sig}"


def paytabs_signature(payload: bytes, server_key: str = "SKTEST") -> str:
    return hmac.new(server_key.encode(), payload, hashlib.sha256).hexdigest()


def paymob_signature(obj: Dict[str, Any], secret: str = "paymob_hmac") -> str:
    from paygate.payments.paymob_provider import hmac_message
    return hmac.new(secret.encode(), hmac_message(obj).encode(), hashlib.sha512).hexdigest()


def body(payload: Dict[str, Any]) -> bytes:
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


@pytest.fixture
def sign():
    return SimpleNamespace(
        stripe=stripe_signature_header,
        paddle=paddle_signature_header,
        paytabs=paytabs_signature,
        paymob=paymob_signature,
        body=body,
    )


# ----------------------- API -----------------------

@pytest.fixture
def gateways(settings, fake_stripe_client):
    """Real adapters for every provider; Stripe talks to the recording fake client."""
    from paygate.payments.paddle_provider import PaddlePaymentProvider
    from paygate.payments.paymob_provider import PaymobPaymentProvider
    from paygate.payments.paytabs_provider import PayTabsPaymentProvider
    from paygate.payments.stripe_provider import StripePaymentProvider

    return {
        PaymentProviderName.STRIPE: StripePaymentProvider(settings, client=fake_stripe_client),
        PaymentProviderName.PAYMOB: PaymobPaymentProvider(settings),
        PaymentProviderName.PAYTABS: PayTabsPaymentProvider(settings),
        PaymentProviderName.PADDLE: PaddlePaymentProvider(settings),
    }


@pytest.fixture
async def client(session_factory, gateways):
    from paygate.core.deps import get_db, get_gateway_factory
    from paygate.main import app
    from paygate.payments.factory import GatewayFactory

    async def _get_db():
        async with session_factory() as session:
            yield session

    factory = GatewayFactory(gateways)
    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_gateway_factory] = lambda: factory
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers() -> Dict[str, str]:
    token = mint_dev_token(sub="user-1", email="user1@example.com")
    return {"Authorization": f"Bearer {token}"}


def make_fake_gateway(provider: PaymentProviderName, configured: bool = True) -> FakeGateway:
    return FakeGateway(provider, configured=configured)


@pytest.fixture
def fake_gateway_factory():
    return make_fake_gateway
