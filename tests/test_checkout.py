import pytest

from paygate.core.errors import (
    CheckoutFailed,
    GatewayNotConfigured,
    ProviderAPIError,
    ProviderTimeout,
    Unauthorized,
    ValidationError,
)
from paygate.core.security import SessionUser
from paygate.engine.checkout import CheckoutOrchestrator
from paygate.payments.factory import GatewayFactory
from paygate.payments.types import PaymentProviderName as P

USER = SessionUser(id="user-1", email="user1@example.com")


@pytest.fixture
def fakes(fake_gateway_factory):
    return {p: fake_gateway_factory(p) for p in P}


@pytest.fixture
def orchestrator(fakes, reconciler, settings):
    return CheckoutOrchestrator(GatewayFactory(fakes), reconciler, settings)


# ----------------------- orchestrator -----------------------

async def test_requires_user(orchestrator):
    with pytest.raises(Unauthorized):
        await orchestrator.create_checkout(None, {"planId": "PRO"})
    with pytest.raises(Unauthorized):
        await orchestrator.create_checkout(SessionUser(id="u", email=""), {"planId": "PRO"})


@pytest.mark.parametrize("payload,field", [
    ({"planId": "FREE"}, "planId"),
    ({"planId": "PRO", "billingCycle": "weekly"}, "billingCycle"),
    ({"planId": "PRO", "countryCode": "EGY"}, "countryCode"),
    ({"planId": "PRO", "provider": "paypal"}, "provider"),
    ({}, "planId"),
])
async def test_validation_details(orchestrator, payload, field):
    with pytest.raises(ValidationError) as exc:
        await orchestrator.create_checkout(USER, payload)
    body = exc.value.to_body()
    assert body["code"] == "VALIDATION_ERROR"
    assert field in [d["field"] for d in body["details"]]


async def test_region_routing_and_urls(orchestrator, fakes):
    result = await orchestrator.create_checkout(USER, {"planId": "pro", "countryCode": "eg"})
    assert result.provider == "paymob"
    params = fakes[P.PAYMOB].checkouts[0]
    assert params.success_url == "https://app.test/dashboard?payment=success&provider=paymob"
    assert params.cancel_url == "https://app.test/pricing?payment=cancelled&provider=paymob"
    assert result.priceDisplay == "$12/mo"


async def test_unconfigured_explicit_provider(orchestrator, fakes):
    fakes[P.PADDLE].configured = False
    with pytest.raises(GatewayNotConfigured) as exc:
        await orchestrator.create_checkout(USER, {"planId": "PRO", "provider": "paddle"})
    assert exc.value.to_body()["provider"] == "paddle"


@pytest.mark.parametrize("error", [ProviderAPIError("stripe", "card_declined: raw detail"), RuntimeError("boom")])
async def test_provider_errors_are_generic(orchestrator, fakes, error):
    fakes[P.STRIPE].fail_with = error
    with pytest.raises(CheckoutFailed) as exc:
        await orchestrator.create_checkout(USER, {"planId": "PRO"})
    assert "raw detail" not in exc.value.message
    assert exc.value.code == "CHECKOUT_FAILED"


async def test_provider_timeout(fakes, reconciler, settings):
    fakes[P.STRIPE].delay = 0.5
    fast = settings.model_copy(update={"PROVIDER_TIMEOUT_SECONDS": 0.05})
    orchestrator = CheckoutOrchestrator(GatewayFactory(fakes), reconciler, fast)
    with pytest.raises(ProviderTimeout):
        await orchestrator.create_checkout(USER, {"planId": "PRO"})


async def test_kiosk_checkout_records_pending_payment(orchestrator, fakes, payment_repo):
    fakes[P.PAYMOB].kiosk_reference = "BILL123"
    result = await orchestrator.create_checkout(USER, {"planId": "PRO", "countryCode": "EG", "paymentMethod": "kiosk"})
    assert result.kioskReference == "BILL123"
    [row] = payment_repo.rows
    assert (row.status, row.payment_method, row.kiosk_bill_ref, row.amount) == ("PENDING", "kiosk", "BILL123", 60000)


# ----------------------- route -----------------------

async def test_route_rejects_anonymous_before_validation(client):
    resp = await client.post("/api/payment/checkout", json={"planId": "NOPE"})
    assert resp.status_code == 401
    assert resp.json()["code"] == "UNAUTHORIZED"


async def test_route_validation_error(client, auth_headers):
    resp = await client.post("/api/payment/checkout", json={"planId": "FREE"}, headers=auth_headers)
    assert resp.status_code == 400
    assert resp.json()["code"] == "VALIDATION_ERROR"

    resp = await client.post("/api/payment/checkout", content=b"{not json", headers=auth_headers)
    assert resp.status_code == 400


async def test_route_yearly_stripe_checkout(client, auth_headers, fake_stripe_client):
    resp = await client.post(
        "/api/payment/checkout",
        json={"planId": "PRO", "billingCycle": "yearly", "countryCode": "US"},
        headers=auth_headers,
    )
    assert resp.status_code == 200, resp.text
    data = resp.json()
    assert data["success"] is True
    assert data["provider"] == "stripe"
    assert data["sessionId"] == "cs_test_1"
    assert data["priceDisplay"] == "$10/mo"
    assert data["expiresAt"].startswith("2030-")

    _, params = fake_stripe_client.calls[0]
    assert params["line_items"][0]["price"] == "price_pro_y"
    assert params["customer_email"] == "user1@example.com"


async def test_route_invalid_token(client):
    resp = await client.post("/api/payment/checkout", json={"planId": "PRO"}, headers={"Authorization": "Bearer junk"})
    assert resp.status_code == 401
