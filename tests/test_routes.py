"""
Integration tests for the HTTP surface: auth, envelopes, trial and payment
routes and the Stripe webhook sink.
"""
from datetime import timedelta

import httpx
import jwt
import pytest
import stripe

from auth_utils import create_jwt
from config.settings import PLAN_BETA_MONTHLY, PLAN_REGULAR_MONTHLY
from database import get_db
from main import app
from services.payment_service import get_stripe_client


@pytest.fixture
async def async_client(session_factory, fake_stripe):
    """
    Async HTTP client against the app with the database and Stripe overridden.
    """
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_stripe_client] = lambda: fake_stripe

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


def auth_headers(user_id="user-1", email="one@example.com", **kwargs):
    return {"Authorization": f"Bearer {create_jwt(user_id, email, **kwargs)}"}


@pytest.mark.asyncio
async def test_health(async_client):
    response = await async_client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["data"]["status"] == "healthy"
    assert response.headers["X-Content-Type-Options"] == "nosniff"


@pytest.mark.asyncio
async def test_unknown_route_uses_error_envelope(async_client):
    response = await async_client.get("/api/nowhere")

    assert response.status_code == 404
    assert response.json() == {"success": False, "data": None, "error": "Route not found", "message": "Route not found"}


@pytest.mark.asyncio
@pytest.mark.parametrize("headers", [
    {},
    {"Authorization": "Token abc"},
    {"Authorization": "Bearer not-a-jwt"},
])
async def test_protected_route_rejects_bad_credentials(async_client, headers):
    response = await async_client.get("/api/trial/status", headers=headers)

    assert response.status_code == 401
    assert response.json()["success"] is False


@pytest.mark.asyncio
async def test_expired_token_is_rejected(async_client):
    headers = auth_headers(expires_in=timedelta(minutes=-5))

    response = await async_client.post("/api/trial/create", headers=headers)

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_token_signed_with_other_secret_is_rejected(async_client):
    token = jwt.encode(
        {"sub": "user-1", "aud": "authenticated", "exp": 9_999_999_999},
        "some-other-project-secret-0123456789abcdef",
        algorithm="HS256",
    )

    response = await async_client.get("/api/trial/status", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_trial_lifecycle(async_client):
    headers = auth_headers()

    missing = await async_client.get("/api/trial/status", headers=headers)
    assert missing.status_code == 404

    created = await async_client.post("/api/trial/create", headers=headers)
    assert created.status_code == 200
    trial = created.json()["data"]
    assert trial["userId"] == "user-1"
    assert trial["isBetaUser"] is True
    assert trial["betaUserNumber"] == 1

    duplicate = await async_client.post("/api/trial/create", headers=headers)
    assert duplicate.status_code == 400
    assert duplicate.json()["error"] == "User already has an active trial"

    status = await async_client.get("/api/trial/status", headers=headers)
    assert status.status_code == 200
    assert status.json()["data"]["isInTrial"] is True
    assert status.json()["data"]["trialDaysRemaining"] == 14
    assert status.json()["data"]["shouldShowPayment"] is False

    ended = await async_client.post("/api/trial/end", headers=headers)
    assert ended.status_code == 200
    assert (await async_client.get("/api/trial/status", headers=headers)).status_code == 404


@pytest.mark.asyncio
async def test_beta_count_is_public(async_client):
    await async_client.post("/api/trial/create", headers=auth_headers("user-1", "one@example.com"))
    await async_client.post("/api/trial/create", headers=auth_headers("user-2", "two@example.com"))

    response = await async_client.get("/api/trial/beta-count")

    assert response.status_code == 200
    assert response.json()["data"] == {"betaUserCount": 2, "maxBetaUsers": 100}


@pytest.mark.asyncio
async def test_beta_eligibility_and_status(async_client):
    headers = auth_headers()
    await async_client.post("/api/trial/create", headers=headers)

    eligibility = await async_client.get("/api/trial/beta-eligibility", headers=headers)
    beta_status = await async_client.get("/api/payment/beta-status", headers=headers)

    assert eligibility.json()["data"]["canGetBetaPricing"] is True
    assert beta_status.json()["data"]["isBetaUser"] is True
    assert beta_status.json()["data"]["betaUserCount"] == 1


@pytest.mark.asyncio
async def test_active_trials_and_cleanup(async_client):
    headers = auth_headers()
    await async_client.post("/api/trial/create", headers=headers)

    active = await async_client.get("/api/trial/active", headers=headers)
    cleanup = await async_client.post("/api/trial/cleanup", headers=headers)

    assert [t["userId"] for t in active.json()["data"]] == ["user-1"]
    assert cleanup.json()["data"] == {"cleanedCount": 0}


@pytest.mark.asyncio
async def test_plans_are_public(async_client):
    response = await async_client.get("/api/payment/plans")

    assert response.status_code == 200
    data = response.json()["data"]
    assert [plan["id"] for plan in data["plans"]] == [
        "beta-monthly", "beta-yearly", "regular-monthly", "regular-yearly",
    ]
    assert data["plans"][0]["price"] == 9.99
    assert data["plans"][0]["isBeta"] is True
    assert data["betaUserCount"] == 0
    assert data["maxBetaUsers"] == 100


@pytest.mark.asyncio
async def test_payment_health(async_client):
    response = await async_client.get("/api/payment/health")

    assert response.status_code == 200
    assert response.json()["data"]["webhookConfigured"] is True


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [{}, {"planId": PLAN_BETA_MONTHLY}, {"paymentMethodId": "pm_card_visa"}])
async def test_create_subscription_requires_plan_and_payment_method(async_client, fake_stripe, body):
    response = await async_client.post("/api/payment/subscription", json=body, headers=auth_headers())

    assert response.status_code == 400
    assert response.json()["error"] == "Plan ID and payment method ID are required"
    fake_stripe.Subscription.create.assert_not_called()


@pytest.mark.asyncio
async def test_create_subscription_returns_applied_plan(async_client):
    headers = auth_headers()
    await async_client.post("/api/trial/create", headers=headers)

    response = await async_client.post(
        "/api/payment/subscription",
        json={"planId": PLAN_REGULAR_MONTHLY, "paymentMethodId": "pm_card_visa"},
        headers=headers,
    )

    assert response.status_code == 200
    assert response.json()["data"]["planId"] == PLAN_BETA_MONTHLY
    assert response.json()["data"]["status"] == "active"

    fetched = await async_client.get("/api/payment/subscription", headers=headers)
    assert fetched.json()["data"]["subscription"]["planId"] == PLAN_BETA_MONTHLY
    assert fetched.json()["data"]["isBetaUser"] is True


@pytest.mark.asyncio
async def test_create_subscription_with_unknown_plan(async_client):
    response = await async_client.post(
        "/api/payment/subscription",
        json={"planId": "platinum", "paymentMethodId": "pm_card_visa"},
        headers=auth_headers(),
    )

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_stripe_outage_is_reported_as_unavailable(async_client, fake_stripe):
    fake_stripe.Customer.list.side_effect = stripe.APIConnectionError("connection refused")

    response = await async_client.post(
        "/api/payment/subscription",
        json={"planId": PLAN_BETA_MONTHLY, "paymentMethodId": "pm_card_visa"},
        headers=auth_headers(),
    )

    assert response.status_code == 503
    assert response.json()["success"] is False


@pytest.mark.asyncio
async def test_subscription_is_null_without_customer(async_client):
    response = await async_client.get("/api/payment/subscription", headers=auth_headers())

    assert response.status_code == 200
    assert response.json()["data"] == {"subscription": None, "isBetaUser": False}


@pytest.mark.asyncio
async def test_update_and_cancel_without_subscription_are_not_found(async_client):
    headers = auth_headers()

    updated = await async_client.put("/api/payment/subscription", json={"cancelAtPeriodEnd": True}, headers=headers)
    canceled = await async_client.delete("/api/payment/subscription", headers=headers)

    assert updated.status_code == 404
    assert canceled.status_code == 404


@pytest.mark.asyncio
async def test_cancel_subscription(async_client, fake_stripe):
    headers = auth_headers()
    await async_client.post(
        "/api/payment/subscription",
        json={"planId": PLAN_BETA_MONTHLY, "paymentMethodId": "pm_card_visa"},
        headers=headers,
    )

    response = await async_client.delete("/api/payment/subscription", headers=headers)

    assert response.status_code == 200
    fake_stripe.Subscription.cancel.assert_called_once()


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [{}, {"amount": 0}, {"amount": -5}])
async def test_payment_intent_requires_positive_amount(async_client, body):
    response = await async_client.post("/api/payment/payment-intent", json=body, headers=auth_headers())

    assert response.status_code == 400
    assert response.json()["error"] == "Valid amount is required"


@pytest.mark.asyncio
async def test_payment_intent(async_client, fake_stripe):
    response = await async_client.post("/api/payment/payment-intent", json={"amount": 24.99}, headers=auth_headers())

    assert response.status_code == 200
    assert response.json()["data"]["amount"] == 24.99
    assert fake_stripe.PaymentIntent.create.call_args.kwargs["amount"] == 2499


@pytest.mark.asyncio
async def test_webhook_without_signature_is_rejected(async_client, fake_stripe):
    response = await async_client.post("/api/payment/webhook", content=b"{}")

    assert response.status_code == 400
    fake_stripe.Webhook.construct_event.assert_not_called()


@pytest.mark.asyncio
async def test_webhook_with_bad_signature_is_rejected(async_client, fake_stripe):
    fake_stripe.Webhook.construct_event.side_effect = stripe.SignatureVerificationError("bad signature", "t=1,v1=x")

    response = await async_client.post(
        "/api/payment/webhook", content=b"{}", headers={"Stripe-Signature": "t=1,v1=x"}
    )

    assert response.status_code == 400
    assert response.json()["error"] == "Invalid webhook signature"


@pytest.mark.asyncio
async def test_webhook_with_malformed_payload_is_rejected(async_client, fake_stripe):
    fake_stripe.Webhook.construct_event.side_effect = ValueError("not json")

    response = await async_client.post(
        "/api/payment/webhook", content=b"nope", headers={"Stripe-Signature": "t=1,v1=x"}
    )

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_verified_webhook_is_processed(async_client, fake_stripe):
    payload = b'{"id": "evt_1"}'
    fake_stripe.Webhook.construct_event.return_value = {
        "id": "evt_1",
        "type": "invoice.payment_succeeded",
        "data": {"object": {"id": "in_1"}},
    }

    response = await async_client.post(
        "/api/payment/webhook", content=payload, headers={"Stripe-Signature": "t=1,v1=x"}
    )

    assert response.status_code == 200
    assert response.json()["message"] == "Webhook processed successfully"
    fake_stripe.Webhook.construct_event.assert_called_once_with(payload, "t=1,v1=x", "whsec_test_secret")


@pytest.mark.asyncio
@pytest.mark.parametrize("raw_amount", [b"NaN", b"Infinity", b"-Infinity"])
async def test_payment_intent_rejects_non_finite_amount(async_client, fake_stripe, raw_amount):
    headers = {**auth_headers(), "Content-Type": "application/json"}

    response = await async_client.post(
        "/api/payment/payment-intent", content=b'{"amount": ' + raw_amount + b"}", headers=headers
    )

    assert response.status_code == 400
    assert response.json()["error"] == "Valid amount is required"
    fake_stripe.PaymentIntent.create.assert_not_called()
