"""End-to-end tests for the payments API.

Drives the FastAPI app over ASGI with the database, gateway and notification
channel replaced by test doubles:
- Checkout, redirect verification and webhook for one purchase
- Authentication and admin checks
- Error responses for invalid input, signatures and gateway failures
"""

import json
import time
from datetime import datetime, timedelta

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_service.core.database import get_session
from subscription_service.main import app
from subscription_service.modules.auth.jwt import create_access_token
from subscription_service.modules.notification.dispatcher import get_dispatcher
from subscription_service.modules.payment_gateway.exceptions import GatewayError
from subscription_service.modules.payment_gateway.registry import get_gateway
from subscription_service.modules.plans.catalog import get_catalog
from subscription_service.modules.webhook.signature import compute_signature

API = "/api/v1/payments"
SECRET = "whsec_test_secret"


def auth(account) -> dict:
    return {"Authorization": f"Bearer {create_access_token(account.id)}"}


def webhook_request(payload: dict) -> tuple[bytes, dict]:
    raw = json.dumps(payload).encode("utf-8")
    timestamp = str(int(time.time()))
    return raw, {
        "x-webhook-timestamp": timestamp,
        "x-webhook-signature": compute_signature(raw, timestamp, SECRET),
        "Content-Type": "application/json",
    }


@pytest.fixture
def now() -> datetime:
    # Requests run on the wall clock
    return datetime.utcnow()


@pytest_asyncio.fixture
async def client(session_factory, catalog, gateway, dispatcher):
    async def override_session():
        async with session_factory() as request_session:
            yield request_session

    app.dependency_overrides[get_session] = override_session
    app.dependency_overrides[get_catalog] = lambda: catalog
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as test_client:
        yield test_client

    await dispatcher.drain()
    app.dependency_overrides.clear()


class TestPurchaseFlow:
    """Checkout through activation."""

    @pytest.mark.asyncio
    async def test_checkout_verify_and_webhook(
        self, client, gateway, channel, dispatcher, make_account, load_account
    ) -> None:
        account = await make_account(email="flow@example.test")

        plans = await client.get(f"{API}/plans", headers=auth(account))
        assert plans.status_code == 200
        assert plans.json()["current_plan"] == "starter"

        created = await client.post(
            f"{API}/create-order",
            json={"plan_id": "professional", "billing_cycle": "monthly"},
            headers=auth(account),
        )
        assert created.status_code == 200
        order_id = created.json()["order_id"]
        assert created.json()["amount"] == 6715
        assert created.json()["payment_session_id"] == f"session_{order_id}"

        # Redirect comes back before the customer finished paying
        pending = await client.post(f"{API}/verify", json={"order_id": order_id}, headers=auth(account))
        assert pending.status_code == 200
        assert pending.json()["success"] is False
        assert pending.json()["order_status"] == "pending"

        raw, headers = webhook_request({
            "type": "PAYMENT_SUCCESS_WEBHOOK",
            "data": {
                "order": {"order_id": order_id},
                "payment": {"cf_payment_id": 991, "payment_status": "SUCCESS"},
            },
        })
        hook = await client.post(f"{API}/webhook", content=raw, headers=headers)
        assert hook.status_code == 200
        assert hook.json()["success"] is True

        # A late verify answers from local state
        gateway.statuses[order_id] = "SUCCESS"
        verified = await client.post(f"{API}/verify", json={"order_id": order_id}, headers=auth(account))
        assert verified.json()["success"] is True
        assert verified.json()["subscription"]["plan"] == "professional"
        assert gateway.fetched == [order_id]

        subscription = await client.get(f"{API}/subscription", headers=auth(account))
        body = subscription.json()["subscription"]
        assert body["status"] == "active"
        assert body["days_remaining"] == 30

        history = await client.get(f"{API}/history", headers=auth(account))
        assert [p["status"] for p in history.json()["payments"]] == ["success"]

        await dispatcher.drain()
        assert channel.subjects_for("flow@example.test") == ["Welcome to Professional"]

    @pytest.mark.asyncio
    async def test_starter_activates_immediately(self, client, gateway, make_account) -> None:
        account = await make_account()
        response = await client.post(
            f"{API}/create-order",
            json={"plan_id": "starter", "billing_cycle": "monthly"},
            headers=auth(account),
        )
        assert response.status_code == 200
        assert response.json()["order_id"] is None
        assert response.json()["subscription"]["status"] == "active"
        assert gateway.created == []

    @pytest.mark.asyncio
    async def test_cancel(self, client, make_account) -> None:
        account = await make_account(
            plan="professional", plan_status="active", plan_expiry=datetime.utcnow() + timedelta(days=9)
        )
        response = await client.post(f"{API}/cancel", headers=auth(account))
        assert response.status_code == 200
        assert response.json()["subscription"]["status"] == "cancelled"
        assert response.json()["subscription"]["plan"] == "professional"


class TestErrorResponses:
    """Service errors map to HTTP status codes."""

    @pytest.mark.asyncio
    async def test_missing_token(self, client) -> None:
        response = await client.get(f"{API}/subscription")
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_invalid_plan(self, client, make_account) -> None:
        account = await make_account()
        response = await client.post(
            f"{API}/create-order",
            json={"plan_id": "platinum", "billing_cycle": "monthly"},
            headers=auth(account),
        )
        assert response.status_code == 400
        assert response.json() == {
            "success": False,
            "message": "Invalid plan: platinum",
            "code": "validation_error",
        }

    @pytest.mark.asyncio
    async def test_gateway_failure(self, client, gateway, make_account, load_account) -> None:
        account = await make_account()
        gateway.create_error = GatewayError("timeout", "Cashfree create_order timed out", retriable=True)

        response = await client.post(
            f"{API}/create-order",
            json={"plan_id": "enterprise", "billing_cycle": "yearly"},
            headers=auth(account),
        )
        assert response.status_code == 504
        assert response.json()["code"] == "timeout"
        stored = await load_account(account.id)
        assert [o.status for o in stored.orders] == ["failed"]

    @pytest.mark.asyncio
    async def test_verify_unknown_order(self, client, make_account) -> None:
        account = await make_account()
        response = await client.post(
            f"{API}/verify", json={"order_id": "order_unknown"}, headers=auth(account)
        )
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_webhook_bad_signature(self, client) -> None:
        raw, headers = webhook_request({"type": "PAYMENT_SUCCESS_WEBHOOK", "data": {"order_id": "x"}})
        headers["x-webhook-signature"] = "bm90LXRoZS1zaWduYXR1cmU="
        response = await client.post(f"{API}/webhook", content=raw, headers=headers)
        assert response.status_code == 401
        assert response.json()["code"] == "invalid_signature"

    @pytest.mark.asyncio
    async def test_database_failure_is_generic(self, client, monkeypatch) -> None:
        async def failing_execute(self, *args, **kwargs):
            raise OperationalError(
                "SELECT accounts.id, accounts.email FROM accounts JOIN payment_orders",
                {},
                Exception("password authentication failed for user billing"),
            )

        monkeypatch.setattr(AsyncSession, "execute", failing_execute)
        raw, headers = webhook_request({
            "type": "PAYMENT_SUCCESS_WEBHOOK",
            "data": {"order_id": "order_db_down", "payment_status": "SUCCESS"},
        })
        response = await client.post(f"{API}/webhook", content=raw, headers=headers)

        assert response.status_code == 503
        assert response.json() == {
            "success": False,
            "message": "Service temporarily unavailable",
            "code": "persistence_error",
        }
        assert "SELECT" not in response.text
        assert "password" not in response.text

    @pytest.mark.asyncio
    async def test_webhook_without_order_id_acknowledged(self, client) -> None:
        raw, headers = webhook_request({"type": "PAYMENT_SUCCESS_WEBHOOK", "data": {}})
        response = await client.post(f"{API}/webhook", content=raw, headers=headers)
        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_webhook_numeric_status_is_bad_request(self, client) -> None:
        raw, headers = webhook_request({
            "type": "PAYMENT_SUCCESS_WEBHOOK",
            "data": {"order_id": "order_numeric", "payment_status": 1},
        })
        response = await client.post(f"{API}/webhook", content=raw, headers=headers)
        assert response.status_code == 400
        assert response.json()["code"] == "validation_error"

    @pytest.mark.asyncio
    async def test_webhook_unknown_order_acknowledged(self, client) -> None:
        raw, headers = webhook_request({
            "type": "PAYMENT_SUCCESS_WEBHOOK",
            "data": {"order_id": "order_elsewhere", "payment_status": "SUCCESS"},
        })
        response = await client.post(f"{API}/webhook", content=raw, headers=headers)
        assert response.status_code == 200


class TestAdminEndpoints:
    """Trial extension is limited to admins."""

    @pytest.mark.asyncio
    async def test_extend_trial(self, client, make_account) -> None:
        admin = await make_account(role="admin")
        customer = await make_account()

        forbidden = await client.post(
            f"{API}/extend-trial",
            json={"user_id": str(admin.id), "days": 3},
            headers=auth(customer),
        )
        assert forbidden.status_code == 403

        response = await client.post(
            f"{API}/extend-trial",
            json={"user_id": str(customer.id), "days": 3},
            headers=auth(admin),
        )
        assert response.status_code == 200
        trial = await client.get(f"{API}/trial-status", headers=auth(customer))
        assert trial.json()["is_in_trial"] is True
