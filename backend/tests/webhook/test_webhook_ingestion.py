"""Tests for webhook ingestion.

Covers:
- Signature check before any parsing
- Successful payments activate the subscription exactly once
- Non-success event types, unknown orders and deliveries without an order id are acknowledged
- Fields of the wrong type are rejected
- Flat and nested payload shapes
"""

import json
from datetime import timedelta

import pytest

from subscription_service.modules.subscription.exceptions import SignatureError, ValidationError
from subscription_service.modules.webhook.service import WebhookService, parse_event
from subscription_service.modules.webhook.signature import compute_signature

SECRET = "whsec_test_secret"
TIMESTAMP = "1772355600"


def signed(payload) -> tuple[bytes, str]:
    raw = json.dumps(payload).encode("utf-8")
    return raw, compute_signature(raw, TIMESTAMP, SECRET)


def success_payload(order_id: str, payment_id: int = 5114910) -> dict:
    return {
        "type": "PAYMENT_SUCCESS_WEBHOOK",
        "data": {
            "order": {"order_id": order_id, "order_amount": 6715},
            "payment": {
                "cf_payment_id": payment_id,
                "payment_status": "SUCCESS",
                "payment_amount": 6715,
            },
        },
    }


class TestParseEvent:
    """Tests for payload parsing."""

    def test_nested_shape(self) -> None:
        event = parse_event(success_payload("order_abc"))
        assert event.event_type == "PAYMENT_SUCCESS_WEBHOOK"
        assert event.order_id == "order_abc"
        assert event.payment_status == "SUCCESS"
        assert event.gateway_payment_id == "5114910"
        assert event.amount == 6715

    def test_flat_shape(self) -> None:
        event = parse_event({
            "type": "PAYMENT_SUCCESS_WEBHOOK",
            "data": {"order_id": "order_flat", "payment_status": "SUCCESS", "cf_payment_id": "p1"},
        })
        assert event.order_id == "order_flat"
        assert event.gateway_payment_id == "p1"

    def test_non_object_rejected(self) -> None:
        with pytest.raises(ValidationError):
            parse_event(["not", "an", "object"])
        with pytest.raises(ValidationError):
            parse_event({"type": "PAYMENT_SUCCESS_WEBHOOK", "data": "oops"})

    @pytest.mark.parametrize("data", [
        {"order_id": 42, "payment_status": "SUCCESS"},
        {"order_id": "order_x", "payment_status": 1},
        {"order": {"order_id": ["order_x"]}},
        {"order_id": "order_x", "payment_amount": "6715"},
    ])
    def test_wrong_field_types_rejected(self, data: dict) -> None:
        with pytest.raises(ValidationError):
            parse_event({"type": "PAYMENT_SUCCESS_WEBHOOK", "data": data})


class TestWebhookHandling:
    """Tests for WebhookService.handle."""

    @pytest.mark.asyncio
    async def test_invalid_signature_rejected_without_state_change(
        self, session, catalog, dispatcher, make_account, add_order, load_account, now
    ) -> None:
        account = await make_account()
        await add_order(account.id, "order_sig")
        raw, _ = signed(success_payload("order_sig"))

        service = WebhookService(session, catalog, dispatcher, secret=SECRET)
        with pytest.raises(SignatureError):
            await service.handle(raw, TIMESTAMP, "forged", now=now)

        stored = await load_account(account.id)
        assert stored.get_order("order_sig").status == "pending"
        assert stored.plan_status == "trialing"

    @pytest.mark.asyncio
    async def test_missing_headers_rejected(self, session, catalog, dispatcher, now) -> None:
        raw, signature = signed(success_payload("order_x"))
        service = WebhookService(session, catalog, dispatcher, secret=SECRET)
        with pytest.raises(SignatureError):
            await service.handle(raw, None, signature, now=now)
        with pytest.raises(SignatureError):
            await service.handle(raw, TIMESTAMP, None, now=now)

    @pytest.mark.asyncio
    async def test_malformed_json_is_validation_error(self, session, catalog, dispatcher, now) -> None:
        raw = b"{not json"
        signature = compute_signature(raw, TIMESTAMP, SECRET)
        service = WebhookService(session, catalog, dispatcher, secret=SECRET)
        with pytest.raises(ValidationError):
            await service.handle(raw, TIMESTAMP, signature, now=now)

    @pytest.mark.asyncio
    async def test_success_activates_subscription(
        self, session, catalog, dispatcher, channel, make_account, add_order, load_account, now
    ) -> None:
        account = await make_account(email="payer@example.test")
        await add_order(account.id, "order_paid", plan="professional", billing_cycle="monthly")
        raw, signature = signed(success_payload("order_paid"))

        service = WebhookService(session, catalog, dispatcher, secret=SECRET)
        assert await service.handle(raw, TIMESTAMP, signature, now=now) == "processed"
        await dispatcher.drain()

        stored = await load_account(account.id)
        order = stored.get_order("order_paid")
        assert order.status == "success"
        assert order.gateway_payment_id == "5114910"
        assert order.paid_at == now
        assert stored.plan == "professional"
        assert stored.plan_status == "active"
        assert stored.plan_expiry == now + timedelta(days=30)
        assert channel.subjects_for("payer@example.test") == ["Welcome to Professional"]

    @pytest.mark.asyncio
    async def test_redelivery_is_idempotent(
        self, session_factory, catalog, dispatcher, channel, make_account, add_order, load_account, now
    ) -> None:
        account = await make_account(email="twice@example.test")
        await add_order(account.id, "order_twice", billing_cycle="yearly", amount=67150)
        raw, signature = signed(success_payload("order_twice"))

        async with session_factory() as first:
            await WebhookService(first, catalog, dispatcher, secret=SECRET).handle(
                raw, TIMESTAMP, signature, now=now
            )
        after_first = await load_account(account.id)

        later = now + timedelta(hours=2)
        async with session_factory() as second:
            result = await WebhookService(second, catalog, dispatcher, secret=SECRET).handle(
                raw, TIMESTAMP, signature, now=later
            )
        await dispatcher.drain()

        after_second = await load_account(account.id)
        assert result == "processed"
        assert after_second.plan_expiry == after_first.plan_expiry == now + timedelta(days=365)
        assert after_second.get_order("order_twice").paid_at == now
        assert len(channel.subjects_for("twice@example.test")) == 1

    @pytest.mark.asyncio
    async def test_other_event_types_ignored(
        self, session, catalog, dispatcher, make_account, add_order, load_account, now
    ) -> None:
        account = await make_account()
        await add_order(account.id, "order_fail_evt")
        payload = success_payload("order_fail_evt")
        payload["type"] = "PAYMENT_FAILED_WEBHOOK"
        payload["data"]["payment"]["payment_status"] = "FAILED"
        raw, signature = signed(payload)

        service = WebhookService(session, catalog, dispatcher, secret=SECRET)
        assert await service.handle(raw, TIMESTAMP, signature, now=now) == "ignored"

        stored = await load_account(account.id)
        assert stored.get_order("order_fail_evt").status == "pending"

    @pytest.mark.asyncio
    async def test_unknown_order_acknowledged(self, session, catalog, dispatcher, now) -> None:
        raw, signature = signed(success_payload("order_nobody"))
        service = WebhookService(session, catalog, dispatcher, secret=SECRET)
        assert await service.handle(raw, TIMESTAMP, signature, now=now) == "orphaned"

    @pytest.mark.asyncio
    async def test_missing_order_id_acknowledged(self, session, catalog, dispatcher, now) -> None:
        raw, signature = signed({"type": "PAYMENT_SUCCESS_WEBHOOK", "data": {}})
        service = WebhookService(session, catalog, dispatcher, secret=SECRET)
        assert await service.handle(raw, TIMESTAMP, signature, now=now) == "orphaned"

    @pytest.mark.asyncio
    async def test_numeric_payment_status_rejected(
        self, session, catalog, dispatcher, make_account, add_order, load_account, now
    ) -> None:
        account = await make_account()
        await add_order(account.id, "order_numeric")
        raw, signature = signed({
            "type": "PAYMENT_SUCCESS_WEBHOOK",
            "data": {"order_id": "order_numeric", "payment_status": 1},
        })
        service = WebhookService(session, catalog, dispatcher, secret=SECRET)

        with pytest.raises(ValidationError):
            await service.handle(raw, TIMESTAMP, signature, now=now)

        stored = await load_account(account.id)
        assert stored.get_order("order_numeric").status == "pending"

    @pytest.mark.asyncio
    async def test_late_success_after_failure_is_noop(
        self, session, catalog, dispatcher, make_account, add_order, load_account, now
    ) -> None:
        account = await make_account()
        await add_order(account.id, "order_failed_first", status="failed")
        raw, signature = signed(success_payload("order_failed_first"))

        service = WebhookService(session, catalog, dispatcher, secret=SECRET)
        assert await service.handle(raw, TIMESTAMP, signature, now=now) == "processed"

        stored = await load_account(account.id)
        assert stored.get_order("order_failed_first").status == "failed"
        assert stored.plan_status == "trialing"
