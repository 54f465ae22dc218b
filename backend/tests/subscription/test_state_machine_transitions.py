"""Tests for the subscription state machine.

Covers:
- Success and failure outcomes applied to pending orders
- Idempotence of repeated outcomes
- Renewal computed from the payment time
- Concurrent resolution of the same order
- Free tier, cancellation, expiry and trial end transitions
"""

from datetime import timedelta

import pytest
from hypothesis import given, settings, strategies as st

from subscription_service.modules.payment_gateway.interface import (
    GatewayPaymentStatus,
    PaymentOutcome,
    outcome_from_status,
)
from subscription_service.modules.subscription.exceptions import (
    ConcurrentUpdateError,
    NotFoundError,
    ValidationError,
)
from subscription_service.modules.subscription.state_machine import SubscriptionStateMachine


def paid(order_id: str, status: str = "SUCCESS") -> GatewayPaymentStatus:
    return GatewayPaymentStatus(order_id=order_id, payment_status=status, gateway_payment_id="pay_1")


class TestOutcomeMapping:
    """Gateway statuses map to three outcomes."""

    @pytest.mark.parametrize("status", ["SUCCESS", "success"])
    def test_success(self, status: str) -> None:
        assert outcome_from_status(status) == PaymentOutcome.SUCCESS

    @pytest.mark.parametrize("status", ["FAILED", "USER_DROPPED", "CANCELLED", "VOID"])
    def test_terminal_failures(self, status: str) -> None:
        assert outcome_from_status(status) == PaymentOutcome.FAILED

    @given(status=st.text(max_size=20))
    @settings(max_examples=100)
    def test_everything_else_is_pending(self, status: str) -> None:
        """*For any* status that is neither SUCCESS nor a terminal failure,
        the outcome SHALL be pending.
        """
        if status.upper() in {"SUCCESS", "FAILED", "USER_DROPPED", "CANCELLED", "VOID"}:
            return
        assert outcome_from_status(status) == PaymentOutcome.PENDING

    def test_missing_status_is_pending(self) -> None:
        assert outcome_from_status(None) == PaymentOutcome.PENDING


class TestApplyOutcome:
    """Tests for SubscriptionStateMachine.apply_outcome."""

    @pytest.mark.asyncio
    async def test_success_activates_plan(
        self, session, catalog, dispatcher, make_account, add_order, load_account, now
    ) -> None:
        account = await make_account()
        await add_order(account.id, "order_ok", plan="enterprise", billing_cycle="yearly", amount=169150)

        machine = SubscriptionStateMachine(session, catalog, dispatcher)
        result = await machine.apply_outcome("order_ok", paid("order_ok"), now=now)
        await dispatcher.drain()

        assert result.applied is True
        assert result.order_status == "success"
        assert result.snapshot.plan == "enterprise"
        assert result.snapshot.status == "active"

        stored = await load_account(account.id)
        order = stored.get_order("order_ok")
        assert order.status == "success"
        assert order.paid_at == now
        assert stored.plan_expiry - order.paid_at == timedelta(days=365)

    @pytest.mark.asyncio
    async def test_second_success_is_noop(
        self, session_factory, catalog, dispatcher, channel, make_account, add_order, load_account, now
    ) -> None:
        account = await make_account(email="idem@example.test")
        await add_order(account.id, "order_idem")

        async with session_factory() as first:
            await SubscriptionStateMachine(first, catalog, dispatcher).apply_outcome(
                "order_idem", paid("order_idem"), now=now
            )
        async with session_factory() as second:
            result = await SubscriptionStateMachine(second, catalog, dispatcher).apply_outcome(
                "order_idem", paid("order_idem"), now=now + timedelta(days=3)
            )
        await dispatcher.drain()

        assert result.applied is False
        assert result.order_status == "success"
        stored = await load_account(account.id)
        assert stored.plan_expiry == now + timedelta(days=30)
        assert channel.subjects_for("idem@example.test") == ["Welcome to Professional"]

    @pytest.mark.asyncio
    async def test_failure_only_touches_order(
        self, session, catalog, dispatcher, channel, make_account, add_order, load_account, now
    ) -> None:
        account = await make_account()
        await add_order(account.id, "order_dropped")

        machine = SubscriptionStateMachine(session, catalog, dispatcher)
        result = await machine.apply_outcome("order_dropped", paid("order_dropped", "USER_DROPPED"), now=now)
        await dispatcher.drain()

        assert result.applied is True
        assert result.order_status == "failed"
        stored = await load_account(account.id)
        order = stored.get_order("order_dropped")
        assert order.status == "failed"
        assert order.error_code == "USER_DROPPED"
        assert stored.plan == "starter"
        assert stored.plan_status == "trialing"
        assert stored.plan_expiry is None
        assert channel.sent == []

    @pytest.mark.asyncio
    async def test_pending_status_changes_nothing(
        self, session, catalog, dispatcher, make_account, add_order, load_account, now
    ) -> None:
        account = await make_account()
        await add_order(account.id, "order_waiting")

        machine = SubscriptionStateMachine(session, catalog, dispatcher)
        result = await machine.apply_outcome("order_waiting", paid("order_waiting", "ACTIVE"), now=now)

        assert result.applied is False
        assert result.order_status == "pending"
        stored = await load_account(account.id)
        assert stored.get_order("order_waiting").status == "pending"

    @pytest.mark.asyncio
    async def test_failed_order_never_resurrected(
        self, session, catalog, dispatcher, make_account, add_order, load_account, now
    ) -> None:
        account = await make_account()
        await add_order(account.id, "order_dead", status="failed")

        machine = SubscriptionStateMachine(session, catalog, dispatcher)
        result = await machine.apply_outcome("order_dead", paid("order_dead"), now=now)

        assert result.applied is False
        assert result.order_status == "failed"
        stored = await load_account(account.id)
        assert stored.plan_status == "trialing"

    @pytest.mark.asyncio
    async def test_unknown_order_raises(self, session, catalog, dispatcher, now) -> None:
        machine = SubscriptionStateMachine(session, catalog, dispatcher)
        with pytest.raises(NotFoundError):
            await machine.apply_outcome("order_missing", paid("order_missing"), now=now)

    @pytest.mark.asyncio
    async def test_renewal_restarts_from_payment_time(
        self, session, catalog, dispatcher, make_account, add_order, load_account, now
    ) -> None:
        account = await make_account(
            plan="professional",
            plan_status="active",
            plan_expiry=now + timedelta(days=10),
        )
        await add_order(account.id, "order_renew")

        machine = SubscriptionStateMachine(session, catalog)
        await machine.apply_outcome("order_renew", paid("order_renew"), now=now)

        stored = await load_account(account.id)
        assert stored.plan_expiry == now + timedelta(days=30)

    @pytest.mark.asyncio
    async def test_success_reactivates_cancelled_and_expired(
        self, session_factory, catalog, dispatcher, make_account, add_order, load_account, now
    ) -> None:
        cancelled = await make_account(
            plan="professional", plan_status="cancelled", plan_expiry=now + timedelta(days=5)
        )
        expired = await make_account(plan="starter", plan_status="expired")
        await add_order(cancelled.id, "order_back_1")
        await add_order(expired.id, "order_back_2", plan="enterprise", amount=16915)

        for order_id in ("order_back_1", "order_back_2"):
            async with session_factory() as s:
                await SubscriptionStateMachine(s, catalog).apply_outcome(
                    order_id, paid(order_id), now=now
                )

        first = await load_account(cancelled.id)
        second = await load_account(expired.id)
        assert (first.plan, first.plan_status) == ("professional", "active")
        assert (second.plan, second.plan_status) == ("enterprise", "active")


class TestConcurrentResolution:
    """Two resolvers racing on the same order."""

    @pytest.mark.asyncio
    async def test_loser_sees_terminal_order(
        self, session_factory, catalog, dispatcher, channel, make_account, add_order,
        load_account, now, monkeypatch,
    ) -> None:
        account = await make_account(email="race@example.test")
        await add_order(account.id, "order_race")

        loser_session = session_factory()
        loser = SubscriptionStateMachine(loser_session, catalog, dispatcher)
        original_load = loser.repository.find_user_by_order_id
        loads = []

        async def racing_load(order_id):
            stale = await original_load(order_id)
            loads.append(order_id)
            if len(loads) == 1:
                # The webhook commits between the loser's read and its write
                async with session_factory() as winner_session:
                    await SubscriptionStateMachine(winner_session, catalog, dispatcher).apply_outcome(
                        order_id, paid(order_id), source="webhook", now=now
                    )
            return stale

        monkeypatch.setattr(loser.repository, "find_user_by_order_id", racing_load)
        try:
            result = await loser.apply_outcome(
                "order_race", paid("order_race"), source="verify", now=now + timedelta(minutes=1)
            )
        finally:
            await loser_session.close()
        await dispatcher.drain()

        assert len(loads) == 2
        assert result.applied is False
        assert result.order_status == "success"
        stored = await load_account(account.id)
        assert stored.plan_expiry == now + timedelta(days=30)
        assert len(channel.subjects_for("race@example.test")) == 1

    @pytest.mark.asyncio
    async def test_retries_exhausted_raises(
        self, session_factory, catalog, make_account, add_order, now, monkeypatch,
    ) -> None:
        account = await make_account()
        await add_order(account.id, "order_contended")

        async with session_factory() as contended_session:
            machine = SubscriptionStateMachine(contended_session, catalog, max_retries=2)
            original_load = machine.repository.find_user_by_order_id

            async def always_stale(order_id):
                stale = await original_load(order_id)
                async with session_factory() as other:
                    # Another writer bumps the version every time
                    await SubscriptionStateMachine(other, catalog).grant_free_tier(account.id, now=now)
                return stale

            monkeypatch.setattr(machine.repository, "find_user_by_order_id", always_stale)
            with pytest.raises(ConcurrentUpdateError):
                await machine.apply_outcome("order_contended", paid("order_contended"), now=now)


class TestLifecycleTransitions:
    """Free tier, cancellation, expiry and trial end."""

    @pytest.mark.asyncio
    async def test_grant_free_tier(self, session, catalog, make_account, load_account, now) -> None:
        account = await make_account()
        snapshot = await SubscriptionStateMachine(session, catalog).grant_free_tier(account.id, now=now)

        assert snapshot.plan == "starter"
        assert snapshot.status == "active"
        stored = await load_account(account.id)
        assert stored.plan_expiry == now + timedelta(days=14)

    @pytest.mark.asyncio
    async def test_grant_paid_plan_as_free_rejected(self, session, catalog, make_account, now) -> None:
        account = await make_account()
        with pytest.raises(ValidationError):
            await SubscriptionStateMachine(session, catalog).grant_free_tier(
                account.id, plan_id="professional", now=now
            )

    @pytest.mark.asyncio
    async def test_cancel_keeps_plan_and_expiry(self, session, catalog, make_account, now) -> None:
        expiry = now + timedelta(days=12)
        account = await make_account(plan="professional", plan_status="active", plan_expiry=expiry)

        machine = SubscriptionStateMachine(session, catalog)
        snapshot = await machine.cancel(account.id, now=now)
        again = await machine.cancel(account.id, now=now)

        assert snapshot.status == "cancelled"
        assert snapshot.plan == "professional"
        assert snapshot.expiry == expiry
        assert again.status == "cancelled"

    @pytest.mark.asyncio
    async def test_cancel_without_active_subscription_rejected(
        self, session, catalog, make_account, now
    ) -> None:
        account = await make_account()
        with pytest.raises(ValidationError):
            await SubscriptionStateMachine(session, catalog).cancel(account.id, now=now)

    @pytest.mark.asyncio
    async def test_expire_demotes_to_default_plan(
        self, session, catalog, make_account, load_account, now
    ) -> None:
        account = await make_account(
            plan="enterprise", plan_status="cancelled", plan_expiry=now - timedelta(seconds=1)
        )
        expiry = await SubscriptionStateMachine(session, catalog).expire_subscription(account.id, now=now)

        assert expiry.previous_plan == "enterprise"
        assert expiry.account.plan == "starter"
        stored = await load_account(account.id)
        assert (stored.plan, stored.plan_status) == ("starter", "expired")

    @pytest.mark.asyncio
    async def test_expire_skips_renewed_account(self, session, catalog, make_account, now) -> None:
        account = await make_account(
            plan="professional", plan_status="active", plan_expiry=now + timedelta(days=30)
        )
        assert await SubscriptionStateMachine(session, catalog).expire_subscription(account.id, now=now) is None

    @pytest.mark.asyncio
    async def test_end_trial(self, session, catalog, make_account, load_account, now) -> None:
        ended = await make_account(trial_end=now - timedelta(minutes=1))
        running = await make_account(trial_end=now + timedelta(days=1))

        machine = SubscriptionStateMachine(session, catalog)
        assert await machine.end_trial(ended.id, now=now) is True
        assert await machine.end_trial(running.id, now=now) is False
        assert await machine.end_trial(ended.id, now=now) is False

        stored = await load_account(ended.id)
        assert stored.plan_status == "expired"
        assert stored.plan == "starter"
