"""Subscription state machine.

Every mutation of an account's subscription goes through this module. The
verify endpoint, the webhook and the reconciliation sweep all resolve
orders through ``apply_outcome``; whichever commits first wins and the
others see a terminal order and do nothing.

    trialing  -> active     paid order succeeded, or free tier granted
    active    -> active     renewal (expiry restarts from now)
    active    -> cancelled  explicit cancellation
    active    -> expired    expiry passed (demoted to the free tier)
    cancelled -> expired    expiry passed
    trialing  -> expired    trial ended
    expired   -> active     paid order succeeded, or free tier granted
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from subscription_service.core.logging import log_info
from subscription_service.core.metrics import ORDER_RESOLUTIONS_TOTAL
from subscription_service.core.tracing import create_span
from subscription_service.modules.notification.dispatcher import NotificationDispatcher
from subscription_service.modules.notification.templates import NotificationKind
from subscription_service.modules.payment_gateway.interface import (
    GatewayPaymentStatus,
    PaymentOutcome,
)
from subscription_service.modules.plans.catalog import PlanCatalog
from subscription_service.modules.subscription.exceptions import NotFoundError, ValidationError
from subscription_service.modules.subscription.models import (
    Account,
    OrderStatus,
    SubscriptionStatus,
)
from subscription_service.modules.subscription.repository import AccountRepository
from subscription_service.modules.subscription.schemas import SubscriptionSnapshot

logger = logging.getLogger(__name__)


@dataclass
class OutcomeResult:
    """What ``apply_outcome`` did.

    ``applied`` is False when the order was already terminal or the gateway
    still reports it as unpaid; ``order_status`` is the order's status after
    the call either way.
    """
    order_id: str
    order_status: str
    applied: bool
    snapshot: SubscriptionSnapshot


@dataclass
class ExpiryResult:
    """A demotion committed by ``expire_subscription``."""
    account: Account
    previous_plan: str


class SubscriptionStateMachine:
    """Apply gateway outcomes and lifecycle transitions to accounts."""

    def __init__(
        self,
        session: AsyncSession,
        catalog: PlanCatalog,
        dispatcher: Optional[NotificationDispatcher] = None,
        max_retries: Optional[int] = None,
    ):
        self.repository = AccountRepository(session)
        self.catalog = catalog
        self.dispatcher = dispatcher
        self.max_retries = max_retries

    def _snapshot(self, account: Account, now: datetime) -> SubscriptionSnapshot:
        return SubscriptionSnapshot.from_account(account, self.catalog, now)

    async def apply_outcome(
        self,
        order_id: str,
        payment: GatewayPaymentStatus,
        source: str = "verify",
        now: Optional[datetime] = None,
    ) -> OutcomeResult:
        """Resolve a pending order with the gateway's answer.

        On success the order becomes ``success`` and the account moves to the
        order's plan with ``expiry = now + cycle length``, in one commit. On
        an explicit gateway failure only the order changes. Orders that are
        already terminal, and payments the gateway still reports as pending,
        leave everything untouched.

        Raises:
            NotFoundError: If no account owns ``order_id``
        """
        now = now or datetime.utcnow()
        outcome = payment.outcome
        state = {"order_status": None}

        def mutate(account: Account) -> bool:
            order = account.get_order(order_id)
            if order is None:
                raise NotFoundError(f"Order not found: {order_id}")
            state["order_status"] = order.status
            if not order.is_pending or outcome == PaymentOutcome.PENDING:
                return False

            if outcome == PaymentOutcome.SUCCESS:
                cycle_days = self.catalog.cycle_length_days(order.billing_cycle)
                order.status = OrderStatus.SUCCESS.value
                order.gateway_payment_id = payment.gateway_payment_id
                order.paid_at = now
                order.updated_at = now
                account.plan = order.plan
                account.plan_status = SubscriptionStatus.ACTIVE.value
                account.plan_expiry = now + timedelta(days=cycle_days)
            else:
                order.status = OrderStatus.FAILED.value
                order.gateway_payment_id = payment.gateway_payment_id
                order.error_code = payment.payment_status
                order.error_message = f"Payment {payment.payment_status.lower()} at gateway"
                order.updated_at = now
            state["order_status"] = order.status
            return True

        async def load() -> Optional[Account]:
            return await self.repository.find_user_by_order_id(order_id)

        with create_span(
            "subscription.apply_outcome",
            {"order_id": order_id, "source": source, "outcome": outcome.value},
        ):
            account, applied = await self.repository.modify(
                load, mutate, now=now, max_retries=self.max_retries
            )

        if not applied:
            result_label = "pending" if outcome == PaymentOutcome.PENDING else "noop"
            ORDER_RESOLUTIONS_TOTAL.labels(source=source, outcome=result_label).inc()
            return OutcomeResult(
                order_id=order_id,
                order_status=state["order_status"],
                applied=False,
                snapshot=self._snapshot(account, now),
            )

        ORDER_RESOLUTIONS_TOTAL.labels(source=source, outcome=state["order_status"]).inc()
        log_info(
            logger,
            f"Order {order_id} resolved as {state['order_status']} via {source}",
            order_id=order_id,
            account_id=str(account.id),
            source=source,
            order_status=state["order_status"],
        )

        if state["order_status"] == OrderStatus.SUCCESS.value and self.dispatcher:
            self.dispatcher.dispatch(
                account.id,
                NotificationKind.SUBSCRIPTION_ACTIVATED,
                {
                    "email": account.email,
                    "name": account.name,
                    "plan_name": self.catalog.plan_name(account.plan),
                    "expiry": account.plan_expiry.strftime("%d %B %Y"),
                },
            )

        return OutcomeResult(
            order_id=order_id,
            order_status=state["order_status"],
            applied=True,
            snapshot=self._snapshot(account, now),
        )

    async def grant_free_tier(
        self,
        account_id: uuid.UUID,
        plan_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> SubscriptionSnapshot:
        """Activate a zero-priced plan immediately, without a gateway order."""
        now = now or datetime.utcnow()
        plan = self.catalog.get(plan_id) if plan_id else self.catalog.default_plan
        if not plan.is_free:
            raise ValidationError(f"Plan {plan.id} is not free")

        def mutate(account: Account) -> bool:
            account.plan = plan.id
            account.plan_status = SubscriptionStatus.ACTIVE.value
            account.plan_expiry = now + timedelta(days=plan.trial_duration_days)
            return True

        account, _ = await self.repository.modify(
            lambda: self.repository.find_user_by_id(account_id),
            mutate,
            now=now,
            max_retries=self.max_retries,
        )
        log_info(logger, f"Free tier {plan.id} granted to {account_id}", account_id=str(account_id))
        return self._snapshot(account, now)

    async def cancel(
        self,
        account_id: uuid.UUID,
        now: Optional[datetime] = None,
    ) -> SubscriptionSnapshot:
        """Cancel an active subscription. Plan and expiry are kept.

        Raises:
            ValidationError: If there is no active subscription to cancel
        """
        now = now or datetime.utcnow()

        def mutate(account: Account) -> bool:
            if account.plan_status == SubscriptionStatus.CANCELLED.value:
                return False
            if account.plan_status != SubscriptionStatus.ACTIVE.value:
                raise ValidationError("No active subscription to cancel")
            account.plan_status = SubscriptionStatus.CANCELLED.value
            return True

        account, changed = await self.repository.modify(
            lambda: self.repository.find_user_by_id(account_id),
            mutate,
            now=now,
            max_retries=self.max_retries,
        )
        if changed:
            log_info(logger, f"Subscription cancelled for {account_id}", account_id=str(account_id))
        return self._snapshot(account, now)

    async def expire_subscription(
        self,
        account_id: uuid.UUID,
        now: Optional[datetime] = None,
    ) -> Optional[ExpiryResult]:
        """Demote a lapsed paid subscription to the free tier.

        The expiry is re-checked on the fresh row, so a renewal committed
        after the sweep's scan is never undone.

        Returns:
            The committed account and the plan it was demoted from, or None
            if nothing changed
        """
        now = now or datetime.utcnow()
        default_plan = self.catalog.default_plan
        previous = {"plan": None}

        def mutate(account: Account) -> bool:
            lapsed = (
                account.plan_status in (
                    SubscriptionStatus.ACTIVE.value,
                    SubscriptionStatus.CANCELLED.value,
                )
                and account.plan != default_plan.id
                and account.plan_expiry is not None
                and account.plan_expiry < now
            )
            if not lapsed:
                return False
            previous["plan"] = account.plan
            account.plan = default_plan.id
            account.plan_status = SubscriptionStatus.EXPIRED.value
            return True

        account, changed = await self.repository.modify(
            lambda: self.repository.find_user_by_id(account_id),
            mutate,
            now=now,
            max_retries=self.max_retries,
        )
        if not changed:
            return None
        return ExpiryResult(account=account, previous_plan=previous["plan"])

    async def end_trial(
        self,
        account_id: uuid.UUID,
        now: Optional[datetime] = None,
    ) -> bool:
        """Move a trial whose end has passed to ``expired``."""
        now = now or datetime.utcnow()

        def mutate(account: Account) -> bool:
            if account.plan_status != SubscriptionStatus.TRIALING.value:
                return False
            if account.trial_end is None or account.trial_end >= now:
                return False
            account.plan_status = SubscriptionStatus.EXPIRED.value
            return True

        _, changed = await self.repository.modify(
            lambda: self.repository.find_user_by_id(account_id),
            mutate,
            now=now,
            max_retries=self.max_retries,
        )
        if changed:
            log_info(logger, f"Trial ended for {account_id}", account_id=str(account_id))
        return changed
