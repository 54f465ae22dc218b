"""Subscription service for the interactive payments API."""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from subscription_service.core.logging import log_info
from subscription_service.modules.notification.dispatcher import NotificationDispatcher
from subscription_service.modules.payment_gateway.interface import PaymentGatewayInterface
from subscription_service.modules.plans.catalog import PlanCatalog
from subscription_service.modules.subscription.exceptions import (
    NotFoundError,
    UsageLimitExceededError,
    ValidationError,
)
from subscription_service.modules.subscription.models import (
    USAGE_COUNTERS,
    Account,
    SubscriptionStatus,
)
from subscription_service.modules.subscription.repository import AccountRepository
from subscription_service.modules.subscription.schemas import (
    PaymentOrderResponse,
    PlanResponse,
    PlansListResponse,
    SubscriptionDetail,
    SubscriptionSnapshot,
    TrialStatusResponse,
)
from subscription_service.modules.subscription.state_machine import (
    OutcomeResult,
    SubscriptionStateMachine,
)

logger = logging.getLogger(__name__)


def is_unlimited(limit) -> bool:
    return limit is True or limit == -1


class SubscriptionService:
    """Read models and user-initiated operations on a subscription."""

    def __init__(
        self,
        session: AsyncSession,
        catalog: PlanCatalog,
        gateway: Optional[PaymentGatewayInterface] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
    ):
        self.repository = AccountRepository(session)
        self.catalog = catalog
        self.gateway = gateway
        self.state_machine = SubscriptionStateMachine(session, catalog, dispatcher)

    async def _get_account(self, account_id: uuid.UUID) -> Account:
        account = await self.repository.find_user_by_id(account_id)
        if account is None:
            raise NotFoundError("User not found")
        return account

    async def list_plans(
        self,
        account_id: Optional[uuid.UUID] = None,
        now: Optional[datetime] = None,
    ) -> PlansListResponse:
        """All catalog plans, flagged against the caller's current plan."""
        now = now or datetime.utcnow()
        account = await self._get_account(account_id) if account_id else None
        current = account.plan if account else None
        plans = [
            PlanResponse(
                id=plan.id,
                name=plan.name,
                price_monthly=plan.price_monthly,
                price_yearly=plan.price_yearly,
                features=dict(plan.features),
                trial_limits=dict(plan.trial_limits),
                is_current_plan=plan.id == current,
            )
            for plan in self.catalog
        ]
        return PlansListResponse(
            plans=plans,
            current_plan=current,
            trial_days_remaining=account.trial_days_remaining(now) if account else 0,
        )

    async def get_subscription(
        self,
        account_id: uuid.UUID,
        now: Optional[datetime] = None,
    ) -> SubscriptionDetail:
        now = now or datetime.utcnow()
        account = await self._get_account(account_id)
        snapshot = SubscriptionSnapshot.from_account(account, self.catalog, now)
        plan = self.catalog.find(account.plan) or self.catalog.default_plan
        return SubscriptionDetail(
            **snapshot.model_dump(),
            price_monthly=plan.price_monthly,
            price_yearly=plan.price_yearly,
            features=dict(self.effective_limits(account, now)),
        )

    async def cancel(self, account_id: uuid.UUID, now: Optional[datetime] = None) -> SubscriptionSnapshot:
        return await self.state_machine.cancel(account_id, now=now)

    async def payment_history(self, account_id: uuid.UUID) -> list[PaymentOrderResponse]:
        """The account's orders, newest first."""
        account = await self._get_account(account_id)
        orders = sorted(account.orders, key=lambda o: o.created_at, reverse=True)
        return [PaymentOrderResponse.from_order(order, self.catalog) for order in orders]

    async def trial_status(
        self,
        account_id: uuid.UUID,
        now: Optional[datetime] = None,
    ) -> TrialStatusResponse:
        now = now or datetime.utcnow()
        account = await self._get_account(account_id)
        return TrialStatusResponse(
            is_in_trial=account.is_in_trial(now),
            is_trial_expired=account.is_trial_expired(now),
            trial_days_remaining=account.trial_days_remaining(now),
            trial_start=account.trial_start,
            trial_end=account.trial_end,
            plan_status=account.plan_status,
            plan=account.plan,
        )

    async def extend_trial(
        self,
        account_id: uuid.UUID,
        days: int,
        now: Optional[datetime] = None,
    ) -> datetime:
        """Push the trial end ``days`` further out. Admin only.

        An account whose trial already lapsed is put back into ``trialing``
        if it has not bought a plan since.
        """
        if days <= 0:
            raise ValidationError("Days must be positive")
        now = now or datetime.utcnow()

        def mutate(account: Account) -> bool:
            base = account.trial_end or now
            account.trial_end = base + timedelta(days=days)
            if account.trial_start is None:
                account.trial_start = now
            if (
                account.plan_status == SubscriptionStatus.EXPIRED.value
                and account.plan == self.catalog.default_plan.id
                and account.trial_end > now
            ):
                account.plan_status = SubscriptionStatus.TRIALING.value
            return True

        account, _ = await self.repository.modify(
            lambda: self.repository.find_user_by_id(account_id),
            mutate,
            now=now,
        )
        log_info(
            logger,
            f"Trial extended by {days} days for {account_id}",
            account_id=str(account_id),
            days=days,
        )
        return account.trial_end

    def effective_limits(self, account: Account, now: Optional[datetime] = None) -> dict:
        """Trial limits while trialing, otherwise the current plan's features."""
        plan = self.catalog.find(account.plan) or self.catalog.default_plan
        if account.is_in_trial(now) and plan.trial_limits:
            return dict(plan.trial_limits)
        return dict(plan.features)

    async def record_usage(
        self,
        account_id: uuid.UUID,
        counter: str,
        amount: int = 1,
        now: Optional[datetime] = None,
    ) -> dict[str, int]:
        """Add ``amount`` to a usage counter if the allowance permits it.

        Raises:
            ValidationError: Unknown counter or non-positive amount
            UsageLimitExceededError: The increment would pass the limit
        """
        if counter not in USAGE_COUNTERS:
            raise ValidationError(f"Unknown usage counter: {counter}")
        if amount <= 0:
            raise ValidationError("Amount must be positive")
        now = now or datetime.utcnow()

        def mutate(account: Account) -> bool:
            limit = self.effective_limits(account, now).get(USAGE_COUNTERS[counter], False)
            used = int((account.usage or {}).get(counter, 0))
            if not is_unlimited(limit):
                allowance = 0 if limit is False else int(limit)
                if used + amount > allowance:
                    raise UsageLimitExceededError(counter, allowance, used)
            account.usage = {**(account.usage or {}), counter: used + amount}
            return True

        account, _ = await self.repository.modify(
            lambda: self.repository.find_user_by_id(account_id),
            mutate,
            now=now,
        )
        return dict(account.usage)

    async def verify_order(
        self,
        account_id: uuid.UUID,
        order_id: str,
        now: Optional[datetime] = None,
    ) -> OutcomeResult:
        """Ask the gateway about one of the caller's orders and apply the answer.

        Orders that are already terminal are answered from local state
        without contacting the gateway.

        Raises:
            NotFoundError: The order does not exist or belongs to someone else
            GatewayError: The gateway could not be queried
        """
        now = now or datetime.utcnow()
        account = await self._get_account(account_id)
        order = account.get_order(order_id)
        if order is None:
            raise NotFoundError(f"Order not found: {order_id}")

        if not order.is_pending:
            return OutcomeResult(
                order_id=order_id,
                order_status=order.status,
                applied=False,
                snapshot=SubscriptionSnapshot.from_account(account, self.catalog, now),
            )

        if self.gateway is None:
            raise RuntimeError("SubscriptionService needs a gateway to verify orders")
        payment = await self.gateway.fetch_payment_status(order_id)
        return await self.state_machine.apply_outcome(order_id, payment, source="verify", now=now)
