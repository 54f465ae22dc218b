"""Reconciliation sweeper.

Scheduled jobs that move subscriptions forward in time:

* expiry warnings 3 days and 1 day before a paid plan lapses
* demotion of lapsed paid plans to the free tier, and ending of trials
* re-checking pending orders with the gateway, for webhooks that never came
* resetting per-period usage counters

Each account is handled in its own session and transaction. A failure is
logged and counted, and the sweep moves on to the next account. Every
action re-checks its condition on the freshly loaded account, so a sweep
can be re-run or overlap an interactive request without double effects.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from subscription_service.core.config import settings
from subscription_service.core.logging import log_error, log_info
from subscription_service.core.metrics import SWEEP_ACTIONS_TOTAL
from subscription_service.core.tracing import create_span
from subscription_service.modules.notification.dispatcher import NotificationDispatcher
from subscription_service.modules.notification.templates import NotificationKind
from subscription_service.modules.payment_gateway.interface import PaymentGatewayInterface
from subscription_service.modules.plans.catalog import PlanCatalog
from subscription_service.modules.subscription.models import (
    Account,
    SubscriptionStatus,
    empty_usage,
)
from subscription_service.modules.subscription.repository import AccountRepository
from subscription_service.modules.subscription.state_machine import SubscriptionStateMachine

logger = logging.getLogger(__name__)

WARNING_DAYS = (3, 1)


@dataclass
class SweepReport:
    warnings_3d: int = 0
    warnings_1d: int = 0
    expired: int = 0
    trials_ended: int = 0
    failures: int = 0

    def to_dict(self) -> dict:
        return dict(self.__dict__)


@dataclass
class PendingRecheckReport:
    checked: int = 0
    resolved: int = 0
    failures: int = 0

    def to_dict(self) -> dict:
        return dict(self.__dict__)


@dataclass
class UsageResetReport:
    reset: int = 0
    failures: int = 0

    def to_dict(self) -> dict:
        return dict(self.__dict__)


class ReconciliationSweeper:
    """Run the scheduled reconciliation passes."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        catalog: PlanCatalog,
        dispatcher: NotificationDispatcher,
        gateway: Optional[PaymentGatewayInterface] = None,
    ):
        self.session_factory = session_factory
        self.catalog = catalog
        self.dispatcher = dispatcher
        self.gateway = gateway

    def _failed(self, report, message: str, error: Exception, **extra) -> None:
        report.failures += 1
        SWEEP_ACTIONS_TOTAL.labels(action="failure").inc()
        log_error(logger, message, exception=error, **extra)

    # ==================== Daily sweep ====================

    async def run_daily_sweep(self, now: Optional[datetime] = None) -> SweepReport:
        """Send expiry warnings, then expire lapsed plans and trials."""
        now = now or datetime.utcnow()
        report = SweepReport()

        with create_span("sweeper.daily", {"now": now.isoformat()}):
            for days in WARNING_DAYS:
                for account_id in await self._expiring_within(now, days):
                    try:
                        if await self._send_warning(account_id, days, now):
                            if days == 3:
                                report.warnings_3d += 1
                            else:
                                report.warnings_1d += 1
                            SWEEP_ACTIONS_TOTAL.labels(action=f"warning_{days}d").inc()
                    except Exception as e:
                        self._failed(
                            report,
                            f"Expiry warning failed for {account_id}",
                            e,
                            account_id=str(account_id),
                            days=days,
                        )

            for account_id in await self._lapsed(now):
                try:
                    if await self._expire(account_id, now):
                        report.expired += 1
                        SWEEP_ACTIONS_TOTAL.labels(action="expired").inc()
                except Exception as e:
                    self._failed(report, f"Expiry failed for {account_id}", e, account_id=str(account_id))

            for account_id in await self._ended_trials(now):
                try:
                    async with self.session_factory() as session:
                        machine = SubscriptionStateMachine(session, self.catalog)
                        if await machine.end_trial(account_id, now=now):
                            report.trials_ended += 1
                            SWEEP_ACTIONS_TOTAL.labels(action="trial_ended").inc()
                except Exception as e:
                    self._failed(report, f"Ending trial failed for {account_id}", e, account_id=str(account_id))

        await self.dispatcher.drain()
        log_info(logger, "Daily subscription sweep finished", **report.to_dict())
        return report

    async def _expiring_within(self, now: datetime, days: int) -> list[uuid.UUID]:
        async with self.session_factory() as session:
            accounts = await AccountRepository(session).find_users_with_expiry_in_range(
                now,
                now + timedelta(days=days),
                statuses=[SubscriptionStatus.ACTIVE.value],
                exclude_plans=[self.catalog.default_plan.id],
            )
            return [a.id for a in accounts]

    async def _lapsed(self, now: datetime) -> list[uuid.UUID]:
        async with self.session_factory() as session:
            accounts = await AccountRepository(session).find_users_expired_before(
                now,
                statuses=[SubscriptionStatus.ACTIVE.value, SubscriptionStatus.CANCELLED.value],
                exclude_plans=[self.catalog.default_plan.id],
            )
            return [a.id for a in accounts]

    async def _ended_trials(self, now: datetime) -> list[uuid.UUID]:
        async with self.session_factory() as session:
            accounts = await AccountRepository(session).find_trials_ended_before(now)
            return [a.id for a in accounts]

    async def _send_warning(self, account_id: uuid.UUID, days: int, now: datetime) -> bool:
        """Record and send one expiry warning if it is due and not yet sent."""
        async with self.session_factory() as session:
            repository = AccountRepository(session)
            params: dict = {}

            def mutate(account: Account) -> bool:
                if account.plan_status != SubscriptionStatus.ACTIVE.value:
                    return False
                if account.days_remaining(now) != days or account.has_reminder(days):
                    return False
                account.add_reminder(days)
                params.update(
                    email=account.email,
                    name=account.name,
                    plan_name=self.catalog.plan_name(account.plan),
                    days_left=days,
                    expiry=account.plan_expiry.strftime("%d %B %Y"),
                )
                return True

            account, changed = await repository.modify(
                lambda: repository.find_user_by_id(account_id), mutate, now=now
            )
            if changed:
                self.dispatcher.dispatch(account_id, NotificationKind.EXPIRY_WARNING, params)
            return changed

    async def _expire(self, account_id: uuid.UUID, now: datetime) -> bool:
        async with self.session_factory() as session:
            machine = SubscriptionStateMachine(session, self.catalog)
            expiry = await machine.expire_subscription(account_id, now=now)
            if expiry is None:
                return False
            account, previous_plan = expiry.account, expiry.previous_plan
            self.dispatcher.dispatch(
                account_id,
                NotificationKind.EXPIRY_OCCURRED,
                {
                    "email": account.email,
                    "name": account.name,
                    "plan_name": self.catalog.plan_name(previous_plan),
                },
            )
            log_info(
                logger,
                f"Subscription {previous_plan} expired for {account_id}",
                account_id=str(account_id),
                previous_plan=previous_plan,
            )
            return True

    # ==================== Pending order re-check ====================

    async def recheck_pending_orders(self, now: Optional[datetime] = None) -> PendingRecheckReport:
        """Ask the gateway about stale pending orders and apply the answers."""
        if self.gateway is None:
            raise RuntimeError("Pending order re-check needs a payment gateway")
        now = now or datetime.utcnow()
        report = PendingRecheckReport()

        async with self.session_factory() as session:
            pending = await AccountRepository(session).find_users_with_pending_orders(
                created_before=now - timedelta(minutes=settings.PENDING_ORDER_RECHECK_AFTER_MINUTES),
                created_after=now - timedelta(days=settings.PENDING_ORDER_RECHECK_MAX_AGE_DAYS),
            )

        with create_span("sweeper.pending_orders", {"count": len(pending)}):
            for account_id, order_id in pending:
                report.checked += 1
                try:
                    payment = await self.gateway.fetch_payment_status(order_id)
                    async with self.session_factory() as session:
                        machine = SubscriptionStateMachine(session, self.catalog, self.dispatcher)
                        result = await machine.apply_outcome(
                            order_id, payment, source="sweeper", now=now
                        )
                    if result.applied:
                        report.resolved += 1
                        SWEEP_ACTIONS_TOTAL.labels(action="pending_resolved").inc()
                except Exception as e:
                    self._failed(
                        report,
                        f"Pending order re-check failed for {order_id}",
                        e,
                        account_id=str(account_id),
                        order_id=order_id,
                    )

        await self.dispatcher.drain()
        log_info(logger, "Pending order re-check finished", **report.to_dict())
        return report

    # ==================== Usage reset ====================

    async def reset_usage_counters(
        self,
        now: Optional[datetime] = None,
        batch_size: int = 500,
    ) -> UsageResetReport:
        """Zero every account's usage counters for the new period."""
        now = now or datetime.utcnow()
        report = UsageResetReport()

        async with self.session_factory() as scan_session:
            async for account_id in AccountRepository(scan_session).iter_account_ids(batch_size):
                try:
                    async with self.session_factory() as session:
                        repository = AccountRepository(session)

                        def reset(account: Account) -> bool:
                            account.usage = {**(account.usage or {}), **empty_usage()}
                            account.usage_reset_at = now
                            return True

                        await repository.modify(
                            lambda: repository.find_user_by_id(account_id), reset, now=now
                        )
                    report.reset += 1
                    SWEEP_ACTIONS_TOTAL.labels(action="usage_reset").inc()
                except Exception as e:
                    self._failed(
                        report,
                        f"Usage reset failed for {account_id}",
                        e,
                        account_id=str(account_id),
                    )

        log_info(logger, "Usage counters reset", **report.to_dict())
        return report
