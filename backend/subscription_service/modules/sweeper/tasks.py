"""Celery tasks and beat schedule for the reconciliation sweeps."""

import asyncio
import logging

from celery.schedules import crontab

from subscription_service.core.celery_app import celery_app
from subscription_service.core.config import settings
from subscription_service.core.database import async_session_maker, engine
from subscription_service.core.logging import set_correlation_id
from subscription_service.modules.notification.dispatcher import NotificationDispatcher
from subscription_service.modules.payment_gateway.gateways.cashfree import CashfreeGateway
from subscription_service.modules.plans.catalog import get_catalog
from subscription_service.modules.sweeper.sweeper import ReconciliationSweeper

logger = logging.getLogger(__name__)


async def _in_fresh_loop(coro) -> dict:
    """Run a sweep coroutine, then drop pooled connections bound to this loop."""
    try:
        return await coro
    finally:
        await engine.dispose()


def _sweeper(gateway=None) -> ReconciliationSweeper:
    return ReconciliationSweeper(
        session_factory=async_session_maker,
        catalog=get_catalog(),
        dispatcher=NotificationDispatcher(),
        gateway=gateway,
    )


async def _run_daily_sweep() -> dict:
    report = await _sweeper().run_daily_sweep()
    return report.to_dict()


async def _recheck_pending_orders() -> dict:
    gateway = CashfreeGateway.from_settings()
    try:
        report = await _sweeper(gateway).recheck_pending_orders()
    finally:
        await gateway.aclose()
    return report.to_dict()


async def _reset_usage_counters() -> dict:
    report = await _sweeper().reset_usage_counters()
    return report.to_dict()


@celery_app.task(name="subscription_service.sweeper.run_daily_sweep")
def run_daily_sweep() -> dict:
    """Send expiry warnings and expire lapsed subscriptions."""
    set_correlation_id(f"sweep-{run_daily_sweep.request.id or 'local'}")
    return asyncio.run(_in_fresh_loop(_run_daily_sweep()))


@celery_app.task(name="subscription_service.sweeper.recheck_pending_orders")
def recheck_pending_orders() -> dict:
    """Resolve pending orders whose webhook never arrived."""
    set_correlation_id(f"recheck-{recheck_pending_orders.request.id or 'local'}")
    return asyncio.run(_in_fresh_loop(_recheck_pending_orders()))


@celery_app.task(name="subscription_service.sweeper.reset_usage_counters")
def reset_usage_counters() -> dict:
    """Zero per-period usage counters for every account."""
    set_correlation_id(f"usage-reset-{reset_usage_counters.request.id or 'local'}")
    return asyncio.run(_in_fresh_loop(_reset_usage_counters()))


SWEEPER_BEAT_SCHEDULE = {
    "subscription-daily-sweep": {
        "task": "subscription_service.sweeper.run_daily_sweep",
        "schedule": crontab(hour=settings.SWEEP_HOUR_UTC, minute=0),
    },
    "subscription-usage-reset": {
        "task": "subscription_service.sweeper.reset_usage_counters",
        "schedule": crontab(hour=settings.USAGE_RESET_HOUR_UTC, minute=0),
    },
    "subscription-pending-order-recheck": {
        "task": "subscription_service.sweeper.recheck_pending_orders",
        "schedule": crontab(minute="*/15"),
    },
}

celery_app.conf.beat_schedule.update(SWEEPER_BEAT_SCHEDULE)
