"""Run the subscription sweeps manually.

Usage:
    cd backend
    python -m scripts.run_subscription_sweep            # daily sweep
    python -m scripts.run_subscription_sweep --pending  # also re-check pending orders
    python -m scripts.run_subscription_sweep --usage    # also reset usage counters
"""

import argparse
import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv
load_dotenv()

from subscription_service.core.config import settings
from subscription_service.core.database import async_session_maker, engine
from subscription_service.core.logging import setup_logging
from subscription_service.modules.notification.dispatcher import NotificationDispatcher
from subscription_service.modules.payment_gateway.gateways.cashfree import CashfreeGateway
from subscription_service.modules.plans.catalog import get_catalog
from subscription_service.modules.sweeper.sweeper import ReconciliationSweeper


async def main(recheck_pending: bool, reset_usage: bool) -> None:
    """Run the selected sweeps and print their reports."""
    print("\n" + "=" * 60)
    print("Running Subscription Sweeps")
    print("=" * 60)

    gateway = CashfreeGateway.from_settings() if recheck_pending else None
    sweeper = ReconciliationSweeper(
        session_factory=async_session_maker,
        catalog=get_catalog(),
        dispatcher=NotificationDispatcher(),
        gateway=gateway,
    )

    try:
        report = await sweeper.run_daily_sweep()
        print("\nDaily sweep:")
        for key, value in report.to_dict().items():
            print(f"  {key}: {value}")

        if recheck_pending:
            pending = await sweeper.recheck_pending_orders()
            print("\nPending orders:")
            for key, value in pending.to_dict().items():
                print(f"  {key}: {value}")

        if reset_usage:
            usage = await sweeper.reset_usage_counters()
            print("\nUsage reset:")
            for key, value in usage.to_dict().items():
                print(f"  {key}: {value}")
    finally:
        if gateway is not None:
            await gateway.aclose()
        await engine.dispose()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Run subscription sweeps")
    parser.add_argument("--pending", action="store_true", help="Re-check stale pending orders")
    parser.add_argument("--usage", action="store_true", help="Reset usage counters")
    args = parser.parse_args()

    setup_logging(level=settings.LOG_LEVEL, json_format=False)
    asyncio.run(main(args.pending, args.usage))
