"""Reconciliation sweeper module."""

from subscription_service.modules.sweeper.sweeper import (
    PendingRecheckReport,
    ReconciliationSweeper,
    SweepReport,
    UsageResetReport,
)

__all__ = [
    "PendingRecheckReport",
    "ReconciliationSweeper",
    "SweepReport",
    "UsageResetReport",
]
