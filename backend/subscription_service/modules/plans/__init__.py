"""Plan catalog module."""

from subscription_service.modules.plans.catalog import (
    BillingCycle,
    Plan,
    PlanCatalog,
    build_default_catalog,
    get_catalog,
)

__all__ = [
    "BillingCycle",
    "Plan",
    "PlanCatalog",
    "build_default_catalog",
    "get_catalog",
]
