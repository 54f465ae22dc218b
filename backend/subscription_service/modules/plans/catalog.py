"""Plan catalog.

The catalog is built once at startup and never mutated afterwards. It is
passed to the services that need prices and durations instead of being
looked up from module state.
"""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Iterator, Mapping, Optional, Union

from subscription_service.core.config import settings
from subscription_service.modules.subscription.exceptions import ValidationError

LimitValue = Union[int, bool]


class BillingCycle(str, Enum):
    """Billing cycles and their length in days."""
    MONTHLY = "monthly"
    YEARLY = "yearly"

    @property
    def length_days(self) -> int:
        return _CYCLE_LENGTH_DAYS[self]


_CYCLE_LENGTH_DAYS = {
    BillingCycle.MONTHLY: 30,
    BillingCycle.YEARLY: 365,
}


def _frozen(mapping: Mapping[str, Any]) -> Mapping[str, Any]:
    return MappingProxyType(dict(mapping))


@dataclass(frozen=True)
class Plan:
    """A purchasable plan.

    ``features`` and ``trial_limits`` map a usage limit name to an integer
    allowance, ``-1`` or ``True`` for unlimited, ``False`` for unavailable.
    """
    id: str
    name: str
    price_monthly: int
    price_yearly: int
    features: Mapping[str, LimitValue] = field(default_factory=lambda: _frozen({}))
    trial_limits: Mapping[str, LimitValue] = field(default_factory=lambda: _frozen({}))
    trial_duration_days: int = 0

    @property
    def is_free(self) -> bool:
        return self.price_monthly == 0 and self.price_yearly == 0

    def price_for(self, cycle: BillingCycle) -> int:
        if cycle == BillingCycle.YEARLY:
            return self.price_yearly
        return self.price_monthly

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "price_monthly": self.price_monthly,
            "price_yearly": self.price_yearly,
            "features": dict(self.features),
            "trial_limits": dict(self.trial_limits),
            "trial_duration_days": self.trial_duration_days,
        }


class PlanCatalog:
    """Immutable lookup of plans by id."""

    def __init__(self, plans: list[Plan], default_plan_id: str):
        if default_plan_id not in {p.id for p in plans}:
            raise ValueError(f"Default plan {default_plan_id!r} is not in the catalog")
        self._plans: Mapping[str, Plan] = MappingProxyType({p.id: p for p in plans})
        self._default_plan_id = default_plan_id

    def __iter__(self) -> Iterator[Plan]:
        return iter(self._plans.values())

    def __contains__(self, plan_id: object) -> bool:
        return plan_id in self._plans

    @property
    def default_plan(self) -> Plan:
        """The free tier accounts fall back to when a paid plan lapses."""
        return self._plans[self._default_plan_id]

    def get(self, plan_id: str) -> Plan:
        """Return the plan with ``plan_id``.

        Raises:
            ValidationError: If the plan does not exist
        """
        plan = self._plans.get(plan_id)
        if plan is None:
            raise ValidationError(f"Invalid plan: {plan_id}")
        return plan

    def find(self, plan_id: Optional[str]) -> Optional[Plan]:
        if plan_id is None:
            return None
        return self._plans.get(plan_id)

    @staticmethod
    def parse_cycle(billing_cycle: str) -> BillingCycle:
        """Raises ValidationError for anything but ``monthly`` or ``yearly``."""
        try:
            return BillingCycle(billing_cycle)
        except ValueError:
            raise ValidationError(f"Invalid billing cycle: {billing_cycle}") from None

    def price(self, plan_id: str, billing_cycle: str) -> int:
        return self.get(plan_id).price_for(self.parse_cycle(billing_cycle))

    def cycle_length_days(self, billing_cycle: str) -> int:
        return self.parse_cycle(billing_cycle).length_days

    def plan_name(self, plan_id: Optional[str]) -> str:
        plan = self.find(plan_id)
        return plan.name if plan else (plan_id or "")


def build_default_catalog(trial_duration_days: Optional[int] = None) -> PlanCatalog:
    """Build the standard three-tier catalog. Prices are in INR."""
    trial_days = settings.TRIAL_DURATION_DAYS if trial_duration_days is None else trial_duration_days

    starter = Plan(
        id="starter",
        name="Starter",
        price_monthly=0,
        price_yearly=0,
        features=_frozen({
            "emails_per_month": 1000,
            "whatsapp_messages": 100,
            "scraper_runs": 5,
            "email_validations": 100,
            "team_members": 1,
            "campaigns": 3,
            "ai_assistant": False,
            "api_access": False,
        }),
        trial_limits=_frozen({
            "emails_per_month": 100,
            "whatsapp_messages": 20,
            "scraper_runs": 1,
            "email_validations": 20,
            "team_members": 1,
            "campaigns": 1,
            "ai_assistant": False,
            "api_access": False,
        }),
        trial_duration_days=trial_days,
    )
    professional = Plan(
        id="professional",
        name="Professional",
        price_monthly=6715,
        price_yearly=67150,
        features=_frozen({
            "emails_per_month": 25000,
            "whatsapp_messages": 5000,
            "scraper_runs": 100,
            "email_validations": 10000,
            "team_members": 5,
            "campaigns": -1,
            "ai_assistant": True,
            "api_access": False,
        }),
    )
    enterprise = Plan(
        id="enterprise",
        name="Enterprise",
        price_monthly=16915,
        price_yearly=169150,
        features=_frozen({
            "emails_per_month": -1,
            "whatsapp_messages": -1,
            "scraper_runs": -1,
            "email_validations": -1,
            "team_members": -1,
            "campaigns": -1,
            "ai_assistant": True,
            "api_access": True,
        }),
    )
    return PlanCatalog([starter, professional, enterprise], default_plan_id="starter")


_catalog: Optional[PlanCatalog] = None


def get_catalog() -> PlanCatalog:
    """FastAPI dependency returning the process-wide catalog."""
    global _catalog
    if _catalog is None:
        _catalog = build_default_catalog()
    return _catalog
