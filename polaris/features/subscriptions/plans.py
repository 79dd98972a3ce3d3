"""
Plan configuration: (tier, billing cycle) -> processor plan id and price.

Prices are fixed in the catalog below (minor units, INR); processor plan ids
come from the environment as RAZORPAY_PLAN_<TIER>_<CYCLE>, so a plan is only
"configured" once ops has created it on the processor side.
"""
import os
from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Tuple

from polaris.features.subscriptions.tiers import BillingCycle, Tier, is_team_tier

DEFAULT_CURRENCY = "INR"

# (monthly, yearly) in paise; team tiers are per seat
PLAN_PRICING: Dict[Tier, Tuple[int, int]] = {
    Tier.EXPLORER: (15900, 159000),
    Tier.NAVIGATOR: (3900, 39000),
    Tier.VOYAGER: (7900, 79000),
    Tier.CREW: (2400, 24000),
    Tier.FLEET: (6400, 64000),
    Tier.ARMADA: (12900, 129000),
}

# Billing cycles charged per subscription: a year of monthly charges, or one yearly charge
TOTAL_COUNT: Dict[BillingCycle, int] = {
    BillingCycle.MONTHLY: 12,
    BillingCycle.YEARLY: 1,
}


@dataclass(frozen=True)
class PlanConfig:
    tier: Tier
    cycle: BillingCycle
    plan_id: str
    unit_price: int  # minor units, per seat for team tiers
    currency: str = DEFAULT_CURRENCY

    @property
    def name(self) -> str:
        return f"{self.tier.value} ({self.cycle.value})"

    @property
    def total_count(self) -> int:
        return TOTAL_COUNT[self.cycle]

    def amount_for(self, seats: Optional[int]) -> int:
        if is_team_tier(self.tier) and seats:
            return self.unit_price * seats
        return self.unit_price


def plan_env_key(tier: Tier, cycle: BillingCycle) -> str:
    return f"RAZORPAY_PLAN_{tier.value.upper()}_{cycle.value.upper()}"


class PlanCatalog:
    """Resolves plans from an environment mapping (defaults to os.environ)."""

    def __init__(self, env: Optional[Mapping[str, str]] = None):
        self._env = env

    def _lookup_env(self, key: str) -> Optional[str]:
        env = self._env if self._env is not None else os.environ
        value = env.get(key)
        return value.strip() if value and value.strip() else None

    def resolve(self, tier: Tier, cycle: BillingCycle) -> Optional[PlanConfig]:
        """Return the plan for (tier, cycle), or None when not configured."""
        pricing = PLAN_PRICING.get(tier)
        if pricing is None:
            return None
        plan_id = self._lookup_env(plan_env_key(tier, cycle))
        if not plan_id:
            return None
        monthly, yearly = pricing
        return PlanConfig(
            tier=tier,
            cycle=cycle,
            plan_id=plan_id,
            unit_price=monthly if cycle == BillingCycle.MONTHLY else yearly,
        )
