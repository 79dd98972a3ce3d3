"""
Subscription tiers, families and per-tier usage limits.

Ranks order tiers for upgrade decisions; an upgrade is only meaningful
within a family (individual vs team).
"""
from enum import Enum
from typing import Dict, List, Optional


class Tier(str, Enum):
    FREE = "free"
    EXPLORER = "explorer"
    NAVIGATOR = "navigator"
    VOYAGER = "voyager"
    CREW = "crew"
    FLEET = "fleet"
    ARMADA = "armada"


class TierFamily(str, Enum):
    FREE = "free"
    INDIVIDUAL = "individual"
    TEAM = "team"


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


TIER_RANK: Dict[Tier, int] = {
    Tier.FREE: 0,
    Tier.EXPLORER: 1,
    Tier.NAVIGATOR: 2,
    Tier.VOYAGER: 3,
    Tier.CREW: 4,
    Tier.FLEET: 5,
    Tier.ARMADA: 6,
}

TEAM_TIERS = frozenset({Tier.CREW, Tier.FLEET, Tier.ARMADA})
INDIVIDUAL_TIERS = frozenset({Tier.EXPLORER, Tier.NAVIGATOR, Tier.VOYAGER})

# Blueprints per month; team tiers are per seat
BLUEPRINT_LIMITS: Dict[Tier, int] = {
    Tier.FREE: 2,
    Tier.EXPLORER: 5,
    Tier.NAVIGATOR: 25,
    Tier.VOYAGER: 50,
    Tier.CREW: 10,
    Tier.FLEET: 30,
    Tier.ARMADA: 60,
}


def parse_tier(value: Optional[str]) -> Optional[Tier]:
    if not value:
        return None
    try:
        return Tier(str(value).lower())
    except ValueError:
        return None


def family_of(tier: Tier) -> TierFamily:
    if tier in TEAM_TIERS:
        return TierFamily.TEAM
    if tier in INDIVIDUAL_TIERS:
        return TierFamily.INDIVIDUAL
    return TierFamily.FREE


def is_team_tier(tier: Tier) -> bool:
    return tier in TEAM_TIERS


def tiers_in_family(family: TierFamily) -> List[Tier]:
    return sorted((t for t in Tier if family_of(t) == family), key=TIER_RANK.__getitem__)


def family_tier_values(tier_value: Optional[str]) -> List[str]:
    """Tier values sharing a family with tier_value (just tier_value when unknown)."""
    tier = parse_tier(tier_value)
    if tier is None:
        return [tier_value] if tier_value else []
    return [t.value for t in tiers_in_family(family_of(tier))]


def is_upgrade(current: Tier, requested: Tier) -> bool:
    """True when requested ranks strictly higher than current in the same family."""
    if family_of(current) != family_of(requested):
        return False
    return TIER_RANK[requested] > TIER_RANK[current]


def upgrade_path(current: Tier) -> List[str]:
    """Tiers in the same family the user could upgrade to."""
    return [t.value for t in tiers_in_family(family_of(current)) if TIER_RANK[t] > TIER_RANK[current]]


def usage_limits(tier: Tier, seats: Optional[int] = None) -> Dict[str, int]:
    """Default profile limits for a tier (creation and saving share a budget)."""
    limit = BLUEPRINT_LIMITS[tier]
    if is_team_tier(tier) and seats:
        limit = limit * seats
    return {
        "blueprint_creation_limit": limit,
        "blueprint_saving_limit": limit,
    }
