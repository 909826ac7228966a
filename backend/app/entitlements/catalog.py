"""Static tier catalog and priority resolution over entitlement snapshots."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, FrozenSet, Optional, Tuple

from .models import EntitlementSnapshot, ResolvedTier, TierKey


@dataclass(frozen=True)
class TierDefinition:
    """Describes a subscription tier and how reconciliation treats it."""

    key: TierKey
    exempt: bool = False


TIER_CATALOG: Dict[TierKey, TierDefinition] = {
    TierKey.FREE: TierDefinition(key=TierKey.FREE, exempt=True),
    TierKey.STARTER: TierDefinition(key=TierKey.STARTER),
    TierKey.PRO: TierDefinition(key=TierKey.PRO),
    TierKey.ENTERPRISE: TierDefinition(key=TierKey.ENTERPRISE),
    TierKey.FOUNDER: TierDefinition(key=TierKey.FOUNDER, exempt=True),
}

# Highest priority first.
PAID_TIER_PRIORITY: Tuple[TierKey, ...] = (TierKey.ENTERPRISE, TierKey.PRO, TierKey.STARTER)

EXEMPT_TIERS: FrozenSet[TierKey] = frozenset(
    definition.key for definition in TIER_CATALOG.values() if definition.exempt
)

PRODUCT_TIER_MAP: Dict[str, TierKey] = {
    # App Store
    "fitconnect.starter.monthly": TierKey.STARTER,
    "fitconnect.starter.annual": TierKey.STARTER,
    "fitconnect.pro.monthly": TierKey.PRO,
    "fitconnect.pro.annual": TierKey.PRO,
    "fitconnect.enterprise.monthly": TierKey.ENTERPRISE,
    "fitconnect.enterprise.annual": TierKey.ENTERPRISE,
    # Google Play
    "starter.monthly.play": TierKey.STARTER,
    "starter.annual.play": TierKey.STARTER,
    "pro.monthly.play": TierKey.PRO,
    "pro.annual.play": TierKey.PRO,
    "enterprise.monthly.play": TierKey.ENTERPRISE,
    "enterprise.annual.play": TierKey.ENTERPRISE,
}


def is_exempt(tier: TierKey) -> bool:
    return tier in EXEMPT_TIERS


def tier_from_product_id(product_id: str) -> Optional[TierKey]:
    """Map a store product identifier onto a paid tier.

    Known identifiers are looked up directly; anything else falls back to
    keyword matching in priority order. Boost products never map to a tier.
    """

    lowered = product_id.lower()
    if "boost" in lowered:
        return None
    mapped = PRODUCT_TIER_MAP.get(product_id)
    if mapped is not None:
        return mapped
    for tier in PAID_TIER_PRIORITY:
        if tier.value in lowered:
            return tier
    return None


def resolve_active_tier(snapshot: EntitlementSnapshot, now: datetime) -> Optional[ResolvedTier]:
    """Return the highest-priority active tier in ``snapshot``, if any.

    A tier is active while ``now < expires_at``. Past that it still counts
    while its grace window is open, and is then flagged as a grace period.
    The first tier in :data:`PAID_TIER_PRIORITY` meeting either condition
    wins; lower tiers are never considered.
    """

    for tier in PAID_TIER_PRIORITY:
        entitlement = snapshot.get(tier)
        if entitlement is None:
            continue
        is_cancelled = entitlement.unsubscribe_detected_at is not None
        if now < entitlement.expires_at:
            return ResolvedTier(
                tier=tier,
                expires_at=entitlement.expires_at,
                is_cancelled=is_cancelled,
            )
        grace_end = entitlement.grace_period_expires_at
        if grace_end is not None and now < grace_end:
            return ResolvedTier(
                tier=tier,
                expires_at=grace_end,
                is_grace_period=True,
                is_cancelled=is_cancelled,
            )
    return None


__all__ = [
    "EXEMPT_TIERS",
    "PAID_TIER_PRIORITY",
    "PRODUCT_TIER_MAP",
    "TIER_CATALOG",
    "TierDefinition",
    "is_exempt",
    "resolve_active_tier",
    "tier_from_product_id",
]
