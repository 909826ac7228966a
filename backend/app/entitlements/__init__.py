"""Entitlement reconciliation domain models and services."""

from .catalog import (
    EXEMPT_TIERS,
    PAID_TIER_PRIORITY,
    TIER_CATALOG,
    is_exempt,
    resolve_active_tier,
    tier_from_product_id,
)
from .client import EntitlementClient, RevenueCatEntitlementClient, parse_subscriber_payload
from .exceptions import (
    ConfigurationError,
    ProviderError,
    ReconciliationError,
    StoreError,
    UnauthorizedError,
)
from .models import (
    AdminOverride,
    CoachProfile,
    EntitlementLookup,
    EntitlementSnapshot,
    LocalSubscriptionRecord,
    ReconciliationAuditEvent,
    ReconciliationAuditEventType,
    ReconciliationResult,
    ReconciliationStatus,
    ResolvedTier,
    SubscriptionStatus,
    TierEntitlement,
    TierKey,
)
from .service import (
    LocalSubscriptionStore,
    OverrideStore,
    ProfileStore,
    ReconciliationEngine,
    ReconciliationEventLogger,
)

__all__ = [
    "EXEMPT_TIERS",
    "PAID_TIER_PRIORITY",
    "TIER_CATALOG",
    "is_exempt",
    "resolve_active_tier",
    "tier_from_product_id",
    "EntitlementClient",
    "RevenueCatEntitlementClient",
    "parse_subscriber_payload",
    "ConfigurationError",
    "ProviderError",
    "ReconciliationError",
    "StoreError",
    "UnauthorizedError",
    "AdminOverride",
    "CoachProfile",
    "EntitlementLookup",
    "EntitlementSnapshot",
    "LocalSubscriptionRecord",
    "ReconciliationAuditEvent",
    "ReconciliationAuditEventType",
    "ReconciliationResult",
    "ReconciliationStatus",
    "ResolvedTier",
    "SubscriptionStatus",
    "TierEntitlement",
    "TierKey",
    "LocalSubscriptionStore",
    "OverrideStore",
    "ProfileStore",
    "ReconciliationEngine",
    "ReconciliationEventLogger",
]
