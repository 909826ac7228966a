"""Domain models for tier entitlements and subscription reconciliation."""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator


class TierKey(str, Enum):
    """Canonical identifiers for coach subscription tiers."""

    FREE = "free"
    STARTER = "starter"
    PRO = "pro"
    ENTERPRISE = "enterprise"
    FOUNDER = "founder"


class SubscriptionStatus(str, Enum):
    """Lifecycle state persisted on the local subscription record."""

    ACTIVE = "active"
    PAST_DUE = "past_due"
    EXPIRED = "expired"


class ReconciliationStatus(str, Enum):
    """Outcome classification reported to callers."""

    NO_COACH_PROFILE = "no_coach_profile"
    NO_ACTIVE_ENTITLEMENT = "no_active_entitlement"
    ADMIN_GRANTED = "admin_granted"
    DOWNGRADED = "downgraded"
    ALREADY_CORRECT = "already_correct"
    RECONCILED = "reconciled"
    WRITE_FAILED = "write_failed"


class TierEntitlement(BaseModel):
    """One paid tier's remote grant as reported by the entitlement provider."""

    tier: TierKey
    expires_at: datetime
    grace_period_expires_at: Optional[datetime] = None
    product_identifier: Optional[str] = None
    unsubscribe_detected_at: Optional[datetime] = None

    model_config = ConfigDict(frozen=True)

    @property
    def access_ends_at(self) -> datetime:
        if self.grace_period_expires_at and self.grace_period_expires_at > self.expires_at:
            return self.grace_period_expires_at
        return self.expires_at


class EntitlementSnapshot(BaseModel):
    """Tier grants returned by a single provider call."""

    entitlements: Dict[TierKey, TierEntitlement] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)

    def get(self, tier: TierKey) -> Optional[TierEntitlement]:
        return self.entitlements.get(tier)


class EntitlementLookup(BaseModel):
    """Classified provider response: either a snapshot or an unknown subscriber."""

    subscriber_id: str
    snapshot: Optional[EntitlementSnapshot] = None

    model_config = ConfigDict(frozen=True)

    @classmethod
    def found(cls, subscriber_id: str, snapshot: EntitlementSnapshot) -> "EntitlementLookup":
        return cls(subscriber_id=subscriber_id, snapshot=snapshot)

    @classmethod
    def not_found(cls, subscriber_id: str) -> "EntitlementLookup":
        return cls(subscriber_id=subscriber_id, snapshot=None)

    @property
    def is_found(self) -> bool:
        return self.snapshot is not None


class CoachProfile(BaseModel):
    """Local account profile holding the tier of record."""

    account_id: str
    user_id: str
    tier: TierKey = TierKey.FREE

    model_config = ConfigDict(frozen=True)


class LocalSubscriptionRecord(BaseModel):
    """Persisted subscription state for an account."""

    tier: TierKey
    status: SubscriptionStatus
    current_period_end: Optional[datetime] = None

    model_config = ConfigDict(frozen=True)

    def matches(self, other: "LocalSubscriptionRecord") -> bool:
        """Return ``True`` when tier, status and period end are all equal."""

        return (
            self.tier == other.tier
            and self.status == other.status
            and self.current_period_end == other.current_period_end
        )


class AdminOverride(BaseModel):
    """Administrator-granted tier, read-only to the reconciliation engine."""

    tier: TierKey
    is_active: bool = True
    expires_at: Optional[datetime] = None

    model_config = ConfigDict(frozen=True)

    def is_effective(self, now: datetime) -> bool:
        if not self.is_active:
            return False
        return self.expires_at is None or now < self.expires_at


class ResolvedTier(BaseModel):
    """Highest-priority tier selected from a snapshot."""

    tier: TierKey
    expires_at: datetime
    is_grace_period: bool = False
    is_cancelled: bool = False

    model_config = ConfigDict(frozen=True)

    @property
    def status(self) -> SubscriptionStatus:
        return SubscriptionStatus.PAST_DUE if self.is_grace_period else SubscriptionStatus.ACTIVE

    def to_record(self) -> LocalSubscriptionRecord:
        return LocalSubscriptionRecord(
            tier=self.tier,
            status=self.status,
            current_period_end=self.expires_at,
        )


class ReconciliationResult(BaseModel):
    """Outcome returned to the caller of a reconciliation run."""

    status: ReconciliationStatus
    reconciled: bool = False
    tier: Optional[TierKey] = None
    expires_at: Optional[datetime] = None
    is_grace_period: Optional[bool] = None
    is_cancelled: Optional[bool] = None
    effective_end_date: Optional[datetime] = None
    error: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @field_validator("reconciled")
    @classmethod
    def _written_results_only(cls, value: bool, info: ValidationInfo) -> bool:
        status = info.data.get("status")
        if value and status not in {ReconciliationStatus.RECONCILED, ReconciliationStatus.DOWNGRADED}:
            raise ValueError(f"status {status} cannot report a write")
        return value

    def to_payload(self) -> Dict[str, object]:
        """Serialize to the JSON shape exposed over HTTP, omitting absent fields."""

        return self.model_dump(mode="json", exclude_none=True)


class ReconciliationAuditEventType(str, Enum):
    """Audit event categories emitted for corrective writes."""

    TIER_RECONCILED = "tier_reconciled"
    TIER_DOWNGRADED = "tier_downgraded"
    WRITE_FAILED = "reconciliation_write_failed"


class ReconciliationAuditEvent(BaseModel):
    """Structured audit record of a corrective write attempt."""

    event_type: ReconciliationAuditEventType
    account_id: str
    subscriber_id: str
    metadata: Dict[str, str] = Field(default_factory=dict)
    occurred_at: datetime

    model_config = ConfigDict(frozen=True)
