"""Reconciliation of local subscription state against provider entitlements."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Protocol

from .catalog import is_exempt, resolve_active_tier
from .client import EntitlementClient
from .exceptions import StoreError
from .models import (
    AdminOverride,
    CoachProfile,
    LocalSubscriptionRecord,
    ReconciliationAuditEvent,
    ReconciliationAuditEventType,
    ReconciliationResult,
    ReconciliationStatus,
    ResolvedTier,
    SubscriptionStatus,
    TierKey,
)

logger = logging.getLogger("entitlements")


class ProfileStore(Protocol):
    """Looks up the local account profile for an authenticated subscriber."""

    def get_profile(self, subscriber_id: str) -> Optional[CoachProfile]:
        ...

    def update_tier(self, account_id: str, tier: TierKey) -> None:
        ...


class LocalSubscriptionStore(Protocol):
    """Read/write access to the persisted subscription record."""

    def read(self, account_id: str) -> Optional[LocalSubscriptionRecord]:
        ...

    def write(self, account_id: str, record: LocalSubscriptionRecord) -> None:
        ...


class OverrideStore(Protocol):
    """Read-only access to administrator-granted tier overrides."""

    def read(self, account_id: str) -> Optional[AdminOverride]:
        ...


class ReconciliationEventLogger(Protocol):
    """Captures audit events for corrective writes."""

    def log(self, event: ReconciliationAuditEvent) -> None:
        ...


@dataclass(frozen=True)
class ReconciliationDecision:
    """Pure outcome of the decision table, before any write happens."""

    status: ReconciliationStatus
    tier: Optional[TierKey]
    resolved: Optional[ResolvedTier] = None
    override: Optional[AdminOverride] = None
    profile_tier: Optional[TierKey] = None
    record: Optional[LocalSubscriptionRecord] = None

    @property
    def requires_write(self) -> bool:
        return self.profile_tier is not None or self.record is not None


def decide_active(
    profile: CoachProfile,
    current: Optional[LocalSubscriptionRecord],
    resolved: ResolvedTier,
) -> ReconciliationDecision:
    """Decision for a snapshot with an active tier.

    Exempt profile tiers are overwritten here too: a live paid entitlement
    always wins once resolved.
    """

    target = resolved.to_record()
    profile_tier = resolved.tier if profile.tier != resolved.tier else None
    record = target if current is None or not current.matches(target) else None
    status = (
        ReconciliationStatus.RECONCILED
        if profile_tier is not None or record is not None
        else ReconciliationStatus.ALREADY_CORRECT
    )
    return ReconciliationDecision(
        status=status,
        tier=resolved.tier,
        resolved=resolved,
        profile_tier=profile_tier,
        record=record,
    )


def decide_inactive(
    profile: CoachProfile,
    current: Optional[LocalSubscriptionRecord],
    override: Optional[AdminOverride],
    now: datetime,
) -> ReconciliationDecision:
    """Decision when the provider reports no active tier, or no subscriber at all."""

    if is_exempt(profile.tier):
        return ReconciliationDecision(status=ReconciliationStatus.NO_ACTIVE_ENTITLEMENT, tier=profile.tier)

    if override is not None and override.is_effective(now):
        return ReconciliationDecision(
            status=ReconciliationStatus.ADMIN_GRANTED,
            tier=override.tier,
            override=override,
        )

    record = None
    if current is not None and current.status != SubscriptionStatus.EXPIRED:
        record = current.model_copy(update={"status": SubscriptionStatus.EXPIRED})
    return ReconciliationDecision(
        status=ReconciliationStatus.DOWNGRADED,
        tier=TierKey.FREE,
        profile_tier=TierKey.FREE,
        record=record,
    )


@dataclass(slots=True)
class ReconciliationEngine:
    """Brings the local tier of record in line with the entitlement provider.

    Each call is a single-shot unit of work: one provider fetch, at most one
    corrective write per store, no retries and no locking. Provider failures
    propagate as :class:`~.exceptions.ProviderError`; every other outcome is
    returned as a :class:`ReconciliationResult`.
    """

    profiles: ProfileStore
    subscriptions: LocalSubscriptionStore
    overrides: OverrideStore
    client: EntitlementClient
    event_logger: ReconciliationEventLogger
    clock: Callable[[], datetime] = field(default=lambda: datetime.now(timezone.utc))

    def reconcile(self, subscriber_id: str) -> ReconciliationResult:
        profile = self.profiles.get_profile(subscriber_id)
        if profile is None:
            logger.info("No coach profile found", extra={"subscriber_id": subscriber_id})
            return ReconciliationResult(status=ReconciliationStatus.NO_COACH_PROFILE)

        logger.info(
            "Verifying subscription entitlement",
            extra={"subscriber_id": subscriber_id, "account_id": profile.account_id, "current_tier": profile.tier.value},
        )
        current = self.subscriptions.read(profile.account_id)

        lookup = self.client.fetch(subscriber_id)
        now = self.clock()
        resolved = resolve_active_tier(lookup.snapshot, now) if lookup.snapshot is not None else None

        if resolved is not None:
            decision = decide_active(profile, current, resolved)
        else:
            override = None if is_exempt(profile.tier) else self.overrides.read(profile.account_id)
            decision = decide_inactive(profile, current, override, now)

        logger.info(
            "Reconciliation decision",
            extra={
                "account_id": profile.account_id,
                "status": decision.status.value,
                "from_tier": profile.tier.value,
                "to_tier": decision.tier.value if decision.tier else None,
                "write": decision.requires_write,
            },
        )

        if decision.requires_write:
            try:
                self._apply(profile, decision)
            except StoreError as exc:
                logger.exception(
                    "Failed to persist reconciliation",
                    extra={"account_id": profile.account_id, "operation": exc.operation},
                )
                self._audit(
                    ReconciliationAuditEventType.WRITE_FAILED,
                    profile,
                    subscriber_id,
                    {"intended_status": decision.status.value, "error": exc.message},
                )
                return ReconciliationResult(
                    status=ReconciliationStatus.WRITE_FAILED,
                    tier=decision.tier,
                    error=exc.message,
                )
            self._audit(
                ReconciliationAuditEventType.TIER_DOWNGRADED
                if decision.status == ReconciliationStatus.DOWNGRADED
                else ReconciliationAuditEventType.TIER_RECONCILED,
                profile,
                subscriber_id,
                {"from_tier": profile.tier.value, "to_tier": decision.tier.value if decision.tier else ""},
            )

        return self._result(decision)

    def _apply(self, profile: CoachProfile, decision: ReconciliationDecision) -> None:
        if decision.record is not None:
            self.subscriptions.write(profile.account_id, decision.record)
        if decision.profile_tier is not None:
            self.profiles.update_tier(profile.account_id, decision.profile_tier)

    def _audit(
        self,
        event_type: ReconciliationAuditEventType,
        profile: CoachProfile,
        subscriber_id: str,
        metadata: Dict[str, str],
    ) -> None:
        self.event_logger.log(
            ReconciliationAuditEvent(
                event_type=event_type,
                account_id=profile.account_id,
                subscriber_id=subscriber_id,
                metadata=metadata,
                occurred_at=self.clock(),
            )
        )

    def _result(self, decision: ReconciliationDecision) -> ReconciliationResult:
        if decision.resolved is not None:
            resolved = decision.resolved
            return ReconciliationResult(
                status=decision.status,
                reconciled=decision.requires_write,
                tier=resolved.tier,
                expires_at=resolved.expires_at,
                is_grace_period=resolved.is_grace_period,
                is_cancelled=resolved.is_cancelled,
                effective_end_date=resolved.expires_at if resolved.is_cancelled else None,
            )
        if decision.override is not None:
            return ReconciliationResult(
                status=decision.status,
                tier=decision.override.tier,
                expires_at=decision.override.expires_at,
            )
        return ReconciliationResult(
            status=decision.status,
            reconciled=decision.requires_write,
            tier=decision.tier,
        )


__all__ = [
    "LocalSubscriptionStore",
    "OverrideStore",
    "ProfileStore",
    "ReconciliationDecision",
    "ReconciliationEngine",
    "ReconciliationEventLogger",
    "decide_active",
    "decide_inactive",
]
