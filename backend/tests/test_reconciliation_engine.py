"""Unit tests for the entitlement reconciliation engine."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest

from backend.app.entitlements import (
    AdminOverride,
    CoachProfile,
    EntitlementLookup,
    EntitlementSnapshot,
    LocalSubscriptionRecord,
    ProviderError,
    ReconciliationAuditEvent,
    ReconciliationAuditEventType,
    ReconciliationEngine,
    ReconciliationStatus,
    StoreError,
    SubscriptionStatus,
    TierEntitlement,
    TierKey,
)
from backend.app.entitlements.service import (
    LocalSubscriptionStore,
    OverrideStore,
    ProfileStore,
    ReconciliationEventLogger,
)

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)
SUBSCRIBER = "user-1"
ACCOUNT = "coach-1"


class InMemoryProfileStore(ProfileStore):
    def __init__(self) -> None:
        self.profiles: Dict[str, CoachProfile] = {}
        self.tier_updates: List[tuple[str, TierKey]] = []
        self.fail_updates = False

    def add(self, profile: CoachProfile) -> None:
        self.profiles[profile.user_id] = profile

    def get_profile(self, subscriber_id: str) -> Optional[CoachProfile]:
        return self.profiles.get(subscriber_id)

    def update_tier(self, account_id: str, tier: TierKey) -> None:
        if self.fail_updates:
            raise StoreError("Database error during update_tier", operation="update_tier")
        self.tier_updates.append((account_id, tier))
        for user_id, profile in list(self.profiles.items()):
            if profile.account_id == account_id:
                self.profiles[user_id] = profile.model_copy(update={"tier": tier})


class InMemorySubscriptionStore(LocalSubscriptionStore):
    def __init__(self) -> None:
        self.records: Dict[str, LocalSubscriptionRecord] = {}
        self.writes: List[tuple[str, LocalSubscriptionRecord]] = []
        self.fail_writes = False

    def read(self, account_id: str) -> Optional[LocalSubscriptionRecord]:
        return self.records.get(account_id)

    def write(self, account_id: str, record: LocalSubscriptionRecord) -> None:
        if self.fail_writes:
            raise StoreError("Database error during write_subscription", operation="write_subscription")
        self.writes.append((account_id, record))
        self.records[account_id] = record


class InMemoryOverrideStore(OverrideStore):
    def __init__(self) -> None:
        self.overrides: Dict[str, AdminOverride] = {}
        self.reads: List[str] = []

    def read(self, account_id: str) -> Optional[AdminOverride]:
        self.reads.append(account_id)
        return self.overrides.get(account_id)


class FakeEntitlementClient:
    def __init__(self) -> None:
        self.snapshot: Optional[EntitlementSnapshot] = None
        self.error: Optional[ProviderError] = None
        self.calls: List[str] = []

    def fetch(self, subscriber_id: str) -> EntitlementLookup:
        self.calls.append(subscriber_id)
        if self.error is not None:
            raise self.error
        if self.snapshot is None:
            return EntitlementLookup.not_found(subscriber_id)
        return EntitlementLookup.found(subscriber_id, self.snapshot)


class FakeEventLogger(ReconciliationEventLogger):
    def __init__(self) -> None:
        self.events: List[ReconciliationAuditEvent] = []

    def log(self, event: ReconciliationAuditEvent) -> None:
        self.events.append(event)


def _snapshot(*grants: TierEntitlement) -> EntitlementSnapshot:
    return EntitlementSnapshot(entitlements={grant.tier: grant for grant in grants})


@pytest.fixture
def components():
    profiles = InMemoryProfileStore()
    subscriptions = InMemorySubscriptionStore()
    overrides = InMemoryOverrideStore()
    client = FakeEntitlementClient()
    event_logger = FakeEventLogger()
    engine = ReconciliationEngine(
        profiles=profiles,
        subscriptions=subscriptions,
        overrides=overrides,
        client=client,
        event_logger=event_logger,
        clock=lambda: NOW,
    )
    return profiles, subscriptions, overrides, client, event_logger, engine


def _seed(components, tier: TierKey, record: Optional[LocalSubscriptionRecord] = None) -> None:
    profiles, subscriptions, *_ = components
    profiles.add(CoachProfile(account_id=ACCOUNT, user_id=SUBSCRIBER, tier=tier))
    if record is not None:
        subscriptions.records[ACCOUNT] = record


def test_missing_profile_reports_no_coach_profile(components):
    _, subscriptions, _, client, _, engine = components

    result = engine.reconcile("ghost")

    assert result.status == ReconciliationStatus.NO_COACH_PROFILE
    assert result.to_payload() == {"status": "no_coach_profile", "reconciled": False}
    assert client.calls == []
    assert subscriptions.writes == []


def test_free_tier_without_subscriber_is_left_alone(components):
    _seed(components, TierKey.FREE)
    profiles, subscriptions, overrides, _, event_logger, engine = components

    result = engine.reconcile(SUBSCRIBER)

    assert result.to_payload() == {"status": "no_active_entitlement", "reconciled": False, "tier": "free"}
    assert subscriptions.writes == []
    assert profiles.tier_updates == []
    assert overrides.reads == []
    assert event_logger.events == []


def test_founder_tier_with_expired_entitlements_is_never_downgraded(components):
    _seed(
        components,
        TierKey.FOUNDER,
        LocalSubscriptionRecord(tier=TierKey.PRO, status=SubscriptionStatus.ACTIVE),
    )
    profiles, subscriptions, _, client, _, engine = components
    client.snapshot = _snapshot(TierEntitlement(tier=TierKey.PRO, expires_at=NOW - timedelta(days=2)))

    result = engine.reconcile(SUBSCRIBER)

    assert result.status == ReconciliationStatus.NO_ACTIVE_ENTITLEMENT
    assert result.tier == TierKey.FOUNDER
    assert subscriptions.writes == []
    assert profiles.tier_updates == []


def test_upgrade_writes_resolved_tier(components):
    _seed(
        components,
        TierKey.STARTER,
        LocalSubscriptionRecord(
            tier=TierKey.STARTER,
            status=SubscriptionStatus.ACTIVE,
            current_period_end=NOW + timedelta(days=3),
        ),
    )
    profiles, subscriptions, overrides, client, event_logger, engine = components
    expires = NOW + timedelta(days=30)
    client.snapshot = _snapshot(TierEntitlement(tier=TierKey.PRO, expires_at=expires))

    result = engine.reconcile(SUBSCRIBER)

    assert result.status == ReconciliationStatus.RECONCILED
    assert result.reconciled is True
    assert result.tier == TierKey.PRO
    assert result.expires_at == expires
    assert result.is_grace_period is False
    assert subscriptions.records[ACCOUNT] == LocalSubscriptionRecord(
        tier=TierKey.PRO, status=SubscriptionStatus.ACTIVE, current_period_end=expires
    )
    assert profiles.profiles[SUBSCRIBER].tier == TierKey.PRO
    assert overrides.reads == []
    assert event_logger.events[-1].event_type == ReconciliationAuditEventType.TIER_RECONCILED


def test_grace_period_maps_to_past_due(components):
    _seed(
        components,
        TierKey.PRO,
        LocalSubscriptionRecord(tier=TierKey.PRO, status=SubscriptionStatus.ACTIVE),
    )
    _, subscriptions, _, client, _, engine = components
    grace_end = NOW + timedelta(days=3)
    client.snapshot = _snapshot(
        TierEntitlement(
            tier=TierKey.PRO,
            expires_at=NOW - timedelta(hours=1),
            grace_period_expires_at=grace_end,
        )
    )

    result = engine.reconcile(SUBSCRIBER)

    assert result.status == ReconciliationStatus.RECONCILED
    assert result.reconciled is True
    assert result.is_grace_period is True
    assert result.expires_at == grace_end
    assert subscriptions.records[ACCOUNT].status == SubscriptionStatus.PAST_DUE


def test_effective_override_suppresses_downgrade(components):
    _seed(
        components,
        TierKey.ENTERPRISE,
        LocalSubscriptionRecord(tier=TierKey.ENTERPRISE, status=SubscriptionStatus.ACTIVE),
    )
    profiles, subscriptions, overrides, _, event_logger, engine = components
    overrides.overrides[ACCOUNT] = AdminOverride(tier=TierKey.ENTERPRISE, is_active=True)

    result = engine.reconcile(SUBSCRIBER)

    assert result.to_payload() == {"status": "admin_granted", "reconciled": False, "tier": "enterprise"}
    assert subscriptions.writes == []
    assert profiles.tier_updates == []
    assert event_logger.events == []


def test_expired_override_does_not_prevent_downgrade(components):
    _seed(
        components,
        TierKey.PRO,
        LocalSubscriptionRecord(tier=TierKey.PRO, status=SubscriptionStatus.ACTIVE),
    )
    _, subscriptions, overrides, _, _, engine = components
    overrides.overrides[ACCOUNT] = AdminOverride(
        tier=TierKey.PRO, is_active=True, expires_at=NOW - timedelta(seconds=1)
    )

    result = engine.reconcile(SUBSCRIBER)

    assert result.status == ReconciliationStatus.DOWNGRADED
    assert subscriptions.records[ACCOUNT].status == SubscriptionStatus.EXPIRED


def test_inactive_override_does_not_prevent_downgrade(components):
    _seed(components, TierKey.PRO)
    _, _, overrides, _, _, engine = components
    overrides.overrides[ACCOUNT] = AdminOverride(tier=TierKey.PRO, is_active=False)

    result = engine.reconcile(SUBSCRIBER)

    assert result.status == ReconciliationStatus.DOWNGRADED


def test_active_entitlement_wins_over_override(components):
    _seed(
        components,
        TierKey.ENTERPRISE,
        LocalSubscriptionRecord(tier=TierKey.ENTERPRISE, status=SubscriptionStatus.ACTIVE),
    )
    profiles, subscriptions, overrides, client, _, engine = components
    overrides.overrides[ACCOUNT] = AdminOverride(tier=TierKey.ENTERPRISE, is_active=True)
    expires = NOW + timedelta(days=10)
    client.snapshot = _snapshot(TierEntitlement(tier=TierKey.STARTER, expires_at=expires))

    result = engine.reconcile(SUBSCRIBER)

    assert result.status == ReconciliationStatus.RECONCILED
    assert result.tier == TierKey.STARTER
    assert subscriptions.records[ACCOUNT].tier == TierKey.STARTER
    assert profiles.profiles[SUBSCRIBER].tier == TierKey.STARTER
    assert overrides.reads == []


def test_not_found_downgrades_paid_tier(components):
    period_end = NOW - timedelta(days=1)
    _seed(
        components,
        TierKey.STARTER,
        LocalSubscriptionRecord(
            tier=TierKey.STARTER, status=SubscriptionStatus.ACTIVE, current_period_end=period_end
        ),
    )
    profiles, subscriptions, _, _, event_logger, engine = components

    result = engine.reconcile(SUBSCRIBER)

    assert result.to_payload() == {"status": "downgraded", "reconciled": True, "tier": "free"}
    assert profiles.profiles[SUBSCRIBER].tier == TierKey.FREE
    assert subscriptions.records[ACCOUNT] == LocalSubscriptionRecord(
        tier=TierKey.STARTER, status=SubscriptionStatus.EXPIRED, current_period_end=period_end
    )
    assert event_logger.events[-1].event_type == ReconciliationAuditEventType.TIER_DOWNGRADED


def test_found_without_active_tier_downgrades_like_not_found(components):
    _seed(
        components,
        TierKey.PRO,
        LocalSubscriptionRecord(tier=TierKey.PRO, status=SubscriptionStatus.ACTIVE),
    )
    _, subscriptions, _, client, _, engine = components
    client.snapshot = _snapshot(
        TierEntitlement(
            tier=TierKey.PRO,
            expires_at=NOW - timedelta(days=5),
            grace_period_expires_at=NOW - timedelta(days=1),
        )
    )

    result = engine.reconcile(SUBSCRIBER)

    assert result.status == ReconciliationStatus.DOWNGRADED
    assert subscriptions.records[ACCOUNT].status == SubscriptionStatus.EXPIRED


def test_downgrade_without_subscription_record_only_updates_profile(components):
    _seed(components, TierKey.PRO)
    profiles, subscriptions, _, _, _, engine = components

    result = engine.reconcile(SUBSCRIBER)

    assert result.status == ReconciliationStatus.DOWNGRADED
    assert subscriptions.writes == []
    assert profiles.tier_updates == [(ACCOUNT, TierKey.FREE)]


def test_second_run_is_a_no_op(components):
    _seed(
        components,
        TierKey.STARTER,
        LocalSubscriptionRecord(tier=TierKey.STARTER, status=SubscriptionStatus.ACTIVE),
    )
    profiles, subscriptions, _, client, event_logger, engine = components
    client.snapshot = _snapshot(TierEntitlement(tier=TierKey.PRO, expires_at=NOW + timedelta(days=30)))

    first = engine.reconcile(SUBSCRIBER)
    second = engine.reconcile(SUBSCRIBER)

    assert first.reconciled is True
    assert second.status == ReconciliationStatus.ALREADY_CORRECT
    assert second.reconciled is False
    assert len(subscriptions.writes) == 1
    assert len(profiles.tier_updates) == 1
    assert len(event_logger.events) == 1


def test_second_downgrade_run_is_a_no_op(components):
    _seed(
        components,
        TierKey.PRO,
        LocalSubscriptionRecord(tier=TierKey.PRO, status=SubscriptionStatus.ACTIVE),
    )
    profiles, subscriptions, _, _, _, engine = components

    engine.reconcile(SUBSCRIBER)
    second = engine.reconcile(SUBSCRIBER)

    assert profiles.profiles[SUBSCRIBER].tier == TierKey.FREE
    assert second.to_payload() == {"status": "no_active_entitlement", "reconciled": False, "tier": "free"}
    assert len(subscriptions.writes) == 1
    assert len(profiles.tier_updates) == 1


def test_period_end_change_triggers_write(components):
    _seed(
        components,
        TierKey.PRO,
        LocalSubscriptionRecord(
            tier=TierKey.PRO,
            status=SubscriptionStatus.ACTIVE,
            current_period_end=NOW + timedelta(days=1),
        ),
    )
    _, subscriptions, _, client, _, engine = components
    renewed = NOW + timedelta(days=31)
    client.snapshot = _snapshot(TierEntitlement(tier=TierKey.PRO, expires_at=renewed))

    result = engine.reconcile(SUBSCRIBER)

    assert result.status == ReconciliationStatus.RECONCILED
    assert subscriptions.records[ACCOUNT].current_period_end == renewed


def test_exempt_tier_is_overwritten_by_active_entitlement(components):
    _seed(components, TierKey.FOUNDER)
    profiles, subscriptions, _, client, _, engine = components
    expires = NOW + timedelta(days=30)
    client.snapshot = _snapshot(TierEntitlement(tier=TierKey.PRO, expires_at=expires))

    result = engine.reconcile(SUBSCRIBER)

    assert result.status == ReconciliationStatus.RECONCILED
    assert profiles.profiles[SUBSCRIBER].tier == TierKey.PRO
    assert subscriptions.records[ACCOUNT].tier == TierKey.PRO


def test_highest_tier_wins_when_several_are_active(components):
    _seed(components, TierKey.FREE)
    _, subscriptions, _, client, _, engine = components
    client.snapshot = _snapshot(
        TierEntitlement(tier=TierKey.STARTER, expires_at=NOW + timedelta(days=60)),
        TierEntitlement(tier=TierKey.ENTERPRISE, expires_at=NOW + timedelta(days=5)),
        TierEntitlement(tier=TierKey.PRO, expires_at=NOW + timedelta(days=30)),
    )

    result = engine.reconcile(SUBSCRIBER)

    assert result.tier == TierKey.ENTERPRISE
    assert subscriptions.records[ACCOUNT].tier == TierKey.ENTERPRISE


def test_cancelled_entitlement_reports_effective_end_date(components):
    _seed(
        components,
        TierKey.PRO,
        LocalSubscriptionRecord(tier=TierKey.PRO, status=SubscriptionStatus.ACTIVE),
    )
    _, subscriptions, _, client, _, engine = components
    expires = NOW + timedelta(days=12)
    client.snapshot = _snapshot(
        TierEntitlement(
            tier=TierKey.PRO,
            expires_at=expires,
            unsubscribe_detected_at=NOW - timedelta(days=1),
        )
    )

    result = engine.reconcile(SUBSCRIBER)

    assert result.is_cancelled is True
    assert result.effective_end_date == expires
    assert subscriptions.records[ACCOUNT].status == SubscriptionStatus.ACTIVE


@pytest.mark.parametrize(
    "tier, record",
    [
        (TierKey.FREE, None),
        (TierKey.FOUNDER, None),
        (TierKey.PRO, LocalSubscriptionRecord(tier=TierKey.PRO, status=SubscriptionStatus.ACTIVE)),
        (TierKey.ENTERPRISE, LocalSubscriptionRecord(tier=TierKey.ENTERPRISE, status=SubscriptionStatus.PAST_DUE)),
    ],
)
def test_provider_error_propagates_without_writes(components, tier, record):
    _seed(components, tier, record)
    profiles, subscriptions, overrides, client, event_logger, engine = components
    client.error = ProviderError("RevenueCat API unreachable: timed out")

    with pytest.raises(ProviderError):
        engine.reconcile(SUBSCRIBER)

    assert subscriptions.writes == []
    assert profiles.tier_updates == []
    assert overrides.reads == []
    assert event_logger.events == []


def test_write_failure_returns_error_tagged_result(components):
    _seed(
        components,
        TierKey.STARTER,
        LocalSubscriptionRecord(tier=TierKey.STARTER, status=SubscriptionStatus.ACTIVE),
    )
    _, subscriptions, _, client, event_logger, engine = components
    subscriptions.fail_writes = True
    client.snapshot = _snapshot(TierEntitlement(tier=TierKey.PRO, expires_at=NOW + timedelta(days=30)))

    result = engine.reconcile(SUBSCRIBER)

    assert result.status == ReconciliationStatus.WRITE_FAILED
    assert result.reconciled is False
    assert result.tier == TierKey.PRO
    assert result.error == "Database error during write_subscription"
    assert event_logger.events[-1].event_type == ReconciliationAuditEventType.WRITE_FAILED


def test_failed_profile_update_converges_on_next_run(components):
    _seed(
        components,
        TierKey.STARTER,
        LocalSubscriptionRecord(tier=TierKey.STARTER, status=SubscriptionStatus.ACTIVE),
    )
    profiles, subscriptions, _, client, event_logger, engine = components
    expires = NOW + timedelta(days=30)
    client.snapshot = _snapshot(TierEntitlement(tier=TierKey.PRO, expires_at=expires))
    profiles.fail_updates = True

    first = engine.reconcile(SUBSCRIBER)

    assert first.to_payload() == {
        "status": "write_failed",
        "reconciled": False,
        "tier": "pro",
        "error": "Database error during update_tier",
    }
    assert subscriptions.records[ACCOUNT].tier == TierKey.PRO
    assert profiles.profiles[SUBSCRIBER].tier == TierKey.STARTER
    assert event_logger.events[-1].event_type == ReconciliationAuditEventType.WRITE_FAILED

    profiles.fail_updates = False
    second = engine.reconcile(SUBSCRIBER)
    third = engine.reconcile(SUBSCRIBER)

    assert second.status == ReconciliationStatus.RECONCILED
    assert second.reconciled is True
    assert len(subscriptions.writes) == 1
    assert profiles.tier_updates == [(ACCOUNT, TierKey.PRO)]
    assert third.status == ReconciliationStatus.ALREADY_CORRECT


def test_downgrade_leaves_expired_record_untouched(components):
    period_end = NOW - timedelta(days=3)
    expired = LocalSubscriptionRecord(
        tier=TierKey.PRO, status=SubscriptionStatus.EXPIRED, current_period_end=period_end
    )
    _seed(components, TierKey.PRO, expired)
    profiles, subscriptions, _, _, _, engine = components

    first = engine.reconcile(SUBSCRIBER)
    # A second caller that read the profile before the first update landed.
    profiles.add(CoachProfile(account_id=ACCOUNT, user_id=SUBSCRIBER, tier=TierKey.PRO))
    second = engine.reconcile(SUBSCRIBER)

    for result in (first, second):
        assert result.to_payload() == {"status": "downgraded", "reconciled": True, "tier": "free"}
    assert subscriptions.writes == []
    assert subscriptions.records[ACCOUNT] == expired
    assert profiles.tier_updates == [(ACCOUNT, TierKey.FREE), (ACCOUNT, TierKey.FREE)]
    assert profiles.profiles[SUBSCRIBER].tier == TierKey.FREE
