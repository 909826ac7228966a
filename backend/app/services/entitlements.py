"""Application wiring for the entitlement reconciliation engine."""
from __future__ import annotations

import logging
from functools import lru_cache

from ..entitlements import (
    ReconciliationAuditEvent,
    ReconciliationEngine,
    ReconciliationEventLogger,
    RevenueCatEntitlementClient,
)
from ..entitlements.config import load_provider_config
from ..entitlements.repository import (
    PostgresOverrideStore,
    PostgresProfileStore,
    PostgresSubscriptionStore,
)


logger = logging.getLogger("entitlements.audit")


class LoggingReconciliationEventLogger(ReconciliationEventLogger):
    """Forwards reconciliation audit events to the application logger."""

    def log(self, event: ReconciliationAuditEvent) -> None:
        logger.info(
            "Reconciliation event %s account=%s subscriber=%s metadata=%s",
            event.event_type.value,
            event.account_id,
            event.subscriber_id,
            event.metadata,
        )


@lru_cache(maxsize=1)
def get_reconciliation_engine() -> ReconciliationEngine:
    config = load_provider_config()
    engine = ReconciliationEngine(
        profiles=PostgresProfileStore(),
        subscriptions=PostgresSubscriptionStore(),
        overrides=PostgresOverrideStore(),
        client=RevenueCatEntitlementClient(config),
        event_logger=LoggingReconciliationEventLogger(),
    )
    return engine


__all__ = ["get_reconciliation_engine", "LoggingReconciliationEventLogger"]
