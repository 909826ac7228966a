"""HTTP client fetching subscriber entitlements from RevenueCat."""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Protocol
from urllib import error as urllib_error, parse as urllib_parse, request as urllib_request

from .catalog import PAID_TIER_PRIORITY, tier_from_product_id
from .config import ProviderConfig
from .exceptions import ProviderError
from .models import EntitlementLookup, EntitlementSnapshot, TierEntitlement, TierKey

logger = logging.getLogger("entitlements.client")

NOT_FOUND_STATUS = 404


class EntitlementClient(Protocol):
    """Fetches the current entitlement snapshot for a subscriber."""

    def fetch(self, subscriber_id: str) -> EntitlementLookup:
        ...


class RevenueCatEntitlementClient:
    """Entitlement client backed by the RevenueCat v1 subscribers endpoint.

    Exactly one request is made per :meth:`fetch`; there is no retry. A 404
    means the provider has never seen the subscriber and is returned as a
    ``not_found`` lookup. Everything else that is not a usable 2xx body is
    raised as :class:`ProviderError`.
    """

    def __init__(self, config: ProviderConfig) -> None:
        self._config = config

    def _build_request(self, subscriber_id: str) -> urllib_request.Request:
        url = f"{self._config.base_url}/subscribers/{urllib_parse.quote(subscriber_id, safe='')}"
        return urllib_request.Request(
            url,
            headers={
                "Authorization": f"Bearer {self._config.api_secret_key}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            method="GET",
        )

    def fetch(self, subscriber_id: str) -> EntitlementLookup:
        request = self._build_request(subscriber_id)
        try:
            with urllib_request.urlopen(request, timeout=self._config.timeout_seconds) as response:
                body = response.read()
        except urllib_error.HTTPError as exc:
            if exc.code == NOT_FOUND_STATUS:
                logger.info("Subscriber unknown to provider", extra={"subscriber_id": subscriber_id})
                return EntitlementLookup.not_found(subscriber_id)
            error_text = _read_error_body(exc)
            logger.warning(
                "Entitlement provider returned an error",
                extra={"subscriber_id": subscriber_id, "provider_status": exc.code, "error": error_text},
            )
            raise ProviderError(
                f"RevenueCat API error: {exc.code}", provider_status=exc.code
            ) from exc
        except (urllib_error.URLError, TimeoutError, OSError) as exc:
            logger.warning(
                "Entitlement provider unreachable",
                extra={"subscriber_id": subscriber_id, "error": str(exc)},
            )
            raise ProviderError(f"RevenueCat API unreachable: {exc}") from exc

        try:
            payload = json.loads(body.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ProviderError("RevenueCat API returned a malformed body") from exc

        snapshot = parse_subscriber_payload(payload)
        logger.info(
            "Fetched entitlement snapshot",
            extra={
                "subscriber_id": subscriber_id,
                "tiers": sorted(tier.value for tier in snapshot.entitlements),
            },
        )
        return EntitlementLookup.found(subscriber_id, snapshot)


def parse_subscriber_payload(payload: Any) -> EntitlementSnapshot:
    """Build an :class:`EntitlementSnapshot` from a subscribers API body.

    Entitlements are keyed by tier id; subscriptions are keyed by store
    product id and mapped onto tiers. When both describe the same tier they
    are merged: the later expiry wins, and a grace window only counts beyond it.
    """

    if not isinstance(payload, dict) or not isinstance(payload.get("subscriber"), dict):
        raise ProviderError("RevenueCat API response missing subscriber object")
    subscriber = payload["subscriber"]
    raw_entitlements = subscriber.get("entitlements") or {}
    raw_subscriptions = subscriber.get("subscriptions") or {}
    if not isinstance(raw_entitlements, dict) or not isinstance(raw_subscriptions, dict):
        raise ProviderError("RevenueCat API response has malformed entitlements")

    collected: Dict[TierKey, TierEntitlement] = {}

    for entitlement_id, raw in raw_entitlements.items():
        tier = _paid_tier(entitlement_id)
        if tier is None or not isinstance(raw, Mapping):
            continue
        grant = _entitlement_from_raw(tier, raw, honour_grace=True)
        if grant is not None:
            _merge_grant(collected, grant)

    for product_id, raw in raw_subscriptions.items():
        tier = tier_from_product_id(str(product_id))
        if tier is None or not isinstance(raw, Mapping):
            continue
        # Store subscriptions only enter grace once a billing issue is flagged.
        grant = _entitlement_from_raw(
            tier,
            raw,
            honour_grace=bool(raw.get("billing_issues_detected_at")),
            product_identifier=str(product_id),
        )
        if grant is not None:
            _merge_grant(collected, grant)

    return EntitlementSnapshot(entitlements=collected)


def _paid_tier(entitlement_id: object) -> Optional[TierKey]:
    try:
        tier = TierKey(str(entitlement_id))
    except ValueError:
        return None
    return tier if tier in PAID_TIER_PRIORITY else None


def _entitlement_from_raw(
    tier: TierKey,
    raw: Mapping[str, Any],
    *,
    honour_grace: bool,
    product_identifier: Optional[str] = None,
) -> Optional[TierEntitlement]:
    expires_at = _parse_optional_datetime(raw.get("expires_date"))
    if expires_at is None:
        return None
    grace = _parse_optional_datetime(raw.get("grace_period_expires_date")) if honour_grace else None
    return TierEntitlement(
        tier=tier,
        expires_at=expires_at,
        grace_period_expires_at=grace,
        product_identifier=product_identifier or raw.get("product_identifier"),
        unsubscribe_detected_at=_parse_optional_datetime(raw.get("unsubscribe_detected_at")),
    )


def _merge_grant(collected: Dict[TierKey, TierEntitlement], grant: TierEntitlement) -> None:
    existing = collected.get(grant.tier)
    if existing is None:
        collected[grant.tier] = grant
        return
    # Paid access runs to the later expiry; grace only extends past it.
    base = grant if grant.expires_at > existing.expires_at else existing
    access_ends_at = max(grant.access_ends_at, existing.access_ends_at)
    collected[grant.tier] = base.model_copy(
        update={
            "grace_period_expires_at": access_ends_at if access_ends_at > base.expires_at else None,
        }
    )


def _parse_optional_datetime(value: object) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as exc:
            raise ProviderError(f"RevenueCat API returned an invalid timestamp: {value!r}") from exc
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise ProviderError(f"RevenueCat API returned an invalid timestamp: {value!r}")


def _read_error_body(exc: urllib_error.HTTPError) -> str:
    try:
        return exc.read().decode("utf-8", errors="replace")[:512]
    except (OSError, AttributeError, ValueError):
        return ""


__all__ = [
    "EntitlementClient",
    "NOT_FOUND_STATUS",
    "RevenueCatEntitlementClient",
    "parse_subscriber_payload",
]
