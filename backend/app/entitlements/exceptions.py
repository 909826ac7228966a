"""Errors raised at the I/O boundaries of entitlement reconciliation."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from fastapi import status


@dataclass(eq=False)
class ReconciliationError(Exception):
    """Failure surfaced to API callers as ``{"error": message}``."""

    code: str
    message: str
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __post_init__(self) -> None:
        super().__init__(self.message)

    @property
    def payload(self) -> Mapping[str, Any]:
        """Serialized representation suitable for JSON responses."""

        return {"error": self.message}


class UnauthorizedError(ReconciliationError):
    """Caller identity is missing or invalid."""

    def __init__(self, message: str = "Unauthorized") -> None:
        super().__init__(
            code="unauthorized",
            message=message,
            status_code=status.HTTP_401_UNAUTHORIZED,
        )


class ProviderError(ReconciliationError):
    """Entitlement provider was unreachable or answered with something unusable.

    Never to be read as "no active tier": a transient outage must not downgrade.
    """

    def __init__(self, message: str, *, provider_status: Optional[int] = None) -> None:
        super().__init__(code="provider_error", message=message)
        self.provider_status = provider_status

    def log_context(self) -> Dict[str, Any]:
        return {"provider_status": self.provider_status, "error": self.message}


class StoreError(ReconciliationError):
    """Local persistence failed."""

    def __init__(self, message: str, *, operation: str) -> None:
        super().__init__(code="store_error", message=message)
        self.operation = operation


class ConfigurationError(ReconciliationError):
    """Required settings are missing or malformed."""

    def __init__(self, message: str) -> None:
        super().__init__(code="configuration_error", message=message)


__all__ = [
    "ConfigurationError",
    "ProviderError",
    "ReconciliationError",
    "StoreError",
    "UnauthorizedError",
]
