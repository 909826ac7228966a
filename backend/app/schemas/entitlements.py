"""API schemas for entitlement verification endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from ..entitlements import ReconciliationResult, ReconciliationStatus, TierKey


class VerifyEntitlementResponse(BaseModel):
    status: ReconciliationStatus
    reconciled: bool
    tier: Optional[TierKey] = None
    expires_at: Optional[datetime] = None
    is_grace_period: Optional[bool] = None
    is_cancelled: Optional[bool] = None
    effective_end_date: Optional[datetime] = None
    error: Optional[str] = None

    @classmethod
    def from_result(cls, result: ReconciliationResult) -> "VerifyEntitlementResponse":
        return cls.model_validate(result.model_dump())


class ErrorResponse(BaseModel):
    error: str
