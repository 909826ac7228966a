"""API routes exposing subscription entitlement verification."""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header

from ... import app_context
from ..entitlements import ProviderError
from ..schemas.entitlements import ErrorResponse, VerifyEntitlementResponse
from ..services.entitlements import get_reconciliation_engine

logger = logging.getLogger("entitlements.routes")


def _get_current_user(authorization: Optional[str] = Header(None)):
    return app_context.get_current_user(authorization=authorization)


router = APIRouter(prefix="/api/subscriptions", tags=["subscriptions"])


@router.post(
    "/verify-entitlement",
    response_model=VerifyEntitlementResponse,
    response_model_exclude_none=True,
    responses={401: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
def verify_entitlement(
    *,
    current_user=Depends(_get_current_user),
) -> VerifyEntitlementResponse:
    engine = get_reconciliation_engine()
    subscriber_id = str(current_user.id)
    try:
        result = engine.reconcile(subscriber_id)
    except ProviderError as exc:
        logger.warning(
            "Entitlement verification aborted by provider failure",
            extra={"subscriber_id": subscriber_id, **exc.log_context()},
        )
        raise
    return VerifyEntitlementResponse.from_result(result)
