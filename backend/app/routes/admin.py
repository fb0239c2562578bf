"""Admin routes for dispute resolution and ledger reconciliation.

These routes require the internal shared secret.
"""

from typing import Literal

from fastapi import APIRouter, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from sobek.escrow.coordinator import ReconcileStatus
from sobek.escrow.disputes import ResolutionStatus
from sobek.escrow.models import Resolution

from ..auth import InternalSecret
from ..logging_config import get_logger, log_escrow_event
from ..rate_limit import ADMIN_LIMIT, limiter
from ..services import Services

logger = get_logger("sobek.admin")

router = APIRouter(prefix="/api/v1/admin", tags=["admin"])


# =============================================================================
# Models
# =============================================================================


class ResolveDisputeRequest(BaseModel):
    transaction_id: str = Field(..., min_length=1)
    resolution: Literal["refund", "release"]


class ResolveDisputeResponse(BaseModel):
    status: str
    tx_hash: str | None = None


class ReconcileRequest(BaseModel):
    transaction_id: str = Field(..., min_length=1)
    resolution: Literal["refund", "release"] | None = None


# Result kind -> HTTP status. Success and manual intervention are handled separately.
RESOLUTION_HTTP_STATUS = {
    ResolutionStatus.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ResolutionStatus.CONFLICT: status.HTTP_409_CONFLICT,
    ResolutionStatus.MISSING_REGISTRATION: status.HTTP_400_BAD_REQUEST,
    ResolutionStatus.LOOKUP_FAILED: status.HTTP_503_SERVICE_UNAVAILABLE,
    ResolutionStatus.CHAIN_FAILED: status.HTTP_502_BAD_GATEWAY,
}


# =============================================================================
# Routes
# =============================================================================


@router.post("/resolve-dispute", response_model=ResolveDisputeResponse)
@limiter.limit(ADMIN_LIMIT)
async def resolve_dispute(
    request: Request,
    body: ResolveDisputeRequest,
    _: InternalSecret,
    services: Services,
):
    """
    Resolve a disputed escrow: refund the buyer or release to the seller.

    A 502 means the chain call failed and nothing moved; it is safe to retry.
    A 503 means the parties could not be loaded before the chain call; also
    safe to retry.
    A 500 with ``needs_manual_intervention`` means funds moved on-chain but the
    ledger could not be updated: do NOT retry, reconcile instead.
    """
    log_escrow_event(
        logger, "POST /admin/resolve-dispute", body.transaction_id, resolution=body.resolution
    )
    result = await services.resolver.resolve(body.transaction_id, body.resolution)

    if result.kind == ResolutionStatus.RESOLVED:
        return ResolveDisputeResponse(status=result.status.value, tx_hash=result.tx_hash)

    if result.needs_manual_intervention:
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": result.message,
                "tx_hash": result.tx_hash,
                "needs_manual_intervention": True,
            },
        )

    raise HTTPException(status_code=RESOLUTION_HTTP_STATUS[result.kind], detail=result.message)


@router.post("/reconcile")
@limiter.limit(ADMIN_LIMIT)
async def reconcile_transaction(
    request: Request,
    body: ReconcileRequest,
    _: InternalSecret,
    services: Services,
):
    """
    Repair a transaction's ledger state from the on-chain escrow slot.

    Used after a ``needs_manual_intervention`` response or for rows stuck in a
    claim state. Disputed rows whose escrow is already drained need an explicit
    ``resolution``.
    """
    log_escrow_event(logger, "POST /admin/reconcile", body.transaction_id, resolution=body.resolution)
    result = await services.coordinator.reconcile(
        body.transaction_id, Resolution(body.resolution) if body.resolution else None
    )

    if result.kind == ReconcileStatus.NOT_FOUND:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=result.message)
    if result.kind == ReconcileStatus.CHAIN_UNAVAILABLE:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=result.message)
    if result.kind in (ReconcileStatus.CONFLICT, ReconcileStatus.AMBIGUOUS):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=result.message)

    return result.to_dict()
