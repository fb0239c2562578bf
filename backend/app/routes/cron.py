"""Cron routes for escrow maintenance.

These should be called periodically by the scheduler with the internal secret:
- escrow-release: release every active escrow whose timer has fired
- escrow-timers: attach timers to escrows whose timer registration failed
"""

from fastapi import APIRouter, Query, Request
from pydantic import BaseModel

from ..auth import InternalSecret
from ..logging_config import get_logger
from ..rate_limit import CRON_LIMIT, limiter
from ..services import Services

logger = get_logger("sobek.cron")
router = APIRouter(prefix="/api/v1/cron", tags=["cron"])


class SweepResult(BaseModel):
    transaction_id: str
    outcome: str
    detail: str | None = None
    critical: bool = False
    tx_hash: str | None = None


class SweepResponse(BaseModel):
    processed: int
    results: list[SweepResult]


class TimerBackfillResult(BaseModel):
    transaction_id: str
    registered: bool
    timer_handle: str | None = None
    detail: str | None = None


class TimerBackfillResponse(BaseModel):
    processed: int
    registered: int
    results: list[TimerBackfillResult]


@router.get("/escrow-release", response_model=SweepResponse)
@limiter.limit(CRON_LIMIT)
async def escrow_release(
    request: Request,
    _: InternalSecret,
    services: Services,
    limit: int = Query(500, ge=1, le=1000),
):
    """
    Auto-release sweep.

    Outcomes per transaction: ``released``, ``pending``, ``already_claimed``,
    ``error`` or ``missing_registration``. ``critical: true`` marks a release
    that succeeded on-chain but could not be recorded.
    """
    logger.info(f"GET /cron/escrow-release | limit={limit}")
    outcomes = await services.coordinator.run_sweep(limit=limit)
    return SweepResponse(
        processed=len(outcomes),
        results=[SweepResult(**o.to_dict()) for o in outcomes],
    )


@router.get("/escrow-timers", response_model=TimerBackfillResponse)
@limiter.limit(CRON_LIMIT)
async def escrow_timers(
    request: Request,
    _: InternalSecret,
    services: Services,
    limit: int = Query(100, ge=1, le=500),
):
    """Register release timers for active escrows that have none."""
    logger.info(f"GET /cron/escrow-timers | limit={limit}")
    outcomes = await services.coordinator.register_missing_timers(limit=limit)
    return TimerBackfillResponse(
        processed=len(outcomes),
        registered=sum(1 for o in outcomes if o.registered),
        results=[TimerBackfillResult(**o.to_dict()) for o in outcomes],
    )
