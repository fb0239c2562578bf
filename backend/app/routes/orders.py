"""Order routes: record purchases, view them, open disputes.

The caller is identified by the wallet in their session token.
"""

from datetime import datetime

from fastapi import APIRouter, HTTPException, Path, Request, status
from pydantic import BaseModel, Field

from sobek.escrow.coordinator import DisputeStatus
from sobek.escrow.errors import (
    ChainError,
    DepositNotFoundError,
    DepositorMismatchError,
    DuplicatePurchaseError,
    NotFoundError,
)
from sobek.escrow.models import Transaction, wallets_match

from ..auth import CurrentWallet
from ..logging_config import get_logger, log_escrow_event
from ..rate_limit import ORDER_WRITE_LIMIT, READ_LIMIT, limiter
from ..services import Services

logger = get_logger("sobek.orders")
router = APIRouter(prefix="/api/v1/orders", tags=["orders"])

TX_HASH_PATTERN = r"^0x[0-9a-fA-F]{64}$"


# =============================================================================
# Models
# =============================================================================


class CreateOrderRequest(BaseModel):
    product_id: str = Field(..., min_length=1)
    tx_hash: str = Field(..., pattern=TX_HASH_PATTERN)
    escrow_registration: int | None = Field(None, ge=0)
    chain_id: int | None = None
    payment_currency: str = Field("USDC", max_length=16)


class OrderResponse(BaseModel):
    id: str
    product_id: str | None
    escrow_status: str
    tx_hash: str | None
    chain_id: int | None
    escrow_registration: int | None
    release_at: datetime | None
    escrow_resolved_to: str | None
    escrow_resolved_at: datetime | None
    dispute_initiated_at: datetime | None
    amount_usd: float | None
    payment_currency: str
    paid_at: datetime | None


class DisputeResponse(BaseModel):
    status: str
    transaction_id: str


def to_order_response(tx: Transaction) -> OrderResponse:
    return OrderResponse(
        id=tx.id,
        product_id=tx.product_id,
        escrow_status=tx.escrow_status.value,
        tx_hash=tx.tx_hash,
        chain_id=tx.chain_id,
        escrow_registration=tx.escrow_registration,
        release_at=tx.release_at,
        escrow_resolved_to=tx.escrow_resolved_to,
        escrow_resolved_at=tx.escrow_resolved_at,
        dispute_initiated_at=tx.dispute_initiated_at,
        amount_usd=tx.amount_usd,
        payment_currency=tx.payment_currency,
        paid_at=tx.paid_at,
    )


DISPUTE_HTTP_STATUS = {
    DisputeStatus.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    DisputeStatus.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    DisputeStatus.CONFLICT: status.HTTP_409_CONFLICT,
}


# =============================================================================
# Routes
# =============================================================================


@router.post("", response_model=OrderResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(ORDER_WRITE_LIMIT)
async def create_order(
    request: Request,
    body: CreateOrderRequest,
    wallet: CurrentWallet,
    services: Services,
):
    """
    Record a purchase after the on-chain deposit.

    With an ``escrow_registration`` and a product that uses escrow, the order
    starts in ``active`` escrow with a release timer. Each registration can
    back only one order.
    """
    log_escrow_event(
        logger,
        "POST /orders",
        product=body.product_id,
        wallet=wallet,
        registration=body.escrow_registration,
    )
    try:
        tx = await services.marketplace.record_purchase(
            body.product_id,
            body.tx_hash,
            wallet,
            chain_id=body.chain_id,
            escrow_registration=body.escrow_registration,
            payment_currency=body.payment_currency,
        )
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Product not found")
    except DuplicatePurchaseError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except DepositorMismatchError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    except DepositNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except ChainError as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Could not verify escrow deposit: {e}",
        )
    return to_order_response(tx)


@router.get("/{transaction_id}", response_model=OrderResponse)
@limiter.limit(READ_LIMIT)
async def get_order(
    request: Request,
    wallet: CurrentWallet,
    services: Services,
    transaction_id: str = Path(..., min_length=1),
):
    """Get an order. Visible to its buyer and seller."""
    tx = await services.store.get_transaction(transaction_id)
    if tx is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")

    parties = await services.coordinator.resolve_parties(tx)
    if not (wallets_match(parties.buyer_wallet, wallet) or wallets_match(parties.seller_wallet, wallet)):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not a party to this order")
    return to_order_response(tx)


@router.post("/{transaction_id}/dispute", response_model=DisputeResponse)
@limiter.limit(ORDER_WRITE_LIMIT)
async def dispute_order(
    request: Request,
    wallet: CurrentWallet,
    services: Services,
    transaction_id: str = Path(..., min_length=1),
):
    """
    Open a dispute on an active escrow. Only the buyer may dispute.

    Stops auto-release; an admin then refunds or releases the funds.
    """
    log_escrow_event(logger, "POST /orders/dispute", transaction_id, wallet=wallet)
    result = await services.coordinator.initiate_dispute(transaction_id, wallet)
    if not result.ok:
        raise HTTPException(status_code=DISPUTE_HTTP_STATUS[result.kind], detail=result.message)
    return DisputeResponse(status="disputed", transaction_id=transaction_id)
