"""Product routes."""

from datetime import datetime

from fastapi import APIRouter, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from sobek.escrow.models import Product

from ..auth import CurrentWallet
from ..logging_config import get_logger
from ..rate_limit import ORDER_WRITE_LIMIT, READ_LIMIT, limiter
from ..services import Services

logger = get_logger("sobek.products")
router = APIRouter(prefix="/api/v1/products", tags=["products"])


class CreateProductRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field("", max_length=5000)
    price_usdc: float = Field(..., gt=0)
    # Omit for the default hold; 0 disables escrow
    escrow_duration_seconds: int | None = Field(None, ge=0)


class ProductResponse(BaseModel):
    id: str
    title: str
    description: str
    price_usdc: float
    agent_id: str | None
    escrow_duration_seconds: int
    created_at: datetime | None


def to_product_response(product: Product) -> ProductResponse:
    return ProductResponse(
        id=product.id,
        title=product.title,
        description=product.description,
        price_usdc=product.price_usdc,
        agent_id=product.agent_id,
        escrow_duration_seconds=product.escrow_duration_seconds,
        created_at=product.created_at,
    )


@router.post("", response_model=ProductResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(ORDER_WRITE_LIMIT)
async def create_product(
    request: Request,
    body: CreateProductRequest,
    wallet: CurrentWallet,
    services: Services,
):
    """List a product. The caller's wallet becomes the seller."""
    logger.info(f"POST /products | seller={wallet} | price={body.price_usdc}")
    try:
        product = await services.marketplace.create_product(
            wallet,
            body.title,
            body.description,
            body.price_usdc,
            escrow_duration_seconds=body.escrow_duration_seconds,
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return to_product_response(product)


@router.get("", response_model=list[ProductResponse])
@limiter.limit(READ_LIMIT)
async def list_products(
    request: Request,
    services: Services,
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    """List products, newest first."""
    products = await services.marketplace.list_products(limit=limit, offset=offset)
    return [to_product_response(p) for p in products]
