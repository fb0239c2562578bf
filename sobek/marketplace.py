"""
Marketplace operations: listing products and recording purchases.

Buyers deposit on-chain first, then record the purchase here. An escrowed
purchase becomes an ``active`` transaction with a release timer; purchases of
items without escrow are recorded with status ``none`` and never swept.
"""

import logging
from typing import List, Optional

from sobek.config import EscrowConfig
from sobek.escrow.coordinator import EscrowCoordinator
from sobek.escrow.effects import best_effort
from sobek.escrow.errors import (
    ChainError,
    DepositNotFoundError,
    DepositorMismatchError,
    DuplicatePurchaseError,
    NotFoundError,
)
from sobek.escrow.models import EscrowStatus, Product, Transaction, utc_now, wallets_match

logger = logging.getLogger(__name__)


class MarketplaceService:
    """Creates products and records purchases against them."""

    def __init__(self, coordinator: EscrowCoordinator, config: Optional[EscrowConfig] = None):
        self.coordinator = coordinator
        self.store = coordinator.store
        self.config = config or coordinator.config

    async def create_product(
        self,
        seller_wallet: str,
        title: str,
        description: str,
        price_usdc: float,
        escrow_duration_seconds: Optional[int] = None,
    ) -> Product:
        """List a new product for a seller.

        Raises:
            ValueError: invalid title, price or duration
        """
        if not title or not title.strip():
            raise ValueError("Title is required")
        if price_usdc is None or price_usdc <= 0:
            raise ValueError("Price must be greater than 0")

        duration = self.config.escrow_duration(escrow_duration_seconds)
        seller = await self.store.upsert_user(seller_wallet)
        product = await self.store.insert_product(
            Product(
                id="",
                title=title.strip(),
                description=description or "",
                price_usdc=float(price_usdc),
                agent_id=seller.id,
                escrow_duration_seconds=duration,
            )
        )
        logger.info(
            f"Product {product.id} listed by {seller_wallet} at {product.price_usdc} USDC "
            f"(escrow {duration}s)"
        )
        return product

    async def list_products(self, limit: int = 100, offset: int = 0) -> List[Product]:
        return await self.store.list_products(limit=limit, offset=offset)

    async def record_purchase(
        self,
        product_id: str,
        tx_hash: str,
        buyer_wallet: str,
        chain_id: Optional[int] = None,
        escrow_registration: Optional[int] = None,
        payment_currency: str = "USDC",
    ) -> Transaction:
        """Record a paid order and start its escrow timer.

        Raises:
            NotFoundError: product does not exist
            DuplicatePurchaseError: the deposit hash or the escrow registration
                was already recorded
            DepositNotFoundError: deposit verification is on and the
                registration holds no funds
            DepositorMismatchError: deposit verification is on and another
                wallet funded the registration
        """
        product = await self.store.get_product(product_id)
        if product is None:
            raise NotFoundError(f"Product {product_id} not found")
        # The same on-chain deposit can only be recorded once
        if await self.store.find_transaction_by_tx_hash(tx_hash):
            raise DuplicatePurchaseError(tx_hash)

        uses_escrow = escrow_registration is not None and product.uses_escrow
        chain_id = chain_id if chain_id is not None else self.config.default_chain_id

        if uses_escrow:
            # One row per on-chain deposit, or two rows could settle the same funds
            if await self.store.find_transaction_by_registration(chain_id, escrow_registration):
                raise DuplicatePurchaseError(tx_hash, escrow_registration, chain_id)
            if self.config.verify_deposits:
                await self._verify_deposit(escrow_registration, chain_id, buyer_wallet)

        buyer = await self.store.upsert_user(buyer_wallet)
        transaction = await self.store.insert_transaction(
            Transaction(
                id="",
                product_id=product.id,
                client_id=buyer.id,
                escrow_status=EscrowStatus.ACTIVE if uses_escrow else EscrowStatus.NONE,
                tx_hash=tx_hash,
                chain_id=chain_id,
                escrow_registration=escrow_registration if uses_escrow else None,
                status="paid",
                payment_currency=payment_currency,
                amount_usd=product.price_usdc,
                paid_at=utc_now(),
            )
        )
        logger.info(
            f"Recorded purchase {transaction.id} of product {product.id} by {buyer_wallet} "
            f"(escrow={'yes' if uses_escrow else 'no'})"
        )

        if uses_escrow:
            # A failed timer leaves the row active without a timer for the backfill
            with_timer = await self.coordinator.open_escrow(transaction, product.escrow_duration_seconds)
            if with_timer is not None:
                transaction = with_timer

        if product.agent_id:
            currency = "$" if payment_currency == "USDC" else ""
            await best_effort(
                "notify_seller",
                self.coordinator.notifier.notify(
                    product.agent_id,
                    f'New order for "{product.title}" ({currency}{product.price_usdc} '
                    f"{payment_currency}). Tx: {tx_hash}",
                ),
            )
        return transaction

    async def _verify_deposit(self, registration: int, chain_id: int, buyer_wallet: str) -> None:
        try:
            slot = await self.coordinator.chain.get_escrow(registration, chain_id)
        except ChainError as e:
            logger.warning(f"Could not verify deposit {registration} on chain {chain_id}: {e}")
            raise
        if not slot.is_funded:
            raise DepositNotFoundError(registration, chain_id)
        if not wallets_match(slot.depositor, buyer_wallet):
            logger.warning(
                f"Registration {registration} on chain {chain_id} was funded by {slot.depositor}, "
                f"not {buyer_wallet}"
            )
            raise DepositorMismatchError(registration, chain_id, slot.depositor)
