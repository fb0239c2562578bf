"""
Supabase-backed ledger.

Conditional updates are expressed as chained ``.eq()`` filters on a single
``UPDATE`` request, so PostgREST executes the compare-and-swap in one
statement and returns only the rows it changed.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from sobek.escrow.errors import DuplicatePurchaseError
from sobek.escrow.models import (
    EscrowStatus,
    Product,
    ReputationEvent,
    Transaction,
    User,
    normalize_wallet,
    parse_timestamp,
    validate_status_update,
)
from sobek.escrow.storage import CONFLICT, NOT_FOUND

logger = logging.getLogger(__name__)

TRANSACTIONS_TABLE = "transactions"
PRODUCTS_TABLE = "products"
USERS_TABLE = "users"
REPUTATION_EVENTS_TABLE = "reputation_events"


def _to_column(value: Any) -> Any:
    """Convert Python values into JSON-friendly column values."""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


class SupabaseLedgerStore:
    """Ledger backed by the Supabase ``transactions``/``products``/``users`` tables."""

    def __init__(self, client):
        self.client = client

    # === Transactions ===

    async def insert_transaction(self, transaction: Transaction) -> Transaction:
        row = {k: v for k, v in transaction.to_row().items() if v is not None}
        if not transaction.id:
            row.pop("id", None)
        try:
            result = self.client.table(TRANSACTIONS_TABLE).insert(row).execute()
        except Exception as e:
            # Unique index on (chain_id, escrow_registration)
            if "duplicate" in str(e).lower() or "unique" in str(e).lower():
                raise DuplicatePurchaseError(
                    transaction.tx_hash, transaction.escrow_registration, transaction.chain_id
                ) from e
            raise
        return Transaction.from_row(result.data[0])

    async def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        result = (
            self.client.table(TRANSACTIONS_TABLE).select("*").eq("id", transaction_id).execute()
        )
        return Transaction.from_row(result.data[0]) if result.data else None

    async def find_transaction_by_tx_hash(self, tx_hash: str) -> Optional[Transaction]:
        result = (
            self.client.table(TRANSACTIONS_TABLE)
            .select("*")
            .eq("tx_hash", tx_hash)
            .limit(1)
            .execute()
        )
        return Transaction.from_row(result.data[0]) if result.data else None

    async def find_transaction_by_registration(
        self, chain_id: Optional[int], registration: int
    ) -> Optional[Transaction]:
        query = (
            self.client.table(TRANSACTIONS_TABLE)
            .select("*")
            .eq("escrow_registration", registration)
        )
        query = query.is_("chain_id", "null") if chain_id is None else query.eq("chain_id", chain_id)
        result = query.limit(1).execute()
        return Transaction.from_row(result.data[0]) if result.data else None

    async def list_sweep_candidates(self, limit: int = 500) -> List[Transaction]:
        result = (
            self.client.table(TRANSACTIONS_TABLE)
            .select("*")
            .eq("escrow_status", EscrowStatus.ACTIVE.value)
            .not_.is_("timer_handle", "null")
            .order("created_at")
            .limit(limit)
            .execute()
        )
        return [Transaction.from_row(row) for row in result.data or []]

    async def list_missing_timers(self, limit: int = 100) -> List[Transaction]:
        result = (
            self.client.table(TRANSACTIONS_TABLE)
            .select("*")
            .eq("escrow_status", EscrowStatus.ACTIVE.value)
            .is_("timer_handle", "null")
            .not_.is_("escrow_registration", "null")
            .order("created_at")
            .limit(limit)
            .execute()
        )
        return [Transaction.from_row(row) for row in result.data or []]

    async def atomic_update_status(
        self,
        transaction_id: str,
        expected_status: EscrowStatus,
        new_status: EscrowStatus,
        **updates: Any,
    ) -> Tuple[Optional[Transaction], Optional[str]]:
        validate_status_update(expected_status, new_status, updates)
        update_data = {"escrow_status": EscrowStatus(new_status).value}
        update_data.update({k: _to_column(v) for k, v in updates.items()})

        # Atomic update: only succeeds if status matches expected
        result = (
            self.client.table(TRANSACTIONS_TABLE)
            .update(update_data)
            .eq("id", transaction_id)
            .eq("escrow_status", EscrowStatus(expected_status).value)
            .execute()
        )
        if result.data:
            return Transaction.from_row(result.data[0]), None

        current = await self.get_transaction(transaction_id)
        if current is None:
            return None, NOT_FOUND
        logger.warning(
            f"Claim lost on transaction {transaction_id}: "
            f"expected '{EscrowStatus(expected_status).value}', found '{current.escrow_status.value}'"
        )
        return None, CONFLICT

    async def set_timer(
        self, transaction_id: str, timer_handle: str, release_at: datetime
    ) -> Optional[Transaction]:
        result = (
            self.client.table(TRANSACTIONS_TABLE)
            .update({"timer_handle": timer_handle, "release_at": release_at.isoformat()})
            .eq("id", transaction_id)
            .eq("escrow_status", EscrowStatus.ACTIVE.value)
            .is_("timer_handle", "null")
            .execute()
        )
        return Transaction.from_row(result.data[0]) if result.data else None

    # === Products ===

    async def insert_product(self, product: Product) -> Product:
        row = {k: v for k, v in product.to_row().items() if v is not None}
        if not product.id:
            row.pop("id", None)
        result = self.client.table(PRODUCTS_TABLE).insert(row).execute()
        return Product.from_row(result.data[0])

    async def get_product(self, product_id: str) -> Optional[Product]:
        result = self.client.table(PRODUCTS_TABLE).select("*").eq("id", product_id).execute()
        return Product.from_row(result.data[0]) if result.data else None

    async def list_products(self, limit: int = 100, offset: int = 0) -> List[Product]:
        result = (
            self.client.table(PRODUCTS_TABLE)
            .select("*")
            .order("created_at", desc=True)
            .range(offset, offset + limit - 1)
            .execute()
        )
        return [Product.from_row(row) for row in result.data or []]

    # === Users ===

    async def get_user(self, user_id: str) -> Optional[User]:
        result = self.client.table(USERS_TABLE).select("*").eq("id", user_id).execute()
        return User.from_row(result.data[0]) if result.data else None

    async def get_user_by_wallet(self, wallet_address: str) -> Optional[User]:
        # Addresses are hex only, so ilike is an exact case-insensitive match
        result = (
            self.client.table(USERS_TABLE)
            .select("*")
            .ilike("wallet_address", normalize_wallet(wallet_address))
            .limit(1)
            .execute()
        )
        return User.from_row(result.data[0]) if result.data else None

    async def upsert_user(self, wallet_address: str) -> User:
        existing = await self.get_user_by_wallet(wallet_address)
        if existing:
            return existing
        result = (
            self.client.table(USERS_TABLE)
            .upsert({"wallet_address": normalize_wallet(wallet_address)}, on_conflict="wallet_address")
            .execute()
        )
        return User.from_row(result.data[0])

    # === Reputation ===

    async def insert_reputation_event(self, event: ReputationEvent) -> str:
        result = self.client.table(REPUTATION_EVENTS_TABLE).insert(event.to_row()).execute()
        return str(result.data[0]["id"])

    async def list_reputation_events(self, wallet_address: str) -> List[ReputationEvent]:
        result = (
            self.client.table(REPUTATION_EVENTS_TABLE)
            .select("*")
            .ilike("wallet", normalize_wallet(wallet_address))
            .order("created_at")
            .execute()
        )
        return [
            ReputationEvent(
                id=str(row["id"]),
                wallet=row["wallet"],
                delta=int(row["delta"]),
                reason=row["reason"],
                transaction_id=row.get("transaction_id"),
                amount_usd=float(row.get("amount_usd") or 0),
                created_at=parse_timestamp(row.get("created_at")),
            )
            for row in result.data or []
        ]

    async def get_reputation_sum(self, wallet_address: str) -> int:
        # reputation_sum is maintained by a database trigger over reputation_events
        user = await self.get_user_by_wallet(wallet_address)
        return user.reputation_sum if user else 0

    async def seller_resolution_counts(self, seller_id: str) -> Tuple[int, int]:
        products = (
            self.client.table(PRODUCTS_TABLE).select("id").eq("agent_id", seller_id).execute()
        )
        product_ids = [row["id"] for row in products.data or []]
        if not product_ids:
            return 0, 0

        result = (
            self.client.table(TRANSACTIONS_TABLE)
            .select("escrow_status")
            .in_("product_id", product_ids)
            .in_("escrow_status", [EscrowStatus.RELEASED.value, EscrowStatus.REFUNDED.value])
            .execute()
        )
        rows: List[Dict[str, Any]] = result.data or []
        released = sum(1 for r in rows if r["escrow_status"] == EscrowStatus.RELEASED.value)
        refunded = sum(1 for r in rows if r["escrow_status"] == EscrowStatus.REFUNDED.value)
        return released, refunded
