"""
Ledger storage layer.

The ledger is the authoritative record of every escrowed transaction. All
status changes go through ``atomic_update_status``, a single compare-and-swap
("update ... where id = ? and escrow_status = ?"), which is the only mutual
exclusion mechanism between concurrent sweeps and user/admin actions.
"""

import logging
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Tuple

from sobek.escrow.errors import DuplicatePurchaseError
from sobek.escrow.models import (
    EscrowStatus,
    Product,
    ReputationEvent,
    Transaction,
    User,
    normalize_wallet,
    utc_now,
    validate_status_update,
)

logger = logging.getLogger(__name__)

# Reasons returned by atomic_update_status when the update matched no row
NOT_FOUND = "not_found"
CONFLICT = "conflict"


class LedgerStore(Protocol):
    """Protocol for ledger persistence backends."""

    # Transactions
    async def insert_transaction(self, transaction: Transaction) -> Transaction:
        """Insert a new transaction row. Returns the stored row.

        Raises:
            DuplicatePurchaseError: another row already holds the same
                ``(chain_id, escrow_registration)``
        """
        ...

    async def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        """Get a transaction by ID."""
        ...

    async def find_transaction_by_tx_hash(self, tx_hash: str) -> Optional[Transaction]:
        """Get the transaction recorded for a deposit hash."""
        ...

    async def find_transaction_by_registration(
        self, chain_id: Optional[int], registration: int
    ) -> Optional[Transaction]:
        """Get the transaction holding an on-chain escrow registration."""
        ...

    async def list_sweep_candidates(self, limit: int = 500) -> List[Transaction]:
        """Active escrows that have a registered timer."""
        ...

    async def list_missing_timers(self, limit: int = 100) -> List[Transaction]:
        """Active escrows whose timer registration never completed."""
        ...

    async def atomic_update_status(
        self,
        transaction_id: str,
        expected_status: EscrowStatus,
        new_status: EscrowStatus,
        **updates: Any,
    ) -> Tuple[Optional[Transaction], Optional[str]]:
        """Compare-and-swap the escrow status.

        Returns:
            (transaction, None) on success, (None, "not_found") when the row
            does not exist, (None, "conflict") when its status differed.

        Raises:
            ValueError: the edge is not in the state machine, or ``updates``
                names an immutable column
        """
        ...

    async def set_timer(
        self, transaction_id: str, timer_handle: str, release_at: datetime
    ) -> Optional[Transaction]:
        """Attach a timer to an active row that has none. None if the precondition failed."""
        ...

    # Products
    async def insert_product(self, product: Product) -> Product:
        ...

    async def get_product(self, product_id: str) -> Optional[Product]:
        ...

    async def list_products(self, limit: int = 100, offset: int = 0) -> List[Product]:
        ...

    # Users
    async def get_user(self, user_id: str) -> Optional[User]:
        ...

    async def get_user_by_wallet(self, wallet_address: str) -> Optional[User]:
        ...

    async def upsert_user(self, wallet_address: str) -> User:
        """Return the user for a wallet, creating it on first sight."""
        ...

    # Reputation (append-only)
    async def insert_reputation_event(self, event: ReputationEvent) -> str:
        """Append a reputation event. Returns the event ID."""
        ...

    async def list_reputation_events(self, wallet_address: str) -> List[ReputationEvent]:
        ...

    async def get_reputation_sum(self, wallet_address: str) -> int:
        ...

    async def seller_resolution_counts(self, seller_id: str) -> Tuple[int, int]:
        """(released, refunded) counts over the seller's escrow transactions."""
        ...


class InMemoryLedgerStore:
    """In-memory ledger for testing and local development.

    A lock makes each compare-and-swap atomic, matching the single round-trip
    conditional update of the database backend. Every status write is appended
    to ``status_history`` so tests can inspect the exact sequence of edges.
    """

    def __init__(self):
        """Initialize empty storage."""
        self._lock = threading.Lock()
        self._transactions: Dict[str, Transaction] = {}
        self._products: Dict[str, Product] = {}
        self._users: Dict[str, User] = {}
        self._events: List[ReputationEvent] = []
        self.status_history: Dict[str, List[Tuple[EscrowStatus, EscrowStatus]]] = {}

    # === Transactions ===

    async def insert_transaction(self, transaction: Transaction) -> Transaction:
        stored = replace(
            transaction,
            id=transaction.id or str(uuid.uuid4()),
            created_at=transaction.created_at or utc_now(),
        )
        with self._lock:
            if stored.escrow_registration is not None and self._holder_of(
                stored.chain_id, stored.escrow_registration
            ):
                raise DuplicatePurchaseError(
                    stored.tx_hash, stored.escrow_registration, stored.chain_id
                )
            self._transactions[stored.id] = stored
            self.status_history[stored.id] = []
        return replace(stored)

    async def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        with self._lock:
            tx = self._transactions.get(transaction_id)
            return replace(tx) if tx else None

    async def find_transaction_by_tx_hash(self, tx_hash: str) -> Optional[Transaction]:
        with self._lock:
            for tx in self._transactions.values():
                if tx.tx_hash and tx.tx_hash.lower() == tx_hash.lower():
                    return replace(tx)
        return None

    def _holder_of(self, chain_id: Optional[int], registration: int) -> Optional[Transaction]:
        for tx in self._transactions.values():
            if tx.escrow_registration == registration and tx.chain_id == chain_id:
                return tx
        return None

    async def find_transaction_by_registration(
        self, chain_id: Optional[int], registration: int
    ) -> Optional[Transaction]:
        with self._lock:
            tx = self._holder_of(chain_id, registration)
            return replace(tx) if tx else None

    async def list_sweep_candidates(self, limit: int = 500) -> List[Transaction]:
        with self._lock:
            rows = [
                replace(t)
                for t in self._transactions.values()
                if t.escrow_status == EscrowStatus.ACTIVE and t.timer_handle is not None
            ]
        rows.sort(key=lambda t: t.created_at or utc_now())
        return rows[:limit]

    async def list_missing_timers(self, limit: int = 100) -> List[Transaction]:
        with self._lock:
            rows = [
                replace(t)
                for t in self._transactions.values()
                if t.escrow_status == EscrowStatus.ACTIVE
                and t.timer_handle is None
                and t.escrow_registration is not None
            ]
        rows.sort(key=lambda t: t.created_at or utc_now())
        return rows[:limit]

    async def atomic_update_status(
        self,
        transaction_id: str,
        expected_status: EscrowStatus,
        new_status: EscrowStatus,
        **updates: Any,
    ) -> Tuple[Optional[Transaction], Optional[str]]:
        validate_status_update(expected_status, new_status, updates)
        with self._lock:
            tx = self._transactions.get(transaction_id)
            if tx is None:
                return None, NOT_FOUND
            if tx.escrow_status != expected_status:
                logger.debug(
                    f"CAS miss on {transaction_id}: expected '{EscrowStatus(expected_status).value}', "
                    f"found '{tx.escrow_status.value}'"
                )
                return None, CONFLICT
            updated = replace(tx, escrow_status=EscrowStatus(new_status), **updates)
            self._transactions[transaction_id] = updated
            self.status_history.setdefault(transaction_id, []).append(
                (EscrowStatus(expected_status), EscrowStatus(new_status))
            )
            return replace(updated), None

    async def set_timer(
        self, transaction_id: str, timer_handle: str, release_at: datetime
    ) -> Optional[Transaction]:
        with self._lock:
            tx = self._transactions.get(transaction_id)
            if tx is None or tx.escrow_status != EscrowStatus.ACTIVE or tx.timer_handle is not None:
                return None
            updated = replace(tx, timer_handle=timer_handle, release_at=release_at)
            self._transactions[transaction_id] = updated
            return replace(updated)

    # === Products ===

    async def insert_product(self, product: Product) -> Product:
        stored = replace(
            product,
            id=product.id or str(uuid.uuid4()),
            created_at=product.created_at or utc_now(),
        )
        with self._lock:
            self._products[stored.id] = stored
        return replace(stored)

    async def get_product(self, product_id: str) -> Optional[Product]:
        product = self._products.get(product_id)
        return replace(product) if product else None

    async def list_products(self, limit: int = 100, offset: int = 0) -> List[Product]:
        products = sorted(
            self._products.values(), key=lambda p: p.created_at or utc_now(), reverse=True
        )
        return [replace(p) for p in products[offset : offset + limit]]

    # === Users ===

    async def get_user(self, user_id: str) -> Optional[User]:
        user = self._users.get(user_id)
        if not user:
            return None
        return replace(user, reputation_sum=self._sum_for(user.wallet_address))

    async def get_user_by_wallet(self, wallet_address: str) -> Optional[User]:
        wallet = normalize_wallet(wallet_address)
        for user in self._users.values():
            if normalize_wallet(user.wallet_address) == wallet:
                return replace(user, reputation_sum=self._sum_for(user.wallet_address))
        return None

    async def upsert_user(self, wallet_address: str) -> User:
        with self._lock:
            wallet = normalize_wallet(wallet_address)
            for user in self._users.values():
                if normalize_wallet(user.wallet_address) == wallet:
                    return replace(user)
            user = User(id=str(uuid.uuid4()), wallet_address=wallet_address)
            self._users[user.id] = user
            return replace(user)

    def set_telegram_chat(self, user_id: str, chat_id: Optional[int]) -> None:
        """Link a Telegram chat to a user (local development helper)."""
        with self._lock:
            self._users[user_id] = replace(self._users[user_id], telegram_chat_id=chat_id)

    # === Reputation ===

    async def insert_reputation_event(self, event: ReputationEvent) -> str:
        stored = replace(event, id=event.id or str(uuid.uuid4()), created_at=utc_now())
        with self._lock:
            self._events.append(stored)
        return stored.id

    async def list_reputation_events(self, wallet_address: str) -> List[ReputationEvent]:
        wallet = normalize_wallet(wallet_address)
        return [e for e in self._events if normalize_wallet(e.wallet) == wallet]

    async def get_reputation_sum(self, wallet_address: str) -> int:
        return self._sum_for(wallet_address)

    def _sum_for(self, wallet_address: str) -> int:
        wallet = normalize_wallet(wallet_address)
        return sum(e.delta for e in self._events if normalize_wallet(e.wallet) == wallet)

    async def seller_resolution_counts(self, seller_id: str) -> Tuple[int, int]:
        product_ids = {p.id for p in self._products.values() if p.agent_id == seller_id}
        released = refunded = 0
        with self._lock:
            for tx in self._transactions.values():
                if tx.product_id not in product_ids:
                    continue
                if tx.escrow_status == EscrowStatus.RELEASED:
                    released += 1
                elif tx.escrow_status == EscrowStatus.REFUNDED:
                    refunded += 1
        return released, refunded
