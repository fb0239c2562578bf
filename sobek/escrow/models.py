"""
Escrow data models.

Transactions, products, users and reputation events as stored in the ledger,
plus the escrow status state machine.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional


def utc_now() -> datetime:
    """Current UTC time."""
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a timestamp column (ISO string or datetime) into an aware datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def normalize_wallet(address: Optional[str]) -> str:
    """Lowercase an EVM address for comparison."""
    if not address:
        return ""
    return address.strip().lower()


def wallets_match(a: Optional[str], b: Optional[str]) -> bool:
    """Case-insensitive wallet comparison. Empty addresses never match."""
    left, right = normalize_wallet(a), normalize_wallet(b)
    return bool(left) and left == right


# =============================================================================
# State machine
# =============================================================================


class EscrowStatus(str, Enum):
    """Escrow lifecycle status of a transaction."""

    NONE = "none"  # Purchase did not use escrow
    ACTIVE = "active"  # Funds held, timer running
    RELEASING = "releasing"  # Claimed for release to the seller
    DISPUTED = "disputed"  # Buyer raised a dispute
    REFUNDING = "refunding"  # Claimed for refund to the buyer
    RELEASED = "released"
    REFUNDED = "refunded"


class Resolution(str, Enum):
    """Admin outcome for a disputed transaction."""

    REFUND = "refund"  # Buyer wins
    RELEASE = "release"  # Seller wins

    @property
    def claim_status(self) -> EscrowStatus:
        return EscrowStatus.REFUNDING if self is Resolution.REFUND else EscrowStatus.RELEASING

    @property
    def terminal_status(self) -> EscrowStatus:
        return EscrowStatus.REFUNDED if self is Resolution.REFUND else EscrowStatus.RELEASED


TERMINAL_STATUSES: FrozenSet[EscrowStatus] = frozenset(
    {EscrowStatus.NONE, EscrowStatus.RELEASED, EscrowStatus.REFUNDED}
)

# States that grant the holder the exclusive right to call the chain
CLAIM_STATUSES: FrozenSet[EscrowStatus] = frozenset(
    {EscrowStatus.RELEASING, EscrowStatus.REFUNDING}
)

VALID_ESCROW_TRANSITIONS: Dict[EscrowStatus, FrozenSet[EscrowStatus]] = {
    EscrowStatus.NONE: frozenset(),
    EscrowStatus.ACTIVE: frozenset({EscrowStatus.RELEASING, EscrowStatus.DISPUTED}),
    EscrowStatus.RELEASING: frozenset(
        {EscrowStatus.RELEASED, EscrowStatus.ACTIVE, EscrowStatus.DISPUTED}
    ),
    EscrowStatus.DISPUTED: frozenset({EscrowStatus.RELEASING, EscrowStatus.REFUNDING}),
    EscrowStatus.REFUNDING: frozenset({EscrowStatus.REFUNDED, EscrowStatus.DISPUTED}),
    EscrowStatus.RELEASED: frozenset(),
    EscrowStatus.REFUNDED: frozenset(),
}


def can_transition(from_status: EscrowStatus, to_status: EscrowStatus) -> bool:
    """Check whether an escrow status edge exists."""
    return EscrowStatus(to_status) in VALID_ESCROW_TRANSITIONS.get(EscrowStatus(from_status), frozenset())


# Identify the row and its on-chain escrow; never rewritten by a status update
IMMUTABLE_COLUMNS: FrozenSet[str] = frozenset(
    {"id", "escrow_status", "escrow_registration", "chain_id"}
)


def validate_status_update(
    from_status: EscrowStatus, to_status: EscrowStatus, updates: Dict[str, Any]
) -> None:
    """Reject status writes that skip an edge or touch immutable columns.

    Raises:
        ValueError: the edge does not exist or ``updates`` names an
            immutable column
    """
    if not can_transition(from_status, to_status):
        raise ValueError(
            f"Invalid escrow transition: {EscrowStatus(from_status).value} -> "
            f"{EscrowStatus(to_status).value}"
        )
    forbidden = sorted(IMMUTABLE_COLUMNS.intersection(updates))
    if forbidden:
        raise ValueError(f"Cannot change {', '.join(forbidden)} in a status update")


# =============================================================================
# Records
# =============================================================================


@dataclass
class Transaction:
    """An escrowed purchase as recorded in the ledger."""

    id: str
    product_id: Optional[str]
    client_id: Optional[str]  # Buyer user id
    escrow_status: EscrowStatus
    tx_hash: Optional[str] = None
    chain_id: Optional[int] = None
    escrow_registration: Optional[int] = None  # On-chain handle, immutable once set
    timer_handle: Optional[str] = None
    release_at: Optional[datetime] = None
    escrow_resolved_to: Optional[str] = None
    escrow_resolved_at: Optional[datetime] = None
    dispute_initiated_by: Optional[str] = None
    dispute_initiated_at: Optional[datetime] = None
    status: str = "paid"
    payment_currency: str = "USDC"
    amount_usd: Optional[float] = None
    paid_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.escrow_status in TERMINAL_STATUSES

    @property
    def prior_status_for_claim(self) -> EscrowStatus:
        """The state a claim on this row reverts to.

        Claims taken from a dispute return to ``disputed``; the sweep's release
        claim returns to ``active``.
        """
        return EscrowStatus.DISPUTED if self.dispute_initiated_by else EscrowStatus.ACTIVE

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Transaction":
        registration = row.get("escrow_registration")
        chain_id = row.get("chain_id")
        amount = row.get("amount_usd")
        return cls(
            id=str(row["id"]),
            product_id=row.get("product_id"),
            client_id=row.get("client_id"),
            escrow_status=EscrowStatus(row.get("escrow_status") or EscrowStatus.NONE.value),
            tx_hash=row.get("tx_hash"),
            chain_id=int(chain_id) if chain_id is not None else None,
            escrow_registration=int(registration) if registration is not None else None,
            timer_handle=row.get("timer_handle"),
            release_at=parse_timestamp(row.get("release_at")),
            escrow_resolved_to=row.get("escrow_resolved_to"),
            escrow_resolved_at=parse_timestamp(row.get("escrow_resolved_at")),
            dispute_initiated_by=row.get("dispute_initiated_by"),
            dispute_initiated_at=parse_timestamp(row.get("dispute_initiated_at")),
            status=row.get("status") or "paid",
            payment_currency=row.get("payment_currency") or "USDC",
            amount_usd=float(amount) if amount is not None else None,
            paid_at=parse_timestamp(row.get("paid_at")),
            created_at=parse_timestamp(row.get("created_at")),
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "client_id": self.client_id,
            "escrow_status": EscrowStatus(self.escrow_status).value,
            "tx_hash": self.tx_hash,
            "chain_id": self.chain_id,
            "escrow_registration": self.escrow_registration,
            "timer_handle": self.timer_handle,
            "release_at": _iso(self.release_at),
            "escrow_resolved_to": self.escrow_resolved_to,
            "escrow_resolved_at": _iso(self.escrow_resolved_at),
            "dispute_initiated_by": self.dispute_initiated_by,
            "dispute_initiated_at": _iso(self.dispute_initiated_at),
            "status": self.status,
            "payment_currency": self.payment_currency,
            "amount_usd": self.amount_usd,
            "paid_at": _iso(self.paid_at),
            "created_at": _iso(self.created_at),
        }


@dataclass
class Product:
    """A listed item. Price is fixed at creation."""

    id: str
    title: str
    price_usdc: float
    agent_id: Optional[str]  # Seller user id
    description: str = ""
    escrow_duration_seconds: int = 0  # 0 = no escrow
    created_at: Optional[datetime] = None

    @property
    def uses_escrow(self) -> bool:
        return self.escrow_duration_seconds > 0

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Product":
        return cls(
            id=str(row["id"]),
            title=row.get("title") or "",
            description=row.get("description") or "",
            price_usdc=float(row.get("price_usdc") or 0),
            agent_id=row.get("agent_id"),
            escrow_duration_seconds=int(row.get("escrow_duration_seconds") or 0),
            created_at=parse_timestamp(row.get("created_at")),
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "price_usdc": self.price_usdc,
            "agent_id": self.agent_id,
            "escrow_duration_seconds": self.escrow_duration_seconds,
            "created_at": _iso(self.created_at),
        }


@dataclass
class User:
    """A marketplace participant keyed by wallet address."""

    id: str
    wallet_address: str
    display_name: Optional[str] = None
    telegram_chat_id: Optional[int] = None
    reputation_sum: int = 0  # Materialized from reputation events, never written directly

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "User":
        chat_id = row.get("telegram_chat_id")
        return cls(
            id=str(row["id"]),
            wallet_address=row.get("wallet_address") or "",
            display_name=row.get("display_name"),
            telegram_chat_id=int(chat_id) if chat_id is not None else None,
            reputation_sum=int(row.get("reputation_sum") or 0),
        )


@dataclass(frozen=True)
class ReputationEvent:
    """Immutable reputation delta tied to a transaction."""

    wallet: str
    delta: int
    reason: str
    transaction_id: Optional[str]
    amount_usd: float
    id: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_row(self) -> Dict[str, Any]:
        row = {
            "wallet": self.wallet,
            "delta": self.delta,
            "reason": self.reason,
            "transaction_id": self.transaction_id,
            "amount_usd": self.amount_usd,
        }
        if self.id:
            row["id"] = self.id
        return row


@dataclass(frozen=True)
class TierTransition:
    """Auditable record of a seller moving between reputation tiers."""

    wallet: str
    previous_tier: str
    new_tier: str
    reputation_score: int
    transaction_id: Optional[str]
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "wallet": self.wallet,
            "previous_tier": self.previous_tier,
            "new_tier": self.new_tier,
            "reputation_score": self.reputation_score,
            "transaction_id": self.transaction_id,
            "timestamp": self.timestamp.isoformat(),
        }
