"""Escrow lifecycle subsystem for Sobek.

Models:
- Transaction: An escrowed purchase recorded in the ledger
- EscrowStatus: Escrow lifecycle status
- Resolution: Admin outcome for a dispute

Collaborators:
- LedgerStore: Authoritative record with compare-and-swap status updates
- ChainGateway: Escrow contract client
- TimerService: Scheduled-release timers

The coordinator and dispute resolver live in ``sobek.escrow.coordinator`` and
``sobek.escrow.disputes``.
"""

from sobek.escrow.chain import ChainGateway, OnChainEscrow, Web3ChainGateway
from sobek.escrow.effects import BestEffortOutcome, best_effort
from sobek.escrow.errors import (
    ChainError,
    ChainNotConfiguredError,
    DepositNotFoundError,
    DepositorMismatchError,
    DuplicatePurchaseError,
    EscrowError,
    LedgerInconsistencyError,
    NotFoundError,
    NotificationError,
    TimerServiceError,
)
from sobek.escrow.models import (
    VALID_ESCROW_TRANSITIONS,
    EscrowStatus,
    Product,
    Resolution,
    ReputationEvent,
    TierTransition,
    Transaction,
    User,
)
from sobek.escrow.storage import InMemoryLedgerStore, LedgerStore
from sobek.escrow.timer import HttpTimerService, InMemoryTimerService, TimerService

__all__ = [
    # Models
    "Transaction",
    "Product",
    "User",
    "ReputationEvent",
    "TierTransition",
    "EscrowStatus",
    "Resolution",
    "VALID_ESCROW_TRANSITIONS",
    # Collaborators
    "LedgerStore",
    "InMemoryLedgerStore",
    "ChainGateway",
    "OnChainEscrow",
    "Web3ChainGateway",
    "TimerService",
    "HttpTimerService",
    "InMemoryTimerService",
    "BestEffortOutcome",
    "best_effort",
    # Errors
    "EscrowError",
    "ChainError",
    "ChainNotConfiguredError",
    "TimerServiceError",
    "NotificationError",
    "LedgerInconsistencyError",
    "NotFoundError",
    "DepositNotFoundError",
    "DepositorMismatchError",
    "DuplicatePurchaseError",
]
