"""
Admin dispute resolution.

Resolving a dispute is the coordinator's claim/act/record protocol starting
from ``disputed``: the admin picks ``refund`` (buyer wins) or ``release``
(seller wins), and the losing party takes a reputation hit.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Union

from sobek.escrow.coordinator import EscrowCoordinator
from sobek.escrow.effects import BestEffortOutcome, best_effort
from sobek.escrow.errors import ChainError, LedgerInconsistencyError
from sobek.escrow.models import EscrowStatus, Resolution
from sobek.escrow.storage import NOT_FOUND

logger = logging.getLogger(__name__)


class ResolutionStatus(str, Enum):
    RESOLVED = "resolved"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    MISSING_REGISTRATION = "missing_registration"
    LOOKUP_FAILED = "lookup_failed"  # Parties not loaded, chain untouched; safe to retry
    CHAIN_FAILED = "chain_failed"  # Nothing moved; safe to retry
    NEEDS_RECONCILIATION = "needs_reconciliation"  # Funds moved, ledger not updated


@dataclass
class ResolutionResult:
    """Outcome of resolving a dispute."""

    kind: ResolutionStatus
    transaction_id: str
    resolution: Resolution
    message: str
    status: Optional[EscrowStatus] = None
    tx_hash: Optional[str] = None
    error: Optional[Exception] = None
    side_effects: List[BestEffortOutcome] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.kind == ResolutionStatus.RESOLVED

    @property
    def needs_manual_intervention(self) -> bool:
        return self.kind == ResolutionStatus.NEEDS_RECONCILIATION


class DisputeResolver:
    """Resolves disputed escrows on behalf of an admin."""

    def __init__(self, coordinator: EscrowCoordinator):
        self.coordinator = coordinator
        self.store = coordinator.store

    async def resolve(
        self, transaction_id: str, resolution: Union[Resolution, str]
    ) -> ResolutionResult:
        """Refund the buyer or release to the seller.

        Args:
            transaction_id: Disputed transaction
            resolution: "refund" or "release"

        Raises:
            ValueError: unknown resolution
        """
        resolution = Resolution(resolution)
        claim_status = resolution.claim_status

        claimed, err = await self.store.atomic_update_status(
            transaction_id, EscrowStatus.DISPUTED, claim_status
        )
        if err == NOT_FOUND:
            return ResolutionResult(
                ResolutionStatus.NOT_FOUND, transaction_id, resolution, "Transaction not found"
            )
        if claimed is None:
            return ResolutionResult(
                ResolutionStatus.CONFLICT,
                transaction_id,
                resolution,
                "Transaction is not disputed or is already being resolved",
            )

        if claimed.escrow_registration is None:
            await self.coordinator.revert_claim(transaction_id, claim_status, EscrowStatus.DISPUTED)
            return ResolutionResult(
                ResolutionStatus.MISSING_REGISTRATION,
                transaction_id,
                resolution,
                "No escrow registration found for this transaction",
                status=EscrowStatus.DISPUTED,
            )

        try:
            parties = await self.coordinator.resolve_parties(claimed)
            seller_id = parties.seller.id if parties.seller else None
            tier_before = await self.coordinator.reputation.seller_tier(seller_id)
        except Exception as e:
            logger.error(f"Could not load parties for dispute on {transaction_id}: {e}")
            reverted = await self.coordinator.revert_claim(
                transaction_id, claim_status, EscrowStatus.DISPUTED
            )
            # A failed revert leaves the claim for reconcile
            return ResolutionResult(
                ResolutionStatus.LOOKUP_FAILED,
                transaction_id,
                resolution,
                f"Could not load the parties to this transaction: {e}",
                status=EscrowStatus.DISPUTED if reverted else claim_status,
                error=e,
            )

        try:
            settled = await self.coordinator.settle(
                claimed, resolution, EscrowStatus.DISPUTED, parties
            )
        except ChainError as e:
            return ResolutionResult(
                ResolutionStatus.CHAIN_FAILED,
                transaction_id,
                resolution,
                f"On-chain {resolution.value} failed: {e}",
                status=EscrowStatus.DISPUTED,
                error=e,
            )
        except LedgerInconsistencyError as e:
            return ResolutionResult(
                ResolutionStatus.NEEDS_RECONCILIATION,
                transaction_id,
                resolution,
                "On-chain succeeded but ledger update failed; needs manual intervention",
                status=claim_status,
                tx_hash=e.tx_hash,
                error=e,
            )

        await self.coordinator.record_settlement_reputation(
            settled, parties, resolution.terminal_status, disputed=True, tier_before=tier_before
        )

        label = "refunded to buyer" if resolution is Resolution.REFUND else "released to seller"
        message = f"Dispute resolved: transaction {transaction_id[:8]}... has been {label}."
        side_effects: List[BestEffortOutcome] = []
        for role, user in (("seller", parties.seller), ("buyer", parties.buyer)):
            if user:
                side_effects.append(
                    await best_effort(f"notify_{role}", self.coordinator.notifier.notify(user.id, message))
                )

        logger.info(
            f"Dispute on {transaction_id} resolved: {resolution.value} (tx: {settled.tx_hash})"
        )
        return ResolutionResult(
            ResolutionStatus.RESOLVED,
            transaction_id,
            resolution,
            f"Escrow {resolution.terminal_status.value}",
            status=resolution.terminal_status,
            tx_hash=settled.tx_hash,
            side_effects=side_effects,
        )
