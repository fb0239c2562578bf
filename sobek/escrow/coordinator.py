"""
Escrow lifecycle coordinator.

Keeps three independently failing systems consistent: the escrow contract, the
timer service and the ledger. The ledger's conditional update is the only
mutual exclusion primitive:

1. claim   - move the row into a claim state (``releasing``/``refunding``/
             ``disputed``) with a compare-and-swap; losing the race aborts
2. act     - perform the irreversible chain call while holding the claim
3. record  - write the terminal state, conditional on still holding the claim

A chain failure reverts the claim to the exact state it was taken from. A
ledger failure *after* a successful chain call is never compensated: it is
logged CRITICAL and surfaced as needing manual reconciliation.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any, Awaitable, Dict, List, Optional

from sobek.config import EscrowConfig
from sobek.escrow.chain import ChainGateway, OnChainEscrow
from sobek.escrow.effects import BestEffortOutcome, best_effort
from sobek.escrow.errors import ChainError, LedgerInconsistencyError, TimerServiceError
from sobek.escrow.models import (
    CLAIM_STATUSES,
    EscrowStatus,
    Product,
    Resolution,
    Transaction,
    User,
    utc_now,
    wallets_match,
)
from sobek.escrow.storage import CONFLICT, NOT_FOUND, LedgerStore
from sobek.escrow.timer import TimerService
from sobek.notify import LoggingNotifier, Notifier
from sobek.reputation import (
    REASON_DISPUTE_REFUND,
    REASON_DISPUTE_RELEASE,
    REASON_RELEASED,
    ReputationRecorder,
    SellerTier,
    calculate_dispute_loss_buyer,
    calculate_dispute_loss_seller,
    calculate_success_seller,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Results
# =============================================================================


class SweepStatus(str, Enum):
    RELEASED = "released"
    PENDING = "pending"
    ALREADY_CLAIMED = "already_claimed"
    ERROR = "error"
    MISSING_REGISTRATION = "missing_registration"


@dataclass
class SweepOutcome:
    """Per-transaction result of an auto-release sweep."""

    transaction_id: str
    outcome: SweepStatus
    detail: Optional[str] = None
    critical: bool = False  # Funds moved but the ledger does not say so
    tx_hash: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "transaction_id": self.transaction_id,
            "outcome": self.outcome.value,
            "critical": self.critical,
        }
        if self.detail:
            data["detail"] = self.detail
        if self.tx_hash:
            data["tx_hash"] = self.tx_hash
        return data


class DisputeStatus(str, Enum):
    DISPUTED = "disputed"
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    CONFLICT = "conflict"


@dataclass
class DisputeResult:
    """Result of a buyer-initiated dispute."""

    kind: DisputeStatus
    transaction_id: str
    message: str
    transaction: Optional[Transaction] = None
    side_effects: List[BestEffortOutcome] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.kind == DisputeStatus.DISPUTED


class ReconcileStatus(str, Enum):
    NOT_FOUND = "not_found"
    ALREADY_TERMINAL = "already_terminal"
    MISSING_REGISTRATION = "missing_registration"
    CHAIN_UNAVAILABLE = "chain_unavailable"
    NO_CHANGE = "no_change"
    REVERTED = "reverted"
    SETTLED = "settled"
    AMBIGUOUS = "ambiguous"
    CONFLICT = "conflict"


@dataclass
class ReconcileResult:
    """Result of reconciling one transaction against chain state."""

    kind: ReconcileStatus
    transaction_id: str
    message: str
    previous_status: Optional[EscrowStatus] = None
    new_status: Optional[EscrowStatus] = None
    on_chain: Optional[OnChainEscrow] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "transaction_id": self.transaction_id,
            "message": self.message,
            "previous_status": self.previous_status.value if self.previous_status else None,
            "new_status": self.new_status.value if self.new_status else None,
            "on_chain_value": self.on_chain.value if self.on_chain else None,
        }


@dataclass
class TimerBackfillOutcome:
    transaction_id: str
    registered: bool
    timer_handle: Optional[str] = None
    detail: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "registered": self.registered,
            "timer_handle": self.timer_handle,
            "detail": self.detail,
        }


@dataclass
class Parties:
    """Product, seller and buyer behind a transaction."""

    product: Optional[Product] = None
    seller: Optional[User] = None
    buyer: Optional[User] = None

    @property
    def seller_wallet(self) -> Optional[str]:
        return self.seller.wallet_address if self.seller else None

    @property
    def buyer_wallet(self) -> Optional[str]:
        return self.buyer.wallet_address if self.buyer else None

    def destination(self, resolution: Resolution) -> Optional[str]:
        """Wallet that receives the funds for a resolution."""
        return self.buyer_wallet if resolution is Resolution.REFUND else self.seller_wallet


# =============================================================================
# Coordinator
# =============================================================================


class EscrowCoordinator:
    """Moves transactions through the escrow state machine."""

    def __init__(
        self,
        store: LedgerStore,
        chain: ChainGateway,
        timer: TimerService,
        reputation: Optional[ReputationRecorder] = None,
        notifier: Optional[Notifier] = None,
        config: Optional[EscrowConfig] = None,
    ):
        self.store = store
        self.chain = chain
        self.timer = timer
        self.reputation = reputation or ReputationRecorder(store)
        self.notifier = notifier or LoggingNotifier()
        self.config = config or EscrowConfig()

    # === Shared steps ===

    async def _bounded(self, awaitable: Awaitable[Any], seconds: float, what: str) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=seconds)
        except asyncio.TimeoutError as e:
            raise ChainError(f"{what} timed out after {seconds}s") from e

    async def call_chain(self, resolution: Resolution, transaction: Transaction) -> str:
        """Release or refund on-chain, bounded by the configured timeout."""
        if resolution is Resolution.REFUND:
            call = self.chain.refund(transaction.escrow_registration, transaction.chain_id)
        else:
            call = self.chain.release(transaction.escrow_registration, transaction.chain_id)
        return await self._bounded(
            call, self.config.chain_timeout_seconds, f"{resolution.value} of transaction {transaction.id}"
        )

    async def resolve_parties(self, transaction: Transaction) -> Parties:
        """Look up product -> seller and the buyer for a transaction."""
        parties = Parties()
        if transaction.product_id:
            parties.product = await self.store.get_product(transaction.product_id)
        if parties.product and parties.product.agent_id:
            parties.seller = await self.store.get_user(parties.product.agent_id)
        if transaction.client_id:
            parties.buyer = await self.store.get_user(transaction.client_id)
        return parties

    async def revert_claim(
        self, transaction_id: str, claim_status: EscrowStatus, prior_status: EscrowStatus
    ) -> bool:
        """Return a claimed row to the state the claim was taken from."""
        try:
            _, err = await self.store.atomic_update_status(transaction_id, claim_status, prior_status)
        except Exception as e:
            logger.error(
                f"Failed to revert claim on {transaction_id} ({claim_status.value} -> "
                f"{prior_status.value}): {e}. Row stays claimed until reconciled."
            )
            return False
        if err:
            logger.error(
                f"Claim revert on {transaction_id} found no '{claim_status.value}' row ({err})"
            )
            return False
        logger.info(f"Reverted claim on {transaction_id}: {claim_status.value} -> {prior_status.value}")
        return True

    async def record_terminal(
        self,
        transaction: Transaction,
        resolution: Resolution,
        tx_hash: Optional[str],
        resolved_to: Optional[str],
    ) -> Transaction:
        """Write the terminal state after a successful chain call.

        Raises:
            LedgerInconsistencyError: the write failed or matched no row. Funds
                have moved; the row is left in its claim state for an operator.
        """
        claim_status = resolution.claim_status
        terminal = resolution.terminal_status
        updates: Dict[str, Any] = {
            "escrow_resolved_to": resolved_to,
            "escrow_resolved_at": utc_now(),
        }
        if tx_hash:
            updates["tx_hash"] = tx_hash

        cause: Optional[BaseException] = None
        try:
            updated, err = await self.store.atomic_update_status(
                transaction.id, claim_status, terminal, **updates
            )
        except Exception as e:
            updated, err, cause = None, None, e

        if updated is not None:
            return updated

        error = LedgerInconsistencyError(
            transaction.id,
            tx_hash,
            terminal.value,
            cause or RuntimeError(f"conditional update from '{claim_status.value}' matched no row ({err})"),
        )
        logger.critical(
            f"CRITICAL: On-chain {resolution.value} succeeded for transaction {transaction.id} "
            f"(tx: {tx_hash}) but recording '{terminal.value}' failed. Needs manual reconciliation: {error}"
        )
        raise error

    async def settle(
        self,
        claimed: Transaction,
        resolution: Resolution,
        prior_status: EscrowStatus,
        parties: Parties,
    ) -> Transaction:
        """Chain call plus terminal write for a transaction we hold the claim on.

        Raises:
            ChainError: nothing moved on-chain; the claim was reverted to
                ``prior_status``.
            LedgerInconsistencyError: funds moved but the ledger write failed.
        """
        resolved_to = parties.destination(resolution)
        if not resolved_to:
            logger.warning(
                f"No {'buyer' if resolution is Resolution.REFUND else 'seller'} wallet on record "
                f"for transaction {claimed.id}; contract pays its stored party"
            )

        try:
            tx_hash = await self.call_chain(resolution, claimed)
        except ChainError as e:
            logger.error(f"On-chain {resolution.value} failed for transaction {claimed.id}: {e}")
            await self.revert_claim(claimed.id, resolution.claim_status, prior_status)
            raise

        return await self.record_terminal(claimed, resolution, tx_hash, resolved_to)

    async def record_settlement_reputation(
        self,
        transaction: Transaction,
        parties: Parties,
        terminal: EscrowStatus,
        disputed: bool,
        tier_before: Optional[SellerTier],
    ) -> Optional[str]:
        """Emit the reputation event for a settled escrow and log tier changes."""
        amount = transaction.amount_usd or (parties.product.price_usdc if parties.product else None)
        if not amount or amount <= 0:
            logger.info(f"No order value on transaction {transaction.id}; skipping reputation")
            return None

        event_id = None
        if terminal == EscrowStatus.REFUNDED and parties.seller_wallet:
            event_id = await self.reputation.record_event(
                parties.seller_wallet,
                calculate_dispute_loss_seller(amount),
                REASON_DISPUTE_REFUND,
                transaction.id,
                amount,
            )
        elif terminal == EscrowStatus.RELEASED and disputed and parties.buyer_wallet:
            event_id = await self.reputation.record_event(
                parties.buyer_wallet,
                calculate_dispute_loss_buyer(amount),
                REASON_DISPUTE_RELEASE,
                transaction.id,
                amount,
            )
        elif terminal == EscrowStatus.RELEASED and not disputed and parties.seller_wallet:
            mrate = tier_before.mrate if tier_before else 1.0
            event_id = await self.reputation.record_event(
                parties.seller_wallet,
                calculate_success_seller(amount, mrate),
                REASON_RELEASED,
                transaction.id,
                amount,
            )

        await self.reputation.check_tier_transition(
            parties.seller.id if parties.seller else None,
            parties.seller_wallet,
            tier_before,
            transaction.id,
        )
        return event_id

    # === Timers ===

    async def open_escrow(self, transaction: Transaction, duration_seconds: int) -> Optional[Transaction]:
        """Register the release timer for a freshly recorded escrow.

        Returns the updated row, or None when the timer could not be attached.
        Rows left without a timer are picked up by ``register_missing_timers``.
        """
        try:
            registration = await asyncio.wait_for(
                self.timer.create(transaction.id, duration_seconds),
                timeout=self.config.timer_timeout_seconds,
            )
        except (TimerServiceError, asyncio.TimeoutError) as e:
            logger.error(f"Failed to create release timer for transaction {transaction.id}: {e}")
            return None

        updated = await self.store.set_timer(transaction.id, registration.handle, registration.fire_at)
        if updated is None:
            # Another registration won; drop ours so only one timer exists
            logger.warning(
                f"Timer {registration.handle} not attached to {transaction.id}; cancelling it"
            )
            await best_effort("cancel_orphan_timer", self.timer.cancel(registration.handle))
            return None

        logger.info(
            f"Escrow timer {registration.handle} attached to {transaction.id}, "
            f"release at {registration.fire_at.isoformat()}"
        )
        return updated

    async def register_missing_timers(self, limit: int = 100) -> List[TimerBackfillOutcome]:
        """Attach timers to active escrows whose registration never completed."""
        outcomes: List[TimerBackfillOutcome] = []
        for tx in await self.store.list_missing_timers(limit=limit):
            product = await self.store.get_product(tx.product_id) if tx.product_id else None
            duration = (
                product.escrow_duration_seconds
                if product and product.uses_escrow
                else self.config.default_escrow_duration_seconds
            )
            # Honour the time already served since purchase
            started = tx.paid_at or tx.created_at
            if started:
                elapsed = int((utc_now() - started).total_seconds())
                duration = duration - elapsed
            duration = max(duration, self.config.min_escrow_duration_seconds, 1)

            updated = await self.open_escrow(tx, duration)
            outcomes.append(
                TimerBackfillOutcome(
                    transaction_id=tx.id,
                    registered=updated is not None,
                    timer_handle=updated.timer_handle if updated else None,
                    detail=None if updated else "timer not attached",
                )
            )
        return outcomes

    # === Auto-release sweep ===

    async def release_transaction(self, transaction: Transaction) -> SweepOutcome:
        """Attempt auto-release of one active transaction."""
        tx_id = transaction.id

        if transaction.escrow_registration is None:
            return SweepOutcome(tx_id, SweepStatus.MISSING_REGISTRATION)
        if not transaction.timer_handle:
            return SweepOutcome(tx_id, SweepStatus.PENDING, detail="no timer registered")

        try:
            status = await asyncio.wait_for(
                self.timer.poll(transaction.timer_handle),
                timeout=self.config.timer_timeout_seconds,
            )
        except (TimerServiceError, asyncio.TimeoutError) as e:
            return SweepOutcome(tx_id, SweepStatus.ERROR, detail=f"timer poll failed: {e}")

        if status.cancelled:
            return SweepOutcome(tx_id, SweepStatus.ERROR, detail="timer was cancelled")
        if not status.fired:
            return SweepOutcome(tx_id, SweepStatus.PENDING)

        try:
            claimed, err = await self.store.atomic_update_status(
                tx_id, EscrowStatus.ACTIVE, EscrowStatus.RELEASING
            )
        except Exception as e:
            return SweepOutcome(tx_id, SweepStatus.ERROR, detail=f"claim failed: {e}")
        if claimed is None:
            return SweepOutcome(tx_id, SweepStatus.ALREADY_CLAIMED, detail=err)

        try:
            parties = await self.resolve_parties(claimed)
            tier_before = await self.reputation.seller_tier(parties.seller.id if parties.seller else None)
        except Exception as e:
            await self.revert_claim(tx_id, EscrowStatus.RELEASING, EscrowStatus.ACTIVE)
            return SweepOutcome(tx_id, SweepStatus.ERROR, detail=f"party lookup failed: {e}")

        try:
            released = await self.settle(claimed, Resolution.RELEASE, EscrowStatus.ACTIVE, parties)
        except ChainError as e:
            return SweepOutcome(tx_id, SweepStatus.ERROR, detail=str(e))
        except LedgerInconsistencyError as e:
            return SweepOutcome(
                tx_id, SweepStatus.ERROR, detail=str(e), critical=True, tx_hash=e.tx_hash
            )

        await self.record_settlement_reputation(
            released, parties, EscrowStatus.RELEASED, disputed=False, tier_before=tier_before
        )
        logger.info(f"Auto-released transaction {tx_id} (tx: {released.tx_hash})")
        return SweepOutcome(tx_id, SweepStatus.RELEASED, tx_hash=released.tx_hash)

    async def run_sweep(self, limit: int = 500) -> List[SweepOutcome]:
        """Release every active escrow whose timer has fired."""
        candidates = await self.store.list_sweep_candidates(limit=limit)
        semaphore = asyncio.Semaphore(self.config.sweep_concurrency)

        async def _run(tx: Transaction) -> SweepOutcome:
            async with semaphore:
                try:
                    return await self.release_transaction(tx)
                except Exception as e:
                    logger.exception(f"Unexpected error sweeping transaction {tx.id}")
                    return SweepOutcome(tx.id, SweepStatus.ERROR, detail=str(e))

        outcomes = list(await asyncio.gather(*(_run(tx) for tx in candidates)))

        counts: Dict[str, int] = {}
        for outcome in outcomes:
            counts[outcome.outcome.value] = counts.get(outcome.outcome.value, 0) + 1
        logger.info(f"Escrow sweep processed {len(outcomes)} transactions: {counts}")
        if any(o.critical for o in outcomes):
            logger.critical(
                "Escrow sweep left transactions needing manual reconciliation: "
                + ", ".join(o.transaction_id for o in outcomes if o.critical)
            )
        return outcomes

    # === Disputes ===

    async def initiate_dispute(self, transaction_id: str, caller_wallet: str) -> DisputeResult:
        """Buyer raises a dispute, stopping auto-release."""
        tx = await self.store.get_transaction(transaction_id)
        if tx is None:
            return DisputeResult(DisputeStatus.NOT_FOUND, transaction_id, "Order not found")

        buyer = await self.store.get_user(tx.client_id) if tx.client_id else None
        if buyer is None or not wallets_match(buyer.wallet_address, caller_wallet):
            logger.warning(f"Dispute on {transaction_id} rejected: caller is not the buyer")
            return DisputeResult(
                DisputeStatus.FORBIDDEN, transaction_id, "Not authorized to dispute this order"
            )

        claimed, err = await self.store.atomic_update_status(
            transaction_id,
            EscrowStatus.ACTIVE,
            EscrowStatus.DISPUTED,
            dispute_initiated_by=caller_wallet,
            dispute_initiated_at=utc_now(),
        )
        if err == NOT_FOUND:
            return DisputeResult(DisputeStatus.NOT_FOUND, transaction_id, "Order not found")
        if claimed is None:
            return DisputeResult(
                DisputeStatus.CONFLICT,
                transaction_id,
                "Order is not in active escrow (may already be released or disputed)",
            )

        side_effects: List[BestEffortOutcome] = []
        # The row is already 'disputed', so a failed cancel cannot lead to a release
        if claimed.timer_handle:
            side_effects.append(
                await best_effort("cancel_timer", self.timer.cancel(claimed.timer_handle))
            )

        product = await self.store.get_product(claimed.product_id) if claimed.product_id else None
        if product and product.agent_id:
            side_effects.append(
                await best_effort(
                    "notify_seller",
                    self.notifier.notify(
                        product.agent_id,
                        f'Dispute initiated on order for "{product.title}" by {caller_wallet}',
                    ),
                )
            )

        logger.info(f"Dispute opened on transaction {transaction_id} by {caller_wallet}")
        return DisputeResult(
            DisputeStatus.DISPUTED,
            transaction_id,
            "Dispute opened",
            transaction=claimed,
            side_effects=side_effects,
        )

    # === Reconciliation ===

    async def reconcile(
        self, transaction_id: str, resolution: Optional[Resolution] = None
    ) -> ReconcileResult:
        """Repair a transaction's ledger state from the on-chain escrow slot.

        Safe to run repeatedly: every write is conditional on the status that
        was observed, and terminal rows are never touched.
        """
        tx = await self.store.get_transaction(transaction_id)
        if tx is None:
            return ReconcileResult(ReconcileStatus.NOT_FOUND, transaction_id, "Transaction not found")
        previous = tx.escrow_status
        if tx.is_terminal:
            return ReconcileResult(
                ReconcileStatus.ALREADY_TERMINAL, transaction_id,
                f"Transaction is already {previous.value}", previous_status=previous,
            )
        if tx.escrow_registration is None:
            return ReconcileResult(
                ReconcileStatus.MISSING_REGISTRATION, transaction_id,
                "Transaction has no escrow registration", previous_status=previous,
            )

        try:
            slot = await self._bounded(
                self.chain.get_escrow(tx.escrow_registration, tx.chain_id),
                self.config.chain_timeout_seconds,
                f"escrow lookup for {transaction_id}",
            )
        except ChainError as e:
            return ReconcileResult(
                ReconcileStatus.CHAIN_UNAVAILABLE, transaction_id, str(e), previous_status=previous
            )

        if slot.is_funded:
            if previous not in CLAIM_STATUSES:
                return ReconcileResult(
                    ReconcileStatus.NO_CHANGE, transaction_id,
                    "Escrow still funded; ledger is consistent",
                    previous_status=previous, on_chain=slot,
                )
            prior = tx.prior_status_for_claim
            if not await self.revert_claim(transaction_id, previous, prior):
                return ReconcileResult(
                    ReconcileStatus.CONFLICT, transaction_id,
                    "Status changed while reconciling", previous_status=previous, on_chain=slot,
                )
            return ReconcileResult(
                ReconcileStatus.REVERTED, transaction_id,
                f"Escrow still funded; claim reverted to {prior.value}",
                previous_status=previous, new_status=prior, on_chain=slot,
            )

        # Slot drained: funds already left the escrow
        if previous == EscrowStatus.RELEASING:
            target = Resolution.RELEASE
        elif previous == EscrowStatus.REFUNDING:
            target = Resolution.REFUND
        elif previous == EscrowStatus.ACTIVE:
            target = Resolution.RELEASE
        elif resolution is None:
            return ReconcileResult(
                ReconcileStatus.AMBIGUOUS, transaction_id,
                "Disputed escrow is drained on-chain; pass a resolution to record it",
                previous_status=previous, on_chain=slot,
            )
        else:
            target = Resolution(resolution)

        if previous not in CLAIM_STATUSES:
            claimed, err = await self.store.atomic_update_status(
                transaction_id, previous, target.claim_status
            )
            if claimed is None:
                return ReconcileResult(
                    ReconcileStatus.CONFLICT, transaction_id,
                    f"Status changed while reconciling ({err})", previous_status=previous, on_chain=slot,
                )
            tx = claimed

        parties = await self.resolve_parties(tx)
        tier_before = await self.reputation.seller_tier(parties.seller.id if parties.seller else None)
        try:
            settled = await self.record_terminal(tx, target, None, parties.destination(target))
        except LedgerInconsistencyError as e:
            return ReconcileResult(
                ReconcileStatus.CONFLICT, transaction_id, str(e), previous_status=previous, on_chain=slot,
            )

        await self.record_settlement_reputation(
            settled,
            parties,
            target.terminal_status,
            disputed=bool(tx.dispute_initiated_by),
            tier_before=tier_before,
        )
        logger.warning(
            f"Reconciled transaction {transaction_id}: {previous.value} -> {target.terminal_status.value}"
        )
        return ReconcileResult(
            ReconcileStatus.SETTLED, transaction_id,
            f"Recorded {target.terminal_status.value} from chain state",
            previous_status=previous, new_status=target.terminal_status, on_chain=slot,
        )
