"""
Reputation events, seller tiers and the tier-transition log.

Reputation is an append-only list of signed deltas per wallet. Deltas follow a
power law of the order value so that large orders matter more without letting
a single whale order dominate:

    delta = round(amount_usd ** 0.3 * k)

Sellers are bucketed into tiers by their historical success rate (released vs
refunded escrows). A tier's rate multiplier ("Mrate") scales the reward of
future successful sales.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Protocol

from sobek.escrow.models import ReputationEvent, TierTransition
from sobek.escrow.storage import LedgerStore

logger = logging.getLogger(__name__)

POWER_LAW_EXPONENT = 0.3

SUCCESS_SELLER_WEIGHT = 3
DISPUTE_LOSS_SELLER_WEIGHT = 15
DISPUTE_LOSS_BUYER_WEIGHT = 6

# Reputation event reasons
REASON_RELEASED = "transaction_released"
REASON_DISPUTE_REFUND = "dispute_refund"  # Seller lost the dispute
REASON_DISPUTE_RELEASE = "dispute_release"  # Buyer lost the dispute

TIER_TRANSITIONS_TABLE = "tier_transitions"


def _power_law(amount_usd: float, weight: float) -> int:
    if amount_usd is None or amount_usd <= 0:
        raise ValueError("amount_usd must be > 0")
    return round(amount_usd**POWER_LAW_EXPONENT * weight)


def calculate_success_seller(amount_usd: float, mrate: float = 1.0) -> int:
    """+rep for the seller when an escrow is released to them."""
    return _power_law(amount_usd, SUCCESS_SELLER_WEIGHT * mrate)


def calculate_dispute_loss_seller(amount_usd: float) -> int:
    """-rep for the seller when the buyer wins a dispute."""
    return -_power_law(amount_usd, DISPUTE_LOSS_SELLER_WEIGHT)


def calculate_dispute_loss_buyer(amount_usd: float) -> int:
    """-rep for the buyer when the seller wins a dispute."""
    return -_power_law(amount_usd, DISPUTE_LOSS_BUYER_WEIGHT)


# =============================================================================
# Seller tiers
# =============================================================================


@dataclass(frozen=True)
class TierBracket:
    name: str
    below: float  # Upper bound (exclusive) on success rate
    mrate: float


UNRATED = "Unrated"
MIN_RESOLVED_FOR_TIER = 3

TIER_BRACKETS: List[TierBracket] = [
    TierBracket("Bronze", 0.80, 0.9),
    TierBracket("Silver", 0.90, 1.0),
    TierBracket("Gold", 0.97, 1.05),
    TierBracket("Sovereign", float("inf"), 1.1),
]


@dataclass(frozen=True)
class SellerTier:
    """A seller's tier at a point in time."""

    tier: str
    mrate: float
    released: int = 0
    refunded: int = 0

    @property
    def resolved(self) -> int:
        return self.released + self.refunded

    @property
    def success_rate(self) -> Optional[float]:
        return self.released / self.resolved if self.resolved else None


def tier_for(released: int, refunded: int) -> SellerTier:
    """Bucket a seller by success rate over resolved escrows."""
    resolved = released + refunded
    if resolved < MIN_RESOLVED_FOR_TIER:
        return SellerTier(UNRATED, 1.0, released, refunded)
    rate = released / resolved
    for bracket in TIER_BRACKETS:
        if rate < bracket.below:
            return SellerTier(bracket.name, bracket.mrate, released, refunded)
    # Unreachable: the last bracket is unbounded
    return SellerTier(TIER_BRACKETS[-1].name, TIER_BRACKETS[-1].mrate, released, refunded)


# =============================================================================
# Tier transition log
# =============================================================================


class TierLog(Protocol):
    """Append-only audit log of tier transitions."""

    async def append(self, transition: TierTransition) -> None:
        ...


class SupabaseTierLog:
    """Tier transitions stored in the ``tier_transitions`` table."""

    def __init__(self, client):
        self.client = client

    async def append(self, transition: TierTransition) -> None:
        self.client.table(TIER_TRANSITIONS_TABLE).insert(transition.to_dict()).execute()


class LoggingTierLog:
    """Tier transitions written to the application log only."""

    async def append(self, transition: TierTransition) -> None:
        logger.info(
            f"Tier transition for {transition.wallet}: "
            f"{transition.previous_tier} -> {transition.new_tier} "
            f"(score={transition.reputation_score}, tx={transition.transaction_id})"
        )


class InMemoryTierLog:
    """Tier transitions kept in a list."""

    def __init__(self):
        self.entries: List[TierTransition] = []

    async def append(self, transition: TierTransition) -> None:
        self.entries.append(transition)


# =============================================================================
# Recorder
# =============================================================================


class ReputationRecorder:
    """Writes reputation events and detects seller tier changes.

    Nothing here may fail the escrow flow that calls it: by the time reputation
    is recorded, funds have already moved.
    """

    def __init__(self, store: LedgerStore, tier_log: Optional[TierLog] = None):
        self.store = store
        self.tier_log = tier_log or LoggingTierLog()

    async def record_event(
        self,
        wallet: str,
        delta: int,
        reason: str,
        transaction_id: Optional[str],
        amount_usd: float,
    ) -> Optional[str]:
        """Append a reputation event. Returns its ID, or None if the write failed."""
        event = ReputationEvent(
            wallet=wallet,
            delta=delta,
            reason=reason,
            transaction_id=transaction_id,
            amount_usd=amount_usd,
        )
        try:
            event_id = await self.store.insert_reputation_event(event)
        except Exception as e:
            logger.error(
                f"Failed to record reputation event {reason} ({delta:+d}) "
                f"for {wallet} on transaction {transaction_id}: {e}"
            )
            return None
        logger.info(f"Reputation {delta:+d} for {wallet} ({reason}, tx={transaction_id})")
        return event_id

    async def seller_tier(self, seller_id: Optional[str]) -> Optional[SellerTier]:
        """Current tier of a seller, or None if it could not be computed."""
        if not seller_id:
            return None
        try:
            released, refunded = await self.store.seller_resolution_counts(seller_id)
        except Exception as e:
            logger.warning(f"Could not compute tier for seller {seller_id}: {e}")
            return None
        return tier_for(released, refunded)

    async def check_tier_transition(
        self,
        seller_id: Optional[str],
        seller_wallet: Optional[str],
        before: Optional[SellerTier],
        transaction_id: Optional[str],
    ) -> Optional[TierTransition]:
        """Compare a seller's tier against a snapshot and log any change."""
        if before is None or not seller_wallet:
            return None
        after = await self.seller_tier(seller_id)
        if after is None or after.tier == before.tier:
            return None

        try:
            score = await self.store.get_reputation_sum(seller_wallet)
        except Exception as e:
            logger.warning(f"Could not read reputation for {seller_wallet}: {e}")
            score = 0

        transition = TierTransition(
            wallet=seller_wallet,
            previous_tier=before.tier,
            new_tier=after.tier,
            reputation_score=score,
            transaction_id=transaction_id,
        )
        try:
            await self.tier_log.append(transition)
        except Exception as e:
            logger.warning(f"Non-fatal: tier transition log failed for {seller_wallet}: {e}")
        return transition
