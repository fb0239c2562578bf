"""
Escrow configuration.

The coordinator, dispute resolver and marketplace service receive an explicit
``EscrowConfig`` instead of reading process-wide state, so every collaborator
can be swapped for a fake in tests.
"""

from dataclasses import dataclass, field
from typing import Dict, Optional

# Chain IDs with a known escrow deployment
BASE_MAINNET_CHAIN_ID = 8453
BASE_SEPOLIA_CHAIN_ID = 84532
ADI_TESTNET_CHAIN_ID = 99999

DEFAULT_CHAIN_ID = BASE_MAINNET_CHAIN_ID

# Escrow hold policy (seconds)
DEFAULT_ESCROW_DURATION_SECONDS = 72 * 60 * 60  # 3 days
MIN_ESCROW_DURATION_SECONDS = 10


@dataclass(frozen=True)
class ChainDeployment:
    """Where the escrow contract lives on a given chain."""

    chain_id: int
    rpc_url: str
    escrow_address: str
    name: str = ""


@dataclass(frozen=True)
class EscrowConfig:
    """Configuration threaded into the escrow lifecycle components."""

    default_chain_id: int = DEFAULT_CHAIN_ID
    deployments: Dict[int, ChainDeployment] = field(default_factory=dict)

    # Escrow hold policy
    default_escrow_duration_seconds: int = DEFAULT_ESCROW_DURATION_SECONDS
    min_escrow_duration_seconds: int = MIN_ESCROW_DURATION_SECONDS

    # Sweep behaviour
    sweep_concurrency: int = 5
    chain_timeout_seconds: float = 120.0
    timer_timeout_seconds: float = 15.0

    # Reject purchases whose registration holds no funds on-chain
    verify_deposits: bool = False

    # Prefix used in timer memos so schedules are attributable
    timer_memo_prefix: str = "sobek:escrow"

    def __post_init__(self):
        if self.sweep_concurrency < 1:
            raise ValueError("sweep_concurrency must be at least 1")
        if self.chain_timeout_seconds <= 0:
            raise ValueError("chain_timeout_seconds must be positive")
        if self.min_escrow_duration_seconds < 0:
            raise ValueError("min_escrow_duration_seconds cannot be negative")

    def deployment_for(self, chain_id: Optional[int]) -> Optional[ChainDeployment]:
        """Return the escrow deployment for a chain (default chain when None)."""
        return self.deployments.get(chain_id if chain_id is not None else self.default_chain_id)

    def escrow_duration(self, requested: Optional[int]) -> int:
        """Apply the hold-duration policy to a seller-requested duration.

        ``None`` falls back to the default; ``0`` means the item does not use
        escrow; anything else is clamped up to the configured floor.
        """
        if requested is None:
            return self.default_escrow_duration_seconds
        if requested < 0:
            raise ValueError("escrow duration cannot be negative")
        if requested == 0:
            return 0
        return max(requested, self.min_escrow_duration_seconds)
