"""
Sobek - escrow-backed marketplace backend.

Buyers pay sellers through an on-chain escrow that releases on a timer unless
the buyer disputes.
"""

from sobek.config import EscrowConfig
from sobek.escrow.coordinator import EscrowCoordinator
from sobek.escrow.disputes import DisputeResolver
from sobek.marketplace import MarketplaceService

try:
    from importlib.metadata import version

    __version__ = version("sobek")
except Exception:
    __version__ = "0.0.0"

__all__ = ["EscrowConfig", "EscrowCoordinator", "DisputeResolver", "MarketplaceService"]
