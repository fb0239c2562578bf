"""Escrow error hierarchy."""

from typing import Optional


class EscrowError(Exception):
    """Base exception for escrow operations."""

    pass


class ChainError(EscrowError):
    """On-chain call reverted, timed out or could not be sent.

    Raised before any funds moved, so the claim that preceded the call can be
    reverted and the operation retried later.
    """

    retryable = True

    def __init__(self, message: str, tx_hash: Optional[str] = None):
        super().__init__(message)
        self.tx_hash = tx_hash


class ChainNotConfiguredError(ChainError):
    """No escrow deployment is configured for the requested chain."""

    def __init__(self, chain_id: Optional[int]):
        super().__init__(f"No escrow contract configured for chain {chain_id}")
        self.chain_id = chain_id


class TimerServiceError(EscrowError):
    """The timer service rejected or failed a request."""

    pass


class NotificationError(EscrowError):
    """A notification could not be delivered."""

    pass


class LedgerInconsistencyError(EscrowError):
    """Funds moved on-chain but the ledger write that records it failed.

    Never retried or compensated automatically: an operator must reconcile the
    row against chain state.
    """

    retryable = False
    requires_manual_reconciliation = True

    def __init__(
        self,
        transaction_id: str,
        tx_hash: Optional[str],
        intended_status: str,
        cause: Optional[BaseException] = None,
    ):
        self.transaction_id = transaction_id
        self.tx_hash = tx_hash
        self.intended_status = intended_status
        self.cause = cause
        super().__init__(
            f"On-chain action succeeded for transaction {transaction_id} "
            f"(tx: {tx_hash}) but recording status '{intended_status}' failed"
            + (f": {cause}" if cause else "")
        )


class NotFoundError(EscrowError):
    """Raised when a product, user or transaction does not exist."""

    pass


class DepositNotFoundError(EscrowError):
    """The escrow registration holds no funds on-chain."""

    def __init__(self, registration: int, chain_id: Optional[int]):
        super().__init__(f"Escrow registration {registration} on chain {chain_id} holds no deposit")
        self.registration = registration
        self.chain_id = chain_id


class DepositorMismatchError(EscrowError):
    """The escrow slot was funded by a different wallet than the buyer."""

    def __init__(self, registration: int, chain_id: Optional[int], depositor: str):
        super().__init__(
            f"Escrow registration {registration} on chain {chain_id} was funded by another wallet"
        )
        self.registration = registration
        self.chain_id = chain_id
        self.depositor = depositor


class DuplicatePurchaseError(EscrowError):
    """The deposit hash or escrow registration is already recorded."""

    def __init__(
        self,
        tx_hash: Optional[str] = None,
        registration: Optional[int] = None,
        chain_id: Optional[int] = None,
    ):
        if registration is not None:
            message = f"Escrow registration {registration} on chain {chain_id} already recorded"
        else:
            message = f"tx_hash {tx_hash} already recorded"
        super().__init__(message)
        self.tx_hash = tx_hash
        self.registration = registration
        self.chain_id = chain_id
