"""
Chain gateway for the escrow contract.

Stateless client over the deployed escrow contract. Each state-changing call
is signed by the arbiter key, broadcast, and only returns once the receipt is
mined with a success status. A revert, a send failure or a receipt timeout
raises ``ChainError``; nothing is ever reported as success without a receipt.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Protocol

from eth_account import Account
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted

from sobek.config import EscrowConfig
from sobek.escrow.errors import ChainError, ChainNotConfiguredError

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

ESCROW_ABI = [
    {
        "type": "function",
        "name": "releaseToReceiver",
        "stateMutability": "payable",
        "inputs": [{"name": "registration", "type": "uint256"}],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "refundEscrow",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "registration", "type": "uint256"}],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "escrows",
        "stateMutability": "view",
        "inputs": [{"name": "registration", "type": "uint256"}],
        "outputs": [
            {"name": "depositor", "type": "address"},
            {"name": "receiver", "type": "address"},
            {"name": "token", "type": "address"},
            {"name": "value", "type": "uint256"},
        ],
    },
    {
        "type": "function",
        "name": "escrowCount",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}],
    },
]


@dataclass(frozen=True)
class OnChainEscrow:
    """Snapshot of an escrow slot as recorded by the contract."""

    registration: int
    chain_id: int
    depositor: str
    receiver: str
    token: str
    value: int  # Raw units; 0 once released or refunded

    @property
    def is_funded(self) -> bool:
        return self.value > 0

    @property
    def is_native(self) -> bool:
        return self.token.lower() == ZERO_ADDRESS


class ChainGateway(Protocol):
    """Protocol for on-chain escrow operations."""

    async def release(self, registration: int, chain_id: Optional[int]) -> str:
        """Release the escrow to its receiver. Returns the confirmed tx hash."""
        ...

    async def refund(self, registration: int, chain_id: Optional[int]) -> str:
        """Refund the escrow to its depositor. Returns the confirmed tx hash."""
        ...

    async def get_escrow(self, registration: int, chain_id: Optional[int]) -> OnChainEscrow:
        """Read the escrow slot for a registration."""
        ...


class Web3ChainGateway:
    """Escrow contract client using web3.py and the arbiter's private key."""

    def __init__(
        self,
        config: EscrowConfig,
        arbiter_private_key: str,
        receipt_timeout: Optional[float] = None,
    ):
        if not arbiter_private_key:
            raise ValueError("Missing arbiter private key")
        self.config = config
        self.account = Account.from_key(arbiter_private_key)
        self.receipt_timeout = receipt_timeout or config.chain_timeout_seconds
        self._clients: Dict[int, Web3] = {}

    @property
    def arbiter_address(self) -> str:
        return self.account.address

    def _resolve(self, chain_id: Optional[int]):
        deployment = self.config.deployment_for(chain_id)
        if deployment is None or not deployment.escrow_address:
            raise ChainNotConfiguredError(chain_id if chain_id is not None else self.config.default_chain_id)

        w3 = self._clients.get(deployment.chain_id)
        if w3 is None:
            w3 = Web3(Web3.HTTPProvider(deployment.rpc_url))
            self._clients[deployment.chain_id] = w3

        contract = w3.eth.contract(
            address=Web3.to_checksum_address(deployment.escrow_address),
            abi=ESCROW_ABI,
        )
        return deployment, w3, contract

    def _send(self, chain_id: Optional[int], function_name: str, registration: int) -> str:
        """Build, sign, send and confirm a contract call (blocking)."""
        deployment, w3, contract = self._resolve(chain_id)
        func_call = getattr(contract.functions, function_name)(int(registration))

        try:
            tx = func_call.build_transaction(
                {
                    "from": self.account.address,
                    "nonce": w3.eth.get_transaction_count(self.account.address, "pending"),
                    "chainId": deployment.chain_id,
                }
            )
            signed = self.account.sign_transaction(tx)
            tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
        except ContractLogicError as e:
            raise ChainError(f"{function_name}({registration}) would revert: {e}") from e
        except Exception as e:
            raise ChainError(f"{function_name}({registration}) could not be sent: {e}") from e

        hash_hex = Web3.to_hex(tx_hash)
        try:
            receipt = w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout)
        except TimeExhausted as e:
            logger.warning(
                f"No receipt for {function_name}({registration}) on chain {deployment.chain_id} "
                f"after {self.receipt_timeout}s (tx: {hash_hex})"
            )
            raise ChainError(f"Timed out waiting for receipt of {hash_hex}", tx_hash=hash_hex) from e

        if receipt["status"] != 1:
            raise ChainError(f"Transaction reverted: {hash_hex}", tx_hash=hash_hex)

        logger.info(
            f"{function_name}({registration}) confirmed on chain {deployment.chain_id} "
            f"| tx={hash_hex} | block={receipt.get('blockNumber')}"
        )
        return hash_hex

    def _read_escrow(self, registration: int, chain_id: Optional[int]) -> OnChainEscrow:
        deployment, _, contract = self._resolve(chain_id)
        try:
            depositor, receiver, token, value = contract.functions.escrows(int(registration)).call()
        except Exception as e:
            raise ChainError(f"escrows({registration}) lookup failed: {e}") from e
        return OnChainEscrow(
            registration=int(registration),
            chain_id=deployment.chain_id,
            depositor=depositor,
            receiver=receiver,
            token=token,
            value=int(value),
        )

    async def release(self, registration: int, chain_id: Optional[int]) -> str:
        return await asyncio.to_thread(self._send, chain_id, "releaseToReceiver", registration)

    async def refund(self, registration: int, chain_id: Optional[int]) -> str:
        return await asyncio.to_thread(self._send, chain_id, "refundEscrow", registration)

    async def get_escrow(self, registration: int, chain_id: Optional[int]) -> OnChainEscrow:
        return await asyncio.to_thread(self._read_escrow, registration, chain_id)
