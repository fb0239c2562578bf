"""
Pytest fixtures for Sobek escrow tests.

Everything runs against in-memory collaborators: the ledger, timers and a fake
escrow contract whose slots drain to zero on release/refund.
"""

import asyncio
import itertools
from dataclasses import replace
from types import SimpleNamespace
from typing import Dict, List, Optional

import pytest

from sobek.config import BASE_MAINNET_CHAIN_ID, EscrowConfig
from sobek.escrow.chain import OnChainEscrow
from sobek.escrow.coordinator import EscrowCoordinator
from sobek.escrow.disputes import DisputeResolver
from sobek.escrow.errors import ChainError
from sobek.escrow.models import EscrowStatus, Product, Transaction, utc_now
from sobek.escrow.storage import InMemoryLedgerStore
from sobek.escrow.timer import InMemoryTimerService
from sobek.marketplace import MarketplaceService
from sobek.reputation import InMemoryTierLog, ReputationRecorder

SELLER_WALLET = "0x5E11E40000000000000000000000000000000001"
BUYER_WALLET = "0xB0B0000000000000000000000000000000000002"
STRANGER_WALLET = "0x5742000000000000000000000000000000000003"
ZERO = "0x0000000000000000000000000000000000000000"

# Edges walked from ``active`` to reach each seeded status
SEED_PATHS = {
    EscrowStatus.ACTIVE: (),
    EscrowStatus.DISPUTED: (EscrowStatus.DISPUTED,),
    EscrowStatus.RELEASING: (EscrowStatus.RELEASING,),
    EscrowStatus.RELEASED: (EscrowStatus.RELEASING, EscrowStatus.RELEASED),
    EscrowStatus.REFUNDING: (EscrowStatus.DISPUTED, EscrowStatus.REFUNDING),
    EscrowStatus.REFUNDED: (EscrowStatus.DISPUTED, EscrowStatus.REFUNDING, EscrowStatus.REFUNDED),
}


class FakeChainGateway:
    """Escrow contract double.

    Release/refund drain the slot to zero and return a fake tx hash. Set
    ``fail_with`` to make every state-changing call raise, or ``delay`` to
    slow calls down.
    """

    def __init__(self):
        self.slots: Dict[int, OnChainEscrow] = {}
        self.release_calls: List[int] = []
        self.refund_calls: List[int] = []
        self.fail_with: Optional[Exception] = None
        self.lookup_error: Optional[Exception] = None
        self.delay: float = 0.0
        self._hashes = itertools.count(1)

    def deposit(
        self,
        registration: int,
        value: int = 100_000_000,
        depositor: str = BUYER_WALLET,
        receiver: str = SELLER_WALLET,
        chain_id: int = BASE_MAINNET_CHAIN_ID,
    ) -> None:
        self.slots[registration] = OnChainEscrow(
            registration=registration,
            chain_id=chain_id,
            depositor=depositor,
            receiver=receiver,
            token=ZERO,
            value=value,
        )

    def drain(self, registration: int) -> None:
        self.slots[registration] = replace(self.slots[registration], value=0)

    async def _settle(self, registration: int) -> str:
        if self.delay:
            await asyncio.sleep(self.delay)
        else:
            await asyncio.sleep(0)
        if self.fail_with is not None:
            raise self.fail_with
        slot = self.slots.get(registration)
        if slot is None or slot.value == 0:
            raise ChainError(f"escrow {registration} is not funded")
        self.drain(registration)
        return f"0x{next(self._hashes):064x}"

    async def release(self, registration: int, chain_id: Optional[int]) -> str:
        self.release_calls.append(registration)
        return await self._settle(registration)

    async def refund(self, registration: int, chain_id: Optional[int]) -> str:
        self.refund_calls.append(registration)
        return await self._settle(registration)

    async def get_escrow(self, registration: int, chain_id: Optional[int]) -> OnChainEscrow:
        if self.lookup_error is not None:
            raise self.lookup_error
        slot = self.slots.get(registration)
        if slot is None:
            return OnChainEscrow(registration, chain_id or BASE_MAINNET_CHAIN_ID, ZERO, ZERO, ZERO, 0)
        return slot


class RecordingNotifier:
    """Notifier that remembers every message."""

    def __init__(self):
        self.sent: List[tuple] = []
        self.fail_with: Optional[Exception] = None

    async def notify(self, user_id: str, message: str) -> bool:
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append((user_id, message))
        return True


@pytest.fixture
def config():
    return EscrowConfig(chain_timeout_seconds=5.0, timer_timeout_seconds=5.0)


@pytest.fixture
def store():
    return InMemoryLedgerStore()


@pytest.fixture
def timer():
    return InMemoryTimerService()


@pytest.fixture
def chain():
    return FakeChainGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def tier_log():
    return InMemoryTierLog()


@pytest.fixture
def coordinator(store, chain, timer, notifier, tier_log, config):
    return EscrowCoordinator(
        store,
        chain,
        timer,
        reputation=ReputationRecorder(store, tier_log),
        notifier=notifier,
        config=config,
    )


@pytest.fixture
def resolver(coordinator):
    return DisputeResolver(coordinator)


@pytest.fixture
def marketplace(coordinator, config):
    return MarketplaceService(coordinator, config)


@pytest.fixture
def seed(store, chain, coordinator):
    """Factory that creates a seller, buyer, product and escrowed transaction.

    Returns an async function; call it inside the test.
    """
    registrations = itertools.count(1)

    async def _seed(
        price: float = 100.0,
        duration: int = 10,
        status: EscrowStatus = EscrowStatus.ACTIVE,
        with_registration: bool = True,
        with_timer: bool = True,
        fund: bool = True,
        dispute_by: Optional[str] = None,
    ) -> SimpleNamespace:
        seller = await store.upsert_user(SELLER_WALLET)
        buyer = await store.upsert_user(BUYER_WALLET)
        product = await store.insert_product(
            Product(
                id="",
                title="Hand-carved scarab",
                price_usdc=price,
                agent_id=seller.id,
                escrow_duration_seconds=duration,
            )
        )
        registration = next(registrations) if with_registration else None
        if registration is not None and fund:
            chain.deposit(registration)

        tx = await store.insert_transaction(
            Transaction(
                id="",
                product_id=product.id,
                client_id=buyer.id,
                escrow_status=EscrowStatus.ACTIVE,
                tx_hash=f"0x{registration or 0:064x}",
                chain_id=BASE_MAINNET_CHAIN_ID,
                escrow_registration=registration,
                amount_usd=price,
                paid_at=utc_now(),
            )
        )
        if with_timer:
            tx = await coordinator.open_escrow(tx, duration) or tx

        path = list(SEED_PATHS[status])
        if dispute_by and path[:1] != [EscrowStatus.DISPUTED]:
            path.insert(0, EscrowStatus.DISPUTED)
        current = EscrowStatus.ACTIVE
        for step in path:
            updates = {}
            if step == EscrowStatus.DISPUTED:
                updates = {
                    "dispute_initiated_by": dispute_by or buyer.wallet_address,
                    "dispute_initiated_at": utc_now(),
                }
            tx, _ = await store.atomic_update_status(tx.id, current, step, **updates)
            current = step
        # Only the edges a test drives itself are interesting
        store.status_history[tx.id] = []
        return SimpleNamespace(
            seller=seller, buyer=buyer, product=product, tx=tx, registration=registration
        )

    return _seed
