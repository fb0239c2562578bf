"""Pytest configuration and fixtures."""

import itertools
import os
import secrets
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

# Generate a unique test secret for this test run to prevent token forgery
_TEST_JWT_SECRET = f"test-only-{secrets.token_urlsafe(32)}"
TEST_INTERNAL_SECRET = f"internal-{secrets.token_urlsafe(16)}"

os.environ.setdefault("SUPABASE_URL", "https://test.supabase.co")
os.environ.setdefault("SUPABASE_SECRET_KEY", "test-secret-key")
os.environ.setdefault("JWT_SECRET_KEY", _TEST_JWT_SECRET)
os.environ.setdefault("INTERNAL_API_SECRET", TEST_INTERNAL_SECRET)

from app.auth import create_access_token  # noqa: E402
from app.config import get_settings  # noqa: E402
from app.main import app  # noqa: E402
from app.rate_limit import limiter  # noqa: E402
from app.services import EscrowServices, get_services  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from sobek.config import EscrowConfig  # noqa: E402
from sobek.escrow.chain import OnChainEscrow  # noqa: E402
from sobek.escrow.coordinator import EscrowCoordinator  # noqa: E402
from sobek.escrow.disputes import DisputeResolver  # noqa: E402
from sobek.escrow.models import EscrowStatus, Product, Transaction, utc_now  # noqa: E402
from sobek.escrow.storage import InMemoryLedgerStore  # noqa: E402
from sobek.escrow.timer import InMemoryTimerService  # noqa: E402
from sobek.marketplace import MarketplaceService  # noqa: E402
from sobek.notify import LoggingNotifier  # noqa: E402

SELLER_WALLET = "0x5E11E40000000000000000000000000000000001"
BUYER_WALLET = "0xB0B0000000000000000000000000000000000002"
STRANGER_WALLET = "0x5742000000000000000000000000000000000003"
RELEASE_HASH = "0x" + "7e" * 32
REFUND_HASH = "0x" + "7f" * 32


@pytest.fixture(autouse=True)
def disable_rate_limits():
    """Per-IP limits would trip across the suite since every request comes from testclient."""
    limiter.enabled = False
    yield
    limiter.enabled = True


@pytest.fixture
def client():
    """Create a test client."""
    return TestClient(app)


def _auth_headers(wallet: str) -> dict:
    token = create_access_token(wallet, get_settings())
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def buyer_headers():
    return _auth_headers(BUYER_WALLET)


@pytest.fixture
def seller_headers():
    return _auth_headers(SELLER_WALLET)


@pytest.fixture
def stranger_headers():
    return _auth_headers(STRANGER_WALLET)


@pytest.fixture
def internal_headers():
    return {"Authorization": f"Bearer {get_settings().internal_api_secret}"}


@pytest.fixture
def chain():
    """Chain gateway double: every call succeeds unless told otherwise."""
    gateway = MagicMock()
    gateway.release = AsyncMock(return_value=RELEASE_HASH)
    gateway.refund = AsyncMock(return_value=REFUND_HASH)
    gateway.get_escrow = AsyncMock(
        side_effect=lambda registration, chain_id: OnChainEscrow(
            registration, chain_id or 8453, BUYER_WALLET, SELLER_WALLET, "0x" + "00" * 20, 0
        )
    )
    return gateway


@pytest.fixture
def services(chain):
    """In-memory escrow services wired into the app."""
    store = InMemoryLedgerStore()
    timer = InMemoryTimerService()
    config = EscrowConfig(chain_timeout_seconds=5.0, timer_timeout_seconds=5.0)
    coordinator = EscrowCoordinator(store, chain, timer, notifier=LoggingNotifier(), config=config)
    built = EscrowServices(
        store=store,
        coordinator=coordinator,
        resolver=DisputeResolver(coordinator),
        marketplace=MarketplaceService(coordinator, config),
    )
    app.dependency_overrides[get_services] = lambda: built
    yield built
    app.dependency_overrides.pop(get_services, None)


# Valid edges from active to each seeded status
SEED_PATHS = {
    EscrowStatus.ACTIVE: (),
    EscrowStatus.DISPUTED: (EscrowStatus.DISPUTED,),
    EscrowStatus.RELEASING: (EscrowStatus.RELEASING,),
    EscrowStatus.RELEASED: (EscrowStatus.RELEASING, EscrowStatus.RELEASED),
    EscrowStatus.REFUNDING: (EscrowStatus.DISPUTED, EscrowStatus.REFUNDING),
    EscrowStatus.REFUNDED: (EscrowStatus.DISPUTED, EscrowStatus.REFUNDING, EscrowStatus.REFUNDED),
}


@pytest.fixture
def seed_order(services):
    """Factory for a product plus an escrowed order in a given status.

    Each order gets its own deposit hash and registration; pass
    ``registration=None`` for an order with no on-chain escrow.
    """
    numbers = itertools.count(1)

    async def _seed(
        status: EscrowStatus = EscrowStatus.ACTIVE,
        registration: int | None = 0,
        with_timer: bool = True,
    ):
        n = next(numbers)
        store = services.store
        seller = await store.upsert_user(SELLER_WALLET)
        buyer = await store.upsert_user(BUYER_WALLET)
        product = await store.insert_product(
            Product(id="", title="Scarab", price_usdc=100.0, agent_id=seller.id, escrow_duration_seconds=60)
        )
        tx = await store.insert_transaction(
            Transaction(
                id="",
                product_id=product.id,
                client_id=buyer.id,
                escrow_status=EscrowStatus.ACTIVE,
                tx_hash="0x" + f"{n:064x}",
                chain_id=8453,
                escrow_registration=n if registration == 0 else registration,
                amount_usd=100.0,
                paid_at=utc_now(),
            )
        )
        if with_timer:
            tx = await services.coordinator.open_escrow(tx, 60) or tx
        for step in SEED_PATHS[status]:
            extra = {}
            if step == EscrowStatus.DISPUTED:
                extra = {"dispute_initiated_by": BUYER_WALLET, "dispute_initiated_at": utc_now()}
            tx, _ = await store.atomic_update_status(tx.id, tx.escrow_status, step, **extra)
        return SimpleNamespace(seller=seller, buyer=buyer, product=product, tx=tx)

    return _seed
