"""Tests for the in-memory ledger store."""

import itertools
from datetime import timedelta

import pytest

from sobek.escrow.errors import DuplicatePurchaseError
from sobek.escrow.models import EscrowStatus, Product, ReputationEvent, Transaction, utc_now
from sobek.escrow.storage import CONFLICT, NOT_FOUND, InMemoryLedgerStore


_registrations = itertools.count(1)


def make_transaction(**overrides) -> Transaction:
    fields = {
        "id": "",
        "product_id": "prod-1",
        "client_id": "buyer-1",
        "escrow_status": EscrowStatus.ACTIVE,
        "escrow_registration": next(_registrations),
        "chain_id": 8453,
        "tx_hash": "0x" + "aa" * 32,
    }
    fields.update(overrides)
    return Transaction(**fields)


@pytest.fixture
def store():
    return InMemoryLedgerStore()


class TestAtomicUpdateStatus:
    @pytest.mark.asyncio
    async def test_swaps_when_status_matches(self, store):
        tx = await store.insert_transaction(make_transaction())

        updated, err = await store.atomic_update_status(
            tx.id, EscrowStatus.ACTIVE, EscrowStatus.RELEASING
        )

        assert err is None
        assert updated.escrow_status == EscrowStatus.RELEASING
        assert store.status_history[tx.id] == [(EscrowStatus.ACTIVE, EscrowStatus.RELEASING)]

    @pytest.mark.asyncio
    async def test_conflict_when_status_differs(self, store):
        tx = await store.insert_transaction(make_transaction(escrow_status=EscrowStatus.DISPUTED))

        updated, err = await store.atomic_update_status(
            tx.id, EscrowStatus.ACTIVE, EscrowStatus.RELEASING
        )

        assert (updated, err) == (None, CONFLICT)
        assert (await store.get_transaction(tx.id)).escrow_status == EscrowStatus.DISPUTED

    @pytest.mark.asyncio
    async def test_not_found(self, store):
        assert await store.atomic_update_status(
            "missing", EscrowStatus.ACTIVE, EscrowStatus.RELEASING
        ) == (None, NOT_FOUND)

    @pytest.mark.asyncio
    async def test_extra_columns_written_with_status(self, store):
        tx = await store.insert_transaction(make_transaction())

        updated, _ = await store.atomic_update_status(
            tx.id, EscrowStatus.ACTIVE, EscrowStatus.DISPUTED, dispute_initiated_by="0xabc"
        )

        assert updated.dispute_initiated_by == "0xabc"

    @pytest.mark.asyncio
    async def test_returned_rows_are_copies(self, store):
        tx = await store.insert_transaction(make_transaction())
        tx.escrow_status = EscrowStatus.RELEASED
        assert (await store.get_transaction(tx.id)).escrow_status == EscrowStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_rejects_edges_outside_state_machine(self, store):
        tx = await store.insert_transaction(make_transaction())

        with pytest.raises(ValueError, match="active -> refunded"):
            await store.atomic_update_status(tx.id, EscrowStatus.ACTIVE, EscrowStatus.REFUNDED)

        assert (await store.get_transaction(tx.id)).escrow_status == EscrowStatus.ACTIVE
        assert store.status_history[tx.id] == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("column", ["escrow_registration", "chain_id", "id"])
    async def test_rejects_rewriting_escrow_identity(self, store, column):
        tx = await store.insert_transaction(make_transaction())

        with pytest.raises(ValueError, match=column):
            await store.atomic_update_status(
                tx.id, EscrowStatus.ACTIVE, EscrowStatus.DISPUTED, **{column: 999}
            )

        stored = await store.get_transaction(tx.id)
        assert stored.escrow_status == EscrowStatus.ACTIVE
        assert stored.escrow_registration == tx.escrow_registration


class TestTimers:
    @pytest.mark.asyncio
    async def test_set_timer_once(self, store):
        tx = await store.insert_transaction(make_transaction())
        release_at = utc_now() + timedelta(hours=1)

        assert (await store.set_timer(tx.id, "t-1", release_at)).timer_handle == "t-1"
        assert await store.set_timer(tx.id, "t-2", release_at) is None
        assert (await store.get_transaction(tx.id)).timer_handle == "t-1"

    @pytest.mark.asyncio
    async def test_set_timer_requires_active(self, store):
        tx = await store.insert_transaction(make_transaction(escrow_status=EscrowStatus.DISPUTED))
        assert await store.set_timer(tx.id, "t-1", utc_now()) is None

    @pytest.mark.asyncio
    async def test_candidate_lists_split_on_timer(self, store):
        with_timer = await store.insert_transaction(make_transaction(timer_handle="t-1"))
        without_timer = await store.insert_transaction(make_transaction())
        await store.insert_transaction(make_transaction(escrow_registration=None))
        await store.insert_transaction(
            make_transaction(escrow_status=EscrowStatus.RELEASED, timer_handle="t-2")
        )

        assert [t.id for t in await store.list_sweep_candidates()] == [with_timer.id]
        assert [t.id for t in await store.list_missing_timers()] == [without_timer.id]


class TestLookups:
    @pytest.mark.asyncio
    async def test_find_by_tx_hash_ignores_case(self, store):
        tx = await store.insert_transaction(make_transaction(tx_hash="0x" + "AB" * 32))
        found = await store.find_transaction_by_tx_hash("0x" + "ab" * 32)
        assert found.id == tx.id
        assert await store.find_transaction_by_tx_hash("0x" + "cd" * 32) is None

    @pytest.mark.asyncio
    async def test_find_by_registration_is_per_chain(self, store):
        tx = await store.insert_transaction(make_transaction(escrow_registration=7, chain_id=8453))

        assert (await store.find_transaction_by_registration(8453, 7)).id == tx.id
        assert await store.find_transaction_by_registration(84532, 7) is None
        assert await store.find_transaction_by_registration(8453, 8) is None

    @pytest.mark.asyncio
    async def test_registration_held_by_one_row(self, store):
        await store.insert_transaction(make_transaction(escrow_registration=7, tx_hash="0x" + "01" * 32))

        with pytest.raises(DuplicatePurchaseError) as exc_info:
            await store.insert_transaction(make_transaction(escrow_registration=7, tx_hash="0x" + "02" * 32))

        assert exc_info.value.registration == 7
        assert len(store._transactions) == 1
        # Same registration number on another chain is a different escrow
        await store.insert_transaction(make_transaction(escrow_registration=7, chain_id=84532))
    @pytest.mark.asyncio
    async def test_upsert_user_by_wallet(self, store):
        first = await store.upsert_user("0xABC")
        second = await store.upsert_user("0xabc")
        assert first.id == second.id
        assert (await store.get_user_by_wallet("0xAbC")).id == first.id

    @pytest.mark.asyncio
    async def test_products_newest_first(self, store):
        older = await store.insert_product(
            Product(id="", title="old", price_usdc=1.0, agent_id=None, created_at=utc_now() - timedelta(days=1))
        )
        newer = await store.insert_product(Product(id="", title="new", price_usdc=1.0, agent_id=None))

        assert [p.id for p in await store.list_products()] == [newer.id, older.id]
        assert [p.id for p in await store.list_products(limit=1, offset=1)] == [older.id]


class TestReputation:
    @pytest.mark.asyncio
    async def test_sum_reflected_on_user(self, store):
        user = await store.upsert_user("0xSeller")
        for delta in (12, -60):
            await store.insert_reputation_event(
                ReputationEvent(wallet="0xseller", delta=delta, reason="r", transaction_id=None, amount_usd=1)
            )

        assert await store.get_reputation_sum("0xSELLER") == -48
        assert (await store.get_user(user.id)).reputation_sum == -48

    @pytest.mark.asyncio
    async def test_seller_resolution_counts(self, store):
        seller = await store.upsert_user("0xseller")
        product = await store.insert_product(
            Product(id="", title="t", price_usdc=1.0, agent_id=seller.id)
        )
        for status in (EscrowStatus.RELEASED, EscrowStatus.RELEASED, EscrowStatus.REFUNDED, EscrowStatus.ACTIVE):
            await store.insert_transaction(make_transaction(product_id=product.id, escrow_status=status))

        assert await store.seller_resolution_counts(seller.id) == (2, 1)
