"""Tests for admin dispute resolution."""

import pytest

from sobek.escrow.disputes import ResolutionStatus
from sobek.escrow.errors import ChainError
from sobek.escrow.models import EscrowStatus, Resolution
from sobek.reputation import (
    REASON_DISPUTE_REFUND,
    REASON_DISPUTE_RELEASE,
    tier_for,
)


class TestResolveRefund:
    @pytest.mark.asyncio
    async def test_refund_returns_funds_to_buyer(self, resolver, store, chain, seed):
        s = await seed(status=EscrowStatus.DISPUTED)

        result = await resolver.resolve(s.tx.id, "refund")

        assert result.ok
        assert result.status == EscrowStatus.REFUNDED
        assert chain.refund_calls == [s.registration]
        assert chain.release_calls == []
        tx = await store.get_transaction(s.tx.id)
        assert tx.escrow_status == EscrowStatus.REFUNDED
        assert tx.escrow_resolved_to == s.buyer.wallet_address
        assert tx.tx_hash == result.tx_hash
        assert store.status_history[s.tx.id] == [
            (EscrowStatus.DISPUTED, EscrowStatus.REFUNDING),
            (EscrowStatus.REFUNDING, EscrowStatus.REFUNDED),
        ]

    @pytest.mark.asyncio
    async def test_refund_penalizes_seller(self, resolver, store, seed):
        s = await seed(price=100.0, status=EscrowStatus.DISPUTED)

        await resolver.resolve(s.tx.id, Resolution.REFUND)

        events = await store.list_reputation_events(s.seller.wallet_address)
        assert [(e.delta, e.reason) for e in events] == [(-60, REASON_DISPUTE_REFUND)]
        assert await store.list_reputation_events(s.buyer.wallet_address) == []


class TestResolveRelease:
    @pytest.mark.asyncio
    async def test_release_pays_seller(self, resolver, store, chain, seed):
        s = await seed(status=EscrowStatus.DISPUTED)

        result = await resolver.resolve(s.tx.id, "release")

        assert result.ok
        assert chain.release_calls == [s.registration]
        tx = await store.get_transaction(s.tx.id)
        assert tx.escrow_status == EscrowStatus.RELEASED
        assert tx.escrow_resolved_to == s.seller.wallet_address

    @pytest.mark.asyncio
    async def test_release_penalizes_buyer_not_rewards_seller(self, resolver, store, seed):
        s = await seed(price=100.0, status=EscrowStatus.DISPUTED)

        await resolver.resolve(s.tx.id, "release")

        events = await store.list_reputation_events(s.buyer.wallet_address)
        assert [(e.delta, e.reason) for e in events] == [(-24, REASON_DISPUTE_RELEASE)]
        assert await store.list_reputation_events(s.seller.wallet_address) == []


class TestPreconditions:
    @pytest.mark.asyncio
    async def test_resolving_twice_conflicts(self, resolver, chain, seed):
        s = await seed(status=EscrowStatus.DISPUTED)

        first = await resolver.resolve(s.tx.id, "refund")
        second = await resolver.resolve(s.tx.id, "refund")

        assert first.ok
        assert second.kind == ResolutionStatus.CONFLICT
        assert chain.refund_calls == [s.registration]

    @pytest.mark.asyncio
    async def test_active_escrow_cannot_be_resolved(self, resolver, store, chain, seed):
        s = await seed()

        result = await resolver.resolve(s.tx.id, "refund")

        assert result.kind == ResolutionStatus.CONFLICT
        assert chain.refund_calls == []
        assert (await store.get_transaction(s.tx.id)).escrow_status == EscrowStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_unknown_transaction(self, resolver):
        result = await resolver.resolve("missing", "release")
        assert result.kind == ResolutionStatus.NOT_FOUND

    @pytest.mark.asyncio
    async def test_unknown_resolution_rejected(self, resolver, seed):
        s = await seed(status=EscrowStatus.DISPUTED)
        with pytest.raises(ValueError):
            await resolver.resolve(s.tx.id, "split")

    @pytest.mark.asyncio
    async def test_missing_registration_returns_to_disputed(self, resolver, store, chain, seed):
        s = await seed(status=EscrowStatus.DISPUTED, with_registration=False)

        result = await resolver.resolve(s.tx.id, "refund")

        assert result.kind == ResolutionStatus.MISSING_REGISTRATION
        assert chain.refund_calls == []
        assert (await store.get_transaction(s.tx.id)).escrow_status == EscrowStatus.DISPUTED


class TestFailures:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("resolution", ["refund", "release"])
    async def test_chain_failure_returns_to_disputed(self, resolver, store, chain, seed, resolution):
        s = await seed(status=EscrowStatus.DISPUTED)
        chain.fail_with = ChainError("insufficient funds for gas")

        result = await resolver.resolve(s.tx.id, resolution)

        assert result.kind == ResolutionStatus.CHAIN_FAILED
        assert not result.needs_manual_intervention
        claim = Resolution(resolution).claim_status
        assert store.status_history[s.tx.id] == [
            (EscrowStatus.DISPUTED, claim),
            (claim, EscrowStatus.DISPUTED),
        ]
        # Nothing moved, so the admin can simply retry
        chain.fail_with = None
        assert (await resolver.resolve(s.tx.id, resolution)).ok

    @pytest.mark.asyncio
    async def test_ledger_failure_after_refund_needs_reconciliation(self, resolver, store, chain, seed):
        s = await seed(status=EscrowStatus.DISPUTED)
        original = store.atomic_update_status

        async def failing(transaction_id, expected, new, **updates):
            if new == EscrowStatus.REFUNDED:
                raise RuntimeError("statement timeout")
            return await original(transaction_id, expected, new, **updates)

        store.atomic_update_status = failing
        result = await resolver.resolve(s.tx.id, "refund")

        assert result.kind == ResolutionStatus.NEEDS_RECONCILIATION
        assert result.needs_manual_intervention
        assert result.tx_hash is not None
        assert result.status == EscrowStatus.REFUNDING
        assert (await store.get_transaction(s.tx.id)).escrow_status == EscrowStatus.REFUNDING
        assert not chain.slots[s.registration].is_funded
        assert await store.list_reputation_events(s.seller.wallet_address) == []

    @pytest.mark.asyncio
    async def test_party_lookup_failure_is_retryable(self, resolver, store, chain, seed, monkeypatch):
        s = await seed(status=EscrowStatus.DISPUTED)
        get_user = store.get_user

        async def broken_get_user(user_id):
            raise RuntimeError("users table unavailable")

        monkeypatch.setattr(store, "get_user", broken_get_user)
        result = await resolver.resolve(s.tx.id, "refund")

        assert result.kind == ResolutionStatus.LOOKUP_FAILED
        assert not result.needs_manual_intervention
        assert result.status == EscrowStatus.DISPUTED
        assert isinstance(result.error, RuntimeError)
        assert chain.refund_calls == []
        assert (await store.get_transaction(s.tx.id)).escrow_status == EscrowStatus.DISPUTED

        monkeypatch.setattr(store, "get_user", get_user)
        assert (await resolver.resolve(s.tx.id, "refund")).ok

    @pytest.mark.asyncio
    async def test_tier_lookup_failure_is_retryable(
        self, resolver, coordinator, store, chain, seed, monkeypatch
    ):
        s = await seed(status=EscrowStatus.DISPUTED)

        async def broken_tier(seller_id):
            raise RuntimeError("products table unavailable")

        monkeypatch.setattr(coordinator.reputation, "seller_tier", broken_tier)
        result = await resolver.resolve(s.tx.id, "release")

        assert result.kind == ResolutionStatus.LOOKUP_FAILED
        assert chain.release_calls == []
        assert (await store.get_transaction(s.tx.id)).escrow_status == EscrowStatus.DISPUTED


class TestSideEffects:
    @pytest.mark.asyncio
    async def test_both_parties_notified(self, resolver, notifier, seed):
        s = await seed(status=EscrowStatus.DISPUTED)

        result = await resolver.resolve(s.tx.id, "refund")

        assert {user_id for user_id, _ in notifier.sent} == {s.seller.id, s.buyer.id}
        message = notifier.sent[0][1]
        assert message == f"Dispute resolved: transaction {s.tx.id[:8]}... has been refunded to buyer."
        assert [e.label for e in result.side_effects] == ["notify_seller", "notify_buyer"]

    @pytest.mark.asyncio
    async def test_notification_failure_does_not_fail_resolution(self, resolver, store, notifier, seed):
        s = await seed(status=EscrowStatus.DISPUTED)
        notifier.fail_with = RuntimeError("bot blocked")

        result = await resolver.resolve(s.tx.id, "release")

        assert result.ok
        assert all(not e.ok for e in result.side_effects)
        assert (await store.get_transaction(s.tx.id)).escrow_status == EscrowStatus.RELEASED

    @pytest.mark.asyncio
    async def test_tier_drop_is_logged(self, resolver, coordinator, store, timer, tier_log, seed):
        # Three clean sales put the seller in Sovereign
        for _ in range(3):
            sale = await seed(price=20.0)
            timer.fire(sale.tx.timer_handle)
        await coordinator.run_sweep()
        assert tier_for(*await store.seller_resolution_counts(sale.seller.id)).tier == "Sovereign"
        tier_log.entries.clear()

        s = await seed(status=EscrowStatus.DISPUTED)
        await resolver.resolve(s.tx.id, "refund")

        assert len(tier_log.entries) == 1
        entry = tier_log.entries[0]
        assert (entry.previous_tier, entry.new_tier) == ("Sovereign", "Bronze")
        assert entry.wallet == s.seller.wallet_address
        assert entry.transaction_id == s.tx.id
        assert entry.reputation_score == await store.get_reputation_sum(s.seller.wallet_address)
