"""
Unit tests for delivery deduplication and the processed-delivery stores.

Supabase is fully mocked; no network calls.
"""

import asyncio
import os
from datetime import datetime
from unittest.mock import MagicMock, Mock, patch

import pytest

from mailhook.services.deduplicator import (
    DeliveryDeduplicator,
    InMemoryProcessedStore,
    SupabaseProcessedStore,
    create_processed_store_from_env,
)


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _make_supabase_chain(*results):
    """MagicMock whose i-th .execute() returns results[i], whatever was chained before it."""
    mock = MagicMock()
    mock.select.return_value = mock
    mock.eq.return_value = mock
    mock.neq.return_value = mock
    mock.limit.return_value = mock
    mock.upsert.return_value = mock
    mock.update.return_value = mock
    mock.lt.return_value = mock
    mock.delete.return_value = mock
    mock.execute.side_effect = list(results)
    return mock


# ===========================================================================
# DeliveryDeduplicator
# ===========================================================================

class TestShouldProcessAndMark:
    """Check and mark are separate; marking is idempotent."""

    def test_new_id_should_be_processed(self):
        dedup = DeliveryDeduplicator()
        assert dedup.should_process("e1") is True

    def test_should_process_never_marks(self):
        dedup = DeliveryDeduplicator()
        dedup.should_process("e1")
        assert dedup.should_process("e1") is True
        assert len(dedup.store) == 0

    def test_marked_id_is_not_processed_again(self):
        dedup = DeliveryDeduplicator()
        dedup.mark_processed("e1")
        assert dedup.should_process("e1") is False
        assert dedup.should_process("e2") is True

    def test_marking_twice_is_harmless(self):
        dedup = DeliveryDeduplicator()
        dedup.mark_processed("e1")
        dedup.mark_processed("e1")
        assert len(dedup.store) == 1
        assert dedup.should_process("e1") is False

    def test_claim_uses_configured_lease(self):
        store = MagicMock()
        store.claim.return_value = True
        dedup = DeliveryDeduplicator(store, claim_lease_seconds=42)

        assert dedup.claim("e1") is True
        store.claim.assert_called_once_with("e1", 42)

    def test_two_deduplicators_sharing_a_store_claim_once(self):
        store = InMemoryProcessedStore()
        first = DeliveryDeduplicator(store)
        second = DeliveryDeduplicator(store)

        assert first.claim("e1") is True
        assert second.claim("e1") is False

        first.release("e1")
        assert second.claim("e1") is True


class TestGuard:
    """The per-id guard serializes same-id work only."""

    @pytest.mark.asyncio
    async def test_same_id_is_serialized(self):
        dedup = DeliveryDeduplicator()
        active = 0
        max_active = 0

        async def worker():
            nonlocal active, max_active
            async with dedup.guard("e1"):
                active += 1
                max_active = max(max_active, active)
                await asyncio.sleep(0.01)
                active -= 1

        await asyncio.gather(worker(), worker(), worker())
        assert max_active == 1

    @pytest.mark.asyncio
    async def test_different_ids_do_not_block_each_other(self):
        dedup = DeliveryDeduplicator()
        release_a = asyncio.Event()
        b_done = asyncio.Event()

        async def hold_a():
            async with dedup.guard("a"):
                await release_a.wait()

        async def run_b():
            async with dedup.guard("b"):
                b_done.set()

        task_a = asyncio.create_task(hold_a())
        await asyncio.sleep(0)
        await asyncio.wait_for(run_b(), timeout=1)
        assert b_done.is_set()

        release_a.set()
        await task_a

    @pytest.mark.asyncio
    async def test_lock_table_is_emptied_after_use(self):
        dedup = DeliveryDeduplicator()

        async def worker(delivery_id):
            async with dedup.guard(delivery_id):
                await asyncio.sleep(0)

        await asyncio.gather(worker("e1"), worker("e1"), worker("e2"))
        assert dedup.in_flight == 0

    @pytest.mark.asyncio
    async def test_lock_released_when_block_raises(self):
        dedup = DeliveryDeduplicator()

        with pytest.raises(RuntimeError):
            async with dedup.guard("e1"):
                raise RuntimeError("boom")

        assert dedup.in_flight == 0
        async with dedup.guard("e1"):
            pass


# ===========================================================================
# InMemoryProcessedStore
# ===========================================================================

class TestInMemoryProcessedStore:

    def test_entries_expire_after_retention_window(self):
        clock = FakeClock()
        store = InMemoryProcessedStore(retention_seconds=60, clock=clock)
        store.add("e1")

        clock.now += 59
        assert store.contains("e1") is True

        clock.now += 2
        assert store.contains("e1") is False
        assert len(store) == 0

    def test_oldest_entries_dropped_beyond_max_entries(self):
        clock = FakeClock()
        store = InMemoryProcessedStore(retention_seconds=None, max_entries=2, clock=clock)
        for delivery_id in ("e1", "e2", "e3"):
            store.add(delivery_id)
            clock.now += 1

        assert store.contains("e1") is False
        assert store.contains("e2") is True
        assert store.contains("e3") is True

    def test_re_adding_keeps_original_timestamp(self):
        clock = FakeClock()
        store = InMemoryProcessedStore(retention_seconds=60, clock=clock)
        store.add("e1")
        first = store.get("e1")

        clock.now += 30
        store.add("e1")
        assert store.get("e1") == first

    def test_get_returns_completion_time(self):
        clock = FakeClock(now=1_700_000_000.0)
        store = InMemoryProcessedStore(clock=clock)
        store.add("e1")

        processed_at = store.get("e1")
        assert isinstance(processed_at, datetime)
        assert processed_at.timestamp() == 1_700_000_000.0
        assert store.get("missing") is None

    def test_clear_removes_everything(self):
        store = InMemoryProcessedStore()
        store.add("e1")
        store.clear()
        assert len(store) == 0

    def test_claim_is_exclusive_until_released(self):
        store = InMemoryProcessedStore()
        assert store.claim("e1") is True
        assert store.claim("e1") is False

        store.release("e1")
        assert store.claim("e1") is True

    def test_claims_do_not_count_as_processed(self):
        store = InMemoryProcessedStore()
        store.claim("e1")
        assert store.contains("e1") is False
        assert len(store) == 0

    def test_add_finalizes_claim(self):
        store = InMemoryProcessedStore()
        store.claim("e1")
        store.add("e1")

        assert store.contains("e1") is True
        assert store.claim("e1") is False
        store.release("e1")
        assert store.contains("e1") is True

    def test_stale_claim_can_be_taken_over(self):
        clock = FakeClock()
        store = InMemoryProcessedStore(clock=clock)
        store.claim("e1", lease_seconds=60)

        clock.now += 30
        assert store.claim("e1", lease_seconds=60) is False

        clock.now += 31
        assert store.claim("e1", lease_seconds=60) is True

    def test_invalid_max_entries_raises(self):
        with pytest.raises(ValueError):
            InMemoryProcessedStore(max_entries=0)


# ===========================================================================
# SupabaseProcessedStore
# ===========================================================================

class TestSupabaseProcessedStore:

    def test_requires_client(self):
        with pytest.raises(ValueError, match="SUPABASE_SERVICE_KEY"):
            SupabaseProcessedStore(None)

    def test_contains_true_when_row_exists(self):
        chain = _make_supabase_chain(Mock(data=[{"delivery_id": "e1"}]))
        client = MagicMock()
        client.table.return_value = chain

        store = SupabaseProcessedStore(client)
        assert store.contains("e1") is True
        client.table.assert_called_with("processed_deliveries")
        chain.eq.assert_any_call("status", "processed")
        chain.eq.assert_called_with("delivery_id", "e1")

    def test_contains_false_when_no_row(self):
        client = MagicMock()
        client.table.return_value = _make_supabase_chain(Mock(data=[]))
        assert SupabaseProcessedStore(client).contains("e1") is False

    def test_add_finalizes_row_as_processed(self):
        chain = _make_supabase_chain(Mock(data=[]))
        client = MagicMock()
        client.table.return_value = chain

        SupabaseProcessedStore(client).add("e1")

        args, kwargs = chain.upsert.call_args
        assert args[0]["delivery_id"] == "e1"
        assert "processed_at" in args[0]
        assert args[0]["status"] == "processed"
        assert kwargs == {"on_conflict": "delivery_id"}

    def test_claim_inserts_processing_row(self):
        chain = _make_supabase_chain(Mock(data=[{"delivery_id": "e1"}]))
        client = MagicMock()
        client.table.return_value = chain

        assert SupabaseProcessedStore(client).claim("e1") is True

        args, kwargs = chain.upsert.call_args
        assert args[0]["delivery_id"] == "e1"
        assert args[0]["status"] == "processing"
        assert kwargs == {"on_conflict": "delivery_id", "ignore_duplicates": True}
        chain.update.assert_not_called()

    def test_claim_held_elsewhere_is_refused(self):
        # Insert conflicted, and the existing claim is not stale.
        chain = _make_supabase_chain(Mock(data=[]), Mock(data=[]))
        client = MagicMock()
        client.table.return_value = chain

        assert SupabaseProcessedStore(client).claim("e1", lease_seconds=300) is False

        chain.eq.assert_any_call("status", "processing")
        assert chain.lt.call_args.args[0] == "claimed_at"

    def test_stale_claim_is_taken_over(self):
        chain = _make_supabase_chain(Mock(data=[]), Mock(data=[{"delivery_id": "e1"}]))
        client = MagicMock()
        client.table.return_value = chain

        assert SupabaseProcessedStore(client).claim("e1") is True
        assert "claimed_at" in chain.update.call_args.args[0]

    def test_release_deletes_only_processing_row(self):
        chain = _make_supabase_chain(Mock(data=[]))
        client = MagicMock()
        client.table.return_value = chain

        SupabaseProcessedStore(client).release("e1")

        chain.delete.assert_called_once()
        chain.eq.assert_any_call("delivery_id", "e1")
        chain.eq.assert_any_call("status", "processing")

    def test_get_parses_timestamp(self):
        client = MagicMock()
        client.table.return_value = _make_supabase_chain(
            Mock(data=[{"processed_at": "2026-02-24T10:00:00+00:00"}])
        )
        processed_at = SupabaseProcessedStore(client).get("e1")
        assert processed_at.year == 2026 and processed_at.hour == 10

    def test_len_uses_exact_count(self):
        chain = _make_supabase_chain(Mock(data=[], count=7))
        client = MagicMock()
        client.table.return_value = chain

        assert len(SupabaseProcessedStore(client)) == 7
        chain.select.assert_called_with("delivery_id", count="exact")

    def test_database_errors_propagate(self):
        chain = MagicMock()
        chain.select.return_value = chain
        chain.eq.return_value = chain
        chain.limit.return_value = chain
        chain.execute.side_effect = Exception("connection refused")
        client = MagicMock()
        client.table.return_value = chain

        with pytest.raises(Exception, match="connection refused"):
            SupabaseProcessedStore(client).contains("e1")


# ===========================================================================
# create_processed_store_from_env
# ===========================================================================

class TestCreateProcessedStoreFromEnv:

    def test_defaults_to_memory(self):
        with patch.dict(os.environ, {}, clear=False):
            os.environ.pop("DEDUP_BACKEND", None)
            store = create_processed_store_from_env()
        assert isinstance(store, InMemoryProcessedStore)

    def test_memory_limits_from_env(self):
        env = {
            "DEDUP_BACKEND": "memory",
            "DEDUP_RETENTION_SECONDS": "120",
            "DEDUP_MAX_ENTRIES": "10",
        }
        with patch.dict(os.environ, env):
            store = create_processed_store_from_env()
        assert store.retention_seconds == 120.0
        assert store.max_entries == 10

    def test_supabase_backend_uses_admin_client(self):
        admin = MagicMock()
        with patch.dict(os.environ, {"DEDUP_BACKEND": "Supabase"}), \
             patch("mailhook.db.supabase_admin", admin):
            store = create_processed_store_from_env()
        assert isinstance(store, SupabaseProcessedStore)

    def test_supabase_backend_without_service_key_raises(self):
        with patch.dict(os.environ, {"DEDUP_BACKEND": "supabase"}), \
             patch("mailhook.db.supabase_admin", None):
            with pytest.raises(ValueError):
                create_processed_store_from_env()

    def test_unknown_backend_raises(self):
        with patch.dict(os.environ, {"DEDUP_BACKEND": "redis"}):
            with pytest.raises(ValueError, match="Unknown dedup backend"):
                create_processed_store_from_env()

    def test_deduplicator_reads_claim_lease(self):
        env = {"DEDUP_BACKEND": "memory", "DEDUP_CLAIM_LEASE_SECONDS": "90"}
        with patch.dict(os.environ, env):
            dedup = DeliveryDeduplicator.from_env()
        assert dedup.claim_lease_seconds == 90.0
        assert isinstance(dedup.store, InMemoryProcessedStore)
