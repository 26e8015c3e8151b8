"""
Delivery deduplication.

The sender retries a notification until it sees a 2xx, so the same delivery
id can arrive several times, sometimes concurrently. The deduplicator keeps
the set of ids whose handler already completed and serializes the
check -> dispatch -> mark sequence per id.

Check and mark are separate operations: an id is marked only after its
handler succeeds, so a failed handler leaves the id eligible for redelivery.

The per-id guard only serializes deliveries inside one process. Workers that
share a durable store also take a claim on the id in the store before running
the handler; the claim is an atomic insert-if-absent, so exactly one worker
wins it. A claim is finalized by marking the id processed, or released when
the handler fails. A claim left behind by a crashed worker can be taken over
once it is older than the claim lease.

Stores
------
InMemoryProcessedStore   Process-local, bounded by a retention window and a
                         size cap. Lost on restart.
SupabaseProcessedStore   Durable table ``processed_deliveries``:

                             create table processed_deliveries (
                                 delivery_id  text primary key,
                                 status       text not null default 'processed',
                                 claimed_at   timestamptz,
                                 processed_at timestamptz
                             );

Environment variables
---------------------
DEDUP_BACKEND              "memory" (default) or "supabase".
DEDUP_RETENTION_SECONDS    In-memory eviction window (default: 259200, 72h).
DEDUP_MAX_ENTRIES          In-memory size cap (default: 100000).
DEDUP_CLAIM_LEASE_SECONDS  Age after which an unfinished claim may be taken
                           over by another worker (default: 300).
"""

import asyncio
import logging
import os
import threading
import time
from collections import OrderedDict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Callable, Optional, Protocol

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_SECONDS = 72 * 3600
DEFAULT_MAX_ENTRIES = 100_000
DEFAULT_CLAIM_LEASE_SECONDS = 300.0


class ProcessedStore(Protocol):
    """Mapping of delivery id -> completion time, plus in-progress claims."""

    def contains(self, delivery_id: str) -> bool: ...

    def claim(self, delivery_id: str, lease_seconds: float) -> bool: ...

    def release(self, delivery_id: str) -> None: ...

    def add(self, delivery_id: str) -> None: ...

    def get(self, delivery_id: str) -> Optional[datetime]: ...

    def clear(self) -> None: ...

    def __len__(self) -> int: ...


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------

class InMemoryProcessedStore:
    """
    Thread-safe in-memory ProcessedSet.

    Entries older than `retention_seconds` are evicted lazily, and the oldest
    entries are dropped once `max_entries` is exceeded. Pass
    retention_seconds=None to keep entries for the life of the process.
    Claims are held in a separate table and never count as processed.
    """

    def __init__(
        self,
        retention_seconds: Optional[float] = DEFAULT_RETENTION_SECONDS,
        max_entries: Optional[int] = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.time,
    ):
        if max_entries is not None and max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self.retention_seconds = retention_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, float]" = OrderedDict()
        self._claims: dict[str, float] = {}
        self._lock = threading.Lock()

    def _evict(self, now: float) -> None:
        # Insertion order is completion order, so the oldest entries sit at the front.
        if self.retention_seconds is not None:
            while self._entries:
                _, processed_at = next(iter(self._entries.items()))
                if now - processed_at <= self.retention_seconds:
                    break
                self._entries.popitem(last=False)
        if self.max_entries is not None:
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def contains(self, delivery_id: str) -> bool:
        with self._lock:
            self._evict(self._clock())
            return delivery_id in self._entries

    def claim(self, delivery_id: str, lease_seconds: float = DEFAULT_CLAIM_LEASE_SECONDS) -> bool:
        with self._lock:
            now = self._clock()
            self._evict(now)
            if delivery_id in self._entries:
                return False
            claimed_at = self._claims.get(delivery_id)
            if claimed_at is not None and now - claimed_at < lease_seconds:
                return False
            self._claims[delivery_id] = now
            return True

    def release(self, delivery_id: str) -> None:
        with self._lock:
            self._claims.pop(delivery_id, None)

    def add(self, delivery_id: str) -> None:
        with self._lock:
            now = self._clock()
            self._claims.pop(delivery_id, None)
            if delivery_id not in self._entries:
                self._entries[delivery_id] = now
            self._evict(now)

    def get(self, delivery_id: str) -> Optional[datetime]:
        with self._lock:
            self._evict(self._clock())
            processed_at = self._entries.get(delivery_id)
        if processed_at is None:
            return None
        return datetime.fromtimestamp(processed_at, tz=timezone.utc)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._claims.clear()

    def __len__(self) -> int:
        with self._lock:
            self._evict(self._clock())
            return len(self._entries)


# ---------------------------------------------------------------------------
# Supabase store
# ---------------------------------------------------------------------------

class SupabaseProcessedStore:
    """
    Durable ProcessedSet backed by a Supabase table.

    Survives restarts and can be shared by several worker processes. A claim
    inserts a "processing" row with ON CONFLICT DO NOTHING; only the worker
    whose insert returned the row runs the handler. Marking upserts the row
    to "processed", so a second mark for the same id is harmless.
    """

    PROCESSING = "processing"
    PROCESSED = "processed"

    def __init__(self, client, table: str = "processed_deliveries"):
        if client is None:
            raise ValueError("SUPABASE_SERVICE_KEY is required for the supabase dedup backend")
        self._client = client
        self.table = table

    def contains(self, delivery_id: str) -> bool:
        result = (
            self._client.table(self.table)
            .select("delivery_id")
            .eq("status", self.PROCESSED)
            .eq("delivery_id", delivery_id)
            .limit(1)
            .execute()
        )
        return bool(result.data)

    def claim(self, delivery_id: str, lease_seconds: float = DEFAULT_CLAIM_LEASE_SECONDS) -> bool:
        now = datetime.now(timezone.utc)
        inserted = (
            self._client.table(self.table)
            .upsert(
                {
                    "delivery_id": delivery_id,
                    "status": self.PROCESSING,
                    "claimed_at": now.isoformat(),
                },
                on_conflict="delivery_id",
                ignore_duplicates=True,
            )
            .execute()
        )
        if inserted.data:
            return True

        # The row exists: either processed, held by a live worker, or left
        # behind by a worker that died. Only the last can be taken over.
        cutoff = (now - timedelta(seconds=lease_seconds)).isoformat()
        taken = (
            self._client.table(self.table)
            .update({"claimed_at": now.isoformat()})
            .eq("delivery_id", delivery_id)
            .eq("status", self.PROCESSING)
            .lt("claimed_at", cutoff)
            .execute()
        )
        if taken.data:
            logger.warning(f"Took over stale claim on delivery {delivery_id!r}")
            return True
        return False

    def release(self, delivery_id: str) -> None:
        (
            self._client.table(self.table)
            .delete()
            .eq("delivery_id", delivery_id)
            .eq("status", self.PROCESSING)
            .execute()
        )

    def add(self, delivery_id: str) -> None:
        self._client.table(self.table).upsert(
            {
                "delivery_id": delivery_id,
                "status": self.PROCESSED,
                "processed_at": datetime.now(timezone.utc).isoformat(),
            },
            on_conflict="delivery_id",
        ).execute()

    def get(self, delivery_id: str) -> Optional[datetime]:
        result = (
            self._client.table(self.table)
            .select("processed_at")
            .eq("status", self.PROCESSED)
            .eq("delivery_id", delivery_id)
            .limit(1)
            .execute()
        )
        if not result.data:
            return None
        return datetime.fromisoformat(result.data[0]["processed_at"])

    def clear(self) -> None:
        self._client.table(self.table).delete().neq("delivery_id", "").execute()

    def __len__(self) -> int:
        result = (
            self._client.table(self.table)
            .select("delivery_id", count="exact")
            .eq("status", self.PROCESSED)
            .limit(1)
            .execute()
        )
        return result.count or 0

    def ping(self) -> None:
        """Raise if the table cannot be reached."""
        self._client.table(self.table).select("delivery_id").limit(1).execute()


def create_processed_store_from_env() -> ProcessedStore:
    """
    Build the ProcessedSet selected by DEDUP_BACKEND.

    Raises ValueError for an unknown backend name, or when the supabase
    backend is selected without a service key.
    """
    backend = os.getenv("DEDUP_BACKEND", "memory").lower().strip()

    if backend == "memory":
        return InMemoryProcessedStore(
            retention_seconds=float(
                os.getenv("DEDUP_RETENTION_SECONDS", str(DEFAULT_RETENTION_SECONDS))
            ),
            max_entries=int(os.getenv("DEDUP_MAX_ENTRIES", str(DEFAULT_MAX_ENTRIES))),
        )

    if backend == "supabase":
        from mailhook.db import supabase_admin

        return SupabaseProcessedStore(supabase_admin)

    raise ValueError(
        f"Unknown dedup backend {backend!r}. Supported backends: ['memory', 'supabase']"
    )


# ---------------------------------------------------------------------------
# Deduplicator
# ---------------------------------------------------------------------------

@dataclass
class _KeyLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    holders: int = 0


class DeliveryDeduplicator:
    """
    Tracks processed delivery ids and serializes work per id.

    Usage::

        async with dedup.guard(delivery.id):
            if not dedup.should_process(delivery.id):
                return already_processed
            if not dedup.claim(delivery.id):
                return in_progress_elsewhere
            result = await run_handler(delivery)
            if result.ok:
                dedup.mark_processed(delivery.id)
            else:
                dedup.release(delivery.id)
    """

    def __init__(
        self,
        store: Optional[ProcessedStore] = None,
        claim_lease_seconds: float = DEFAULT_CLAIM_LEASE_SECONDS,
    ):
        self.store: ProcessedStore = store if store is not None else InMemoryProcessedStore()
        self.claim_lease_seconds = claim_lease_seconds
        self._locks: dict[str, _KeyLock] = {}

    @classmethod
    def from_env(cls) -> "DeliveryDeduplicator":
        return cls(
            create_processed_store_from_env(),
            claim_lease_seconds=float(
                os.getenv("DEDUP_CLAIM_LEASE_SECONDS", str(DEFAULT_CLAIM_LEASE_SECONDS))
            ),
        )

    def should_process(self, delivery_id: str) -> bool:
        """Return False if delivery_id already completed. Never marks."""
        return not self.store.contains(delivery_id)

    def claim(self, delivery_id: str) -> bool:
        """
        Atomically take delivery_id for this worker.

        False means the id is processed, or another worker sharing the store
        holds an unexpired claim on it.
        """
        return self.store.claim(delivery_id, self.claim_lease_seconds)

    def release(self, delivery_id: str) -> None:
        """Give up a claim without marking, so a redelivery can run the handler."""
        self.store.release(delivery_id)

    def mark_processed(self, delivery_id: str) -> None:
        """Record delivery_id as completed. Marking twice is harmless."""
        self.store.add(delivery_id)
        logger.debug(f"Marked delivery {delivery_id!r} as processed")

    @asynccontextmanager
    async def guard(self, delivery_id: str) -> AsyncIterator[None]:
        """
        Hold the per-id lock for the duration of the block.

        Deliveries with different ids never wait on each other. The lock
        object is dropped once nobody holds or waits on it, so the table
        only grows with the number of ids currently in flight.
        """
        entry = self._locks.get(delivery_id)
        if entry is None:
            entry = self._locks[delivery_id] = _KeyLock()
        entry.holders += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.holders -= 1
            if entry.holders == 0:
                self._locks.pop(delivery_id, None)

    @property
    def in_flight(self) -> int:
        """Number of ids with a held or awaited lock."""
        return len(self._locks)
