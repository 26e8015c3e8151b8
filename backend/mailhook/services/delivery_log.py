"""
Bounded in-memory log of delivery outcomes.

Keeps the most recent DELIVERY_LOG_SIZE records (default 500) for the
operator endpoints, plus running per-outcome counters since startup.
"""

import threading
from collections import Counter, deque
from typing import Optional

from mailhook.models.delivery import DeliveryOutcome, DeliveryRecord

DEFAULT_LOG_SIZE = 500


class DeliveryLog:
    def __init__(self, max_records: int = DEFAULT_LOG_SIZE):
        if max_records < 1:
            raise ValueError("max_records must be >= 1")
        self._records: deque[DeliveryRecord] = deque(maxlen=max_records)
        self._counts: Counter = Counter()
        self._lock = threading.Lock()

    def append(self, record: DeliveryRecord) -> None:
        with self._lock:
            self._records.append(record)
            self._counts[record.outcome] += 1

    def recent(self, limit: Optional[int] = None) -> list[DeliveryRecord]:
        """Most recent records first."""
        with self._lock:
            records = list(reversed(self._records))
        return records if limit is None else records[:limit]

    def for_delivery(self, delivery_id: str) -> list[DeliveryRecord]:
        """Every retained record for one delivery id, most recent first."""
        return [r for r in self.recent() if r.delivery_id == delivery_id]

    def stats(self) -> dict[str, int]:
        """Counts per outcome since startup, including outcomes never seen."""
        with self._lock:
            counts = dict(self._counts)
        stats = {outcome.value: counts.get(outcome, 0) for outcome in DeliveryOutcome}
        stats["total"] = sum(counts.values())
        return stats

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
