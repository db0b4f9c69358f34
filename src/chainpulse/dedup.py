"""Bounded memory of processed event ids.

The event source delivers at least once. ``SeenEventCache`` lets the engine
skip a redelivered event without keeping every id forever: entries expire
after ``ttl`` and the oldest are evicted beyond ``max_entries``.

An id goes through three states: claimed (in flight), committed (seen) or
released (processing failed, so a redelivery may try again).

Created: 2026-10-19
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from datetime import datetime, timedelta

logger = logging.getLogger(__name__)


class SeenEventCache:
    def __init__(self, ttl: timedelta = timedelta(days=1), max_entries: int = 100_000) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self.ttl = ttl
        self.max_entries = max_entries
        # event_id → commit time, oldest first
        self._seen: OrderedDict[str, datetime] = OrderedDict()
        self._inflight: set[str] = set()

    def claim(self, event_id: str, now: datetime) -> bool:
        """Reserve *event_id* for processing.

        Returns False if the id was already processed or is being processed.
        """
        self._expire(now)
        if event_id in self._seen or event_id in self._inflight:
            logger.debug("Duplicate event %s ignored", event_id)
            return False
        self._inflight.add(event_id)
        return True

    def commit(self, event_id: str, now: datetime) -> None:
        """Mark a claimed id as processed."""
        self._inflight.discard(event_id)
        self._seen[event_id] = now
        self._seen.move_to_end(event_id)
        while len(self._seen) > self.max_entries:
            self._seen.popitem(last=False)

    def release(self, event_id: str) -> None:
        """Forget a claim whose processing failed."""
        self._inflight.discard(event_id)

    def __contains__(self, event_id: object) -> bool:
        return event_id in self._seen

    def __len__(self) -> int:
        return len(self._seen)

    def clear(self) -> None:
        self._seen.clear()
        self._inflight.clear()

    def _expire(self, now: datetime) -> None:
        cutoff = now - self.ttl
        while self._seen:
            oldest_id, seen_at = next(iter(self._seen.items()))
            if seen_at >= cutoff:
                break
            del self._seen[oldest_id]
