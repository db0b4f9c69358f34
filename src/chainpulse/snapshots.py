"""Daily snapshot rollups.

``build_daily_snapshot`` is a pure fold over the current aggregate
collections; it never reads the raw event stream or earlier snapshots, so
rebuilding a date from the same aggregates yields an identical snapshot.
``SnapshotRepository`` stores one snapshot per date and replaces it on
rebuild.

Created: 2026-10-19
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Iterable, Mapping
from datetime import UTC, date, datetime, time, timedelta
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from chainpulse import precision
from chainpulse.entities import AnalyticsSession, AnalyticsUser, ContractAnalytics
from chainpulse.errors import InvalidPayload
from chainpulse.metadata import Metadata, validate_metadata
from chainpulse.store import EntityStore

logger = logging.getLogger(__name__)

SNAPSHOT_KIND = "snapshot"

# Alias so the `date` field below does not shadow its own annotation.
CalendarDate = date


class ContractRank(BaseModel):
    model_config = ConfigDict(frozen=True)

    address: str
    interactions: int


class EventRank(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_name: str
    count: int


class DailySnapshot(BaseModel):
    """Immutable rollup for one calendar date (UTC)."""

    model_config = ConfigDict(frozen=True)

    date: CalendarDate
    new_users: int = 0
    active_users: int = 0
    total_sessions: int = 0
    average_session_duration: float = Field(default=0.0, description="Seconds")
    total_transactions: int = 0
    total_gas_used: str = precision.ZERO
    top_contracts: list[ContractRank] = Field(default_factory=list)
    top_events: list[EventRank] = Field(default_factory=list)
    metadata: Metadata = Field(default_factory=dict)


def day_bounds(day: date) -> tuple[datetime, datetime]:
    """Half-open UTC interval ``[start, end)`` covering *day*."""
    start = datetime.combine(day, time.min, tzinfo=UTC)
    return start, start + timedelta(days=1)


def build_daily_snapshot(
    day: date,
    *,
    users: Iterable[AnalyticsUser],
    sessions: Iterable[AnalyticsSession],
    contracts: Iterable[ContractAnalytics],
    top_n: int = 10,
    metadata: Mapping[str, Any] | None = None,
) -> DailySnapshot:
    """Fold the aggregate set into the snapshot for *day*.

    * ``new_users``: users first seen on *day*.
    * ``active_users``: distinct wallets last seen on *day* or owning a
      session that overlaps it.
    * ``total_sessions``: sessions started on *day*.
    * ``average_session_duration``: mean duration of sessions ended on *day*.
    * ``total_transactions`` / ``total_gas_used``: transactions and gas that
      users recorded on *day* (their per-day ``daily`` buckets), so a later
      rebuild of a past date is unaffected by newer activity.
    * ``top_contracts`` / ``top_events``: ranked by lifetime interaction
      count as of the build, ties broken by ascending address / event name.
    """
    start, end = day_bounds(day)
    users = list(users)
    sessions = list(sessions)
    contracts = list(contracts)

    def on_day(moment: datetime | None) -> bool:
        return moment is not None and start <= moment < end

    new_users = sum(1 for u in users if on_day(u.first_seen))

    active = {u.wallet_address for u in users if on_day(u.last_seen)}
    for s in sessions:
        overlaps = s.start_time < end and (s.end_time is None or s.end_time >= start)
        if overlaps and s.wallet_address:
            active.add(s.wallet_address)

    total_sessions = sum(1 for s in sessions if on_day(s.start_time))

    closed = [
        s.duration.total_seconds()
        for s in sessions
        if on_day(s.end_time) and s.duration is not None
    ]
    average_duration = sum(closed) / len(closed) if closed else 0.0

    key = day.isoformat()
    totals = [u.daily[key] for u in users if key in u.daily]
    total_transactions = sum(t.transactions for t in totals)
    total_gas = precision.sum_all(t.gas_spent for t in totals)

    ranked_contracts = sorted(
        (c for c in contracts if c.total_interactions > 0),
        key=lambda c: (-c.total_interactions, c.address),
    )
    event_counts: Counter[str] = Counter()
    for c in contracts:
        event_counts.update(c.events)
    ranked_events = sorted(event_counts.items(), key=lambda item: (-item[1], item[0]))

    return DailySnapshot(
        date=day,
        new_users=new_users,
        active_users=len(active),
        total_sessions=total_sessions,
        average_session_duration=average_duration,
        total_transactions=total_transactions,
        total_gas_used=total_gas,
        top_contracts=[
            ContractRank(address=c.address, interactions=c.total_interactions)
            for c in ranked_contracts[:top_n]
        ],
        top_events=[EventRank(event_name=name, count=n) for name, n in ranked_events[:top_n]],
        metadata=validate_metadata(metadata),
    )


class SnapshotRepository:
    """Stores daily snapshots keyed by ISO date."""

    def __init__(self, store: EntityStore) -> None:
        self._store = store

    async def save(self, snapshot: DailySnapshot) -> DailySnapshot:
        """Store *snapshot*, replacing any earlier one for the same date."""
        await self._store.write(
            SNAPSHOT_KIND, snapshot.date.isoformat(), snapshot.model_dump(mode="json")
        )
        logger.info("Saved daily snapshot for %s", snapshot.date.isoformat())
        return snapshot

    async def get(self, day: date) -> DailySnapshot | None:
        record = await self._store.read(SNAPSHOT_KIND, day.isoformat())
        if record is None:
            return None
        return self._decode(record.key, record.value)

    async def list(self, start: date | None = None, end: date | None = None) -> list[DailySnapshot]:
        """Snapshots with ``start <= date <= end``, oldest first."""
        snapshots = [
            self._decode(record.key, record.value)
            for record in await self._store.list(SNAPSHOT_KIND)
        ]
        return sorted(
            (
                s
                for s in snapshots
                if (start is None or s.date >= start) and (end is None or s.date <= end)
            ),
            key=lambda s: s.date,
        )

    @staticmethod
    def _decode(key: str, value: dict[str, Any]) -> DailySnapshot:
        try:
            return DailySnapshot.model_validate(value)
        except ValidationError as exc:
            raise InvalidPayload(f"Stored snapshot {key} is invalid: {exc}") from exc
