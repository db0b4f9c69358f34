"""The aggregation engine.

Wires the per-kind aggregation services, the real-time window tracker, the
snapshot repository and duplicate suppression together. ``ingest()`` is the
single entry point for the event source; the ``list_*``/``get_*``/``top_*``
methods form the read surface for whatever reporting layer sits on top.

Created: 2026-10-19
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from datetime import date, datetime
from enum import Enum
from typing import Any

from chainpulse.config import Settings, get_settings
from chainpulse.dedup import SeenEventCache
from chainpulse.entities import AnalyticsSession
from chainpulse.errors import InvalidPayload, NotFound
from chainpulse.events import AnalyticsEvent, EventKind, parse_event, utc_now
from chainpulse.locks import KeyedLockTable
from chainpulse.realtime import RealTimeAnalytics, RealTimeWindowTracker
from chainpulse.services import (
    AggregationService,
    Clock,
    ContractActivity,
    ContractService,
    SessionActivity,
    SessionService,
    UserActivity,
    UserService,
)
from chainpulse.snapshots import DailySnapshot, SnapshotRepository, build_daily_snapshot
from chainpulse.store import EntityStore, create_store

logger = logging.getLogger(__name__)


class EntityKind(str, Enum):
    USER = "user"
    SESSION = "session"
    CONTRACT = "contract"


class AnalyticsEngine:
    """Consumes domain events and maintains every aggregate view.

    Usage::

        engine = AnalyticsEngine(InMemoryStore(), settings=Settings())
        await engine.ingest({"kind": "session_started", "session_id": "s1"})
        view = engine.get_real_time_analytics()
    """

    def __init__(
        self,
        store: EntityStore | None = None,
        *,
        settings: Settings | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.settings = settings or get_settings()
        self.store = store if store is not None else create_store(self.settings)
        self._clock = clock

        service_options = {
            "clock": clock,
            "timeout": self.settings.operation_timeout_seconds,
            "max_retries": self.settings.max_update_retries,
        }
        self.users = UserService(self.store, **service_options)
        self.sessions = SessionService(self.store, **service_options)
        self.contracts = ContractService(self.store, **service_options)
        self.snapshots = SnapshotRepository(self.store)
        self._session_starts = KeyedLockTable()
        self.tracker = RealTimeWindowTracker(
            window=self.settings.realtime_window,
            max_events=self.settings.realtime_max_events,
            recent_limit=self.settings.recent_events_limit,
            top_pages_limit=self.settings.top_pages_limit,
            clock=clock,
        )
        self._dedup: SeenEventCache | None = None
        if self.settings.dedup_enabled:
            self._dedup = SeenEventCache(
                ttl=self.settings.dedup_ttl, max_entries=self.settings.dedup_max_entries
            )

        self._latest: RealTimeAnalytics | None = None
        self._ticker: asyncio.Task | None = None
        self._running = False

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    async def ingest(self, raw: AnalyticsEvent | Mapping[str, Any]) -> bool:
        """Apply one event to every aggregate it touches.

        Returns False when the event id was already processed. Errors from
        the services (``NotFound``, ``InvalidNumeric`` ...) propagate and the
        event id is released so a redelivery can try again.
        """
        event = parse_event(raw)
        now = self._clock()
        if self._dedup is not None and not self._dedup.claim(event.event_id, now):
            return False

        try:
            session_ended = await self._dispatch(event)
        except BaseException:
            if self._dedup is not None:
                self._dedup.release(event.event_id)
            raise

        if self._dedup is not None:
            self._dedup.commit(event.event_id, now)
        self.tracker.record(event, session_ended=session_ended)
        logger.debug("Ingested %s %s", event.kind.value, event.event_id)
        return True

    async def ingest_many(self, events: list[AnalyticsEvent | Mapping[str, Any]]) -> int:
        """Ingest *events* in order. Returns how many were applied."""
        applied = 0
        for event in events:
            if await self.ingest(event):
                applied += 1
        return applied

    async def _dispatch(self, event: AnalyticsEvent) -> bool:
        """Run the handler for *event*.

        Handlers look up a referenced session before their first write, so an
        event released for a missing session leaves nothing behind. The
        result tells whether the event's session turned out to be ended.
        """
        handler = {
            EventKind.SESSION_STARTED: self._on_session_started,
            EventKind.SESSION_ENDED: self._on_session_ended,
            EventKind.PAGE_VIEW: self._on_page_view,
            EventKind.INTERACTION: self._on_interaction,
            EventKind.CONTRACT_INTERACTION: self._on_contract_interaction,
            EventKind.TRANSACTION: self._on_transaction,
            EventKind.ASSET_LINKED: self._on_asset_change,
            EventKind.ASSET_UNLINKED: self._on_asset_change,
            EventKind.TOKEN_BALANCE: self._on_token_balance,
        }[event.kind]
        return bool(await handler(event))

    async def _touch_user(self, event: AnalyticsEvent, activity: UserActivity) -> None:
        await self.users.get_or_create(event.wallet_address, now=event.timestamp)
        await self.users.update(event.wallet_address, activity, now=event.timestamp)

    async def _require_session(self, session_id: str) -> AnalyticsSession:
        session = await self.sessions.get(session_id)
        if session is None:
            raise NotFound(self.sessions.kind, session_id)
        return session

    async def _on_session_started(self, event: AnalyticsEvent) -> bool:
        # The user is credited before the session exists, so a failed credit
        # leaves no session behind for a redelivery to skip.
        async with self._session_starts.hold(event.session_id):
            existing = await self.sessions.get(event.session_id)
            if existing is not None:
                return not existing.is_active

            user = None
            if event.wallet_address:
                user = await self.users.get_or_create(event.wallet_address, now=event.timestamp)
                user = await self.users.update(
                    event.wallet_address,
                    UserActivity(new_session=True, metadata=event.metadata),
                    now=event.timestamp,
                )
            await self.sessions.get_or_create(
                event.session_id,
                {
                    "wallet_address": event.wallet_address,
                    "user_id": user.id if user else None,
                    "user_agent": event.user_agent,
                    "ip_address": event.ip_address,
                    "referrer": event.referrer,
                    "entry_page": event.page,
                    "chain_id": event.chain_id,
                },
                now=event.timestamp,
            )
        return False

    async def _on_session_ended(self, event: AnalyticsEvent) -> bool:
        await self.sessions.end(event.session_id, exit_page=event.page, now=event.timestamp)
        if event.wallet_address:
            await self._touch_user(event, UserActivity(metadata=event.metadata))
        return True

    async def _on_page_view(self, event: AnalyticsEvent) -> bool:
        session = await self.sessions.update(
            event.session_id,
            SessionActivity(page_view=True, current_page=event.page),
            now=event.timestamp,
        )
        if event.wallet_address:
            await self._touch_user(event, UserActivity(metadata=event.metadata))
        return not session.is_active

    async def _on_interaction(self, event: AnalyticsEvent) -> bool:
        ended = False
        if event.session_id:
            session = await self.sessions.update(
                event.session_id,
                SessionActivity(interaction=True, current_page=event.page),
                now=event.timestamp,
            )
            ended = not session.is_active
        if event.wallet_address:
            await self._touch_user(
                event,
                UserActivity(new_interaction=True, gas_spent=event.gas, metadata=event.metadata),
            )
        return ended

    async def _on_contract_interaction(self, event: AnalyticsEvent) -> bool:
        if event.session_id:
            await self._require_session(event.session_id)
        await self._record_contract(event, event.event_name)

        ended = False
        if event.session_id:
            session = await self.sessions.update(
                event.session_id, SessionActivity(interaction=True), now=event.timestamp
            )
            ended = not session.is_active
        if event.wallet_address:
            await self._touch_user(
                event,
                UserActivity(new_interaction=True, gas_spent=event.gas, metadata=event.metadata),
            )
        return ended

    async def _on_transaction(self, event: AnalyticsEvent) -> bool:
        await self._touch_user(
            event,
            UserActivity(new_transaction=True, gas_spent=event.gas, metadata=event.metadata),
        )
        if event.contract_address:
            await self._record_contract(event, event.event_name or EventKind.TRANSACTION.value)
        return False

    async def _on_asset_change(self, event: AnalyticsEvent) -> bool:
        delta = 1 if event.kind is EventKind.ASSET_LINKED else -1
        await self._touch_user(event, UserActivity(assets_delta=delta, metadata=event.metadata))
        return False

    async def _on_token_balance(self, event: AnalyticsEvent) -> bool:
        await self._touch_user(
            event,
            UserActivity(token_symbol=event.token_symbol, token_amount=event.amount),
        )
        return False

    async def _record_contract(self, event: AnalyticsEvent, event_name: str) -> None:
        await self.contracts.get_or_create(event.contract_address, now=event.timestamp)
        await self.contracts.update(
            event.contract_address,
            ContractActivity(
                event_name=event_name,
                user_address=event.wallet_address,
                gas_used=event.gas,
                metadata=event.metadata,
            ),
            now=event.timestamp,
        )

    # ------------------------------------------------------------------
    # Read surface
    # ------------------------------------------------------------------

    def service(self, kind: EntityKind | str) -> AggregationService:
        try:
            kind = EntityKind(kind)
        except ValueError:
            raise InvalidPayload(f"Unknown entity kind: {kind!r}") from None
        return {
            EntityKind.USER: self.users,
            EntityKind.SESSION: self.sessions,
            EntityKind.CONTRACT: self.contracts,
        }[kind]

    async def list_entities(self, kind: EntityKind | str) -> list[Any]:
        return await self.service(kind).list()

    async def get_entity(self, kind: EntityKind | str, key: str) -> Any | None:
        return await self.service(kind).get(key)

    async def top_entities(
        self, kind: EntityKind | str, metric: str | None = None, n: int = 10
    ) -> list[Any]:
        return await self.service(kind).top(n, metric)

    async def build_daily_snapshot(
        self, day: date | None = None, *, metadata: Mapping[str, Any] | None = None
    ) -> DailySnapshot:
        """Build the snapshot for *day* (default: today, UTC) and store it."""
        day = day or self._clock().date()
        users, sessions, contracts = await asyncio.gather(
            self.users.list(), self.sessions.list(), self.contracts.list()
        )
        snapshot = build_daily_snapshot(
            day,
            users=users,
            sessions=sessions,
            contracts=contracts,
            top_n=self.settings.snapshot_top_n,
            metadata=metadata,
        )
        return await self.snapshots.save(snapshot)

    async def get_daily_snapshot(self, day: date) -> DailySnapshot | None:
        return await self.snapshots.get(day)

    async def list_daily_snapshots(
        self, start: date | None = None, end: date | None = None
    ) -> list[DailySnapshot]:
        return await self.snapshots.list(start, end)

    def get_real_time_analytics(self, now: datetime | None = None) -> RealTimeAnalytics:
        """Recompute the real-time view now."""
        self._latest = self.tracker.snapshot(now)
        return self._latest

    @property
    def latest_real_time(self) -> RealTimeAnalytics | None:
        """The view computed by the most recent tick or explicit call."""
        return self._latest

    # ------------------------------------------------------------------
    # Periodic recomputation
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Recompute the real-time view every ``tick_interval_seconds``."""
        if self._running:
            return
        self._running = True
        self._ticker = asyncio.create_task(self._tick_loop())
        logger.info(
            "📊 Real-time ticker started (every %.1fs)", self.settings.tick_interval_seconds
        )

    async def stop(self) -> None:
        self._running = False
        if self._ticker is not None:
            self._ticker.cancel()
            try:
                await self._ticker
            except asyncio.CancelledError:
                pass
            self._ticker = None
        logger.info("🛑 Real-time ticker stopped")

    async def _tick_loop(self) -> None:
        while self._running:
            self.get_real_time_analytics()
            await asyncio.sleep(self.settings.tick_interval_seconds)
