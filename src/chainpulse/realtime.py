"""Rolling-window view of recent activity.

The tracker keeps a bounded ring buffer of recent events plus the current
page of every session seen in the window. Nothing here is persisted; a
restart simply starts with an empty window.

Created: 2026-10-19
"""

from __future__ import annotations

import logging
from collections import Counter, deque
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from pydantic import BaseModel, Field

from chainpulse.events import AnalyticsEvent, EventKind, as_utc, utc_now
from chainpulse.metadata import Metadata

logger = logging.getLogger(__name__)

DEFAULT_WINDOW = timedelta(hours=1)
DEFAULT_MAX_EVENTS = 10_000
DEFAULT_RECENT_LIMIT = 20
DEFAULT_TOP_PAGES = 10


class PageCount(BaseModel):
    page: str
    users: int


class RecentEvent(BaseModel):
    kind: EventKind
    event_id: str
    timestamp: datetime
    wallet_address: str | None = None
    contract_address: str | None = None
    metadata: Metadata = Field(default_factory=dict)


class RealTimeAnalytics(BaseModel):
    """Point-in-time view of the trailing window. Replaced on every recompute."""

    active_users: int = 0
    active_sessions: int = 0
    transactions_in_window: int = 0
    events_in_window: int = 0
    top_current_pages: list[PageCount] = Field(default_factory=list)
    recent_events: list[RecentEvent] = Field(default_factory=list)
    window_seconds: float = DEFAULT_WINDOW.total_seconds()
    updated_at: datetime = Field(default_factory=utc_now)


@dataclass
class _SessionState:
    page: str | None
    last_activity: datetime


class RealTimeWindowTracker:
    """Maintains trailing-window counts over the live event stream.

    Usage::

        tracker = RealTimeWindowTracker(window=timedelta(minutes=15))
        tracker.record(event)
        view = tracker.snapshot()
    """

    def __init__(
        self,
        *,
        window: timedelta = DEFAULT_WINDOW,
        max_events: int = DEFAULT_MAX_EVENTS,
        recent_limit: int = DEFAULT_RECENT_LIMIT,
        top_pages_limit: int = DEFAULT_TOP_PAGES,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if window <= timedelta(0):
            raise ValueError("window must be positive")
        self.window = window
        self._recent_limit = recent_limit
        self._top_pages_limit = top_pages_limit
        self._clock = clock

        # Ring buffer of events (arrival order, newest at right)
        self._events: deque[AnalyticsEvent] = deque(maxlen=max_events)

        # session_id → current page / last activity
        self._sessions: dict[str, _SessionState] = {}

        # session_id → last event seen after the session ended
        self._ended: dict[str, datetime] = {}

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def record(self, event: AnalyticsEvent, *, session_ended: bool = False) -> None:
        """Add *event* to the window.

        ``session_ended`` tells the tracker that the event's session is
        already closed, for callers that know it from durable state.
        """
        self._events.append(event)
        if event.session_id:
            ended = session_ended or event.kind is EventKind.SESSION_ENDED
            self._track_session(event, ended)
        self._prune(self._clock())

    def reset(self) -> None:
        self._events.clear()
        self._sessions.clear()
        self._ended.clear()
        logger.debug("Real-time window cleared")

    def _track_session(self, event: AnalyticsEvent, ended: bool) -> None:
        sid = event.session_id
        if ended or sid in self._ended:
            # Ended sessions never come back as active.
            self._sessions.pop(sid, None)
            seen = self._ended.get(sid)
            if seen is None or event.timestamp > seen:
                self._ended[sid] = event.timestamp
            return

        state = self._sessions.get(sid)
        if state is None:
            state = self._sessions[sid] = _SessionState(page=None, last_activity=event.timestamp)
        if event.timestamp > state.last_activity:
            state.last_activity = event.timestamp
        if event.page:
            state.page = event.page

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    def snapshot(self, now: datetime | None = None) -> RealTimeAnalytics:
        """Recompute the real-time view from the current window contents."""
        now = as_utc(now) if now is not None else self._clock()
        self._prune(now)
        cutoff = now - self.window

        # Arrival order is not timestamp order, so filter rather than trust pruning.
        in_window = [e for e in self._events if e.timestamp >= cutoff]

        wallets = {e.wallet_address for e in in_window if e.wallet_address}
        live = {
            sid: state
            for sid, state in self._sessions.items()
            if state.last_activity >= cutoff
        }
        pages = Counter(state.page for state in live.values() if state.page)
        top_pages = sorted(pages.items(), key=lambda item: (-item[1], item[0]))
        newest = sorted(in_window, key=lambda e: e.timestamp, reverse=True)

        return RealTimeAnalytics(
            active_users=len(wallets),
            active_sessions=len(live),
            transactions_in_window=sum(1 for e in in_window if e.kind is EventKind.TRANSACTION),
            events_in_window=len(in_window),
            top_current_pages=[
                PageCount(page=page, users=users)
                for page, users in top_pages[: self._top_pages_limit]
            ],
            recent_events=[
                RecentEvent(
                    kind=e.kind,
                    event_id=e.event_id,
                    timestamp=e.timestamp,
                    wallet_address=e.wallet_address,
                    contract_address=e.contract_address,
                    metadata=dict(e.metadata),
                )
                for e in newest[: self._recent_limit]
            ],
            window_seconds=self.window.total_seconds(),
            updated_at=now,
        )

    def __len__(self) -> int:
        return len(self._events)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _prune(self, now: datetime) -> None:
        cutoff = now - self.window
        while self._events and self._events[0].timestamp < cutoff:
            self._events.popleft()
        stale = [sid for sid, s in self._sessions.items() if s.last_activity < cutoff]
        for sid in stale:
            del self._sessions[sid]
        expired = [sid for sid, seen in self._ended.items() if seen < cutoff]
        for sid in expired:
            del self._ended[sid]
