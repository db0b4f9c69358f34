"""chainpulse: aggregation engine for on-chain usage analytics.

Tracks wallet users, sessions and smart-contract usage from a stream of
domain events, and derives daily snapshots and a rolling real-time view.

Created: 2026-10-19
"""

from chainpulse.engine import AnalyticsEngine, EntityKind
from chainpulse.entities import AnalyticsSession, AnalyticsUser, ContractAnalytics
from chainpulse.errors import (
    AnalyticsError,
    ConcurrencyConflict,
    InvalidNumeric,
    InvalidPayload,
    NotFound,
    OperationTimeout,
)
from chainpulse.events import AnalyticsEvent, EventKind
from chainpulse.realtime import RealTimeAnalytics, RealTimeWindowTracker
from chainpulse.snapshots import DailySnapshot, build_daily_snapshot
from chainpulse.store import InMemoryStore, JsonFileStore

__version__ = "0.1.0"

__all__ = [
    "AnalyticsEngine",
    "AnalyticsError",
    "AnalyticsEvent",
    "AnalyticsSession",
    "AnalyticsUser",
    "ConcurrencyConflict",
    "ContractAnalytics",
    "DailySnapshot",
    "EntityKind",
    "EventKind",
    "InMemoryStore",
    "InvalidNumeric",
    "InvalidPayload",
    "JsonFileStore",
    "NotFound",
    "OperationTimeout",
    "RealTimeAnalytics",
    "RealTimeWindowTracker",
    "build_daily_snapshot",
]
