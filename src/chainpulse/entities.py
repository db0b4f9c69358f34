"""Aggregate entity models and their pure transition functions.

Every transition takes the current (frozen) instance and returns a new one;
inputs are never mutated. ``now`` is sampled at the call boundary when not
supplied, so tests can pin time by passing it explicitly.

Created: 2026-10-19
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import datetime, timedelta
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from chainpulse import precision
from chainpulse.errors import InvalidPayload
from chainpulse.events import as_utc, utc_now
from chainpulse.metadata import Metadata, overlay, validate_metadata


# Serialized durations round to the microsecond.
_DURATION_TOLERANCE = timedelta(microseconds=1)


def normalize_address(address: str) -> str:
    """Canonical form of a wallet or contract address (trimmed, lower case)."""
    if not isinstance(address, str) or not address.strip():
        raise InvalidPayload(f"address must be a non-empty string: {address!r}")
    return address.strip().lower()


def _stamp(now: datetime | None) -> datetime:
    return as_utc(now) if now is not None else utc_now()


def _later(current: datetime, now: datetime) -> datetime:
    # Out-of-order events must not move a "last seen" style timestamp back.
    return now if now > current else current


class _Entity(BaseModel):
    model_config = ConfigDict(frozen=True)

    @field_validator("*")
    @classmethod
    def _utc_datetimes(cls, value: Any) -> Any:
        return as_utc(value) if isinstance(value, datetime) else value

    @field_validator("metadata", check_fields=False)
    @classmethod
    def _bounded_metadata(cls, value: Metadata) -> Metadata:
        return validate_metadata(value)


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

# Per-day buckets kept on each user, oldest dropped first.
DAILY_HISTORY_DAYS = 400


class DailyTotals(BaseModel):
    """Transactions and gas attributed to one user on one UTC date."""

    model_config = ConfigDict(frozen=True)

    transactions: int = Field(default=0, ge=0)
    gas_spent: str = precision.ZERO

    @field_validator("gas_spent")
    @classmethod
    def _gas(cls, value: str) -> str:
        return precision.normalize(value)


class AnalyticsUser(_Entity):
    """Cumulative activity of one wallet-identified user."""

    id: str
    wallet_address: str
    first_seen: datetime
    last_seen: datetime
    total_sessions: int = Field(default=0, ge=0)
    total_interactions: int = Field(default=0, ge=0)
    total_transactions: int = Field(default=0, ge=0)
    total_gas_spent: str = precision.ZERO
    assets_linked: int = Field(default=0, ge=0)
    tokens_held: dict[str, str] = Field(default_factory=dict)
    tags: list[str] = Field(default_factory=list)
    metadata: Metadata = Field(default_factory=dict)
    # ISO date -> activity on that day
    daily: dict[str, DailyTotals] = Field(default_factory=dict)

    @field_validator("total_gas_spent")
    @classmethod
    def _gas(cls, value: str) -> str:
        return precision.normalize(value)

    @model_validator(mode="after")
    def _seen_order(self) -> "AnalyticsUser":
        if self.last_seen < self.first_seen:
            raise ValueError("last_seen must not be earlier than first_seen")
        return self


def create_user(
    user_id: str,
    wallet_address: str,
    *,
    metadata: Mapping[str, Any] | None = None,
    tags: Iterable[str] | None = None,
    now: datetime | None = None,
) -> AnalyticsUser:
    now = _stamp(now)
    return AnalyticsUser(
        id=user_id,
        wallet_address=normalize_address(wallet_address),
        first_seen=now,
        last_seen=now,
        tags=sorted(set(tags or ())),
        metadata=validate_metadata(metadata),
    )


def update_user_stats(
    user: AnalyticsUser,
    *,
    new_session: bool = False,
    new_interaction: bool = False,
    new_transaction: bool = False,
    gas_spent: str = precision.ZERO,
    metadata: Mapping[str, Any] | None = None,
    now: datetime | None = None,
) -> AnalyticsUser:
    """Fold one unit of activity into a user's running totals."""
    # Validate before building anything so a bad input changes nothing.
    total_gas = precision.add(user.total_gas_spent, gas_spent)
    merged = overlay(user.metadata, metadata)
    now = _stamp(now)
    daily = user.daily
    if new_transaction or precision.normalize(gas_spent) != precision.ZERO:
        daily = _add_daily(daily, now, int(new_transaction), gas_spent)
    return user.model_copy(
        update={
            "last_seen": _later(user.last_seen, now),
            "total_sessions": user.total_sessions + int(new_session),
            "total_interactions": user.total_interactions + int(new_interaction),
            "total_transactions": user.total_transactions + int(new_transaction),
            "total_gas_spent": total_gas,
            "metadata": merged,
            "daily": daily,
        }
    )


def _add_daily(
    daily: dict[str, DailyTotals], now: datetime, transactions: int, gas_spent: str
) -> dict[str, DailyTotals]:
    key = now.date().isoformat()
    current = daily.get(key, DailyTotals())
    updated = dict(daily)
    updated[key] = DailyTotals(
        transactions=current.transactions + transactions,
        gas_spent=precision.add(current.gas_spent, gas_spent),
    )
    # ISO dates sort chronologically
    for stale in sorted(updated)[:-DAILY_HISTORY_DAYS]:
        del updated[stale]
    return updated


def link_assets(user: AnalyticsUser, delta: int, *, now: datetime | None = None) -> AnalyticsUser:
    """Adjust the linked-asset count; unlinking never goes below zero."""
    return user.model_copy(
        update={
            "assets_linked": max(0, user.assets_linked + delta),
            "last_seen": _later(user.last_seen, _stamp(now)),
        }
    )


def set_token_balance(
    user: AnalyticsUser, symbol: str, amount: str, *, now: datetime | None = None
) -> AnalyticsUser:
    if not symbol:
        raise InvalidPayload("token symbol must be non-empty")
    held = dict(user.tokens_held)
    held[symbol] = precision.normalize(amount)
    return user.model_copy(
        update={"tokens_held": held, "last_seen": _later(user.last_seen, _stamp(now))}
    )


def add_tags(user: AnalyticsUser, tags: Iterable[str]) -> AnalyticsUser:
    return user.model_copy(update={"tags": sorted(set(user.tags).union(tags))})


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class AnalyticsSession(_Entity):
    """One continuous period of activity."""

    id: str
    user_id: str | None = None
    wallet_address: str | None = None
    start_time: datetime
    end_time: datetime | None = None
    duration: timedelta | None = None
    is_active: bool = True
    user_agent: str | None = None
    ip_address: str | None = None
    referrer: str | None = None
    entry_page: str | None = None
    exit_page: str | None = None
    page_views: int = Field(default=1, ge=0)
    interactions: int = Field(default=0, ge=0)
    chain_id: int | None = None

    @model_validator(mode="after")
    def _lifecycle(self) -> "AnalyticsSession":
        if self.is_active != (self.end_time is None):
            raise ValueError("is_active must be true exactly when end_time is absent")
        if self.end_time is None:
            if self.duration is not None:
                raise ValueError("duration requires end_time")
        elif (
            self.duration is None
            or abs(self.duration - (self.end_time - self.start_time)) > _DURATION_TOLERANCE
        ):
            raise ValueError("duration must equal end_time - start_time")
        return self


def create_session(
    session_id: str,
    *,
    wallet_address: str | None = None,
    user_id: str | None = None,
    user_agent: str | None = None,
    ip_address: str | None = None,
    referrer: str | None = None,
    entry_page: str | None = None,
    chain_id: int | None = None,
    now: datetime | None = None,
) -> AnalyticsSession:
    """Open a session. The entry page counts as the first page view."""
    if not session_id:
        raise InvalidPayload("session id must be non-empty")
    return AnalyticsSession(
        id=session_id,
        user_id=user_id,
        wallet_address=normalize_address(wallet_address) if wallet_address else None,
        start_time=_stamp(now),
        user_agent=user_agent,
        ip_address=ip_address,
        referrer=referrer,
        entry_page=entry_page,
        exit_page=entry_page,
        chain_id=chain_id,
    )


def update_session_stats(
    session: AnalyticsSession,
    *,
    page_view: bool = False,
    interaction: bool = False,
    current_page: str | None = None,
) -> AnalyticsSession:
    """Count activity on an open session. Ended sessions are frozen."""
    if not session.is_active:
        return session
    return session.model_copy(
        update={
            "page_views": session.page_views + int(page_view),
            "interactions": session.interactions + int(interaction),
            "exit_page": current_page or session.exit_page,
        }
    )


def end_session(
    session: AnalyticsSession,
    exit_page: str | None = None,
    *,
    now: datetime | None = None,
) -> AnalyticsSession:
    """Close a session exactly once.

    Ending an already-ended session keeps the original ``end_time`` and
    ``duration``; only a supplied ``exit_page`` is applied.
    """
    if not session.is_active:
        if exit_page:
            return session.model_copy(update={"exit_page": exit_page})
        return session
    end_time = _later(session.start_time, _stamp(now))
    return session.model_copy(
        update={
            "end_time": end_time,
            "duration": end_time - session.start_time,
            "is_active": False,
            "exit_page": exit_page or session.exit_page,
        }
    )


# ---------------------------------------------------------------------------
# Contracts
# ---------------------------------------------------------------------------


class ContractAnalytics(_Entity):
    """Usage record for one on-chain contract address."""

    address: str
    name: str | None = None
    contract_type: str | None = None
    deployed_at: datetime | None = None
    deployer_address: str | None = None
    total_interactions: int = Field(default=0, ge=0)
    unique_users: int = Field(default=0, ge=0)
    last_interaction: datetime
    gas_used: str = precision.ZERO
    events: dict[str, int] = Field(default_factory=dict)
    metadata: Metadata = Field(default_factory=dict)
    user_addresses: frozenset[str] = Field(default_factory=frozenset)

    @field_validator("gas_used")
    @classmethod
    def _gas(cls, value: str) -> str:
        return precision.normalize(value)

    @model_validator(mode="after")
    def _unique_count(self) -> "ContractAnalytics":
        if self.unique_users != len(self.user_addresses):
            raise ValueError("unique_users must match the number of distinct user addresses")
        return self


def create_contract(
    address: str,
    *,
    name: str | None = None,
    contract_type: str | None = None,
    deployed_at: datetime | None = None,
    deployer_address: str | None = None,
    metadata: Mapping[str, Any] | None = None,
    now: datetime | None = None,
) -> ContractAnalytics:
    return ContractAnalytics(
        address=normalize_address(address),
        name=name,
        contract_type=contract_type,
        deployed_at=deployed_at,
        deployer_address=normalize_address(deployer_address) if deployer_address else None,
        last_interaction=_stamp(now),
        metadata=validate_metadata(metadata),
    )


def update_contract(
    contract: ContractAnalytics,
    event_name: str,
    *,
    user_address: str | None = None,
    gas_used: str = precision.ZERO,
    metadata: Mapping[str, Any] | None = None,
    now: datetime | None = None,
) -> ContractAnalytics:
    """Record one interaction with a contract."""
    if not event_name:
        raise InvalidPayload("event name must be non-empty")
    total_gas = precision.add(contract.gas_used, gas_used)
    merged = overlay(contract.metadata, metadata)

    events = dict(contract.events)
    events[event_name] = events.get(event_name, 0) + 1

    users = contract.user_addresses
    if user_address:
        users = users | {normalize_address(user_address)}

    return contract.model_copy(
        update={
            "total_interactions": contract.total_interactions + 1,
            "unique_users": len(users),
            "user_addresses": users,
            "last_interaction": _later(contract.last_interaction, _stamp(now)),
            "gas_used": total_gas,
            "events": events,
            "metadata": merged,
        }
    )
