"""Aggregation services: one per entity kind.

A service is the only writer of its entity kind. It resolves keys with
get-or-create, applies the pure transitions from ``chainpulse.entities`` and
persists the result with a single compare-and-write. Mutations of the same
key are serialized through a ``KeyedLockTable``; different keys run
concurrently.

Created: 2026-10-19
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable, Mapping
from datetime import datetime
from typing import Any, ClassVar, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from chainpulse import precision
from chainpulse.entities import (
    AnalyticsSession,
    AnalyticsUser,
    ContractAnalytics,
    add_tags,
    create_contract,
    create_session,
    create_user,
    end_session,
    link_assets,
    normalize_address,
    set_token_balance,
    update_contract,
    update_session_stats,
    update_user_stats,
)
from chainpulse.errors import ConcurrencyConflict, InvalidPayload, NotFound, OperationTimeout
from chainpulse.events import as_utc, utc_now
from chainpulse.locks import KeyedLockTable
from chainpulse.metadata import Metadata
from chainpulse.store import EntityStore, VersionedRecord

logger = logging.getLogger(__name__)

EntityT = TypeVar("EntityT", bound=BaseModel)
T = TypeVar("T")

Clock = Callable[[], datetime]


# ---------------------------------------------------------------------------
# Update payloads
# ---------------------------------------------------------------------------


class UserActivity(BaseModel):
    """What happened to a user in one event."""

    model_config = ConfigDict(frozen=True)

    new_session: bool = False
    new_interaction: bool = False
    new_transaction: bool = False
    gas_spent: str = precision.ZERO
    assets_delta: int = 0
    token_symbol: str | None = None
    token_amount: str | None = None
    tags: list[str] = Field(default_factory=list)
    metadata: Metadata = Field(default_factory=dict)


class SessionActivity(BaseModel):
    model_config = ConfigDict(frozen=True)

    page_view: bool = False
    interaction: bool = False
    current_page: str | None = None


class ContractActivity(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_name: str
    user_address: str | None = None
    gas_used: str = precision.ZERO
    metadata: Metadata = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Base service
# ---------------------------------------------------------------------------


class AggregationService(Generic[EntityT]):
    """Get-or-create, update and read access for one entity kind."""

    kind: ClassVar[str]
    model: ClassVar[type[BaseModel]]
    creation_fields: ClassVar[frozenset[str]] = frozenset()
    metrics: ClassVar[dict[str, Callable[[Any], Any]]] = {}
    default_metric: ClassVar[str]

    def __init__(
        self,
        store: EntityStore,
        *,
        clock: Clock = utc_now,
        timeout: float | None = None,
        max_retries: int = 5,
    ) -> None:
        if max_retries < 1:
            raise ValueError(f"max_retries must be at least 1, got {max_retries}")
        self._store = store
        self._clock = clock
        self._timeout = timeout
        self._max_retries = max_retries
        self._locks = KeyedLockTable()

    # ------------------------------------------------------------------
    # Hooks for subclasses
    # ------------------------------------------------------------------

    def normalize_key(self, key: str) -> str:
        if not isinstance(key, str) or not key.strip():
            raise InvalidPayload(f"{self.kind} key must be a non-empty string: {key!r}")
        return key.strip()

    def entity_key(self, entity: EntityT) -> str:
        raise NotImplementedError

    def _create(self, key: str, fields: dict[str, Any], now: datetime) -> EntityT:
        raise NotImplementedError

    def _apply(self, entity: EntityT, payload: Any, now: datetime) -> EntityT:
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def get_or_create(
        self,
        key: str,
        fields: Mapping[str, Any] | None = None,
        *,
        now: datetime | None = None,
        timeout: float | None = None,
    ) -> EntityT:
        """Return the entity for *key*, creating it if absent.

        Concurrent calls for the same new key create it once; every caller
        gets the created entity.
        """
        entity, _ = await self.resolve(key, fields, now=now, timeout=timeout)
        return entity

    async def resolve(
        self,
        key: str,
        fields: Mapping[str, Any] | None = None,
        *,
        now: datetime | None = None,
        timeout: float | None = None,
    ) -> tuple[EntityT, bool]:
        """Like ``get_or_create`` but also report whether this call created it."""
        key = self.normalize_key(key)
        fields = dict(fields or {})
        unknown = set(fields) - self.creation_fields
        if unknown:
            raise InvalidPayload(f"Unknown {self.kind} fields: {', '.join(sorted(unknown))}")
        return await self._bounded(self._get_or_create(key, fields, now), timeout, key)

    async def update(
        self,
        key: str,
        payload: Any,
        *,
        now: datetime | None = None,
        timeout: float | None = None,
    ) -> EntityT:
        """Apply *payload* to an existing entity.

        Raises:
            NotFound: if no entity exists for *key*. Update never creates.
        """
        key = self.normalize_key(key)
        return await self._bounded(
            self._mutate(key, lambda entity, at: self._apply(entity, payload, at), now),
            timeout,
            key,
        )

    async def get(self, key: str) -> EntityT | None:
        record = await self._store.read(self.kind, self.normalize_key(key))
        return self._decode(record) if record else None

    async def list(self) -> list[EntityT]:
        records = await self._store.list(self.kind)
        entities = [self._decode(record) for record in records]
        return sorted(entities, key=self.entity_key)

    async def top(self, n: int, metric: str | None = None) -> list[EntityT]:
        """At most *n* entities, highest *metric* first, ties by ascending key."""
        metric = metric or self.default_metric
        if metric not in self.metrics:
            raise InvalidPayload(
                f"Unknown {self.kind} metric {metric!r}; expected one of {sorted(self.metrics)}"
            )
        if n <= 0:
            return []
        value = self.metrics[metric]
        # list() is already key-ordered and sort is stable, so ties keep key order
        ranked = sorted(await self.list(), key=value, reverse=True)
        return ranked[:n]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _decode(self, record: VersionedRecord) -> EntityT:
        try:
            return self.model.model_validate(record.value)  # type: ignore[return-value]
        except ValidationError as exc:
            raise InvalidPayload(f"Stored {self.kind} {record.key} is invalid: {exc}") from exc

    @staticmethod
    def _encode(entity: BaseModel) -> dict[str, Any]:
        return entity.model_dump(mode="json")

    async def _bounded(self, operation: Awaitable[T], timeout: float | None, key: str) -> T:
        timeout = timeout if timeout is not None else self._timeout
        if timeout is None:
            return await operation
        try:
            return await asyncio.wait_for(operation, timeout)
        except TimeoutError:
            logger.warning("%s %s: operation timed out after %.3fs", self.kind, key, timeout)
            raise OperationTimeout(f"{self.kind} {key} did not complete within {timeout}s") from None

    async def _get_or_create(
        self, key: str, fields: dict[str, Any], now: datetime | None
    ) -> tuple[EntityT, bool]:
        record = await self._store.read(self.kind, key)
        if record is not None:
            return self._decode(record), False

        async with self._locks.hold(key):
            # Re-check: another task may have created it while we waited.
            record = await self._store.read(self.kind, key)
            if record is not None:
                return self._decode(record), False

            entity = self._create(key, fields, now or self._clock())
            try:
                await self._store.compare_and_write(self.kind, key, None, self._encode(entity))
            except ConcurrencyConflict:
                # Lost to a writer outside this service instance.
                record = await self._store.read(self.kind, key)
                if record is None:
                    raise
                logger.debug("%s %s created concurrently elsewhere", self.kind, key)
                return self._decode(record), False

        logger.info("Created %s %s", self.kind, key)
        return entity, True

    async def _mutate(
        self,
        key: str,
        transition: Callable[[EntityT, datetime], EntityT],
        now: datetime | None,
    ) -> EntityT:
        async with self._locks.hold(key):
            for attempt in range(1, self._max_retries + 1):
                record = await self._store.read(self.kind, key)
                if record is None:
                    raise NotFound(self.kind, key)
                updated = transition(self._decode(record), now or self._clock())
                try:
                    await self._store.compare_and_write(
                        self.kind, key, record.version, self._encode(updated)
                    )
                    return updated
                except ConcurrencyConflict:
                    logger.debug(
                        "%s %s: version conflict (attempt %d/%d), retrying",
                        self.kind,
                        key,
                        attempt,
                        self._max_retries,
                    )
            logger.warning("%s %s: giving up after %d conflicts", self.kind, key, self._max_retries)
            raise ConcurrencyConflict(self.kind, key, record.version, None)


# ---------------------------------------------------------------------------
# Concrete services
# ---------------------------------------------------------------------------


class UserService(AggregationService[AnalyticsUser]):
    """Users keyed by wallet address."""

    kind = "user"
    model = AnalyticsUser
    creation_fields = frozenset({"user_id", "metadata", "tags"})
    metrics = {
        "interactions": lambda u: u.total_interactions,
        "sessions": lambda u: u.total_sessions,
        "transactions": lambda u: u.total_transactions,
        "gas": lambda u: precision.sort_key(u.total_gas_spent),
    }
    default_metric = "interactions"

    def normalize_key(self, key: str) -> str:
        return normalize_address(key)

    def entity_key(self, entity: AnalyticsUser) -> str:
        return entity.wallet_address

    def _create(self, key: str, fields: dict[str, Any], now: datetime) -> AnalyticsUser:
        user_id = fields.pop("user_id", None) or str(uuid.uuid4())
        return create_user(user_id, key, now=now, **fields)

    def _apply(self, entity: AnalyticsUser, payload: UserActivity, now: datetime) -> AnalyticsUser:
        user = update_user_stats(
            entity,
            new_session=payload.new_session,
            new_interaction=payload.new_interaction,
            new_transaction=payload.new_transaction,
            gas_spent=payload.gas_spent,
            metadata=payload.metadata,
            now=now,
        )
        if payload.assets_delta:
            user = link_assets(user, payload.assets_delta, now=now)
        if payload.token_symbol is not None:
            if payload.token_amount is None:
                raise InvalidPayload("token balance update needs an amount")
            user = set_token_balance(user, payload.token_symbol, payload.token_amount, now=now)
        if payload.tags:
            user = add_tags(user, payload.tags)
        return user

    async def active_since(self, since: datetime) -> list[AnalyticsUser]:
        """Users seen at or after *since*, most recent first."""
        since = as_utc(since)
        users = [u for u in await self.list() if u.last_seen >= since]
        return sorted(users, key=lambda u: u.last_seen, reverse=True)

    async def new_since(self, since: datetime) -> list[AnalyticsUser]:
        """Users first seen at or after *since*, newest first."""
        since = as_utc(since)
        users = [u for u in await self.list() if u.first_seen >= since]
        return sorted(users, key=lambda u: u.first_seen, reverse=True)


class SessionService(AggregationService[AnalyticsSession]):
    """Sessions keyed by session id."""

    kind = "session"
    model = AnalyticsSession
    creation_fields = frozenset(
        {
            "wallet_address",
            "user_id",
            "user_agent",
            "ip_address",
            "referrer",
            "entry_page",
            "chain_id",
        }
    )
    metrics = {
        "page_views": lambda s: s.page_views,
        "interactions": lambda s: s.interactions,
    }
    default_metric = "page_views"

    def entity_key(self, entity: AnalyticsSession) -> str:
        return entity.id

    def _create(self, key: str, fields: dict[str, Any], now: datetime) -> AnalyticsSession:
        return create_session(key, now=now, **fields)

    def _apply(
        self, entity: AnalyticsSession, payload: SessionActivity, now: datetime
    ) -> AnalyticsSession:
        if not entity.is_active:
            logger.debug("Ignoring activity on ended session %s", entity.id)
        return update_session_stats(
            entity,
            page_view=payload.page_view,
            interaction=payload.interaction,
            current_page=payload.current_page,
        )

    async def end(
        self,
        key: str,
        exit_page: str | None = None,
        *,
        now: datetime | None = None,
        timeout: float | None = None,
    ) -> AnalyticsSession:
        """End a session. Ending twice keeps the first end time and duration."""
        key = self.normalize_key(key)
        return await self._bounded(
            self._mutate(key, lambda entity, at: end_session(entity, exit_page, now=at), now),
            timeout,
            key,
        )

    async def active(self) -> list[AnalyticsSession]:
        return [s for s in await self.list() if s.is_active]

    async def by_wallet(self, wallet_address: str) -> list[AnalyticsSession]:
        wallet = normalize_address(wallet_address)
        sessions = [s for s in await self.list() if s.wallet_address == wallet]
        return sorted(sessions, key=lambda s: s.start_time, reverse=True)


class ContractService(AggregationService[ContractAnalytics]):
    """Contracts keyed by address."""

    kind = "contract"
    model = ContractAnalytics
    creation_fields = frozenset(
        {"name", "contract_type", "deployed_at", "deployer_address", "metadata"}
    )
    metrics = {
        "interactions": lambda c: c.total_interactions,
        "unique_users": lambda c: c.unique_users,
        "gas": lambda c: precision.sort_key(c.gas_used),
    }
    default_metric = "interactions"

    def normalize_key(self, key: str) -> str:
        return normalize_address(key)

    def entity_key(self, entity: ContractAnalytics) -> str:
        return entity.address

    def _create(self, key: str, fields: dict[str, Any], now: datetime) -> ContractAnalytics:
        return create_contract(key, now=now, **fields)

    def _apply(
        self, entity: ContractAnalytics, payload: ContractActivity, now: datetime
    ) -> ContractAnalytics:
        return update_contract(
            entity,
            payload.event_name,
            user_address=payload.user_address,
            gas_used=payload.gas_used,
            metadata=payload.metadata,
            now=now,
        )
