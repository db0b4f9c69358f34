"""Domain events consumed by the aggregation engine.

Created: 2026-10-19
"""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from chainpulse import precision
from chainpulse.errors import InvalidPayload
from chainpulse.metadata import Metadata, validate_metadata


class EventKind(str, Enum):
    SESSION_STARTED = "session_started"
    SESSION_ENDED = "session_ended"
    PAGE_VIEW = "page_view"
    INTERACTION = "interaction"
    CONTRACT_INTERACTION = "contract_interaction"
    TRANSACTION = "transaction"
    ASSET_LINKED = "asset_linked"
    ASSET_UNLINKED = "asset_unlinked"
    TOKEN_BALANCE = "token_balance"


# Fields every event of a kind must carry (on top of event_id / timestamp).
REQUIRED_FIELDS: dict[EventKind, tuple[str, ...]] = {
    EventKind.SESSION_STARTED: ("session_id",),
    EventKind.SESSION_ENDED: ("session_id",),
    EventKind.PAGE_VIEW: ("session_id", "page"),
    EventKind.INTERACTION: (),
    EventKind.CONTRACT_INTERACTION: ("contract_address", "event_name"),
    EventKind.TRANSACTION: ("wallet_address",),
    EventKind.ASSET_LINKED: ("wallet_address",),
    EventKind.ASSET_UNLINKED: ("wallet_address",),
    EventKind.TOKEN_BALANCE: ("wallet_address", "token_symbol", "amount"),
}


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def as_utc(value: datetime) -> datetime:
    """Return *value* as an aware UTC datetime. Naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class AnalyticsEvent(BaseModel):
    """A single domain event as delivered by the event source."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: EventKind
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()), min_length=1)
    timestamp: datetime = Field(default_factory=utc_now)

    session_id: str | None = None
    wallet_address: str | None = None
    contract_address: str | None = None
    event_name: str | None = None
    page: str | None = None
    gas: str = precision.ZERO
    chain_id: int | None = None

    # Session context
    user_agent: str | None = None
    ip_address: str | None = None
    referrer: str | None = None

    # Token balances
    token_symbol: str | None = None
    amount: str | None = None

    metadata: Metadata = Field(default_factory=dict)

    @field_validator("timestamp")
    @classmethod
    def _aware_timestamp(cls, value: datetime) -> datetime:
        return as_utc(value)

    @field_validator("wallet_address", "contract_address")
    @classmethod
    def _lower_address(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip().lower()
        return value or None

    @field_validator("gas")
    @classmethod
    def _valid_gas(cls, value: str) -> str:
        if not precision.is_valid(value):
            raise ValueError(f"gas must be a non-negative integer string, got {value!r}")
        return precision.normalize(value)

    @field_validator("amount")
    @classmethod
    def _valid_amount(cls, value: str | None) -> str | None:
        if value is None:
            return None
        if not precision.is_valid(value):
            raise ValueError(f"amount must be a non-negative integer string, got {value!r}")
        return precision.normalize(value)

    def require(self, *fields: str) -> None:
        """Raise InvalidPayload unless every named field is set."""
        missing = [name for name in fields if getattr(self, name) in (None, "")]
        if missing:
            raise InvalidPayload(
                f"{self.kind.value} event {self.event_id} missing {', '.join(missing)}"
            )

    def validate_payload(self) -> None:
        """Check the kind-specific required fields."""
        self.require(*REQUIRED_FIELDS[self.kind])
        if self.kind is EventKind.INTERACTION and not (self.session_id or self.wallet_address):
            raise InvalidPayload(
                f"interaction event {self.event_id} needs a session_id or wallet_address"
            )


def parse_event(raw: AnalyticsEvent | Mapping[str, Any]) -> AnalyticsEvent:
    """Build and validate an event from a raw mapping.

    Raises:
        InvalidPayload: if the mapping does not describe a well-formed event.
    """
    if isinstance(raw, AnalyticsEvent):
        event = raw
    else:
        try:
            event = AnalyticsEvent.model_validate(dict(raw))
        except ValidationError as exc:
            raise InvalidPayload(f"Malformed event: {exc}") from exc
    # pydantic already checked types; re-check the bounds explicitly
    validate_metadata(event.metadata)
    event.validate_payload()
    return event
