"""Error kinds raised by the aggregation engine.

Created: 2026-10-19

Every error derives from ``AnalyticsError`` so callers can catch the whole
family at once. Where a builtin exception carries the same meaning the error
also subclasses it (``NotFound`` is a ``KeyError``, ``InvalidNumeric`` is a
``ValueError`` ...), which keeps ``except KeyError`` style call sites working.
"""

from __future__ import annotations


class AnalyticsError(Exception):
    """Base class for all engine errors."""


class InvalidNumeric(AnalyticsError, ValueError):
    """A precision string is not a valid non-negative base-10 integer."""

    def __init__(self, value: object) -> None:
        self.value = value
        super().__init__(f"Invalid precision string: {value!r}")


class InvalidPayload(AnalyticsError, ValueError):
    """An event or record is missing required fields or holds a bad value."""


class NotFound(AnalyticsError, KeyError):
    """No entity exists for the requested key."""

    def __init__(self, kind: str, key: str) -> None:
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} not found: {key}")

    def __str__(self) -> str:
        # KeyError.__str__ would repr() the message
        return str(self.args[0])


class ConcurrencyConflict(AnalyticsError):
    """A compare-and-write lost a race. Retry with fresh state."""

    def __init__(self, kind: str, key: str, expected: int | None, actual: int | None) -> None:
        self.kind = kind
        self.key = key
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Version conflict on {kind}/{key}: expected {expected}, found {actual}"
        )


class OperationTimeout(AnalyticsError, TimeoutError):
    """A bounded operation did not complete in time."""
