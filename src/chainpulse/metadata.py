"""Bounded free-form metadata attached to entities and events.

Values are restricted to a closed set of scalars so persisted records stay
plain JSON. Merging is a shallow overlay: keys in the update replace keys of
the same name, everything else is kept.

Created: 2026-10-19
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from chainpulse.errors import InvalidPayload

MetadataValue = str | int | float | bool | None
Metadata = dict[str, MetadataValue]

METADATA_MAX_KEYS = 64
METADATA_MAX_KEY_LENGTH = 128

_SCALARS = (str, int, float, bool, type(None))


def validate_metadata(value: Mapping[str, Any] | None) -> Metadata:
    """Check *value* against the metadata bounds and return a plain dict copy.

    Raises:
        InvalidPayload: on non-string keys, oversized keys, too many keys or
            values outside the permitted scalar types.
    """
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise InvalidPayload(f"metadata must be a mapping, got {type(value).__name__}")
    if len(value) > METADATA_MAX_KEYS:
        raise InvalidPayload(
            f"metadata has {len(value)} keys, limit is {METADATA_MAX_KEYS}"
        )
    result: Metadata = {}
    for key, item in value.items():
        if not isinstance(key, str) or not key:
            raise InvalidPayload(f"metadata key must be a non-empty string: {key!r}")
        if len(key) > METADATA_MAX_KEY_LENGTH:
            raise InvalidPayload(f"metadata key too long: {key[:32]}...")
        if not isinstance(item, _SCALARS):
            raise InvalidPayload(
                f"metadata value for {key!r} must be a scalar, got {type(item).__name__}"
            )
        result[key] = item
    return result


def overlay(base: Mapping[str, Any] | None, update: Mapping[str, Any] | None) -> Metadata:
    """Shallow-merge *update* over *base* without touching either input."""
    merged = dict(base or {})
    merged.update(validate_metadata(update))
    return validate_metadata(merged)
