"""Exact arithmetic over decimal-string quantities.

Gas and fee totals are carried as base-10 strings so nothing is ever rounded
through a float or a fixed-width integer. Addition works on fixed-size digit
chunks, which keeps it independent of the interpreter's int/str conversion
limit (``sys.set_int_max_str_digits``) for arbitrarily long inputs.

Created: 2026-10-19
"""

from __future__ import annotations

import re
from collections.abc import Iterable

from chainpulse.errors import InvalidNumeric

# ASCII digits only: rejects signs, whitespace, underscores and other
# Unicode digits that int() would happily accept.
_DIGITS = re.compile(r"[0-9]+")

# 18 decimal digits always fit comfortably below 2**63.
_CHUNK = 18
_BASE = 10**_CHUNK

ZERO = "0"


def is_valid(value: object) -> bool:
    """Return True if *value* is a syntactically valid precision string."""
    return isinstance(value, str) and _DIGITS.fullmatch(value) is not None


def normalize(value: object) -> str:
    """Validate *value* and strip unnecessary leading zeros.

    Raises:
        InvalidNumeric: if *value* is not a non-negative base-10 integer string.
    """
    if not is_valid(value):
        raise InvalidNumeric(value)
    stripped = value.lstrip("0")  # type: ignore[union-attr]
    return stripped or ZERO


def _chunks(digits: str) -> list[int]:
    """Split *digits* into base-10**18 limbs, least significant first."""
    limbs = []
    end = len(digits)
    while end > 0:
        start = max(0, end - _CHUNK)
        limbs.append(int(digits[start:end]))
        end = start
    return limbs


def add(a: str, b: str) -> str:
    """Add two precision strings exactly.

    >>> add("1000000000000000000", "2500000000000000000")
    '3500000000000000000'
    """
    left = _chunks(normalize(a))
    right = _chunks(normalize(b))
    if len(left) < len(right):
        left, right = right, left

    out: list[int] = []
    carry = 0
    for i, limb in enumerate(left):
        total = limb + carry + (right[i] if i < len(right) else 0)
        carry, rem = divmod(total, _BASE)
        out.append(rem)
    if carry:
        out.append(carry)

    head = str(out[-1])
    tail = "".join(str(limb).zfill(_CHUNK) for limb in reversed(out[:-1]))
    return head + tail


def sum_all(values: Iterable[str]) -> str:
    """Sum any number of precision strings. An empty iterable sums to ``"0"``."""
    total = ZERO
    for value in values:
        total = add(total, value)
    return total


def compare(a: str, b: str) -> int:
    """Three-way comparison of two precision strings (-1, 0 or 1)."""
    left, right = normalize(a), normalize(b)
    if len(left) != len(right):
        return -1 if len(left) < len(right) else 1
    if left == right:
        return 0
    return -1 if left < right else 1


def sort_key(value: str) -> tuple[int, str]:
    """Key function ordering precision strings by numeric value."""
    digits = normalize(value)
    return len(digits), digits
