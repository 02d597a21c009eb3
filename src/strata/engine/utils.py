"""Shared utility functions for the strata engine layer."""

from __future__ import annotations

import re
from datetime import timedelta

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([smhd]?)\s*$")
_DURATION_UNITS = {"s": "seconds", "m": "minutes", "h": "hours", "d": "days", "": "hours"}


def validate_identifier(value: str, label: str = "identifier") -> str:
    """Validate that a value is a safe SQL identifier.

    Only allows alphanumeric characters and underscores, starting with a letter
    or underscore. Raises ValueError if the identifier is unsafe.

    Model names, layer schemas, source schemas and assertion columns all pass
    through here before being interpolated into DDL.
    """
    if not _IDENTIFIER_RE.match(value):
        raise ValueError(f"Invalid {label}: {value!r} (must match [A-Za-z_][A-Za-z0-9_]*)")
    return value


def parse_duration(value: str | int | float) -> timedelta:
    """Parse ``12h``, ``30m``, ``2d``, ``45s`` or a bare number (hours) into a timedelta."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return timedelta(hours=float(value))
    m = _DURATION_RE.match(str(value))
    if not m:
        raise ValueError(f"Invalid duration: {value!r} (expected e.g. 12h, 30m, 2d)")
    amount, unit = float(m.group(1)), m.group(2)
    return timedelta(**{_DURATION_UNITS[unit]: amount})


def split_top_level(text: str, sep: str = ",") -> list[str]:
    """Split on ``sep`` outside of quotes, parentheses and brackets."""
    parts: list[str] = []
    depth = 0
    quote: str | None = None
    current: list[str] = []
    for ch in text:
        if quote:
            current.append(ch)
            if ch == quote:
                quote = None
            continue
        if ch in ("'", '"'):
            quote = ch
        elif ch in "([":
            depth += 1
        elif ch in ")]":
            depth -= 1
        elif ch == sep and depth == 0:
            parts.append("".join(current).strip())
            current = []
            continue
        current.append(ch)
    tail = "".join(current).strip()
    if tail or parts:
        parts.append(tail)
    return parts
