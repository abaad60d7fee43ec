"""Go-style duration strings as used by ``metav1.Duration`` fields."""

from __future__ import annotations

import re
from datetime import timedelta

from volume_autoscaler.errors import InvalidDurationError

_COMPONENT_RE = re.compile(r"([0-9]+(?:\.[0-9]+)?)(ms|s|m|h)")
_UNIT_SECONDS: dict[str, float] = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: str | int | float) -> timedelta:
    """Parse ``"60s"``, ``"5m"``, ``"1h30m"`` or a bare number of seconds.

    Raises InvalidDurationError on anything else.
    """
    if isinstance(value, int | float):
        return timedelta(seconds=value)

    text = value.strip()
    if not text:
        raise InvalidDurationError("Invalid duration: empty string")
    if re.fullmatch(r"[0-9]+", text):
        return timedelta(seconds=int(text))

    pos = 0
    total = 0.0
    for m in _COMPONENT_RE.finditer(text):
        if m.start() != pos:
            break
        total += float(m.group(1)) * _UNIT_SECONDS[m.group(2)]
        pos = m.end()
    if pos != len(text):
        raise InvalidDurationError(f"Invalid duration: {value!r}. Expected e.g. '60s', '5m', '1h30m'.")
    return timedelta(seconds=total)


def format_duration(delta: timedelta) -> str:
    """Format a timedelta as a compact Go-style string (``"4m30s"``)."""
    seconds = int(delta.total_seconds())
    if seconds <= 0:
        return "0s"
    hours, rem = divmod(seconds, 3600)
    minutes, secs = divmod(rem, 60)
    parts = []
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if secs or not parts:
        parts.append(f"{secs}s")
    return "".join(parts)
