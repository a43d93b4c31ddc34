"""Clock and duration helpers shared by the job queue and the sweepers."""

import math
import re
from datetime import datetime, timedelta, timezone

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ns|us|µs|ms|s|m|h)")
_UNIT_SECONDS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def utcnow() -> datetime:
    """Naive UTC now, matching the naive DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_duration(value: str) -> timedelta:
    """Parse a duration such as ``30s``, ``5m``, ``1h30m`` or ``250ms``.

    A bare number is taken as seconds. Raises ValueError on anything else.
    """
    text = (value or "").strip()
    if not text:
        raise ValueError("empty duration")
    try:
        seconds = float(text)
    except ValueError:
        seconds = None
    if seconds is not None:
        return _to_timedelta(seconds, value)

    pos = 0
    total = 0.0
    for m in _DURATION_PART.finditer(text):
        if m.start() != pos:
            break
        total += float(m.group(1)) * _UNIT_SECONDS[m.group(2)]
        pos = m.end()
    if pos != len(text):
        raise ValueError(f"invalid duration: {value!r}")
    return _to_timedelta(total, value)


def _to_timedelta(seconds: float, value: str) -> timedelta:
    if not math.isfinite(seconds):
        raise ValueError(f"invalid duration: {value!r}")
    try:
        return timedelta(seconds=seconds)
    except OverflowError:
        raise ValueError(f"duration out of range: {value!r}") from None
