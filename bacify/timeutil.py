from __future__ import annotations

import re
import time
from datetime import datetime, timedelta, timezone

from bacify.errors import ConfigError


NS_PER_SECOND = 1_000_000_000

_RFC3339_RE = re.compile(
    r"^(?P<base>\d{4}-\d{2}-\d{2}[Tt ]\d{2}:\d{2}:\d{2})"
    r"(?:\.(?P<fraction>\d+))?"
    r"(?P<offset>[Zz]|[+-]\d{2}:\d{2})$"
)

_DURATION_TERM_RE = re.compile(r"\s*(?P<value>\d+)\s*(?P<unit>[A-Za-z]+)\s*")

_UNIT_SECONDS: dict[str, float] = {}
for _names, _seconds in (
    (("nsec", "ns"), 1e-9),
    (("usec", "us"), 1e-6),
    (("msec", "ms"), 1e-3),
    (("seconds", "second", "sec", "s"), 1),
    (("minutes", "minute", "min", "m"), 60),
    (("hours", "hour", "hr", "h"), 3_600),
    (("days", "day", "d"), 86_400),
    (("weeks", "week", "w"), 604_800),
    (("months", "month", "M"), 2_630_016),
    (("years", "year", "y"), 31_557_600),
):
    for _name in _names:
        _UNIT_SECONDS[_name] = _seconds


def now_ns() -> int:
    return time.time_ns()


def parse_rfc3339_ns(value: str) -> int:
    """Convert an RFC 3339 timestamp to nanoseconds since the epoch.

    restic writes nanosecond fractions, which ``datetime`` cannot hold, so the
    fraction is handled separately and added back as an integer.
    """
    match = _RFC3339_RE.match(value.strip())
    if match is None:
        raise ValueError(f"Invalid RFC 3339 timestamp: {value!r}")

    offset = match.group("offset")
    if offset in {"Z", "z"}:
        offset = "+00:00"
    base = datetime.fromisoformat(match.group("base").replace("t", "T").replace(" ", "T") + offset)

    fraction = match.group("fraction") or ""
    fraction_ns = int(fraction[:9].ljust(9, "0")) if fraction else 0
    return int(base.timestamp()) * NS_PER_SECOND + fraction_ns


def format_ns(value_ns: int) -> str:
    seconds, remainder = divmod(value_ns, NS_PER_SECOND)
    stamp = datetime.fromtimestamp(seconds, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%S")
    return f"{stamp}.{remainder:09d}Z"


def parse_duration(text: str) -> timedelta:
    """Parse a human duration such as ``3d``, ``2w`` or ``1h 30min``."""
    value = (text or "").strip()
    if not value:
        raise ConfigError("Empty duration")

    total = 0.0
    position = 0
    while position < len(value):
        match = _DURATION_TERM_RE.match(value, position)
        if match is None or match.end() == position:
            raise ConfigError(f"Invalid duration {text!r}: expected terms like '3d' or '2w'")
        unit = match.group("unit")
        seconds = _UNIT_SECONDS.get(unit) or _UNIT_SECONDS.get(unit.lower())
        if seconds is None:
            raise ConfigError(f"Invalid duration {text!r}: unknown unit {unit!r}")
        try:
            total += int(match.group("value")) * seconds
        except OverflowError as exc:
            raise ConfigError(f"Invalid duration {text!r}: out of range") from exc
        position = match.end()

    try:
        return timedelta(seconds=total)
    except (OverflowError, ValueError) as exc:
        raise ConfigError(f"Invalid duration {text!r}: out of range") from exc


def timedelta_ns(value: timedelta) -> int:
    return (value.days * 86_400 + value.seconds) * NS_PER_SECOND + value.microseconds * 1_000
