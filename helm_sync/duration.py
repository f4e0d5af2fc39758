"""Parsing and formatting of helm style duration strings.

Helm timeouts are written the way Go formats durations, e.g. `300s`, `5m`
or `1h30m`, and suggestions shown to operators use the same format so they
can be pasted back into a release definition.
"""

import datetime
import re

from .exceptions import InvalidDurationError

__all__ = [
    "parse_duration",
    "format_duration",
    "parse_timeout",
]

_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}

_PART_RE = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")


def parse_duration(value: str) -> datetime.timedelta:
    """Parse a duration such as `300s` or `1h2m3.5s`."""
    text = value.strip()
    sign = 1
    if text[:1] in ("+", "-"):
        sign = -1 if text[0] == "-" else 1
        text = text[1:]
    if text == "0":
        return datetime.timedelta(0)
    if not text:
        raise InvalidDurationError(f"Invalid duration '{value}'")
    seconds = 0.0
    pos = 0
    for match in _PART_RE.finditer(text):
        if match.start() != pos:
            break
        seconds += float(match.group(1)) * _UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text):
        raise InvalidDurationError(
            f"Invalid duration '{value}', use a format like '300s', '5m' or '1h'"
        )
    return datetime.timedelta(seconds=sign * seconds)


def _format_seconds(seconds: float) -> str:
    text = f"{seconds:.9f}".rstrip("0").rstrip(".")
    return f"{text}s"


def format_duration(value: datetime.timedelta) -> str:
    """Format a duration the way helm prints it, e.g. `1m0s` or `2h0m0s`."""
    total = value.total_seconds()
    if total == 0:
        return "0s"
    sign = "-" if total < 0 else ""
    total = abs(total)
    if total < 1:
        micros = round(total * 1e6)
        if micros % 1000 == 0:
            return f"{sign}{micros // 1000}ms"
        return f"{sign}{micros}µs"
    hours, rem = divmod(total, 3600)
    minutes, seconds = divmod(rem, 60)
    seconds = round(seconds, 6)
    if hours:
        return f"{sign}{int(hours)}h{int(minutes)}m{_format_seconds(seconds)}"
    if minutes:
        return f"{sign}{int(minutes)}m{_format_seconds(seconds)}"
    return f"{sign}{_format_seconds(seconds)}"


def parse_timeout(value: str) -> datetime.timedelta:
    """Parse a release timeout, which may not be negative."""
    timeout = parse_duration(value)
    if timeout < datetime.timedelta(0):
        raise InvalidDurationError(f"Invalid timeout '{value}', must not be negative")
    return timeout
