from __future__ import annotations

import re
from datetime import UTC, datetime, timedelta

# one or more <number><unit> groups, e.g. "1h", "2d", "1h30m", "1.5h"
AGE_RE = re.compile(r"^(?:\d+(?:\.\d+)?(?:ms|s|m|h|d|w|y))+$")
AGE_PART_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h|d|w|y)")
RFC3339_RE = re.compile(
    r"^(?P<date>\d{4}-\d{2}-\d{2})[Tt ](?P<time>\d{2}:\d{2}:\d{2})"
    r"(?P<fraction>\.\d+)?(?P<offset>[Zz]|[+-]\d{2}:\d{2})?$"
)

_UNIT_SECONDS: dict[str, float] = {
    "ms": 0.001,
    "s": 1,
    "m": 60,
    "h": 3600,
    "d": 86400,
    "w": 7 * 86400,
    "y": 365 * 86400,
}

# layout of @timestamp values returned by CloudWatch Logs Insights
CLOUDWATCH_TIMESTAMP_LAYOUT = "%Y-%m-%d %H:%M:%S.%f"


def parse_age(value: str) -> timedelta | None:
    """Parse an age expression such as '1h', '2d' or '1h30m' into a timedelta.

    Returns None when the value is not an age expression.
    """
    value = (value or "").strip()
    if not value or not AGE_RE.match(value):
        return None
    seconds = 0.0
    for amount, unit in AGE_PART_RE.findall(value):
        seconds += float(amount) * _UNIT_SECONDS[unit]
    return timedelta(seconds=seconds)


def parse_rfc3339(value: str) -> datetime | None:
    """Parse an RFC3339 timestamp. Timestamps without an offset are taken as UTC."""
    m = RFC3339_RE.match((value or "").strip())
    if not m:
        return None
    # fromisoformat keeps microseconds only, kubelet emits nanoseconds
    fraction = (m.group("fraction") or "")[:7]
    offset = m.group("offset") or ""
    if offset in ("Z", "z"):
        offset = "+00:00"
    try:
        dt = datetime.fromisoformat(f"{m.group('date')}T{m.group('time')}{fraction}{offset}")
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


def parse_time(value: str, now: datetime | None = None) -> datetime | None:
    """Resolve an age expression (relative to now) or an RFC3339 timestamp.

    Unparseable input yields None, which callers treat as unbounded.
    """
    age = parse_age(value)
    if age is not None:
        return (now or datetime.now(UTC)) - age
    return parse_rfc3339(value)


def to_rfc3339(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def cloudwatch_to_rfc3339(value: str) -> str:
    """Convert a CloudWatch '2006-01-02 15:04:05.000' timestamp to RFC3339.

    Returns an empty string when the value does not follow that layout.
    """
    try:
        dt = datetime.strptime((value or "").strip(), CLOUDWATCH_TIMESTAMP_LAYOUT)
    except ValueError:
        return ""
    return to_rfc3339(dt.replace(tzinfo=UTC))


def split_leading_timestamp(line: str) -> tuple[str, str]:
    """Split a '<RFC3339> <message>' line into (timestamp, message).

    If the first token is not an RFC3339 timestamp the timestamp is empty and
    the line is returned untouched as the message.
    """
    token, _, rest = line.partition(" ")
    if parse_rfc3339(token) is None:
        return "", line
    return token, rest
