"""Timestamp helpers.

Captured timestamps are ISO 8601 strings with an explicit offset
(``2024-03-01T10:00:00+02:00``); git receives them in its internal
``@<epoch> <+hhmm>`` form so the original timezone survives.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone


def utc_stamp(now: datetime | None = None) -> str:
    """Compact UTC stamp used in branch, bundle and report names."""
    moment = now or datetime.now(timezone.utc)
    return moment.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO 8601 timestamp into an aware datetime.

    Raises:
        ValueError: If the value is empty or unparsable
    """
    text = (value or "").strip()
    if not text:
        raise ValueError("empty timestamp")
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(moment: datetime) -> str:
    return moment.isoformat(timespec="seconds")


def to_epoch(value: str | datetime) -> int:
    moment = parse_timestamp(value) if isinstance(value, str) else value
    return int(moment.timestamp())


def to_git_date(value: str | datetime) -> str:
    """Render a timestamp in git's internal ``@epoch +hhmm`` format."""
    moment = parse_timestamp(value) if isinstance(value, str) else value
    offset = moment.utcoffset() or timedelta(0)
    minutes = int(offset.total_seconds() // 60)
    sign = "+" if minutes >= 0 else "-"
    minutes = abs(minutes)
    return f"@{int(moment.timestamp())} {sign}{minutes // 60:02d}{minutes % 60:02d}"


def from_git_ident_date(epoch: str, tz: str) -> datetime:
    """Build an aware datetime from the tail of a raw ``author`` header."""
    sign = -1 if tz.startswith("-") else 1
    digits = tz.lstrip("+-")
    offset = timedelta(hours=int(digits[:2]), minutes=int(digits[2:4]))
    return datetime.fromtimestamp(int(epoch), tz=timezone(sign * offset))
