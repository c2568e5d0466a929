"""Injectable clocks and timestamp helpers.

Commit timestamps are timezone-aware UTC datetimes with microsecond
resolution. One microsecond (TICK) is the smallest step the timestamp
authority can advance a group by. There is deliberately no process-wide
default clock: every component that needs "now" takes a Clock argument.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Protocol

TICK = timedelta(microseconds=1)
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class Clock(Protocol):
    """Injectable time source."""

    def now_utc(self) -> datetime:
        """Return current UTC time."""
        ...  # pragma: no cover


class SystemClock:
    """Production clock backed by the system wall clock."""

    def now_utc(self) -> datetime:
        return datetime.now(timezone.utc)


class FakeClock:
    """Deterministic clock for tests and offline tooling.

    Usage:
        clock = FakeClock(datetime(2000, 1, 1, tzinfo=timezone.utc))
        clock.advance(seconds=1)
        clock.advance_one_tick()
    """

    def __init__(self, start: datetime) -> None:
        self._now = ensure_utc(start)

    def now_utc(self) -> datetime:
        return self._now

    def set(self, value: datetime) -> None:
        """Jump to an arbitrary instant (may move backwards)."""
        self._now = ensure_utc(value)

    def advance(self, seconds: float = 0, milliseconds: float = 0) -> datetime:
        """Advance the clock and return the new time."""
        self._now += timedelta(seconds=seconds, milliseconds=milliseconds)
        return self._now

    def advance_one_tick(self) -> datetime:
        self._now += TICK
        return self._now


def ensure_utc(value: datetime) -> datetime:
    """Normalize an aware datetime to UTC. Naive datetimes are rejected."""
    if value.tzinfo is None:
        raise ValueError(f"Timestamp {value!r} must be timezone-aware.")
    return value.astimezone(timezone.utc)


def to_micros(value: datetime) -> int:
    """Convert an aware datetime to integer microseconds since the epoch."""
    delta = ensure_utc(value) - EPOCH
    return (delta.days * 86_400 + delta.seconds) * 1_000_000 + delta.microseconds


def from_micros(value: int) -> datetime:
    """Inverse of to_micros()."""
    return EPOCH + timedelta(microseconds=value)


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp as written by format_timestamp().

    A trailing "Z" is accepted. Naive values are rejected.
    """
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(value))


def format_timestamp(value: datetime) -> str:
    """Canonical text form used in every artifact file."""
    return ensure_utc(value).isoformat(timespec="microseconds")
