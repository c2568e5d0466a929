"""Tests for replay.clock: injectable clocks and timestamp helpers."""

from datetime import datetime, timedelta, timezone

import pytest

from replay.clock import (
    EPOCH,
    TICK,
    FakeClock,
    SystemClock,
    ensure_utc,
    format_timestamp,
    from_micros,
    parse_timestamp,
    to_micros,
)

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


class TestFakeClock:
    def test_starts_at_given_time(self) -> None:
        assert FakeClock(T0).now_utc() == T0

    def test_advance(self) -> None:
        clock = FakeClock(T0)
        assert clock.advance(seconds=2, milliseconds=500) == T0 + timedelta(seconds=2.5)
        assert clock.now_utc() == T0 + timedelta(seconds=2.5)

    def test_advance_one_tick(self) -> None:
        clock = FakeClock(T0)
        assert clock.advance_one_tick() == T0 + TICK

    def test_set_can_move_backwards(self) -> None:
        clock = FakeClock(T0)
        clock.set(T0 - timedelta(days=1))
        assert clock.now_utc() == T0 - timedelta(days=1)

    def test_rejects_naive_start(self) -> None:
        with pytest.raises(ValueError):
            FakeClock(datetime(2024, 1, 1))


class TestSystemClock:
    def test_returns_aware_utc(self) -> None:
        now = SystemClock().now_utc()
        assert now.tzinfo is not None
        assert now.utcoffset() == timedelta(0)


class TestConversions:
    def test_tick_is_one_microsecond(self) -> None:
        assert TICK == timedelta(microseconds=1)

    def test_epoch_is_zero_micros(self) -> None:
        assert to_micros(EPOCH) == 0
        assert from_micros(0) == EPOCH

    def test_micros_preserve_resolution(self) -> None:
        value = datetime(2024, 3, 5, 12, 30, 1, 123456, tzinfo=timezone.utc)
        assert from_micros(to_micros(value)) == value
        assert to_micros(value + TICK) - to_micros(value) == 1

    def test_pre_epoch_values(self) -> None:
        value = datetime(1969, 12, 31, 23, 59, 59, 999999, tzinfo=timezone.utc)
        assert to_micros(value) == -1

    def test_ensure_utc_converts_offsets(self) -> None:
        plus_two = timezone(timedelta(hours=2))
        value = datetime(2024, 1, 1, 2, 0, tzinfo=plus_two)
        assert ensure_utc(value) == T0
        assert ensure_utc(value).tzinfo == timezone.utc

    def test_ensure_utc_rejects_naive(self) -> None:
        with pytest.raises(ValueError, match="timezone-aware"):
            ensure_utc(datetime(2024, 1, 1))


class TestTextForm:
    def test_format_keeps_microseconds(self) -> None:
        assert format_timestamp(T0) == "2024-01-01T00:00:00.000000+00:00"

    def test_parse_accepts_z_suffix(self) -> None:
        assert parse_timestamp("2024-01-01T00:00:00Z") == T0

    def test_parse_rejects_naive(self) -> None:
        with pytest.raises(ValueError):
            parse_timestamp("2024-01-01T00:00:00")

    def test_parse_inverts_format(self) -> None:
        value = T0 + timedelta(microseconds=42)
        assert parse_timestamp(format_timestamp(value)) == value
