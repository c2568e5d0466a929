"""Commit writer wired from settings for the HTTP write path."""

from datetime import timedelta
from functools import lru_cache

from registry.config import settings
from registry.models.base import async_session_maker
from replay.clock import SystemClock
from replay.commit_log.writer import CommitWriter
from replay.timestamps import TimestampAuthority


@lru_cache
def get_commit_writer() -> CommitWriter:
    """Dependency returning the process-wide CommitWriter.

    One instance per process: its per-group locks and timestamp authority
    must see every commit made through the API.
    """
    return CommitWriter(
        async_session_maker,
        settings.commit_log_bucket_count,
        TimestampAuthority(
            tolerance=timedelta(milliseconds=settings.clock_regression_tolerance_ms)
        ),
        SystemClock(),
        durability_lag=timedelta(milliseconds=settings.commit_log_durability_lag_ms),
    )
