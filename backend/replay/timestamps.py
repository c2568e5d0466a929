"""Per-entity-group commit timestamp authority.

Every commit against an entity group must carry a timestamp strictly greater
than the group's previous commit. The authority corrects small wall-clock
regressions by advancing to `last + TICK` and refuses large ones, which
almost always mean the upstream clock source is misconfigured.

The authority does not serialize callers. Writers to the same group must
already be serialized (CommitWriter holds a per-group lock and the SQL store
locks the group's clock row) so that calls are observed in commit order.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from replay.clock import TICK, ensure_utc
from replay.errors import ClockRegressionError, TimestampCollisionError

logger = logging.getLogger(__name__)


class TimestampAuthority:
    """Hands out strictly increasing commit timestamps per entity group."""

    def __init__(self, tolerance: timedelta = timedelta(seconds=5)):
        if tolerance < timedelta(0):
            raise ValueError("tolerance must not be negative")
        self.tolerance = tolerance
        self._last: dict[str, datetime] = {}

    def last_timestamp(self, entity_group_id: str) -> datetime | None:
        """Return the last accepted timestamp for a group, if any."""
        return self._last.get(entity_group_id)

    def observe(self, entity_group_id: str, timestamp: datetime | None) -> None:
        """Record a commit made elsewhere (e.g. loaded from storage).

        Never moves a group backwards.
        """
        if timestamp is None:
            return
        timestamp = ensure_utc(timestamp)
        last = self._last.get(entity_group_id)
        if last is None or timestamp > last:
            self._last[entity_group_id] = timestamp

    def next_timestamp(self, entity_group_id: str, proposed: datetime) -> datetime:
        """Accept a commit time for the group.

        Args:
            entity_group_id: Group the commit is made against.
            proposed: Wall-clock-derived candidate time.

        Returns:
            `proposed` if it is after the group's last commit, otherwise
            `last + TICK`.

        Raises:
            ClockRegressionError: If the correction exceeds the tolerance.
            TimestampCollisionError: If no later timestamp can be represented.
        """
        proposed = ensure_utc(proposed)
        last = self._last.get(entity_group_id)
        accepted = proposed

        if last is not None and proposed <= last:
            try:
                accepted = last + TICK
            except OverflowError:
                raise TimestampCollisionError(entity_group_id, proposed, last) from None
            if accepted - proposed > self.tolerance:
                raise ClockRegressionError(
                    entity_group_id, proposed, last, self.tolerance
                )
            logger.debug(
                f"Group {entity_group_id}: advanced proposed {proposed.isoformat()} "
                f"to {accepted.isoformat()}"
            )

        self._last[entity_group_id] = accepted
        return accepted

    def check_commit(self, entity_group_id: str, timestamp: datetime) -> None:
        """Validate an already-stamped commit and record it.

        Unlike next_timestamp() there is nothing to correct: the timestamp
        is part of a transaction that may already be durable elsewhere.

        Raises:
            TimestampCollisionError: If the timestamp is not strictly after
                the group's last commit.
        """
        timestamp = ensure_utc(timestamp)
        last = self._last.get(entity_group_id)
        if last is not None and timestamp <= last:
            raise TimestampCollisionError(entity_group_id, timestamp, last)
        self._last[entity_group_id] = timestamp
