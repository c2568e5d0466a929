"""Snapshot verification: compare a derived snapshot against a reference.

Pure functions with no I/O. The reference is usually a full export taken
at the cutoff (see replay.export.load_export_snapshot) or a snapshot
produced by an independent reconstruction.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from registry.models.enums import EntityKind
from replay.records import MaterializedEntity
from replay.sink import Snapshot


@dataclass
class EntityMismatch:
    """A single entity where the derived snapshot differs from the reference."""

    kind: EntityKind
    entity_id: str
    mismatch_type: str  # "payload", "timestamp", "both", "only_in_derived", "only_in_reference"
    derived_timestamp: datetime | None
    reference_timestamp: datetime | None


@dataclass
class SnapshotComparison:
    """Result of comparing a derived snapshot against a reference."""

    entities_match: int = 0
    entities_mismatch: int = 0
    entities_only_in_derived: int = 0
    entities_only_in_reference: int = 0
    mismatches: list[EntityMismatch] = field(default_factory=list)

    @property
    def is_clean(self) -> bool:
        """True if the derived snapshot exactly matches the reference."""
        return (
            self.entities_mismatch == 0
            and self.entities_only_in_derived == 0
            and self.entities_only_in_reference == 0
        )


def payload_hash(payload: Any) -> str:
    """Order-insensitive hash of a JSON payload."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _live(snapshot: Snapshot, kind: EntityKind) -> dict[str, MaterializedEntity]:
    if kind not in snapshot:
        return {}
    return {e.entity_id: e for e in snapshot[kind].live()}


def compare_snapshots(
    derived: Snapshot,
    reference: Snapshot,
    kinds: Iterable[EntityKind] | None = None,
    compare_timestamps: bool = True,
) -> SnapshotComparison:
    """Compare two snapshots entity by entity.

    Args:
        derived: Snapshot produced by replay.
        reference: Ground truth to compare against.
        kinds: Kinds to compare (default: every kind in either snapshot).
        compare_timestamps: Also require equal effective timestamps where
            the reference knows one.

    Returns:
        SnapshotComparison with match/mismatch counts and details.
    """
    if kinds is None:
        kinds = set(derived.kinds) | set(reference.kinds)
    result = SnapshotComparison()

    for kind in sorted(kinds, key=lambda k: k.value):
        derived_map = _live(derived, kind)
        reference_map = _live(reference, kind)

        for entity_id in sorted(set(derived_map) | set(reference_map)):
            ours = derived_map.get(entity_id)
            theirs = reference_map.get(entity_id)

            if theirs is None:
                result.entities_only_in_derived += 1
                result.mismatches.append(
                    EntityMismatch(
                        kind=kind,
                        entity_id=entity_id,
                        mismatch_type="only_in_derived",
                        derived_timestamp=ours.effective_timestamp,
                        reference_timestamp=None,
                    )
                )
                continue

            if ours is None:
                result.entities_only_in_reference += 1
                result.mismatches.append(
                    EntityMismatch(
                        kind=kind,
                        entity_id=entity_id,
                        mismatch_type="only_in_reference",
                        derived_timestamp=None,
                        reference_timestamp=theirs.effective_timestamp,
                    )
                )
                continue

            payload_match = payload_hash(ours.payload) == payload_hash(theirs.payload)
            timestamp_match = (
                not compare_timestamps
                or theirs.effective_timestamp is None
                or ours.effective_timestamp == theirs.effective_timestamp
            )

            if payload_match and timestamp_match:
                result.entities_match += 1
                continue

            result.entities_mismatch += 1
            if not payload_match and not timestamp_match:
                mismatch_type = "both"
            elif not payload_match:
                mismatch_type = "payload"
            else:
                mismatch_type = "timestamp"
            result.mismatches.append(
                EntityMismatch(
                    kind=kind,
                    entity_id=entity_id,
                    mismatch_type=mismatch_type,
                    derived_timestamp=ours.effective_timestamp,
                    reference_timestamp=theirs.effective_timestamp,
                )
            )

    return result
