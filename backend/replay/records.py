"""Value types flowing through the commit log, the export and the engine.

All types are frozen dataclasses. Payloads are opaque JSON values that the
engine never inspects; they are shared by reference and must be treated as
read-only once wrapped.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from registry.models.enums import EntityKind, MutationType
from replay.clock import ensure_utc, format_timestamp, parse_timestamp
from replay.errors import InvalidWindowError, UnknownKindError

_KINDS_BY_VALUE = {kind.value: kind for kind in EntityKind}


def parse_kind(value: str) -> EntityKind:
    """Resolve a stored kind name, raising UnknownKindError for anything else."""
    if isinstance(value, EntityKind):
        return value
    try:
        return _KINDS_BY_VALUE[value]
    except (KeyError, TypeError):
        raise UnknownKindError(str(value)) from None


@dataclass(frozen=True)
class Mutation:
    """One atomic change to one entity inside a commit.

    `kind` keeps the raw stored string so a log written by a newer writer
    with kinds this build does not know can still be read and filtered.
    A payload may be any JSON value except null, which marks a DELETE.
    """

    kind: str
    entity_id: str
    mutation_type: MutationType
    payload: Any = None

    def __post_init__(self) -> None:
        if self.mutation_type == MutationType.UPSERT and self.payload is None:
            raise ValueError(f"UPSERT of {self.kind}/{self.entity_id} has no payload.")
        if self.mutation_type == MutationType.DELETE and self.payload is not None:
            raise ValueError(f"DELETE of {self.kind}/{self.entity_id} carries a payload.")

    @classmethod
    def upsert(cls, kind: str, entity_id: str, payload: Any) -> Mutation:
        return cls(str(kind), entity_id, MutationType.UPSERT, payload)

    @classmethod
    def delete(cls, kind: str, entity_id: str) -> Mutation:
        return cls(str(kind), entity_id, MutationType.DELETE)


@dataclass(frozen=True)
class CommitLogTransaction:
    """Mutations committed atomically against one entity group."""

    transaction_id: str
    entity_group_id: str
    commit_timestamp: datetime
    mutations: tuple[Mutation, ...]

    @property
    def sort_key(self) -> tuple[datetime, str, str]:
        """Total replay order: commit time, then group, then id.

        Within a group the commit time alone is already total; the other
        two fields only make cross-group ties deterministic.
        """
        return (self.commit_timestamp, self.entity_group_id, self.transaction_id)


@dataclass(frozen=True)
class ExportRecord:
    """Best-known state of one entity as captured by a bulk export."""

    kind: EntityKind
    entity_id: str
    payload: Any
    known_as_of: datetime | None = None


@dataclass(frozen=True)
class SnapshotWindow:
    """The half-open commit-time interval (start, end] replayed over an export."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        object.__setattr__(self, "start", ensure_utc(self.start))
        object.__setattr__(self, "end", ensure_utc(self.end))
        if self.start > self.end:
            raise InvalidWindowError(
                f"Window start {self.start.isoformat()} is after end "
                f"{self.end.isoformat()}."
            )

    def contains(self, timestamp: datetime) -> bool:
        return self.start < timestamp <= self.end

    def __str__(self) -> str:
        return f"({self.start.isoformat()}, {self.end.isoformat()}]"


@dataclass(frozen=True)
class MaterializedEntity:
    """One entity of a reconstructed snapshot.

    `absent` entities are tombstones: they exist only when the engine is
    asked to keep deletions visible to an incremental loader.
    """

    kind: EntityKind
    entity_id: str
    effective_timestamp: datetime | None
    payload: Any = None
    absent: bool = False


# =============================================================================
# JSON codecs shared by the file stores
# =============================================================================


def mutation_to_dict(mutation: Mutation) -> dict[str, Any]:
    return {
        "kind": str(mutation.kind),
        "entity_id": mutation.entity_id,
        "type": mutation.mutation_type.value,
        "payload": mutation.payload,
    }


def mutation_from_dict(data: dict[str, Any]) -> Mutation:
    return Mutation(
        kind=str(data["kind"]),
        entity_id=str(data["entity_id"]),
        mutation_type=MutationType(data["type"]),
        payload=data.get("payload"),
    )


def transaction_to_dict(transaction: CommitLogTransaction) -> dict[str, Any]:
    return {
        "transaction_id": transaction.transaction_id,
        "entity_group_id": transaction.entity_group_id,
        "commit_timestamp": format_timestamp(transaction.commit_timestamp),
        "mutations": [mutation_to_dict(m) for m in transaction.mutations],
    }


def transaction_from_dict(data: dict[str, Any]) -> CommitLogTransaction:
    """Decode a transaction line.

    Raises:
        KeyError, TypeError, ValueError: On any malformed field. Callers wrap
            these into the error type of their artifact.
    """
    mutations = data["mutations"]
    if not isinstance(mutations, list):
        raise TypeError("mutations must be a list")
    return CommitLogTransaction(
        transaction_id=str(data["transaction_id"]),
        entity_group_id=str(data["entity_group_id"]),
        commit_timestamp=parse_timestamp(data["commit_timestamp"]),
        mutations=tuple(mutation_from_dict(m) for m in mutations),
    )


def export_record_to_dict(record: ExportRecord) -> dict[str, Any]:
    return {
        "kind": record.kind.value,
        "entity_id": record.entity_id,
        "payload": record.payload,
        "known_as_of": (
            format_timestamp(record.known_as_of)
            if record.known_as_of is not None
            else None
        ),
    }
