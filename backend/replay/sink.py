"""Output sink: the reconstructed snapshot as kind-tagged collections.

A Snapshot is an immutable value. Each tracked kind maps to a
KindCollection, a read-only mapping from entity id to MaterializedEntity,
so a downstream loader can either iterate a kind in id order or look up
single entities.

The file form is canonical JSON (sorted keys, compact separators, entities
sorted by id), so reconstructing twice from the same inputs writes
byte-identical files.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from registry.models.enums import EntityKind
from replay.clock import format_timestamp, parse_timestamp
from replay.records import MaterializedEntity, SnapshotWindow, parse_kind

if TYPE_CHECKING:
    from replay.engine import ReplayStats

EntityKey = tuple[EntityKind, str]


@dataclass(frozen=True)
class EntityState:
    """Fold state of one entity: its payload and where it came from.

    `timestamp` is None for an export record without known_as_of, which
    every log mutation supersedes. `from_log` separates log-derived state
    (replaced unconditionally in commit order) from export seeds (replaced
    only by strictly later commits).
    """

    timestamp: datetime | None
    payload: Any = None
    deleted: bool = False
    from_log: bool = False


class KindCollection(Mapping[str, MaterializedEntity]):
    """Entities of one kind keyed by entity id, iterated in id order."""

    def __init__(self, kind: EntityKind, entities: Mapping[str, MaterializedEntity]):
        self._kind = kind
        self._entities = dict(entities)
        self._order = sorted(self._entities)

    @property
    def kind(self) -> EntityKind:
        return self._kind

    def __getitem__(self, entity_id: str) -> MaterializedEntity:
        return self._entities[entity_id]

    def __iter__(self) -> Iterator[str]:
        return iter(self._order)

    def __len__(self) -> int:
        return len(self._order)

    def __repr__(self) -> str:
        return f"<KindCollection({self._kind}, {len(self)} entities)>"

    def live(self) -> Iterator[MaterializedEntity]:
        """Entities that exist at the cutoff (tombstones skipped)."""
        for entity_id in self._order:
            entity = self._entities[entity_id]
            if not entity.absent:
                yield entity

    def timestamp_of(self, entity_id: str) -> datetime | None:
        return self._entities[entity_id].effective_timestamp

    def payload_of(self, entity_id: str) -> Any:
        return self._entities[entity_id].payload


class Snapshot:
    """Exact registry state of the tracked kinds as of `window.end`."""

    def __init__(
        self,
        window: SnapshotWindow,
        collections: Mapping[EntityKind, KindCollection],
        stats: ReplayStats | None = None,
    ):
        self.window = window
        self._collections = dict(collections)
        self.stats = stats

    @property
    def cutoff(self) -> datetime:
        return self.window.end

    @property
    def kinds(self) -> tuple[EntityKind, ...]:
        return tuple(sorted(self._collections, key=lambda k: k.value))

    def __getitem__(self, kind: EntityKind | str) -> KindCollection:
        return self._collections[parse_kind(kind)]

    def __contains__(self, kind: object) -> bool:
        return kind in self._collections

    def get(self, kind: EntityKind | str, entity_id: str) -> MaterializedEntity | None:
        """Look up one live entity; tombstones read as missing."""
        entity = self[kind].get(entity_id)
        if entity is None or entity.absent:
            return None
        return entity

    @property
    def entity_count(self) -> int:
        return sum(1 for kind in self.kinds for _ in self[kind].live())

    def as_pairs(self) -> dict[EntityKind, dict[str, tuple[datetime | None, Any]]]:
        """Live entities as kind -> id -> (effective timestamp, payload)."""
        return {
            kind: {
                entity.entity_id: (entity.effective_timestamp, entity.payload)
                for entity in self[kind].live()
            }
            for kind in self.kinds
        }

    # =========================================================================
    # Canonical file form
    # =========================================================================

    def to_dict(self) -> dict[str, Any]:
        kinds: dict[str, list[dict[str, Any]]] = {}
        for kind in self.kinds:
            entries = []
            for entity_id, entity in self[kind].items():
                entry: dict[str, Any] = {
                    "entity_id": entity_id,
                    "effective_timestamp": (
                        format_timestamp(entity.effective_timestamp)
                        if entity.effective_timestamp is not None
                        else None
                    ),
                    "payload": entity.payload,
                }
                if entity.absent:
                    entry["absent"] = True
                entries.append(entry)
            kinds[kind.value] = entries
        return {
            "window": {
                "start": format_timestamp(self.window.start),
                "end": format_timestamp(self.window.end),
            },
            "kinds": kinds,
        }

    def to_bytes(self) -> bytes:
        return json.dumps(
            self.to_dict(), sort_keys=True, separators=(",", ":")
        ).encode("utf-8")

    def digest(self) -> str:
        """SHA-256 of the canonical form, for cheap equality checks."""
        return hashlib.sha256(self.to_bytes()).hexdigest()

    def write(self, path: Path | str) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(self.to_bytes())
        return path

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Snapshot:
        window = SnapshotWindow(
            parse_timestamp(data["window"]["start"]),
            parse_timestamp(data["window"]["end"]),
        )
        collections: dict[EntityKind, KindCollection] = {}
        for kind_name, entries in data["kinds"].items():
            kind = parse_kind(kind_name)
            entities = {}
            for entry in entries:
                raw_ts = entry.get("effective_timestamp")
                entities[entry["entity_id"]] = MaterializedEntity(
                    kind=kind,
                    entity_id=entry["entity_id"],
                    effective_timestamp=parse_timestamp(raw_ts) if raw_ts else None,
                    payload=entry.get("payload"),
                    absent=bool(entry.get("absent", False)),
                )
            collections[kind] = KindCollection(kind, entities)
        return cls(window, collections)

    @classmethod
    def load(cls, path: Path | str) -> Snapshot:
        return cls.from_dict(json.loads(Path(path).read_bytes()))

    def __repr__(self) -> str:
        return f"<Snapshot({self.window}, kinds={[k.value for k in self.kinds]})>"


def materialize(
    states: Mapping[EntityKey, EntityState],
    tracked_kinds: Iterable[EntityKind],
    window: SnapshotWindow,
    keep_tombstones: bool = False,
    stats: ReplayStats | None = None,
) -> Snapshot:
    """Turn folded entity states into a Snapshot.

    Every tracked kind gets a collection, even an empty one. Deleted
    entities are dropped unless keep_tombstones is set, in which case they
    are emitted with absent=True and the timestamp of the deletion.
    """
    per_kind: dict[EntityKind, dict[str, MaterializedEntity]] = {
        kind: {} for kind in tracked_kinds
    }
    for (kind, entity_id), state in states.items():
        if kind not in per_kind:
            continue
        if state.deleted and not keep_tombstones:
            continue
        per_kind[kind][entity_id] = MaterializedEntity(
            kind=kind,
            entity_id=entity_id,
            effective_timestamp=state.timestamp,
            payload=None if state.deleted else state.payload,
            absent=state.deleted,
        )

    return Snapshot(
        window,
        {kind: KindCollection(kind, entities) for kind, entities in per_kind.items()},
        stats=stats,
    )
