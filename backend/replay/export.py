"""Bulk export artifact: reader and writer.

An export is a non-atomic dump taken over [0, completed_at). Each record is
the best state the exporter knew at the time it reached that entity, so a
record may be stale, and entities created or deleted while the export ran
may be missing or present when they should not be. The replay engine
corrects for that with the commit log; this module only reads and writes
the artifact faithfully.

Layout under the export location:

    export_metadata.json    {"format_version": 1, "completed_at": ISO, "kinds": [...]}
    <Kind>/*.jsonl          one record per line, shards read in name order

A kind is rewritten by staging its shards in `.<Kind>.partial` and renaming
that directory into place.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from registry.models.enums import EntityKind
from replay.clock import ensure_utc, format_timestamp, parse_timestamp
from replay.errors import CorruptExportRecordError, ExportFormatError, UnknownKindError
from replay.records import ExportRecord, SnapshotWindow, export_record_to_dict, parse_kind
from replay.sink import EntityKey, EntityState, Snapshot, materialize

logger = logging.getLogger(__name__)

METADATA_NAME = "export_metadata.json"
FORMAT_VERSION = 1
DEFAULT_SHARD_SIZE = 10_000


@dataclass(frozen=True)
class ExportMetadata:
    """Export-wide facts recorded once the dump finished."""

    completed_at: datetime
    kinds: frozenset[EntityKind]
    unknown_kinds: frozenset[str] = frozenset()


class BulkExportReader:
    """Reads an export artifact one kind at a time."""

    def __init__(self, location: Path | str):
        self.location = Path(location)
        self._metadata: ExportMetadata | None = None

    @property
    def metadata(self) -> ExportMetadata:
        if self._metadata is None:
            self._metadata = self._read_metadata()
        return self._metadata

    @property
    def completed_at(self) -> datetime:
        return self.metadata.completed_at

    @property
    def kinds(self) -> frozenset[EntityKind]:
        return self.metadata.kinds

    def _read_metadata(self) -> ExportMetadata:
        path = self.location / METADATA_NAME
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            raise ExportFormatError(
                f"No export metadata at {path}; the export is incomplete."
            ) from None
        except (OSError, json.JSONDecodeError) as e:
            raise ExportFormatError(f"Unreadable export metadata {path}: {e}") from e

        if not isinstance(data, dict) or data.get("format_version") != FORMAT_VERSION:
            raise ExportFormatError(f"Unsupported export format in {path}.")

        try:
            completed_at = parse_timestamp(data["completed_at"])
            raw_kinds = list(data["kinds"])
        except (KeyError, TypeError, ValueError) as e:
            raise ExportFormatError(f"Invalid export metadata {path}: {e!r}") from e

        kinds: set[EntityKind] = set()
        unknown: set[str] = set()
        for raw in raw_kinds:
            try:
                kinds.add(parse_kind(raw))
            except UnknownKindError:
                unknown.add(str(raw))
        if unknown:
            logger.warning(
                f"Export {self.location} contains kinds this build does not know: "
                f"{', '.join(sorted(unknown))}"
            )
        return ExportMetadata(completed_at, frozenset(kinds), frozenset(unknown))

    def shard_paths(self, kind: EntityKind) -> list[Path]:
        """Shard files of one kind, in read order.

        Raises:
            ExportFormatError: If the export does not contain the kind, or
                lists it without a shard directory.
        """
        if kind not in self.kinds:
            raise ExportFormatError(
                f"Export {self.location} does not contain kind '{kind}'."
            )
        kind_dir = self.location / kind.value
        if not kind_dir.is_dir():
            raise ExportFormatError(
                f"Export {self.location} lists kind '{kind}' but has no shards for it."
            )
        return sorted(p for p in kind_dir.iterdir() if p.suffix == ".jsonl")

    def read(self, kind: EntityKind | str) -> Iterator[ExportRecord]:
        """Lazily yield every record of one kind.

        Each call starts a fresh pass over the shards, so a failed read can
        simply be restarted. Records come in storage order, which carries
        no meaning.

        Raises:
            ExportFormatError: If the kind is not part of the export.
            CorruptExportRecordError: On the first undecodable record.
        """
        kind = parse_kind(kind)
        # Resolve shards eagerly so a missing kind fails at the call site.
        paths = self.shard_paths(kind)
        return self._iter_records(kind, paths)

    def _iter_records(self, kind: EntityKind, paths: list[Path]) -> Iterator[ExportRecord]:
        for path in paths:
            with path.open("r", encoding="utf-8") as f:
                for line_number, line in enumerate(f, start=1):
                    if not line.strip():
                        continue
                    yield self._decode(kind, path, line_number, line)

    def _decode(
        self, kind: EntityKind, path: Path, line_number: int, line: str
    ) -> ExportRecord:
        def corrupt(detail: str) -> CorruptExportRecordError:
            return CorruptExportRecordError(str(path), line_number, detail)

        try:
            data = json.loads(line)
        except json.JSONDecodeError as e:
            raise corrupt(f"invalid JSON ({e.msg})") from e
        if not isinstance(data, dict):
            raise corrupt("record is not an object")

        if data.get("kind") != kind.value:
            raise corrupt(f"kind {data.get('kind')!r} in the '{kind}' partition")
        entity_id = data.get("entity_id")
        if not isinstance(entity_id, str) or not entity_id:
            raise corrupt("missing entity_id")
        if data.get("payload") is None:
            raise corrupt(f"entity '{entity_id}' has no payload")

        known_as_of = None
        raw_known = data.get("known_as_of")
        if raw_known is not None:
            try:
                known_as_of = parse_timestamp(raw_known)
            except (TypeError, ValueError) as e:
                raise corrupt(f"invalid known_as_of {raw_known!r}") from e
            if known_as_of > self.completed_at:
                raise corrupt(
                    f"known_as_of {known_as_of.isoformat()} is after export "
                    f"completion {self.completed_at.isoformat()}"
                )

        return ExportRecord(
            kind=kind,
            entity_id=entity_id,
            payload=data["payload"],
            known_as_of=known_as_of,
        )


class ExportWriter:
    """Writes an export artifact.

    Metadata is written last by finish(): until then the location is not a
    readable export, so an interrupted dump can never be mistaken for a
    complete one.
    """

    def __init__(self, location: Path | str, shard_size: int = DEFAULT_SHARD_SIZE):
        if shard_size < 1:
            raise ValueError("shard_size must be >= 1")
        self.location = Path(location)
        self.shard_size = shard_size
        self._kinds: set[EntityKind] = set()

    def write_kind(self, kind: EntityKind, records: Iterable[ExportRecord]) -> int:
        """Write all records of one kind, replacing earlier shards.

        The new shards only replace the old ones once every record has been
        written; if writing fails the previous shards are left untouched.

        Returns:
            Number of records written.
        """
        kind_dir = self.location / kind.value
        staging = self.location / f".{kind.value}.partial"
        retired = self.location / f".{kind.value}.old"
        for leftover in (staging, retired):
            if leftover.exists():
                shutil.rmtree(leftover)
        staging.mkdir(parents=True)

        try:
            count, shards = self._write_shards(staging, kind, records)
        except Exception:
            shutil.rmtree(staging)
            raise

        if kind_dir.exists():
            os.replace(kind_dir, retired)
        os.replace(staging, kind_dir)
        if retired.exists():
            shutil.rmtree(retired)

        self._kinds.add(kind)
        logger.debug(f"Wrote {count} {kind} records in {shards} shards")
        return count

    def _write_shards(
        self, directory: Path, kind: EntityKind, records: Iterable[ExportRecord]
    ) -> tuple[int, int]:
        count = 0
        shard = 0
        out = None
        try:
            for record in records:
                if record.kind != kind:
                    raise ValueError(
                        f"Record {record.kind}/{record.entity_id} written to '{kind}'."
                    )
                if out is None or count % self.shard_size == 0:
                    if out is not None:
                        out.close()
                    out = (directory / f"part-{shard:05d}.jsonl").open("w", encoding="utf-8")
                    shard += 1
                out.write(json.dumps(export_record_to_dict(record), sort_keys=True))
                out.write("\n")
                count += 1
        finally:
            if out is not None:
                out.close()
        return count, shard

    def finish(self, completed_at: datetime) -> Path:
        """Write the metadata file, making the export readable."""
        path = self.location / METADATA_NAME
        tmp_path = path.with_suffix(".json.tmp")
        self.location.mkdir(parents=True, exist_ok=True)
        tmp_path.write_text(
            json.dumps(
                {
                    "format_version": FORMAT_VERSION,
                    "completed_at": format_timestamp(ensure_utc(completed_at)),
                    "kinds": sorted(k.value for k in self._kinds),
                },
                sort_keys=True,
            )
        )
        os.replace(tmp_path, path)
        logger.info(
            f"Finished export at {self.location} ({len(self._kinds)} kinds, "
            f"completed_at={completed_at.isoformat()})"
        )
        return path

    def write_snapshot(self, snapshot: Snapshot) -> Path:
        """Write a reconstructed snapshot as a complete export.

        The result is a consistent export as of the snapshot cutoff and can
        seed the next reconstruction with a window starting at that cutoff.
        """
        for kind in snapshot.kinds:
            self.write_kind(
                kind,
                (
                    ExportRecord(
                        kind=kind,
                        entity_id=entity.entity_id,
                        payload=entity.payload,
                        known_as_of=entity.effective_timestamp,
                    )
                    for entity in snapshot[kind].live()
                ),
            )
        return self.finish(snapshot.cutoff)


def load_export_snapshot(
    reader: BulkExportReader, kinds: Iterable[EntityKind] | None = None
) -> Snapshot:
    """Read an export as a Snapshot at its completion time.

    Useful as the reference side of a verification run. Duplicate records
    for one entity resolve to the later known_as_of.
    """
    selected = sorted(kinds if kinds is not None else reader.kinds, key=lambda k: k.value)
    states: dict[EntityKey, EntityState] = {}
    for kind in selected:
        for record in reader.read(kind):
            key = (kind, record.entity_id)
            state = EntityState(timestamp=record.known_as_of, payload=record.payload)
            if supersedes(state, states.get(key)):
                states[key] = state

    window = SnapshotWindow(reader.completed_at, reader.completed_at)
    return materialize(states, selected, window)


def supersedes(candidate: EntityState, current: EntityState | None) -> bool:
    """Whether an export record should replace one already seen.

    A missing known_as_of counts as older than any timestamp. Ties keep the
    record read last.
    """
    if current is None or current.timestamp is None:
        return True
    if candidate.timestamp is None:
        return False
    return candidate.timestamp >= current.timestamp
