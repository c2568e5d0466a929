"""Tests for replay.sink: snapshot collections and canonical output."""

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from registry.models.enums import EntityKind
from replay.errors import UnknownKindError
from replay.records import SnapshotWindow
from replay.sink import EntityState, Snapshot, materialize

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
WINDOW = SnapshotWindow(T0, T0 + timedelta(hours=1))


def _states() -> dict:
    return {
        (EntityKind.DOMAIN, "b.tld"): EntityState(T0, {"name": "b.tld"}),
        (EntityKind.DOMAIN, "a.tld"): EntityState(None, {"name": "a.tld"}),
        (EntityKind.DOMAIN, "gone.tld"): EntityState(
            T0 + timedelta(minutes=5), deleted=True, from_log=True
        ),
        (EntityKind.HOST, "ns1.b.tld"): EntityState(T0, {"ip": ["192.0.2.1"]}),
    }


class TestMaterialize:
    def test_drops_tombstones_by_default(self) -> None:
        snapshot = materialize(_states(), [EntityKind.DOMAIN], WINDOW)
        assert list(snapshot[EntityKind.DOMAIN]) == ["a.tld", "b.tld"]

    def test_keeps_tombstones_when_asked(self) -> None:
        snapshot = materialize(_states(), [EntityKind.DOMAIN], WINDOW, keep_tombstones=True)
        gone = snapshot[EntityKind.DOMAIN]["gone.tld"]
        assert gone.absent
        assert gone.payload is None
        assert gone.effective_timestamp == T0 + timedelta(minutes=5)
        assert snapshot.get(EntityKind.DOMAIN, "gone.tld") is None

    def test_untracked_kinds_left_out(self) -> None:
        snapshot = materialize(_states(), [EntityKind.DOMAIN], WINDOW)
        assert snapshot.kinds == (EntityKind.DOMAIN,)
        assert EntityKind.HOST not in snapshot

    def test_every_tracked_kind_has_a_collection(self) -> None:
        snapshot = materialize({}, [EntityKind.REGISTRAR, EntityKind.CONTACT], WINDOW)
        assert snapshot.kinds == (EntityKind.CONTACT, EntityKind.REGISTRAR)
        assert len(snapshot[EntityKind.REGISTRAR]) == 0


class TestSnapshotAccess:
    def test_lookup_by_kind_name(self) -> None:
        snapshot = materialize(_states(), [EntityKind.DOMAIN, EntityKind.HOST], WINDOW)
        assert snapshot["HostResource"].payload_of("ns1.b.tld") == {"ip": ["192.0.2.1"]}
        assert snapshot[EntityKind.DOMAIN].timestamp_of("a.tld") is None

    def test_unknown_kind_name(self) -> None:
        snapshot = materialize(_states(), [EntityKind.DOMAIN], WINDOW)
        with pytest.raises(UnknownKindError):
            snapshot["BillingEvent"]

    def test_cutoff_and_counts(self) -> None:
        snapshot = materialize(
            _states(), [EntityKind.DOMAIN, EntityKind.HOST], WINDOW, keep_tombstones=True
        )
        assert snapshot.cutoff == WINDOW.end
        assert snapshot.entity_count == 3

    def test_as_pairs(self) -> None:
        snapshot = materialize(_states(), [EntityKind.HOST], WINDOW)
        assert snapshot.as_pairs() == {
            EntityKind.HOST: {"ns1.b.tld": (T0, {"ip": ["192.0.2.1"]})}
        }


class TestCanonicalForm:
    def test_insertion_order_does_not_matter(self) -> None:
        states = _states()
        reversed_states = dict(reversed(list(states.items())))
        kinds = [EntityKind.DOMAIN, EntityKind.HOST]
        first = materialize(states, kinds, WINDOW)
        second = materialize(reversed_states, list(reversed(kinds)), WINDOW)
        assert first.to_bytes() == second.to_bytes()
        assert first.digest() == second.digest()

    def test_layout(self) -> None:
        snapshot = materialize(_states(), [EntityKind.DOMAIN], WINDOW, keep_tombstones=True)
        data = json.loads(snapshot.to_bytes())
        assert data["window"] == {
            "start": "2024-01-01T00:00:00.000000+00:00",
            "end": "2024-01-01T01:00:00.000000+00:00",
        }
        entries = data["kinds"]["DomainBase"]
        assert [e["entity_id"] for e in entries] == ["a.tld", "b.tld", "gone.tld"]
        assert entries[0]["effective_timestamp"] is None
        assert "absent" not in entries[1]
        assert entries[2]["absent"] is True

    def test_compact_separators(self) -> None:
        snapshot = materialize(_states(), [EntityKind.HOST], WINDOW)
        assert b", " not in snapshot.to_bytes()
        assert b": " not in snapshot.to_bytes()

    def test_write_and_load(self, tmp_path: Path) -> None:
        snapshot = materialize(
            _states(), [EntityKind.DOMAIN, EntityKind.HOST], WINDOW, keep_tombstones=True
        )
        path = snapshot.write(tmp_path / "out" / "snapshot.json")

        loaded = Snapshot.load(path)
        assert loaded.window == WINDOW
        assert loaded.to_bytes() == path.read_bytes()
        assert loaded[EntityKind.DOMAIN]["gone.tld"].absent
        assert loaded.get(EntityKind.DOMAIN, "b.tld").effective_timestamp == T0
