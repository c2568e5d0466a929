"""Tests for replay.records: value types and their JSON codecs."""

from datetime import datetime, timedelta, timezone

import pytest

from registry.models.enums import EntityKind, MutationType
from replay.errors import InvalidWindowError, UnknownKindError
from replay.records import (
    CommitLogTransaction,
    Mutation,
    SnapshotWindow,
    mutation_from_dict,
    parse_kind,
    transaction_from_dict,
    transaction_to_dict,
)

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


class TestParseKind:
    def test_known_kind(self) -> None:
        assert parse_kind("DomainBase") is EntityKind.DOMAIN

    def test_enum_passes_through(self) -> None:
        assert parse_kind(EntityKind.HOST) is EntityKind.HOST

    def test_unknown_kind(self) -> None:
        with pytest.raises(UnknownKindError) as exc_info:
            parse_kind("BillingEvent")
        assert exc_info.value.kind == "BillingEvent"

    def test_member_name_is_not_a_kind(self) -> None:
        with pytest.raises(UnknownKindError):
            parse_kind("DOMAIN")


class TestMutation:
    def test_upsert_requires_payload(self) -> None:
        with pytest.raises(ValueError, match="no payload"):
            Mutation("DomainBase", "d1", MutationType.UPSERT)

    def test_json_null_upsert_payload_is_rejected(self) -> None:
        data = {"kind": "DomainBase", "entity_id": "d1", "type": "UPSERT", "payload": None}
        with pytest.raises(ValueError, match="no payload"):
            mutation_from_dict(data)

    @pytest.mark.parametrize("payload", [0, False, "", [], {}])
    def test_falsy_payloads_are_kept(self, payload: object) -> None:
        assert Mutation.upsert(EntityKind.DOMAIN, "d1", payload).payload == payload

    def test_delete_rejects_payload(self) -> None:
        with pytest.raises(ValueError, match="carries a payload"):
            Mutation("DomainBase", "d1", MutationType.DELETE, {"x": 1})

    def test_factories_store_raw_kind_string(self) -> None:
        mutation = Mutation.upsert(EntityKind.DOMAIN, "d1", {"name": "example.tld"})
        assert mutation.kind == "DomainBase"
        assert Mutation.delete(EntityKind.HOST, "h1").payload is None

    def test_unknown_kind_can_be_represented(self) -> None:
        mutation = Mutation.upsert("FutureKind", "f1", {"a": 1})
        assert mutation.kind == "FutureKind"


class TestSnapshotWindow:
    def test_contains_is_half_open(self) -> None:
        window = SnapshotWindow(T0, T0 + timedelta(seconds=10))
        assert not window.contains(T0)
        assert window.contains(T0 + timedelta(microseconds=1))
        assert window.contains(T0 + timedelta(seconds=10))
        assert not window.contains(T0 + timedelta(seconds=10, microseconds=1))

    def test_start_after_end_rejected(self) -> None:
        with pytest.raises(InvalidWindowError):
            SnapshotWindow(T0 + timedelta(seconds=1), T0)

    def test_empty_window_allowed(self) -> None:
        window = SnapshotWindow(T0, T0)
        assert not window.contains(T0)

    def test_normalizes_to_utc(self) -> None:
        plus_one = timezone(timedelta(hours=1))
        window = SnapshotWindow(datetime(2024, 1, 1, 1, tzinfo=plus_one), T0)
        assert window.start == T0
        assert window.start.tzinfo == timezone.utc

    def test_rejects_naive(self) -> None:
        with pytest.raises(ValueError):
            SnapshotWindow(datetime(2024, 1, 1), T0)


class TestTransactionCodec:
    def _transaction(self) -> CommitLogTransaction:
        return CommitLogTransaction(
            transaction_id="tx-1",
            entity_group_id="g1",
            commit_timestamp=T0 + timedelta(microseconds=7),
            mutations=(
                Mutation.upsert(EntityKind.DOMAIN, "d1", {"name": "a.tld", "hosts": []}),
                Mutation.delete(EntityKind.HOST, "h1"),
            ),
        )

    def test_dict_form(self) -> None:
        data = transaction_to_dict(self._transaction())
        assert data["commit_timestamp"] == "2024-01-01T00:00:00.000007+00:00"
        assert data["mutations"][0] == {
            "kind": "DomainBase",
            "entity_id": "d1",
            "type": "UPSERT",
            "payload": {"name": "a.tld", "hosts": []},
        }
        assert data["mutations"][1]["type"] == "DELETE"
        assert data["mutations"][1]["payload"] is None

    def test_decode_restores_transaction(self) -> None:
        tx = self._transaction()
        assert transaction_from_dict(transaction_to_dict(tx)) == tx

    def test_sort_key(self) -> None:
        tx = self._transaction()
        assert tx.sort_key == (tx.commit_timestamp, "g1", "tx-1")

    @pytest.mark.parametrize(
        "broken",
        [
            {"entity_group_id": "g1", "commit_timestamp": "2024-01-01T00:00:00Z", "mutations": []},
            {"transaction_id": "t", "entity_group_id": "g1", "commit_timestamp": "nope", "mutations": []},
            {"transaction_id": "t", "entity_group_id": "g1", "commit_timestamp": "2024-01-01T00:00:00Z", "mutations": {}},
            {
                "transaction_id": "t",
                "entity_group_id": "g1",
                "commit_timestamp": "2024-01-01T00:00:00Z",
                "mutations": [{"kind": "DomainBase", "entity_id": "d", "type": "MERGE"}],
            },
        ],
    )
    def test_malformed_input_raises(self, broken: dict) -> None:
        with pytest.raises((KeyError, TypeError, ValueError)):
            transaction_from_dict(broken)
