"""
Tests for the client facade.
"""

import pytest

from triple_upsert.client import Client, Operation
from triple_upsert.config import UpsertConfig
from triple_upsert.models import UID, DataType, Duple, DupleNode
from triple_upsert.pool import BatchFailedError
from triple_upsert.query import QueryError

from conftest import FakeStore


@pytest.fixture
def client(memory_store):
    return Client(memory_store.new_txn, UpsertConfig(predicate_key="username"))


class TestOperation:
    """Test operation validation."""

    def test_exactly_one_field(self):
        op = Operation(set_string_map={"username": "alice"})
        assert op.selected() == "set_string_map"

    def test_none_set(self):
        with pytest.raises(ValueError):
            Operation().selected()

    def test_two_set(self):
        op = Operation(set_string_map={}, set_dynamic_map={})
        with pytest.raises(ValueError):
            op.selected()


class TestClient:
    """Test client operations against the in-memory store."""

    def test_single_node(self, client, alice, memory_store):
        uids = client.mutate(Operation(set_single_duple_node=alice))

        assert uids["alice"].is_new
        assert memory_store.node(uids["alice"].value)["age"] == 30

    def test_single_node_twice_updates(self, client, alice):
        first = client.mutate(Operation(set_single_duple_node=alice))["alice"]
        second = client.mutate(Operation(set_single_duple_node=alice))["alice"]

        assert second == UID(first.value, is_new=False)

    def test_multi_node(self, client, alice, bob, memory_store):
        uids = client.mutate(Operation(set_multi_duple_node=[alice, bob]))

        assert set(uids) == {"alice", "bob"}
        assert len(memory_store) == 2

    def test_multi_node_with_seed(self, alice, bob):
        store = FakeStore()
        client = Client(store.new_txn)
        uids = client.mutate(
            Operation(set_multi_duple_node=[alice, bob]),
            seed={"alice": UID("0x1")},
        )

        assert uids["alice"] == UID("0x1")
        assert len(store.mutations) == 1

    def test_string_map(self, client, memory_store):
        uids = client.mutate(Operation(set_string_map={"username": "alice", "age": "30"}))

        uid = uids["alice"].value
        assert memory_store.node(uid) == {"username": "alice", "age": "30"}
        assert memory_store.find("username", "alice") == [uid]

    def test_dynamic_map_keeps_types(self, client, memory_store):
        uids = client.mutate(Operation(set_dynamic_map={"username": "bob", "age": 25, "admin": False}))

        assert memory_store.node(uids["bob"].value) == {"username": "bob", "age": 25, "admin": False}

    def test_map_matches_existing(self, client):
        first = client.mutate(Operation(set_string_map={"username": "alice"}))["alice"]
        second = client.mutate(Operation(set_dynamic_map={"username": "alice", "age": 31}))["alice"]
        assert second.value == first.value
        assert not second.is_new

    def test_node_from_map(self, client):
        node = client.node_from_map({"username": "carol", "age": 40}, string_values=True)

        assert node.identifier == "carol"
        assert [d.predicate for d in node.unique()] == ["username"]
        assert node.find("age").data_type == DataType.STRING

    def test_map_without_predicate_key(self, memory_store):
        client = Client(memory_store.new_txn)
        node = client.node_from_map({"username": "dave"})

        assert node.identifier == ""
        assert node.unique() == []

    def test_single_node_error_raised(self, alice):
        store = FakeStore(query_error=RuntimeError("down"))
        client = Client(store.new_txn)
        with pytest.raises(QueryError):
            client.upsert(alice)

    def test_multi_node_error_raised(self, alice, bob):
        store = FakeStore(query_error=RuntimeError("down"))
        client = Client(store.new_txn)
        with pytest.raises(BatchFailedError) as exc_info:
            client.mutate(Operation(set_multi_duple_node=[alice, bob]))
        assert len(exc_info.value.failures) == 2

    def test_upsert_many_reports(self, client, alice):
        other = DupleNode("other").add_duples(Duple("username", "other", is_unique=True))
        report = client.upsert_many([alice, other])
        assert len(report.succeeded) == 2
