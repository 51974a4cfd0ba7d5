"""
Shared fixtures and fakes for the pipeline tests.
"""

import io
import json
import threading

import pytest

from triple_upsert.models import Duple, DupleNode
from triple_upsert.storage.base import TransactionAbortedError
from triple_upsert.storage.transactions import MemoryGraphStore


class FakeTransaction:
    """
    Scripted stand-in for a store transaction.

    Every call is recorded on the owning FakeStore so tests can count
    queries, mutations and commits across retries.
    """

    def __init__(self, store: "FakeStore"):
        self.store = store
        self.discarded = False

    def query(self, text):
        with self.store.lock:
            self.store.queries.append(text)
            count = len(self.store.queries)
        if self.store.query_error is not None and count >= self.store.fail_query_on:
            raise self.store.query_error
        return self.store.response

    def mutate(self, mutation):
        with self.store.lock:
            self.store.mutations.append(mutation)
            self.store.next_uid += 1
            uid = f"0x{self.store.next_uid:x}"
        if mutation.blank_label is None:
            return {}
        return {mutation.blank_label: uid}

    def commit(self):
        with self.store.lock:
            self.store.commits += 1
            abort = self.store.aborts_left > 0
            if abort:
                self.store.aborts_left -= 1
        if abort:
            raise TransactionAbortedError()

    def discard(self):
        self.discarded = True
        with self.store.lock:
            self.store.discards += 1


class FakeStore:
    """Factory of FakeTransactions with shared counters."""

    def __init__(self, response=None, aborts=0, query_error=None, fail_query_on=1):
        self.lock = threading.Lock()
        self.response = response if response is not None else json.dumps({"q": []})
        self.aborts_left = aborts
        self.query_error = query_error
        self.fail_query_on = fail_query_on
        self.queries = []
        self.mutations = []
        self.commits = 0
        self.discards = 0
        self.next_uid = 0
        self.txns = []

    def new_txn(self):
        txn = FakeTransaction(self)
        self.txns.append(txn)
        return txn


class FailingBuilder(io.StringIO):
    """StringIO whose Nth write raises OSError."""

    def __init__(self, fail_on: int):
        super().__init__()
        self.fail_on = fail_on
        self.writes = 0

    def write(self, text):
        self.writes += 1
        if self.writes == self.fail_on:
            raise OSError(f"write {self.writes} failed")
        return super().write(text)


@pytest.fixture
def fake_store():
    """Fake store with no matches and no conflicts."""
    return FakeStore()


@pytest.fixture
def memory_store():
    """Empty in-memory graph store."""
    return MemoryGraphStore()


@pytest.fixture
def alice():
    """Node with one unique predicate and one plain attribute."""
    return DupleNode("alice").add_duples(
        Duple("username", "alice", is_unique=True),
        Duple("age", 30),
    )


@pytest.fixture
def bob():
    return DupleNode("bob").add_duples(
        Duple("username", "bob", is_unique=True),
        Duple("age", 25),
    )
