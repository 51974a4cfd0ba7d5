"""
In-memory graph store with optimistic transactions.

A reference implementation of the transaction contract in
``storage.base``, used for embedded runs and tests. It provides:
- Lookup queries in the pipeline's query format
- Mutations in the pipeline's triple format (structured or as text)
- Store-assigned uids for blank placeholders
- Write-write conflict detection on commit: a transaction aborts if a
  transaction that committed after it started wrote one of its keys

Conflict keys are ``(subject, predicate)`` for every write, plus
``(predicate, value)`` for writes to upsert predicates. The second
kind is what makes two concurrent creators of the same unique value
collide, so only one of them commits. Edges take part by the uid they
point at, both in lookups and in keys.
"""

from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass
from enum import IntEnum, auto
from threading import Lock, RLock
from typing import Any, Iterable, Optional, Union

import polars as pl

from triple_upsert.literals import lexical_form, unescape_string
from triple_upsert.mutation import BLANK_PREFIX, Mutation, MutationTriple
from triple_upsert.storage.base import (
    TransactionAbortedError,
    TransactionClosedError,
    TransactionError,
)

logger = logging.getLogger(__name__)

_BLOCK_RE = re.compile(r"^\s*\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\(\s*func\s*:")
_EQ_RE = re.compile(r'eq\(<([^>]+)>,\s*"((?:[^"\\]|\\.)*)"\)')
_LITERAL_RE = re.compile(r'^"((?:[^"\\]|\\.)*)"(?:\^\^<([^>]+)>)?$')
_LINE_RE = re.compile(r"^(\S+)\s+(<[^>]+>)\s+(.+?)\s*\.\s*$")


class TransactionState(IntEnum):
    """Transaction lifecycle states."""
    ACTIVE = auto()       # In progress
    COMMITTED = auto()    # Successfully completed
    ABORTED = auto()      # Lost a write conflict
    DISCARDED = auto()    # Dropped by the caller
    FAILED = auto()       # Error during commit


@dataclass
class TransactionStats:
    """Statistics for a transaction."""
    txn_id: int
    start_ts: int
    start_time: float
    end_time: Optional[float] = None
    queries: int = 0
    mutations: int = 0
    writes: int = 0
    state: TransactionState = TransactionState.ACTIVE

    @property
    def duration_ms(self) -> float:
        """Transaction duration in milliseconds."""
        end = self.end_time or time.time()
        return (end - self.start_time) * 1000


@dataclass(frozen=True)
class StoredValue:
    """Object of a stored triple."""
    lex: str
    datatype: Optional[str] = None
    is_ref: bool = False

    def to_python(self) -> Any:
        if self.is_ref:
            return self.lex
        if self.datatype == "xs:int":
            return int(self.lex)
        if self.datatype == "xs:float":
            return float(self.lex)
        if self.datatype == "xs:boolean":
            return self.lex == "true"
        return self.lex


def parse_triple_line(line: str) -> MutationTriple:
    """Split one ``subject predicate object .`` line into its terms."""
    match = _LINE_RE.match(line.strip())
    if not match:
        raise ValueError(f"Malformed triple line: {line!r}")
    return MutationTriple(match.group(1), match.group(2), match.group(3))


def parse_nquads(text: str) -> list[MutationTriple]:
    """Parse a mutation payload, skipping blank lines and comments."""
    triples = []
    for i, line in enumerate(text.splitlines(), 1):
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        try:
            triples.append(parse_triple_line(line))
        except ValueError as e:
            raise ValueError(f"Error parsing line {i}: {e}") from e
    return triples


class MemoryTransaction:
    """
    A single optimistic transaction against a MemoryGraphStore.

    Usage:
        with store.new_txn() as txn:
            assigned = txn.mutate(mutation)
            txn.commit()
        # Discarded on exit if not committed
    """

    def __init__(self, store: "MemoryGraphStore", txn_id: int, start_ts: int):
        self._store = store
        self._txn_id = txn_id
        self._state = TransactionState.ACTIVE
        self._lock = Lock()

        # Buffered writes, applied on commit
        self._writes: list[tuple[str, str, StoredValue]] = []
        self._keys: set[tuple] = set()
        self._labels: dict[str, str] = {}

        self._stats = TransactionStats(
            txn_id=txn_id,
            start_ts=start_ts,
            start_time=time.time(),
        )

    @property
    def txn_id(self) -> int:
        return self._txn_id

    @property
    def start_ts(self) -> int:
        return self._stats.start_ts

    @property
    def state(self) -> TransactionState:
        return self._state

    @property
    def stats(self) -> TransactionStats:
        return self._stats

    def _check_active(self):
        """Ensure transaction is active."""
        if self._state != TransactionState.ACTIVE:
            raise TransactionClosedError(
                f"Transaction {self._txn_id} is {self._state.name}, not ACTIVE"
            )

    def _finish(self, state: TransactionState) -> None:
        self._state = state
        self._stats.state = state
        self._stats.end_time = time.time()

    def query(self, text: str) -> str:
        """Run a lookup query; returns the JSON response text."""
        with self._lock:
            self._check_active()
            self._stats.queries += 1
            return self._store._run_query(text)

    def mutate(self, mutation: Union[Mutation, str]) -> dict[str, str]:
        """
        Buffer a mutation.

        Args:
            mutation: A Mutation, or its text payload

        Returns:
            Uids assigned to blank placeholders first seen in this call
        """
        triples = parse_nquads(mutation) if isinstance(mutation, str) else mutation.triples

        with self._lock:
            self._check_active()
            self._stats.mutations += 1

            assigned: dict[str, str] = {}
            for triple in triples:
                subject = self._resolve_node(triple.subject, assigned)
                predicate = triple.predicate[1:-1]
                value = self._parse_object(triple.object, assigned)

                self._writes.append((subject, predicate, value))
                self._keys.add(("sp", subject, predicate))
                if self._store._is_upsert_predicate(predicate):
                    self._keys.add(("pv", predicate, value.lex))
                self._stats.writes += 1

            return assigned

    def _resolve_node(self, term: str, assigned: dict[str, str]) -> str:
        if term.startswith(BLANK_PREFIX):
            label = term[len(BLANK_PREFIX):]
            if label not in self._labels:
                uid = self._store._allocate_uid()
                self._labels[label] = uid
                assigned[label] = uid
            return self._labels[label]

        if term.startswith("<") and term.endswith(">"):
            uid = term[1:-1]
            if not self._store._has_node(uid) and uid not in self._labels.values():
                raise TransactionError(f"Unknown uid {uid} in transaction {self._txn_id}")
            return uid

        raise TransactionError(f"Invalid node reference {term!r}")

    def _parse_object(self, term: str, assigned: dict[str, str]) -> StoredValue:
        if term.startswith("<") or term.startswith(BLANK_PREFIX):
            return StoredValue(lex=self._resolve_node(term, assigned), is_ref=True)

        match = _LITERAL_RE.match(term)
        if not match:
            raise TransactionError(f"Invalid object {term!r}")
        return StoredValue(lex=unescape_string(match.group(1)), datatype=match.group(2))

    def commit(self) -> None:
        """
        Commit buffered writes.

        Raises:
            TransactionAbortedError: A transaction that committed after this
                one started wrote one of the same keys.
        """
        with self._lock:
            self._check_active()
            try:
                self._store._commit(self)
            except TransactionAbortedError:
                self._finish(TransactionState.ABORTED)
                raise
            except Exception as e:
                self._finish(TransactionState.FAILED)
                raise TransactionError(f"Transaction commit failed: {e}") from e
            self._finish(TransactionState.COMMITTED)

    def discard(self) -> None:
        """Drop buffered writes. Safe to call after commit or abort."""
        with self._lock:
            if self._state != TransactionState.ACTIVE:
                return
            self._writes.clear()
            self._keys.clear()
            self._finish(TransactionState.DISCARDED)

    def __enter__(self) -> "MemoryTransaction":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.discard()
        return False


class MemoryGraphStore:
    """
    Thread-safe in-memory graph of uid -> {predicate: value}.

    Example:
        store = MemoryGraphStore()
        batch = UpsertBatch(store.new_txn)
        batch.run(nodes)
        store.triples()  # polars DataFrame
    """

    def __init__(self, upsert_predicates: Optional[Iterable[str]] = None):
        """
        Args:
            upsert_predicates: Predicates whose values take part in conflict
                detection (None = every predicate)
        """
        self._lock = RLock()
        self._nodes: dict[str, dict[str, StoredValue]] = {}
        self._next_uid = 1
        self._next_txn_id = 1
        self._commit_ts = 0
        self._key_versions: dict[tuple, int] = {}
        self._upsert_predicates = set(upsert_predicates) if upsert_predicates is not None else None

        self._queries = 0
        self._commits = 0
        self._aborts = 0

    def new_txn(self) -> MemoryTransaction:
        """Begin a new transaction reading at the current commit timestamp."""
        with self._lock:
            txn_id = self._next_txn_id
            self._next_txn_id += 1
            return MemoryTransaction(self, txn_id, self._commit_ts)

    def _allocate_uid(self) -> str:
        with self._lock:
            uid = f"0x{self._next_uid:x}"
            self._next_uid += 1
            return uid

    def _has_node(self, uid: str) -> bool:
        with self._lock:
            return uid in self._nodes

    def _is_upsert_predicate(self, predicate: str) -> bool:
        return self._upsert_predicates is None or predicate in self._upsert_predicates

    def _run_query(self, text: str) -> str:
        block_match = _BLOCK_RE.match(text)
        filters = [(p, unescape_string(v)) for p, v in _EQ_RE.findall(text)]
        if not block_match or not filters:
            raise TransactionError(f"Unsupported query: {text!r}")

        with self._lock:
            self._queries += 1
            matches = [
                uid for uid, preds in self._nodes.items()
                if all(
                    p in preds and preds[p].lex == v
                    for p, v in filters
                )
            ]

        return json.dumps({block_match.group(1): [{"uid": uid} for uid in matches]})

    def _commit(self, txn: MemoryTransaction) -> None:
        with self._lock:
            conflicts = [
                key for key in txn._keys
                if self._key_versions.get(key, 0) > txn.start_ts
            ]
            if conflicts:
                self._aborts += 1
                logger.debug(f"Transaction {txn.txn_id} aborted on {len(conflicts)} conflicting keys")
                raise TransactionAbortedError(txn.txn_id, conflicts)

            self._commit_ts += 1
            for subject, predicate, value in txn._writes:
                self._nodes.setdefault(subject, {})[predicate] = value
            for key in txn._keys:
                self._key_versions[key] = self._commit_ts
            self._commits += 1

    # =========================================================================
    # Inspection
    # =========================================================================

    def node(self, uid: str) -> dict[str, Any]:
        """Predicates of one node as Python values (empty if unknown)."""
        with self._lock:
            return {p: v.to_python() for p, v in self._nodes.get(uid, {}).items()}

    def find(self, predicate: str, value: Any) -> list[str]:
        """Uids of nodes whose ``predicate`` has lexical form ``str(value)``."""
        lex = lexical_form(value)
        with self._lock:
            return [
                uid for uid, preds in self._nodes.items()
                if predicate in preds and preds[predicate].lex == lex
            ]

    def triples(self) -> pl.DataFrame:
        """All committed triples as a DataFrame."""
        with self._lock:
            rows = [
                {
                    "subject": uid,
                    "predicate": predicate,
                    "object": value.lex,
                    "datatype": "uid" if value.is_ref else value.datatype,
                }
                for uid, preds in self._nodes.items()
                for predicate, value in preds.items()
            ]
        schema = {"subject": pl.Utf8, "predicate": pl.Utf8, "object": pl.Utf8, "datatype": pl.Utf8}
        return pl.DataFrame(rows, schema=schema)

    def drop_all(self) -> None:
        """Remove every node; uids are not reused."""
        with self._lock:
            self._nodes.clear()
            self._key_versions.clear()

    def stats(self) -> dict:
        with self._lock:
            return {
                "nodes": len(self._nodes),
                "triples": sum(len(p) for p in self._nodes.values()),
                "queries": self._queries,
                "commits": self._commits,
                "aborts": self._aborts,
                "commit_ts": self._commit_ts,
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._nodes)
