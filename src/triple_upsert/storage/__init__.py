"""
Store side of the pipeline.

Provides:
- The transaction contract the pipeline writes through
- An in-memory store implementing it with optimistic conflict detection
"""

from triple_upsert.storage.base import (
    GraphTransaction,
    QueryResponse,
    TransactionAbortedError,
    TransactionClosedError,
    TransactionError,
    TransactionFactory,
)
from triple_upsert.storage.transactions import (
    MemoryGraphStore,
    MemoryTransaction,
    StoredValue,
    TransactionState,
    TransactionStats,
    parse_nquads,
    parse_triple_line,
)

__all__ = [
    "GraphTransaction",
    "QueryResponse",
    "TransactionError",
    "TransactionAbortedError",
    "TransactionClosedError",
    "TransactionFactory",
    "MemoryGraphStore",
    "MemoryTransaction",
    "StoredValue",
    "TransactionState",
    "TransactionStats",
    "parse_nquads",
    "parse_triple_line",
]
