"""
Transaction contract the pipeline expects from a graph store.

The pipeline depends only on four operations: query, mutate, commit and
discard. Conflicts on commit are signalled with TransactionAbortedError
and are retried by the caller rather than treated as failures.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable, Mapping, Protocol, Union

if TYPE_CHECKING:
    from triple_upsert.mutation import Mutation


# Raw lookup response: JSON text or an already-decoded mapping
QueryResponse = Union[str, bytes, Mapping[str, Any]]


class TransactionError(Exception):
    """Base class for store transaction failures."""
    pass


class TransactionAbortedError(TransactionError):
    """Raised on commit when a concurrent writer touched the same keys."""

    def __init__(self, txn_id: Any = None, conflicts: Any = None):
        self.txn_id = txn_id
        self.conflicts = list(conflicts or [])
        message = "Transaction has been aborted. Please retry"
        if txn_id is not None:
            message = f"Transaction {txn_id} has been aborted. Please retry"
        super().__init__(message)


class TransactionClosedError(TransactionError):
    """Raised when a finished transaction is used again."""
    pass


class GraphTransaction(Protocol):
    """A single store transaction. Not safe for concurrent use."""

    def query(self, text: str) -> QueryResponse:
        ...

    def mutate(self, mutation: "Mutation") -> dict[str, str]:
        """Apply a mutation; returns blank label -> assigned uid."""
        ...

    def commit(self) -> None:
        ...

    def discard(self) -> None:
        ...


TransactionFactory = Callable[[], GraphTransaction]
