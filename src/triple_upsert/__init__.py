"""
triple-upsert: concurrent find-or-create writes of entities into a graph store.

Entities are described as DupleNodes; nodes matched by their unique
attributes are updated in place instead of duplicated.
"""

__version__ = "0.1.0"

from triple_upsert.models import DataType, Duple, DupleNode, UID
from triple_upsert.query import (
    EMPTY_QUERY,
    AmbiguousMatchError,
    MalformedMatchError,
    QueryError,
    create_query,
    execute_query,
    find_decoded_uid,
    query_uid,
)
from triple_upsert.mutation import Mutation, MutationTriple, encode_mutation
from triple_upsert.cache import UIDCache
from triple_upsert.config import (
    ConfigValidationError,
    ErrorPolicy,
    RetryConfig,
    UpsertConfig,
    create_default_config,
)
from triple_upsert.pool import (
    BatchFailedError,
    BatchReport,
    CancellationToken,
    ConflictRetryError,
    ItemOutcome,
    OutcomeStatus,
    UpsertBatch,
    upsert_node,
)
from triple_upsert.progress import ProgressCounter, ProgressTracker
from triple_upsert.storage import (
    MemoryGraphStore,
    TransactionAbortedError,
    TransactionError,
)
from triple_upsert.client import Client, Operation

__all__ = [
    # Model
    "DataType",
    "Duple",
    "DupleNode",
    "UID",
    # Lookup
    "EMPTY_QUERY",
    "QueryError",
    "AmbiguousMatchError",
    "MalformedMatchError",
    "create_query",
    "execute_query",
    "find_decoded_uid",
    "query_uid",
    # Mutation
    "Mutation",
    "MutationTriple",
    "encode_mutation",
    # Pool
    "UIDCache",
    "UpsertBatch",
    "BatchReport",
    "BatchFailedError",
    "CancellationToken",
    "ConflictRetryError",
    "ItemOutcome",
    "OutcomeStatus",
    "upsert_node",
    "ProgressCounter",
    "ProgressTracker",
    # Configuration
    "UpsertConfig",
    "RetryConfig",
    "ErrorPolicy",
    "ConfigValidationError",
    "create_default_config",
    # Store
    "MemoryGraphStore",
    "TransactionError",
    "TransactionAbortedError",
    # Client
    "Client",
    "Operation",
]
