"""
Worker pool that drives nodes through the upsert pipeline.

Provides:
- upsert_node: cache lookup, resolve, encode, mutate and commit for one
  node, retrying on commit conflicts with a fresh transaction
- mutation_worker / launch_workers: fixed-size thread pool over a shared
  input queue
- UpsertBatch: one batch run with its own UID cache, progress and
  cancellation
- BatchReport: per-item outcomes for the caller to judge

Cancellation is cooperative. Workers check the token when they dequeue an
item and again right before mutating; an in-flight commit always
finishes.
"""

from __future__ import annotations

import io
import logging
import threading
import time
from collections.abc import Sized
from dataclasses import dataclass, field
from enum import Enum
from queue import Empty, Queue
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from triple_upsert.cache import UIDCache
from triple_upsert.config import ErrorPolicy, RetryConfig, UpsertConfig
from triple_upsert.models import UID, DupleNode
from triple_upsert.mutation import encode_mutation
from triple_upsert.progress import ProgressCounter, ProgressTracker
from triple_upsert.query import query_uid
from triple_upsert.storage.base import (
    TransactionAbortedError,
    TransactionError,
    TransactionFactory,
)

logger = logging.getLogger(__name__)

# Tells a worker the input is closed
_CLOSE = object()


class OutcomeStatus(str, Enum):
    """Terminal state of one item."""
    CREATED = "created"    # New node committed
    UPDATED = "updated"    # Matched an existing node, committed
    CACHED = "cached"      # Identifier already resolved in this batch
    FAILED = "failed"      # Terminal error
    SKIPPED = "skipped"    # Drained after cancellation


class BatchCancelledError(Exception):
    """Raised when cancellation cuts short an item's conflict retries."""
    pass


class ConflictRetryError(Exception):
    """Raised when an item keeps conflicting past the retry limit."""

    def __init__(self, identifier: str, attempts: int):
        self.identifier = identifier
        self.attempts = attempts
        super().__init__(
            f"Gave up on {identifier!r} after {attempts} conflicting commits"
        )


class BatchFailedError(Exception):
    """Raised by BatchReport.raise_for_errors when any item failed."""

    def __init__(self, failures: List["ItemOutcome"]):
        self.failures = failures
        first = failures[0]
        super().__init__(
            f"{len(failures)} item(s) failed; first: "
            f"{first.identifier!r}: {first.error}"
        )


class CancellationToken:
    """Token for cooperative batch cancellation."""

    def __init__(self):
        self._cancelled = threading.Event()

    def cancel(self):
        """Request cancellation."""
        self._cancelled.set()

    def is_cancelled(self) -> bool:
        """Check if cancellation was requested."""
        return self._cancelled.is_set()


@dataclass
class ItemOutcome:
    """Result of pushing one node through the pipeline."""
    index: int
    identifier: str
    status: OutcomeStatus
    uid: Optional[UID] = None
    error: Optional[BaseException] = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.status in (OutcomeStatus.CREATED, OutcomeStatus.UPDATED, OutcomeStatus.CACHED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "identifier": self.identifier,
            "status": self.status.value,
            "uid": self.uid.value if self.uid else None,
            "is_new": self.uid.is_new if self.uid else None,
            "error": str(self.error) if self.error else None,
            "attempts": self.attempts,
        }


# Per-item mutation function run by workers
MutateFunc = Callable[["WorkerPackage", int, DupleNode], ItemOutcome]


@dataclass(frozen=True)
class WorkerPackage:
    """
    Everything a worker needs, built once per batch.

    Shared read-only across workers except for the cache, the progress
    tracker and the token, which are safe for concurrent use.
    """
    txn_factory: TransactionFactory
    cache: UIDCache
    mutate: MutateFunc
    logger: logging.Logger
    progress: ProgressTracker
    token: CancellationToken
    error_policy: ErrorPolicy = ErrorPolicy.BEST_EFFORT
    retry: RetryConfig = field(default_factory=RetryConfig)


def upsert_node(pkg: WorkerPackage, index: int, node: DupleNode) -> ItemOutcome:
    """
    Find-or-create one node and commit it.

    A cache hit returns straight away without touching the store. Otherwise
    every attempt uses a fresh transaction: look up the uid, encode, mutate,
    commit. A conflicting commit is discarded and the whole attempt is
    repeated, so the lookup sees what the competing writer committed.

    Raises:
        QueryError: Lookup failed, or the unique predicates were ambiguous.
        ConflictRetryError: ``pkg.retry.max_retries`` was exceeded.
        BatchCancelledError: The batch was cancelled while retrying after a
            conflict; chained to the last TransactionAbortedError.
        TransactionError: Any non-conflict store failure.
    """
    cached = pkg.cache.get(node.identifier)
    if cached is not None:
        pkg.logger.debug(f"Cache hit for {node.identifier!r}: {cached.value}")
        return ItemOutcome(index, node.identifier, OutcomeStatus.CACHED, uid=cached)

    attempts = 0
    last_abort: Optional[TransactionAbortedError] = None
    while True:
        if pkg.token.is_cancelled():
            return _cancelled(index, node, attempts, last_abort)

        attempts += 1
        txn = pkg.txn_factory()
        try:
            existing = query_uid(txn, io.StringIO(), node)
            uid = UID(existing) if existing else None
            mutation = encode_mutation(node, uid)

            if pkg.token.is_cancelled():
                return _cancelled(index, node, attempts, last_abort)

            assigned = txn.mutate(mutation)
            txn.commit()
        except TransactionAbortedError as err:
            last_abort = err
            max_retries = pkg.retry.max_retries
            if max_retries is not None and attempts > max_retries:
                raise ConflictRetryError(node.identifier, attempts) from err
            pkg.logger.debug(
                f"Commit conflict for {node.identifier!r} on attempt {attempts}, retrying"
            )
            if pkg.retry.backoff_seconds:
                time.sleep(pkg.retry.backoff_seconds * attempts)
            continue
        finally:
            txn.discard()

        if uid is None:
            new_uid = (assigned or {}).get(mutation.blank_label)
            if not new_uid:
                raise TransactionError(
                    f"Store assigned no uid to _:{mutation.blank_label} for {node.identifier!r}"
                )
            uid = UID(new_uid, is_new=True)
            status = OutcomeStatus.CREATED
        else:
            status = OutcomeStatus.UPDATED

        cached = pkg.cache.put_if_absent(node.identifier, uid)
        if cached != uid:
            pkg.logger.debug(
                f"{node.identifier!r} committed as {uid.value} but the cache "
                f"already holds {cached.value}"
            )
        return ItemOutcome(index, node.identifier, status, uid=uid, attempts=attempts)


def _cancelled(
    index: int,
    node: DupleNode,
    attempts: int,
    last_abort: Optional[TransactionAbortedError],
) -> ItemOutcome:
    # An item that already lost a commit must not look untouched
    if last_abort is not None:
        raise BatchCancelledError(
            f"Cancelled while retrying {node.identifier!r} after a conflicting commit"
        ) from last_abort
    return ItemOutcome(index, node.identifier, OutcomeStatus.SKIPPED, attempts=attempts)


def mutation_worker(pkg: WorkerPackage, read: Queue, results: Queue) -> None:
    """
    Process items from ``read`` until the close marker arrives.

    Emits exactly one outcome per item on ``results``. Once the token is
    cancelled, remaining items are drained as SKIPPED so the producer never
    blocks on a full queue.
    """
    while True:
        item = read.get()
        if item is _CLOSE:
            return

        index, node = item
        if pkg.token.is_cancelled():
            outcome = ItemOutcome(index, node.identifier, OutcomeStatus.SKIPPED)
        else:
            pkg.logger.debug(f"Upserting item {index} ({node.identifier!r})")
            try:
                outcome = pkg.mutate(pkg, index, node)
            except Exception as err:
                pkg.logger.warning(f"Upsert of item {index} ({node.identifier!r}) failed: {err}")
                outcome = ItemOutcome(index, node.identifier, OutcomeStatus.FAILED, error=err)
                if pkg.error_policy == ErrorPolicy.FAIL_FAST:
                    pkg.token.cancel()

        results.put(outcome)
        pkg.progress.increment()


def launch_workers(
    count: int,
    pkg: WorkerPackage,
    read: Queue,
    results: Queue,
) -> List[threading.Thread]:
    """Start ``count`` worker threads; zero starts nothing."""
    threads = []
    for i in range(count):
        thread = threading.Thread(
            target=mutation_worker,
            args=(pkg, read, results),
            name=f"upsert-worker-{i}",
            daemon=True,
        )
        thread.start()
        threads.append(thread)
    return threads


@dataclass
class BatchReport:
    """
    Outcome of a batch run.

    ``outcomes`` is in input order; ``failures`` in the order they
    happened. Whether a failure fails the batch is up to the caller.
    """
    outcomes: List[ItemOutcome] = field(default_factory=list)
    failures: List[ItemOutcome] = field(default_factory=list)
    cancelled: bool = False
    duration_ms: float = 0.0
    uids: Dict[str, UID] = field(default_factory=dict)

    def by_status(self, status: OutcomeStatus) -> List[ItemOutcome]:
        return [o for o in self.outcomes if o.status == status]

    @property
    def succeeded(self) -> List[ItemOutcome]:
        return [o for o in self.outcomes if o.ok]

    @property
    def failed(self) -> List[ItemOutcome]:
        return self.by_status(OutcomeStatus.FAILED)

    @property
    def skipped(self) -> List[ItemOutcome]:
        return self.by_status(OutcomeStatus.SKIPPED)

    @property
    def errors(self) -> List[BaseException]:
        return [o.error for o in self.failures if o.error is not None]

    @property
    def first_error(self) -> Optional[BaseException]:
        return self.failures[0].error if self.failures else None

    def counts(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in OutcomeStatus}
        for outcome in self.outcomes:
            counts[outcome.status.value] += 1
        return counts

    def raise_for_errors(self) -> None:
        """Raise BatchFailedError if any item failed."""
        if self.failures:
            raise BatchFailedError(self.failures)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "counts": self.counts(),
            "cancelled": self.cancelled,
            "duration_ms": self.duration_ms,
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


class UpsertBatch:
    """
    One batch run: a fresh UID cache, worker pool and cancellation token.

    Example:
        batch = UpsertBatch(store.new_txn, UpsertConfig(max_workers=8))
        report = batch.run(nodes)
        report.raise_for_errors()

    A batch runs once; its cache is discarded with it.
    """

    def __init__(
        self,
        txn_factory: TransactionFactory,
        config: Optional[UpsertConfig] = None,
        logger: Optional[logging.Logger] = None,
        progress: Optional[ProgressTracker] = None,
        seed: Optional[Mapping[str, UID]] = None,
        mutate: MutateFunc = upsert_node,
    ):
        """
        Args:
            txn_factory: Returns a new store transaction per call
            config: Pool settings (defaults if None)
            logger: Logger for pipeline events
            progress: Progress collaborator (a ProgressCounter if None)
            seed: Identifier -> UID pairs known before the run starts
            mutate: Per-item function the workers call
        """
        self.config = config or UpsertConfig()
        self.config.validate_or_raise()
        self._txn_factory = txn_factory
        self._logger = logger or logging.getLogger(__name__)
        self.progress = progress or ProgressCounter()
        self.cache = UIDCache(seed)
        self.token = CancellationToken()
        self._mutate = mutate
        self._ran = False
        self._lock = threading.Lock()

    def cancel(self) -> None:
        """Stop feeding and processing items; in-flight commits finish."""
        if not self.token.is_cancelled():
            self._logger.info("Batch cancellation requested")
        self.token.cancel()

    def _worker_count(self, nodes: Iterable[DupleNode]) -> tuple[int, Optional[int]]:
        if isinstance(nodes, Sized):
            total = len(nodes)
            return min(self.config.max_workers, total), total
        return self.config.max_workers, None

    def run(self, nodes: Iterable[DupleNode]) -> BatchReport:
        """
        Push every node through the pipeline.

        Args:
            nodes: A collection or a stream of nodes

        Returns:
            BatchReport with one outcome per item that entered the queue
        """
        with self._lock:
            if self._ran:
                raise RuntimeError("UpsertBatch can only be run once")
            self._ran = True

        workers, total = self._worker_count(nodes)
        start_time = time.time()
        self._logger.info(f"Starting batch: {total if total is not None else 'streamed'} items, {workers} workers")

        pkg = WorkerPackage(
            txn_factory=self._txn_factory,
            cache=self.cache,
            mutate=self._mutate,
            logger=self._logger,
            progress=self.progress,
            token=self.token,
            error_policy=self.config.error_policy,
            retry=self.config.retry,
        )
        read: Queue = Queue(maxsize=self.config.queue_size)
        results: Queue = Queue()

        self.progress.start(total)
        threads = launch_workers(workers, pkg, read, results)
        try:
            if threads:
                for index, node in enumerate(nodes):
                    if self.token.is_cancelled():
                        break
                    read.put((index, node))
        finally:
            for _ in threads:
                read.put(_CLOSE)
            for thread in threads:
                thread.join()
            self.progress.finish()

        failures: List[ItemOutcome] = []
        outcomes: List[ItemOutcome] = []
        while True:
            try:
                outcome = results.get_nowait()
            except Empty:
                break
            outcomes.append(outcome)
            if outcome.status == OutcomeStatus.FAILED:
                failures.append(outcome)
        outcomes.sort(key=lambda o: o.index)

        report = BatchReport(
            outcomes=outcomes,
            failures=failures,
            cancelled=self.token.is_cancelled(),
            duration_ms=(time.time() - start_time) * 1000,
            uids=self.cache.snapshot(),
        )

        if report.cancelled:
            self._logger.info(f"Batch cancelled after {len(outcomes)} items")
        self._logger.info(f"Batch finished in {report.duration_ms:.1f}ms: {report.counts()}")
        return report
