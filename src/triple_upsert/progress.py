"""
Progress reporting for batch runs.

The pool only needs something it can tell "N more items are done";
rendering a bar is left to the caller.
"""

from __future__ import annotations

import threading
import time
from typing import Any, Dict, Optional, Protocol


class ProgressTracker(Protocol):
    """Collaborator notified as a batch advances."""

    def start(self, total: Optional[int]) -> None:
        ...

    def increment(self, n: int = 1) -> None:
        ...

    def finish(self) -> None:
        ...


class ProgressCounter:
    """Thread-safe item counter with timing."""

    def __init__(self):
        self._lock = threading.Lock()
        self.total: Optional[int] = None
        self.done = 0
        self.started_at: Optional[float] = None
        self.finished_at: Optional[float] = None

    def start(self, total: Optional[int]) -> None:
        with self._lock:
            self.total = total
            self.done = 0
            self.started_at = time.time()
            self.finished_at = None

    def increment(self, n: int = 1) -> None:
        with self._lock:
            self.done += n

    def finish(self) -> None:
        with self._lock:
            self.finished_at = time.time()

    @property
    def value(self) -> int:
        with self._lock:
            return self.done

    @property
    def percent(self) -> float:
        with self._lock:
            if not self.total:
                return 0.0
            return (self.done / self.total) * 100

    @property
    def elapsed_seconds(self) -> float:
        if self.started_at is None:
            return 0.0
        end = self.finished_at or time.time()
        return end - self.started_at

    @property
    def items_per_second(self) -> float:
        elapsed = self.elapsed_seconds
        if elapsed == 0:
            return 0.0
        return self.value / elapsed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "done": self.value,
            "percent": self.percent,
            "elapsed_seconds": self.elapsed_seconds,
            "items_per_second": self.items_per_second,
        }
