"""
Per-batch UID cache.

Maps a node identifier to the UID it resolved to, so repeated or
cross-referenced identifiers in one batch skip the store. One lock guards
the whole map; workers hold it only for the lookup and the write-back,
never while talking to the store.
"""

from __future__ import annotations

import threading
from typing import Mapping, Optional

from triple_upsert.models import UID


class UIDCache:
    """
    Thread-safe identifier -> UID map scoped to one batch run.

    Example:
        cache = UIDCache()
        uid = cache.get("alice")
        if uid is None:
            uid = cache.put_if_absent("alice", resolve("alice"))
    """

    def __init__(self, seed: Optional[Mapping[str, UID]] = None):
        self._lock = threading.Lock()
        self._uids: dict[str, UID] = {}
        self._hits = 0
        self._misses = 0
        if seed:
            for identifier, uid in seed.items():
                if identifier:
                    self._uids[identifier] = uid

    def get(self, identifier: str) -> Optional[UID]:
        """Return the cached UID for ``identifier`` or None."""
        if not identifier:
            return None
        with self._lock:
            uid = self._uids.get(identifier)
            if uid is None:
                self._misses += 1
            else:
                self._hits += 1
            return uid

    def put_if_absent(self, identifier: str, uid: UID) -> UID:
        """
        Cache ``uid`` unless another worker already wrote one.

        Returns:
            The UID that is cached after the call.
        """
        if not identifier:
            return uid
        with self._lock:
            return self._uids.setdefault(identifier, uid)

    def snapshot(self) -> dict[str, UID]:
        """Copy of the current map."""
        with self._lock:
            return dict(self._uids)

    def stats(self) -> dict[str, int]:
        with self._lock:
            return {
                "entries": len(self._uids),
                "hits": self._hits,
                "misses": self._misses,
            }

    def __contains__(self, identifier: object) -> bool:
        with self._lock:
            return identifier in self._uids

    def __len__(self) -> int:
        with self._lock:
            return len(self._uids)
