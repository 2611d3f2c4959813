"""In-process ledger state store.

Keeps current values and the full per-key modification history in dicts.
Commits are serialized by a lock and version-checked, so concurrent
transactions on the same key behave like an optimistic-concurrency store:
the first commit wins, the stale one raises ConcurrentModificationError.
"""

from __future__ import annotations

import threading
from collections import defaultdict
from datetime import datetime, timezone
from typing import Callable

from pharmaledger.exceptions import ConcurrentModificationError
from pharmaledger.store.base import ABSENT, BufferedTransaction, KeyModification


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryBatchRepository:
    def __init__(self, clock: Callable[[], datetime] | None = None):
        self._state: dict[str, tuple[bytes, int]] = {}
        self._history: dict[str, list[KeyModification]] = defaultdict(list)
        self._lock = threading.Lock()
        self._clock = clock or _utcnow

    def transaction(self) -> "MemoryTransaction":
        return MemoryTransaction(self)

    def __len__(self) -> int:
        return len(self._state)


class MemoryTransaction(BufferedTransaction):
    def __init__(self, repository: InMemoryBatchRepository):
        super().__init__()
        self._repo = repository

    def _load(self, key: str) -> tuple[bytes | None, int]:
        with self._repo._lock:
            value, version = self._repo._state.get(key, (None, ABSENT))
        return value, version

    def _load_all(self) -> list[tuple[str, bytes, int]]:
        with self._repo._lock:
            snapshot = list(self._repo._state.items())
        return sorted((key, value, version) for key, (value, version) in snapshot)

    def _load_history(self, key: str) -> list[KeyModification]:
        with self._repo._lock:
            return list(self._repo._history.get(key, ()))

    def _apply(self, writes: dict[str, bytes], read_versions: dict[str, int]) -> None:
        repo = self._repo
        with repo._lock:
            # Validate the whole write set before touching anything
            for key in writes:
                current = repo._state.get(key, (None, ABSENT))[1]
                expected = read_versions.get(key, current)
                if current != expected:
                    raise ConcurrentModificationError(key)

            now = repo._clock()
            for key, value in writes.items():
                version = repo._state.get(key, (None, ABSENT))[1] + 1
                repo._state[key] = (value, version)
                repo._history[key].append(
                    KeyModification(value=value, is_deleted=False, timestamp=now, version=version)
                )
