"""Ledger state store contract and the shared transaction machinery.

The core talks to the store through one ``LedgerTransaction`` per public
operation:

    with repository.transaction() as tx:
        raw = tx.get("B1")
        tx.put("B1", payload)

Reads go straight to the store (reads-your-writes for keys already put in
this transaction).  Writes are buffered and applied atomically when the
block exits cleanly; an exception inside the block discards them.

Every key read is recorded with the version it had.  On commit each written
key must still be at that version, otherwise the whole transaction is
rejected with ConcurrentModificationError.  Two invocations racing on the
same batch therefore never lose an update silently: the loser must retry
from a fresh read.  Keys written without being read first (blind writes)
are not version-checked.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from pharmaledger.store.selector import compile_selector

logger = logging.getLogger(__name__)

# Version of a key that does not exist yet
ABSENT = 0


@dataclass(frozen=True)
class KeyModification:
    """One historical value of a key, oldest first."""
    value: bytes | None
    is_deleted: bool
    timestamp: datetime
    version: int


class LedgerTransaction(Protocol):
    def get(self, key: str) -> bytes | None: ...

    def put(self, key: str, value: bytes) -> None: ...

    def scan_all(self) -> list[tuple[str, bytes]]: ...

    def query(self, selector: dict) -> list[tuple[str, bytes]]: ...

    def history_of(self, key: str) -> list[KeyModification]: ...


class BatchRepository(Protocol):
    def transaction(self) -> "BufferedTransaction": ...


class BufferedTransaction:
    """Read-set tracking and write buffering shared by every adapter.

    Subclasses supply the raw store access:
      _load(key)         → (value | None, version)
      _load_all()        → [(key, value, version)] sorted by key
      _load_history(key) → [KeyModification] oldest first
      _apply(writes, read_versions)   atomic, version-checked commit
      _discard()         release resources without applying
    """

    def __init__(self) -> None:
        self._writes: dict[str, bytes] = {}
        self._read_versions: dict[str, int] = {}
        self._closed = False

    # ── Context manager ─────────────────────────────────────

    def __enter__(self) -> "BufferedTransaction":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc_type is None:
            self.commit()
        else:
            self.rollback()
        return False

    def commit(self) -> None:
        self._ensure_open()
        self._closed = True
        if not self._writes:
            self._discard()
            return
        self._apply(dict(self._writes), dict(self._read_versions))
        logger.debug(f"Committed {len(self._writes)} key(s): {sorted(self._writes)}")

    def rollback(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._writes:
            logger.debug(f"Discarded {len(self._writes)} buffered write(s)")
        self._discard()

    # ── Contract ────────────────────────────────────────────

    def get(self, key: str) -> bytes | None:
        self._ensure_open()
        if key in self._writes:
            return self._writes[key]
        value, version = self._load(key)
        self._read_versions.setdefault(key, version)
        return value

    def put(self, key: str, value: bytes) -> None:
        self._ensure_open()
        if not isinstance(value, (bytes, bytearray)):
            raise TypeError("ledger values must be bytes")
        self._writes[key] = bytes(value)

    def scan_all(self) -> list[tuple[str, bytes]]:
        self._ensure_open()
        merged: dict[str, bytes] = {}
        for key, value, version in self._load_all():
            self._read_versions.setdefault(key, version)
            merged[key] = value
        merged.update(self._writes)
        return sorted(merged.items())

    def query(self, selector: dict) -> list[tuple[str, bytes]]:
        predicate = compile_selector(selector)
        results = []
        for key, value in self.scan_all():
            try:
                document = json.loads(value)
            except ValueError:
                # Non-JSON values can never satisfy a selector
                continue
            if predicate(document):
                results.append((key, value))
        return results

    def history_of(self, key: str) -> list[KeyModification]:
        self._ensure_open()
        return self._load_history(key)

    # ── Adapter hooks ───────────────────────────────────────

    def _load(self, key: str) -> tuple[bytes | None, int]:
        raise NotImplementedError

    def _load_all(self) -> list[tuple[str, bytes, int]]:
        raise NotImplementedError

    def _load_history(self, key: str) -> list[KeyModification]:
        raise NotImplementedError

    def _apply(self, writes: dict[str, bytes], read_versions: dict[str, int]) -> None:
        raise NotImplementedError

    def _discard(self) -> None:
        pass

    def _ensure_open(self) -> None:
        if self._closed:
            raise RuntimeError("transaction already committed or rolled back")
