"""SQLAlchemy-backed ledger state store.

Current values live in ``ledger_state``; every committed write appends a
row to ``ledger_history``.  A transaction runs in a single database
session and commits with compare-and-set statements:

  - key read as absent  → INSERT (primary key collision = stale writer)
  - key read at version N → UPDATE ... WHERE version = N (0 rows = stale writer)

Either stale case rolls the whole session back and raises
ConcurrentModificationError.  Any other SQLAlchemy failure surfaces as
StoreError with the original exception chained.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable, Iterator

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from pharmaledger.exceptions import ConcurrentModificationError, StoreError
from pharmaledger.models.ledger_history import LedgerHistory
from pharmaledger.models.ledger_state import LedgerState
from pharmaledger.store.base import ABSENT, BufferedTransaction, KeyModification

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime) -> datetime:
    # SQLite drops tzinfo on DateTime(timezone=True) columns
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


@contextmanager
def _store_errors(action: str, key: str | None = None) -> Iterator[None]:
    try:
        yield
    except OperationalError as exc:
        logger.error(f"Ledger store unavailable during {action}: {exc}")
        raise StoreError(f"Ledger store unavailable during {action}", key=key) from exc
    except SQLAlchemyError as exc:
        logger.error(f"Ledger store error during {action}: {exc}")
        raise StoreError(f"Ledger store error during {action}", key=key) from exc


class SqlBatchRepository:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        clock: Callable[[], datetime] | None = None,
    ):
        self._session_factory = session_factory
        self._clock = clock or _utcnow

    def transaction(self) -> "SqlTransaction":
        return SqlTransaction(self._session_factory(), self._clock)


class SqlTransaction(BufferedTransaction):
    def __init__(self, session: Session, clock: Callable[[], datetime]):
        super().__init__()
        self._session = session
        self._clock = clock

    def _load(self, key: str) -> tuple[bytes | None, int]:
        with _store_errors("get", key):
            row = self._session.execute(
                select(LedgerState.value, LedgerState.version).where(LedgerState.key == key)
            ).one_or_none()
        if row is None:
            return None, ABSENT
        return row.value, row.version

    def _load_all(self) -> list[tuple[str, bytes, int]]:
        with _store_errors("scan"):
            rows = self._session.execute(
                select(LedgerState.key, LedgerState.value, LedgerState.version)
                .order_by(LedgerState.key)
            ).all()
        return [(row.key, row.value, row.version) for row in rows]

    def _load_history(self, key: str) -> list[KeyModification]:
        with _store_errors("history", key):
            rows = self._session.execute(
                select(LedgerHistory)
                .where(LedgerHistory.key == key)
                .order_by(LedgerHistory.version)
            ).scalars().all()
        return [
            KeyModification(
                value=row.value,
                is_deleted=row.is_deleted,
                timestamp=_aware(row.recorded_at),
                version=row.version,
            )
            for row in rows
        ]

    def _apply(self, writes: dict[str, bytes], read_versions: dict[str, int]) -> None:
        session = self._session
        now = self._clock()
        try:
            with _store_errors("commit"):
                for key, value in writes.items():
                    expected = read_versions.get(key)
                    if expected is None:
                        expected = self._load(key)[1]
                    version = self._compare_and_set(key, value, expected, now)
                    session.execute(
                        insert(LedgerHistory).values(
                            key=key,
                            version=version,
                            value=value,
                            is_deleted=False,
                            recorded_at=now,
                        )
                    )
                session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _compare_and_set(self, key: str, value: bytes, expected: int, now: datetime) -> int:
        if expected == ABSENT:
            try:
                self._session.execute(
                    insert(LedgerState).values(key=key, value=value, version=1, updated_at=now)
                )
            except IntegrityError as exc:
                raise ConcurrentModificationError(key) from exc
            return 1

        result = self._session.execute(
            update(LedgerState)
            .where(LedgerState.key == key, LedgerState.version == expected)
            .values(value=value, version=expected + 1, updated_at=now)
        )
        if result.rowcount != 1:
            raise ConcurrentModificationError(key)
        return expected + 1

    def _discard(self) -> None:
        try:
            self._session.rollback()
        finally:
            self._session.close()
