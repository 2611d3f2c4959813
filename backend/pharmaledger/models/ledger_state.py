"""LedgerState: current value of every key in the ledger state store.

One row per key (batch id or flag id).  ``version`` increments on every
committed write and is the compare-and-set token used to reject stale
writers: an UPDATE only lands ``WHERE version = <version read>``.
"""

from datetime import datetime, timezone

from sqlalchemy import DateTime, Integer, LargeBinary, String
from sqlalchemy.orm import Mapped, mapped_column

from pharmaledger.database import LedgerBase


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LedgerState(LedgerBase):
    __tablename__ = "ledger_state"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    value: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )
