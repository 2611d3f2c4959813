"""LedgerHistory: immutable per-key modification log.

Every committed write to ledger_state appends one row here.  Rows are
never updated or deleted; iterating a key's rows by ``version`` yields
every historical value of that key, which is what the per-version
custody audit trail is built from.
"""

import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, Integer, LargeBinary, String
from sqlalchemy.orm import Mapped, mapped_column

from pharmaledger.database import LedgerBase


class LedgerHistory(LedgerBase):
    __tablename__ = "ledger_history"
    __table_args__ = (
        Index("ix_ledger_history_key_version", "key", "version", unique=True),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    key: Mapped[str] = mapped_column(String(255), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    # Empty payload when is_deleted is set
    value: Mapped[bytes | None] = mapped_column(LargeBinary)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )
