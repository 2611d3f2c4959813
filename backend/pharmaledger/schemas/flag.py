"""Pydantic schema for regulator flags."""

from datetime import datetime
from enum import Enum
from typing import Literal

from pharmaledger.schemas.common import LedgerModel


class FlagSeverity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class Flag(LedgerModel):
    """A regulator's finding against a batch.

    Stored under its own key and references the batch by id only.
    """
    doc_type: Literal["flag"] = "flag"
    id: str
    batch_id: str
    reason: str
    severity: FlagSeverity
    flagged_by: str
    flagged_at: datetime
