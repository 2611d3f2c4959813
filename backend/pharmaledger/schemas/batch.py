"""Pydantic schemas for drug batches and their chain of custody."""

from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import Field, model_validator

from pharmaledger.schemas.common import LedgerModel


class BatchStatus(str, Enum):
    MANUFACTURED = "Manufactured"
    IN_TRANSIT = "InTransit"
    DELIVERED = "Delivered"
    SOLD = "Sold"
    FLAGGED = "Flagged"
    EXPIRED = "Expired"


# ── Custody record ───────────────────────────────────────────

class CustodyRecord(LedgerModel):
    """One entry in the chain of custody.  Never edited once appended."""
    owner: str
    timestamp: datetime
    status: BatchStatus
    location: str = ""


# ── Batch ────────────────────────────────────────────────────

class Batch(LedgerModel):
    """A drug batch as stored in ledger state.

    ``history`` and ``temperature_readings`` are tuples: a new batch value
    is produced on every transition, the sequences only ever grow.
    """
    doc_type: Literal["batch"] = "batch"
    id: str
    name: str
    batch_number: str
    manufacturer: str
    manufacture_date: datetime
    expiry_date: datetime
    current_owner: str
    status: BatchStatus
    temperature_readings: tuple[float, ...] = Field(default_factory=tuple)
    location: str = ""
    history: tuple[CustodyRecord, ...]

    @model_validator(mode="after")
    def custody_chain_consistent(self):
        if not self.history:
            raise ValueError("history must contain the creation record")
        if len(self.temperature_readings) != len(self.history) - 1:
            raise ValueError(
                f"expected {len(self.history) - 1} temperature readings "
                f"for {len(self.history)} custody records, "
                f"got {len(self.temperature_readings)}"
            )
        return self
