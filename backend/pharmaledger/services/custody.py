"""Chain of custody: the append-only ownership/status history of a batch.

A batch's ``history`` is the canonical custody chain: one creation record,
then exactly one record per successful transfer.  Records are never
reordered, edited or removed; every function here returns a new sequence.

``latest_record_per_version`` builds the version-level audit trail from the
store's per-key modification log: one record (the newest one) for each
persisted version of the batch, not the full chain as of that version.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable

from pharmaledger.schemas.batch import Batch, BatchStatus, CustodyRecord
from pharmaledger.schemas.common import decode_document, document_type
from pharmaledger.store.base import KeyModification

logger = logging.getLogger(__name__)


def record_creation(creator: str, at: datetime) -> tuple[CustodyRecord, ...]:
    """The sole record written at batch creation: Manufactured, no location yet."""
    return (
        CustodyRecord(
            owner=creator,
            timestamp=at,
            status=BatchStatus.MANUFACTURED,
            location="",
        ),
    )


def record_transfer(
    history: tuple[CustodyRecord, ...],
    *,
    owner: str,
    status: BatchStatus,
    location: str,
    at: datetime,
) -> tuple[CustodyRecord, ...]:
    """Append exactly one record for a successful transition."""
    if history and at < history[-1].timestamp:
        # Clock skew between invocations must not reorder the chain
        at = history[-1].timestamp
    record = CustodyRecord(owner=owner, timestamp=at, status=status, location=location)
    return (*history, record)


def latest_record_per_version(
    modifications: Iterable[KeyModification],
    key: str | None = None,
) -> list[CustodyRecord]:
    """Newest custody record of every persisted batch version, oldest version first.

    Deleted versions and versions that are not batch documents are skipped.
    """
    records: list[CustodyRecord] = []
    for mod in modifications:
        if mod.is_deleted or not mod.value:
            continue
        if document_type(mod.value) != "batch":
            logger.debug(f"Skipping non-batch version {mod.version} of {key}")
            continue
        batch = decode_document(Batch, mod.value, key=key)
        if batch.history:
            records.append(batch.history[-1])
    return records

