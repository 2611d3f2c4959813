"""Batch lifecycle state machine.

    Manufactured ──► InTransit ◄──► Delivered ──► Sold
         │               │              │
         └───────────────┴──────────────┴──► Flagged   (regulator overlay)

    Expired: terminal, carried by the data model but not reachable through
    transfers.

Which role may take which edge is decided by
``pharmaledger.auth.permissions.TRANSITION_RULES``.  No edge leaves a
terminal status, so a Flagged or Sold batch can never be transferred again.

Every function returns a new Batch; callers persist it.
"""

from __future__ import annotations

from datetime import datetime

from pharmaledger.auth.permissions import check_transition
from pharmaledger.schemas.batch import Batch, BatchStatus
from pharmaledger.services import custody

INITIAL_STATUS = BatchStatus.MANUFACTURED

TERMINAL_STATUSES = frozenset({
    BatchStatus.SOLD,
    BatchStatus.FLAGGED,
    BatchStatus.EXPIRED,
})


def is_terminal(status: BatchStatus) -> bool:
    return status in TERMINAL_STATUSES


def new_batch(
    *,
    batch_id: str,
    name: str,
    batch_number: str,
    creator: str,
    manufacture_date: datetime,
    expiry_date: datetime,
    at: datetime,
) -> Batch:
    """A freshly manufactured batch owned by its creator."""
    return Batch(
        id=batch_id,
        name=name,
        batch_number=batch_number,
        manufacturer=creator,
        manufacture_date=manufacture_date,
        expiry_date=expiry_date,
        current_owner=creator,
        status=INITIAL_STATUS,
        temperature_readings=(),
        location="",
        history=custody.record_creation(creator, at),
    )


def apply_transfer(
    batch: Batch,
    *,
    caller_role: str,
    new_owner: str,
    new_status: BatchStatus,
    location: str,
    temperature: float,
    at: datetime,
) -> Batch:
    """Validate the transition for the caller's role and apply it.

    Overwrites owner/status/location, appends one temperature reading and
    one custody record.  Raises AuthorizationError before anything changes
    if the (current, requested) pair isn't allowed for the role.
    """
    check_transition(caller_role, batch.status, new_status)

    fields = dict(batch)
    fields.update(
        current_owner=new_owner,
        status=new_status,
        location=location,
        temperature_readings=(*batch.temperature_readings, temperature),
        history=custody.record_transfer(
            batch.history,
            owner=new_owner,
            status=new_status,
            location=location,
            at=at,
        ),
    )
    return Batch(**fields)


def overlay_flag(batch: Batch) -> Batch:
    """Overwrite the status with Flagged.  History and readings are untouched."""
    fields = dict(batch)
    fields["status"] = BatchStatus.FLAGGED
    return Batch(**fields)
