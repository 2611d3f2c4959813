"""Role-based authorization for batch operations and status transitions.

Design:
  - Each organizational role has a fixed set of allowed
    (current status → requested status) transfer pairs, defined here as
    data (TRANSITION_RULES), not in control flow.  Adding a role or a
    transition means adding a table entry.
  - Operations outside the transfer table (create, flag, reports) have
    their own role sets in OPERATION_ROLES.
  - Unknown role strings resolve to None and are denied everywhere.

Permission naming for operations: `<resource>.<action>`
"""

from __future__ import annotations

import logging
from enum import Enum

from pharmaledger.exceptions import AuthorizationError
from pharmaledger.schemas.batch import BatchStatus

logger = logging.getLogger(__name__)


class Role(str, Enum):
    MANUFACTURER = "Manufacturer"
    DISTRIBUTOR = "Distributor"
    PHARMACY = "Pharmacy"
    REGULATOR = "Regulator"


# Membership-service ids as issued by the network CA
ROLE_ALIASES: dict[str, Role] = {
    "ManufacturerMSP": Role.MANUFACTURER,
    "DistributorMSP": Role.DISTRIBUTOR,
    "PharmacyMSP": Role.PHARMACY,
    "RegulatorMSP": Role.REGULATOR,
}


# ── Role → allowed transfer transitions ─────────────────────

Transition = tuple[BatchStatus, BatchStatus]

TRANSITION_RULES: dict[Role, frozenset[Transition]] = {
    Role.MANUFACTURER: frozenset({
        (BatchStatus.MANUFACTURED, BatchStatus.IN_TRANSIT),
    }),
    Role.DISTRIBUTOR: frozenset({
        (BatchStatus.IN_TRANSIT, BatchStatus.DELIVERED),
        (BatchStatus.DELIVERED, BatchStatus.IN_TRANSIT),  # re-routing
    }),
    Role.PHARMACY: frozenset({
        (BatchStatus.DELIVERED, BatchStatus.SOLD),
    }),
}


# ── Operation → roles ───────────────────────────────────────

OPERATION_ROLES: dict[str, frozenset[Role]] = {
    "batch.create": frozenset({Role.MANUFACTURER}),
    "batch.flag": frozenset({Role.REGULATOR}),
    "flags.read": frozenset({Role.REGULATOR}),
    "reports.compliance": frozenset({Role.REGULATOR}),
    "reports.violations": frozenset({Role.REGULATOR}),
}


# ── Resolution ──────────────────────────────────────────────

def resolve_role(raw_role: str | None) -> Role | None:
    """Map a caller's role string to a Role, or None if unrecognised."""
    if not raw_role:
        return None
    if raw_role in ROLE_ALIASES:
        return ROLE_ALIASES[raw_role]
    try:
        return Role(raw_role)
    except ValueError:
        return None


def allowed_transitions(raw_role: str | None) -> frozenset[Transition]:
    role = resolve_role(raw_role)
    if role is None:
        return frozenset()
    return TRANSITION_RULES.get(role, frozenset())


def is_transition_allowed(
    raw_role: str | None,
    current_status: BatchStatus,
    requested_status: BatchStatus,
) -> bool:
    return (current_status, requested_status) in allowed_transitions(raw_role)


def check_transition(
    raw_role: str | None,
    current_status: BatchStatus,
    requested_status: BatchStatus,
) -> Role:
    """Return the caller's Role if it may move a batch between the statuses.

    Raises AuthorizationError naming the role and the status pair otherwise.
    """
    role = resolve_role(raw_role)
    if role is None:
        logger.warning(f"Transfer denied: unrecognised role {raw_role!r}")
        raise AuthorizationError(
            f"Unauthorized organization role: {raw_role!r}",
            role=raw_role,
            operation="batch.transfer",
            current_status=current_status.value,
            requested_status=requested_status.value,
        )
    if not is_transition_allowed(role.value, current_status, requested_status):
        logger.warning(
            f"Transfer denied: {role.value} may not move batch "
            f"{current_status.value} → {requested_status.value}"
        )
        raise AuthorizationError(
            f"{role.value} may not transfer a batch from "
            f"{current_status.value} to {requested_status.value}",
            role=role.value,
            operation="batch.transfer",
            current_status=current_status.value,
            requested_status=requested_status.value,
        )
    return role


def require_role(raw_role: str | None, operation: str) -> Role:
    """Return the caller's Role if it may perform ``operation``."""
    allowed = OPERATION_ROLES.get(operation, frozenset())
    role = resolve_role(raw_role)
    if role is None or role not in allowed:
        required = ", ".join(sorted(r.value for r in allowed)) or "none"
        logger.warning(f"Operation {operation} denied for role {raw_role!r}")
        raise AuthorizationError(
            f"Role {raw_role!r} not authorized for {operation} (requires: {required})",
            role=raw_role,
            operation=operation,
        )
    return role
