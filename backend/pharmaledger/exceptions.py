"""Exception taxonomy for the batch lifecycle and compliance core.

Every error carries a stable ``error_code`` and a ``details`` dict naming
the offending field, role or key, so callers (and whatever transport sits
on top) can report it without parsing messages.

    PharmaLedgerError
      ├── AuthorizationError          wrong role for an operation / transition
      ├── NotFoundError               unknown batch id
      ├── ConflictError               duplicate id on create
      ├── ValidationError             malformed date, status, predicate, ...
      └── StoreError                  repository failure, passed through
            └── ConcurrentModificationError
"""

from __future__ import annotations


class PharmaLedgerError(Exception):
    """Base exception for ledger core errors."""

    def __init__(
        self,
        message: str,
        error_code: str = "INTERNAL_ERROR",
        details: dict | None = None,
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict:
        """Standardized error body: {"error": {"code", "message", "details"}}."""
        content = {"code": self.error_code, "message": self.message}
        if self.details:
            content["details"] = self.details
        return {"error": content}


class AuthorizationError(PharmaLedgerError):
    """Caller's role may not perform the operation or transition."""

    def __init__(
        self,
        message: str,
        role: str | None = None,
        operation: str | None = None,
        current_status: str | None = None,
        requested_status: str | None = None,
    ):
        details = {
            k: v
            for k, v in {
                "role": role,
                "operation": operation,
                "current_status": current_status,
                "requested_status": requested_status,
            }.items()
            if v is not None
        }
        super().__init__(message, error_code="PERMISSION_DENIED", details=details)
        self.role = role
        self.operation = operation
        self.current_status = current_status
        self.requested_status = requested_status


class NotFoundError(PharmaLedgerError):
    def __init__(self, resource: str, identifier: str):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code="RESOURCE_NOT_FOUND",
            details={"resource": resource, "identifier": identifier},
        )
        self.resource = resource
        self.identifier = identifier


class ConflictError(PharmaLedgerError):
    def __init__(self, resource: str, identifier: str):
        super().__init__(
            message=f"{resource} already exists: {identifier}",
            error_code="DUPLICATE_RECORD",
            details={"resource": resource, "identifier": identifier},
        )
        self.resource = resource
        self.identifier = identifier


class ValidationError(PharmaLedgerError):
    def __init__(self, field: str, message: str, value: object = None):
        details: dict = {"field": field}
        if value is not None:
            details["value"] = repr(value)
        super().__init__(
            message=f"Invalid {field}: {message}",
            error_code="VALIDATION_ERROR",
            details=details,
        )
        self.field = field
        self.value = value


class StoreError(PharmaLedgerError):
    """Failure reported by the ledger state store."""

    def __init__(self, message: str, key: str | None = None, error_code: str = "STORE_ERROR"):
        super().__init__(
            message=message,
            error_code=error_code,
            details={"key": key} if key is not None else None,
        )
        self.key = key


class ConcurrentModificationError(StoreError):
    """A key written by this transaction changed after it was read.

    The whole transaction is rejected; the caller retries from a fresh read.
    """

    def __init__(self, key: str):
        super().__init__(
            message=f"Key modified by a concurrent transaction: {key}",
            key=key,
            error_code="CONCURRENT_MODIFICATION",
        )
