"""Ledger service: the public operation surface of the batch core.

Every operation:
  1. asks the caller's IdentityProvider for role and id (fresh each call)
  2. checks authorization and validates input before touching the store
  3. opens one store transaction, loads what it needs, applies the
     lifecycle / custody / compliance rules
  4. buffers its writes; they land atomically when the transaction exits

The service holds no state between invocations beyond its collaborators.
Concurrent invocations on the same batch are arbitrated by the store:
a stale writer fails with ConcurrentModificationError and nothing it
wrote becomes visible.  The core does not retry.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Callable

from pharmaledger.auth.identity import IdentityProvider
from pharmaledger.auth.permissions import require_role
from pharmaledger.config import settings
from pharmaledger.exceptions import ConflictError, NotFoundError
from pharmaledger.schemas.batch import Batch, CustodyRecord
from pharmaledger.schemas.common import decode_document, document_type, encode_document
from pharmaledger.schemas.flag import Flag
from pharmaledger.schemas.report import ComplianceReport
from pharmaledger.services import custody, lifecycle
from pharmaledger.services.compliance import ComplianceEngine
from pharmaledger.store.base import BatchRepository, LedgerTransaction
from pharmaledger.store.selector import MISSING, resolve_field
from pharmaledger.utils.cache import cached, invalidate_cache
from pharmaledger.utils.validators import (
    free_text,
    parse_query,
    parse_severity,
    parse_status,
    parse_temperature,
    parse_timestamp,
    require_text,
)

logger = logging.getLogger(__name__)

BATCH_SELECTOR = {"docType": "batch"}
FLAG_SELECTOR = {"docType": "flag"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _decode_batches(rows: list[tuple[str, bytes]]) -> list[Batch]:
    return [
        decode_document(Batch, raw, key=key)
        for key, raw in rows
        if document_type(raw) == "batch"
    ]


def _collation_key(value) -> tuple:
    # CouchDB order: missing/null < booleans < numbers < strings < arrays/objects
    if value is MISSING or value is None:
        return (0, 0)
    if isinstance(value, bool):
        return (1, value)
    if isinstance(value, (int, float)):
        return (2, value)
    if isinstance(value, str):
        return (3, value)
    return (4, json.dumps(value, sort_keys=True))


def _apply_query_options(batches: list[Batch], options: dict) -> list[Batch]:
    """Sort, then skip and limit, like a Mango find."""
    if options.get("sort"):
        pairs = [(b.model_dump(mode="json", by_alias=True), b) for b in batches]
        # Stable sorts applied last key first give a multi-key sort
        for path, direction in reversed(options["sort"]):
            pairs.sort(
                key=lambda pair, path=path: _collation_key(resolve_field(pair[0], path)),
                reverse=direction == "desc",
            )
        batches = [b for _, b in pairs]
    skip = options.get("skip") or 0
    limit = options.get("limit")
    return batches[skip:] if limit is None else batches[skip:skip + limit]


def _invalidate_batch_reads(batch_id: str) -> None:
    invalidate_cache(
        f"batch:{batch_id}",
        f"audit:{batch_id}",
        "batches:*",
        "report:*",
        "violations:*",
    )


class PharmaLedgerService:
    def __init__(
        self,
        repository: BatchRepository,
        compliance: ComplianceEngine | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.repository = repository
        self.compliance = compliance or ComplianceEngine()
        self._clock = clock or _utcnow

    # ── Writes ──────────────────────────────────────────────

    def create_batch(
        self,
        caller: IdentityProvider,
        batch_id: str,
        name: str,
        batch_number: str,
        manufacture_date: str,
        expiry_date: str,
    ) -> Batch:
        """Issue a new batch owned by the calling manufacturer.

        Raises:
            AuthorizationError: caller is not a Manufacturer
            ValidationError:    empty id, name or lot number, or a date that isn't RFC 3339
            ConflictError:      a record with this id already exists
        """
        role = caller.caller_role()
        require_role(role, "batch.create")
        batch_id = require_text(batch_id, "id")
        name = require_text(name, "name")
        batch_number = require_text(batch_number, "batchNumber")
        mdate = parse_timestamp(manufacture_date, "manufactureDate")
        edate = parse_timestamp(expiry_date, "expiryDate")
        creator = caller.caller_id()

        with self.repository.transaction() as tx:
            if tx.get(batch_id) is not None:
                raise ConflictError("Drug batch", batch_id)
            batch = lifecycle.new_batch(
                batch_id=batch_id,
                name=name,
                batch_number=batch_number,
                creator=creator,
                manufacture_date=mdate,
                expiry_date=edate,
                at=self._clock(),
            )
            tx.put(batch_id, encode_document(batch))

        _invalidate_batch_reads(batch_id)
        logger.info(
            f"Created batch {batch_id} ({name}, lot {batch_number})",
            extra={"batch_id": batch_id, "caller_id": creator, "role": role},
        )
        return batch

    def transfer_batch(
        self,
        caller: IdentityProvider,
        batch_id: str,
        new_owner: str,
        new_status: str,
        location: str,
        temperature: float,
    ) -> Batch:
        """Hand a batch to a new owner, recording status, location and a reading.

        Raises:
            ValidationError:    unknown status, empty owner, non-text location,
                                non-numeric reading
            NotFoundError:      no such batch
            AuthorizationError: the caller's role may not make this transition
        """
        role = caller.caller_role()
        status = parse_status(new_status, "newStatus")
        reading = parse_temperature(temperature)
        new_owner = require_text(new_owner, "newOwner")
        location = free_text(location, "location")

        with self.repository.transaction() as tx:
            batch = self._load_batch(tx, batch_id)
            previous = batch.status
            updated = lifecycle.apply_transfer(
                batch,
                caller_role=role,
                new_owner=new_owner,
                new_status=status,
                location=location,
                temperature=reading,
                at=self._clock(),
            )
            tx.put(batch_id, encode_document(updated))

        _invalidate_batch_reads(batch_id)
        logger.info(
            f"Transferred batch {batch_id} {previous.value} → {status.value} to {new_owner}",
            extra={
                "batch_id": batch_id,
                "caller_id": caller.caller_id(),
                "role": role,
                "temperature": reading,
            },
        )
        if not self.compliance.is_reading_compliant(reading):
            logger.warning(
                f"Cold-chain excursion on batch {batch_id}: {reading:.1f} °C",
                extra={"batch_id": batch_id, "temperature": reading},
            )
        if lifecycle.is_terminal(status):
            logger.info(
                f"Batch {batch_id} reached terminal status {status.value}",
                extra={"batch_id": batch_id, "status": status.value},
            )
        return updated

    def flag_batch(
        self,
        caller: IdentityProvider,
        batch_id: str,
        reason: str,
        severity: str,
    ) -> Flag:
        """Record a regulator flag; status-changing severities also mark the batch Flagged.

        The flag and the batch update commit together or not at all.
        ``reason`` is free text and may be empty.

        Raises:
            ValidationError:    unknown severity, or a reason that is not a string
            NotFoundError:      no such batch
            AuthorizationError: caller is not a Regulator
        """
        role = require_role(caller.caller_role(), "batch.flag")
        sev = parse_severity(severity)
        reason = free_text(reason, "reason")

        with self.repository.transaction() as tx:
            batch = self._load_batch(tx, batch_id)
            flag = self.compliance.build_flag(
                batch_id=batch.id,
                reason=reason,
                severity=sev,
                flagged_by=role.value,
                at=self._clock(),
                key_taken=lambda key: tx.get(key) is not None,
            )
            tx.put(flag.id, encode_document(flag))
            if self.compliance.changes_status(sev):
                tx.put(batch.id, encode_document(lifecycle.overlay_flag(batch)))

        _invalidate_batch_reads(batch_id)
        logger.info(
            f"Flagged batch {batch_id} ({sev.value}): {reason}",
            extra={"batch_id": batch_id, "flag_id": flag.id, "caller_id": caller.caller_id()},
        )
        return flag

    # ── Reads (any role) ────────────────────────────────────

    def read_batch(self, caller: IdentityProvider, batch_id: str) -> Batch:
        logger.debug(f"read_batch {batch_id} by {caller.caller_id()}")
        return self._read_batch(batch_id=batch_id)

    def list_all_batches(self, caller: IdentityProvider) -> list[Batch]:
        logger.debug(f"list_all_batches by {caller.caller_id()}")
        return self._list_all_batches()

    def query_batches(self, caller: IdentityProvider, predicate: str) -> list[Batch]:
        """Batches matching a Mango-style query, e.g. ``{"selector": {"status": "Sold"}, "limit": 10}``.

        ``sort``, ``skip`` and ``limit`` are honoured; projection and index
        options are accepted and ignored.
        """
        selector, options = parse_query(predicate)
        logger.debug(f"query_batches by {caller.caller_id()}: {selector} {options}")
        return self._query_batches(
            selector_json=json.dumps(selector, sort_keys=True),
            options_json=json.dumps(options, sort_keys=True),
        )

    def get_batch_history(self, caller: IdentityProvider, batch_id: str) -> list[CustodyRecord]:
        """Version-level audit trail: the newest custody record of each stored version."""
        logger.debug(f"get_batch_history {batch_id} by {caller.caller_id()}")
        return self._batch_history(batch_id=batch_id)

    # ── Regulator operations ────────────────────────────────

    def list_flags(self, caller: IdentityProvider, batch_id: str) -> list[Flag]:
        require_role(caller.caller_role(), "flags.read")
        with self.repository.transaction() as tx:
            self._load_batch(tx, batch_id)
            rows = tx.query({**FLAG_SELECTOR, "batchId": batch_id})
        flags = [decode_document(Flag, raw, key=key) for key, raw in rows]
        return sorted(flags, key=lambda f: (f.flagged_at, f.id))

    def generate_compliance_report(
        self,
        caller: IdentityProvider,
        start: str,
        end: str,
        organization_id: str,
    ) -> ComplianceReport:
        """Compliance summary of the batches an organization currently owns."""
        require_role(caller.caller_role(), "reports.compliance")
        start_dt = parse_timestamp(start, "startDate")
        end_dt = parse_timestamp(end, "endDate")
        organization_id = require_text(organization_id, "organizationId")
        return self._compliance_report(
            start=start_dt,
            end=end_dt,
            organization_id=organization_id,
            engine=self.compliance.fingerprint,
        )

    def get_temperature_violations(
        self,
        caller: IdentityProvider,
        start: str,
        end: str,
    ) -> list[Batch]:
        """Batches manufactured strictly inside (start, end) with an out-of-range reading."""
        require_role(caller.caller_role(), "reports.violations")
        start_dt = parse_timestamp(start, "startDate")
        end_dt = parse_timestamp(end, "endDate")
        return self._temperature_violations(
            start=start_dt, end=end_dt, engine=self.compliance.fingerprint
        )

    # ── Cached store reads (run after authorization) ───────

    @cached(
        ttl=settings.cache_ttl_batch,
        key_builder=lambda self, **kw: f"batch:{kw['batch_id']}",
        model=Batch,
    )
    def _read_batch(self, *, batch_id: str) -> Batch:
        with self.repository.transaction() as tx:
            return self._load_batch(tx, batch_id)

    @cached(ttl=settings.cache_ttl_batch_list, prefix="batches", model=Batch)
    def _list_all_batches(self) -> list[Batch]:
        with self.repository.transaction() as tx:
            return _decode_batches(tx.scan_all())

    @cached(ttl=settings.cache_ttl_batch_list, prefix="batches", model=Batch)
    def _query_batches(self, *, selector_json: str, options_json: str) -> list[Batch]:
        selector = json.loads(selector_json)
        with self.repository.transaction() as tx:
            rows = tx.query({"$and": [BATCH_SELECTOR, selector]})
        return _apply_query_options(_decode_batches(rows), json.loads(options_json))

    @cached(
        ttl=settings.cache_ttl_audit_trail,
        key_builder=lambda self, **kw: f"audit:{kw['batch_id']}",
        model=CustodyRecord,
    )
    def _batch_history(self, *, batch_id: str) -> list[CustodyRecord]:
        with self.repository.transaction() as tx:
            self._load_batch(tx, batch_id)
            modifications = tx.history_of(batch_id)
        return custody.latest_record_per_version(modifications, key=batch_id)

    # `engine` is the compliance fingerprint; it only enters the cache key
    @cached(ttl=settings.cache_ttl_reports, prefix="report", model=ComplianceReport)
    def _compliance_report(
        self, *, start: datetime, end: datetime, organization_id: str, engine: str
    ) -> ComplianceReport:
        with self.repository.transaction() as tx:
            rows = tx.query({**BATCH_SELECTOR, "currentOwner": organization_id})
        return self.compliance.build_report(
            _decode_batches(rows), start=start, end=end, organization_id=organization_id
        )

    @cached(ttl=settings.cache_ttl_violations, prefix="violations", model=Batch)
    def _temperature_violations(
        self, *, start: datetime, end: datetime, engine: str
    ) -> list[Batch]:
        with self.repository.transaction() as tx:
            batches = _decode_batches(tx.scan_all())
        return self.compliance.find_violations(batches, start=start, end=end)

    # ── Helpers ─────────────────────────────────────────────

    @staticmethod
    def _load_batch(tx: LedgerTransaction, batch_id: str) -> Batch:
        raw = tx.get(batch_id)
        if raw is None or document_type(raw) not in (None, "batch"):
            raise NotFoundError("Drug batch", batch_id)
        return decode_document(Batch, raw, key=batch_id)
