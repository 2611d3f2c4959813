"""Compliance engine: cold-chain checks, regulator flags, and reports.

Thresholds:
    - COLD_CHAIN_MIN_C / COLD_CHAIN_MAX_C: inclusive reading bounds (°C)
    - STATUS_CHANGING_SEVERITIES: flag severities that overwrite the
      batch status to Flagged

All three default from settings so they can be tuned per deployment.

A batch is compliant when every stored reading lies within the bounds; a
batch with no readings yet is compliant.  Reports and violation queries
are pure functions of the batches handed in; selecting those batches from
the store is the caller's job.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Iterable

from pharmaledger.config import settings
from pharmaledger.schemas.batch import Batch, BatchStatus
from pharmaledger.schemas.flag import Flag, FlagSeverity
from pharmaledger.schemas.report import ComplianceReport, ReportPeriod, ViolationSummary

logger = logging.getLogger(__name__)

# ── Configurable thresholds ──────────────────────────────────
COLD_CHAIN_MIN_C = settings.cold_chain_min_c
COLD_CHAIN_MAX_C = settings.cold_chain_max_c
STATUS_CHANGING_SEVERITIES = frozenset(
    FlagSeverity(s.upper()) for s in settings.status_changing_severities
)

FLAG_KEY_PREFIX = "FLAG_"

VIOLATION_TEMPERATURE = "TEMPERATURE_EXCURSION"
VIOLATION_FLAGGED = "FLAGGED"


def flag_id_for(batch_id: str, at: datetime, attempt: int = 0) -> str:
    """FLAG_<batchId>_<UTC timestamp to the microsecond>[_<attempt>]."""
    stamp = at.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
    base = f"{FLAG_KEY_PREFIX}{batch_id}_{stamp}"
    return base if attempt == 0 else f"{base}_{attempt}"


def in_window(moment: datetime, start: datetime, end: datetime) -> bool:
    """Strictly between start and end (both ends exclusive)."""
    return start < moment < end


class ComplianceEngine:
    def __init__(
        self,
        min_c: float = COLD_CHAIN_MIN_C,
        max_c: float = COLD_CHAIN_MAX_C,
        status_changing_severities: Iterable[FlagSeverity] = STATUS_CHANGING_SEVERITIES,
        report_window_filters_manufacture_date: bool | None = None,
    ):
        if min_c > max_c:
            raise ValueError(f"cold chain bounds inverted: {min_c} > {max_c}")
        self.min_c = min_c
        self.max_c = max_c
        self.status_changing_severities = frozenset(status_changing_severities)
        if report_window_filters_manufacture_date is None:
            report_window_filters_manufacture_date = settings.report_window_filters_manufacture_date
        self.report_window_filters_manufacture_date = report_window_filters_manufacture_date

    @property
    def fingerprint(self) -> str:
        """Settings that change report output, for cache keys."""
        severities = ",".join(sorted(s.value for s in self.status_changing_severities))
        return (
            f"{self.min_c:g}..{self.max_c:g}|{severities}"
            f"|window={int(self.report_window_filters_manufacture_date)}"
        )

    # ── Threshold ───────────────────────────────────────────

    def is_reading_compliant(self, reading: float) -> bool:
        return self.min_c <= reading <= self.max_c

    def out_of_range_readings(self, batch: Batch) -> list[float]:
        return [r for r in batch.temperature_readings if not self.is_reading_compliant(r)]

    def is_batch_compliant(self, batch: Batch) -> bool:
        return all(self.is_reading_compliant(r) for r in batch.temperature_readings)

    # ── Flags ───────────────────────────────────────────────

    def changes_status(self, severity: FlagSeverity) -> bool:
        return severity in self.status_changing_severities

    def build_flag(
        self,
        *,
        batch_id: str,
        reason: str,
        severity: FlagSeverity,
        flagged_by: str,
        at: datetime,
        key_taken: Callable[[str], bool],
    ) -> Flag:
        """Create a Flag whose id is not yet used in the store.

        Two flags on the same batch at the same instant get numeric
        suffixes rather than overwriting each other.
        """
        attempt = 0
        flag_id = flag_id_for(batch_id, at)
        while key_taken(flag_id):
            attempt += 1
            flag_id = flag_id_for(batch_id, at, attempt)
        return Flag(
            id=flag_id,
            batch_id=batch_id,
            reason=reason,
            severity=severity,
            flagged_by=flagged_by,
            flagged_at=at,
        )

    # ── Reports ─────────────────────────────────────────────

    def build_report(
        self,
        batches: Iterable[Batch],
        *,
        start: datetime,
        end: datetime,
        organization_id: str,
    ) -> ComplianceReport:
        """Classify the organization's current batches.

        ``batches`` are the batches currently owned by the organization.
        The window is report metadata unless
        ``report_window_filters_manufacture_date`` is set, in which case only
        batches manufactured strictly inside it are counted.
        """
        selected = list(batches)
        if self.report_window_filters_manufacture_date:
            selected = [b for b in selected if in_window(b.manufacture_date, start, end)]

        compliant = 0
        excursions = 0
        flagged = 0
        for batch in selected:
            if self.is_batch_compliant(batch):
                compliant += 1
            else:
                excursions += 1
            if batch.status == BatchStatus.FLAGGED:
                flagged += 1

        violations = []
        if excursions:
            violations.append(ViolationSummary(
                type=VIOLATION_TEMPERATURE,
                count=excursions,
                description=(
                    f"{excursions} batch(es) with readings outside "
                    f"{self.min_c:.1f}–{self.max_c:.1f} °C"
                ),
            ))
        if flagged:
            violations.append(ViolationSummary(
                type=VIOLATION_FLAGGED,
                count=flagged,
                description=f"{flagged} batch(es) flagged by a regulator",
            ))

        logger.info(
            f"Compliance report for {organization_id}: "
            f"{len(selected)} total, {compliant} compliant, {excursions} violating"
        )
        return ComplianceReport(
            organization_id=organization_id,
            total_batches=len(selected),
            compliant_batches=compliant,
            violation_batches=excursions,
            report_period=ReportPeriod(start=start, end=end),
            violations=violations,
        )

    def find_violations(
        self,
        batches: Iterable[Batch],
        *,
        start: datetime,
        end: datetime,
    ) -> list[Batch]:
        """Batches manufactured strictly inside the window with any out-of-range reading."""
        return [
            batch
            for batch in batches
            if in_window(batch.manufacture_date, start, end)
            and not self.is_batch_compliant(batch)
        ]
