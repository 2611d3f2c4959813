"""Compliance report view.  Computed on demand, never stored."""

from datetime import datetime

from pydantic import Field

from pharmaledger.schemas.common import LedgerModel


class ReportPeriod(LedgerModel):
    start: datetime
    end: datetime


class ViolationSummary(LedgerModel):
    # TEMPERATURE_EXCURSION | FLAGGED
    type: str
    count: int
    description: str


class ComplianceReport(LedgerModel):
    organization_id: str
    total_batches: int
    compliant_batches: int
    violation_batches: int
    report_period: ReportPeriod
    violations: list[ViolationSummary] = Field(default_factory=list)
