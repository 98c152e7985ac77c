"""Pydantic request and response schemas for the custody engine API.

All API inputs and outputs use Pydantic models, never raw dicts. Response
models read engine dataclasses through ``from_attributes``.

Resources:
- Custody — check-in, check-out, location update, audit events
- AuditTrail — derived trail with integrity, quality and compliance
- Compliance — requirement checks, violation resolution, reports
- Reference data — locations, stations, requirements
- Reconciliation — partial writes awaiting operator action
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from lims_custody_engine.core.models import AuditEventSummary


class _FromAttributes(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# ---------------------------------------------------------------------------
# Custody requests
# ---------------------------------------------------------------------------


class CheckInRequest(BaseModel):
    """Request body for checking a specimen in at a workflow station."""

    station_id: str = Field(description="Receiving workflow station id, e.g., reception-desk")
    qr_code_scanned: bool = Field(default=False, description="Whether the specimen QR code was scanned")
    comments: str | None = Field(default=None, description="Optional operator comments")


class CheckOutRequest(BaseModel):
    """Request body for checking a specimen out of a workflow station."""

    from_station_id: str = Field(description="Station the specimen leaves")
    to_station_id: str | None = Field(
        default=None,
        description="Destination station. Omit when the specimen goes in transit.",
    )
    comments: str | None = Field(default=None, description="Optional operator comments")


class LocationUpdateRequest(BaseModel):
    """Request body for a manual location and status change."""

    location_id: str = Field(description="New location id")
    status: str = Field(description="New status: available | unavailable | unsatisfactory | entered-in-error")
    comments: str | None = Field(default=None, description="Optional operator comments")


class AuditEventRequest(BaseModel):
    """Request body for recording a non-custody handling event."""

    event_type: str = Field(description="Audit event type, e.g., temperature-recorded")
    action: str = Field(min_length=1, description="Short description of what was done")
    details: dict[str, str] = Field(default_factory=dict, description="String details")
    outcome: str = Field(default="success", description="success | failure | warning")


# ---------------------------------------------------------------------------
# Audit trail responses
# ---------------------------------------------------------------------------


class CustodyGapResponse(_FromAttributes):
    id: str
    start_time: datetime
    end_time: datetime
    duration: float = Field(description="Gap length in minutes")
    severity: str
    reason: str | None = None


class CustodyHandoffResponse(_FromAttributes):
    id: str
    timestamp: datetime
    from_person: str
    to_person: str
    from_location: str
    to_location: str
    qr_code_scanned: bool
    duration: float = Field(description="Minutes between the two location changes")
    witnessed: bool


class ChainOfCustodyIntegrityResponse(_FromAttributes):
    status: str = Field(description="intact | questionable | broken")
    gaps: list[CustodyGapResponse]
    handoffs: list[CustodyHandoffResponse]
    total_handoffs: int
    average_handoff_time: float = Field(description="Mean handoff duration in minutes")
    longest_gap: float = Field(description="Longest gap in minutes")


class QualityMetricsResponse(_FromAttributes):
    handling_score: float
    timeliness_score: float
    documentation_score: float
    overall_score: float
    category: str = Field(description="excellent | good | average | poor")


class ComplianceViolationResponse(_FromAttributes):
    id: str
    type: str
    severity: str
    description: str
    timestamp: datetime
    requirement_id: str | None = None
    resolved: bool
    resolved_by: str | None = None
    resolved_at: datetime | None = None
    correction_action: str | None = None


class ComplianceStatusResponse(_FromAttributes):
    overall: str = Field(description="compliant | warning | non-compliant")
    chain_of_custody: str
    temperature_control: str
    time_requirements: str
    documentation: str
    violations: list[ComplianceViolationResponse]


class AuditTrailResponse(_FromAttributes):
    """Derived audit trail of one specimen."""

    specimen_id: str
    accession_number: str
    specimen_type: str | None = None
    events: list[AuditEventSummary]
    chain_of_custody_integrity: ChainOfCustodyIntegrityResponse
    quality_metrics: QualityMetricsResponse
    compliance_status: ComplianceStatusResponse
    skipped_records: int = Field(description="Malformed records left out of the trail")


# ---------------------------------------------------------------------------
# Compliance
# ---------------------------------------------------------------------------


class ValidateComplianceRequest(BaseModel):
    """Request body for checking a specimen against requirements."""

    requirement_ids: list[str] | None = Field(
        default=None,
        description="Requirement ids to check. Omit to check every applicable requirement.",
    )


class RequirementCheckResponse(BaseModel):
    requirement_id: str
    requirement_name: str
    compliant: bool
    violations: list[ComplianceViolationResponse]


class ResolveViolationRequest(BaseModel):
    """Request body for resolving a compliance violation."""

    correction_action: str | None = Field(default=None, description="What was done to correct the violation")


class ReportRequest(BaseModel):
    """Request body for generating a compliance report."""

    report_type: str = Field(default="custom", description="daily | weekly | monthly | custom")
    start: datetime = Field(description="Inclusive window start (UTC)")
    end: datetime = Field(description="Inclusive window end (UTC)")
    deadline_seconds: float | None = Field(
        default=None,
        gt=0,
        description="Optional generation deadline. The partial report is discarded on expiry.",
    )


class ComplianceTrendResponse(_FromAttributes):
    metric: str
    period: str
    value: float
    change: float
    trend: str = Field(description="improving | stable | declining")


class ComplianceReportSummaryResponse(_FromAttributes):
    total_specimens: int
    compliant_specimens: int
    violations_count: int
    critical_violations: int
    average_handling_time: float = Field(description="Hours from first to last event, averaged")
    compliance_rate: float = Field(description="Percentage of compliant specimens")


class ComplianceReportResponse(_FromAttributes):
    """An immutable compliance report."""

    id: str
    report_type: str
    period_start: datetime
    period_end: datetime
    summary: ComplianceReportSummaryResponse
    violations: list[ComplianceViolationResponse]
    trends: list[ComplianceTrendResponse]
    recommendations: list[str]
    generated_at: datetime | None = None
    generated_by: str


# ---------------------------------------------------------------------------
# Reference data
# ---------------------------------------------------------------------------


class TimeRequirementsResponse(_FromAttributes):
    enabled: bool
    max_processing_time: float | None = None
    max_storage_time: float | None = None


class PenaltiesResponse(_FromAttributes):
    warning: str
    violation: str
    critical: str


class RequirementResponse(_FromAttributes):
    id: str
    name: str
    description: str
    category: str
    chain_of_custody: bool
    temperature_control: bool
    time_requirements: TimeRequirementsResponse
    penalties: PenaltiesResponse
    documentation: list[str]
    quality_controls: list[str]
    applicable_specimen_types: list[str]


class LocationResponse(_FromAttributes):
    id: str
    name: str
    category: str
    description: str
    capacity: int | None = None


class StationResponse(_FromAttributes):
    id: str
    name: str
    location_id: str
    required_roles: list[str]
    equipment: list[str]
    average_processing_minutes: int
    capacity: int


# ---------------------------------------------------------------------------
# Reconciliation and errors
# ---------------------------------------------------------------------------


class ReconciliationEntryResponse(_FromAttributes):
    id: str
    specimen_id: str
    audit_record_id: str
    intended_status: str | None = None
    intended_location_id: str | None = None
    error: str
    occurred_at: datetime


class ErrorResponse(BaseModel):
    """Error body returned for every engine error."""

    error: str = Field(description="Error class name")
    detail: str = Field(description="Human-readable message")
    context: dict[str, Any] = Field(default_factory=dict, description="Identifiers of the offending input")
