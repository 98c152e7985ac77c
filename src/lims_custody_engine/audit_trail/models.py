"""Derived per-specimen audit trail data.

Everything here is computed from a specimen's audit records and never
persisted on its own; the record log is the source of truth. All types are
frozen so a cached trail can only change by replacing it.

Types:
- CustodyGap / CustodyHandoff / ChainOfCustodyIntegrity — custody analysis
- QualityMetrics — handling, timeliness, documentation, overall scores
- ComplianceViolation / ComplianceStatus — evaluator output
- AuditTrail — the aggregate
"""

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal

from lims_custody_engine.core.errors import ViolationAlreadyResolvedError
from lims_custody_engine.core.models import AuditEventSummary

IntegrityStatus = Literal["intact", "questionable", "broken"]
GapSeverity = Literal["low", "medium", "high"]
Severity = Literal["low", "medium", "high", "critical"]
ViolationType = Literal["chain-of-custody", "temperature", "time", "documentation", "procedure"]
OverallCompliance = Literal["compliant", "warning", "non-compliant"]


@dataclass(frozen=True)
class CustodyGap:
    """Interval between two adjacent location changes above the gap threshold.

    Attributes:
        id: Derived from the later event id.
        start_time: Timestamp of the earlier event.
        end_time: Timestamp of the later event.
        duration: Length in minutes.
        severity: medium, or high above the high-severity threshold.
        reason: Optional explanation supplied later by an operator.
    """

    id: str
    start_time: datetime
    end_time: datetime
    duration: float
    severity: GapSeverity
    reason: str | None = None


@dataclass(frozen=True)
class CustodyHandoff:
    """Transfer of possession between two adjacent location changes.

    Attributes:
        id: Derived from the later event id.
        timestamp: When the receiving side recorded the change.
        from_person: Performer of the earlier event.
        to_person: Performer of the later event.
        from_location: Location of the earlier event.
        to_location: Location of the later event.
        qr_code_scanned: Copied from the later event.
        duration: Minutes between the two events.
        witnessed: Whether a witness signed off (not captured yet).
    """

    id: str
    timestamp: datetime
    from_person: str
    to_person: str
    from_location: str
    to_location: str
    qr_code_scanned: bool
    duration: float
    witnessed: bool = False


@dataclass(frozen=True)
class ChainOfCustodyIntegrity:
    """Custody analysis of a trail.

    Attributes:
        status: broken if any high gap, questionable if any gap, else intact.
        gaps: Detected gaps in timeline order.
        handoffs: Detected handoffs in timeline order.
        total_handoffs: len(handoffs).
        average_handoff_time: Mean handoff duration in minutes (0 when none).
        longest_gap: Longest gap duration in minutes (0 when none).
    """

    status: IntegrityStatus
    gaps: list[CustodyGap] = field(default_factory=list)
    handoffs: list[CustodyHandoff] = field(default_factory=list)
    total_handoffs: int = 0
    average_handoff_time: float = 0.0
    longest_gap: float = 0.0


@dataclass(frozen=True)
class QualityMetrics:
    """Handling quality scores, each in [0, 100]."""

    handling_score: float
    timeliness_score: float
    documentation_score: float
    overall_score: float
    category: Literal["excellent", "good", "average", "poor"]


@dataclass(frozen=True)
class ComplianceViolation:
    """A breach of a baseline or regulatory rule.

    Resolution is a one-way transition (unresolved -> resolved) performed
    with ``resolve``, which always sets the resolver and resolution time.

    Attributes:
        id: Deterministic id derived from the trail content that caused it.
        type: Violation category.
        severity: low | medium | high | critical.
        description: Human-readable description.
        timestamp: When the violating condition occurred.
        requirement_id: Regulatory requirement that produced it, None for baseline rules.
        resolved: Whether an operator has resolved it.
        resolved_by: Resolver identity.
        resolved_at: Resolution time (UTC).
        correction_action: What was done to correct it.
    """

    id: str
    type: ViolationType
    severity: Severity
    description: str
    timestamp: datetime
    requirement_id: str | None = None
    resolved: bool = False
    resolved_by: str | None = None
    resolved_at: datetime | None = None
    correction_action: str | None = None

    def resolve(
        self,
        resolved_by: str,
        resolved_at: datetime,
        correction_action: str | None = None,
    ) -> "ComplianceViolation":
        """Return the resolved form of this violation.

        Raises:
            ViolationAlreadyResolvedError: If the violation is already resolved.
        """
        if self.resolved:
            raise ViolationAlreadyResolvedError(
                f"Violation {self.id} was already resolved by {self.resolved_by}",
                violation_id=self.id,
            )
        return dataclasses.replace(
            self,
            resolved=True,
            resolved_by=resolved_by,
            resolved_at=resolved_at,
            correction_action=correction_action,
        )


@dataclass(frozen=True)
class ComplianceStatus:
    """Compliance verdict for one trail."""

    overall: OverallCompliance
    chain_of_custody: IntegrityStatus
    temperature_control: Literal["maintained", "excursion", "unknown"]
    time_requirements: Literal["met", "exceeded", "critical"]
    documentation: Literal["complete", "incomplete", "missing"]
    violations: list[ComplianceViolation] = field(default_factory=list)


@dataclass(frozen=True)
class AuditTrail:
    """Derived chain-of-custody view of one specimen.

    Attributes:
        specimen_id: The specimen.
        accession_number: Human-readable accession number (specimen id when unknown).
        specimen_type: Specimen type used to select applicable requirements.
        events: Well-formed events sorted by (timestamp, sequence).
        chain_of_custody_integrity: Gap and handoff analysis.
        quality_metrics: Quality scores.
        compliance_status: Evaluator verdict.
        skipped_records: Malformed records left out of ``events``.
    """

    specimen_id: str
    accession_number: str
    specimen_type: str | None
    events: list[AuditEventSummary]
    chain_of_custody_integrity: ChainOfCustodyIntegrity
    quality_metrics: QualityMetrics
    compliance_status: ComplianceStatus
    skipped_records: int = 0
