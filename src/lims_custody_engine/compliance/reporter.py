"""Compliance Report Aggregator — time-windowed compliance reports.

Scans every specimen with audit activity inside a reporting window, derives
and evaluates each specimen's trail independently, and aggregates:
- compliant / total specimen counts and the compliance rate
- violation counts (total and critical) and the violation list
- average handling time (first to last event, in hours)
- trends against the previous report of the same type
- rule-based recommendations

Generation is read-only and holds no per-specimen lock. It may be bounded by
a deadline. On expiry the partial report is discarded and
ReportTimeoutError is raised; nothing is added to the report history.
"""

import asyncio
import uuid
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Literal, get_args

from lims_custody_engine.audit_trail.builder import AuditTrailBuilder
from lims_custody_engine.audit_trail.models import AuditTrail, ComplianceViolation
from lims_custody_engine.core.errors import DomainValidationError, ReportTimeoutError
from lims_custody_engine.core.interfaces import IIdentityProvider, IResourceStore
from lims_custody_engine.core.models import AuditRecord, AuditRecordFilter, Specimen, as_utc
from lims_custody_engine.observability import get_logger

logger = get_logger(__name__)

ReportType = Literal["daily", "weekly", "monthly", "custom"]
TrendDirection = Literal["improving", "stable", "declining"]

REPORT_TYPES: frozenset[str] = frozenset(get_args(ReportType))

SYSTEM_AUTHOR = "System"

RECOMMEND_PROCEDURE_REVIEW = "Review and strengthen specimen handling procedures"
RECOMMEND_QR_SCANNING = "Implement mandatory QR code scanning for all specimen transfers"
RECOMMEND_CUSTODY_TRAINING = "Provide additional training on chain of custody procedures"
RECOMMEND_WORKFLOW_REVIEW = "Review workflow efficiency and identify bottlenecks"
RECOMMEND_CONTINUE = "Continue current excellent compliance practices"

# Compliance rate below which handling procedures should be reviewed
_PROCEDURE_REVIEW_RATE = 90.0


@dataclass(frozen=True)
class ComplianceTrend:
    """Change of one report metric versus the previous report of the same type.

    Attributes:
        metric: Metric name.
        period: Human-readable reporting window.
        value: Metric value in this report.
        change: value minus the previous report's value (0 when none).
        trend: improving, stable, or declining.
    """

    metric: str
    period: str
    value: float
    change: float
    trend: TrendDirection


@dataclass(frozen=True)
class ComplianceReportSummary:
    """Headline numbers of a compliance report."""

    total_specimens: int
    compliant_specimens: int
    violations_count: int
    critical_violations: int
    average_handling_time: float
    compliance_rate: float


@dataclass(frozen=True)
class ComplianceReport:
    """Immutable compliance report over a time window.

    Attributes:
        id: Report identifier.
        report_type: daily | weekly | monthly | custom.
        period_start: Inclusive window start.
        period_end: Inclusive window end.
        summary: Aggregated counts and rates.
        violations: Every violation found on in-scope trails.
        trends: Metric changes versus the previous report of the same type.
        recommendations: Rule-based recommendations, in fixed order.
        generated_at: Generation time (UTC).
        generated_by: Display name of the requesting actor, or "System".
    """

    id: str
    report_type: ReportType
    period_start: datetime
    period_end: datetime
    summary: ComplianceReportSummary
    violations: list[ComplianceViolation] = field(default_factory=list)
    trends: list[ComplianceTrend] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
    generated_at: datetime | None = None
    generated_by: str = SYSTEM_AUTHOR


def generate_recommendations(violations: list[ComplianceViolation], compliance_rate: float) -> list[str]:
    """Return deterministic recommendations for a report.

    Args:
        violations: Violations found in the window.
        compliance_rate: Percentage of compliant specimens.

    Returns:
        Recommendations in fixed rule order. Never empty.
    """
    recommendations: list[str] = []

    if compliance_rate < _PROCEDURE_REVIEW_RATE:
        recommendations.append(RECOMMEND_PROCEDURE_REVIEW)

    if any(v.type == "chain-of-custody" for v in violations):
        recommendations.append(RECOMMEND_QR_SCANNING)
        recommendations.append(RECOMMEND_CUSTODY_TRAINING)

    if any(v.type == "time" for v in violations):
        recommendations.append(RECOMMEND_WORKFLOW_REVIEW)

    if not recommendations:
        recommendations.append(RECOMMEND_CONTINUE)

    return recommendations


def _direction(change: float, higher_is_better: bool) -> TrendDirection:
    if change == 0:
        return "stable"
    if (change > 0) == higher_is_better:
        return "improving"
    return "declining"


def _handling_hours(trail: AuditTrail) -> float:
    if len(trail.events) < 2:
        return 0.0
    return (trail.events[-1].timestamp - trail.events[0].timestamp).total_seconds() / 3600.0


class ComplianceReportAggregator:
    """Generates compliance reports and keeps their history.

    Args:
        store: Resource Store queried for audit records and specimen snapshots.
        builder: Trail builder used to derive and evaluate each specimen.
        identity: Identity provider naming the report author.
        default_deadline_seconds: Deadline applied when a call passes none.
        clock: Returns the current UTC time. Injectable for tests.
    """

    def __init__(
        self,
        store: IResourceStore,
        builder: AuditTrailBuilder,
        identity: IIdentityProvider,
        default_deadline_seconds: float | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the aggregator with an empty report history."""
        self._store = store
        self._builder = builder
        self._identity = identity
        self._default_deadline_seconds = default_deadline_seconds
        self._clock = clock or (lambda: datetime.now(UTC))
        self._reports: list[ComplianceReport] = []

    def list_reports(self) -> list[ComplianceReport]:
        """Return previously generated reports, oldest first."""
        return list(self._reports)

    async def generate_report(
        self,
        report_type: str,
        start: datetime,
        end: datetime,
        deadline_seconds: float | None = None,
    ) -> ComplianceReport:
        """Generate a compliance report for a time window.

        Args:
            report_type: daily | weekly | monthly | custom.
            start: Inclusive window start. Naive values are taken as UTC.
            end: Inclusive window end. Naive values are taken as UTC.
            deadline_seconds: Optional time limit for the whole generation.

        Returns:
            The new ComplianceReport, also appended to the history.

        Raises:
            DomainValidationError: On an unknown report type or start after end.
            ReportTimeoutError: If the deadline expires before the report is complete.
            StoreUnavailableError: If the Resource Store cannot be reached.
        """
        if report_type not in REPORT_TYPES:
            raise DomainValidationError(
                f"Unknown report type '{report_type}'. Expected one of {sorted(REPORT_TYPES)}",
                report_type=report_type,
            )
        start = as_utc(start)
        end = as_utc(end)
        if start > end:
            raise DomainValidationError(
                "Report window start must not be after its end",
                start=start.isoformat(),
                end=end.isoformat(),
            )

        deadline = deadline_seconds if deadline_seconds is not None else self._default_deadline_seconds

        try:
            async with asyncio.timeout(deadline):
                report = await self._build_report(report_type, start, end)
        except TimeoutError as exc:
            logger.warning(
                "Compliance report generation timed out",
                report_type=report_type,
                deadline_seconds=deadline,
            )
            raise ReportTimeoutError(
                f"Report generation exceeded its {deadline}s deadline",
                report_type=report_type,
                deadline_seconds=deadline,
            ) from exc

        self._reports.append(report)
        logger.info(
            "Compliance report generated",
            report_id=report.id,
            report_type=report_type,
            total_specimens=report.summary.total_specimens,
            compliance_rate=report.summary.compliance_rate,
            violations_count=report.summary.violations_count,
        )
        return report

    async def _build_report(self, report_type: str, start: datetime, end: datetime) -> ComplianceReport:
        records = await self._store.query_audit_records(AuditRecordFilter(recorded_before=end))

        by_specimen: dict[str, list[AuditRecord]] = defaultdict(list)
        for record in records:
            by_specimen[record.specimen_id].append(record)

        violations: list[ComplianceViolation] = []
        total_specimens = 0
        compliant_specimens = 0
        critical_violations = 0
        total_handling_hours = 0.0

        for specimen_id in sorted(by_specimen):
            specimen = await self._store.get_specimen(specimen_id) or Specimen(id=specimen_id)
            trail = self._builder.derive_trail(specimen, by_specimen[specimen_id])

            if not any(start <= event.timestamp <= end for event in trail.events):
                continue

            total_specimens += 1
            status = trail.compliance_status
            if status.overall == "compliant":
                compliant_specimens += 1
            violations.extend(status.violations)
            critical_violations += sum(1 for v in status.violations if v.severity == "critical")
            total_handling_hours += _handling_hours(trail)

        compliance_rate = compliant_specimens / total_specimens * 100 if total_specimens else 100.0
        average_handling_time = total_handling_hours / total_specimens if total_specimens else 0.0

        summary = ComplianceReportSummary(
            total_specimens=total_specimens,
            compliant_specimens=compliant_specimens,
            violations_count=len(violations),
            critical_violations=critical_violations,
            average_handling_time=average_handling_time,
            compliance_rate=compliance_rate,
        )

        actor = await self._identity.current_actor()

        return ComplianceReport(
            id=str(uuid.uuid4()),
            report_type=report_type,
            period_start=start,
            period_end=end,
            summary=summary,
            violations=violations,
            trends=self._trends(report_type, start, end, summary),
            recommendations=generate_recommendations(violations, compliance_rate),
            generated_at=self._clock(),
            generated_by=actor.display_name if actor is not None else SYSTEM_AUTHOR,
        )

    def _trends(
        self,
        report_type: str,
        start: datetime,
        end: datetime,
        summary: ComplianceReportSummary,
    ) -> list[ComplianceTrend]:
        previous = next((r for r in reversed(self._reports) if r.report_type == report_type), None)
        period = f"{start.date().isoformat()} - {end.date().isoformat()}"

        metrics: list[tuple[str, float, float | None, bool]] = [
            (
                "Compliance Rate",
                summary.compliance_rate,
                previous.summary.compliance_rate if previous else None,
                True,
            ),
            (
                "Violations",
                float(summary.violations_count),
                float(previous.summary.violations_count) if previous else None,
                False,
            ),
            (
                "Average Handling Time",
                summary.average_handling_time,
                previous.summary.average_handling_time if previous else None,
                False,
            ),
        ]

        trends: list[ComplianceTrend] = []
        for metric, value, previous_value, higher_is_better in metrics:
            change = value - previous_value if previous_value is not None else 0.0
            trends.append(
                ComplianceTrend(
                    metric=metric,
                    period=period,
                    value=value,
                    change=change,
                    trend=_direction(change, higher_is_better),
                )
            )
        return trends
