"""Compliance evaluator — applies baseline and regulatory rules to an audit trail.

Evaluation is a pure function of the trail's events, custody integrity and
specimen type: it reads no clock and persists nothing, and violation ids and
timestamps come from trail content, so evaluating the same trail twice gives
equal results.

Rule sets:
- Baseline (always applied): broken integrity, each high-severity gap, and
  each failed event.
- Per requirement: chain of custody, temperature control, processing and
  storage time limits, and required documentation fields.

Documentation fields are checked through a registry of named checks. Fields
without a registered check are not evaluated (extension point:
``register_documentation_check``).
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from lims_custody_engine.audit_trail.models import (
    AuditTrail,
    ComplianceStatus,
    ComplianceViolation,
)
from lims_custody_engine.compliance.policy import CompliancePolicy
from lims_custody_engine.compliance.requirements import RegulatoryRequirement
from lims_custody_engine.core.models import ComplianceFlag
from lims_custody_engine.observability import get_logger
from lims_custody_engine.registry.locations import LocationRegistry

logger = get_logger(__name__)

DocumentationCheck = Callable[[AuditTrail], bool]

_STORAGE_CATEGORY = "storage"


def event_compliance_flags(
    event_type: str,
    details: dict[str, str],
    outcome: str,
) -> list[ComplianceFlag]:
    """Return the compliance flags raised by a single audit event.

    Args:
        event_type: The event's type.
        details: The event's detail map.
        outcome: success | failure | warning.

    Returns:
        A violation flag for failed events and a warning flag for location
        changes recorded without a QR code scan.
    """
    flags: list[ComplianceFlag] = []

    if outcome == "failure":
        flags.append(
            ComplianceFlag(
                type="violation",
                category="procedure",
                message="Event failed to complete successfully",
                requires_action=True,
            )
        )

    if event_type == "location-changed" and details.get("qr_code_scanned") != "true":
        flags.append(
            ComplianceFlag(
                type="warning",
                category="chain-of-custody",
                message="Location changed without QR code scan",
                requires_action=False,
            )
        )

    return flags


def _handler_identification(trail: AuditTrail) -> bool:
    """Every event names an identified performer."""
    return all(event.performer.id not in ("", "unknown") for event in trail.events)


def _location_tracking(trail: AuditTrail) -> bool:
    """Every location change records where the specimen went."""
    return all(
        event.location
        for event in trail.events
        if event.event_type == "location-changed"
    )


_BUILTIN_DOCUMENTATION_CHECKS: dict[str, DocumentationCheck] = {
    "handler-identification": _handler_identification,
    "location-tracking": _location_tracking,
}


@dataclass(frozen=True)
class RequirementCheck:
    """Outcome of checking one specimen against one requirement."""

    requirement: RegulatoryRequirement
    compliant: bool
    violations: list[ComplianceViolation] = field(default_factory=list)


def _hours(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / 3600.0


class ComplianceEvaluator:
    """Evaluates audit trails against baseline and regulatory rules.

    Args:
        policy: Thresholds for the overall verdict.
        registry: Location registry used to recognise storage locations for
            time limits. Without it, storage time is never measured.
    """

    def __init__(
        self,
        policy: CompliancePolicy | None = None,
        registry: LocationRegistry | None = None,
    ) -> None:
        """Initialize the evaluator with the built-in documentation checks."""
        self._policy = policy or CompliancePolicy()
        self._registry = registry
        self._documentation_checks: dict[str, DocumentationCheck] = dict(_BUILTIN_DOCUMENTATION_CHECKS)

    def register_documentation_check(self, field_name: str, check: DocumentationCheck) -> None:
        """Register or replace the check for a documentation field.

        Args:
            field_name: Documentation field name as used in requirements.
            check: Predicate returning True when the trail satisfies the field.
        """
        self._documentation_checks[field_name] = check
        logger.info("Documentation check registered", field_name=field_name)

    def evaluate_one(self, trail: AuditTrail) -> ComplianceStatus:
        """Evaluate a trail with the baseline rules only."""
        return self.evaluate(trail, [])

    def evaluate(
        self,
        trail: AuditTrail,
        requirements: list[RegulatoryRequirement],
    ) -> ComplianceStatus:
        """Evaluate a trail with the baseline rules plus each requirement's rules.

        Args:
            trail: The derived audit trail. Its compliance_status is ignored.
            requirements: Requirements to apply, in order.

        Returns:
            ComplianceStatus with all violations and the overall verdict.
        """
        violations = self._baseline_violations(trail)
        for requirement in requirements:
            violations.extend(self._requirement_violations(trail, requirement))

        return ComplianceStatus(
            overall=self._overall_verdict(violations),
            chain_of_custody=trail.chain_of_custody_integrity.status,
            temperature_control=self._temperature_status(trail),
            time_requirements="exceeded" if any(v.type == "time" for v in violations) else "met",
            documentation=(
                "incomplete" if any(v.type == "documentation" for v in violations) else "complete"
            ),
            violations=violations,
        )

    def validate_specimen_compliance(
        self,
        trail: AuditTrail,
        requirements: list[RegulatoryRequirement],
    ) -> list[RequirementCheck]:
        """Check a trail against each requirement separately.

        Args:
            trail: The derived audit trail.
            requirements: Requirements to check.

        Returns:
            One RequirementCheck per requirement, in the given order.
        """
        checks: list[RequirementCheck] = []
        for requirement in requirements:
            violations = self._requirement_violations(trail, requirement)
            checks.append(
                RequirementCheck(
                    requirement=requirement,
                    compliant=not violations,
                    violations=violations,
                )
            )
        return checks

    # ------------------------------------------------------------------
    # Baseline rules
    # ------------------------------------------------------------------

    def _baseline_violations(self, trail: AuditTrail) -> list[ComplianceViolation]:
        integrity = trail.chain_of_custody_integrity
        high_gaps = [gap for gap in integrity.gaps if gap.severity == "high"]
        violations: list[ComplianceViolation] = []

        if integrity.status == "broken":
            violations.append(
                ComplianceViolation(
                    id=f"violation-integrity-{trail.specimen_id}",
                    type="chain-of-custody",
                    severity="high",
                    description="Chain of custody integrity compromised",
                    timestamp=high_gaps[0].start_time,
                )
            )

        for gap in high_gaps:
            violations.append(
                ComplianceViolation(
                    id=f"violation-{gap.id}",
                    type="chain-of-custody",
                    severity="medium",
                    description=f"Custody gap of {gap.duration:.1f} minutes detected",
                    timestamp=gap.start_time,
                )
            )

        for event in trail.events:
            if event.outcome == "failure":
                violations.append(
                    ComplianceViolation(
                        id=f"violation-error-{event.id}",
                        type="procedure",
                        severity="medium",
                        description=f"Error occurred during {event.action}",
                        timestamp=event.timestamp,
                    )
                )

        return violations

    # ------------------------------------------------------------------
    # Requirement rules
    # ------------------------------------------------------------------

    def _requirement_violations(
        self,
        trail: AuditTrail,
        requirement: RegulatoryRequirement,
    ) -> list[ComplianceViolation]:
        violations: list[ComplianceViolation] = []
        integrity = trail.chain_of_custody_integrity

        if requirement.chain_of_custody and integrity.status != "intact":
            broken = integrity.status == "broken"
            penalty = requirement.penalties.critical if broken else requirement.penalties.warning
            violations.append(
                ComplianceViolation(
                    id=f"violation-{requirement.id}-custody-{trail.specimen_id}",
                    type="chain-of-custody",
                    severity="critical" if broken else "medium",
                    description=(
                        f"{requirement.name}: chain of custody integrity {integrity.status}. {penalty}"
                    ).strip(),
                    timestamp=integrity.gaps[0].start_time,
                    requirement_id=requirement.id,
                )
            )

        if requirement.temperature_control:
            excursions = [
                event
                for event in trail.events
                if event.event_type == "temperature-recorded" and event.outcome != "success"
            ]
            if excursions:
                violations.append(
                    ComplianceViolation(
                        id=f"violation-{requirement.id}-temperature-{trail.specimen_id}",
                        type="temperature",
                        severity="high",
                        description=(
                            f"{requirement.name}: {len(excursions)} temperature excursion(s) recorded. "
                            f"{requirement.penalties.violation}"
                        ).strip(),
                        timestamp=excursions[0].timestamp,
                        requirement_id=requirement.id,
                    )
                )

        if requirement.time_requirements.enabled and trail.events:
            violations.extend(self._time_violations(trail, requirement))

        if requirement.documentation:
            violation = self._documentation_violation(trail, requirement)
            if violation is not None:
                violations.append(violation)

        return violations

    def _time_violations(
        self,
        trail: AuditTrail,
        requirement: RegulatoryRequirement,
    ) -> list[ComplianceViolation]:
        limits = requirement.time_requirements
        first = trail.events[0].timestamp
        last = trail.events[-1].timestamp
        storage_arrival = self._first_storage_arrival(trail)

        if storage_arrival is None:
            processing_hours = _hours(first, last)
            storage_hours = 0.0
        else:
            processing_hours = _hours(first, storage_arrival)
            storage_hours = _hours(storage_arrival, last)

        violations: list[ComplianceViolation] = []

        if limits.max_processing_time is not None and processing_hours > limits.max_processing_time:
            violations.append(
                ComplianceViolation(
                    id=f"violation-{requirement.id}-processing-time-{trail.specimen_id}",
                    type="time",
                    severity="high",
                    description=(
                        f"{requirement.name}: processing took {processing_hours:.1f}h, "
                        f"limit is {limits.max_processing_time}h. {requirement.penalties.violation}"
                    ).strip(),
                    timestamp=first,
                    requirement_id=requirement.id,
                )
            )

        if (
            storage_arrival is not None
            and limits.max_storage_time is not None
            and storage_hours > limits.max_storage_time
        ):
            violations.append(
                ComplianceViolation(
                    id=f"violation-{requirement.id}-storage-time-{trail.specimen_id}",
                    type="time",
                    severity="high",
                    description=(
                        f"{requirement.name}: stored for {storage_hours:.1f}h, "
                        f"limit is {limits.max_storage_time}h. {requirement.penalties.violation}"
                    ).strip(),
                    timestamp=storage_arrival,
                    requirement_id=requirement.id,
                )
            )

        return violations

    def _documentation_violation(
        self,
        trail: AuditTrail,
        requirement: RegulatoryRequirement,
    ) -> ComplianceViolation | None:
        unmet: list[str] = []
        unverified: list[str] = []

        for field_name in requirement.documentation:
            check = self._documentation_checks.get(field_name)
            if check is None:
                unverified.append(field_name)
            elif not check(trail):
                unmet.append(field_name)

        if unverified:
            logger.debug(
                "Documentation fields have no registered check",
                requirement_id=requirement.id,
                fields=unverified,
            )

        if not unmet:
            return None

        return ComplianceViolation(
            id=f"violation-{requirement.id}-documentation-{trail.specimen_id}",
            type="documentation",
            severity="medium",
            description=(
                f"{requirement.name}: missing documentation {', '.join(unmet)}. "
                f"{requirement.penalties.warning}"
            ).strip(),
            timestamp=trail.events[-1].timestamp if trail.events else datetime.min.replace(tzinfo=UTC),
            requirement_id=requirement.id,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _first_storage_arrival(self, trail: AuditTrail) -> datetime | None:
        if self._registry is None:
            return None
        for event in trail.events:
            if (
                event.event_type == "location-changed"
                and self._registry.category_of(event.location) == _STORAGE_CATEGORY
            ):
                return event.timestamp
        return None

    @staticmethod
    def _temperature_status(trail: AuditTrail) -> str:
        readings = [e for e in trail.events if e.event_type == "temperature-recorded"]
        if not readings:
            return "unknown"
        if any(reading.outcome != "success" for reading in readings):
            return "excursion"
        return "maintained"

    def _overall_verdict(self, violations: list[ComplianceViolation]) -> str:
        critical = sum(1 for v in violations if v.severity == "critical")
        high = sum(1 for v in violations if v.severity == "high")

        if critical > 0 or high > self._policy.max_high_violations:
            return "non-compliant"
        if violations:
            return "warning"
        return "compliant"
