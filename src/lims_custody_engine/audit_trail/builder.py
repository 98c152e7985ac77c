"""Audit Trail Builder — derives a specimen's trail from its audit records.

Given a specimen's audit records, the builder:
1. Converts each record into a typed AuditEventSummary, skipping malformed
   records (unknown event type or outcome, missing timestamp).
2. Sorts the events by (timestamp, sequence), the canonical timeline.
3. Walks adjacent location-change pairs to find handoffs and custody gaps.
4. Scores handling, timeliness and documentation quality.
5. Runs the compliance evaluator with the requirements that apply to the
   specimen's type.

``derive_trail`` and ``apply_event`` are pure. ``build_trail`` only adds the
Resource Store reads. ``apply_event`` extends a cached trail in place of a
full rebuild when the new record sorts last, and falls back to a full
derivation otherwise. Both paths produce equal trails.
"""

import dataclasses
from collections.abc import Iterable

from lims_custody_engine.audit_trail.models import (
    AuditTrail,
    ChainOfCustodyIntegrity,
    ComplianceStatus,
    CustodyGap,
    CustodyHandoff,
    QualityMetrics,
)
from lims_custody_engine.compliance.evaluator import ComplianceEvaluator, event_compliance_flags
from lims_custody_engine.compliance.policy import CompliancePolicy, quality_category
from lims_custody_engine.compliance.requirements import RequirementCatalog
from lims_custody_engine.core.errors import SpecimenNotFoundError
from lims_custody_engine.core.interfaces import IResourceStore
from lims_custody_engine.core.models import (
    AUDIT_EVENT_TYPES,
    DETAIL_LOCATION,
    EVENT_OUTCOMES,
    Actor,
    AuditEventSummary,
    AuditRecord,
    AuditRecordFilter,
    Specimen,
)
from lims_custody_engine.observability import get_logger

logger = get_logger(__name__)

_LOCATION_CHANGED = "location-changed"

UNKNOWN_PERFORMER = Actor(id="unknown", display_name="Unknown")


def to_summary(record: AuditRecord) -> AuditEventSummary | None:
    """Convert an audit record into a typed trail event.

    Args:
        record: The persisted audit record.

    Returns:
        The AuditEventSummary, or None if the record is malformed.
    """
    if (
        record.recorded is None
        or record.event_type not in AUDIT_EVENT_TYPES
        or record.outcome not in EVENT_OUTCOMES
    ):
        return None

    return AuditEventSummary(
        id=record.id,
        specimen_id=record.specimen_id,
        sequence=record.sequence,
        timestamp=record.recorded,
        event_type=record.event_type,
        action=record.action,
        outcome=record.outcome,
        performer=record.agent or UNKNOWN_PERFORMER,
        location=record.details.get(DETAIL_LOCATION),
        details=dict(record.details),
        compliance_flags=event_compliance_flags(record.event_type, record.details, record.outcome),
    )


def _minutes_between(earlier: AuditEventSummary, later: AuditEventSummary) -> float:
    return (later.timestamp - earlier.timestamp).total_seconds() / 60.0


class AuditTrailBuilder:
    """Builds and incrementally updates per-specimen audit trails.

    Args:
        store: Resource Store used by ``build_trail``.
        evaluator: Compliance evaluator run on every derived trail.
        catalog: Requirement catalog used to pick the requirements that apply.
        policy: Gap thresholds and quality penalties.
    """

    def __init__(
        self,
        store: IResourceStore,
        evaluator: ComplianceEvaluator,
        catalog: RequirementCatalog,
        policy: CompliancePolicy | None = None,
    ) -> None:
        """Initialize the builder with its collaborators."""
        self._store = store
        self._evaluator = evaluator
        self._catalog = catalog
        self._policy = policy or CompliancePolicy()

    async def build_trail(self, specimen_id: str) -> AuditTrail:
        """Rebuild a specimen's trail from the Resource Store.

        Args:
            specimen_id: The specimen to rebuild.

        Returns:
            The freshly derived AuditTrail.

        Raises:
            SpecimenNotFoundError: If the store has no such specimen.
            StoreUnavailableError: If the store cannot be reached.
        """
        specimen = await self._store.get_specimen(specimen_id)
        if specimen is None:
            raise SpecimenNotFoundError(
                f"Specimen {specimen_id} not found",
                specimen_id=specimen_id,
            )

        records = await self._store.query_audit_records(AuditRecordFilter(specimen_id=specimen_id))
        trail = self.derive_trail(specimen, records)

        logger.info(
            "Audit trail rebuilt",
            specimen_id=specimen_id,
            event_count=len(trail.events),
            skipped_records=trail.skipped_records,
            integrity=trail.chain_of_custody_integrity.status,
            compliance=trail.compliance_status.overall,
        )
        return trail

    def derive_trail(self, specimen: Specimen, records: Iterable[AuditRecord]) -> AuditTrail:
        """Derive a trail from a specimen snapshot and its audit records.

        Args:
            specimen: Snapshot supplying accession number and specimen type.
            records: The specimen's audit records, in any order.

        Returns:
            The derived AuditTrail.
        """
        events: list[AuditEventSummary] = []
        skipped = 0

        for record in records:
            summary = to_summary(record)
            if summary is None:
                skipped += 1
                logger.warning(
                    "Skipping malformed audit record",
                    specimen_id=specimen.id,
                    record_id=record.id,
                    event_type=record.event_type,
                    outcome=record.outcome,
                )
                continue
            events.append(summary)

        events.sort(key=lambda event: event.sort_key)
        integrity = self.analyze_chain_of_custody(events)
        return self._assemble(
            specimen.id,
            specimen.accession_number or specimen.id,
            specimen.specimen_type,
            events,
            integrity,
            skipped,
        )

    def apply_event(self, trail: AuditTrail, record: AuditRecord) -> AuditTrail:
        """Return the trail with one more audit record applied.

        Args:
            trail: The current trail for the record's specimen.
            record: The newly persisted audit record.

        Returns:
            A new AuditTrail equal to deriving from all records including this one.
        """
        summary = to_summary(record)

        if summary is None:
            logger.warning(
                "Skipping malformed audit record",
                specimen_id=trail.specimen_id,
                record_id=record.id,
                event_type=record.event_type,
                outcome=record.outcome,
            )
            return self._assemble(
                trail.specimen_id,
                trail.accession_number,
                trail.specimen_type,
                trail.events,
                trail.chain_of_custody_integrity,
                trail.skipped_records + 1,
            )

        events = trail.events
        if events and summary.sort_key < events[-1].sort_key:
            # Out of order: the new event changes earlier adjacent pairs.
            reordered = sorted([*events, summary], key=lambda event: event.sort_key)
            return self._assemble(
                trail.specimen_id,
                trail.accession_number,
                trail.specimen_type,
                reordered,
                self.analyze_chain_of_custody(reordered),
                trail.skipped_records,
            )

        integrity = trail.chain_of_custody_integrity
        if events:
            integrity = self._extend_integrity(integrity, events[-1], summary)

        return self._assemble(
            trail.specimen_id,
            trail.accession_number,
            trail.specimen_type,
            [*events, summary],
            integrity,
            trail.skipped_records,
        )

    def analyze_chain_of_custody(self, events: list[AuditEventSummary]) -> ChainOfCustodyIntegrity:
        """Detect handoffs and custody gaps on a sorted event list.

        Every adjacent pair of events where both are location changes is a
        handoff. A handoff longer than the gap threshold is also a gap, with
        high severity above the high-severity threshold.

        Args:
            events: Events sorted by (timestamp, sequence).

        Returns:
            The ChainOfCustodyIntegrity for the timeline.
        """
        gaps: list[CustodyGap] = []
        handoffs: list[CustodyHandoff] = []

        for earlier, later in zip(events, events[1:]):
            pair = self._handoff_and_gap(earlier, later)
            if pair is None:
                continue
            handoff, gap = pair
            handoffs.append(handoff)
            if gap is not None:
                gaps.append(gap)

        return self._integrity(gaps, handoffs)

    def calculate_quality_metrics(
        self,
        events: list[AuditEventSummary],
        integrity: ChainOfCustodyIntegrity,
        skipped_records: int = 0,
    ) -> QualityMetrics:
        """Score handling, timeliness and documentation quality.

        Args:
            events: The trail's well-formed events.
            integrity: Custody analysis of the same events.
            skipped_records: Malformed records left out of the trail.

        Returns:
            QualityMetrics with every score in [0, 100].
        """
        policy = self._policy

        handling = 100.0
        if integrity.status == "broken":
            handling -= policy.broken_integrity_penalty
        elif integrity.status == "questionable":
            handling -= policy.questionable_integrity_penalty
        handling -= policy.failure_event_penalty * sum(1 for e in events if e.outcome == "failure")

        timeliness = 100.0
        if integrity.longest_gap > policy.high_severity_gap_minutes:
            timeliness -= policy.long_gap_timeliness_penalty

        # Extension point: no documentation rubric yet beyond malformed records.
        documentation = 100.0 - policy.malformed_record_penalty * skipped_records

        handling = max(0.0, handling)
        timeliness = max(0.0, timeliness)
        documentation = max(0.0, documentation)
        overall = (handling + timeliness + documentation) / 3

        return QualityMetrics(
            handling_score=handling,
            timeliness_score=timeliness,
            documentation_score=documentation,
            overall_score=overall,
            category=quality_category(overall),
        )

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _handoff_and_gap(
        self,
        earlier: AuditEventSummary,
        later: AuditEventSummary,
    ) -> tuple[CustodyHandoff, CustodyGap | None] | None:
        if earlier.event_type != _LOCATION_CHANGED or later.event_type != _LOCATION_CHANGED:
            return None

        delta = _minutes_between(earlier, later)
        handoff = CustodyHandoff(
            id=f"handoff-{later.id}",
            timestamp=later.timestamp,
            from_person=earlier.performer.display_name,
            to_person=later.performer.display_name,
            from_location=earlier.location or "",
            to_location=later.location or "",
            qr_code_scanned=later.qr_code_scanned,
            duration=delta,
        )

        gap = None
        if delta > self._policy.gap_threshold_minutes:
            gap = CustodyGap(
                id=f"gap-{later.id}",
                start_time=earlier.timestamp,
                end_time=later.timestamp,
                duration=delta,
                severity="high" if delta > self._policy.high_severity_gap_minutes else "medium",
            )
        return handoff, gap

    def _extend_integrity(
        self,
        integrity: ChainOfCustodyIntegrity,
        last: AuditEventSummary,
        new: AuditEventSummary,
    ) -> ChainOfCustodyIntegrity:
        pair = self._handoff_and_gap(last, new)
        if pair is None:
            return integrity
        handoff, gap = pair
        gaps = [*integrity.gaps, gap] if gap is not None else list(integrity.gaps)
        return self._integrity(gaps, [*integrity.handoffs, handoff])

    @staticmethod
    def _integrity(gaps: list[CustodyGap], handoffs: list[CustodyHandoff]) -> ChainOfCustodyIntegrity:
        if any(gap.severity == "high" for gap in gaps):
            status = "broken"
        elif gaps:
            status = "questionable"
        else:
            status = "intact"

        return ChainOfCustodyIntegrity(
            status=status,
            gaps=gaps,
            handoffs=handoffs,
            total_handoffs=len(handoffs),
            average_handoff_time=(
                sum(h.duration for h in handoffs) / len(handoffs) if handoffs else 0.0
            ),
            longest_gap=max((gap.duration for gap in gaps), default=0.0),
        )

    def _assemble(
        self,
        specimen_id: str,
        accession_number: str,
        specimen_type: str | None,
        events: list[AuditEventSummary],
        integrity: ChainOfCustodyIntegrity,
        skipped_records: int,
    ) -> AuditTrail:
        # Evaluation reads events and integrity only, so a placeholder status
        # is safe until the evaluator's verdict replaces it.
        trail = AuditTrail(
            specimen_id=specimen_id,
            accession_number=accession_number,
            specimen_type=specimen_type,
            events=list(events),
            chain_of_custody_integrity=integrity,
            quality_metrics=self.calculate_quality_metrics(events, integrity, skipped_records),
            compliance_status=ComplianceStatus(
                overall="compliant",
                chain_of_custody=integrity.status,
                temperature_control="unknown",
                time_requirements="met",
                documentation="complete",
            ),
            skipped_records=skipped_records,
        )
        status = self._evaluator.evaluate(trail, self._catalog.applicable_requirements(specimen_type))
        return dataclasses.replace(trail, compliance_status=status)
