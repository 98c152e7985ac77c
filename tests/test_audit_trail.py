"""Tests for the Audit Trail Builder.

Covers: canonical ordering, handoff and gap detection, integrity
classification, quality scoring, malformed records, idempotence, and the
equivalence of incremental and full derivation.
"""

from collections.abc import Callable
from datetime import datetime, timedelta

import pytest

from lims_custody_engine.audit_trail.builder import AuditTrailBuilder, to_summary
from lims_custody_engine.audit_trail.cache import TrailCache
from lims_custody_engine.compliance.evaluator import ComplianceEvaluator
from lims_custody_engine.compliance.policy import CompliancePolicy
from lims_custody_engine.compliance.requirements import RequirementCatalog
from lims_custody_engine.container import EngineContainer
from lims_custody_engine.core.errors import SpecimenNotFoundError
from lims_custody_engine.core.models import AuditRecord, Specimen
from lims_custody_engine.registry.locations import LocationRegistry

RecordFactory = Callable[..., AuditRecord]


@pytest.fixture()
def builder(container: EngineContainer) -> AuditTrailBuilder:
    return container.builder


@pytest.fixture()
def specimen(make_specimen: Callable[..., Specimen]) -> Specimen:
    return make_specimen()


class TestTrailDerivation:
    """Scenario and property tests for derive_trail."""

    def test_single_check_in_is_intact_and_compliant(
        self,
        builder: AuditTrailBuilder,
        specimen: Specimen,
        make_record: RecordFactory,
    ) -> None:
        """A single check-in: intact, no gaps, excellent quality, compliant."""
        trail = builder.derive_trail(specimen, [make_record(0)])

        integrity = trail.chain_of_custody_integrity
        assert integrity.status == "intact"
        assert integrity.gaps == []
        assert integrity.total_handoffs == 0
        assert 90 <= trail.quality_metrics.overall_score <= 100
        assert trail.quality_metrics.category == "excellent"
        assert trail.compliance_status.overall == "compliant"
        assert trail.compliance_status.violations == []

    def test_location_changes_three_hours_apart_break_custody(
        self,
        builder: AuditTrailBuilder,
        specimen: Specimen,
        make_record: RecordFactory,
    ) -> None:
        """Two location changes 3 hours apart: one high gap, broken, non-compliant."""
        trail = builder.derive_trail(
            specimen,
            [make_record(0, location="reception"), make_record(180, location="processing")],
        )

        integrity = trail.chain_of_custody_integrity
        assert len(integrity.gaps) == 1
        gap = integrity.gaps[0]
        assert gap.severity == "high"
        assert gap.duration == pytest.approx(180.0)
        assert gap.start_time == trail.events[0].timestamp
        assert gap.end_time == trail.events[1].timestamp
        assert integrity.status == "broken"
        assert integrity.longest_gap == pytest.approx(180.0)

        violations = trail.compliance_status.violations
        assert any(v.type == "chain-of-custody" and v.severity == "high" for v in violations)
        assert trail.compliance_status.overall == "non-compliant"

        assert trail.quality_metrics.handling_score == 70
        assert trail.quality_metrics.timeliness_score == 75

    def test_failed_event_costs_handling_and_adds_procedure_violation(
        self,
        builder: AuditTrailBuilder,
        specimen: Specimen,
        make_record: RecordFactory,
    ) -> None:
        """One failed event: handling 90, one medium procedure violation."""
        trail = builder.derive_trail(
            specimen,
            [make_record(0, event_type="quality-check", outcome="failure", action="hemolysis check")],
        )

        assert trail.quality_metrics.handling_score == 90
        procedure = [v for v in trail.compliance_status.violations if v.type == "procedure"]
        assert len(procedure) == 1
        assert procedure[0].severity == "medium"
        assert procedure[0].description == "Error occurred during hemolysis check"
        assert trail.compliance_status.overall == "warning"
        assert trail.events[0].compliance_flags[0].type == "violation"

    def test_gap_threshold_is_exclusive(
        self,
        builder: AuditTrailBuilder,
        specimen: Specimen,
        make_record: RecordFactory,
    ) -> None:
        trail = builder.derive_trail(specimen, [make_record(0), make_record(30)])

        assert trail.chain_of_custody_integrity.gaps == []
        assert trail.chain_of_custody_integrity.total_handoffs == 1
        assert trail.chain_of_custody_integrity.status == "intact"

    def test_medium_gap_is_questionable(
        self,
        builder: AuditTrailBuilder,
        specimen: Specimen,
        make_record: RecordFactory,
    ) -> None:
        trail = builder.derive_trail(specimen, [make_record(0), make_record(45)])

        integrity = trail.chain_of_custody_integrity
        assert [gap.severity for gap in integrity.gaps] == ["medium"]
        assert integrity.status == "questionable"
        assert trail.quality_metrics.handling_score == 85
        assert trail.quality_metrics.timeliness_score == 100

    def test_handoffs_need_adjacent_location_changes(
        self,
        builder: AuditTrailBuilder,
        specimen: Specimen,
        make_record: RecordFactory,
    ) -> None:
        """An intervening non-location event breaks the pair."""
        trail = builder.derive_trail(
            specimen,
            [
                make_record(0),
                make_record(100, event_type="temperature-recorded", location=None),
                make_record(200, location="chemistry"),
            ],
        )

        assert trail.chain_of_custody_integrity.handoffs == []
        assert trail.chain_of_custody_integrity.gaps == []

    def test_handoff_carries_performers_locations_and_scan_flag(
        self,
        builder: AuditTrailBuilder,
        specimen: Specimen,
        make_record: RecordFactory,
    ) -> None:
        trail = builder.derive_trail(
            specimen,
            [
                make_record(0, location="reception"),
                make_record(10, location="processing", qr_code_scanned=False),
                make_record(30, location="chemistry"),
            ],
        )

        handoffs = trail.chain_of_custody_integrity.handoffs
        assert [(h.from_location, h.to_location) for h in handoffs] == [
            ("reception", "processing"),
            ("processing", "chemistry"),
        ]
        assert [h.qr_code_scanned for h in handoffs] == [False, True]
        assert trail.chain_of_custody_integrity.average_handoff_time == pytest.approx(15.0)
        assert handoffs[0].from_person == "Dana Reyes"

    def test_events_sorted_by_timestamp_then_sequence(
        self,
        builder: AuditTrailBuilder,
        specimen: Specimen,
        make_record: RecordFactory,
    ) -> None:
        first = make_record(10)
        second = make_record(0)
        tie = make_record(10)

        trail = builder.derive_trail(specimen, [tie, first, second])

        assert [e.id for e in trail.events] == [second.id, first.id, tie.id]

    def test_malformed_records_are_skipped_with_documentation_penalty(
        self,
        builder: AuditTrailBuilder,
        specimen: Specimen,
        make_record: RecordFactory,
    ) -> None:
        unknown_type = make_record(5).model_copy(update={"event_type": "teleported"})
        no_timestamp = make_record(6).model_copy(update={"recorded": None})

        trail = builder.derive_trail(specimen, [make_record(0), unknown_type, no_timestamp])

        assert len(trail.events) == 1
        assert trail.skipped_records == 2
        assert trail.quality_metrics.documentation_score == 80

    def test_scores_are_floored_at_zero(
        self,
        builder: AuditTrailBuilder,
        specimen: Specimen,
        make_record: RecordFactory,
    ) -> None:
        records = [make_record(i, event_type="error-occurred", outcome="failure") for i in range(15)]

        metrics = builder.derive_trail(specimen, records).quality_metrics

        assert metrics.handling_score == 0
        for score in (
            metrics.handling_score,
            metrics.timeliness_score,
            metrics.documentation_score,
            metrics.overall_score,
        ):
            assert 0 <= score <= 100

    def test_derivation_is_idempotent(
        self,
        builder: AuditTrailBuilder,
        specimen: Specimen,
        make_record: RecordFactory,
    ) -> None:
        records = [make_record(0), make_record(50), make_record(300), make_record(310, outcome="failure")]

        assert builder.derive_trail(specimen, records) == builder.derive_trail(specimen, records)


class TestIncrementalUpdate:
    """apply_event must agree with a full derivation."""

    def _records(self, make_record: RecordFactory) -> list[AuditRecord]:
        return [
            make_record(0, location="reception"),
            make_record(20, location="processing"),
            make_record(200, location="chemistry"),
            make_record(230, event_type="temperature-recorded", outcome="warning", location=None),
            make_record(240, location="storage-cold"),
            make_record(280, location="storage-cold", outcome="failure"),
        ]

    def test_apply_event_matches_full_build_at_every_step(
        self,
        builder: AuditTrailBuilder,
        specimen: Specimen,
        make_record: RecordFactory,
    ) -> None:
        records = self._records(make_record)

        trail = builder.derive_trail(specimen, [])
        for n, record in enumerate(records, start=1):
            trail = builder.apply_event(trail, record)
            assert trail == builder.derive_trail(specimen, records[:n])

    def test_out_of_order_event_falls_back_to_full_derivation(
        self,
        builder: AuditTrailBuilder,
        specimen: Specimen,
        make_record: RecordFactory,
    ) -> None:
        records = self._records(make_record)
        late = make_record(100, location="hematology")

        incremental = builder.apply_event(builder.derive_trail(specimen, records), late)

        assert incremental == builder.derive_trail(specimen, [*records, late])
        assert [e.timestamp for e in incremental.events] == sorted(e.timestamp for e in incremental.events)

    def test_malformed_event_only_bumps_skipped_count(
        self,
        builder: AuditTrailBuilder,
        specimen: Specimen,
        make_record: RecordFactory,
    ) -> None:
        records = self._records(make_record)
        bad = make_record(400).model_copy(update={"outcome": "exploded"})

        incremental = builder.apply_event(builder.derive_trail(specimen, records), bad)

        assert incremental == builder.derive_trail(specimen, [*records, bad])
        assert incremental.skipped_records == 1


class TestBuildTrail:
    """build_trail reads the specimen and its records from the store."""

    @pytest.mark.asyncio()
    async def test_build_trail_reads_store(
        self,
        container: EngineContainer,
        make_record: RecordFactory,
    ) -> None:
        await container.store.append_audit_record(make_record(0))
        await container.store.append_audit_record(make_record(180, location="processing"))

        trail = await container.builder.build_trail("SP-1")

        assert trail.accession_number == "ACC-SP-1"
        assert trail.specimen_type == "blood"
        assert len(trail.events) == 2
        assert trail.chain_of_custody_integrity.status == "broken"

    @pytest.mark.asyncio()
    async def test_build_trail_unknown_specimen_raises(self, container: EngineContainer) -> None:
        with pytest.raises(SpecimenNotFoundError):
            await container.builder.build_trail("SP-404")


class TestSummaryConversion:
    def test_missing_agent_becomes_unknown_performer(self, make_record: RecordFactory) -> None:
        record = make_record(0).model_copy(update={"agent": None})

        summary = to_summary(record)

        assert summary is not None
        assert summary.performer.id == "unknown"

    def test_location_change_without_scan_raises_warning_flag(self, make_record: RecordFactory) -> None:
        summary = to_summary(make_record(0, qr_code_scanned=False))

        assert summary is not None
        assert [(f.type, f.category) for f in summary.compliance_flags] == [("warning", "chain-of-custody")]


class TestTrailCache:
    def test_put_get_invalidate(
        self,
        builder: AuditTrailBuilder,
        specimen: Specimen,
        make_record: RecordFactory,
    ) -> None:
        cache = TrailCache()
        trail = builder.derive_trail(specimen, [make_record(0)])

        cache.put(trail)

        assert cache.get("SP-1") is trail
        assert "SP-1" in cache
        assert cache.specimen_ids() == ["SP-1"]
        assert cache.snapshot() == {"SP-1": trail}
        assert cache.invalidate("SP-1") is True
        assert cache.invalidate("SP-1") is False
        assert cache.get("SP-1") is None


def test_custom_policy_thresholds_apply(
    specimen: Specimen,
    make_record: RecordFactory,
    base_time: datetime,
) -> None:
    """A stricter gap threshold turns a 20-minute handoff into a gap."""
    policy = CompliancePolicy(gap_threshold_minutes=10, high_severity_gap_minutes=15)
    builder = AuditTrailBuilder(
        store=None,  # type: ignore[arg-type]
        evaluator=ComplianceEvaluator(policy, LocationRegistry()),
        catalog=RequirementCatalog([]),
        policy=policy,
    )

    trail = builder.derive_trail(specimen, [make_record(0), make_record(20)])

    assert trail.chain_of_custody_integrity.status == "broken"
    assert trail.chain_of_custody_integrity.gaps[0].start_time == base_time
    assert trail.chain_of_custody_integrity.gaps[0].end_time == base_time + timedelta(minutes=20)
