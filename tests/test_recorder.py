"""Tests for the CustodyEventRecorder.

Covers: check-in/check-out/location update, validation order, rejected
transitions, partial writes, publish ordering, handling events, and
per-specimen serialization under concurrency.
"""

import asyncio
from collections.abc import Callable
from unittest.mock import AsyncMock

import pytest
from conftest import FakeClock

from lims_custody_engine.adapters.identity import StaticIdentityProvider
from lims_custody_engine.adapters.memory_store import InMemoryResourceStore
from lims_custody_engine.container import EngineContainer, build_container
from lims_custody_engine.core.errors import (
    DomainValidationError,
    InvalidStatusTransitionError,
    LocationNotFoundError,
    PartialWriteError,
    SpecimenNotFoundError,
    StationNotFoundError,
    StoreUnavailableError,
    UnauthenticatedError,
    UnknownEventTypeError,
)
from lims_custody_engine.core.models import AuditRecordFilter, Specimen
from lims_custody_engine.core.recorder import KeyedLocks
from lims_custody_engine.settings import Settings


@pytest.fixture()
def anonymous_container(
    settings: Settings,
    store: InMemoryResourceStore,
    clock: FakeClock,
) -> EngineContainer:
    """Container whose identity provider reports no authenticated user."""
    return build_container(settings, store=store, identity=StaticIdentityProvider(None), clock=clock)


class TestCheckIn:
    @pytest.mark.asyncio()
    async def test_check_in_updates_snapshot_and_appends_record(
        self,
        container: EngineContainer,
        store: InMemoryResourceStore,
        clock: FakeClock,
    ) -> None:
        event = await container.recorder.record_check_in(
            "SP-1", "chemistry-analyzer-1", qr_code_scanned=True, comments="Routine panel"
        )

        assert event.to_location == "chemistry"
        assert event.from_location == "reception"
        assert event.to_status == "available"
        assert event.qr_code_scanned is True
        assert event.timestamp == clock()
        assert event.performed_by.id == "tech-7"

        specimen = await store.get_specimen("SP-1")
        assert specimen is not None
        assert specimen.status == "available"
        assert specimen.location_id == "chemistry"
        assert specimen.last_updated == clock()

        records = await store.query_audit_records(AuditRecordFilter(specimen_id="SP-1"))
        assert len(records) == 1
        record = records[0]
        assert record.id == event.audit_record_id
        assert record.event_type == "location-changed"
        assert record.details["location"] == "chemistry"
        assert record.details["qr_code_scanned"] == "true"
        assert record.details["station_id"] == "chemistry-analyzer-1"
        assert record.details["comments"] == "Routine panel"
        assert record.details["custody_event_id"] == event.id

    @pytest.mark.asyncio()
    async def test_check_in_keeps_trail_cache_current(self, container: EngineContainer) -> None:
        await container.recorder.record_check_in("SP-1", "reception-desk", qr_code_scanned=True)

        cached = container.cache.get("SP-1")

        assert cached is not None
        assert len(cached.events) == 1
        assert cached == await container.builder.build_trail("SP-1")

    @pytest.mark.asyncio()
    async def test_entered_in_error_specimen_cannot_be_checked_in(
        self,
        container: EngineContainer,
        store: InMemoryResourceStore,
        make_specimen: Callable[..., Specimen],
    ) -> None:
        """A specimen entered in error is terminal: nothing is written."""
        store.seed_specimen(make_specimen("SP-9", status="entered-in-error"))

        with pytest.raises(InvalidStatusTransitionError):
            await container.recorder.record_check_in("SP-9", "chemistry-analyzer-1")

        assert store.count() == 0
        unchanged = await store.get_specimen("SP-9")
        assert unchanged is not None
        assert unchanged.status == "entered-in-error"
        assert unchanged.location_id == "reception"

    @pytest.mark.asyncio()
    async def test_unknown_specimen_raises(self, container: EngineContainer) -> None:
        with pytest.raises(SpecimenNotFoundError):
            await container.recorder.record_check_in("SP-404", "reception-desk")

    @pytest.mark.asyncio()
    async def test_unknown_station_raises_before_specimen_lookup(self, container: EngineContainer) -> None:
        with pytest.raises(StationNotFoundError):
            await container.recorder.record_check_in("SP-404", "centrifuge-9")

    @pytest.mark.asyncio()
    async def test_unauthenticated_is_checked_first(
        self,
        anonymous_container: EngineContainer,
        store: InMemoryResourceStore,
    ) -> None:
        with pytest.raises(UnauthenticatedError):
            await anonymous_container.recorder.record_check_in("SP-404", "centrifuge-9")

        assert store.count() == 0


class TestCheckOut:
    @pytest.mark.asyncio()
    async def test_check_out_without_destination_is_in_transit(
        self,
        container: EngineContainer,
        store: InMemoryResourceStore,
    ) -> None:
        event = await container.recorder.record_check_out("SP-1", "reception-desk")

        assert event.from_location == "reception"
        assert event.to_location == "in-transit"
        assert event.to_status == "in-transit"
        specimen = await store.get_specimen("SP-1")
        assert specimen is not None
        assert specimen.status == "unavailable"
        assert specimen.location_id == "in-transit"

    @pytest.mark.asyncio()
    async def test_check_out_to_station_is_available_there(
        self,
        container: EngineContainer,
        store: InMemoryResourceStore,
    ) -> None:
        event = await container.recorder.record_check_out(
            "SP-1", "reception-desk", to_station_id="processing-station-1"
        )

        assert event.to_location == "processing"
        assert event.to_status == "available"
        records = await store.query_audit_records(AuditRecordFilter(specimen_id="SP-1"))
        assert records[0].details["from_station_id"] == "reception-desk"
        assert records[0].details["to_station_id"] == "processing-station-1"
        assert records[0].details["qr_code_scanned"] == "false"

    @pytest.mark.asyncio()
    async def test_unknown_destination_station_raises(
        self,
        container: EngineContainer,
        store: InMemoryResourceStore,
    ) -> None:
        with pytest.raises(StationNotFoundError):
            await container.recorder.record_check_out("SP-1", "reception-desk", to_station_id="nowhere")

        assert store.count() == 0


class TestLocationUpdate:
    @pytest.mark.asyncio()
    async def test_location_update_sets_status(
        self,
        container: EngineContainer,
        store: InMemoryResourceStore,
    ) -> None:
        event = await container.recorder.record_location_update(
            "SP-1", "storage-cold", "unavailable", comments="Held for add-on tests"
        )

        assert event.to_location == "storage-cold"
        assert event.from_status == "available"
        assert event.to_status == "unavailable"
        specimen = await store.get_specimen("SP-1")
        assert specimen is not None
        assert specimen.status == "unavailable"

    @pytest.mark.asyncio()
    async def test_unknown_location_raises(self, container: EngineContainer) -> None:
        with pytest.raises(LocationNotFoundError):
            await container.recorder.record_location_update("SP-1", "basement", "available")

    @pytest.mark.asyncio()
    async def test_forbidden_status_change_raises(self, container: EngineContainer) -> None:
        with pytest.raises(InvalidStatusTransitionError):
            await container.recorder.record_location_update("SP-1", "disposal", "entered-in-error")


class TestStoreFailures:
    @pytest.mark.asyncio()
    async def test_snapshot_failure_after_append_is_partial_write(
        self,
        container: EngineContainer,
        store: InMemoryResourceStore,
    ) -> None:
        store.update_specimen = AsyncMock(side_effect=StoreUnavailableError("FHIR server down"))  # type: ignore[method-assign]
        subscription = container.stream.subscribe()

        with pytest.raises(PartialWriteError) as exc_info:
            await container.recorder.record_check_in("SP-1", "chemistry-analyzer-1")

        assert store.count() == 1
        entries = container.recorder.reconciliation_log.entries()
        assert len(entries) == 1
        entry = entries[0]
        assert exc_info.value.reconciliation_id == entry.id
        assert entry.audit_record_id == "audit-1"
        assert entry.intended_location_id == "chemistry"
        assert entry.error == "FHIR server down"
        assert "SP-1" not in container.cache

        message = await subscription.get()
        assert message is not None
        assert message.kind == "partial-write"
        assert message.payload["reconciliation_id"] == entry.id

    @pytest.mark.asyncio()
    async def test_append_failure_writes_nothing(
        self,
        container: EngineContainer,
        store: InMemoryResourceStore,
    ) -> None:
        store.append_audit_record = AsyncMock(side_effect=StoreUnavailableError("timeout"))  # type: ignore[method-assign]

        with pytest.raises(StoreUnavailableError):
            await container.recorder.record_check_in("SP-1", "chemistry-analyzer-1")

        specimen = await store.get_specimen("SP-1")
        assert specimen is not None
        assert specimen.location_id == "reception"
        assert len(container.recorder.reconciliation_log) == 0


class TestPublishing:
    @pytest.mark.asyncio()
    async def test_verdict_change_is_published_after_custody_event(
        self,
        container: EngineContainer,
        clock: FakeClock,
    ) -> None:
        subscription = container.stream.subscribe()

        await container.recorder.record_check_in("SP-1", "reception-desk", qr_code_scanned=True)
        clock.advance(minutes=180)
        second = await container.recorder.record_check_in("SP-1", "chemistry-analyzer-1", qr_code_scanned=True)

        kinds = []
        for _ in range(3):
            message = await subscription.get()
            assert message is not None
            kinds.append(message.kind)
            last = message

        assert kinds == ["custody-event", "custody-event", "compliance-flag"]
        assert last.payload["previous"] == "compliant"
        assert last.payload["current"] == "non-compliant"
        assert last.payload["record_id"] == second.audit_record_id

    @pytest.mark.asyncio()
    async def test_custody_event_payload_is_the_event(self, container: EngineContainer) -> None:
        subscription = container.stream.subscribe()

        event = await container.recorder.record_check_in("SP-1", "reception-desk")

        message = await subscription.get()
        assert message is not None
        assert message.specimen_id == "SP-1"
        assert message.payload["id"] == event.id
        assert message.payload["to_location"] == "reception"


class TestAuditEvents:
    @pytest.mark.asyncio()
    async def test_audit_event_is_recorded_without_snapshot_change(
        self,
        container: EngineContainer,
        store: InMemoryResourceStore,
    ) -> None:
        subscription = container.stream.subscribe()

        summary = await container.recorder.record_audit_event(
            "SP-1",
            "temperature-recorded",
            "fridge reading",
            details={"celsius": "9.5"},
            outcome="warning",
        )

        assert summary.event_type == "temperature-recorded"
        assert summary.outcome == "warning"
        assert summary.details == {"celsius": "9.5"}
        assert summary.performer.id == "tech-7"
        specimen = await store.get_specimen("SP-1")
        assert specimen is not None
        assert specimen.last_updated is None

        trail = container.cache.get("SP-1")
        assert trail is not None
        assert trail.compliance_status.temperature_control == "excursion"

        message = await subscription.get()
        assert message is not None
        assert message.kind == "audit-event"

    @pytest.mark.asyncio()
    async def test_unknown_event_type_raises(self, container: EngineContainer) -> None:
        with pytest.raises(UnknownEventTypeError):
            await container.recorder.record_audit_event("SP-1", "teleported", "beam up")

    @pytest.mark.asyncio()
    async def test_location_change_must_use_custody_operations(self, container: EngineContainer) -> None:
        with pytest.raises(DomainValidationError):
            await container.recorder.record_audit_event("SP-1", "location-changed", "moved")

    @pytest.mark.asyncio()
    async def test_unknown_outcome_raises(
        self,
        container: EngineContainer,
        store: InMemoryResourceStore,
    ) -> None:
        with pytest.raises(DomainValidationError):
            await container.recorder.record_audit_event("SP-1", "quality-check", "hemolysis", outcome="meh")

        assert store.count() == 0


class TestConcurrency:
    @pytest.mark.asyncio()
    async def test_concurrent_events_keep_cache_consistent(
        self,
        container: EngineContainer,
        store: InMemoryResourceStore,
        clock: FakeClock,
        make_specimen: Callable[..., Specimen],
    ) -> None:
        store.seed_specimen(make_specimen("SP-2"))
        stations = ["reception-desk", "processing-station-1", "chemistry-analyzer-1", "hematology-analyzer-1"]

        await asyncio.gather(
            *(
                container.recorder.record_check_in(specimen_id, station, qr_code_scanned=True)
                for specimen_id in ("SP-1", "SP-2")
                for station in stations
            ),
            container.recorder.record_audit_event("SP-1", "label-printed", "reprint"),
        )

        assert store.count() == 9
        for specimen_id in ("SP-1", "SP-2"):
            cached = container.cache.get(specimen_id)
            assert cached is not None
            assert cached == await container.builder.build_trail(specimen_id)
        assert len(container.recorder.locks) == 0


class TestKeyedLocks:
    @pytest.mark.asyncio()
    async def test_same_key_is_serialized_and_released(self) -> None:
        locks = KeyedLocks()
        order: list[str] = []
        first_entered = asyncio.Event()

        async def first() -> None:
            async with locks.hold("SP-1"):
                first_entered.set()
                await asyncio.sleep(0)
                order.append("first")

        async def second() -> None:
            await first_entered.wait()
            async with locks.hold("SP-1"):
                order.append("second")

        await asyncio.gather(first(), second())

        assert order == ["first", "second"]
        assert len(locks) == 0

    @pytest.mark.asyncio()
    async def test_lock_is_dropped_when_block_raises(self) -> None:
        locks = KeyedLocks()

        with pytest.raises(SpecimenNotFoundError):
            async with locks.hold("SP-404"):
                assert len(locks) == 1
                raise SpecimenNotFoundError("Specimen SP-404 not found")

        assert len(locks) == 0

    @pytest.mark.asyncio()
    async def test_unknown_specimens_leave_no_locks(self, container: EngineContainer) -> None:
        for i in range(20):
            with pytest.raises(SpecimenNotFoundError):
                await container.recorder.record_check_in(f"nope-{i}", "reception-desk")
            with pytest.raises(SpecimenNotFoundError):
                await container.compliance.get_trail(f"nope-{i}")

        assert len(container.recorder.locks) == 0
