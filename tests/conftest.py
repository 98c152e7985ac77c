"""Test fixtures for lims-custody-engine.

Provides:
- base_time: A fixed UTC timestamp all scenarios are built around
- clock: A controllable clock injected into the recorder, service and reporter
- actor: The authenticated lab technician
- store: An InMemoryResourceStore seeded with specimen SP-1 (blood)
- container: A fully wired EngineContainer over the seeded store
- make_record: Factory for AuditRecord test data
- make_specimen: Factory for Specimen snapshots
"""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import pytest

from lims_custody_engine.adapters.identity import StaticIdentityProvider
from lims_custody_engine.adapters.memory_store import InMemoryResourceStore
from lims_custody_engine.container import EngineContainer, build_container
from lims_custody_engine.core.models import Actor, AuditRecord, Specimen
from lims_custody_engine.settings import Settings

SPECIMEN_ID = "SP-1"


class FakeClock:
    """Clock returning a settable time; ``advance`` moves it forward."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture()
def base_time() -> datetime:
    """Return a fixed UTC timestamp for consistent test assertions."""
    return datetime(2026, 3, 2, 8, 0, tzinfo=UTC)


@pytest.fixture()
def clock(base_time: datetime) -> FakeClock:
    return FakeClock(base_time)


@pytest.fixture()
def actor() -> Actor:
    """Return the authenticated lab technician used by service tests."""
    return Actor(id="tech-7", display_name="Dana Reyes", role="lab-technician")


@pytest.fixture()
def make_specimen() -> Callable[..., Specimen]:
    """Return a factory for Specimen snapshots."""

    def _make(
        specimen_id: str = SPECIMEN_ID,
        status: str | None = "available",
        location_id: str | None = "reception",
        specimen_type: str | None = "blood",
    ) -> Specimen:
        return Specimen(
            id=specimen_id,
            accession_number=f"ACC-{specimen_id}",
            status=status,
            location_id=location_id,
            specimen_type=specimen_type,
        )

    return _make


@pytest.fixture()
def make_record(base_time: datetime) -> Callable[..., AuditRecord]:
    """Return a factory for audit records placed ``minutes`` after base_time."""
    counter = {"sequence": 0}

    def _make(
        minutes: float = 0,
        event_type: str = "location-changed",
        outcome: str = "success",
        location: str | None = "reception",
        qr_code_scanned: bool = True,
        specimen_id: str = SPECIMEN_ID,
        performer: Actor | None = None,
        action: str = "check-in",
    ) -> AuditRecord:
        counter["sequence"] += 1
        sequence = counter["sequence"]
        details = {"qr_code_scanned": "true" if qr_code_scanned else "false"}
        if location is not None:
            details["location"] = location
        return AuditRecord(
            id=f"rec-{sequence}",
            specimen_id=specimen_id,
            sequence=sequence,
            recorded=base_time + timedelta(minutes=minutes),
            event_type=event_type,
            action=action,
            outcome=outcome,
            agent=performer or Actor(id="tech-7", display_name="Dana Reyes", role="lab-technician"),
            details=details,
        )

    return _make


@pytest.fixture()
def store(make_specimen: Callable[..., Specimen]) -> InMemoryResourceStore:
    """Create an in-memory store holding one available blood specimen at reception."""
    memory_store = InMemoryResourceStore()
    memory_store.seed_specimen(make_specimen())
    return memory_store


@pytest.fixture()
def settings() -> Settings:
    return Settings(resource_store_url="", registry_file="", requirements_file="")


@pytest.fixture()
def container(
    settings: Settings,
    store: InMemoryResourceStore,
    actor: Actor,
    clock: FakeClock,
) -> EngineContainer:
    """Create a fully wired engine over the seeded store with an authenticated actor."""
    return build_container(settings, store=store, identity=StaticIdentityProvider(actor), clock=clock)
