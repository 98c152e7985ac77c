"""Tests for API endpoints (router layer).

Drives the FastAPI app end to end over an in-memory store, with the acting
user supplied through the gateway X-Actor-* headers.

Tests verify:
- Request validation (Pydantic schema enforcement)
- HTTP status codes for each error family
- Response schema shapes
- Actor binding from headers
"""

import json
from collections.abc import Callable
from datetime import datetime, timedelta
from unittest.mock import AsyncMock

import pytest
from conftest import FakeClock
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from lims_custody_engine.adapters.memory_store import InMemoryResourceStore
from lims_custody_engine.api.router import format_sse, status_code_for
from lims_custody_engine.audit_trail.stream import EventSummary
from lims_custody_engine.container import EngineContainer, build_container
from lims_custody_engine.core.errors import (
    PartialWriteError,
    ReportTimeoutError,
    StoreUnavailableError,
    ViolationAlreadyResolvedError,
)
from lims_custody_engine.core.models import Specimen
from lims_custody_engine.main import create_app
from lims_custody_engine.settings import Settings

ACTOR_HEADERS = {"X-Actor-Id": "tech-7", "X-Actor-Name": "Dana Reyes", "X-Actor-Role": "lab-technician"}


@pytest.fixture()
def api_container(settings: Settings, store: InMemoryResourceStore, clock: FakeClock) -> EngineContainer:
    """Container using the request-bound identity provider, as in production."""
    return build_container(settings, store=store, clock=clock)


@pytest.fixture()
def test_app(settings: Settings, api_container: EngineContainer) -> FastAPI:
    """Create the application around the test container."""
    return create_app(settings, container=api_container)


def _client(app: FastAPI) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


class TestCustodyEndpoints:
    """Tests for check-in, check-out, location and audit-event endpoints."""

    @pytest.mark.asyncio()
    async def test_check_in_returns_201_with_event(self, test_app: FastAPI) -> None:
        async with _client(test_app) as client:
            response = await client.post(
                "/api/v1/specimens/SP-1/check-in",
                json={"station_id": "chemistry-analyzer-1", "qr_code_scanned": True},
                headers=ACTOR_HEADERS,
            )

        assert response.status_code == 201
        body = response.json()
        assert body["to_location"] == "chemistry"
        assert body["to_status"] == "available"
        assert body["performed_by"] == {"id": "tech-7", "display_name": "Dana Reyes", "role": "lab-technician"}

    @pytest.mark.asyncio()
    async def test_missing_actor_headers_returns_401(
        self,
        test_app: FastAPI,
        store: InMemoryResourceStore,
    ) -> None:
        async with _client(test_app) as client:
            response = await client.post(
                "/api/v1/specimens/SP-1/check-in",
                json={"station_id": "chemistry-analyzer-1"},
            )

        assert response.status_code == 401
        assert response.json()["error"] == "UnauthenticatedError"
        assert store.count() == 0

    @pytest.mark.asyncio()
    async def test_missing_station_field_returns_422(self, test_app: FastAPI) -> None:
        async with _client(test_app) as client:
            response = await client.post("/api/v1/specimens/SP-1/check-in", json={}, headers=ACTOR_HEADERS)

        assert response.status_code == 422

    @pytest.mark.asyncio()
    async def test_unknown_station_returns_404_with_context(self, test_app: FastAPI) -> None:
        async with _client(test_app) as client:
            response = await client.post(
                "/api/v1/specimens/SP-1/check-in",
                json={"station_id": "centrifuge-9"},
                headers=ACTOR_HEADERS,
            )

        assert response.status_code == 404
        body = response.json()
        assert body["error"] == "StationNotFoundError"
        assert body["context"] == {"station_id": "centrifuge-9"}

    @pytest.mark.asyncio()
    async def test_terminal_specimen_returns_409(
        self,
        test_app: FastAPI,
        store: InMemoryResourceStore,
        make_specimen: Callable[..., Specimen],
    ) -> None:
        store.seed_specimen(make_specimen("SP-9", status="entered-in-error"))

        async with _client(test_app) as client:
            response = await client.post(
                "/api/v1/specimens/SP-9/check-in",
                json={"station_id": "reception-desk"},
                headers=ACTOR_HEADERS,
            )

        assert response.status_code == 409
        assert response.json()["error"] == "InvalidStatusTransitionError"

    @pytest.mark.asyncio()
    async def test_check_out_and_location_update(self, test_app: FastAPI) -> None:
        async with _client(test_app) as client:
            check_out = await client.post(
                "/api/v1/specimens/SP-1/check-out",
                json={"from_station_id": "reception-desk"},
                headers=ACTOR_HEADERS,
            )
            location = await client.post(
                "/api/v1/specimens/SP-1/location",
                json={"location_id": "storage-cold", "status": "available"},
                headers=ACTOR_HEADERS,
            )

        assert check_out.status_code == 201
        assert check_out.json()["to_location"] == "in-transit"
        assert location.status_code == 201
        assert location.json()["from_status"] == "unavailable"

    @pytest.mark.asyncio()
    async def test_audit_event_endpoint(self, test_app: FastAPI) -> None:
        async with _client(test_app) as client:
            created = await client.post(
                "/api/v1/specimens/SP-1/audit-events",
                json={"event_type": "label-printed", "action": "reprint label"},
                headers=ACTOR_HEADERS,
            )
            rejected = await client.post(
                "/api/v1/specimens/SP-1/audit-events",
                json={"event_type": "teleported", "action": "beam"},
                headers=ACTOR_HEADERS,
            )

        assert created.status_code == 201
        assert created.json()["event_type"] == "label-printed"
        assert rejected.status_code == 422
        assert rejected.json()["error"] == "UnknownEventTypeError"


class TestStoreFailures:
    @pytest.mark.asyncio()
    async def test_store_unavailable_returns_503_without_internals(
        self,
        test_app: FastAPI,
        store: InMemoryResourceStore,
    ) -> None:
        store.get_specimen = AsyncMock(side_effect=StoreUnavailableError("connect to 10.0.0.7 refused"))  # type: ignore[method-assign]

        async with _client(test_app) as client:
            response = await client.get("/api/v1/specimens/SP-1/audit-trail", headers=ACTOR_HEADERS)

        assert response.status_code == 503
        assert "10.0.0.7" not in response.text

    @pytest.mark.asyncio()
    async def test_partial_write_returns_500_with_reconciliation_id(
        self,
        test_app: FastAPI,
        store: InMemoryResourceStore,
    ) -> None:
        store.update_specimen = AsyncMock(side_effect=StoreUnavailableError("write failed"))  # type: ignore[method-assign]

        async with _client(test_app) as client:
            response = await client.post(
                "/api/v1/specimens/SP-1/check-in",
                json={"station_id": "reception-desk"},
                headers=ACTOR_HEADERS,
            )
            entries = await client.get("/api/v1/reconciliation")

        assert response.status_code == 500
        reconciliation_id = response.json()["context"]["reconciliation_id"]
        assert [e["id"] for e in entries.json()] == [reconciliation_id]
        assert entries.json()[0]["audit_record_id"] == "audit-1"


class TestComplianceEndpoints:
    @pytest.mark.asyncio()
    async def test_trail_validate_and_resolve(self, test_app: FastAPI, clock: FakeClock) -> None:
        async with _client(test_app) as client:
            await client.post(
                "/api/v1/specimens/SP-1/check-in",
                json={"station_id": "reception-desk", "qr_code_scanned": True},
                headers=ACTOR_HEADERS,
            )
            clock.advance(hours=3)
            await client.post(
                "/api/v1/specimens/SP-1/check-in",
                json={"station_id": "chemistry-analyzer-1", "qr_code_scanned": True},
                headers=ACTOR_HEADERS,
            )

            trail = await client.get("/api/v1/specimens/SP-1/audit-trail")
            checks = await client.post(
                "/api/v1/specimens/SP-1/compliance/validate",
                json={"requirement_ids": ["cap-specimen-handling"]},
            )
            resolved = await client.post(
                "/api/v1/specimens/SP-1/violations/violation-integrity-SP-1/resolve",
                json={"correction_action": "Courier log reviewed"},
                headers={"X-Actor-Id": "qa-2", "X-Actor-Name": "Sam Okafor"},
            )
            again = await client.post(
                "/api/v1/specimens/SP-1/violations/violation-integrity-SP-1/resolve",
                json={},
                headers={"X-Actor-Id": "qa-2"},
            )

        assert trail.status_code == 200
        body = trail.json()
        assert len(body["events"]) == 2
        assert body["chain_of_custody_integrity"]["status"] == "broken"
        assert body["compliance_status"]["overall"] == "non-compliant"

        assert checks.status_code == 200
        assert [(c["requirement_id"], c["compliant"]) for c in checks.json()] == [
            ("cap-specimen-handling", False)
        ]

        assert resolved.status_code == 200
        assert resolved.json()["resolved_by"] == "qa-2"
        assert again.status_code == 409

    @pytest.mark.asyncio()
    async def test_unknown_specimen_trail_returns_404(self, test_app: FastAPI) -> None:
        async with _client(test_app) as client:
            response = await client.get("/api/v1/specimens/SP-404/audit-trail")

        assert response.status_code == 404

    @pytest.mark.asyncio()
    async def test_generate_and_list_reports(self, test_app: FastAPI, base_time: datetime) -> None:
        window = {
            "report_type": "daily",
            "start": base_time.isoformat(),
            "end": (base_time + timedelta(days=1)).isoformat(),
        }

        async with _client(test_app) as client:
            created = await client.post("/api/v1/compliance/reports", json=window, headers=ACTOR_HEADERS)
            inverted = await client.post(
                "/api/v1/compliance/reports",
                json={**window, "start": window["end"], "end": window["start"]},
            )
            history = await client.get("/api/v1/compliance/reports")

        assert created.status_code == 201
        body = created.json()
        assert body["summary"]["compliance_rate"] == 100
        assert body["generated_by"] == "Dana Reyes"
        assert inverted.status_code == 422
        assert [r["id"] for r in history.json()] == [body["id"]]

    @pytest.mark.asyncio()
    async def test_report_window_without_timezone_is_read_as_utc(
        self,
        test_app: FastAPI,
        base_time: datetime,
    ) -> None:
        naive_start = base_time.replace(hour=0, tzinfo=None)
        window = {
            "report_type": "daily",
            "start": naive_start.isoformat(),
            "end": (naive_start + timedelta(days=1)).isoformat(),
        }

        async with _client(test_app) as client:
            await client.post(
                "/api/v1/specimens/SP-1/check-in",
                json={"station_id": "reception-desk", "qr_code_scanned": True},
                headers=ACTOR_HEADERS,
            )
            response = await client.post("/api/v1/compliance/reports", json=window, headers=ACTOR_HEADERS)

        assert response.status_code == 201
        assert response.json()["summary"]["total_specimens"] == 1

    @pytest.mark.asyncio()
    async def test_unknown_specimen_requests_leave_no_locks(
        self,
        test_app: FastAPI,
        api_container: EngineContainer,
    ) -> None:
        async with _client(test_app) as client:
            for i in range(50):
                response = await client.get(f"/api/v1/specimens/nope-{i}/audit-trail")
                assert response.status_code == 404

        assert len(api_container.recorder.locks) == 0


class TestReferenceEndpoints:
    @pytest.mark.asyncio()
    async def test_reference_data_endpoints(self, test_app: FastAPI) -> None:
        async with _client(test_app) as client:
            requirements = await client.get("/api/v1/compliance/requirements")
            locations = await client.get("/api/v1/registry/locations")
            stations = await client.get("/api/v1/registry/stations")
            health = await client.get("/health")

        assert [r["id"] for r in requirements.json()] == ["cap-specimen-handling", "clia-quality-control"]
        assert "storage-cold" in {loc["id"] for loc in locations.json()}
        assert "reception-desk" in {s["id"] for s in stations.json()}
        assert health.json()["status"] == "ok"


class TestErrorMapping:
    def test_status_codes(self) -> None:
        assert status_code_for(ViolationAlreadyResolvedError("x")) == 409
        assert status_code_for(ReportTimeoutError("x")) == 504
        assert status_code_for(PartialWriteError("x", reconciliation_id="r-1")) == 500

    def test_format_sse(self, base_time: datetime) -> None:
        frame = format_sse(
            EventSummary(kind="compliance-flag", specimen_id="SP-1", occurred_at=base_time, payload={"current": "warning"})
        )

        event_line, data_line, *rest = frame.split("\n")
        assert event_line == "event: compliance-flag"
        assert json.loads(data_line.removeprefix("data: "))["payload"] == {"current": "warning"}
        assert rest == ["", ""]
