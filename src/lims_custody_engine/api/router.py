"""API router for lims-custody-engine.

All custody engine endpoints are registered here and included in main.py
under the /api/v1 prefix. Routes are thin: all business logic lives in the
recorder, the compliance service and the report aggregator.

Endpoints:
- POST /specimens/{id}/check-in                          — Check in at a station
- POST /specimens/{id}/check-out                         — Check out of a station
- POST /specimens/{id}/location                          — Manual location/status update
- POST /specimens/{id}/audit-events                      — Record a handling event
- GET  /specimens/{id}/audit-trail                       — Derived audit trail
- POST /specimens/{id}/compliance/validate               — Per-requirement checks
- POST /specimens/{id}/violations/{violation_id}/resolve — Resolve a violation
- POST /compliance/reports                               — Generate a report
- GET  /compliance/reports                               — Report history
- GET  /compliance/requirements                          — Requirement catalog
- GET  /registry/locations                               — Locations
- GET  /registry/stations                                — Workflow stations
- GET  /reconciliation                                   — Partial writes
- GET  /events/stream                                    — Live events (server-sent events)

The acting user comes from the X-Actor-Id, X-Actor-Name and X-Actor-Role
headers set by the authenticating gateway.
"""

from collections.abc import AsyncIterator
from typing import Annotated

from fastapi import APIRouter, Depends, FastAPI, Header, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, StreamingResponse

from lims_custody_engine.adapters.identity import set_current_actor
from lims_custody_engine.api.schemas import (
    AuditEventRequest,
    AuditTrailResponse,
    CheckInRequest,
    CheckOutRequest,
    ComplianceReportResponse,
    ComplianceViolationResponse,
    ErrorResponse,
    LocationResponse,
    LocationUpdateRequest,
    ReconciliationEntryResponse,
    ReportRequest,
    RequirementCheckResponse,
    RequirementResponse,
    ResolveViolationRequest,
    StationResponse,
    ValidateComplianceRequest,
)
from lims_custody_engine.audit_trail.stream import EventSummary, Subscription
from lims_custody_engine.container import EngineContainer
from lims_custody_engine.core.errors import (
    CustodyEngineError,
    DomainValidationError,
    InvalidStatusTransitionError,
    LocationNotFoundError,
    PartialWriteError,
    ReportTimeoutError,
    RequirementNotFoundError,
    SpecimenNotFoundError,
    StationNotFoundError,
    StoreUnavailableError,
    UnauthenticatedError,
    ViolationAlreadyResolvedError,
    ViolationNotFoundError,
)
from lims_custody_engine.core.models import Actor, AuditEventSummary, CustodyEvent
from lims_custody_engine.observability import get_logger

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def get_container(request: Request) -> EngineContainer:
    """Return the engine container stored on the application state."""
    return request.app.state.container


async def bind_request_actor(
    x_actor_id: Annotated[str | None, Header()] = None,
    x_actor_name: Annotated[str | None, Header()] = None,
    x_actor_role: Annotated[str | None, Header()] = None,
) -> Actor | None:
    """Bind the acting user from gateway headers for this request.

    Runs in the request's task, so the binding is visible to the
    ContextIdentityProvider for the rest of the request only.
    """
    actor = None
    if x_actor_id:
        actor = Actor(
            id=x_actor_id,
            display_name=x_actor_name or x_actor_id,
            role=x_actor_role or "unknown",
        )
    set_current_actor(actor)
    return actor


router = APIRouter(tags=["custody"], dependencies=[Depends(bind_request_actor)])

Container = Annotated[EngineContainer, Depends(get_container)]


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------

_NOT_FOUND = (
    SpecimenNotFoundError,
    StationNotFoundError,
    LocationNotFoundError,
    RequirementNotFoundError,
    ViolationNotFoundError,
)
_CONFLICT = (InvalidStatusTransitionError, ViolationAlreadyResolvedError)

_STORE_UNAVAILABLE_MESSAGE = "The resource store is temporarily unavailable. Please try again."


def status_code_for(exc: CustodyEngineError) -> int:
    """Map an engine error to its HTTP status code."""
    if isinstance(exc, _NOT_FOUND):
        return 404
    if isinstance(exc, _CONFLICT):
        return 409
    if isinstance(exc, DomainValidationError):
        return 422
    if isinstance(exc, UnauthenticatedError):
        return 401
    if isinstance(exc, StoreUnavailableError):
        return 503
    if isinstance(exc, ReportTimeoutError):
        return 504
    return 500


async def custody_engine_error_handler(request: Request, exc: CustodyEngineError) -> JSONResponse:
    """Render engine errors as ErrorResponse bodies.

    Store errors are reported generically so store internals never reach the
    caller. Partial writes always carry the reconciliation id.
    """
    status_code = status_code_for(exc)

    if isinstance(exc, StoreUnavailableError):
        logger.warning("Resource store unavailable", path=request.url.path, error=exc.message)
        body = ErrorResponse(error=type(exc).__name__, detail=_STORE_UNAVAILABLE_MESSAGE)
    elif isinstance(exc, PartialWriteError):
        body = ErrorResponse(
            error=type(exc).__name__,
            detail=exc.message,
            context={"reconciliation_id": exc.reconciliation_id},
        )
    else:
        body = ErrorResponse(error=type(exc).__name__, detail=exc.message, context=jsonable_encoder(exc.context))

    return JSONResponse(status_code=status_code, content=body.model_dump())


def register_exception_handlers(app: FastAPI) -> None:
    """Install the engine error handler on an application."""
    app.add_exception_handler(CustodyEngineError, custody_engine_error_handler)


# ---------------------------------------------------------------------------
# Custody
# ---------------------------------------------------------------------------


@router.post("/specimens/{specimen_id}/check-in", response_model=CustodyEvent, status_code=201)
async def check_in(specimen_id: str, request: CheckInRequest, container: Container) -> CustodyEvent:
    """Check a specimen in at a workflow station.

    Args:
        specimen_id: The specimen.
        request: Station, QR scan flag and comments.
        container: Injected engine container.

    Returns:
        The recorded custody event.
    """
    logger.info("POST /specimens/check-in", specimen_id=specimen_id, station_id=request.station_id)
    return await container.recorder.record_check_in(
        specimen_id=specimen_id,
        station_id=request.station_id,
        qr_code_scanned=request.qr_code_scanned,
        comments=request.comments,
    )


@router.post("/specimens/{specimen_id}/check-out", response_model=CustodyEvent, status_code=201)
async def check_out(specimen_id: str, request: CheckOutRequest, container: Container) -> CustodyEvent:
    """Check a specimen out of a workflow station."""
    logger.info(
        "POST /specimens/check-out",
        specimen_id=specimen_id,
        from_station_id=request.from_station_id,
        to_station_id=request.to_station_id,
    )
    return await container.recorder.record_check_out(
        specimen_id=specimen_id,
        from_station_id=request.from_station_id,
        to_station_id=request.to_station_id,
        comments=request.comments,
    )


@router.post("/specimens/{specimen_id}/location", response_model=CustodyEvent, status_code=201)
async def update_location(
    specimen_id: str,
    request: LocationUpdateRequest,
    container: Container,
) -> CustodyEvent:
    """Record a manual location and status change."""
    logger.info(
        "POST /specimens/location",
        specimen_id=specimen_id,
        location_id=request.location_id,
        status=request.status,
    )
    return await container.recorder.record_location_update(
        specimen_id=specimen_id,
        location_id=request.location_id,
        status=request.status,
        comments=request.comments,
    )


@router.post("/specimens/{specimen_id}/audit-events", response_model=AuditEventSummary, status_code=201)
async def record_audit_event(
    specimen_id: str,
    request: AuditEventRequest,
    container: Container,
) -> AuditEventSummary:
    """Record a handling event that does not move the specimen."""
    return await container.recorder.record_audit_event(
        specimen_id=specimen_id,
        event_type=request.event_type,
        action=request.action,
        details=request.details,
        outcome=request.outcome,
    )


# ---------------------------------------------------------------------------
# Audit trail and compliance
# ---------------------------------------------------------------------------


@router.get("/specimens/{specimen_id}/audit-trail", response_model=AuditTrailResponse)
async def get_audit_trail(specimen_id: str, container: Container) -> AuditTrailResponse:
    """Return the specimen's derived audit trail with resolutions applied."""
    trail = await container.compliance.get_trail(specimen_id)
    return AuditTrailResponse.model_validate(trail)


@router.post(
    "/specimens/{specimen_id}/compliance/validate",
    response_model=list[RequirementCheckResponse],
)
async def validate_compliance(
    specimen_id: str,
    request: ValidateComplianceRequest,
    container: Container,
) -> list[RequirementCheckResponse]:
    """Check a specimen against each selected requirement separately."""
    checks = await container.compliance.validate_specimen_compliance(specimen_id, request.requirement_ids)
    return [
        RequirementCheckResponse(
            requirement_id=check.requirement.id,
            requirement_name=check.requirement.name,
            compliant=check.compliant,
            violations=[ComplianceViolationResponse.model_validate(v) for v in check.violations],
        )
        for check in checks
    ]


@router.post(
    "/specimens/{specimen_id}/violations/{violation_id}/resolve",
    response_model=ComplianceViolationResponse,
)
async def resolve_violation(
    specimen_id: str,
    violation_id: str,
    request: ResolveViolationRequest,
    container: Container,
) -> ComplianceViolationResponse:
    """Resolve a compliance violation as the current actor."""
    logger.info("POST /violations/resolve", specimen_id=specimen_id, violation_id=violation_id)
    resolved = await container.compliance.resolve_violation(
        specimen_id=specimen_id,
        violation_id=violation_id,
        correction_action=request.correction_action,
    )
    return ComplianceViolationResponse.model_validate(resolved)


@router.post("/compliance/reports", response_model=ComplianceReportResponse, status_code=201)
async def generate_report(request: ReportRequest, container: Container) -> ComplianceReportResponse:
    """Generate a compliance report for a time window."""
    logger.info(
        "POST /compliance/reports",
        report_type=request.report_type,
        start=request.start.isoformat(),
        end=request.end.isoformat(),
    )
    report = await container.reporter.generate_report(
        report_type=request.report_type,
        start=request.start,
        end=request.end,
        deadline_seconds=request.deadline_seconds,
    )
    return ComplianceReportResponse.model_validate(report)


@router.get("/compliance/reports", response_model=list[ComplianceReportResponse])
async def list_reports(container: Container) -> list[ComplianceReportResponse]:
    """Return previously generated reports, oldest first."""
    return [ComplianceReportResponse.model_validate(r) for r in container.reporter.list_reports()]


# ---------------------------------------------------------------------------
# Reference data and operations
# ---------------------------------------------------------------------------


@router.get("/compliance/requirements", response_model=list[RequirementResponse])
async def list_requirements(container: Container) -> list[RequirementResponse]:
    return [RequirementResponse.model_validate(r) for r in container.catalog.list_requirements()]


@router.get("/registry/locations", response_model=list[LocationResponse])
async def list_locations(container: Container) -> list[LocationResponse]:
    return [LocationResponse.model_validate(loc) for loc in container.registry.list_locations()]


@router.get("/registry/stations", response_model=list[StationResponse])
async def list_stations(container: Container) -> list[StationResponse]:
    return [StationResponse.model_validate(s) for s in container.registry.list_stations()]


@router.get("/reconciliation", response_model=list[ReconciliationEntryResponse])
async def list_reconciliation(container: Container) -> list[ReconciliationEntryResponse]:
    """Return partial writes awaiting operator reconciliation."""
    entries = container.recorder.reconciliation_log.entries()
    return [ReconciliationEntryResponse.model_validate(e) for e in entries]


# ---------------------------------------------------------------------------
# Live stream
# ---------------------------------------------------------------------------


def format_sse(summary: EventSummary) -> str:
    """Render one summary as a server-sent event frame."""
    return f"event: {summary.kind}\ndata: {summary.model_dump_json()}\n\n"


async def _event_source(subscription: Subscription) -> AsyncIterator[str]:
    async with subscription:
        async for summary in subscription:
            yield format_sse(summary)


@router.get("/events/stream")
async def stream_events(container: Container) -> StreamingResponse:
    """Stream recorded events and compliance changes as server-sent events.

    A slow client misses messages rather than slowing down recording.
    """
    subscription = container.stream.subscribe()
    return StreamingResponse(_event_source(subscription), media_type="text/event-stream")
