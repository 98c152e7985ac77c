"""Custody Event Recorder — validates and persists custody transitions.

Operations:
- record_check_in: specimen arrives at a workflow station
- record_check_out: specimen leaves a station, to another station or in transit
- record_location_update: manual location and status change
- record_audit_event: non-custody handling event (temperature reading,
  quality check, label printed, ...), no snapshot change

Validation order is actor, then station or location, then specimen, then the
status transition. Nothing is written until all of them pass.

Write protocol: the audit record is appended first, then the specimen
snapshot is updated. The record log is the source of truth, so a failed
snapshot update after a successful append is recoverable: it is written to
the ReconciliationLog, announced on the stream as ``partial-write``, and
raised as PartialWriteError.

Every operation on one specimen runs under that specimen's lock, covering
validation, writes, the trail cache update and publishing. Different
specimens never share a lock.
"""

import asyncio
import uuid
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime

from lims_custody_engine.audit_trail.builder import AuditTrailBuilder, to_summary
from lims_custody_engine.audit_trail.cache import TrailCache
from lims_custody_engine.audit_trail.models import AuditTrail
from lims_custody_engine.audit_trail.stream import EventSummary, LiveEventStream
from lims_custody_engine.core.errors import (
    DomainValidationError,
    PartialWriteError,
    SpecimenNotFoundError,
    StoreUnavailableError,
    UnauthenticatedError,
    UnknownEventTypeError,
)
from lims_custody_engine.core.interfaces import IIdentityProvider, IResourceStore
from lims_custody_engine.core.models import (
    AUDIT_EVENT_TYPES,
    DETAIL_COMMENTS,
    DETAIL_CUSTODY_EVENT_ID,
    DETAIL_FROM_LOCATION,
    DETAIL_FROM_STATUS,
    DETAIL_LOCATION,
    DETAIL_QR_SCANNED,
    DETAIL_TO_STATUS,
    EVENT_OUTCOMES,
    Actor,
    AuditEventSummary,
    AuditRecord,
    AuditRecordFilter,
    CustodyEvent,
    Specimen,
)
from lims_custody_engine.core.status_machine import effective_status, validate_transition
from lims_custody_engine.observability import get_logger
from lims_custody_engine.registry.locations import LocationRegistry

logger = get_logger(__name__)

IN_TRANSIT = "in-transit"

_CUSTODY_EVENT_TYPE = "location-changed"


class KeyedLocks:
    """One asyncio.Lock per key, kept only while a caller holds or awaits it.

    A lock is dropped as soon as its last user leaves, so ids that never
    resolve to a specimen leave nothing behind.
    """

    def __init__(self) -> None:
        """Initialize with no locks."""
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        """Hold the lock for ``key`` for the duration of the block."""
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


@dataclass(frozen=True)
class ReconciliationEntry:
    """A write where the audit record persisted but the snapshot did not.

    Attributes:
        id: Entry identifier returned to the caller in PartialWriteError.
        specimen_id: Affected specimen.
        audit_record_id: The record that was persisted.
        intended_status: Snapshot status that failed to persist.
        intended_location_id: Snapshot location that failed to persist.
        error: Store error message.
        occurred_at: When the failure happened (UTC).
    """

    id: str
    specimen_id: str
    audit_record_id: str
    intended_status: str | None
    intended_location_id: str | None
    error: str
    occurred_at: datetime


class ReconciliationLog:
    """Operator-facing list of partial writes awaiting reconciliation."""

    def __init__(self) -> None:
        """Initialize an empty log."""
        self._entries: list[ReconciliationEntry] = []

    def add(
        self,
        specimen_id: str,
        audit_record_id: str,
        intended: Specimen,
        error: str,
        occurred_at: datetime,
    ) -> ReconciliationEntry:
        """Record a partial write.

        Args:
            specimen_id: Affected specimen.
            audit_record_id: The persisted audit record id.
            intended: The snapshot that failed to persist.
            error: The store error message.
            occurred_at: Failure time.

        Returns:
            The new ReconciliationEntry.
        """
        entry = ReconciliationEntry(
            id=str(uuid.uuid4()),
            specimen_id=specimen_id,
            audit_record_id=audit_record_id,
            intended_status=intended.status,
            intended_location_id=intended.location_id,
            error=error,
            occurred_at=occurred_at,
        )
        self._entries.append(entry)
        return entry

    def entries(self) -> list[ReconciliationEntry]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)


class CustodyEventRecorder:
    """Records custody transitions and handling events for specimens.

    Args:
        store: Resource Store for specimen snapshots and audit records.
        identity: Identity provider for the acting user.
        registry: Location and station registry.
        builder: Trail builder used to keep the trail cache current.
        cache: Per-specimen trail cache.
        stream: Live event stream for published summaries.
        reconciliation_log: Sink for partial writes.
        clock: Returns the current UTC time. Injectable for tests.
    """

    def __init__(
        self,
        store: IResourceStore,
        identity: IIdentityProvider,
        registry: LocationRegistry,
        builder: AuditTrailBuilder,
        cache: TrailCache,
        stream: LiveEventStream,
        reconciliation_log: ReconciliationLog | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the recorder with its collaborators."""
        self._store = store
        self._identity = identity
        self._registry = registry
        self._builder = builder
        self._cache = cache
        self._stream = stream
        self._reconciliation_log = reconciliation_log or ReconciliationLog()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._locks = KeyedLocks()

    @property
    def locks(self) -> KeyedLocks:
        """Per-specimen locks, shared with other writers of the trail cache."""
        return self._locks

    @property
    def reconciliation_log(self) -> ReconciliationLog:
        return self._reconciliation_log

    # ------------------------------------------------------------------
    # Custody operations
    # ------------------------------------------------------------------

    async def record_check_in(
        self,
        specimen_id: str,
        station_id: str,
        qr_code_scanned: bool = False,
        comments: str | None = None,
    ) -> CustodyEvent:
        """Record a specimen arriving at a workflow station.

        The specimen becomes available at the station's location.

        Args:
            specimen_id: The specimen checked in.
            station_id: Receiving workflow station.
            qr_code_scanned: Whether the specimen's QR code was scanned.
            comments: Optional operator comments.

        Returns:
            The recorded CustodyEvent.

        Raises:
            UnauthenticatedError: If no actor is authenticated.
            StationNotFoundError: If the station is unknown.
            SpecimenNotFoundError: If the specimen is unknown.
            InvalidStatusTransitionError: If the specimen cannot become available.
            StoreUnavailableError: If the audit record could not be appended.
            PartialWriteError: If the snapshot update failed after the append.
        """
        actor = await self._require_actor()
        location = self._registry.location_for_station(station_id)

        return await self._record_custody(
            specimen_id=specimen_id,
            actor=actor,
            action="check-in",
            to_location=location.id,
            to_status="available",
            snapshot_status="available",
            qr_code_scanned=qr_code_scanned,
            comments=comments,
            extra_details={"station_id": station_id},
        )

    async def record_check_out(
        self,
        specimen_id: str,
        from_station_id: str,
        to_station_id: str | None = None,
        comments: str | None = None,
    ) -> CustodyEvent:
        """Record a specimen leaving a workflow station.

        Without a destination the specimen is unavailable and in transit.
        With one it is available at the destination's location.

        Args:
            specimen_id: The specimen checked out.
            from_station_id: Station the specimen leaves.
            to_station_id: Optional destination station.
            comments: Optional operator comments.

        Returns:
            The recorded CustodyEvent.

        Raises:
            UnauthenticatedError: If no actor is authenticated.
            StationNotFoundError: If either station is unknown.
            SpecimenNotFoundError: If the specimen is unknown.
            InvalidStatusTransitionError: If the status change is not permitted.
            StoreUnavailableError: If the audit record could not be appended.
            PartialWriteError: If the snapshot update failed after the append.
        """
        actor = await self._require_actor()
        from_location = self._registry.location_for_station(from_station_id)

        extra_details = {"from_station_id": from_station_id}
        if to_station_id is None:
            to_location_id = IN_TRANSIT
            to_status = IN_TRANSIT
            snapshot_status = "unavailable"
        else:
            to_location_id = self._registry.location_for_station(to_station_id).id
            to_status = "available"
            snapshot_status = "available"
            extra_details["to_station_id"] = to_station_id

        return await self._record_custody(
            specimen_id=specimen_id,
            actor=actor,
            action="check-out",
            to_location=to_location_id,
            to_status=to_status,
            snapshot_status=snapshot_status,
            from_location=from_location.id,
            comments=comments,
            extra_details=extra_details,
        )

    async def record_location_update(
        self,
        specimen_id: str,
        location_id: str,
        status: str,
        comments: str | None = None,
    ) -> CustodyEvent:
        """Record a manual location and status change.

        Args:
            specimen_id: The specimen moved.
            location_id: New location.
            status: New specimen status.
            comments: Optional operator comments.

        Returns:
            The recorded CustodyEvent.

        Raises:
            UnauthenticatedError: If no actor is authenticated.
            LocationNotFoundError: If the location is unknown.
            SpecimenNotFoundError: If the specimen is unknown.
            InvalidStatusTransitionError: If the status change is not permitted.
            StoreUnavailableError: If the audit record could not be appended.
            PartialWriteError: If the snapshot update failed after the append.
        """
        actor = await self._require_actor()
        location = self._registry.get_location(location_id)

        return await self._record_custody(
            specimen_id=specimen_id,
            actor=actor,
            action="location-update",
            to_location=location.id,
            to_status=status,
            snapshot_status=status,
            comments=comments,
        )

    async def record_audit_event(
        self,
        specimen_id: str,
        event_type: str,
        action: str,
        details: dict[str, str] | None = None,
        outcome: str = "success",
    ) -> AuditEventSummary:
        """Record a handling event that does not move the specimen.

        Args:
            specimen_id: The specimen the event concerns.
            event_type: One of the audit event types other than location-changed.
            action: Short description of what was done.
            details: Optional string details.
            outcome: success | failure | warning.

        Returns:
            The event as it appears on the specimen's trail.

        Raises:
            UnauthenticatedError: If no actor is authenticated.
            UnknownEventTypeError: If the event type is unsupported.
            DomainValidationError: If the outcome is unknown or the type is a custody event.
            SpecimenNotFoundError: If the specimen is unknown.
            StoreUnavailableError: If the audit record could not be appended.
        """
        actor = await self._require_actor()

        if event_type not in AUDIT_EVENT_TYPES:
            raise UnknownEventTypeError(
                f"Unknown audit event type '{event_type}'. Expected one of {sorted(AUDIT_EVENT_TYPES)}",
                event_type=event_type,
            )
        if event_type == _CUSTODY_EVENT_TYPE:
            raise DomainValidationError(
                "Location changes must be recorded with check-in, check-out or location update",
                event_type=event_type,
            )
        if outcome not in EVENT_OUTCOMES:
            raise DomainValidationError(
                f"Unknown event outcome '{outcome}'. Expected one of {sorted(EVENT_OUTCOMES)}",
                outcome=outcome,
            )

        async with self._locks.hold(specimen_id):
            specimen = await self._require_specimen(specimen_id)
            trail = await self._current_trail(specimen)

            persisted = await self._store.append_audit_record(
                AuditRecord(
                    specimen_id=specimen_id,
                    recorded=self._clock(),
                    event_type=event_type,
                    action=action,
                    outcome=outcome,
                    agent=actor,
                    details={key: str(value) for key, value in (details or {}).items()},
                )
            )
            summary = to_summary(persisted)

            logger.info(
                "Audit event recorded",
                specimen_id=specimen_id,
                record_id=persisted.id,
                event_type=event_type,
                outcome=outcome,
                actor_id=actor.id,
            )

            updated_trail = self._update_trail(trail, persisted)
            self._stream.publish(
                EventSummary(
                    kind="audit-event",
                    specimen_id=specimen_id,
                    occurred_at=summary.timestamp,
                    payload=summary.model_dump(mode="json"),
                )
            )
            self._publish_verdict_change(trail, updated_trail, summary.timestamp, persisted.id)

        return summary

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _record_custody(
        self,
        specimen_id: str,
        actor: Actor,
        action: str,
        to_location: str,
        to_status: str,
        snapshot_status: str,
        from_location: str | None = None,
        qr_code_scanned: bool = False,
        comments: str | None = None,
        extra_details: dict[str, str] | None = None,
    ) -> CustodyEvent:
        async with self._locks.hold(specimen_id):
            specimen = await self._require_specimen(specimen_id)
            validate_transition(specimen_id, specimen.status, snapshot_status)
            trail = await self._current_trail(specimen)

            now = self._clock()
            event_id = str(uuid.uuid4())
            from_status = effective_status(specimen.status)
            from_location = from_location or specimen.location_id

            details = {
                DETAIL_LOCATION: to_location,
                DETAIL_FROM_STATUS: from_status,
                DETAIL_TO_STATUS: to_status,
                DETAIL_QR_SCANNED: "true" if qr_code_scanned else "false",
                DETAIL_CUSTODY_EVENT_ID: event_id,
                **(extra_details or {}),
            }
            if from_location:
                details[DETAIL_FROM_LOCATION] = from_location
            if comments:
                details[DETAIL_COMMENTS] = comments

            persisted = await self._store.append_audit_record(
                AuditRecord(
                    specimen_id=specimen_id,
                    recorded=now,
                    event_type=_CUSTODY_EVENT_TYPE,
                    action=action,
                    outcome="success",
                    agent=actor,
                    details=details,
                )
            )

            event = CustodyEvent(
                id=event_id,
                specimen_id=specimen_id,
                timestamp=now,
                from_location=from_location,
                to_location=to_location,
                from_status=from_status,
                to_status=to_status,
                performed_by=actor,
                comments=comments,
                qr_code_scanned=qr_code_scanned,
                audit_record_id=persisted.id,
            )

            updated = specimen.model_copy(
                update={"status": snapshot_status, "location_id": to_location, "last_updated": now}
            )
            try:
                await self._store.update_specimen(updated)
            except StoreUnavailableError as exc:
                self._handle_partial_write(specimen_id, persisted, updated, exc, now)

            logger.info(
                "Custody event recorded",
                specimen_id=specimen_id,
                event_id=event_id,
                action=action,
                from_location=from_location,
                to_location=to_location,
                to_status=to_status,
                qr_code_scanned=qr_code_scanned,
                actor_id=actor.id,
            )

            updated_trail = self._update_trail(trail, persisted)
            self._stream.publish(
                EventSummary(
                    kind="custody-event",
                    specimen_id=specimen_id,
                    occurred_at=now,
                    payload=event.model_dump(mode="json"),
                )
            )
            self._publish_verdict_change(trail, updated_trail, now, persisted.id)

        return event

    async def _require_actor(self) -> Actor:
        actor = await self._identity.current_actor()
        if actor is None:
            raise UnauthenticatedError("No authenticated user for this operation")
        return actor

    async def _require_specimen(self, specimen_id: str) -> Specimen:
        specimen = await self._store.get_specimen(specimen_id)
        if specimen is None:
            raise SpecimenNotFoundError(
                f"Specimen {specimen_id} not found",
                specimen_id=specimen_id,
            )
        return specimen

    async def _current_trail(self, specimen: Specimen) -> AuditTrail:
        """Return the cached trail, deriving it from the store on a miss.

        Called before the write so the new record can always be applied
        incrementally and the previous verdict is known.
        """
        trail = self._cache.get(specimen.id)
        if trail is not None:
            return trail
        records = await self._store.query_audit_records(AuditRecordFilter(specimen_id=specimen.id))
        return self._builder.derive_trail(specimen, records)

    def _update_trail(self, trail: AuditTrail, record: AuditRecord) -> AuditTrail:
        updated = self._builder.apply_event(trail, record)
        self._cache.put(updated)
        return updated

    def _publish_verdict_change(
        self,
        previous: AuditTrail,
        current: AuditTrail,
        occurred_at: datetime,
        record_id: str,
    ) -> None:
        before = previous.compliance_status.overall
        after = current.compliance_status.overall
        if before == after:
            return

        logger.info(
            "Compliance verdict changed",
            specimen_id=current.specimen_id,
            previous=before,
            current=after,
            record_id=record_id,
        )
        self._stream.publish(
            EventSummary(
                kind="compliance-flag",
                specimen_id=current.specimen_id,
                occurred_at=occurred_at,
                payload={
                    "previous": before,
                    "current": after,
                    "record_id": record_id,
                    "violation_count": len(current.compliance_status.violations),
                },
            )
        )

    def _handle_partial_write(
        self,
        specimen_id: str,
        persisted: AuditRecord,
        intended: Specimen,
        exc: StoreUnavailableError,
        occurred_at: datetime,
    ) -> None:
        entry = self._reconciliation_log.add(
            specimen_id=specimen_id,
            audit_record_id=persisted.id,
            intended=intended,
            error=exc.message,
            occurred_at=occurred_at,
        )
        self._cache.invalidate(specimen_id)

        logger.error(
            "Specimen snapshot update failed after audit record was persisted",
            specimen_id=specimen_id,
            audit_record_id=persisted.id,
            reconciliation_id=entry.id,
            error=exc.message,
        )
        self._stream.publish(
            EventSummary(
                kind="partial-write",
                specimen_id=specimen_id,
                occurred_at=occurred_at,
                payload={
                    "reconciliation_id": entry.id,
                    "audit_record_id": persisted.id,
                    "intended_status": intended.status,
                    "intended_location_id": intended.location_id,
                },
            )
        )
        raise PartialWriteError(
            f"Audit record {persisted.id} was stored but specimen {specimen_id} was not updated",
            reconciliation_id=entry.id,
            specimen_id=specimen_id,
            audit_record_id=persisted.id,
        ) from exc
