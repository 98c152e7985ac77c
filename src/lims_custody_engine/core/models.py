"""Pydantic models for the data the engine reads, writes, and emits.

Models:
- Actor             — acting user reported by the Identity Provider
- Specimen          — snapshot of a tracked specimen (owned by the Resource Store)
- AuditRecord       — persisted audit record, as stored and returned by the Resource Store
- AuditRecordFilter — query filter for audit records
- CustodyEvent      — immutable custody transition returned by the recorder
- ComplianceFlag    — per-event compliance flag
- AuditEventSummary — validated, typed view of an AuditRecord used by the trail

AuditRecord fields are deliberately loose (``recorded`` may be missing,
``event_type`` and ``outcome`` are free strings) because records come from an
external store. The trail builder is the one place that decides whether a
record is well-formed enough to become an AuditEventSummary.
"""

from datetime import UTC, datetime
from typing import Literal, get_args

from pydantic import BaseModel, ConfigDict, Field

SpecimenStatus = Literal["available", "unavailable", "unsatisfactory", "entered-in-error"]

AuditEventType = Literal[
    "specimen-received",
    "specimen-processed",
    "location-changed",
    "status-changed",
    "qr-code-scanned",
    "label-printed",
    "temperature-recorded",
    "quality-check",
    "disposal",
    "error-occurred",
]

EventOutcome = Literal["success", "failure", "warning"]

AUDIT_EVENT_TYPES: frozenset[str] = frozenset(get_args(AuditEventType))
EVENT_OUTCOMES: frozenset[str] = frozenset(get_args(EventOutcome))

# Detail keys written on custody records
DETAIL_FROM_LOCATION = "from_location"
DETAIL_LOCATION = "location"
DETAIL_FROM_STATUS = "from_status"
DETAIL_TO_STATUS = "to_status"
DETAIL_QR_SCANNED = "qr_code_scanned"
DETAIL_COMMENTS = "comments"
DETAIL_CUSTODY_EVENT_ID = "custody_event_id"


def as_utc(dt: datetime) -> datetime:
    """Treat naive datetimes as UTC so every comparison is between aware values."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt


class Actor(BaseModel):
    """Acting user for a custody or audit operation."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Stable user identifier")
    display_name: str = Field(..., description="Human-readable name")
    role: str = Field(default="unknown", description="Workflow role, e.g., lab-technician")


class Specimen(BaseModel):
    """Snapshot of a tracked specimen.

    The engine only reads and patches ``status``, ``location_id`` and
    ``last_updated``; everything else is owned by accessioning.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Stable specimen identifier")
    accession_number: str | None = Field(default=None, description="Human-readable accession number")
    status: str | None = Field(default=None, description="Current specimen status")
    location_id: str | None = Field(default=None, description="Current location id")
    specimen_type: str | None = Field(default=None, description="Specimen type code, e.g., blood")
    last_updated: datetime | None = Field(default=None, description="Last custody update (UTC)")


class AuditRecord(BaseModel):
    """Audit record as persisted by the Resource Store.

    Attributes:
        id: Store-assigned identifier. Empty until appended.
        specimen_id: Specimen the record belongs to.
        sequence: Store-assigned creation sequence; breaks timestamp ties.
        recorded: When the event happened (UTC). May be missing on bad records.
        event_type: One of AUDIT_EVENT_TYPES on well-formed records.
        action: Short action verb or label.
        outcome: One of EVENT_OUTCOMES on well-formed records.
        agent: Acting user, if known.
        details: Flat string key/value details.
    """

    model_config = ConfigDict(frozen=True)

    id: str = ""
    specimen_id: str
    sequence: int = 0
    recorded: datetime | None = None
    event_type: str
    action: str = "unknown"
    outcome: str = "success"
    agent: Actor | None = None
    details: dict[str, str] = Field(default_factory=dict)


class AuditRecordFilter(BaseModel):
    """Filter for ``query_audit_records``. All bounds are inclusive."""

    model_config = ConfigDict(frozen=True)

    specimen_id: str | None = None
    recorded_after: datetime | None = None
    recorded_before: datetime | None = None


class CustodyEvent(BaseModel):
    """Immutable record of one custody transition."""

    model_config = ConfigDict(frozen=True)

    id: str
    specimen_id: str
    timestamp: datetime
    from_location: str | None = None
    to_location: str
    from_status: str | None = None
    to_status: str
    performed_by: Actor
    comments: str | None = None
    qr_code_scanned: bool = False
    audit_record_id: str | None = None


class ComplianceFlag(BaseModel):
    """Compliance flag attached to a single audit event."""

    model_config = ConfigDict(frozen=True)

    type: Literal["warning", "violation", "critical"]
    category: str
    message: str
    requires_action: bool


class AuditEventSummary(BaseModel):
    """Typed, validated view of one audit record on a specimen's trail."""

    model_config = ConfigDict(frozen=True)

    id: str
    specimen_id: str
    sequence: int
    timestamp: datetime
    event_type: AuditEventType
    action: str
    outcome: EventOutcome
    performer: Actor
    location: str | None = None
    details: dict[str, str] = Field(default_factory=dict)
    compliance_flags: list[ComplianceFlag] = Field(default_factory=list)

    @property
    def qr_code_scanned(self) -> bool:
        """Whether the record says a QR code was scanned for this event."""
        return self.details.get(DETAIL_QR_SCANNED) == "true"

    @property
    def sort_key(self) -> tuple[datetime, int]:
        """Canonical trail order: timestamp, then creation sequence."""
        return (self.timestamp, self.sequence)
