"""FHIR REST Resource Store client.

Stores specimen snapshots as FHIR Specimen resources and audit records as
FHIR AuditEvent resources:
- Specimen.status carries the specimen status; the current location and last
  custody update travel in LIMS extensions.
- AuditEvent.subtype[0].code carries the event type, AuditEvent.action the
  action label, AuditEvent.outcome the outcome code (0 success, 4 warning,
  8 failure), entity[0].what the specimen reference and entity[0].detail the
  string details. The creation sequence travels in an extension.

Every transport error, timeout, or unexpected status is raised as
StoreUnavailableError. The client never retries; retry policy belongs to
the caller.
"""

import time
from datetime import datetime
from typing import Any

import httpx

from lims_custody_engine.core.errors import StoreUnavailableError
from lims_custody_engine.core.models import Actor, AuditRecord, AuditRecordFilter, Specimen, as_utc
from lims_custody_engine.observability import get_logger

logger = get_logger(__name__)

_EXTENSION_BASE = "http://lims.local/fhir/StructureDefinition"
LOCATION_EXTENSION = f"{_EXTENSION_BASE}/specimen-location"
LAST_UPDATED_EXTENSION = f"{_EXTENSION_BASE}/specimen-last-custody-update"
SEQUENCE_EXTENSION = f"{_EXTENSION_BASE}/audit-sequence"
AUDIT_EVENT_TYPE_SYSTEM = "http://lims.local/audit-event-types"

_OUTCOME_TO_FHIR: dict[str, str] = {"success": "0", "warning": "4", "failure": "8"}
_OUTCOME_FROM_FHIR: dict[str, str] = {code: outcome for outcome, code in _OUTCOME_TO_FHIR.items()}

# Page size for AuditEvent searches
_SEARCH_PAGE_SIZE = 200


def _extension_value(resource: dict[str, Any], url: str, key: str) -> Any:
    for extension in resource.get("extension", []):
        if extension.get("url") == url:
            return extension.get(key)
    return None


def _set_extension(resource: dict[str, Any], url: str, key: str, value: Any) -> None:
    extensions = [e for e in resource.get("extension", []) if e.get("url") != url]
    if value is not None:
        extensions.append({"url": url, key: value})
    resource["extension"] = extensions


def _parse_datetime(raw: Any) -> datetime | None:
    """Parse a FHIR dateTime. Unparseable values yield None so the record reads as malformed."""
    if not raw:
        return None
    if not isinstance(raw, str):
        logger.warning("Ignoring non-string FHIR dateTime", value=repr(raw))
        return None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Ignoring unparseable FHIR dateTime", value=raw)
        return None
    return as_utc(parsed)


def specimen_from_fhir(resource: dict[str, Any]) -> Specimen:
    """Map a FHIR Specimen resource onto the engine's Specimen snapshot."""
    specimen_type = None
    type_concept = resource.get("type") or {}
    codings = type_concept.get("coding") or []
    if codings:
        specimen_type = codings[0].get("code")
    elif type_concept.get("text"):
        specimen_type = type_concept["text"]

    return Specimen(
        id=resource["id"],
        accession_number=(resource.get("accessionIdentifier") or {}).get("value"),
        status=resource.get("status"),
        location_id=_extension_value(resource, LOCATION_EXTENSION, "valueString"),
        specimen_type=specimen_type,
        last_updated=_parse_datetime(_extension_value(resource, LAST_UPDATED_EXTENSION, "valueDateTime")),
    )


def audit_event_to_fhir(record: AuditRecord, sequence: int) -> dict[str, Any]:
    """Map an audit record onto a FHIR AuditEvent resource."""
    resource: dict[str, Any] = {
        "resourceType": "AuditEvent",
        "type": {
            "system": "http://terminology.hl7.org/CodeSystem/audit-event-type",
            "code": "rest",
            "display": "RESTful Operation",
        },
        "subtype": [{"system": AUDIT_EVENT_TYPE_SYSTEM, "code": record.event_type}],
        "action": record.action,
        "outcome": _OUTCOME_TO_FHIR.get(record.outcome, "8"),
        "entity": [
            {
                "what": {"reference": f"Specimen/{record.specimen_id}"},
                "detail": [{"type": key, "valueString": value} for key, value in record.details.items()],
            }
        ],
        "extension": [{"url": SEQUENCE_EXTENSION, "valueInteger": sequence}],
    }
    if record.recorded is not None:
        resource["recorded"] = record.recorded.isoformat()
    if record.agent is not None:
        resource["agent"] = [
            {
                "who": {
                    "reference": f"Practitioner/{record.agent.id}",
                    "display": record.agent.display_name,
                },
                "requestor": True,
                "role": [{"text": record.agent.role}],
            }
        ]
    return resource


def audit_record_from_fhir(resource: dict[str, Any]) -> AuditRecord | None:
    """Map a FHIR AuditEvent onto an AuditRecord.

    Returns:
        The AuditRecord, or None if the event does not reference a Specimen.
    """
    entity = (resource.get("entity") or [{}])[0]
    reference: str = (entity.get("what") or {}).get("reference", "")
    if not reference.startswith("Specimen/"):
        return None

    details = {
        detail["type"]: detail["valueString"]
        for detail in entity.get("detail", [])
        if detail.get("type") and detail.get("valueString") is not None
    }

    agent = None
    agents = resource.get("agent") or []
    if agents:
        who = agents[0].get("who") or {}
        roles = agents[0].get("role") or [{}]
        agent = Actor(
            id=who.get("reference", "").removeprefix("Practitioner/") or "unknown",
            display_name=who.get("display", "Unknown User"),
            role=roles[0].get("text", "unknown"),
        )

    subtype = (resource.get("subtype") or [{}])[0]
    return AuditRecord(
        id=resource.get("id", ""),
        specimen_id=reference.removeprefix("Specimen/"),
        sequence=_extension_value(resource, SEQUENCE_EXTENSION, "valueInteger") or 0,
        recorded=_parse_datetime(resource.get("recorded")),
        event_type=subtype.get("code", ""),
        action=resource.get("action") or "unknown",
        outcome=_OUTCOME_FROM_FHIR.get(resource.get("outcome", ""), resource.get("outcome", "")),
        agent=agent,
        details=details,
    )


class FhirResourceStore:
    """IResourceStore implementation backed by a FHIR R4 REST server.

    Args:
        base_url: FHIR base URL, e.g., https://fhir.example.org/fhir/R4.
        token: Optional bearer token.
        timeout_s: Request timeout in seconds.
        transport: Optional httpx transport (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        base_url: str,
        token: str = "",
        timeout_s: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the FHIR client."""
        headers = {"Accept": "application/fhir+json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/") + "/",
            headers=headers,
            timeout=timeout_s,
            transport=transport,
        )
        self._last_sequence = 0

    async def close(self) -> None:
        await self._client.aclose()

    async def get_specimen(self, specimen_id: str) -> Specimen | None:
        """Read a Specimen resource. A 404 means the specimen does not exist."""
        resource = await self._read_specimen(specimen_id)
        return specimen_from_fhir(resource) if resource is not None else None

    async def update_specimen(self, specimen: Specimen) -> Specimen:
        """Write status, location and last-update onto the stored Specimen.

        Reads the current resource first so fields the engine does not own
        are preserved.

        Raises:
            StoreUnavailableError: If the resource is missing or the write fails.
        """
        resource = await self._read_specimen(specimen.id)
        if resource is None:
            raise StoreUnavailableError(
                f"Specimen {specimen.id} disappeared from the resource store",
                specimen_id=specimen.id,
            )

        if specimen.status is not None:
            resource["status"] = specimen.status
        _set_extension(resource, LOCATION_EXTENSION, "valueString", specimen.location_id)
        _set_extension(
            resource,
            LAST_UPDATED_EXTENSION,
            "valueDateTime",
            specimen.last_updated.isoformat() if specimen.last_updated else None,
        )

        response = await self._request("PUT", f"Specimen/{specimen.id}", json=resource)
        return specimen_from_fhir(response.json())

    async def append_audit_record(self, record: AuditRecord) -> AuditRecord:
        """Create an AuditEvent, assigning a creation sequence client-side."""
        sequence = max(time.time_ns(), self._last_sequence + 1)
        self._last_sequence = sequence

        response = await self._request("POST", "AuditEvent", json=audit_event_to_fhir(record, sequence))
        created = response.json()
        return record.model_copy(update={"id": created.get("id", ""), "sequence": sequence})

    async def query_audit_records(self, record_filter: AuditRecordFilter) -> list[AuditRecord]:
        """Search AuditEvents, following pagination links.

        Returns:
            Matching records ordered by creation sequence.
        """
        params: list[tuple[str, str]] = [("_count", str(_SEARCH_PAGE_SIZE))]
        if record_filter.specimen_id is not None:
            params.append(("entity", f"Specimen/{record_filter.specimen_id}"))
        if record_filter.recorded_after is not None:
            params.append(("date", f"ge{record_filter.recorded_after.isoformat()}"))
        if record_filter.recorded_before is not None:
            params.append(("date", f"le{record_filter.recorded_before.isoformat()}"))

        records: list[AuditRecord] = []
        url: str | None = "AuditEvent"
        request_params: list[tuple[str, str]] | None = params

        while url is not None:
            bundle = (await self._request("GET", url, params=request_params)).json()
            for entry in bundle.get("entry", []):
                record = audit_record_from_fhir(entry.get("resource") or {})
                if record is not None:
                    records.append(record)
            url = next(
                (link["url"] for link in bundle.get("link", []) if link.get("relation") == "next"),
                None,
            )
            # Next links are absolute and already carry the search parameters
            request_params = None

        records.sort(key=lambda r: r.sequence)
        logger.debug("AuditEvent search complete", count=len(records), specimen_id=record_filter.specimen_id)
        return records

    async def _read_specimen(self, specimen_id: str) -> dict[str, Any] | None:
        response = await self._request("GET", f"Specimen/{specimen_id}", allow_not_found=True)
        if response.status_code == 404:
            return None
        return response.json()

    async def _request(
        self,
        method: str,
        url: str,
        allow_not_found: bool = False,
        **kwargs: Any,
    ) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            logger.warning("Resource store request timed out", method=method, url=url)
            raise StoreUnavailableError(
                "Resource store request timed out",
                method=method,
                url=url,
            ) from exc
        except httpx.RequestError as exc:
            logger.error("Resource store request failed", method=method, url=url, error=str(exc))
            raise StoreUnavailableError(
                f"Resource store request failed: {exc}",
                method=method,
                url=url,
            ) from exc

        if response.status_code == 404 and allow_not_found:
            return response

        if response.status_code >= 400:
            logger.error(
                "Resource store returned unexpected status",
                method=method,
                url=url,
                status_code=response.status_code,
                body=response.text[:500],
            )
            raise StoreUnavailableError(
                f"Resource store returned status {response.status_code}",
                method=method,
                url=url,
                status_code=response.status_code,
            )
        return response
