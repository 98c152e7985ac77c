"""Append-only in-memory Resource Store.

Holds specimen snapshots and an append-only audit record log. Records are
indexed by recorded time with bisect so time-bounded queries stay
O(log n) + O(k). Query results are returned in creation order.

Used when no FHIR server is configured and by the test suite. Records with
no recorded time are kept in the log (the trail builder decides what is
malformed) but never match a time-bounded query.
"""

import bisect
from datetime import datetime

from lims_custody_engine.core.models import AuditRecord, AuditRecordFilter, Specimen, as_utc


class InMemoryResourceStore:
    """In-memory implementation of IResourceStore."""

    def __init__(self) -> None:
        """Initialize an empty store."""
        self._specimens: dict[str, Specimen] = {}
        # Creation order, indexed by sequence - 1
        self._records: list[AuditRecord] = []
        # Parallel lists sorted by (recorded, sequence) for time-bounded queries
        self._time_keys: list[tuple[datetime, int]] = []
        self._time_ordered: list[AuditRecord] = []

    def seed_specimen(self, specimen: Specimen) -> Specimen:
        """Insert or replace a specimen snapshot without going through the engine."""
        self._specimens[specimen.id] = specimen
        return specimen

    async def get_specimen(self, specimen_id: str) -> Specimen | None:
        return self._specimens.get(specimen_id)

    async def update_specimen(self, specimen: Specimen) -> Specimen:
        """Replace the stored snapshot for ``specimen.id``."""
        self._specimens[specimen.id] = specimen
        return specimen

    async def append_audit_record(self, record: AuditRecord) -> AuditRecord:
        """Append a record, assigning its id and creation sequence.

        Args:
            record: The record to persist.

        Returns:
            The stored record.
        """
        sequence = len(self._records) + 1
        update: dict[str, object] = {"id": f"audit-{sequence}", "sequence": sequence}
        if record.recorded is not None:
            update["recorded"] = as_utc(record.recorded)
        stored = record.model_copy(update=update)
        self._records.append(stored)

        if stored.recorded is not None:
            key = (stored.recorded, sequence)
            index = bisect.bisect_right(self._time_keys, key)
            self._time_keys.insert(index, key)
            self._time_ordered.insert(index, stored)

        return stored

    async def query_audit_records(self, record_filter: AuditRecordFilter) -> list[AuditRecord]:
        """Return records matching the filter in creation order."""
        if record_filter.recorded_after is None and record_filter.recorded_before is None:
            candidates = list(self._records)
        else:
            low = 0
            high = len(self._time_keys)
            if record_filter.recorded_after is not None:
                low = bisect.bisect_left(self._time_keys, (as_utc(record_filter.recorded_after), 0))
            if record_filter.recorded_before is not None:
                high = bisect.bisect_right(
                    self._time_keys,
                    (as_utc(record_filter.recorded_before), len(self._records) + 1),
                )
            candidates = sorted(self._time_ordered[low:high], key=lambda r: r.sequence)

        if record_filter.specimen_id is not None:
            candidates = [r for r in candidates if r.specimen_id == record_filter.specimen_id]
        return candidates

    def count(self) -> int:
        """Return the number of audit records stored."""
        return len(self._records)
