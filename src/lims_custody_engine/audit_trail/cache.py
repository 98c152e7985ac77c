"""Per-specimen trail cache.

An explicit key -> trail store. Entries are replaced whole (trails are
frozen) and written only while the recorder holds the specimen's lock, so a
reader always sees a trail derived from one consistent record log.
"""

from lims_custody_engine.audit_trail.models import AuditTrail


class TrailCache:
    """In-memory cache of derived audit trails keyed by specimen id."""

    def __init__(self) -> None:
        """Initialize an empty cache."""
        self._trails: dict[str, AuditTrail] = {}

    def get(self, specimen_id: str) -> AuditTrail | None:
        return self._trails.get(specimen_id)

    def put(self, trail: AuditTrail) -> None:
        """Store or replace the trail for its specimen."""
        self._trails[trail.specimen_id] = trail

    def invalidate(self, specimen_id: str) -> bool:
        """Drop a specimen's trail so the next read rebuilds it.

        Returns:
            True if an entry was removed.
        """
        return self._trails.pop(specimen_id, None) is not None

    def snapshot(self) -> dict[str, AuditTrail]:
        """Return a shallow copy of all cached trails."""
        return dict(self._trails)

    def specimen_ids(self) -> list[str]:
        return sorted(self._trails)

    def __len__(self) -> int:
        return len(self._trails)

    def __contains__(self, specimen_id: object) -> bool:
        return specimen_id in self._trails
