"""Abstract interfaces (Protocol classes) for the engine's collaborators.

Services depend on these protocols, never on concrete adapters, so tests can
substitute in-memory or mock implementations.

Protocols defined:
- IResourceStore     — durable storage of specimens and audit records
- IIdentityProvider  — identity of the acting user
"""

from typing import Protocol

from lims_custody_engine.core.models import Actor, AuditRecord, AuditRecordFilter, Specimen


class IResourceStore(Protocol):
    """Contract for the Resource Store collaborator.

    Every method raises StoreUnavailableError when the store cannot serve
    the request. Implementations must not retry internally.
    """

    async def get_specimen(self, specimen_id: str) -> Specimen | None:
        """Read a specimen snapshot.

        Args:
            specimen_id: The specimen identifier.

        Returns:
            The Specimen, or None if the store has no such specimen.
        """
        ...

    async def update_specimen(self, specimen: Specimen) -> Specimen:
        """Replace the stored specimen snapshot.

        Args:
            specimen: The full updated snapshot.

        Returns:
            The snapshot as stored.
        """
        ...

    async def append_audit_record(self, record: AuditRecord) -> AuditRecord:
        """Append an audit record to the specimen's log.

        Args:
            record: The record to persist. ``id`` and ``sequence`` are ignored.

        Returns:
            The persisted record with store-assigned ``id`` and ``sequence``.
        """
        ...

    async def query_audit_records(self, record_filter: AuditRecordFilter) -> list[AuditRecord]:
        """Return audit records matching the filter.

        Args:
            record_filter: Specimen and time-bound filter.

        Returns:
            Matching records in persisted creation order.
        """
        ...


class IIdentityProvider(Protocol):
    """Contract for the Identity Provider collaborator."""

    async def current_actor(self) -> Actor | None:
        """Return the acting user, or None when nobody is authenticated."""
        ...
