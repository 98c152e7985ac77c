"""Compliance service — trail reads, requirement checks and violation resolution.

Violations are derived data: every rebuild or incremental update recomputes
them from the record log. Resolutions therefore live in a separate ledger
keyed by (specimen id, violation id) and are overlaid on every trail this
service returns, so recomputation never loses them.
"""

import dataclasses
from collections.abc import Callable
from datetime import UTC, datetime

from lims_custody_engine.audit_trail.builder import AuditTrailBuilder
from lims_custody_engine.audit_trail.cache import TrailCache
from lims_custody_engine.audit_trail.models import AuditTrail, ComplianceViolation
from lims_custody_engine.audit_trail.stream import EventSummary, LiveEventStream
from lims_custody_engine.compliance.evaluator import ComplianceEvaluator, RequirementCheck
from lims_custody_engine.compliance.requirements import RequirementCatalog
from lims_custody_engine.core.errors import UnauthenticatedError, ViolationNotFoundError
from lims_custody_engine.core.interfaces import IIdentityProvider
from lims_custody_engine.core.recorder import KeyedLocks
from lims_custody_engine.observability import get_logger

logger = get_logger(__name__)


class ComplianceService:
    """Serves audit trails with resolutions applied and resolves violations.

    Args:
        builder: Trail builder for cache misses.
        cache: Shared per-specimen trail cache.
        locks: Per-specimen locks shared with the recorder.
        evaluator: Evaluator used for per-requirement checks.
        catalog: Requirement catalog.
        identity: Identity provider for the resolving user.
        stream: Live event stream.
        clock: Returns the current UTC time. Injectable for tests.
    """

    def __init__(
        self,
        builder: AuditTrailBuilder,
        cache: TrailCache,
        locks: KeyedLocks,
        evaluator: ComplianceEvaluator,
        catalog: RequirementCatalog,
        identity: IIdentityProvider,
        stream: LiveEventStream,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the service with an empty resolution ledger."""
        self._builder = builder
        self._cache = cache
        self._locks = locks
        self._evaluator = evaluator
        self._catalog = catalog
        self._identity = identity
        self._stream = stream
        self._clock = clock or (lambda: datetime.now(UTC))
        self._resolutions: dict[tuple[str, str], ComplianceViolation] = {}

    async def get_trail(self, specimen_id: str) -> AuditTrail:
        """Return a specimen's trail with recorded resolutions applied.

        Builds and caches the trail on a cache miss.

        Raises:
            SpecimenNotFoundError: If the specimen does not exist.
            StoreUnavailableError: If the store cannot be reached on a miss.
        """
        async with self._locks.hold(specimen_id):
            trail = await self._load(specimen_id)
        return self._overlay(trail)

    async def validate_specimen_compliance(
        self,
        specimen_id: str,
        requirement_ids: list[str] | None = None,
    ) -> list[RequirementCheck]:
        """Check a specimen against selected requirements.

        Args:
            specimen_id: The specimen to check.
            requirement_ids: Requirement ids to check. None checks every
                requirement applicable to the specimen's type.

        Returns:
            One RequirementCheck per requirement.

        Raises:
            RequirementNotFoundError: If a requirement id is unknown.
            SpecimenNotFoundError: If the specimen does not exist.
        """
        async with self._locks.hold(specimen_id):
            trail = await self._load(specimen_id)

        if requirement_ids is None:
            requirements = self._catalog.applicable_requirements(trail.specimen_type)
        else:
            requirements = [self._catalog.get_requirement(rid) for rid in requirement_ids]

        checks = self._evaluator.validate_specimen_compliance(trail, requirements)
        logger.info(
            "Specimen compliance validated",
            specimen_id=specimen_id,
            requirement_ids=[check.requirement.id for check in checks],
            non_compliant=[check.requirement.id for check in checks if not check.compliant],
        )
        return checks

    async def resolve_violation(
        self,
        specimen_id: str,
        violation_id: str,
        correction_action: str | None = None,
    ) -> ComplianceViolation:
        """Resolve a violation on a specimen's trail as the current actor.

        Args:
            specimen_id: Specimen whose trail carries the violation.
            violation_id: Violation to resolve.
            correction_action: What was done to correct it.

        Returns:
            The resolved violation.

        Raises:
            UnauthenticatedError: If no actor is authenticated.
            SpecimenNotFoundError: If the specimen does not exist.
            ViolationNotFoundError: If the violation is not on the trail.
            ViolationAlreadyResolvedError: If it was already resolved.
        """
        actor = await self._identity.current_actor()
        if actor is None:
            raise UnauthenticatedError("No authenticated user for this operation")

        async with self._locks.hold(specimen_id):
            trail = self._overlay(await self._load(specimen_id))
            violation = next(
                (v for v in trail.compliance_status.violations if v.id == violation_id),
                None,
            )
            if violation is None:
                raise ViolationNotFoundError(
                    f"Violation {violation_id} not found on specimen {specimen_id}",
                    specimen_id=specimen_id,
                    violation_id=violation_id,
                )

            resolved = violation.resolve(
                resolved_by=actor.id,
                resolved_at=self._clock(),
                correction_action=correction_action,
            )
            self._resolutions[(specimen_id, violation_id)] = resolved

            logger.info(
                "Compliance violation resolved",
                specimen_id=specimen_id,
                violation_id=violation_id,
                resolved_by=actor.id,
            )
            self._stream.publish(
                EventSummary(
                    kind="violation-resolved",
                    specimen_id=specimen_id,
                    occurred_at=resolved.resolved_at,
                    payload={
                        "violation_id": violation_id,
                        "type": resolved.type,
                        "severity": resolved.severity,
                        "resolved_by": actor.id,
                        "correction_action": correction_action,
                    },
                )
            )

        return resolved

    async def _load(self, specimen_id: str) -> AuditTrail:
        """Return the cached trail, building it on a miss. Caller holds the specimen lock."""
        trail = self._cache.get(specimen_id)
        if trail is None:
            trail = await self._builder.build_trail(specimen_id)
            self._cache.put(trail)
        return trail

    def _overlay(self, trail: AuditTrail) -> AuditTrail:
        status = trail.compliance_status
        if not any((trail.specimen_id, v.id) in self._resolutions for v in status.violations):
            return trail

        violations = [
            self._resolutions.get((trail.specimen_id, v.id), v) for v in status.violations
        ]
        return dataclasses.replace(
            trail,
            compliance_status=dataclasses.replace(status, violations=violations),
        )
