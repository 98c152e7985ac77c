"""Regulatory requirement catalog — accreditation rule sets applied to trails.

Provides the mapping of each requirement to:
- Required controls (chain-of-custody tracking, temperature control, time bounds)
- Required documentation fields
- Applicable specimen types ("*" applies to every type)
- Penalty text per tier (warning / violation / critical)

The built-in catalog carries the CAP specimen handling and CLIA quality
control requirements. Deployments can replace it with a YAML file (see
``load_requirements``) shaped like:

    requirements:
      - id: cap-specimen-handling
        name: CAP Specimen Handling Requirements
        category: CAP
        chain_of_custody: true
        temperature_control: true
        time_requirements: {enabled: true, max_processing_time: 24, max_storage_time: 72}
        documentation: [handler-identification, location-tracking]
        quality_controls: [temperature-monitoring]
        applicable_specimen_types: ["*"]
        penalties: {warning: ..., violation: ..., critical: ...}
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

import yaml

from lims_custody_engine.core.errors import RequirementNotFoundError
from lims_custody_engine.observability import get_logger

logger = get_logger(__name__)

RequirementCategory = Literal["CAP", "CLIA", "FDA", "ISO", "HIPAA", "Custom"]

ALL_SPECIMEN_TYPES = "*"


@dataclass(frozen=True)
class TimeRequirements:
    """Time-bound processing and storage limits.

    Attributes:
        enabled: Whether time limits are enforced.
        max_processing_time: Hours from first event until storage (or last event).
        max_storage_time: Hours from first storage arrival until the last event.
    """

    enabled: bool = False
    max_processing_time: float | None = None
    max_storage_time: float | None = None


@dataclass(frozen=True)
class Penalties:
    """Consequence text per penalty tier."""

    warning: str
    violation: str
    critical: str


@dataclass(frozen=True)
class RegulatoryRequirement:
    """A configured accreditation rule set.

    Attributes:
        id: Stable requirement identifier.
        name: Display name.
        description: What the requirement covers.
        category: Accreditation body or regime.
        chain_of_custody: Whether an intact chain of custody is required.
        temperature_control: Whether temperature excursions are violations.
        time_requirements: Processing and storage time limits.
        documentation: Documentation fields that must be present.
        quality_controls: Quality controls the lab must run (informational).
        applicable_specimen_types: Specimen types covered; "*" covers all.
        penalties: Consequence text per tier.
    """

    id: str
    name: str
    description: str
    category: RequirementCategory
    chain_of_custody: bool
    temperature_control: bool
    time_requirements: TimeRequirements
    penalties: Penalties
    documentation: list[str] = field(default_factory=list)
    quality_controls: list[str] = field(default_factory=list)
    applicable_specimen_types: list[str] = field(default_factory=lambda: [ALL_SPECIMEN_TYPES])

    def applies_to(self, specimen_type: str | None) -> bool:
        """Return True if this requirement covers the given specimen type.

        A specimen with no recorded type is only covered by "*" requirements.
        """
        if ALL_SPECIMEN_TYPES in self.applicable_specimen_types:
            return True
        return specimen_type is not None and specimen_type in self.applicable_specimen_types


_DEFAULT_REQUIREMENTS: list[RegulatoryRequirement] = [
    RegulatoryRequirement(
        id="cap-specimen-handling",
        name="CAP Specimen Handling Requirements",
        description="College of American Pathologists specimen handling standards",
        category="CAP",
        chain_of_custody=True,
        temperature_control=True,
        time_requirements=TimeRequirements(enabled=True, max_processing_time=24, max_storage_time=72),
        documentation=["collection-time", "handler-identification", "location-tracking"],
        quality_controls=["temperature-monitoring", "integrity-checks"],
        applicable_specimen_types=[ALL_SPECIMEN_TYPES],
        penalties=Penalties(
            warning="Documentation required for corrective action",
            violation="Formal investigation and corrective action plan",
            critical="Potential suspension of testing privileges",
        ),
    ),
    RegulatoryRequirement(
        id="clia-quality-control",
        name="CLIA Quality Control Requirements",
        description="Clinical Laboratory Improvement Amendments quality standards",
        category="CLIA",
        chain_of_custody=True,
        temperature_control=False,
        time_requirements=TimeRequirements(enabled=False),
        documentation=["specimen-identification", "test-ordering"],
        quality_controls=["specimen-integrity"],
        applicable_specimen_types=["blood", "urine", "tissue"],
        penalties=Penalties(
            warning="Quality improvement plan required",
            violation="Regulatory reporting required",
            critical="License suspension possible",
        ),
    ),
]


class RequirementCatalog:
    """Read-only catalog of regulatory requirements.

    Args:
        requirements: Requirements to register. Defaults to CAP and CLIA.
    """

    def __init__(self, requirements: list[RegulatoryRequirement] | None = None) -> None:
        """Initialize the catalog."""
        self._requirements: dict[str, RegulatoryRequirement] = {
            requirement.id: requirement
            for requirement in (_DEFAULT_REQUIREMENTS if requirements is None else requirements)
        }

    def get_requirement(self, requirement_id: str) -> RegulatoryRequirement:
        """Retrieve a requirement by id.

        Raises:
            RequirementNotFoundError: If the id is not in the catalog.
        """
        requirement = self._requirements.get(requirement_id)
        if requirement is None:
            raise RequirementNotFoundError(
                f"Regulatory requirement '{requirement_id}' not found. "
                f"Available: {sorted(self._requirements)}",
                requirement_id=requirement_id,
            )
        return requirement

    def list_requirements(self) -> list[RegulatoryRequirement]:
        return list(self._requirements.values())

    def applicable_requirements(self, specimen_type: str | None) -> list[RegulatoryRequirement]:
        """Return requirements covering a specimen type, in catalog order."""
        return [r for r in self._requirements.values() if r.applies_to(specimen_type)]


def _requirement_from_dict(raw: dict[str, Any]) -> RegulatoryRequirement:
    """Build a RegulatoryRequirement from one YAML entry."""
    time_raw: dict[str, Any] = raw.get("time_requirements") or {}
    penalties_raw: dict[str, Any] = raw.get("penalties") or {}
    return RegulatoryRequirement(
        id=raw["id"],
        name=raw.get("name", raw["id"]),
        description=raw.get("description", ""),
        category=raw.get("category", "Custom"),
        chain_of_custody=bool(raw.get("chain_of_custody", False)),
        temperature_control=bool(raw.get("temperature_control", False)),
        time_requirements=TimeRequirements(
            enabled=bool(time_raw.get("enabled", False)),
            max_processing_time=time_raw.get("max_processing_time"),
            max_storage_time=time_raw.get("max_storage_time"),
        ),
        documentation=list(raw.get("documentation", [])),
        quality_controls=list(raw.get("quality_controls", [])),
        applicable_specimen_types=list(raw.get("applicable_specimen_types", [ALL_SPECIMEN_TYPES])),
        penalties=Penalties(
            warning=penalties_raw.get("warning", ""),
            violation=penalties_raw.get("violation", ""),
            critical=penalties_raw.get("critical", ""),
        ),
    )


def load_requirements(path: str | Path) -> RequirementCatalog:
    """Load a requirement catalog from a YAML file.

    Args:
        path: Path to a YAML document with a top-level ``requirements`` list.

    Returns:
        A RequirementCatalog containing exactly the file's requirements.
    """
    raw: dict[str, Any] = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
    requirements = [_requirement_from_dict(entry) for entry in raw.get("requirements", [])]
    logger.info(
        "Regulatory requirements loaded",
        path=str(path),
        count=len(requirements),
        requirement_ids=[r.id for r in requirements],
    )
    return RequirementCatalog(requirements)
