"""Location & Station Registry — static laboratory reference data."""

from lims_custody_engine.registry.locations import Location, LocationRegistry, WorkflowStation

__all__ = [
    "Location",
    "LocationRegistry",
    "WorkflowStation",
]
