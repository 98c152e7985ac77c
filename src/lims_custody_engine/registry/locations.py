"""Location & Station Registry — catalog of physical locations and workflow stations.

Reference data only: the registry is built once (from the built-in laboratory
layout or a YAML file) and read by the recorder and the compliance evaluator.

YAML layout accepted by ``LocationRegistry.from_yaml``:

    locations:
      - id: reception
        name: Reception
        category: reception
        capacity: 100
    stations:
      - id: reception-desk
        name: Reception Desk
        location_id: reception
        required_roles: [lab-technician]
        equipment: [barcode-scanner]
        average_processing_minutes: 5
        capacity: 10
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal, get_args

import yaml

from lims_custody_engine.core.errors import LocationNotFoundError, StationNotFoundError
from lims_custody_engine.observability import get_logger

logger = get_logger(__name__)

LocationCategory = Literal["reception", "processing", "testing", "storage", "disposal"]

_LOCATION_CATEGORIES: frozenset[str] = frozenset(get_args(LocationCategory))


@dataclass(frozen=True)
class Location:
    """A named physical place specimens can be held in.

    Attributes:
        id: Stable location identifier.
        name: Display name.
        category: Location category.
        description: Free-text description.
        capacity: Optional specimen capacity.
    """

    id: str
    name: str
    category: LocationCategory
    description: str = ""
    capacity: int | None = None


@dataclass(frozen=True)
class WorkflowStation:
    """An operating point bound to one location.

    Attributes:
        id: Stable station identifier.
        name: Display name.
        location_id: Location this station sits in.
        required_roles: Roles allowed to operate the station.
        equipment: Equipment available at the station.
        average_processing_minutes: Typical dwell time at this station.
        capacity: Concurrent specimens the station handles.
    """

    id: str
    name: str
    location_id: str
    required_roles: list[str] = field(default_factory=list)
    equipment: list[str] = field(default_factory=list)
    average_processing_minutes: int = 0
    capacity: int = 0


_DEFAULT_LOCATIONS: list[Location] = [
    Location("reception", "Reception", "reception", "Sample receiving area", 100),
    Location("processing", "Processing", "processing", "Sample processing and aliquoting", 50),
    Location("chemistry", "Chemistry Lab", "testing", "Clinical chemistry testing", 200),
    Location("hematology", "Hematology Lab", "testing", "Blood cell analysis", 150),
    Location("microbiology", "Microbiology Lab", "testing", "Culture and sensitivity testing", 100),
    Location("histopathology", "Histopathology Lab", "testing", "Tissue processing and analysis", 75),
    Location("storage-cold", "Cold Storage", "storage", "Refrigerated specimen storage", 500),
    Location("storage-frozen", "Frozen Storage", "storage", "Frozen specimen storage", 300),
    Location("disposal", "Disposal", "disposal", "Specimen disposal area", 50),
]

_DEFAULT_STATIONS: list[WorkflowStation] = [
    WorkflowStation(
        id="reception-desk",
        name="Reception Desk",
        location_id="reception",
        required_roles=["lab-technician", "reception-clerk"],
        equipment=["barcode-scanner", "label-printer"],
        average_processing_minutes=5,
        capacity=10,
    ),
    WorkflowStation(
        id="processing-station-1",
        name="Processing Station 1",
        location_id="processing",
        required_roles=["lab-technician"],
        equipment=["centrifuge", "pipettes", "aliquot-tubes"],
        average_processing_minutes=15,
        capacity=5,
    ),
    WorkflowStation(
        id="chemistry-analyzer-1",
        name="Chemistry Analyzer 1",
        location_id="chemistry",
        required_roles=["lab-technician", "chemist"],
        equipment=["chemistry-analyzer", "quality-controls"],
        average_processing_minutes=30,
        capacity=20,
    ),
    WorkflowStation(
        id="hematology-analyzer-1",
        name="Hematology Analyzer 1",
        location_id="hematology",
        required_roles=["lab-technician", "hematologist"],
        equipment=["hematology-analyzer", "microscope"],
        average_processing_minutes=20,
        capacity=15,
    ),
]


class LocationRegistry:
    """Read-only lookup of locations and workflow stations.

    Args:
        locations: Locations to register. Ids must be unique.
        stations: Stations to register. Each must reference a registered location.

    Raises:
        ValueError: On duplicate ids or a station bound to an unknown location.
    """

    def __init__(
        self,
        locations: list[Location] | None = None,
        stations: list[WorkflowStation] | None = None,
    ) -> None:
        """Initialize the registry, defaulting to the built-in laboratory layout."""
        self._locations: dict[str, Location] = {}
        self._stations: dict[str, WorkflowStation] = {}

        for location in _DEFAULT_LOCATIONS if locations is None else locations:
            if location.id in self._locations:
                raise ValueError(f"Duplicate location id '{location.id}'")
            self._locations[location.id] = location

        for station in _DEFAULT_STATIONS if stations is None else stations:
            if station.id in self._stations:
                raise ValueError(f"Duplicate station id '{station.id}'")
            if station.location_id not in self._locations:
                raise ValueError(
                    f"Station '{station.id}' references unknown location '{station.location_id}'"
                )
            self._stations[station.id] = station

    @classmethod
    def from_yaml(cls, path: str | Path) -> "LocationRegistry":
        """Build a registry from a YAML file.

        Args:
            path: Path to a YAML document with ``locations`` and ``stations`` lists.

        Returns:
            A populated LocationRegistry.

        Raises:
            ValueError: If an entry is missing fields or has an unknown category.
        """
        raw: dict[str, Any] = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}

        locations: list[Location] = []
        for entry in raw.get("locations", []):
            category = entry.get("category")
            if category not in _LOCATION_CATEGORIES:
                raise ValueError(
                    f"Location '{entry.get('id')}' has unknown category '{category}'. "
                    f"Expected one of {sorted(_LOCATION_CATEGORIES)}"
                )
            locations.append(
                Location(
                    id=entry["id"],
                    name=entry.get("name", entry["id"]),
                    category=category,
                    description=entry.get("description", ""),
                    capacity=entry.get("capacity"),
                )
            )

        stations = [
            WorkflowStation(
                id=entry["id"],
                name=entry.get("name", entry["id"]),
                location_id=entry["location_id"],
                required_roles=list(entry.get("required_roles", [])),
                equipment=list(entry.get("equipment", [])),
                average_processing_minutes=int(entry.get("average_processing_minutes", 0)),
                capacity=int(entry.get("capacity", 0)),
            )
            for entry in raw.get("stations", [])
        ]

        registry = cls(locations=locations, stations=stations)
        logger.info(
            "Location registry loaded",
            path=str(path),
            location_count=len(locations),
            station_count=len(stations),
        )
        return registry

    def get_location(self, location_id: str) -> Location:
        """Return a location by id.

        Raises:
            LocationNotFoundError: If the id is not registered.
        """
        location = self._locations.get(location_id)
        if location is None:
            raise LocationNotFoundError(
                f"Location {location_id} not found",
                location_id=location_id,
            )
        return location

    def get_station(self, station_id: str) -> WorkflowStation:
        """Return a workflow station by id.

        Raises:
            StationNotFoundError: If the id is not registered.
        """
        station = self._stations.get(station_id)
        if station is None:
            raise StationNotFoundError(
                f"Workflow station {station_id} not found",
                station_id=station_id,
            )
        return station

    def location_for_station(self, station_id: str) -> Location:
        """Return the location a station is bound to."""
        return self._locations[self.get_station(station_id).location_id]

    def category_of(self, location_id: str | None) -> str | None:
        """Return the category of a location, or None when unknown."""
        if location_id is None:
            return None
        location = self._locations.get(location_id)
        return location.category if location is not None else None

    def list_locations(self) -> list[Location]:
        return list(self._locations.values())

    def list_stations(self) -> list[WorkflowStation]:
        return list(self._stations.values())
