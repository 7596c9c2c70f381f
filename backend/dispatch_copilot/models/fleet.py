"""Normalized vehicle shapes shared by all telemetry providers."""
from __future__ import annotations

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class VehicleProvider(str, Enum):
    """Vehicle telemetry sources, listed in merge priority order."""

    MOTIVE = "motive"
    TELEMATICS_B = "telematics-b"
    SIMULATED = "simulated"


PROVIDER_LABELS = {
    VehicleProvider.MOTIVE: "Motive",
    VehicleProvider.TELEMATICS_B: "Samsara",
    VehicleProvider.SIMULATED: "Atlas Simulator",
}


class LookupFailure(str, Enum):
    NOT_FOUND = "NOT_FOUND"
    MISSING_ORG = "MISSING_ORG"
    EMPTY_QUERY = "EMPTY_QUERY"


class NormalizedVehicle(BaseModel):
    """One vehicle position, regardless of which provider reported it."""

    provider: VehicleProvider
    provider_label: str
    vehicle_id: str
    display_name: str
    license_plate: Optional[str] = None
    license_plate_state: Optional[str] = None
    vin: Optional[str] = None
    make: Optional[str] = None
    model: Optional[str] = None
    year: Optional[int] = None
    status: Optional[str] = None
    availability_status: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    heading_degrees: Optional[float] = None
    speed_mph: Optional[float] = None
    odometer_miles: Optional[float] = None
    ignition_on: Optional[bool] = None
    located_at: Optional[str] = None
    last_synced_at: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    location_text: Optional[str] = None


class VehicleLookup(BaseModel):
    """Result of locating a single vehicle from free text."""

    query: str
    identifier: Optional[str] = None
    vehicle: Optional[NormalizedVehicle] = None
    reason: Optional[LookupFailure] = None

    @property
    def found(self) -> bool:
        return self.vehicle is not None


class FleetSnapshot(BaseModel):
    """Latest positions across one or all providers."""

    provider: str = "all"
    vehicles: List[NormalizedVehicle] = Field(default_factory=list)
    duration_ms: float = 0.0
