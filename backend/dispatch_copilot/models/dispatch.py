"""Domain models for loads, drivers, assignments, and reference resolution."""
from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class LoadStatus(str, Enum):
    """Operational lifecycle status for a load."""

    AVAILABLE = "AVAILABLE"
    IN_TRANSIT = "IN_TRANSIT"
    DELIVERED = "DELIVERED"
    PROBLEM = "PROBLEM"


class DriverStatus(str, Enum):
    """Dispatch availability of a driver."""

    ACTIVE = "ACTIVE"
    ASSIGNED = "ASSIGNED"
    INACTIVE = "INACTIVE"


class EntityKind(str, Enum):
    """Kinds of operator-typed references the resolver understands."""

    LOAD = "load"
    DRIVER = "driver"
    VEHICLE = "vehicle"


class ResolutionStatus(str, Enum):
    UNIQUE = "unique"
    AMBIGUOUS = "ambiguous"
    NOT_FOUND = "not_found"


class LoadCreateRequest(BaseModel):
    """Fields required to put a new load on the board."""

    origin: str = Field(min_length=1)
    destination: str = Field(min_length=1)
    rate: float = Field(ge=0)
    pickup_date: str = Field(min_length=1)
    delivery_date: str = Field(min_length=1)
    shipper: str = Field(min_length=1)
    equipment_type: str = Field(min_length=1)
    customer_reference: str = Field(min_length=1)
    weight: Optional[float] = Field(default=None, ge=0)
    commodity: Optional[str] = None
    miles: Optional[float] = Field(default=None, ge=0)


class LoadUpdateFields(BaseModel):
    """Patch fields an operator may change on an existing load."""

    origin: Optional[str] = None
    destination: Optional[str] = None
    rate: Optional[float] = Field(default=None, ge=0)
    pickup_date: Optional[str] = None
    delivery_date: Optional[str] = None
    shipper: Optional[str] = None
    equipment_type: Optional[str] = None
    customer_reference: Optional[str] = None
    weight: Optional[float] = Field(default=None, ge=0)
    commodity: Optional[str] = None
    miles: Optional[float] = Field(default=None, ge=0)
    status: Optional[LoadStatus] = None


class EntityReference(BaseModel):
    """A raw operator-typed reference and the kind of record it points at."""

    kind: EntityKind
    raw: str


class Resolution(BaseModel):
    """Outcome of resolving one reference within an organization."""

    kind: EntityKind
    reference: str
    status: ResolutionStatus
    record: Optional[Dict[str, Any]] = None
    candidates: List[Dict[str, Any]] = Field(default_factory=list)
    stage: Optional[str] = None

    @property
    def is_unique(self) -> bool:
        return self.status == ResolutionStatus.UNIQUE

    @property
    def is_ambiguous(self) -> bool:
        return self.status == ResolutionStatus.AMBIGUOUS
