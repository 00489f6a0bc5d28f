"""Geofence and crossing-event models."""
from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from freightline.models.base import UTCDateTime, utcnow


class GeofenceType(str, Enum):
    PICKUP = "pickup"
    DELIVERY = "delivery"
    STOP = "stop"


class GeofenceEventType(str, Enum):
    ENTRY = "entry"
    EXIT = "exit"


class Confidence(str, Enum):
    """Trust tier derived from the reported GPS accuracy."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class GeofenceCreateRequest(BaseModel):
    load_id: str
    name: str = Field(min_length=1)
    type: GeofenceType
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    radius: Optional[float] = Field(default=None, gt=0, description="Meters; defaults to the configured radius")
    address: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)


class GeofenceActiveRequest(BaseModel):
    is_active: bool


class GeofenceEventRequest(BaseModel):
    """A client-reported crossing; `timestamp` is when the device observed it."""

    load_id: str
    event_type: GeofenceEventType
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    accuracy: Optional[float] = Field(default=None, ge=0)
    timestamp: UTCDateTime


class PositionCheckRequest(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    accuracy: Optional[float] = Field(default=None, ge=0)


class ContainmentResult(BaseModel):
    """Outcome of evaluating a reported point against a circular region."""

    is_within: bool
    confidence: Confidence
    distance: float
    adjusted_radius: float
    accuracy: Optional[float] = None


class Geofence(BaseModel):
    geofence_id: str
    load_id: str
    name: str
    type: GeofenceType
    latitude: float
    longitude: float
    radius: float
    address: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True
    created_by: str
    created_at: UTCDateTime = Field(default_factory=utcnow)
    updated_at: UTCDateTime = Field(default_factory=utcnow)


class GeofenceEvent(BaseModel):
    """Observed crossing. Append-only."""

    geofence_event_id: str
    geofence_id: str
    load_id: str
    user_id: str
    event_type: GeofenceEventType
    latitude: float
    longitude: float
    accuracy: Optional[float] = None
    timestamp: UTCDateTime
    containment: Optional[ContainmentResult] = None
    out_of_order: bool = False
    created_at: UTCDateTime = Field(default_factory=utcnow)
