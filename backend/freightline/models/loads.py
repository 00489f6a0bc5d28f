"""Domain models for loads, their locations and lifecycle status."""
from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from freightline.models.base import UTCDateTime, utcnow


class LoadStatus(str, Enum):
    """Lifecycle status for a load."""

    DRAFT = "draft"
    POSTED = "posted"
    ASSIGNED = "assigned"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({LoadStatus.COMPLETED, LoadStatus.CANCELLED})
# carrier_id / driver_id must stay empty while the load is in one of these.
UNASSIGNED_STATUSES = frozenset({LoadStatus.DRAFT, LoadStatus.POSTED})


class RateType(str, Enum):
    FLAT = "flat"
    PER_MILE = "per_mile"


class LocationType(str, Enum):
    WAREHOUSE = "warehouse"
    DISTRIBUTION_CENTER = "distribution_center"
    PORT = "port"
    TERMINAL = "terminal"
    CUSTOMER_LOCATION = "customer_location"
    OTHER = "other"


class LocationCreateRequest(BaseModel):
    """Payload to register a pickup or delivery location."""

    name: str
    address: str
    city: str
    state: str
    zip_code: str
    country: str = "USA"
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    location_type: LocationType = LocationType.OTHER
    special_instructions: Optional[str] = None


class Location(LocationCreateRequest):
    """Persisted location."""

    location_id: str
    created_by: Optional[str] = None
    is_active: bool = True
    created_at: UTCDateTime = Field(default_factory=utcnow)
    updated_at: UTCDateTime = Field(default_factory=utcnow)


class Dimensions(BaseModel):
    length: float = Field(ge=0)
    width: float = Field(ge=0)
    height: float = Field(ge=0)


class LoadCreateRequest(BaseModel):
    """Request payload to create a new load."""

    reference_number: Optional[str] = None
    shipper_id: Optional[str] = Field(default=None, description="Admins only; shippers always own what they create")
    post: bool = Field(default=True, description="Create directly in 'posted' instead of 'draft'")
    pickup_location_id: str
    delivery_location_id: str
    pickup_window_start: Optional[UTCDateTime] = None
    pickup_window_end: Optional[UTCDateTime] = None
    delivery_window_start: Optional[UTCDateTime] = None
    delivery_window_end: Optional[UTCDateTime] = None
    pickup_instructions: Optional[str] = None
    delivery_instructions: Optional[str] = None
    commodity: str = "General Freight"
    weight: float = Field(default=0.0, ge=0)
    dimensions: Optional[Dimensions] = None
    pallet_count: Optional[int] = Field(default=None, ge=0)
    hazmat: bool = False
    equipment_type: str = "dry_van"
    load_type: str = "ftl"
    rate: Optional[int] = Field(default=None, ge=0, description="Rate in cents")
    rate_type: RateType = RateType.FLAT
    miles: Optional[float] = Field(default=None, ge=0)
    tracking_enabled: bool = True
    notes: Optional[str] = None


class LoadUpdateRequest(BaseModel):
    """Shipper edits while a load is still draft or posted."""

    pickup_location_id: Optional[str] = None
    delivery_location_id: Optional[str] = None
    pickup_window_start: Optional[UTCDateTime] = None
    pickup_window_end: Optional[UTCDateTime] = None
    delivery_window_start: Optional[UTCDateTime] = None
    delivery_window_end: Optional[UTCDateTime] = None
    pickup_instructions: Optional[str] = None
    delivery_instructions: Optional[str] = None
    commodity: Optional[str] = None
    weight: Optional[float] = Field(default=None, ge=0)
    dimensions: Optional[Dimensions] = None
    pallet_count: Optional[int] = Field(default=None, ge=0)
    hazmat: Optional[bool] = None
    equipment_type: Optional[str] = None
    rate: Optional[int] = Field(default=None, ge=0)
    rate_type: Optional[RateType] = None
    miles: Optional[float] = Field(default=None, ge=0)
    tracking_enabled: Optional[bool] = None
    notes: Optional[str] = None
    expected_version: Optional[int] = Field(default=None, ge=1)


class LoadStatusUpdateRequest(BaseModel):
    """Explicit status change initiated by a shipper or admin."""

    status: LoadStatus
    notes: Optional[str] = None
    expected_version: Optional[int] = Field(default=None, ge=1)
    force: bool = Field(default=False, description="Admin override of the transition table")


class CarrierAssignmentRequest(BaseModel):
    carrier_id: str
    notes: Optional[str] = None


class DriverAssignmentRequest(BaseModel):
    driver_id: str
    vehicle_id: Optional[str] = None
    notes: Optional[str] = None


class Load(BaseModel):
    """Persisted load record."""

    load_id: str
    reference_number: str
    shipper_id: str
    status: LoadStatus = LoadStatus.DRAFT
    carrier_id: Optional[str] = None
    driver_id: Optional[str] = None
    vehicle_id: Optional[str] = None
    pickup_location_id: str
    delivery_location_id: str
    pickup_window_start: Optional[UTCDateTime] = None
    pickup_window_end: Optional[UTCDateTime] = None
    delivery_window_start: Optional[UTCDateTime] = None
    delivery_window_end: Optional[UTCDateTime] = None
    pickup_instructions: Optional[str] = None
    delivery_instructions: Optional[str] = None
    actual_pickup_time: Optional[UTCDateTime] = None
    actual_delivery_time: Optional[UTCDateTime] = None
    commodity: str = "General Freight"
    weight: float = 0.0
    dimensions: Optional[Dimensions] = None
    pallet_count: Optional[int] = None
    hazmat: bool = False
    equipment_type: str = "dry_van"
    load_type: str = "ftl"
    rate: Optional[int] = None
    rate_type: RateType = RateType.FLAT
    miles: Optional[float] = None
    tracking_enabled: bool = True
    notes: Optional[str] = None
    version: int = Field(default=1, ge=1)
    assigned_at: Optional[UTCDateTime] = None
    completed_at: Optional[UTCDateTime] = None
    created_at: UTCDateTime = Field(default_factory=utcnow)
    updated_at: UTCDateTime = Field(default_factory=utcnow)
