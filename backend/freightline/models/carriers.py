"""Carrier companies and the vehicles they operate."""
from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from freightline.models.base import UTCDateTime, utcnow


class CarrierCreateRequest(BaseModel):
    """Carrier company registration.

    ``contact_email`` is the address the company's first dispatcher
    registers with; later accounts are added by that dispatcher or an admin.
    """

    carrier_id: Optional[str] = Field(default=None, min_length=1, description="Admins only; generated otherwise")
    name: str = Field(min_length=1)
    dot_number: str = Field(min_length=1)
    mc_number: Optional[str] = None
    contact_name: str = ""
    contact_email: str = Field(min_length=3)
    contact_phone: str = ""
    address: str = ""
    city: str = ""
    state: str = ""
    zip_code: str = ""
    country: str = "USA"
    fleet_size: int = Field(default=0, ge=0)
    insurance_provider: Optional[str] = None
    insurance_policy_number: Optional[str] = None


class Carrier(CarrierCreateRequest):
    carrier_id: str
    is_verified: bool = False
    is_active: bool = True
    verified_by: Optional[str] = None
    verified_at: Optional[UTCDateTime] = None
    created_by: Optional[str] = None
    created_at: UTCDateTime = Field(default_factory=utcnow)
    updated_at: UTCDateTime = Field(default_factory=utcnow)


class VehicleType(str, Enum):
    TRUCK = "truck"
    TRAILER = "trailer"


class VehicleStatus(str, Enum):
    ACTIVE = "active"
    MAINTENANCE = "maintenance"
    OUT_OF_SERVICE = "out_of_service"


class VehicleCreateRequest(BaseModel):
    type: VehicleType = VehicleType.TRUCK
    make: str = ""
    model: str = ""
    year: Optional[int] = Field(default=None, ge=1900)
    vin: str = Field(min_length=1)
    license_plate: str = ""
    state: str = ""
    equipment_type: str = "dry_van"
    capacity: Optional[float] = Field(default=None, ge=0)


class VehicleStatusRequest(BaseModel):
    status: VehicleStatus
    notes: Optional[str] = None


class Vehicle(VehicleCreateRequest):
    vehicle_id: str
    carrier_id: str
    status: VehicleStatus = VehicleStatus.ACTIVE
    notes: Optional[str] = None
    created_by: Optional[str] = None
    created_at: UTCDateTime = Field(default_factory=utcnow)
    updated_at: UTCDateTime = Field(default_factory=utcnow)
