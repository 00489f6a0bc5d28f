"""User directory models."""
from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from freightline.models.base import UTCDateTime, utcnow


class UserRole(str, Enum):
    """Platform roles used by every access check."""

    ADMIN = "admin"
    SHIPPER = "shipper"
    CARRIER = "carrier"
    DRIVER = "driver"


class User(BaseModel):
    """Persisted user record."""

    user_id: str
    email: str
    name: str
    role: UserRole
    carrier_id: Optional[str] = None
    company_name: Optional[str] = None
    phone: Optional[str] = None
    is_active: bool = True
    created_at: UTCDateTime = Field(default_factory=utcnow)
    updated_at: UTCDateTime = Field(default_factory=utcnow)

    def summary(self) -> dict:
        return {
            "user_id": self.user_id,
            "name": self.name,
            "email": self.email,
            "role": self.role.value,
        }


class UserRegistrationRequest(BaseModel):
    """Registration payload.

    ``user_id`` may be preset so bearer tokens configured ahead of time
    resolve to the new account.
    """

    user_id: Optional[str] = Field(default=None, min_length=1)
    email: str = Field(min_length=3)
    name: str = Field(min_length=1)
    role: UserRole
    carrier_id: Optional[str] = None
    company_name: Optional[str] = None
    phone: Optional[str] = None


class UserRoleUpdateRequest(BaseModel):
    """Admin-only role change."""

    role: UserRole
    carrier_id: Optional[str] = None
