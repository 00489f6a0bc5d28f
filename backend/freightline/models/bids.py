"""Carrier bid models."""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from freightline.models.base import UTCDateTime, utcnow


class BidStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"
    WITHDRAWN = "withdrawn"


class BidCreateRequest(BaseModel):
    """A carrier's price offer against a posted load."""

    amount: int = Field(gt=0, description="Offer in cents")
    notes: Optional[str] = None
    expires_at: Optional[UTCDateTime] = None


class BidUpdateRequest(BaseModel):
    amount: Optional[int] = Field(default=None, gt=0)
    notes: Optional[str] = None
    expires_at: Optional[UTCDateTime] = None


class BidDecisionRequest(BaseModel):
    notes: Optional[str] = None


class Bid(BaseModel):
    """Persisted bid."""

    bid_id: str
    load_id: str
    carrier_id: str
    user_id: str
    amount: int = Field(gt=0)
    notes: Optional[str] = None
    status: BidStatus = BidStatus.PENDING
    expires_at: UTCDateTime
    response_notes: Optional[str] = None
    responded_by: Optional[str] = None
    responded_at: Optional[UTCDateTime] = None
    created_at: UTCDateTime = Field(default_factory=utcnow)
    updated_at: UTCDateTime = Field(default_factory=utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) > self.expires_at

    def view(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        row = self.model_dump(mode="json")
        row["is_expired"] = self.is_expired(now)
        return row
