"""Audit trail and notification models."""
from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from freightline.models.base import UTCDateTime, utcnow


class HistoryAction(str, Enum):
    """Action types recorded in the detailed load history."""

    LOAD_CREATED = "LOAD_CREATED"
    LOAD_UPDATED = "LOAD_UPDATED"
    ROUTE_MODIFIED = "ROUTE_MODIFIED"
    STATUS_CHANGE = "STATUS_CHANGE"
    CARRIER_ASSIGNED = "CARRIER_ASSIGNED"
    DRIVER_ASSIGNED = "DRIVER_ASSIGNED"
    DELIVERY_CONFIRMED = "DELIVERY_CONFIRMED"
    BID_ACCEPTED = "BID_ACCEPTED"
    DOCUMENT_VERIFIED = "DOCUMENT_VERIFIED"


class Event(BaseModel):
    """Compact, high-frequency audit record."""

    event_id: str
    load_id: str
    user_id: str
    event_type: str
    previous_value: Optional[str] = None
    new_value: Optional[str] = None
    notes: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    timestamp: UTCDateTime = Field(default_factory=utcnow)


class HistoryDetails(BaseModel):
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None
    description: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class LoadHistory(BaseModel):
    """Detailed audit record with full before/after snapshots."""

    history_id: str
    load_id: str
    user_id: str
    action_type: str
    details: HistoryDetails
    event_id: Optional[str] = None
    timestamp: UTCDateTime = Field(default_factory=utcnow)


class LogActionRequest(BaseModel):
    user_id: Optional[str] = Field(default=None, description="Defaults to the caller")
    action_type: str = Field(min_length=1)
    details: HistoryDetails


class HistoryFilters(BaseModel):
    start_date: Optional[UTCDateTime] = None
    end_date: Optional[UTCDateTime] = None
    action_type: Optional[str] = None
    user_id: Optional[str] = None


class NotificationType(str, Enum):
    BID_RECEIVED = "bid_received"
    BID_ACCEPTED = "bid_accepted"
    BID_REJECTED = "bid_rejected"
    LOAD_ASSIGNED = "load_assigned"
    LOAD_STATUS_CHANGED = "load_status_changed"
    LOAD_IN_TRANSIT = "load_in_transit"
    LOAD_DELIVERED = "load_delivered"
    DOCUMENT_UPLOADED = "document_uploaded"
    DOCUMENT_VERIFIED = "document_verified"
    DOCUMENT_REQUIRED = "document_required"
    GEOFENCE_ENTRY = "geofence_entry"
    GEOFENCE_EXIT = "geofence_exit"


class Notification(BaseModel):
    notification_id: str
    user_id: str
    type: NotificationType
    title: str
    message: str
    related_id: Optional[str] = None
    related_type: str = "load"
    is_read: bool = False
    is_action_required: bool = False
    action_url: Optional[str] = None
    created_at: UTCDateTime = Field(default_factory=utcnow)
    read_at: Optional[UTCDateTime] = None
