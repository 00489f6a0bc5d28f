"""Wires the store and every domain service from settings."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Optional

from freightline.core.config import Settings, get_settings
from freightline.services.access import AccessGate
from freightline.services.audit import AuditTrail
from freightline.services.bids import BidService
from freightline.services.carriers import CarrierRegistry
from freightline.services.documents import DocumentService
from freightline.services.geofences import GeofenceService
from freightline.services.loads import LoadService
from freightline.services.notifications import NotificationCenter
from freightline.services.state import FreightStateStore
from freightline.services.users import UserDirectory


class FreightPlatform:
    def __init__(self, settings: Optional[Settings] = None, *, db_path: str | Path | None = None) -> None:
        settings = settings or get_settings()
        self.settings = settings
        self.store = FreightStateStore(db_path)
        self.gate = AccessGate(self.store)
        self.audit = AuditTrail(self.store, self.gate)
        self.notifications = NotificationCenter(
            self.store,
            self.gate,
            webhook_url=settings.notification_webhook_url,
            webhook_timeout=settings.notification_webhook_timeout_seconds,
        )
        self.carriers = CarrierRegistry(self.store, self.gate)
        self.users = UserDirectory(self.store, self.gate, self.carriers, admin_bootstrap_token=settings.admin_bootstrap_token)
        self.loads = LoadService(self.store, self.gate, self.audit, self.notifications, self.carriers)
        self.bids = BidService(
            self.store,
            self.gate,
            self.audit,
            self.notifications,
            self.loads,
            self.carriers,
            default_ttl_hours=settings.bid_default_ttl_hours,
        )
        self.documents = DocumentService(
            self.store,
            self.gate,
            self.audit,
            self.notifications,
            upload_base_url=settings.upload_base_url,
            max_upload_size=settings.max_upload_size,
        )
        self.geofences = GeofenceService(
            self.store,
            self.gate,
            self.audit,
            self.notifications,
            self.loads,
            require_containment=settings.geofence_require_containment,
            default_radius=settings.geofence_default_radius,
        )


@lru_cache()
def get_platform() -> FreightPlatform:
    """Process-wide services bound to the configured database."""
    return FreightPlatform()
