"""Geofences and the crossing events that drive automatic load transitions."""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Dict, List, Optional

from freightline.core.errors import GEOFENCE_ACCESS_DENIED, InvalidStateError
from freightline.core.logging import logger
from freightline.models.audit import Notification, NotificationType
from freightline.models.geofences import (
    Confidence,
    ContainmentResult,
    Geofence,
    GeofenceActiveRequest,
    GeofenceCreateRequest,
    GeofenceEvent,
    GeofenceEventRequest,
    GeofenceEventType,
    GeofenceType,
    PositionCheckRequest,
)
from freightline.models.loads import TERMINAL_STATUSES, Load, LoadStatus
from freightline.models.users import User
from freightline.services.access import AccessGate, Intent
from freightline.services.audit import AuditTrail
from freightline.services.geo import check_containment
from freightline.services.notifications import NotificationCenter
from freightline.services.state import FreightStateStore

if TYPE_CHECKING:
    from freightline.services.loads import LoadService


# (geofence type, required status) -> status after an entry crossing
ENTRY_TRANSITIONS: Dict[GeofenceType, tuple[LoadStatus, LoadStatus]] = {
    GeofenceType.PICKUP: (LoadStatus.ASSIGNED, LoadStatus.IN_TRANSIT),
    GeofenceType.DELIVERY: (LoadStatus.IN_TRANSIT, LoadStatus.DELIVERED),
}


def format_dwell(dwell: timedelta) -> str:
    minutes = max(0, int(dwell.total_seconds() // 60))
    if minutes >= 60:
        return f"{minutes // 60} hours {minutes % 60} minutes"
    return f"{minutes} minutes"


class GeofenceService:
    def __init__(
        self,
        store: FreightStateStore,
        gate: AccessGate,
        audit: AuditTrail,
        notifications: NotificationCenter,
        loads: "LoadService",
        *,
        require_containment: bool = False,
        default_radius: float = 100.0,
    ) -> None:
        self._store = store
        self._gate = gate
        self._audit = audit
        self._notifications = notifications
        self._loads = loads
        self._require_containment = require_containment
        self._default_radius = default_radius

    def _geofence(self, user: User, geofence_id: str) -> Geofence:
        row = self._store.get("geofences", geofence_id)
        if row is None:
            raise self._gate.not_found(user, "Geofence", GEOFENCE_ACCESS_DENIED)
        return Geofence.model_validate(row)

    def create_geofence(self, caller_id: Optional[str], request: GeofenceCreateRequest) -> Geofence:
        user = self._gate.require_user(caller_id)
        with self._store.transaction():
            self._gate.load_for(user, request.load_id, Intent.WRITE)
            geofence = Geofence(
                geofence_id=self._store.next_id("GEO"),
                created_by=user.user_id,
                **request.model_dump(exclude={"radius"}),
                radius=request.radius or self._default_radius,
            )
            self._store.put("geofences", geofence)
            self._audit.record(
                load_id=geofence.load_id,
                user_id=user.user_id,
                event_type="geofence_created",
                notes=f"Created {geofence.type.value} geofence: {geofence.name}",
                metadata={
                    "geofence_id": geofence.geofence_id,
                    "latitude": geofence.latitude,
                    "longitude": geofence.longitude,
                    "radius": geofence.radius,
                },
            )
        logger.info("Geofence created", geofence_id=geofence.geofence_id, load_id=geofence.load_id, type=geofence.type.value)
        return geofence

    def set_active(self, caller_id: Optional[str], geofence_id: str, request: GeofenceActiveRequest) -> Geofence:
        user = self._gate.require_user(caller_id)
        with self._store.transaction():
            geofence = self._geofence(user, geofence_id)
            self._gate.load_for(user, geofence.load_id, Intent.WRITE)
            if geofence.is_active == request.is_active:
                return geofence
            previous = geofence.is_active
            geofence = geofence.model_copy(update={"is_active": request.is_active})
            self._store.put("geofences", geofence)
            self._audit.record(
                load_id=geofence.load_id,
                user_id=user.user_id,
                event_type="geofence_activated" if request.is_active else "geofence_deactivated",
                previous_value=previous,
                new_value=request.is_active,
                notes=f"Geofence {geofence.name} {'activated' if request.is_active else 'deactivated'}",
                metadata={"geofence_id": geofence_id},
            )
        logger.info("Geofence toggled", geofence_id=geofence_id, is_active=request.is_active)
        return geofence

    def record_event(self, caller_id: Optional[str], geofence_id: str, request: GeofenceEventRequest) -> GeofenceEvent:
        """Persist a crossing and apply the status guard for entries.

        The transition is conditional on the load's current status, so a
        replayed or late entry is recorded but changes nothing. Trusted
        crossings of pickup and delivery fences also notify the parties.
        """
        user = self._gate.require_user(caller_id)
        sent: List[Notification] = []

        with self._store.transaction():
            geofence = self._geofence(user, geofence_id)
            load = self._gate.load_for(user, request.load_id, Intent.WRITE)
            if geofence.load_id != request.load_id:
                raise InvalidStateError("Geofence does not belong to this load")

            containment = check_containment(
                request.latitude,
                request.longitude,
                geofence.latitude,
                geofence.longitude,
                geofence.radius,
                request.accuracy,
            )
            latest = self._store.find("geofence_events", where={"geofence_id": geofence_id}, order_by="timestamp", limit=1)
            out_of_order = bool(latest) and GeofenceEvent.model_validate(latest[0]).timestamp > request.timestamp
            entered_at = self._entered_at(geofence_id, request.timestamp) if request.event_type == GeofenceEventType.EXIT else None

            event = GeofenceEvent(
                geofence_event_id=self._store.next_id("GFE"),
                geofence_id=geofence_id,
                load_id=request.load_id,
                user_id=user.user_id,
                event_type=request.event_type,
                latitude=request.latitude,
                longitude=request.longitude,
                accuracy=request.accuracy,
                timestamp=request.timestamp,
                containment=containment,
                out_of_order=out_of_order,
            )
            self._store.put("geofence_events", event)

            verb = "Entered" if request.event_type == GeofenceEventType.ENTRY else "Exited"
            self._audit.record(
                load_id=request.load_id,
                user_id=user.user_id,
                event_type=f"geofence_{request.event_type.value}",
                notes=f"{verb} {geofence.type.value} geofence: {geofence.name}",
                metadata={
                    "geofence_id": geofence_id,
                    "geofence_event_id": event.geofence_event_id,
                    "reported_at": request.timestamp.isoformat(),
                    "out_of_order": out_of_order,
                    "containment": containment.model_dump(mode="json"),
                },
            )

            trusted = self._is_trusted(geofence, containment)
            alerts: List[Notification] = []
            if trusted and not out_of_order and load.status not in TERMINAL_STATUSES:
                alerts = self._crossing_alerts(load, geofence, request.event_type, request.timestamp, entered_at)

            rule = ENTRY_TRANSITIONS.get(geofence.type)
            if request.event_type == GeofenceEventType.ENTRY and rule and trusted:
                required, target = rule
                if load.status == required:
                    updated, sent = self._loads.transition(
                        load,
                        target,
                        actor_id=user.user_id,
                        at=request.timestamp,
                        notes=f"Automatic update from {geofence.type.value} geofence entry",
                        source="geofence",
                        metadata={"geofence_id": geofence_id, "geofence_event_id": event.geofence_event_id},
                    )
                    if updated is None:
                        logger.info("Geofence transition skipped; load changed concurrently", load_id=load.load_id)

        logger.info(
            "Geofence event recorded",
            geofence_event_id=event.geofence_event_id,
            geofence_id=geofence_id,
            event_type=request.event_type.value,
            within=containment.is_within,
            out_of_order=out_of_order,
            alerts=len(alerts),
        )
        self._notifications.deliver([*alerts, *sent])
        return event

    def _entered_at(self, geofence_id: str, before: datetime) -> Optional[datetime]:
        """Timestamp of the latest entry into the fence at or before ``before``."""
        rows = self._store.find(
            "geofence_events",
            where={"geofence_id": geofence_id, "event_type": GeofenceEventType.ENTRY},
            conditions=[("timestamp", "<=", before)],
            order_by="timestamp",
            limit=1,
        )
        return GeofenceEvent.model_validate(rows[0]).timestamp if rows else None

    def _crossing_alerts(
        self,
        load: Load,
        geofence: Geofence,
        event_type: GeofenceEventType,
        at: datetime,
        entered_at: Optional[datetime],
    ) -> List[Notification]:
        """Inbox rows for a pickup or delivery crossing. Stop fences stay silent."""
        if geofence.type not in (GeofenceType.PICKUP, GeofenceType.DELIVERY):
            return []
        stop = geofence.type.value
        reference = load.reference_number
        tracking_url = f"/loads/{load.load_id}/tracking"
        alerts: List[Notification] = []

        if event_type == GeofenceEventType.ENTRY:
            if load.driver_id:
                alerts.append(
                    self._notifications.notify(
                        load.driver_id,
                        NotificationType.GEOFENCE_ENTRY,
                        f"Arrived at {stop}",
                        f"You have arrived at the {stop} location for load {reference}",
                        related_id=load.load_id,
                        action_required=True,
                        action_url=f"/loads/{load.load_id}/{stop}",
                    )
                )
                if geofence.type == GeofenceType.DELIVERY:
                    alerts.append(
                        self._notifications.notify(
                            load.driver_id,
                            NotificationType.DOCUMENT_REQUIRED,
                            "BOL Upload Required",
                            f"Upload the signed bill of lading for load {reference}",
                            related_id=load.load_id,
                            action_required=True,
                            action_url=f"/loads/{load.load_id}/documents/upload",
                        )
                    )
            kind = NotificationType.GEOFENCE_ENTRY
            title = f"Driver arrived at {stop}"
            message = f"The driver for load {reference} has arrived at the {stop} location"
        else:
            kind = NotificationType.GEOFENCE_EXIT
            title = f"Driver departed from {stop}"
            message = f"The driver for load {reference} has departed the {stop} location"
            if entered_at is not None:
                message += f" after {format_dwell(at - entered_at)}"

        # The driver reported the crossing; only the office side hears about it.
        recipients = [load.shipper_id]
        recipients += [user_id for user_id in self._notifications.carrier_user_ids(load.carrier_id) if user_id != load.driver_id]
        for user_id in recipients:
            alerts.append(self._notifications.notify(user_id, kind, title, message, related_id=load.load_id, action_url=tracking_url))
        return alerts

    def _is_trusted(self, geofence: Geofence, containment: ContainmentResult) -> bool:
        """Whether a crossing may move the load and alert its parties."""
        if not geofence.is_active:
            return False
        if self._require_containment:
            return containment.is_within and containment.confidence != Confidence.LOW
        return True

    def check_position(self, caller_id: Optional[str], geofence_id: str, request: PositionCheckRequest) -> ContainmentResult:
        user = self._gate.require_user(caller_id)
        geofence = self._geofence(user, geofence_id)
        self._gate.load_for(user, geofence.load_id, Intent.READ)
        return check_containment(
            request.latitude,
            request.longitude,
            geofence.latitude,
            geofence.longitude,
            geofence.radius,
            request.accuracy,
        )

    def get_geofences_by_load(self, caller_id: Optional[str], load_id: str, *, active_only: bool = False) -> List[Geofence]:
        self._gate.require_load(caller_id, load_id)
        where = {"load_id": load_id}
        if active_only:
            where["is_active"] = True
        rows = self._store.find("geofences", where=where, order_by="created_at", descending=False)
        return [Geofence.model_validate(row) for row in rows]

    def get_geofence_events(self, caller_id: Optional[str], load_id: str, *, limit: int = 100) -> List[GeofenceEvent]:
        self._gate.require_load(caller_id, load_id)
        rows = self._store.find(
            "geofence_events",
            where={"load_id": load_id},
            order_by="timestamp",
            limit=max(1, min(limit, 500)),
        )
        return [GeofenceEvent.model_validate(row) for row in rows]
