"""Load entity operations: creation, edits, the status state machine and assignment."""
from __future__ import annotations

import sqlite3
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from freightline.core.errors import ConflictError, ForbiddenError, InvalidStateError, NotFoundError
from freightline.core.logging import logger
from freightline.models.audit import HistoryAction, HistoryDetails, Notification, NotificationType
from freightline.models.base import utcnow
from freightline.models.loads import (
    TERMINAL_STATUSES,
    UNASSIGNED_STATUSES,
    CarrierAssignmentRequest,
    DriverAssignmentRequest,
    Load,
    LoadCreateRequest,
    LoadStatus,
    LoadStatusUpdateRequest,
    LoadUpdateRequest,
    Location,
    LocationCreateRequest,
)
from freightline.models.users import UserRole
from freightline.services.access import AccessGate, Intent
from freightline.services.audit import AuditTrail
from freightline.services.bids import reject_pending_bids
from freightline.services.carriers import CarrierRegistry
from freightline.services.notifications import NotificationCenter
from freightline.services.state import FreightStateStore


ALLOWED_STATUS_TRANSITIONS: Dict[LoadStatus, set[LoadStatus]] = {
    LoadStatus.DRAFT: {LoadStatus.POSTED, LoadStatus.CANCELLED},
    LoadStatus.POSTED: {LoadStatus.ASSIGNED, LoadStatus.CANCELLED},
    LoadStatus.ASSIGNED: {LoadStatus.IN_TRANSIT, LoadStatus.CANCELLED},
    LoadStatus.IN_TRANSIT: {LoadStatus.DELIVERED, LoadStatus.CANCELLED},
    LoadStatus.DELIVERED: {LoadStatus.COMPLETED, LoadStatus.CANCELLED},
    LoadStatus.COMPLETED: set(),
    LoadStatus.CANCELLED: set(),
}

REQUIRED_ROUTE_FIELDS = frozenset({"pickup_location_id", "delivery_location_id"})

ROUTE_FIELDS = frozenset(
    {
        "pickup_location_id",
        "delivery_location_id",
        "pickup_window_start",
        "pickup_window_end",
        "delivery_window_start",
        "delivery_window_end",
    }
)

_STATUS_NOTIFICATIONS = {
    LoadStatus.IN_TRANSIT: NotificationType.LOAD_IN_TRANSIT,
    LoadStatus.DELIVERED: NotificationType.LOAD_DELIVERED,
}


def _snapshot(load: Load, fields: Optional[set[str]] = None) -> Dict[str, Any]:
    data = load.model_dump(mode="json")
    if fields is None:
        return data
    return {key: data.get(key) for key in sorted(fields)}


def _check_windows(start: Optional[datetime], end: Optional[datetime], label: str) -> None:
    if start is not None and end is not None and end < start:
        raise InvalidStateError(f"{label} window ends before it starts")


class LoadService:
    def __init__(
        self,
        store: FreightStateStore,
        gate: AccessGate,
        audit: AuditTrail,
        notifications: NotificationCenter,
        carriers: CarrierRegistry,
    ) -> None:
        self._store = store
        self._gate = gate
        self._audit = audit
        self._notifications = notifications
        self._carriers = carriers

    # ------------------------------------------------------------------
    # Locations

    def create_location(self, caller_id: Optional[str], request: LocationCreateRequest) -> Location:
        user = self._gate.require_user(caller_id)
        with self._store.transaction():
            location = Location(
                location_id=self._store.next_id("LOC"),
                created_by=user.user_id,
                **request.model_dump(),
            )
            self._store.put("locations", location)
        logger.info("Location created", location_id=location.location_id, created_by=user.user_id)
        return location

    def get_location(self, caller_id: Optional[str], location_id: str) -> Location:
        self._gate.require_user(caller_id)
        location = self._location(location_id)
        if location is None:
            raise NotFoundError("Location not found")
        return location

    def list_locations(self, caller_id: Optional[str]) -> List[Location]:
        user = self._gate.require_user(caller_id)
        where = None if user.role == UserRole.ADMIN else {"created_by": user.user_id}
        rows = self._store.find("locations", where=where, order_by="created_at")
        return [Location.model_validate(row) for row in rows]

    def _location(self, location_id: Optional[str]) -> Optional[Location]:
        if not location_id:
            return None
        row = self._store.get("locations", location_id)
        return Location.model_validate(row) if row else None

    def _require_location(self, location_id: str, label: str) -> Location:
        location = self._location(location_id)
        if location is None:
            raise NotFoundError(f"{label} location not found")
        return location

    # ------------------------------------------------------------------
    # Internal helpers shared with the bid and geofence subsystems

    def get(self, load_id: str) -> Optional[Load]:
        row = self._store.get("loads", load_id)
        return Load.model_validate(row) if row else None

    def save(self, load: Load, *, expected_status: Optional[LoadStatus] = None, expected_version: Optional[int] = None) -> bool:
        """Write ``load`` with its version bumped, guarded on the stored status/version."""
        conditions: Dict[str, Any] = {"version": expected_version if expected_version is not None else load.version}
        if expected_status is not None:
            conditions["status"] = expected_status
        load.version = conditions["version"] + 1
        load.updated_at = utcnow()
        written = self._store.put_if("loads", load, conditions)
        if not written:
            load.version = conditions["version"]
        return written

    def transition(
        self,
        load: Load,
        target: LoadStatus,
        *,
        actor_id: str,
        at: Optional[datetime] = None,
        notes: Optional[str] = None,
        source: str = "manual",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Tuple[Optional[Load], List[Notification]]:
        """Move ``load`` to ``target`` only while its stored status is still ``load.status``.

        Returns ``(None, [])`` when the guard fails; the caller decides whether
        that is a no-op or an error.
        """
        at = at or utcnow()
        previous = load.status
        updated = load.model_copy(deep=True)
        updated.status = target
        if target == LoadStatus.IN_TRANSIT and updated.actual_pickup_time is None:
            updated.actual_pickup_time = at
        elif target == LoadStatus.DELIVERED and updated.actual_delivery_time is None:
            updated.actual_delivery_time = at
        elif target == LoadStatus.COMPLETED:
            updated.completed_at = at
        if target in UNASSIGNED_STATUSES:
            updated.carrier_id = None
            updated.driver_id = None
            updated.vehicle_id = None
            updated.assigned_at = None

        with self._store.transaction():
            if not self.save(updated, expected_status=previous):
                return None, []
            action = HistoryAction.DELIVERY_CONFIRMED if target == LoadStatus.DELIVERED else HistoryAction.STATUS_CHANGE
            self._audit.record(
                load_id=load.load_id,
                user_id=actor_id,
                event_type="status_changed",
                previous_value=previous,
                new_value=target,
                notes=notes,
                metadata={"source": source, **(metadata or {})},
                action_type=action.value,
                details=HistoryDetails(
                    before={"status": previous.value},
                    after={"status": target.value},
                    description=notes or f"Status changed from {previous.value} to {target.value}",
                    metadata={"source": source},
                ),
            )
            sent = self._notify_status_change(updated, previous, actor_id)

        logger.info(
            "Load status changed",
            load_id=load.load_id,
            previous_status=previous.value,
            new_status=target.value,
            source=source,
        )
        return updated, sent

    def _notify_status_change(self, load: Load, previous: LoadStatus, actor_id: str) -> List[Notification]:
        kind = _STATUS_NOTIFICATIONS.get(load.status, NotificationType.LOAD_STATUS_CHANGED)
        title = f"Load {load.reference_number} is {load.status.value.replace('_', ' ')}"
        message = f"Status changed from {previous.value} to {load.status.value}"
        recipients = [load.shipper_id, *self._notifications.carrier_user_ids(load.carrier_id)]
        sent: List[Notification] = []
        for user_id in dict.fromkeys(recipients):
            if user_id != actor_id:
                sent.append(self._notifications.notify(user_id, kind, title, message, related_id=load.load_id))
        return sent

    # ------------------------------------------------------------------
    # Mutations

    def create_load(self, caller_id: Optional[str], request: LoadCreateRequest) -> Load:
        user = self._gate.require_user(caller_id)
        self._gate.require_role(user, UserRole.SHIPPER, action="create loads")

        if user.role == UserRole.ADMIN:
            if not request.shipper_id:
                raise InvalidStateError("shipper_id is required when an admin creates a load")
            shipper = self._gate.get_user(request.shipper_id)
            if shipper is None or shipper.role != UserRole.SHIPPER:
                raise NotFoundError("Shipper not found")
            shipper_id = shipper.user_id
        else:
            shipper_id = user.user_id

        _check_windows(request.pickup_window_start, request.pickup_window_end, "Pickup")
        _check_windows(request.delivery_window_start, request.delivery_window_end, "Delivery")
        self._require_location(request.pickup_location_id, "Pickup")
        self._require_location(request.delivery_location_id, "Delivery")

        with self._store.transaction():
            reference = (request.reference_number or "").strip()
            if reference:
                if self._store.find("loads", where={"reference_number": reference}, limit=1):
                    raise ConflictError(f"Reference number {reference} is already in use")
            else:
                reference = self._next_reference()

            fields = request.model_dump(exclude={"reference_number", "shipper_id", "post"})
            load = Load(
                load_id=self._store.next_id("LD"),
                reference_number=reference,
                shipper_id=shipper_id,
                status=LoadStatus.POSTED if request.post else LoadStatus.DRAFT,
                **fields,
            )
            try:
                self._store.put("loads", load)
            except sqlite3.IntegrityError as exc:
                raise ConflictError(f"Reference number {reference} is already in use") from exc

            self._audit.record(
                load_id=load.load_id,
                user_id=user.user_id,
                event_type="load_created",
                new_value=load.status,
                notes=f"Load {reference} created",
                action_type=HistoryAction.LOAD_CREATED.value,
                details=HistoryDetails(after=_snapshot(load), description=f"Load {reference} created"),
            )

        logger.info("Load created", load_id=load.load_id, reference_number=reference, status=load.status.value)
        return load

    def _next_reference(self) -> str:
        while True:
            reference = f"LOAD-{self._store.next_sequence('load_reference'):05d}"
            if not self._store.find("loads", where={"reference_number": reference}, limit=1):
                return reference

    def update_load(self, caller_id: Optional[str], load_id: str, request: LoadUpdateRequest) -> Load:
        user = self._gate.require_user(caller_id)
        self._gate.require_role(user, UserRole.SHIPPER, action="edit loads")

        with self._store.transaction():
            load = self._gate.load_for(user, load_id, Intent.WRITE)
            if load.status not in UNASSIGNED_STATUSES:
                raise InvalidStateError(f"Load cannot be edited while {load.status.value}")
            if request.expected_version is not None and request.expected_version != load.version:
                raise ConflictError(
                    "Load was modified by someone else",
                    details={"expected_version": request.expected_version, "current_version": load.version},
                )

            changes = request.model_dump(exclude_unset=True, exclude={"expected_version"})
            # Location ids are required on the load; null means "leave unchanged".
            changes = {key: value for key, value in changes.items() if value is not None or key not in REQUIRED_ROUTE_FIELDS}
            changed = {key for key, value in changes.items() if getattr(load, key) != getattr(request, key)}
            if not changed:
                return load

            updated = load.model_copy(update={key: getattr(request, key) for key in changed})
            if "pickup_location_id" in changed:
                self._require_location(updated.pickup_location_id, "Pickup")
            if "delivery_location_id" in changed:
                self._require_location(updated.delivery_location_id, "Delivery")
            _check_windows(updated.pickup_window_start, updated.pickup_window_end, "Pickup")
            _check_windows(updated.delivery_window_start, updated.delivery_window_end, "Delivery")

            if not self.save(updated, expected_version=load.version):
                raise ConflictError("Load was modified by someone else")

            route_change = bool(changed & ROUTE_FIELDS)
            action = HistoryAction.ROUTE_MODIFIED if route_change else HistoryAction.LOAD_UPDATED
            self._audit.record(
                load_id=load_id,
                user_id=user.user_id,
                event_type="load_updated",
                notes=f"Updated {', '.join(sorted(changed))}",
                metadata={"fields": sorted(changed)},
                action_type=action.value,
                details=HistoryDetails(
                    before=_snapshot(load, changed),
                    after=_snapshot(updated, changed),
                    description="Route modified" if route_change else "Load details updated",
                ),
            )

        logger.info("Load updated", load_id=load_id, fields=sorted(changed), version=updated.version)
        return updated

    def update_status(self, caller_id: Optional[str], load_id: str, request: LoadStatusUpdateRequest) -> Load:
        user = self._gate.require_user(caller_id)
        self._gate.require_role(user, UserRole.SHIPPER, action="change load status")
        if request.force and user.role != UserRole.ADMIN:
            raise ForbiddenError("Only admins can force a status transition")

        with self._store.transaction():
            load = self._gate.load_for(user, load_id, Intent.WRITE)
            if request.expected_version is not None and request.expected_version != load.version:
                raise ConflictError(
                    "Load was modified by someone else",
                    details={"expected_version": request.expected_version, "current_version": load.version},
                )
            if request.status == load.status:
                raise InvalidStateError(f"Load is already {load.status.value}")
            if load.status in TERMINAL_STATUSES and not request.force:
                raise InvalidStateError(f"Load is {load.status.value}; its status can no longer change", details={"allowed": []})
            allowed = request.status in ALLOWED_STATUS_TRANSITIONS[load.status]
            if not request.force:
                if not allowed:
                    raise InvalidStateError(
                        f"Invalid transition {load.status.value} -> {request.status.value}",
                        details={"allowed": sorted(s.value for s in ALLOWED_STATUS_TRANSITIONS[load.status])},
                    )
                if request.status == LoadStatus.ASSIGNED:
                    raise InvalidStateError("Assign a carrier or accept a bid to move a load to assigned")
            elif request.status == LoadStatus.ASSIGNED and not load.carrier_id:
                raise InvalidStateError("Cannot force assigned without a carrier")

            metadata = {"forced": True} if request.force and not allowed else None
            updated, sent = self.transition(
                load,
                request.status,
                actor_id=user.user_id,
                notes=request.notes,
                source="admin_override" if metadata else "manual",
                metadata=metadata,
            )
            if updated is None:
                raise ConflictError("Load status changed concurrently")

        if metadata:
            logger.warning("Admin forced load status", load_id=load_id, user_id=user.user_id, new_status=request.status.value)
        self._notifications.deliver(sent)
        return updated

    def assign_carrier(self, caller_id: Optional[str], load_id: str, request: CarrierAssignmentRequest) -> Load:
        user = self._gate.require_user(caller_id)
        self._gate.require_role(user, UserRole.SHIPPER, action="assign carriers")

        with self._store.transaction():
            load = self._gate.load_for(user, load_id, Intent.WRITE)
            if load.status != LoadStatus.POSTED:
                raise InvalidStateError(f"Only posted loads can be assigned (current: {load.status.value})")
            self._carriers.require_bookable(request.carrier_id)
            updated, sent = self.assign(
                load,
                request.carrier_id,
                actor_id=user.user_id,
                notes=request.notes or f"Carrier {request.carrier_id} assigned",
            )
            if updated is None:
                raise InvalidStateError("Load is no longer posted")
            _, rejected = reject_pending_bids(
                self._store,
                self._audit,
                self._notifications,
                load.load_id,
                actor_id=user.user_id,
                reason=f"Load {load.reference_number} was assigned directly to a carrier",
            )
            sent.extend(rejected)

        self._notifications.deliver(sent)
        return updated

    def assign(
        self,
        load: Load,
        carrier_id: str,
        *,
        actor_id: str,
        notes: str,
        rate: Optional[int] = None,
        bid_id: Optional[str] = None,
    ) -> Tuple[Optional[Load], List[Notification]]:
        """Conditionally move a posted load to assigned with ``carrier_id``."""
        now = utcnow()
        updated = load.model_copy(deep=True)
        updated.status = LoadStatus.ASSIGNED
        updated.carrier_id = carrier_id
        updated.assigned_at = now
        if rate is not None:
            updated.rate = rate

        with self._store.transaction():
            if not self.save(updated, expected_status=LoadStatus.POSTED):
                return None, []
            metadata = {"carrier_id": carrier_id}
            if bid_id:
                metadata["bid_id"] = bid_id
            self._audit.record(
                load_id=load.load_id,
                user_id=actor_id,
                event_type="carrier_assigned",
                previous_value=load.status,
                new_value=LoadStatus.ASSIGNED,
                notes=notes,
                metadata=metadata,
                action_type=HistoryAction.CARRIER_ASSIGNED.value,
                details=HistoryDetails(
                    before={"status": load.status.value, "carrier_id": load.carrier_id},
                    after={"status": LoadStatus.ASSIGNED.value, "carrier_id": carrier_id},
                    description=notes,
                    metadata=metadata,
                ),
            )
            sent = self._notifications.notify_carrier(
                carrier_id,
                NotificationType.LOAD_ASSIGNED,
                f"Load {load.reference_number} assigned",
                f"Your company has been assigned load {load.reference_number}",
                related_id=load.load_id,
                action_required=True,
            )

        logger.info("Carrier assigned", load_id=load.load_id, carrier_id=carrier_id, bid_id=bid_id)
        return updated, sent

    def assign_driver(self, caller_id: Optional[str], load_id: str, request: DriverAssignmentRequest) -> Load:
        user = self._gate.require_user(caller_id)
        self._gate.require_role(user, UserRole.CARRIER, action="assign drivers")

        with self._store.transaction():
            load = self._gate.load_for(user, load_id, Intent.WRITE)
            if load.status not in (LoadStatus.ASSIGNED, LoadStatus.IN_TRANSIT):
                raise InvalidStateError(f"Drivers can only be assigned to assigned or in-transit loads (current: {load.status.value})")
            driver = self._gate.get_user(request.driver_id)
            if driver is None or driver.role != UserRole.DRIVER:
                raise NotFoundError("Driver not found")
            if driver.carrier_id != load.carrier_id:
                raise InvalidStateError("Driver does not belong to the assigned carrier")

            if request.vehicle_id:
                self._carriers.vehicle_for(load.carrier_id, request.vehicle_id)

            previous_driver = load.driver_id
            updated = load.model_copy(update={"driver_id": driver.user_id, "vehicle_id": request.vehicle_id or load.vehicle_id})
            if not self.save(updated, expected_version=load.version):
                raise ConflictError("Load was modified by someone else")

            notes = request.notes or f"Driver {driver.name} assigned"
            self._audit.record(
                load_id=load_id,
                user_id=user.user_id,
                event_type="driver_assigned",
                previous_value=previous_driver,
                new_value=driver.user_id,
                notes=notes,
                metadata={"vehicle_id": updated.vehicle_id},
                action_type=HistoryAction.DRIVER_ASSIGNED.value,
                details=HistoryDetails(
                    before={"driver_id": previous_driver, "vehicle_id": load.vehicle_id},
                    after={"driver_id": driver.user_id, "vehicle_id": updated.vehicle_id},
                    description=notes,
                ),
            )
            sent = [
                self._notifications.notify(
                    driver.user_id,
                    NotificationType.LOAD_ASSIGNED,
                    f"Load {load.reference_number} assigned to you",
                    f"You have been assigned load {load.reference_number}",
                    related_id=load_id,
                    action_required=True,
                )
            ]

        logger.info("Driver assigned", load_id=load_id, driver_id=driver.user_id)
        self._notifications.deliver(sent)
        return updated

    # ------------------------------------------------------------------
    # Queries

    def _loads(self, where: Optional[Dict[str, Any]] = None, status: Optional[LoadStatus] = None, limit: Optional[int] = None) -> List[Load]:
        where = dict(where or {})
        if status is not None:
            where["status"] = status
        rows = self._store.find("loads", where=where, order_by="created_at", limit=limit)
        return [Load.model_validate(row) for row in rows]

    def get_shipper_loads(
        self,
        caller_id: Optional[str],
        *,
        shipper_id: Optional[str] = None,
        status: Optional[LoadStatus] = None,
    ) -> List[Load]:
        user = self._gate.require_user(caller_id)
        if user.role == UserRole.SHIPPER:
            if shipper_id and shipper_id != user.user_id:
                raise ForbiddenError("Cannot list another shipper's loads")
            shipper_id = user.user_id
        elif user.role == UserRole.ADMIN:
            if not shipper_id:
                raise InvalidStateError("shipper_id is required")
        else:
            raise ForbiddenError("Only shippers can list their loads")
        return self._loads({"shipper_id": shipper_id}, status)

    def get_load_by_id(self, caller_id: Optional[str], load_id: str, *, event_limit: int = 20) -> Dict[str, Any]:
        """Load with its pickup/delivery locations and most recent events."""
        _, load = self._gate.require_load(caller_id, load_id)
        return {
            "load": load,
            "pickup_location": self._location(load.pickup_location_id),
            "delivery_location": self._location(load.delivery_location_id),
            "events": self._audit.events_for_load(load_id, limit=event_limit),
        }

    def get_all_loads(self, caller_id: Optional[str], *, status: Optional[LoadStatus] = None, limit: int = 200) -> List[Load]:
        user = self._gate.require_user(caller_id)
        if user.role != UserRole.ADMIN:
            logger.warning("Admin listing denied", user_id=user.user_id, role=user.role.value)
            raise ForbiddenError("Only admins can list all loads")
        return self._loads(status=status, limit=limit)

    def get_available_loads(self, caller_id: Optional[str], *, limit: int = 200) -> List[Load]:
        user = self._gate.require_user(caller_id)
        self._gate.require_role(user, UserRole.CARRIER, action="browse available loads")
        return self._loads(status=LoadStatus.POSTED, limit=limit)

    def get_assigned_loads(self, caller_id: Optional[str], *, status: Optional[LoadStatus] = None) -> List[Load]:
        user = self._gate.require_user(caller_id)
        if user.role == UserRole.CARRIER:
            return self._loads({"carrier_id": user.carrier_id}, status)
        if user.role == UserRole.DRIVER:
            return self._loads({"driver_id": user.user_id}, status)
        if user.role == UserRole.ADMIN:
            return [load for load in self._loads(status=status) if load.carrier_id]
        raise ForbiddenError("Only carriers and drivers have assigned loads")
