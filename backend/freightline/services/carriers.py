"""Carrier registry: companies, admin verification and their vehicles."""
from __future__ import annotations

import sqlite3
from typing import List, Optional

from freightline.core.errors import ConflictError, ForbiddenError, InvalidStateError, NotFoundError
from freightline.core.logging import logger
from freightline.models.base import utcnow
from freightline.models.carriers import (
    Carrier,
    CarrierCreateRequest,
    Vehicle,
    VehicleCreateRequest,
    VehicleStatus,
    VehicleStatusRequest,
)
from freightline.models.users import User, UserRole
from freightline.services.access import AccessGate
from freightline.services.state import FreightStateStore


class CarrierRegistry:
    def __init__(self, store: FreightStateStore, gate: AccessGate) -> None:
        self._store = store
        self._gate = gate

    def get(self, carrier_id: Optional[str]) -> Optional[Carrier]:
        row = self._store.get("carriers", carrier_id) if carrier_id else None
        return Carrier.model_validate(row) if row else None

    def _carrier(self, carrier_id: str) -> Carrier:
        carrier = self.get(carrier_id)
        if carrier is None:
            raise NotFoundError("Carrier not found")
        return carrier

    @staticmethod
    def _require_dispatcher(user: User, carrier_id: str, action: str) -> None:
        """Admins, or carrier-role members of ``carrier_id``."""
        if user.role == UserRole.ADMIN:
            return
        if user.role == UserRole.CARRIER and user.carrier_id == carrier_id:
            return
        logger.warning("Carrier access denied", user_id=user.user_id, carrier_id=carrier_id, action=action)
        raise ForbiddenError(f"Only an admin or a dispatcher of {carrier_id} can {action}")

    # ------------------------------------------------------------------
    # Carriers

    def create_carrier(self, caller_id: Optional[str], request: CarrierCreateRequest) -> Carrier:
        """Register a carrier company. It starts unverified.

        Anonymous callers may register a company so its first dispatcher can
        then sign up with the contact email.
        """
        caller = self._gate.require_user(caller_id) if caller_id else None
        if request.carrier_id and (caller is None or caller.role != UserRole.ADMIN):
            raise ForbiddenError("Only admins can choose a carrier_id")

        dot_number = request.dot_number.strip()
        with self._store.transaction():
            if self._store.find("carriers", where={"dot_number": dot_number}, limit=1):
                raise ConflictError("A carrier with this DOT number already exists")
            carrier_id = request.carrier_id or self._store.next_id("CAR")
            if self._store.get("carriers", carrier_id) is not None:
                raise ConflictError(f"Carrier {carrier_id} already exists")
            carrier = Carrier(
                **request.model_dump(exclude={"carrier_id", "dot_number", "contact_email"}),
                carrier_id=carrier_id,
                dot_number=dot_number,
                contact_email=request.contact_email.strip().lower(),
                created_by=caller.user_id if caller else None,
            )
            try:
                self._store.put("carriers", carrier)
            except sqlite3.IntegrityError as exc:
                raise ConflictError("A carrier with this DOT number already exists") from exc

        logger.info("Carrier registered", carrier_id=carrier.carrier_id, dot_number=dot_number)
        return carrier

    def get_carrier(self, caller_id: Optional[str], carrier_id: str) -> Carrier:
        self._gate.require_user(caller_id)
        return self._carrier(carrier_id)

    def list_carriers(self, caller_id: Optional[str], *, verified_only: bool = False) -> List[Carrier]:
        self._gate.require_user(caller_id)
        where = {"is_verified": True} if verified_only else None
        rows = self._store.find("carriers", where=where, order_by="created_at", descending=False)
        return [Carrier.model_validate(row) for row in rows]

    def verify_carrier(self, caller_id: Optional[str], carrier_id: str) -> Carrier:
        user = self._gate.require_user(caller_id)
        if user.role != UserRole.ADMIN:
            logger.warning("Carrier verification denied", user_id=user.user_id, carrier_id=carrier_id)
            raise ForbiddenError("Only admins can verify carriers")

        with self._store.transaction():
            carrier = self._carrier(carrier_id)
            if carrier.is_verified:
                return carrier
            now = utcnow()
            carrier = carrier.model_copy(update={"is_verified": True, "verified_by": user.user_id, "verified_at": now, "updated_at": now})
            self._store.put("carriers", carrier)

        logger.info("Carrier verified", carrier_id=carrier_id, verified_by=user.user_id)
        return carrier

    def require_bookable(self, carrier_id: str) -> Carrier:
        """A carrier that may bid on or be assigned loads."""
        carrier = self._carrier(carrier_id)
        if not carrier.is_active:
            raise InvalidStateError(f"Carrier {carrier_id} is inactive")
        if not carrier.is_verified:
            raise InvalidStateError(f"Carrier {carrier_id} has not been verified")
        return carrier

    def may_join(self, caller: Optional[User], carrier: Carrier, email: str) -> bool:
        """Whether a new account with ``email`` may be attached to ``carrier``."""
        if caller is not None and caller.is_active:
            if caller.role == UserRole.ADMIN:
                return True
            if caller.role == UserRole.CARRIER and caller.carrier_id == carrier.carrier_id:
                return True
        return email.strip().lower() == carrier.contact_email

    # ------------------------------------------------------------------
    # Vehicles

    def create_vehicle(self, caller_id: Optional[str], carrier_id: str, request: VehicleCreateRequest) -> Vehicle:
        user = self._gate.require_user(caller_id)
        self._require_dispatcher(user, carrier_id, "add vehicles")

        vin = request.vin.strip().upper()
        with self._store.transaction():
            self._carrier(carrier_id)
            if self._store.find("vehicles", where={"vin": vin}, limit=1):
                raise ConflictError("A vehicle with this VIN already exists")
            vehicle = Vehicle(
                **request.model_dump(exclude={"vin"}),
                vin=vin,
                vehicle_id=self._store.next_id("VEH"),
                carrier_id=carrier_id,
                created_by=user.user_id,
            )
            try:
                self._store.put("vehicles", vehicle)
            except sqlite3.IntegrityError as exc:
                raise ConflictError("A vehicle with this VIN already exists") from exc

        logger.info("Vehicle added", vehicle_id=vehicle.vehicle_id, carrier_id=carrier_id)
        return vehicle

    def list_vehicles(self, caller_id: Optional[str], carrier_id: str) -> List[Vehicle]:
        user = self._gate.require_user(caller_id)
        if user.role != UserRole.ADMIN and user.carrier_id != carrier_id:
            raise ForbiddenError("Cannot list vehicles of another carrier")
        rows = self._store.find("vehicles", where={"carrier_id": carrier_id}, order_by="created_at", descending=False)
        return [Vehicle.model_validate(row) for row in rows]

    def set_vehicle_status(self, caller_id: Optional[str], vehicle_id: str, request: VehicleStatusRequest) -> Vehicle:
        user = self._gate.require_user(caller_id)
        with self._store.transaction():
            row = self._store.get("vehicles", vehicle_id)
            if row is None:
                raise NotFoundError("Vehicle not found")
            vehicle = Vehicle.model_validate(row)
            self._require_dispatcher(user, vehicle.carrier_id, "change vehicle status")
            vehicle = vehicle.model_copy(update={"status": request.status, "notes": request.notes or vehicle.notes, "updated_at": utcnow()})
            self._store.put("vehicles", vehicle)

        logger.info("Vehicle status changed", vehicle_id=vehicle_id, status=request.status.value)
        return vehicle

    def vehicle_for(self, carrier_id: Optional[str], vehicle_id: str) -> Vehicle:
        """A vehicle of ``carrier_id`` that is fit for dispatch."""
        row = self._store.get("vehicles", vehicle_id)
        if row is None:
            raise NotFoundError("Vehicle not found")
        vehicle = Vehicle.model_validate(row)
        if vehicle.carrier_id != carrier_id:
            raise InvalidStateError("Vehicle does not belong to the assigned carrier")
        if vehicle.status != VehicleStatus.ACTIVE:
            raise InvalidStateError(f"Vehicle is {vehicle.status.value}")
        return vehicle
