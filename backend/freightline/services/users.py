"""User directory: registration, lookup and admin role changes."""
from __future__ import annotations

import hmac
import sqlite3
from typing import List, Optional

from freightline.core.errors import ConflictError, ForbiddenError, InvalidStateError, NotFoundError
from freightline.core.logging import logger
from freightline.models.base import utcnow
from freightline.models.users import User, UserRegistrationRequest, UserRole, UserRoleUpdateRequest
from freightline.services.access import AccessGate
from freightline.services.carriers import CarrierRegistry
from freightline.services.state import FreightStateStore


CARRIER_SCOPED_ROLES = frozenset({UserRole.CARRIER, UserRole.DRIVER})


class UserDirectory:
    def __init__(
        self,
        store: FreightStateStore,
        gate: AccessGate,
        carriers: CarrierRegistry,
        *,
        admin_bootstrap_token: str = "",
    ) -> None:
        self._store = store
        self._gate = gate
        self._carriers = carriers
        self._admin_bootstrap_token = (admin_bootstrap_token or "").strip()

    def _may_create_admin(self, caller_id: Optional[str], bootstrap_token: Optional[str]) -> bool:
        if caller_id:
            caller = self._gate.get_user(caller_id)
            if caller is not None and caller.role == UserRole.ADMIN and caller.is_active:
                return True
        if self._admin_bootstrap_token:
            return bool(bootstrap_token) and hmac.compare_digest(self._admin_bootstrap_token, bootstrap_token.strip())
        # Without a bootstrap token only the first admin may self-register.
        return self._store.count("users", where={"role": UserRole.ADMIN}) == 0

    def _require_membership(self, caller_id: Optional[str], carrier_id: str, email: str) -> None:
        carrier = self._carriers.get(carrier_id)
        if carrier is None:
            raise NotFoundError(f"Carrier {carrier_id} not found")
        if not carrier.is_active:
            raise InvalidStateError(f"Carrier {carrier_id} is inactive")
        caller = self._gate.get_user(caller_id) if caller_id else None
        if not self._carriers.may_join(caller, carrier, email):
            logger.warning("Carrier membership denied", carrier_id=carrier_id, email=email, caller_id=caller_id)
            raise ForbiddenError(f"Joining {carrier_id} needs its contact email or an invitation from its dispatcher")

    def register(
        self,
        request: UserRegistrationRequest,
        *,
        caller_id: Optional[str] = None,
        bootstrap_token: Optional[str] = None,
    ) -> User:
        if request.role in CARRIER_SCOPED_ROLES and not request.carrier_id:
            raise InvalidStateError(f"carrier_id is required for {request.role.value} accounts")
        if request.role == UserRole.ADMIN and not self._may_create_admin(caller_id, bootstrap_token):
            logger.warning("Admin registration denied", email=request.email)
            raise ForbiddenError("Admin registration requires an admin caller or bootstrap token")

        email = request.email.strip().lower()
        with self._store.transaction():
            if request.role in CARRIER_SCOPED_ROLES:
                self._require_membership(caller_id, request.carrier_id, email)
            if self._store.find("users", where={"email": email}, limit=1):
                raise ConflictError("A user with this email already exists")
            user_id = request.user_id or self._store.next_id("USR")
            if self._store.get("users", user_id) is not None:
                raise ConflictError(f"User {user_id} already exists")
            user = User(
                user_id=user_id,
                email=email,
                name=request.name,
                role=request.role,
                carrier_id=request.carrier_id if request.role in CARRIER_SCOPED_ROLES else None,
                company_name=request.company_name,
                phone=request.phone,
            )
            try:
                self._store.put("users", user)
            except sqlite3.IntegrityError as exc:
                raise ConflictError("A user with this email already exists") from exc

        logger.info("User registered", user_id=user.user_id, role=user.role.value)
        return user

    def get_me(self, caller_id: Optional[str]) -> User:
        return self._gate.require_user(caller_id)

    def get_user(self, caller_id: Optional[str], user_id: str) -> User:
        caller = self._gate.require_user(caller_id)
        if caller.user_id != user_id and caller.role != UserRole.ADMIN:
            raise ForbiddenError("Cannot view another user's profile")
        user = self._gate.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    def set_role(self, caller_id: Optional[str], user_id: str, request: UserRoleUpdateRequest) -> User:
        caller = self._gate.require_user(caller_id)
        if caller.role != UserRole.ADMIN:
            logger.warning("Role change denied", caller_id=caller.user_id, target_user_id=user_id)
            raise ForbiddenError("Only admins can change user roles")

        with self._store.transaction():
            user = self._gate.get_user(user_id)
            if user is None:
                raise NotFoundError("User not found")
            carrier_id = request.carrier_id or user.carrier_id
            if request.role in CARRIER_SCOPED_ROLES and not carrier_id:
                raise InvalidStateError(f"carrier_id is required for {request.role.value} accounts")
            if request.role in CARRIER_SCOPED_ROLES and self._carriers.get(carrier_id) is None:
                raise NotFoundError(f"Carrier {carrier_id} not found")
            previous = user.role
            user.role = request.role
            user.carrier_id = carrier_id if request.role in CARRIER_SCOPED_ROLES else None
            user.updated_at = utcnow()
            self._store.put("users", user)

        logger.info(
            "User role changed",
            user_id=user_id,
            changed_by=caller.user_id,
            previous_role=previous.value,
            new_role=user.role.value,
        )
        return user

    def drivers_for_carrier(self, caller_id: Optional[str], carrier_id: str) -> List[User]:
        caller = self._gate.require_user(caller_id)
        if caller.role != UserRole.ADMIN and caller.carrier_id != carrier_id:
            raise ForbiddenError("Cannot list drivers of another carrier")
        rows = self._store.find(
            "users",
            where={"carrier_id": carrier_id, "role": UserRole.DRIVER},
            order_by="created_at",
            descending=False,
        )
        return [User.model_validate(row) for row in rows]
