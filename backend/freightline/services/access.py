"""Caller resolution and per-load access policy."""
from __future__ import annotations

from enum import Enum
from typing import Optional, Tuple

from freightline.core.errors import LOAD_ACCESS_DENIED, ForbiddenError, NotFoundError, UnauthenticatedError
from freightline.core.logging import logger
from freightline.models.loads import Load, LoadStatus
from freightline.models.users import User, UserRole
from freightline.services.state import FreightStateStore


class Intent(str, Enum):
    READ = "read"
    WRITE = "write"


class AccessGate:
    """Pure guard: resolves users and checks role rights on loads. Never writes."""

    def __init__(self, store: FreightStateStore) -> None:
        self._store = store

    def get_user(self, user_id: str) -> Optional[User]:
        row = self._store.get("users", user_id)
        return User.model_validate(row) if row else None

    def require_user(self, caller_id: Optional[str]) -> User:
        if not caller_id:
            logger.warning("Unauthenticated request rejected")
            raise UnauthenticatedError("Not authenticated")
        user = self.get_user(caller_id)
        if user is None:
            logger.warning("Unknown caller rejected", user_id=caller_id)
            raise UnauthenticatedError("User not found")
        if not user.is_active:
            logger.warning("Inactive caller rejected", user_id=caller_id)
            raise UnauthenticatedError("User account is inactive")
        return user

    def require_role(self, user: User, *roles: UserRole, action: str = "perform this action") -> None:
        if user.role == UserRole.ADMIN or user.role in roles:
            return
        logger.warning("Role denied", user_id=user.user_id, role=user.role.value, action=action)
        raise ForbiddenError(f"Role '{user.role.value}' may not {action}")

    @staticmethod
    def not_found(user: User, entity: str, public_detail: str) -> NotFoundError:
        """Admins learn that the entity is missing; everyone else gets the denial message."""
        if user.role == UserRole.ADMIN:
            return NotFoundError(f"{entity} not found")
        return NotFoundError(public_detail, conceal=True)

    @staticmethod
    def can_access(user: User, load: Load, intent: Intent = Intent.READ) -> bool:
        if user.role == UserRole.ADMIN:
            return True
        if user.role == UserRole.SHIPPER:
            return load.shipper_id == user.user_id
        if user.role == UserRole.CARRIER:
            if user.carrier_id and load.carrier_id == user.carrier_id:
                return True
            # Posted loads are visible to every carrier so they can bid.
            return intent == Intent.READ and load.status == LoadStatus.POSTED
        if user.role == UserRole.DRIVER:
            return load.driver_id == user.user_id
        return False

    def load_for(self, user: User, load_id: str, intent: Intent = Intent.READ) -> Load:
        """Fetch a load the user may act on.

        Non-admins get the same public failure for a missing load and a
        denied one.
        """
        row = self._store.get("loads", load_id)
        if row is None:
            if user.role != UserRole.ADMIN:
                logger.warning("Load access denied", user_id=user.user_id, load_id=load_id, reason="missing")
            raise self.not_found(user, "Load", LOAD_ACCESS_DENIED)
        load = Load.model_validate(row)
        if not self.can_access(user, load, intent):
            logger.warning(
                "Load access denied",
                user_id=user.user_id,
                role=user.role.value,
                load_id=load_id,
                intent=intent.value,
            )
            raise ForbiddenError(LOAD_ACCESS_DENIED)
        return load

    def require_load(self, caller_id: Optional[str], load_id: str, intent: Intent = Intent.READ) -> Tuple[User, Load]:
        user = self.require_user(caller_id)
        return user, self.load_for(user, load_id, intent)
