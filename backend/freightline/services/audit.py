"""Append-only audit trail with event-feed and load-history projections."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from freightline.core.errors import ForbiddenError, NotFoundError
from freightline.core.logging import logger
from freightline.models.audit import Event, HistoryAction, HistoryDetails, HistoryFilters, LoadHistory, LogActionRequest
from freightline.models.base import utcnow
from freightline.models.users import UserRole
from freightline.services.access import AccessGate
from freightline.services.state import FreightStateStore


_CARRIER_ACTIONS = frozenset(
    {
        HistoryAction.DRIVER_ASSIGNED.value,
        HistoryAction.STATUS_CHANGE.value,
        HistoryAction.ROUTE_MODIFIED.value,
        HistoryAction.DELIVERY_CONFIRMED.value,
    }
)

# None means unrestricted.
ROLE_VISIBLE_ACTIONS: Dict[UserRole, Optional[FrozenSet[str]]] = {
    UserRole.ADMIN: None,
    UserRole.SHIPPER: frozenset(
        {
            HistoryAction.STATUS_CHANGE.value,
            HistoryAction.CARRIER_ASSIGNED.value,
            HistoryAction.DELIVERY_CONFIRMED.value,
            HistoryAction.LOAD_CREATED.value,
        }
    ),
    UserRole.CARRIER: _CARRIER_ACTIONS,
    UserRole.DRIVER: _CARRIER_ACTIONS,
}

MAX_EVENT_PAGE = 500


def _stringify(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        return value.isoformat()
    return str(getattr(value, "value", value))


class AuditTrail:
    """Single write path for Event and LoadHistory rows."""

    def __init__(self, store: FreightStateStore, gate: AccessGate) -> None:
        self._store = store
        self._gate = gate

    def record(self, **kwargs: Any) -> Event:
        event, _ = self.append(**kwargs)
        return event

    def append(
        self,
        *,
        load_id: str,
        user_id: str,
        event_type: str,
        previous_value: Any = None,
        new_value: Any = None,
        notes: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        action_type: Optional[str] = None,
        details: Optional[HistoryDetails] = None,
    ) -> Tuple[Event, Optional[LoadHistory]]:
        """Append an Event and, when ``action_type`` is given, its LoadHistory row.

        Runs inside the caller's transaction when one is open.
        """
        history: Optional[LoadHistory] = None
        with self._store.transaction():
            event = Event(
                event_id=self._store.next_id("EVT"),
                load_id=load_id,
                user_id=user_id,
                event_type=event_type,
                previous_value=_stringify(previous_value),
                new_value=_stringify(new_value),
                notes=notes,
                metadata=metadata or {},
                timestamp=utcnow(),
            )
            self._store.put("events", event)
            if action_type:
                history = LoadHistory(
                    history_id=self._store.next_id("HIST"),
                    load_id=load_id,
                    user_id=user_id,
                    action_type=action_type,
                    details=details or HistoryDetails(description=notes or event_type),
                    event_id=event.event_id,
                    timestamp=event.timestamp,
                )
                self._store.put("load_history", history)
        logger.debug("Audit event recorded", event_id=event.event_id, load_id=load_id, event_type=event_type)
        return event, history

    def log_action(self, caller_id: Optional[str], load_id: str, request: LogActionRequest) -> str:
        """Append a caller-described history entry; returns the history id."""
        caller = self._gate.require_user(caller_id)
        self._gate.load_for(caller, load_id)
        user_id = request.user_id or caller.user_id
        if user_id != caller.user_id and caller.role != UserRole.ADMIN:
            raise ForbiddenError("Only admins may log actions on behalf of another user")
        if self._gate.get_user(user_id) is None:
            raise NotFoundError(f"User with ID {user_id} not found")

        event, history = self.append(
            load_id=load_id,
            user_id=user_id,
            event_type=request.action_type.lower(),
            notes=request.details.description,
            metadata=request.details.metadata,
            action_type=request.action_type,
            details=request.details,
        )
        logger.info("Load action logged", load_id=load_id, history_id=history.history_id, event_id=event.event_id)
        return history.history_id

    # ------------------------------------------------------------------
    # Event feed

    def get_events_by_load(
        self,
        caller_id: Optional[str],
        load_id: str,
        *,
        event_type: Optional[str] = None,
        limit: int = 50,
        before: Optional[datetime] = None,
        since: Optional[datetime] = None,
    ) -> List[Event]:
        """Newest first. ``before`` pages backwards from an earlier page's last timestamp."""
        self._gate.require_load(caller_id, load_id)
        return self.events_for_load(load_id, event_type=event_type, limit=limit, before=before, since=since)

    def events_for_load(
        self,
        load_id: str,
        *,
        event_type: Optional[str] = None,
        limit: Optional[int] = 50,
        before: Optional[datetime] = None,
        since: Optional[datetime] = None,
    ) -> List[Event]:
        where: Dict[str, Any] = {"load_id": load_id}
        if event_type:
            where["event_type"] = event_type
        conditions = []
        if before is not None:
            conditions.append(("timestamp", "<", before))
        if since is not None:
            conditions.append(("timestamp", ">=", since))
        if limit is not None:
            limit = max(1, min(int(limit), MAX_EVENT_PAGE))
        rows = self._store.find("events", where=where, conditions=conditions, order_by="timestamp", limit=limit)
        return [Event.model_validate(row) for row in rows]

    # ------------------------------------------------------------------
    # Load history

    def _history(self, load_id: str, filters: Optional[HistoryFilters], visible: Optional[FrozenSet[str]]) -> List[LoadHistory]:
        filters = filters or HistoryFilters()
        where: Dict[str, Any] = {"load_id": load_id}
        if filters.action_type:
            where["action_type"] = filters.action_type
        if filters.user_id:
            where["user_id"] = filters.user_id
        conditions = []
        if filters.start_date is not None:
            conditions.append(("timestamp", ">=", filters.start_date))
        if filters.end_date is not None:
            conditions.append(("timestamp", "<=", filters.end_date))
        if visible is not None:
            conditions.append(("action_type", "IN", sorted(visible)))
        rows = self._store.find("load_history", where=where, conditions=conditions, order_by="timestamp")
        return [LoadHistory.model_validate(row) for row in rows]

    def get_load_history(self, caller_id: Optional[str], load_id: str) -> List[LoadHistory]:
        self._gate.require_load(caller_id, load_id)
        return self._history(load_id, None, None)

    def get_filtered_load_history(
        self,
        caller_id: Optional[str],
        load_id: str,
        filters: Optional[HistoryFilters] = None,
    ) -> List[LoadHistory]:
        self._gate.require_load(caller_id, load_id)
        return self._history(load_id, filters, None)

    def get_load_history_by_role(
        self,
        caller_id: Optional[str],
        load_id: str,
        role: Optional[UserRole] = None,
        filters: Optional[HistoryFilters] = None,
    ) -> List[LoadHistory]:
        """History restricted to the action types the role is allowed to see.

        Admins may request any role's view; everyone else gets their own.
        """
        caller, _ = self._gate.require_load(caller_id, load_id)
        view_role = role or caller.role
        if caller.role != UserRole.ADMIN and view_role != caller.role:
            raise ForbiddenError("Cannot view history as a different role")
        return self._history(load_id, filters, ROLE_VISIBLE_ACTIONS[view_role])
