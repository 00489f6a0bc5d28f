"""Per-user notification inbox plus best-effort webhook delivery."""
from __future__ import annotations

from typing import Iterable, List, Optional

import httpx

from freightline.core.errors import NotFoundError
from freightline.core.logging import logger
from freightline.models.audit import Notification, NotificationType
from freightline.models.base import utcnow
from freightline.services.access import AccessGate
from freightline.services.state import FreightStateStore


class NotificationCenter:
    def __init__(
        self,
        store: FreightStateStore,
        gate: AccessGate,
        *,
        webhook_url: str = "",
        webhook_timeout: float = 5.0,
    ) -> None:
        self._store = store
        self._gate = gate
        self._webhook_url = (webhook_url or "").strip()
        self._webhook_timeout = webhook_timeout

    def notify(
        self,
        user_id: str,
        type: NotificationType,
        title: str,
        message: str,
        *,
        related_id: Optional[str] = None,
        related_type: str = "load",
        action_required: bool = False,
        action_url: Optional[str] = None,
    ) -> Notification:
        """Insert an inbox row inside the caller's transaction."""
        notification = Notification(
            notification_id=self._store.next_id("NTF"),
            user_id=user_id,
            type=type,
            title=title,
            message=message,
            related_id=related_id,
            related_type=related_type,
            is_action_required=action_required,
            action_url=action_url,
        )
        self._store.put("notifications", notification)
        return notification

    def carrier_user_ids(self, carrier_id: Optional[str]) -> List[str]:
        if not carrier_id:
            return []
        rows = self._store.find("users", where={"carrier_id": carrier_id}, order_by="created_at", descending=False)
        return [row["user_id"] for row in rows if row.get("is_active", True)]

    def notify_carrier(self, carrier_id: Optional[str], type: NotificationType, title: str, message: str, **kwargs) -> List[Notification]:
        return [self.notify(user_id, type, title, message, **kwargs) for user_id in self.carrier_user_ids(carrier_id)]

    def deliver(self, notifications: Iterable[Notification]) -> bool:
        """POST a committed batch to the configured webhook. Failures are logged only."""
        batch = list(notifications)
        if not batch or not self._webhook_url:
            return False
        payload = {"notifications": [item.model_dump(mode="json") for item in batch]}
        try:
            response = httpx.post(self._webhook_url, json=payload, timeout=self._webhook_timeout)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Notification webhook delivery failed", count=len(batch), error=str(exc))
            return False
        logger.info("Notification webhook delivered", count=len(batch))
        return True

    # ------------------------------------------------------------------
    # Inbox

    def list_for_user(self, caller_id: Optional[str], *, unread_only: bool = False, limit: int = 50) -> List[Notification]:
        user = self._gate.require_user(caller_id)
        where = {"user_id": user.user_id}
        if unread_only:
            where["is_read"] = False
        rows = self._store.find("notifications", where=where, order_by="created_at", limit=max(1, min(limit, 200)))
        return [Notification.model_validate(row) for row in rows]

    def unread_count(self, caller_id: Optional[str]) -> int:
        user = self._gate.require_user(caller_id)
        return self._store.count("notifications", where={"user_id": user.user_id, "is_read": False})

    def mark_read(self, caller_id: Optional[str], notification_id: str) -> Notification:
        user = self._gate.require_user(caller_id)
        with self._store.transaction():
            row = self._store.get("notifications", notification_id)
            # Other users' notifications are reported as missing.
            if row is None or row["user_id"] != user.user_id:
                raise NotFoundError("Notification not found")
            notification = Notification.model_validate(row)
            if not notification.is_read:
                notification.is_read = True
                notification.read_at = utcnow()
                self._store.put("notifications", notification)
        return notification

    def mark_all_read(self, caller_id: Optional[str]) -> int:
        user = self._gate.require_user(caller_id)
        with self._store.transaction():
            rows = self._store.find("notifications", where={"user_id": user.user_id, "is_read": False})
            now = utcnow()
            for row in rows:
                notification = Notification.model_validate(row)
                notification.is_read = True
                notification.read_at = now
                self._store.put("notifications", notification)
        return len(rows)
