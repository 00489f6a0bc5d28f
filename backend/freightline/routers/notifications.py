"""Notification inbox routes."""
from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from freightline.core.auth import CallerContext, get_caller
from freightline.models.audit import Notification
from freightline.routers.deps import platform
from freightline.services.platform import FreightPlatform

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("")
def list_notifications(
    unread_only: bool = Query(default=False),
    limit: int = Query(default=50, ge=1, le=200),
    context: CallerContext = Depends(get_caller),
    services: FreightPlatform = Depends(platform),
):
    notifications = services.notifications.list_for_user(context.user_id, unread_only=unread_only, limit=limit)
    return {
        "notifications": notifications,
        "unread": services.notifications.unread_count(context.user_id),
    }


@router.post("/read-all")
def mark_all_read(
    context: CallerContext = Depends(get_caller),
    services: FreightPlatform = Depends(platform),
):
    return {"updated": services.notifications.mark_all_read(context.user_id)}


@router.post("/{notification_id}/read", response_model=Notification)
def mark_read(
    notification_id: str,
    context: CallerContext = Depends(get_caller),
    services: FreightPlatform = Depends(platform),
):
    return services.notifications.mark_read(context.user_id, notification_id)
