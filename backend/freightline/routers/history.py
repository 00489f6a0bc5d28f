"""Event feed and load-history routes."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query

from freightline.core.auth import CallerContext, get_caller
from freightline.models.audit import Event, HistoryFilters, LoadHistory, LogActionRequest
from freightline.models.users import UserRole
from freightline.routers.deps import platform
from freightline.services.platform import FreightPlatform

router = APIRouter(prefix="/loads/{load_id}", tags=["history"])


def history_filters(
    start_date: Optional[datetime] = Query(default=None),
    end_date: Optional[datetime] = Query(default=None),
    action_type: Optional[str] = Query(default=None),
    user_id: Optional[str] = Query(default=None),
) -> HistoryFilters:
    return HistoryFilters(start_date=start_date, end_date=end_date, action_type=action_type, user_id=user_id)


@router.get("/events", response_model=list[Event])
def get_events_by_load(
    load_id: str,
    event_type: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    before: Optional[datetime] = Query(default=None, description="Return events older than this timestamp"),
    context: CallerContext = Depends(get_caller),
    services: FreightPlatform = Depends(platform),
):
    return services.audit.get_events_by_load(context.user_id, load_id, event_type=event_type, limit=limit, before=before)


@router.post("/history", status_code=201)
def log_action(
    load_id: str,
    request: LogActionRequest,
    context: CallerContext = Depends(get_caller),
    services: FreightPlatform = Depends(platform),
):
    return {"history_id": services.audit.log_action(context.user_id, load_id, request)}


@router.get("/history", response_model=list[LoadHistory])
def get_load_history(
    load_id: str,
    context: CallerContext = Depends(get_caller),
    services: FreightPlatform = Depends(platform),
):
    return services.audit.get_load_history(context.user_id, load_id)


@router.get("/history/filtered", response_model=list[LoadHistory])
def get_filtered_load_history(
    load_id: str,
    filters: HistoryFilters = Depends(history_filters),
    context: CallerContext = Depends(get_caller),
    services: FreightPlatform = Depends(platform),
):
    return services.audit.get_filtered_load_history(context.user_id, load_id, filters)


@router.get("/history/by-role", response_model=list[LoadHistory])
def get_load_history_by_role(
    load_id: str,
    role: Optional[UserRole] = Query(default=None),
    filters: HistoryFilters = Depends(history_filters),
    context: CallerContext = Depends(get_caller),
    services: FreightPlatform = Depends(platform),
):
    return services.audit.get_load_history_by_role(context.user_id, load_id, role, filters)
