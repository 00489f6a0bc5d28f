"""Geofence routes."""
from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from freightline.core.auth import CallerContext, get_caller
from freightline.models.geofences import (
    ContainmentResult,
    Geofence,
    GeofenceActiveRequest,
    GeofenceCreateRequest,
    GeofenceEvent,
    GeofenceEventRequest,
    PositionCheckRequest,
)
from freightline.routers.deps import platform
from freightline.services.platform import FreightPlatform

router = APIRouter(tags=["geofences"])


@router.post("/geofences", response_model=Geofence, status_code=201)
def create_geofence(
    request: GeofenceCreateRequest,
    context: CallerContext = Depends(get_caller),
    services: FreightPlatform = Depends(platform),
):
    return services.geofences.create_geofence(context.user_id, request)


@router.patch("/geofences/{geofence_id}/active", response_model=Geofence)
def set_geofence_active(
    geofence_id: str,
    request: GeofenceActiveRequest,
    context: CallerContext = Depends(get_caller),
    services: FreightPlatform = Depends(platform),
):
    return services.geofences.set_active(context.user_id, geofence_id, request)


@router.post("/geofences/{geofence_id}/events", response_model=GeofenceEvent, status_code=201)
def record_geofence_event(
    geofence_id: str,
    request: GeofenceEventRequest,
    context: CallerContext = Depends(get_caller),
    services: FreightPlatform = Depends(platform),
):
    return services.geofences.record_event(context.user_id, geofence_id, request)


@router.post("/geofences/{geofence_id}/check", response_model=ContainmentResult)
def check_position(
    geofence_id: str,
    request: PositionCheckRequest,
    context: CallerContext = Depends(get_caller),
    services: FreightPlatform = Depends(platform),
):
    return services.geofences.check_position(context.user_id, geofence_id, request)


@router.get("/loads/{load_id}/geofences", response_model=list[Geofence])
def get_geofences_by_load(
    load_id: str,
    active_only: bool = Query(default=False),
    context: CallerContext = Depends(get_caller),
    services: FreightPlatform = Depends(platform),
):
    return services.geofences.get_geofences_by_load(context.user_id, load_id, active_only=active_only)


@router.get("/loads/{load_id}/geofence-events", response_model=list[GeofenceEvent])
def get_geofence_events(
    load_id: str,
    limit: int = Query(default=100, ge=1, le=500),
    context: CallerContext = Depends(get_caller),
    services: FreightPlatform = Depends(platform),
):
    return services.geofences.get_geofence_events(context.user_id, load_id, limit=limit)
