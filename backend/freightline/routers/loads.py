"""Load, location and load-lifecycle routes."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from freightline.core.auth import CallerContext, get_caller
from freightline.models.loads import (
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
from freightline.routers.deps import IdempotencyKey, idempotent, platform
from freightline.services.platform import FreightPlatform

router = APIRouter(tags=["loads"])


@router.post("/locations", response_model=Location, status_code=201)
def create_location(
    request: LocationCreateRequest,
    context: CallerContext = Depends(get_caller),
    services: FreightPlatform = Depends(platform),
):
    return services.loads.create_location(context.user_id, request)


@router.get("/locations", response_model=list[Location])
def list_locations(
    context: CallerContext = Depends(get_caller),
    services: FreightPlatform = Depends(platform),
):
    return services.loads.list_locations(context.user_id)


@router.get("/locations/{location_id}", response_model=Location)
def get_location(
    location_id: str,
    context: CallerContext = Depends(get_caller),
    services: FreightPlatform = Depends(platform),
):
    return services.loads.get_location(context.user_id, location_id)


@router.post("/loads", status_code=201)
def create_load(
    request: LoadCreateRequest,
    idempotency_key: Optional[str] = IdempotencyKey,
    context: CallerContext = Depends(get_caller),
    services: FreightPlatform = Depends(platform),
):
    with idempotent(services, context, "create_load", idempotency_key) as slot:
        if slot.cached is not None:
            return slot.cached
        load = services.loads.create_load(context.user_id, request)
        return slot.store(load)


@router.get("/loads", response_model=list[Load])
def get_all_loads(
    status: Optional[LoadStatus] = Query(default=None),
    limit: int = Query(default=200, ge=1, le=1000),
    context: CallerContext = Depends(get_caller),
    services: FreightPlatform = Depends(platform),
):
    return services.loads.get_all_loads(context.user_id, status=status, limit=limit)


@router.get("/loads/mine", response_model=list[Load])
def get_shipper_loads(
    status: Optional[LoadStatus] = Query(default=None),
    shipper_id: Optional[str] = Query(default=None),
    context: CallerContext = Depends(get_caller),
    services: FreightPlatform = Depends(platform),
):
    return services.loads.get_shipper_loads(context.user_id, shipper_id=shipper_id, status=status)


@router.get("/loads/available", response_model=list[Load])
def get_available_loads(
    limit: int = Query(default=200, ge=1, le=1000),
    context: CallerContext = Depends(get_caller),
    services: FreightPlatform = Depends(platform),
):
    return services.loads.get_available_loads(context.user_id, limit=limit)


@router.get("/loads/assigned", response_model=list[Load])
def get_assigned_loads(
    status: Optional[LoadStatus] = Query(default=None),
    context: CallerContext = Depends(get_caller),
    services: FreightPlatform = Depends(platform),
):
    return services.loads.get_assigned_loads(context.user_id, status=status)


@router.get("/loads/{load_id}")
def get_load(
    load_id: str,
    context: CallerContext = Depends(get_caller),
    services: FreightPlatform = Depends(platform),
):
    return services.loads.get_load_by_id(context.user_id, load_id)


@router.patch("/loads/{load_id}", response_model=Load)
def update_load(
    load_id: str,
    request: LoadUpdateRequest,
    context: CallerContext = Depends(get_caller),
    services: FreightPlatform = Depends(platform),
):
    return services.loads.update_load(context.user_id, load_id, request)


@router.post("/loads/{load_id}/status")
def update_load_status(
    load_id: str,
    request: LoadStatusUpdateRequest,
    idempotency_key: Optional[str] = IdempotencyKey,
    context: CallerContext = Depends(get_caller),
    services: FreightPlatform = Depends(platform),
):
    operation = f"update_status:{load_id}:{request.status.value}"
    with idempotent(services, context, operation, idempotency_key) as slot:
        if slot.cached is not None:
            return slot.cached
        load = services.loads.update_status(context.user_id, load_id, request)
        return slot.store(load)


@router.post("/loads/{load_id}/carrier", response_model=Load)
def assign_carrier(
    load_id: str,
    request: CarrierAssignmentRequest,
    context: CallerContext = Depends(get_caller),
    services: FreightPlatform = Depends(platform),
):
    return services.loads.assign_carrier(context.user_id, load_id, request)


@router.post("/loads/{load_id}/driver", response_model=Load)
def assign_driver(
    load_id: str,
    request: DriverAssignmentRequest,
    context: CallerContext = Depends(get_caller),
    services: FreightPlatform = Depends(platform),
):
    return services.loads.assign_driver(context.user_id, load_id, request)
