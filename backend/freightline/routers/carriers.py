"""Carrier company and vehicle routes."""
from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from freightline.core.auth import CallerContext, get_caller
from freightline.models.carriers import (
    Carrier,
    CarrierCreateRequest,
    Vehicle,
    VehicleCreateRequest,
    VehicleStatusRequest,
)
from freightline.routers.deps import platform
from freightline.services.platform import FreightPlatform

router = APIRouter(tags=["carriers"])


@router.post("/carriers", response_model=Carrier, status_code=201)
def create_carrier(
    request: CarrierCreateRequest,
    context: CallerContext = Depends(get_caller),
    services: FreightPlatform = Depends(platform),
):
    return services.carriers.create_carrier(context.user_id, request)


@router.get("/carriers", response_model=list[Carrier])
def list_carriers(
    verified_only: bool = Query(default=False),
    context: CallerContext = Depends(get_caller),
    services: FreightPlatform = Depends(platform),
):
    return services.carriers.list_carriers(context.user_id, verified_only=verified_only)


@router.get("/carriers/{carrier_id}", response_model=Carrier)
def get_carrier(
    carrier_id: str,
    context: CallerContext = Depends(get_caller),
    services: FreightPlatform = Depends(platform),
):
    return services.carriers.get_carrier(context.user_id, carrier_id)


@router.post("/carriers/{carrier_id}/verify", response_model=Carrier)
def verify_carrier(
    carrier_id: str,
    context: CallerContext = Depends(get_caller),
    services: FreightPlatform = Depends(platform),
):
    return services.carriers.verify_carrier(context.user_id, carrier_id)


@router.post("/carriers/{carrier_id}/vehicles", response_model=Vehicle, status_code=201)
def create_vehicle(
    carrier_id: str,
    request: VehicleCreateRequest,
    context: CallerContext = Depends(get_caller),
    services: FreightPlatform = Depends(platform),
):
    return services.carriers.create_vehicle(context.user_id, carrier_id, request)


@router.get("/carriers/{carrier_id}/vehicles", response_model=list[Vehicle])
def list_vehicles(
    carrier_id: str,
    context: CallerContext = Depends(get_caller),
    services: FreightPlatform = Depends(platform),
):
    return services.carriers.list_vehicles(context.user_id, carrier_id)


@router.patch("/vehicles/{vehicle_id}/status", response_model=Vehicle)
def set_vehicle_status(
    vehicle_id: str,
    request: VehicleStatusRequest,
    context: CallerContext = Depends(get_caller),
    services: FreightPlatform = Depends(platform),
):
    return services.carriers.set_vehicle_status(context.user_id, vehicle_id, request)
