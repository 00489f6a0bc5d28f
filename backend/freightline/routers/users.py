"""User directory routes."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header

from freightline.core.auth import CallerContext, get_caller
from freightline.models.users import User, UserRegistrationRequest, UserRoleUpdateRequest
from freightline.routers.deps import platform
from freightline.services.platform import FreightPlatform

router = APIRouter(prefix="/users", tags=["users"])


@router.post("", response_model=User, status_code=201)
def register_user(
    request: UserRegistrationRequest,
    bootstrap_token: Optional[str] = Header(default=None, alias="X-Admin-Bootstrap-Token"),
    context: CallerContext = Depends(get_caller),
    services: FreightPlatform = Depends(platform),
):
    return services.users.register(request, caller_id=context.user_id, bootstrap_token=bootstrap_token)


@router.get("/me", response_model=User)
def get_me(
    context: CallerContext = Depends(get_caller),
    services: FreightPlatform = Depends(platform),
):
    return services.users.get_me(context.user_id)


@router.get("/{user_id}", response_model=User)
def get_user(
    user_id: str,
    context: CallerContext = Depends(get_caller),
    services: FreightPlatform = Depends(platform),
):
    return services.users.get_user(context.user_id, user_id)


@router.patch("/{user_id}/role", response_model=User)
def set_user_role(
    user_id: str,
    request: UserRoleUpdateRequest,
    context: CallerContext = Depends(get_caller),
    services: FreightPlatform = Depends(platform),
):
    return services.users.set_role(context.user_id, user_id, request)


@router.get("/carriers/{carrier_id}/drivers", response_model=list[User])
def list_carrier_drivers(
    carrier_id: str,
    context: CallerContext = Depends(get_caller),
    services: FreightPlatform = Depends(platform),
):
    return services.users.drivers_for_carrier(context.user_id, carrier_id)
