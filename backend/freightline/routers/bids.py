"""Bid routes."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends

from freightline.core.auth import CallerContext, get_caller
from freightline.models.bids import BidCreateRequest, BidDecisionRequest, BidUpdateRequest
from freightline.routers.deps import IdempotencyKey, idempotent, platform
from freightline.services.platform import FreightPlatform

router = APIRouter(tags=["bids"])


@router.post("/loads/{load_id}/bids", status_code=201)
def create_bid(
    load_id: str,
    request: BidCreateRequest,
    idempotency_key: Optional[str] = IdempotencyKey,
    context: CallerContext = Depends(get_caller),
    services: FreightPlatform = Depends(platform),
):
    with idempotent(services, context, f"create_bid:{load_id}", idempotency_key) as slot:
        if slot.cached is not None:
            return slot.cached
        bid = services.bids.create_bid(context.user_id, load_id, request)
        return slot.store(bid.view())


@router.get("/loads/{load_id}/bids")
def get_bids_for_load(
    load_id: str,
    context: CallerContext = Depends(get_caller),
    services: FreightPlatform = Depends(platform),
):
    return {"bids": [bid.view() for bid in services.bids.get_bids_for_load(context.user_id, load_id)]}


@router.get("/bids/{bid_id}")
def get_bid(
    bid_id: str,
    context: CallerContext = Depends(get_caller),
    services: FreightPlatform = Depends(platform),
):
    return services.bids.get_bid(context.user_id, bid_id).view()


@router.patch("/bids/{bid_id}")
def update_bid(
    bid_id: str,
    request: BidUpdateRequest,
    context: CallerContext = Depends(get_caller),
    services: FreightPlatform = Depends(platform),
):
    return services.bids.update_bid(context.user_id, bid_id, request).view()


@router.post("/bids/{bid_id}/withdraw")
def withdraw_bid(
    bid_id: str,
    context: CallerContext = Depends(get_caller),
    services: FreightPlatform = Depends(platform),
):
    return services.bids.withdraw_bid(context.user_id, bid_id).view()


@router.post("/bids/{bid_id}/accept")
def accept_bid(
    bid_id: str,
    request: Optional[BidDecisionRequest] = None,
    idempotency_key: Optional[str] = IdempotencyKey,
    context: CallerContext = Depends(get_caller),
    services: FreightPlatform = Depends(platform),
):
    with idempotent(services, context, f"accept_bid:{bid_id}", idempotency_key) as slot:
        if slot.cached is not None:
            return slot.cached
        bid = services.bids.accept_bid(context.user_id, bid_id, request)
        return slot.store(bid.view())


@router.post("/bids/{bid_id}/reject")
def reject_bid(
    bid_id: str,
    request: Optional[BidDecisionRequest] = None,
    context: CallerContext = Depends(get_caller),
    services: FreightPlatform = Depends(platform),
):
    return services.bids.reject_bid(context.user_id, bid_id, request).view()
