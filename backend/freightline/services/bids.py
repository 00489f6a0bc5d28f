"""Carrier bidding on posted loads."""
from __future__ import annotations

import sqlite3
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, List, Optional, Tuple

from freightline.core.errors import BID_ACCESS_DENIED, ConflictError, ForbiddenError, InvalidStateError
from freightline.core.logging import logger
from freightline.models.audit import HistoryAction, HistoryDetails, Notification, NotificationType
from freightline.models.base import utcnow
from freightline.models.bids import Bid, BidCreateRequest, BidDecisionRequest, BidStatus, BidUpdateRequest
from freightline.models.loads import Load, LoadStatus
from freightline.models.users import User, UserRole
from freightline.services.access import AccessGate, Intent
from freightline.services.audit import AuditTrail
from freightline.services.carriers import CarrierRegistry
from freightline.services.notifications import NotificationCenter
from freightline.services.state import FreightStateStore

if TYPE_CHECKING:
    from freightline.services.loads import LoadService


DUPLICATE_BID = "Carrier already has a pending bid on this load"


def _format_cents(amount: int) -> str:
    return f"${amount / 100:,.2f}"


def expire_stale_bids(
    store: FreightStateStore,
    audit: AuditTrail,
    *,
    load_id: Optional[str] = None,
    bid_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> List[Bid]:
    """Flip stored pending bids whose expiry has passed to ``expired``.

    Runs as its own transaction so the flip survives a later failure of the
    operation that triggered it.
    """
    now = now or utcnow()
    where = {"status": BidStatus.PENDING}
    if load_id:
        where["load_id"] = load_id
    if bid_id:
        where["bid_id"] = bid_id

    expired: List[Bid] = []
    with store.transaction():
        for row in store.find("bids", where=where, conditions=[("expires_at", "<", now)]):
            bid = Bid.model_validate(row)
            bid.status = BidStatus.EXPIRED
            bid.updated_at = now
            if not store.put_if("bids", bid, {"status": BidStatus.PENDING}):
                continue
            audit.record(
                load_id=bid.load_id,
                user_id=bid.user_id,
                event_type="bid_expired",
                previous_value=BidStatus.PENDING,
                new_value=BidStatus.EXPIRED,
                metadata={"bid_id": bid.bid_id, "carrier_id": bid.carrier_id},
            )
            expired.append(bid)
    if expired:
        logger.info("Expired stale bids", count=len(expired), load_id=load_id)
    return expired


def reject_pending_bids(
    store: FreightStateStore,
    audit: AuditTrail,
    notifications: NotificationCenter,
    load_id: str,
    *,
    actor_id: str,
    reason: str,
    exclude_bid_id: Optional[str] = None,
) -> Tuple[List[Bid], List[Notification]]:
    """Reject every other pending bid on a load once it has a carrier."""
    now = utcnow()
    rejected: List[Bid] = []
    sent: List[Notification] = []
    with store.transaction():
        for row in store.find("bids", where={"load_id": load_id, "status": BidStatus.PENDING}):
            bid = Bid.model_validate(row)
            if bid.bid_id == exclude_bid_id:
                continue
            bid.status = BidStatus.REJECTED
            bid.response_notes = reason
            bid.responded_by = actor_id
            bid.responded_at = now
            bid.updated_at = now
            store.put("bids", bid)
            audit.record(
                load_id=load_id,
                user_id=actor_id,
                event_type="bid_rejected",
                previous_value=BidStatus.PENDING,
                new_value=BidStatus.REJECTED,
                notes=reason,
                metadata={"bid_id": bid.bid_id, "carrier_id": bid.carrier_id, "automatic": True},
            )
            sent.extend(
                notifications.notify_carrier(
                    bid.carrier_id,
                    NotificationType.BID_REJECTED,
                    "Bid not accepted",
                    reason,
                    related_id=bid.bid_id,
                    related_type="bid",
                )
            )
            rejected.append(bid)
    return rejected, sent


class BidService:
    def __init__(
        self,
        store: FreightStateStore,
        gate: AccessGate,
        audit: AuditTrail,
        notifications: NotificationCenter,
        loads: "LoadService",
        carriers: CarrierRegistry,
        *,
        default_ttl_hours: int = 48,
    ) -> None:
        self._store = store
        self._gate = gate
        self._audit = audit
        self._notifications = notifications
        self._loads = loads
        self._carriers = carriers
        self._default_ttl = timedelta(hours=default_ttl_hours)

    def _bid(self, user: User, bid_id: str) -> Bid:
        """A bid the user may see: their carrier's own, or one on a load they ship.

        Non-admins cannot tell a missing bid from a hidden one.
        """
        row = self._store.get("bids", bid_id)
        if row is None:
            raise self._gate.not_found(user, "Bid", BID_ACCESS_DENIED)
        bid = Bid.model_validate(row)
        if user.role == UserRole.ADMIN:
            return bid
        if user.role == UserRole.CARRIER and user.carrier_id == bid.carrier_id:
            return bid
        if user.role == UserRole.SHIPPER:
            load = self._loads.get(bid.load_id)
            if load is not None and load.shipper_id == user.user_id:
                return bid
        logger.warning("Bid access denied", user_id=user.user_id, role=user.role.value, bid_id=bid_id)
        raise ForbiddenError(BID_ACCESS_DENIED)

    @staticmethod
    def _require_bid_owner(user: User, bid: Bid) -> None:
        if user.role != UserRole.CARRIER or user.carrier_id != bid.carrier_id:
            logger.warning("Bid access denied", user_id=user.user_id, bid_id=bid.bid_id)
            raise ForbiddenError("Only the bidding carrier can modify this bid")

    @staticmethod
    def _require_pending(bid: Bid, now: datetime) -> None:
        if bid.status != BidStatus.PENDING:
            raise InvalidStateError(f"Bid is {bid.status.value}")
        if bid.is_expired(now):
            raise InvalidStateError("Bid has expired")

    def create_bid(self, caller_id: Optional[str], load_id: str, request: BidCreateRequest) -> Bid:
        user = self._gate.require_user(caller_id)
        if user.role != UserRole.CARRIER:
            raise ForbiddenError("Only carriers can submit bids")
        if not user.carrier_id:
            raise ForbiddenError("Carrier account is not linked to a carrier")

        expire_stale_bids(self._store, self._audit, load_id=load_id)
        now = utcnow()
        expires_at = request.expires_at or now + self._default_ttl
        if expires_at <= now:
            raise InvalidStateError("Bid expiry must be in the future")

        with self._store.transaction():
            load = self._gate.load_for(user, load_id, Intent.READ)
            if load.status != LoadStatus.POSTED:
                raise InvalidStateError(f"Load is not open for bidding (status: {load.status.value})")
            self._carriers.require_bookable(user.carrier_id)
            if self._store.find(
                "bids",
                where={"load_id": load_id, "carrier_id": user.carrier_id, "status": BidStatus.PENDING},
                limit=1,
            ):
                raise ConflictError(DUPLICATE_BID)

            bid = Bid(
                bid_id=self._store.next_id("BID"),
                load_id=load_id,
                carrier_id=user.carrier_id,
                user_id=user.user_id,
                amount=request.amount,
                notes=request.notes,
                expires_at=expires_at,
            )
            try:
                self._store.put("bids", bid)
            except sqlite3.IntegrityError as exc:
                raise ConflictError(DUPLICATE_BID) from exc

            self._audit.record(
                load_id=load_id,
                user_id=user.user_id,
                event_type="bid_created",
                new_value=bid.amount,
                notes=request.notes,
                metadata={"bid_id": bid.bid_id, "carrier_id": bid.carrier_id},
            )
            sent = [
                self._notifications.notify(
                    load.shipper_id,
                    NotificationType.BID_RECEIVED,
                    "New bid received",
                    f"New bid of {_format_cents(bid.amount)} received for load {load.reference_number}",
                    related_id=bid.bid_id,
                    related_type="bid",
                    action_required=True,
                )
            ]

        logger.info("Bid created", bid_id=bid.bid_id, load_id=load_id, carrier_id=bid.carrier_id, amount=bid.amount)
        self._notifications.deliver(sent)
        return bid

    def update_bid(self, caller_id: Optional[str], bid_id: str, request: BidUpdateRequest) -> Bid:
        user = self._gate.require_user(caller_id)
        expire_stale_bids(self._store, self._audit, bid_id=bid_id)
        now = utcnow()

        with self._store.transaction():
            bid = self._bid(user, bid_id)
            self._require_bid_owner(user, bid)
            self._require_pending(bid, now)
            load = self._loads.get(bid.load_id)
            if load is None or load.status != LoadStatus.POSTED:
                raise InvalidStateError("Load is no longer open for bidding")

            changes = request.model_dump(exclude_unset=True, exclude_none=True)
            if not changes:
                return bid
            if "expires_at" in changes and request.expires_at <= now:
                raise InvalidStateError("Bid expiry must be in the future")

            previous_amount = bid.amount
            updated = bid.model_copy(update={**{key: getattr(request, key) for key in changes}, "updated_at": now})
            self._store.put("bids", updated)
            self._audit.record(
                load_id=bid.load_id,
                user_id=user.user_id,
                event_type="bid_updated",
                previous_value=previous_amount,
                new_value=updated.amount,
                notes=updated.notes,
                metadata={"bid_id": bid_id, "fields": sorted(changes)},
            )

        logger.info("Bid updated", bid_id=bid_id, fields=sorted(changes))
        return updated

    def withdraw_bid(self, caller_id: Optional[str], bid_id: str) -> Bid:
        user = self._gate.require_user(caller_id)
        expire_stale_bids(self._store, self._audit, bid_id=bid_id)
        now = utcnow()

        with self._store.transaction():
            bid = self._bid(user, bid_id)
            self._require_bid_owner(user, bid)
            self._require_pending(bid, now)
            bid.status = BidStatus.WITHDRAWN
            bid.updated_at = now
            self._store.put("bids", bid)
            self._audit.record(
                load_id=bid.load_id,
                user_id=user.user_id,
                event_type="bid_withdrawn",
                previous_value=BidStatus.PENDING,
                new_value=BidStatus.WITHDRAWN,
                metadata={"bid_id": bid_id},
            )

        logger.info("Bid withdrawn", bid_id=bid_id, load_id=bid.load_id)
        return bid

    def _decision_context(self, user: User, bid_id: str) -> Tuple[Bid, Load]:
        bid = self._bid(user, bid_id)
        self._gate.require_role(user, UserRole.SHIPPER, action="respond to bids")
        load = self._gate.load_for(user, bid.load_id, Intent.WRITE)
        return bid, load

    def accept_bid(self, caller_id: Optional[str], bid_id: str, request: Optional[BidDecisionRequest] = None) -> Bid:
        """Assign the load to the bidding carrier and close out competing bids."""
        user = self._gate.require_user(caller_id)
        notes = request.notes if request else None
        expire_stale_bids(self._store, self._audit, bid_id=bid_id)
        now = utcnow()

        with self._store.transaction():
            bid, load = self._decision_context(user, bid_id)
            self._require_pending(bid, now)
            if load.status != LoadStatus.POSTED:
                raise InvalidStateError(f"Load is not open for bidding (status: {load.status.value})")

            assigned, sent = self._loads.assign(
                load,
                bid.carrier_id,
                actor_id=user.user_id,
                notes=f"Bid {bid.bid_id} accepted",
                rate=bid.amount,
                bid_id=bid.bid_id,
            )
            if assigned is None:
                raise InvalidStateError("Load is no longer open for bidding")

            bid.status = BidStatus.ACCEPTED
            bid.response_notes = notes
            bid.responded_by = user.user_id
            bid.responded_at = now
            bid.updated_at = now
            self._store.put("bids", bid)
            self._audit.record(
                load_id=bid.load_id,
                user_id=user.user_id,
                event_type="bid_accepted",
                previous_value=BidStatus.PENDING,
                new_value=BidStatus.ACCEPTED,
                notes=notes,
                metadata={"bid_id": bid.bid_id, "carrier_id": bid.carrier_id, "amount": bid.amount},
                action_type=HistoryAction.BID_ACCEPTED.value,
                details=HistoryDetails(
                    before={"bid_status": BidStatus.PENDING.value, "rate": load.rate},
                    after={"bid_status": BidStatus.ACCEPTED.value, "rate": bid.amount},
                    description=f"Accepted bid of {_format_cents(bid.amount)} from carrier {bid.carrier_id}",
                    metadata={"bid_id": bid.bid_id},
                ),
            )
            sent.extend(
                self._notifications.notify_carrier(
                    bid.carrier_id,
                    NotificationType.BID_ACCEPTED,
                    "Bid accepted",
                    f"Your bid of {_format_cents(bid.amount)} for load {load.reference_number} was accepted",
                    related_id=bid.bid_id,
                    related_type="bid",
                )
            )
            _, rejected = reject_pending_bids(
                self._store,
                self._audit,
                self._notifications,
                bid.load_id,
                actor_id=user.user_id,
                reason=f"Another bid was accepted for load {load.reference_number}",
                exclude_bid_id=bid.bid_id,
            )
            sent.extend(rejected)

        logger.info("Bid accepted", bid_id=bid_id, load_id=bid.load_id, carrier_id=bid.carrier_id)
        self._notifications.deliver(sent)
        return bid

    def reject_bid(self, caller_id: Optional[str], bid_id: str, request: Optional[BidDecisionRequest] = None) -> Bid:
        user = self._gate.require_user(caller_id)
        notes = request.notes if request else None
        expire_stale_bids(self._store, self._audit, bid_id=bid_id)
        now = utcnow()

        with self._store.transaction():
            bid, load = self._decision_context(user, bid_id)
            if bid.status != BidStatus.PENDING:
                raise InvalidStateError(f"Bid is {bid.status.value}")
            bid.status = BidStatus.REJECTED
            bid.response_notes = notes
            bid.responded_by = user.user_id
            bid.responded_at = now
            bid.updated_at = now
            self._store.put("bids", bid)
            self._audit.record(
                load_id=bid.load_id,
                user_id=user.user_id,
                event_type="bid_rejected",
                previous_value=BidStatus.PENDING,
                new_value=BidStatus.REJECTED,
                notes=notes,
                metadata={"bid_id": bid.bid_id, "carrier_id": bid.carrier_id},
            )
            sent = self._notifications.notify_carrier(
                bid.carrier_id,
                NotificationType.BID_REJECTED,
                "Bid rejected",
                notes or f"Your bid for load {load.reference_number} was rejected",
                related_id=bid.bid_id,
                related_type="bid",
            )

        logger.info("Bid rejected", bid_id=bid_id, load_id=bid.load_id)
        self._notifications.deliver(sent)
        return bid

    def get_bids_for_load(self, caller_id: Optional[str], load_id: str) -> List[Bid]:
        user = self._gate.require_user(caller_id)
        expire_stale_bids(self._store, self._audit, load_id=load_id)
        self._gate.load_for(user, load_id, Intent.READ)

        where = {"load_id": load_id}
        if user.role == UserRole.CARRIER:
            where["carrier_id"] = user.carrier_id
        elif user.role not in (UserRole.SHIPPER, UserRole.ADMIN):
            raise ForbiddenError("Bids are visible to the shipper and bidding carriers only")
        rows = self._store.find("bids", where=where, order_by="created_at")
        return [Bid.model_validate(row) for row in rows]

    def get_bid(self, caller_id: Optional[str], bid_id: str) -> Bid:
        user = self._gate.require_user(caller_id)
        expire_stale_bids(self._store, self._audit, bid_id=bid_id)
        return self._bid(user, bid_id)
