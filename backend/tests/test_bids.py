"""Bidding: submission rules, acceptance, expiry and visibility."""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from freightline.core.errors import BID_ACCESS_DENIED, ConflictError, ForbiddenError, InvalidStateError, NotFoundError
from freightline.models.audit import NotificationType
from freightline.models.base import utcnow
from freightline.models.bids import BidCreateRequest, BidDecisionRequest, BidStatus, BidUpdateRequest
from freightline.models.loads import CarrierAssignmentRequest, LoadStatus


def _bid(world, load, carrier=None, amount=240000, **fields):
    carrier = carrier or world.carrier
    return world.services.bids.create_bid(carrier.user_id, load.load_id, BidCreateRequest(amount=amount, **fields))


def _age(world, bid, hours=1):
    """Backdate a stored bid's expiry so it has lapsed."""
    stale = bid.model_copy(update={"expires_at": utcnow() - timedelta(hours=hours)})
    world.services.store.put("bids", stale)
    return stale


def test_bid_accept_assigns_load_and_closes_competitors(world):
    services = world.services
    load = world.create_load()
    winning = _bid(world, load, amount=240000)
    losing = _bid(world, load, carrier=world.other_carrier, amount=260000)

    received = [note for note in world.notifications_for(world.shipper) if note.type == NotificationType.BID_RECEIVED]
    assert len(received) == 2
    assert all(note.is_action_required for note in received)
    assert any("$2,400.00" in note.message for note in received)

    accepted = services.bids.accept_bid(world.shipper.user_id, winning.bid_id, BidDecisionRequest(notes="Best price"))
    assert accepted.status == BidStatus.ACCEPTED
    assert accepted.responded_by == world.shipper.user_id

    stored = services.loads.get(load.load_id)
    assert stored.status == LoadStatus.ASSIGNED
    assert stored.carrier_id == "CAR-1"
    assert stored.rate == 240000

    assert services.bids.get_bid(world.other_carrier.user_id, losing.bid_id).status == BidStatus.REJECTED

    event_types = [event.event_type for event in world.events(load.load_id)]
    for expected in ("bid_created", "carrier_assigned", "bid_accepted", "bid_rejected"):
        assert expected in event_types
    assigned = world.events(load.load_id, "carrier_assigned")[0]
    assert assigned.metadata["bid_id"] == winning.bid_id

    carrier_kinds = {note.type for note in world.notifications_for(world.carrier)}
    assert {NotificationType.BID_ACCEPTED, NotificationType.LOAD_ASSIGNED} <= carrier_kinds
    loser_kinds = {note.type for note in world.notifications_for(world.other_carrier)}
    assert loser_kinds == {NotificationType.BID_REJECTED}


def test_second_pending_bid_from_same_carrier_conflicts(world):
    load = world.create_load()
    _bid(world, load)
    with pytest.raises(ConflictError):
        _bid(world, load, carrier=world.carrier_teammate, amount=230000)


def test_concurrent_bids_from_one_carrier_yield_one_pending(world):
    load = world.create_load()

    def submit(user):
        try:
            return _bid(world, load, carrier=user)
        except ConflictError as exc:
            return exc

    with ThreadPoolExecutor(max_workers=2) as pool:
        results = list(pool.map(submit, [world.carrier, world.carrier_teammate]))

    assert sum(isinstance(result, ConflictError) for result in results) == 1
    pending = world.services.store.find("bids", where={"load_id": load.load_id, "status": BidStatus.PENDING})
    assert len(pending) == 1


@pytest.mark.parametrize(
    "status",
    [LoadStatus.DRAFT, LoadStatus.ASSIGNED, LoadStatus.IN_TRANSIT, LoadStatus.DELIVERED, LoadStatus.COMPLETED, LoadStatus.CANCELLED],
)
def test_bids_only_on_posted_loads(world, status):
    load = world.load_in(status)
    # Closed loads are an invalid state for their own carrier and hidden from everyone else.
    with pytest.raises((InvalidStateError, ForbiddenError)):
        _bid(world, load)
    with pytest.raises(ForbiddenError):
        _bid(world, load, carrier=world.other_carrier)
    assert world.services.store.count("bids") == 0


def test_only_carriers_bid(world):
    load = world.create_load()
    for user in (world.shipper, world.driver, world.admin):
        with pytest.raises(ForbiddenError):
            _bid(world, load, carrier=user)


def test_bid_expiry_must_be_in_future(world):
    load = world.create_load()
    with pytest.raises(InvalidStateError):
        _bid(world, load, expires_at=utcnow() - timedelta(minutes=1))

    bid = _bid(world, load)
    assert abs(bid.expires_at - bid.created_at - timedelta(hours=48)) < timedelta(seconds=5)


def test_lapsed_bid_is_flipped_to_expired_on_read(world):
    load = world.create_load()
    bid = _age(world, _bid(world, load))

    fetched = world.services.bids.get_bid(world.carrier.user_id, bid.bid_id)
    assert fetched.status == BidStatus.EXPIRED
    assert fetched.view()["is_expired"] is True
    assert world.events(load.load_id, "bid_expired")[0].metadata["bid_id"] == bid.bid_id

    # Expiry frees the slot for a fresh bid from the same carrier.
    again = _bid(world, load, amount=235000)
    assert again.status == BidStatus.PENDING


def test_lapsed_bid_cannot_be_accepted(world):
    load = world.create_load()
    bid = _age(world, _bid(world, load))
    with pytest.raises(InvalidStateError):
        world.services.bids.accept_bid(world.shipper.user_id, bid.bid_id)
    assert world.services.loads.get(load.load_id).status == LoadStatus.POSTED


def test_accept_requires_owning_shipper(world):
    load = world.create_load()
    bid = _bid(world, load)
    with pytest.raises(ForbiddenError):
        world.services.bids.accept_bid(world.other_shipper.user_id, bid.bid_id)
    with pytest.raises(ForbiddenError):
        world.services.bids.accept_bid(world.carrier.user_id, bid.bid_id)


def test_accept_after_direct_assignment_fails(world):
    load = world.create_load()
    bid = _bid(world, load, carrier=world.other_carrier)

    world.services.loads.assign_carrier(world.shipper.user_id, load.load_id, CarrierAssignmentRequest(carrier_id="CAR-1"))
    # Direct assignment auto-rejects the pending bid.
    assert world.services.bids.get_bid(world.other_carrier.user_id, bid.bid_id).status == BidStatus.REJECTED
    with pytest.raises(InvalidStateError):
        world.services.bids.accept_bid(world.shipper.user_id, bid.bid_id)


def test_reject_bid_notifies_carrier(world):
    load = world.create_load()
    bid = _bid(world, load)
    rejected = world.services.bids.reject_bid(world.shipper.user_id, bid.bid_id, BidDecisionRequest(notes="Too high"))
    assert rejected.status == BidStatus.REJECTED
    assert rejected.response_notes == "Too high"

    notes = [note for note in world.notifications_for(world.carrier_teammate) if note.type == NotificationType.BID_REJECTED]
    assert notes and notes[0].message == "Too high"

    with pytest.raises(InvalidStateError):
        world.services.bids.reject_bid(world.shipper.user_id, bid.bid_id)


def test_update_and_withdraw_are_owner_only(world):
    bids = world.services.bids
    load = world.create_load()
    bid = _bid(world, load)

    with pytest.raises(ForbiddenError):
        bids.update_bid(world.other_carrier.user_id, bid.bid_id, BidUpdateRequest(amount=1))

    updated = bids.update_bid(world.carrier_teammate.user_id, bid.bid_id, BidUpdateRequest(amount=220000, notes="Can do Tuesday"))
    assert updated.amount == 220000
    event = world.events(load.load_id, "bid_updated")[0]
    assert (event.previous_value, event.new_value) == ("240000", "220000")

    withdrawn = bids.withdraw_bid(world.carrier.user_id, bid.bid_id)
    assert withdrawn.status == BidStatus.WITHDRAWN
    with pytest.raises(InvalidStateError):
        bids.update_bid(world.carrier.user_id, bid.bid_id, BidUpdateRequest(amount=210000))
    with pytest.raises(InvalidStateError):
        bids.withdraw_bid(world.carrier.user_id, bid.bid_id)


def test_update_rejected_once_load_cancelled(world):
    load = world.create_load()
    bid = _bid(world, load)
    world.set_status(load, LoadStatus.CANCELLED)
    with pytest.raises(InvalidStateError):
        world.services.bids.update_bid(world.carrier.user_id, bid.bid_id, BidUpdateRequest(amount=200000))
    # Cancelling leaves bids as they were.
    assert world.services.store.get("bids", bid.bid_id)["status"] == "pending"


def test_bid_visibility(world):
    bids = world.services.bids
    load = world.create_load()
    mine = _bid(world, load)
    theirs = _bid(world, load, carrier=world.other_carrier)

    assert {bid.bid_id for bid in bids.get_bids_for_load(world.shipper.user_id, load.load_id)} == {mine.bid_id, theirs.bid_id}
    assert [bid.bid_id for bid in bids.get_bids_for_load(world.carrier.user_id, load.load_id)] == [mine.bid_id]
    assert len(bids.get_bids_for_load(world.admin.user_id, load.load_id)) == 2

    with pytest.raises(ForbiddenError):
        bids.get_bid(world.other_carrier.user_id, mine.bid_id)
    with pytest.raises(ForbiddenError):
        bids.get_bid(world.other_shipper.user_id, mine.bid_id)
    assert bids.get_bid(world.shipper.user_id, mine.bid_id).amount == 240000


def test_missing_and_foreign_bids_look_the_same(world):
    bids = world.services.bids
    load = world.create_load()
    mine = _bid(world, load)

    with pytest.raises(NotFoundError) as missing:
        bids.get_bid(world.other_carrier.user_id, "BID-404")
    with pytest.raises(ForbiddenError) as foreign:
        bids.get_bid(world.other_carrier.user_id, mine.bid_id)
    assert missing.value.message == foreign.value.message == BID_ACCESS_DENIED
    assert missing.value.to_dict() == foreign.value.to_dict()

    with pytest.raises(NotFoundError, match="Bid not found$"):
        bids.get_bid(world.admin.user_id, "BID-404")
    with pytest.raises(NotFoundError, match=BID_ACCESS_DENIED):
        bids.accept_bid(world.shipper.user_id, "BID-404")
    with pytest.raises(ForbiddenError, match=BID_ACCESS_DENIED):
        bids.accept_bid(world.other_shipper.user_id, mine.bid_id)
    assert bids.get_bid(world.carrier.user_id, mine.bid_id).status == BidStatus.PENDING
