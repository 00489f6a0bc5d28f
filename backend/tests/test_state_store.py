"""Unit tests for state persistence, transactions and storage-level invariants."""
from __future__ import annotations

import sqlite3
from datetime import timedelta

import pytest

from freightline.core.errors import ConflictError
from freightline.models.base import utcnow
from freightline.models.bids import Bid, BidStatus
from freightline.services.state import FreightStateStore


def _bid(bid_id: str, *, status: BidStatus = BidStatus.PENDING, carrier_id: str = "CAR-1", load_id: str = "LD-1") -> Bid:
    return Bid(
        bid_id=bid_id,
        load_id=load_id,
        carrier_id=carrier_id,
        user_id="USR-1",
        amount=100000,
        status=status,
        expires_at=utcnow() + timedelta(hours=1),
    )


@pytest.fixture
def store(tmp_path):
    state = FreightStateStore(tmp_path / "state.db")
    yield state
    state.close()


def test_sequences_are_monotonic_per_prefix(store):
    assert store.next_id("LD") == "LD-000001"
    assert store.next_id("LD") == "LD-000002"
    assert store.next_id("BID") == "BID-000001"


def test_put_get_round_trip_and_upsert(store):
    store.put("bids", _bid("BID-1"))
    row = store.get("bids", "BID-1")
    assert row["amount"] == 100000
    assert row["status"] == "pending"

    updated = _bid("BID-1")
    updated.amount = 90000
    store.put("bids", updated)
    assert store.get("bids", "BID-1")["amount"] == 90000
    assert store.count("bids") == 1


def test_transaction_rolls_back_every_write_on_error(store):
    with pytest.raises(RuntimeError):
        with store.transaction():
            store.put("bids", _bid("BID-1"))
            store.next_id("EVT")
            raise RuntimeError("boom")

    assert store.get("bids", "BID-1") is None
    assert store.next_id("EVT") == "EVT-000001"


def test_nested_failure_only_unwinds_savepoint(store):
    with store.transaction():
        store.put("bids", _bid("BID-1"))
        with pytest.raises(ValueError):
            with store.transaction():
                store.put("bids", _bid("BID-2", carrier_id="CAR-2"))
                raise ValueError("inner")

    assert store.get("bids", "BID-1") is not None
    assert store.get("bids", "BID-2") is None


def test_one_pending_bid_per_load_and_carrier(store):
    store.put("bids", _bid("BID-1"))
    with pytest.raises(sqlite3.IntegrityError):
        store.put("bids", _bid("BID-2"))

    # Non-pending rows for the same pair are unrestricted.
    store.put("bids", _bid("BID-3", status=BidStatus.REJECTED))
    store.put("bids", _bid("BID-4", status=BidStatus.EXPIRED))
    store.put("bids", _bid("BID-5", carrier_id="CAR-2"))
    assert store.count("bids") == 4


def test_put_if_honours_guard(store):
    store.put("bids", _bid("BID-1"))
    bid = _bid("BID-1", status=BidStatus.EXPIRED)

    assert store.put_if("bids", bid, {"status": BidStatus.ACCEPTED}) is False
    assert store.get("bids", "BID-1")["status"] == "pending"

    assert store.put_if("bids", bid, {"status": BidStatus.PENDING}) is True
    assert store.get("bids", "BID-1")["status"] == "expired"


def test_find_filters_orders_and_limits(store):
    for index, carrier in enumerate(["CAR-1", "CAR-2", "CAR-3"], start=1):
        store.put("bids", _bid(f"BID-{index}", carrier_id=carrier))

    newest_first = store.find("bids", where={"load_id": "LD-1"}, order_by="created_at")
    assert [row["bid_id"] for row in newest_first] == ["BID-3", "BID-2", "BID-1"]

    subset = store.find("bids", conditions=[("carrier_id", "IN", ["CAR-1", "CAR-3"])], order_by="created_at", descending=False)
    assert [row["bid_id"] for row in subset] == ["BID-1", "BID-3"]

    assert len(store.find("bids", limit=2)) == 2
    assert store.find("bids", conditions=[("carrier_id", "IN", [])]) == []


def test_find_rejects_unknown_columns(store):
    with pytest.raises(ValueError):
        store.find("bids", where={"amount": 1})
    with pytest.raises(ValueError):
        store.find("bids", conditions=[("status", "LIKE", "p%")])


def test_idempotency_round_trip(store):
    assert store.get_idempotent("USR-1:create_load:abc") is None
    store.set_idempotent("USR-1:create_load:abc", {"load_id": "LD-000001"})
    assert store.get_idempotent("USR-1:create_load:abc") == {"load_id": "LD-000001"}


def test_stores_on_same_file_share_lock(tmp_path):
    first = FreightStateStore(tmp_path / "shared.db")
    second = FreightStateStore(tmp_path / "shared.db")
    try:
        first.put("bids", _bid("BID-1"))
        assert second.get("bids", "BID-1") is not None
        assert first._lock is second._lock
    finally:
        first.close()
        second.close()


def test_idempotency_claim_blocks_concurrent_duplicates(store):
    key = "USR-1:create_bid:LD-1:abc"
    assert store.claim_idempotent(key) is None
    # A claimed key has no response yet.
    assert store.get_idempotent(key) is None
    with pytest.raises(ConflictError):
        store.claim_idempotent(key)

    store.set_idempotent(key, {"bid_id": "BID-1"})
    assert store.claim_idempotent(key) == {"bid_id": "BID-1"}
    store.release_idempotent(key)
    assert store.get_idempotent(key) == {"bid_id": "BID-1"}


def test_released_or_stale_claims_can_be_retaken(store):
    key = "USR-1:create_load:xyz"
    store.claim_idempotent(key)
    store.release_idempotent(key)
    assert store.claim_idempotent(key) is None

    assert store.claim_idempotent(key, stale_after=timedelta(0)) is None
    with pytest.raises(ConflictError):
        store.claim_idempotent(key)
