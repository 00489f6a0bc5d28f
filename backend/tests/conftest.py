"""Shared fixtures: a fresh SQLite-backed platform per test and a seeded cast of users."""
from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Optional

import pytest


TMP = Path(__file__).resolve().parent / ".tmp_freightline"
TMP.mkdir(parents=True, exist_ok=True)
for suffix in ("", "-wal", "-shm"):
    (TMP / f"api.db{suffix}").unlink(missing_ok=True)

os.environ["STATE_DB_PATH"] = str(TMP / "api.db")
os.environ["AUTH_ENABLED"] = "false"
os.environ["ADMIN_BOOTSTRAP_TOKEN"] = "bootstrap-secret"
os.environ["NOTIFICATION_WEBHOOK_URL"] = ""
os.environ["LOG_LEVEL"] = "WARNING"

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from freightline.core.config import Settings  # noqa: E402
from freightline.models.carriers import Carrier, CarrierCreateRequest  # noqa: E402
from freightline.models.loads import (  # noqa: E402
    CarrierAssignmentRequest,
    Load,
    LoadCreateRequest,
    LoadStatus,
    LoadStatusUpdateRequest,
    LocationCreateRequest,
)
from freightline.models.users import User, UserRegistrationRequest, UserRole  # noqa: E402
from freightline.services.platform import FreightPlatform  # noqa: E402


def make_platform(tmp_path: Path, **overrides) -> FreightPlatform:
    values = {
        "state_db_path": str(tmp_path / "freightline.db"),
        "admin_bootstrap_token": "",
        "notification_webhook_url": "",
    }
    values.update(overrides)
    settings = Settings(_env_file=None, **values)
    return FreightPlatform(settings, db_path=values["state_db_path"])


@pytest.fixture
def platform(tmp_path):
    services = make_platform(tmp_path)
    yield services
    services.store.close()


# Status -> manual steps after the load is posted and assigned to CAR-1.
_AFTER_ASSIGNED = {
    LoadStatus.ASSIGNED: [],
    LoadStatus.IN_TRANSIT: [LoadStatus.IN_TRANSIT],
    LoadStatus.DELIVERED: [LoadStatus.IN_TRANSIT, LoadStatus.DELIVERED],
    LoadStatus.COMPLETED: [LoadStatus.IN_TRANSIT, LoadStatus.DELIVERED, LoadStatus.COMPLETED],
}


class World:
    """A small cast of users plus helpers to put loads into any status."""

    def __init__(self, services: FreightPlatform) -> None:
        self.services = services
        users = services.users
        self.admin = users.register(UserRegistrationRequest(email="admin@freightline.test", name="Ada Admin", role=UserRole.ADMIN))
        self.roadrunner = self.carrier_company("CAR-1", "Roadrunner Freight", "1000001", "dispatch@roadrunner.test")
        self.coyote = self.carrier_company("CAR-2", "Coyote Hauling", "1000002", "dispatch@coyote.test")
        self.shipper = self.user("shipper@acme.test", "Sam Shipper", UserRole.SHIPPER, company_name="Acme Goods")
        self.other_shipper = self.user("shipper@globex.test", "Gia Shipper", UserRole.SHIPPER, company_name="Globex")
        self.carrier = self.user("dispatch@roadrunner.test", "Rita Carrier", UserRole.CARRIER, carrier_id="CAR-1")
        self.carrier_teammate = self.user(
            "ops@roadrunner.test", "Ray Carrier", UserRole.CARRIER, carrier_id="CAR-1", caller=self.carrier
        )
        self.driver = self.user("driver@roadrunner.test", "Dan Driver", UserRole.DRIVER, carrier_id="CAR-1", caller=self.carrier)
        self.other_carrier = self.user("dispatch@coyote.test", "Cole Carrier", UserRole.CARRIER, carrier_id="CAR-2")
        self.other_driver = self.user(
            "driver@coyote.test", "Drew Driver", UserRole.DRIVER, carrier_id="CAR-2", caller=self.other_carrier
        )

        self.pickup = services.loads.create_location(
            self.shipper.user_id,
            LocationCreateRequest(
                name="Acme Warehouse",
                address="100 Dock St",
                city="Dallas",
                state="TX",
                zip_code="75201",
                latitude=32.7767,
                longitude=-96.7970,
            ),
        )
        self.delivery = services.loads.create_location(
            self.shipper.user_id,
            LocationCreateRequest(
                name="Acme Store",
                address="9 Market Ave",
                city="Houston",
                state="TX",
                zip_code="77002",
                latitude=29.7604,
                longitude=-95.3698,
            ),
        )

    def carrier_company(self, carrier_id: str, name: str, dot_number: str, contact_email: str) -> Carrier:
        carriers = self.services.carriers
        request = CarrierCreateRequest(carrier_id=carrier_id, name=name, dot_number=dot_number, contact_email=contact_email)
        carriers.create_carrier(self.admin.user_id, request)
        return carriers.verify_carrier(self.admin.user_id, carrier_id)

    def user(self, email: str, name: str, role: UserRole, *, caller: Optional[User] = None, **extra) -> User:
        return self.services.users.register(
            UserRegistrationRequest(email=email, name=name, role=role, **extra),
            caller_id=caller.user_id if caller else None,
        )

    def create_load(self, *, post: bool = True, shipper: Optional[User] = None, **fields) -> Load:
        shipper = shipper or self.shipper
        request = LoadCreateRequest(
            pickup_location_id=self.pickup.location_id,
            delivery_location_id=self.delivery.location_id,
            post=post,
            weight=12000,
            rate=250000,
            **fields,
        )
        return self.services.loads.create_load(shipper.user_id, request)

    def set_status(self, load: Load, status: LoadStatus, *, actor: Optional[User] = None) -> Load:
        actor = actor or self.shipper
        return self.services.loads.update_status(actor.user_id, load.load_id, LoadStatusUpdateRequest(status=status))

    def load_in(self, status: LoadStatus, *, carrier_id: str = "CAR-1") -> Load:
        if status == LoadStatus.DRAFT:
            return self.create_load(post=False)
        load = self.create_load()
        if status == LoadStatus.POSTED:
            return load
        if status == LoadStatus.CANCELLED:
            return self.set_status(load, LoadStatus.CANCELLED)
        load = self.services.loads.assign_carrier(
            self.shipper.user_id,
            load.load_id,
            CarrierAssignmentRequest(carrier_id=carrier_id),
        )
        for step in _AFTER_ASSIGNED[status]:
            load = self.set_status(load, step)
        return load

    def events(self, load_id: str, event_type: Optional[str] = None):
        return self.services.audit.events_for_load(load_id, event_type=event_type, limit=None)

    def notifications_for(self, user: User) -> list:
        return self.services.notifications.list_for_user(user.user_id, limit=200)


@pytest.fixture
def world(platform) -> World:
    return World(platform)
