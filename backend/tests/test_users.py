"""User directory: registration rules, profile access and role changes."""
from __future__ import annotations

import pytest

from freightline.core.errors import ConflictError, ForbiddenError, InvalidStateError, NotFoundError, UnauthenticatedError
from freightline.models.users import UserRegistrationRequest, UserRole, UserRoleUpdateRequest
from freightline.services.users import UserDirectory


def test_registration_normalises_email_and_assigns_ids(world):
    user = world.user("Mixed.Case@Example.TEST", "Mia", UserRole.SHIPPER)
    assert user.email == "mixed.case@example.test"
    assert user.user_id.startswith("USR-")

    with pytest.raises(ConflictError):
        world.user("MIXED.case@example.test", "Mia Again", UserRole.SHIPPER)


def test_carrier_scoped_roles_need_carrier_id(world):
    with pytest.raises(InvalidStateError):
        world.user("loner@example.test", "Lone Driver", UserRole.DRIVER)
    shipper = world.user("clean@example.test", "Clean", UserRole.SHIPPER, carrier_id="CAR-9")
    assert shipper.carrier_id is None


def test_explicit_user_id_must_be_unique(world):
    world.services.users.register(UserRegistrationRequest(user_id="auth0|abc", email="a@example.test", name="A", role=UserRole.SHIPPER))
    with pytest.raises(ConflictError):
        world.services.users.register(UserRegistrationRequest(user_id="auth0|abc", email="b@example.test", name="B", role=UserRole.SHIPPER))


def test_admin_registration_gates(world):
    users = world.services.users
    request = UserRegistrationRequest(email="root2@example.test", name="Second Admin", role=UserRole.ADMIN)

    # The first admin already exists and no bootstrap token is configured.
    with pytest.raises(ForbiddenError):
        users.register(request)
    with pytest.raises(ForbiddenError):
        users.register(request, caller_id=world.shipper.user_id)
    assert users.register(request, caller_id=world.admin.user_id).role == UserRole.ADMIN


def test_bootstrap_token_gate(platform):
    users = UserDirectory(platform.store, platform.gate, platform.carriers, admin_bootstrap_token="s3cret")
    request = UserRegistrationRequest(email="root@example.test", name="Root", role=UserRole.ADMIN)
    with pytest.raises(ForbiddenError):
        users.register(request)
    with pytest.raises(ForbiddenError):
        users.register(request, bootstrap_token="wrong")
    assert users.register(request, bootstrap_token="s3cret").role == UserRole.ADMIN


def test_profile_access(world):
    users = world.services.users
    assert users.get_me(world.driver.user_id).user_id == world.driver.user_id
    with pytest.raises(UnauthenticatedError):
        users.get_me(None)
    with pytest.raises(UnauthenticatedError):
        users.get_me("USR-404")
    with pytest.raises(ForbiddenError):
        users.get_user(world.shipper.user_id, world.carrier.user_id)
    assert users.get_user(world.admin.user_id, world.carrier.user_id).carrier_id == "CAR-1"
    with pytest.raises(NotFoundError):
        users.get_user(world.admin.user_id, "USR-404")


def test_role_changes_are_admin_only(world):
    users = world.services.users
    with pytest.raises(ForbiddenError):
        users.set_role(world.shipper.user_id, world.other_shipper.user_id, UserRoleUpdateRequest(role=UserRole.ADMIN))
    with pytest.raises(InvalidStateError):
        users.set_role(world.admin.user_id, world.other_shipper.user_id, UserRoleUpdateRequest(role=UserRole.DRIVER))

    promoted = users.set_role(world.admin.user_id, world.carrier_teammate.user_id, UserRoleUpdateRequest(role=UserRole.DRIVER))
    assert promoted.role == UserRole.DRIVER
    assert promoted.carrier_id == "CAR-1"

    demoted = users.set_role(world.admin.user_id, world.driver.user_id, UserRoleUpdateRequest(role=UserRole.SHIPPER))
    assert demoted.carrier_id is None


def test_drivers_for_carrier(world):
    users = world.services.users
    drivers = users.drivers_for_carrier(world.carrier.user_id, "CAR-1")
    assert [driver.user_id for driver in drivers] == [world.driver.user_id]
    with pytest.raises(ForbiddenError):
        users.drivers_for_carrier(world.carrier.user_id, "CAR-2")
    assert len(users.drivers_for_carrier(world.admin.user_id, "CAR-2")) == 1
