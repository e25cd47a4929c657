import pytest

from conftest import ADMIN, CASHIER, CHEF, CUSTOMER, SERVER
from tableside import permissions
from tableside.errors import PermissionDenied
from tableside.models import Role
from tableside.permissions import ANONYMOUS, PERMISSIONS, Actor


@pytest.mark.parametrize("permission", sorted(PERMISSIONS))
def test_managers_hold_every_permission(permission):
    assert ADMIN.can(permission)
    assert Actor(user_id=9, role=Role.super_admin).can(permission)


@pytest.mark.parametrize("permission", sorted(PERMISSIONS))
def test_anonymous_and_customers_hold_nothing(permission):
    assert not ANONYMOUS.can(permission)
    assert not CUSTOMER.can(permission)


def test_staff_capabilities():
    assert CHEF.can("KITCHEN_ACCESS")
    assert CHEF.can("INGREDIENT_REQUEST")
    assert not CHEF.can("POS_ACCESS")
    assert not CHEF.can("PAYMENT_VALIDATE")

    assert CASHIER.can("POS_ACCESS")
    assert CASHIER.can_validate_payments
    assert not CASHIER.can("STOCK_MANAGE")
    assert CASHIER.can("REPORTS_VIEW")
    assert not CHEF.can("REPORTS_VIEW")

    assert SERVER.can("TABLES_MANAGE")
    assert not SERVER.can("ORDERS_CANCEL")
    assert not SERVER.can("TABLES_DELETE")


def test_actor_flags():
    assert ADMIN.is_admin and ADMIN.is_staff
    assert CHEF.is_staff and not CHEF.is_admin
    assert not CUSTOMER.is_staff
    assert CUSTOMER.is_authenticated
    assert not ANONYMOUS.is_authenticated


def test_parse_role():
    assert permissions.parse_role("chef") == Role.chef
    assert permissions.parse_role(Role.admin) == Role.admin
    assert permissions.parse_role("bogus") is None


def test_require_raises_with_details():
    permissions.require(CASHIER, "POS_ACCESS")
    with pytest.raises(PermissionDenied) as excinfo:
        permissions.require(CHEF, "POS_ACCESS")
    assert excinfo.value.details == {"permission": "POS_ACCESS", "role": "chef"}
