from dataclasses import dataclass
from typing import FrozenSet, Optional

from . import errors
from .models import Role

STAFF_ROLES = frozenset(
    {Role.super_admin, Role.admin, Role.cashier, Role.chef, Role.server}
)
MANAGER_ROLES = frozenset({Role.super_admin, Role.admin})


def _roles(*roles: Role) -> FrozenSet[Role]:
    # Managers hold every staff permission.
    return frozenset(roles) | MANAGER_ROLES


PERMISSIONS = {
    "POS_ACCESS": _roles(Role.cashier),
    "ORDERS_VIEW": _roles(Role.cashier, Role.chef, Role.server),
    "ORDERS_ADVANCE": _roles(Role.cashier, Role.chef, Role.server),
    "ORDERS_COMPLETE": _roles(Role.cashier, Role.server),
    "ORDERS_CANCEL": _roles(Role.chef, Role.cashier),
    "ORDERS_CANCEL_CONFIRMED": _roles(),
    "KITCHEN_ACCESS": _roles(Role.chef),
    "TABLES_VIEW": _roles(Role.cashier, Role.server),
    "TABLES_MANAGE": _roles(Role.cashier, Role.server),
    "TABLES_DELETE": _roles(),
    "PAYMENT_VALIDATE": _roles(Role.cashier),
    "STOCK_VIEW": _roles(Role.cashier, Role.chef),
    "STOCK_MANAGE": _roles(),
    "INGREDIENT_REQUEST": _roles(Role.chef),
    "REPORTS_VIEW": _roles(Role.cashier),
    "MENU_MANAGE": _roles(),
    "USERS_MANAGE": _roles(),
}


def parse_role(value) -> Optional[Role]:
    if isinstance(value, Role):
        return value
    try:
        return Role(value)
    except ValueError:
        return None


@dataclass(frozen=True)
class Actor:
    """The caller of an operation, resolved once per request."""

    user_id: Optional[int] = None
    role: Optional[Role] = None

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None and self.role is not None

    def has_role(self, *roles: Role) -> bool:
        return self.role is not None and self.role in roles

    def can(self, permission: str) -> bool:
        return self.role is not None and self.role in PERMISSIONS[permission]

    @property
    def is_admin(self) -> bool:
        return self.has_role(*MANAGER_ROLES)

    @property
    def is_staff(self) -> bool:
        return self.has_role(*STAFF_ROLES)

    @property
    def can_validate_payments(self) -> bool:
        return self.can("PAYMENT_VALIDATE")


ANONYMOUS = Actor()


def require(actor: Actor, permission: str) -> None:
    if not actor.can(permission):
        raise errors.PermissionDenied(
            "Permission denied", permission=permission, role=actor.role.value if actor.role else None
        )
