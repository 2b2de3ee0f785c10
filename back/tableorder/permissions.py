from enum import Enum
from typing import Set

from .models import StaffRole, User


class Permissions(str, Enum):
    # Orders
    ORDERS_READ = "orders:read"
    ORDERS_UPDATE = "orders:update"  # Order status transitions
    ORDERS_PAY = "orders:pay"  # Mark BILL_TO_TABLE orders as settled

    # Kitchen
    ORDER_ITEMS_UPDATE = "order_items:update"

    # Tables & sessions
    TABLES_MANAGE = "tables:manage"  # Clear table, regenerate QR


ROLE_PERMISSIONS: dict[StaffRole, frozenset[Permissions]] = {
    StaffRole.owner: frozenset(Permissions),
    StaffRole.waiter: frozenset({
        Permissions.ORDERS_READ,
        Permissions.ORDERS_UPDATE,
        Permissions.ORDERS_PAY,
        Permissions.ORDER_ITEMS_UPDATE,
        Permissions.TABLES_MANAGE,
    }),
    StaffRole.kitchen: frozenset({
        Permissions.ORDERS_READ,
        Permissions.ORDERS_UPDATE,
        Permissions.ORDER_ITEMS_UPDATE,
    }),
}


class PermissionService:
    @staticmethod
    def get_user_permissions(user: User) -> Set[str]:
        """Get all permissions for a user based on their role."""
        if user.role is None:
            return set()
        return {p.value for p in ROLE_PERMISSIONS.get(StaffRole(user.role), frozenset())}

    @staticmethod
    def has_permission(user: User, required_permission: str) -> bool:
        """Check if user has specific permission."""
        return str(getattr(required_permission, "value", required_permission)) in (
            PermissionService.get_user_permissions(user)
        )
