"""
Permission Constants and Role Mapping

WHY: Centralized permission definitions ensure consistency across the
routes. Roles are fixed (admin, manager, cashier); each maps to a set of
permission codes.

DESIGN PRINCIPLES:
- Permissions are granular (one action per permission)
- Default role mappings follow principle of least privilege
- Admin has all permissions
"""

from .models.auth import ROLE_ADMIN, ROLE_CASHIER, ROLE_MANAGER


class PermissionCategory:
    SALES = "SALES"
    PAYMENTS = "PAYMENTS"
    CUSTOMERS = "CUSTOMERS"
    INVENTORY = "INVENTORY"
    SYSTEM = "SYSTEM"


# Each permission is defined as: (code, description, category)
PERMISSION_DEFINITIONS = [
    ("CREATE_SALE", "Ring up sales at the till", PermissionCategory.SALES),
    ("VIEW_SALES", "View sales and their items", PermissionCategory.SALES),
    ("EDIT_SALE", "Change items or payments of a recorded sale", PermissionCategory.SALES),

    ("PROCESS_PAYMENT", "Add payments to a sale", PermissionCategory.PAYMENTS),
    ("CONFIRM_PAYMENT", "Confirm or fail pending UPI payments", PermissionCategory.PAYMENTS),

    ("VIEW_CUSTOMERS", "View customers and their debt", PermissionCategory.CUSTOMERS),
    ("MANAGE_CUSTOMERS", "Create and edit customers", PermissionCategory.CUSTOMERS),
    ("RECORD_DEBT_PAYMENT", "Record repayments of customer debt", PermissionCategory.CUSTOMERS),

    ("VIEW_INVENTORY", "View products and stock levels", PermissionCategory.INVENTORY),
    ("MANAGE_PRODUCTS", "Create, edit and deactivate products", PermissionCategory.INVENTORY),
    ("RECEIVE_INVENTORY", "Record supplier stock entries", PermissionCategory.INVENTORY),

    ("MANAGE_SETTINGS", "Change store settings such as the UPI ID", PermissionCategory.SYSTEM),
    ("MANAGE_USERS", "Create staff accounts", PermissionCategory.SYSTEM),
]

ALL_PERMISSIONS = frozenset(code for code, _, _ in PERMISSION_DEFINITIONS)

_CASHIER = {
    "CREATE_SALE",
    "VIEW_SALES",
    "PROCESS_PAYMENT",
    "CONFIRM_PAYMENT",
    "VIEW_CUSTOMERS",
    "MANAGE_CUSTOMERS",
    "RECORD_DEBT_PAYMENT",
    "VIEW_INVENTORY",
}

DEFAULT_ROLE_PERMISSIONS = {
    ROLE_ADMIN: ALL_PERMISSIONS,
    ROLE_MANAGER: frozenset(_CASHIER | {"EDIT_SALE", "MANAGE_PRODUCTS", "RECEIVE_INVENTORY"}),
    ROLE_CASHIER: frozenset(_CASHIER),
}


def role_has_permission(role: str, permission_code: str) -> bool:
    return permission_code in DEFAULT_ROLE_PERMISSIONS.get(role, frozenset())


def list_permission_definitions(category: str | None = None) -> list[dict]:
    """Permission catalog ordered by category then code, with the roles holding each."""
    return [
        {
            "code": code,
            "description": description,
            "category": cat,
            "roles": sorted(role for role, codes in DEFAULT_ROLE_PERMISSIONS.items() if code in codes),
        }
        for code, description, cat in sorted(PERMISSION_DEFINITIONS, key=lambda d: (d[2], d[0]))
        if category is None or cat == category
    ]
