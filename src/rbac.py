"""Role to permission lookup table.

Roles are the closed ``AccountRole`` enum; permissions are a second closed
enum, and ``ROLE_PERMISSIONS`` is the only place that connects them.
"""
from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet

from src.errors import InvalidArgumentError
from src.models import AccountRole


class Permission(str, Enum):
    # User management
    VIEW_USERS = "view_users"
    CREATE_USERS = "create_users"
    EDIT_USERS = "edit_users"
    DELETE_USERS = "delete_users"
    APPROVE_USERS = "approve_users"
    MANAGE_CREDIT_LIMITS = "manage_credit_limits"

    # Products
    VIEW_PRODUCTS = "view_products"
    CREATE_PRODUCTS = "create_products"
    EDIT_PRODUCTS = "edit_products"
    DELETE_PRODUCTS = "delete_products"

    # Orders
    VIEW_ALL_ORDERS = "view_all_orders"
    VIEW_ASSIGNED_ORDERS = "view_assigned_orders"
    EDIT_ORDERS = "edit_orders"
    ASSIGN_ORDERS = "assign_orders"

    # Payments
    RECORD_PAYMENTS = "record_payments"
    VIEW_PAYMENTS = "view_payments"

    # Inventory
    MANAGE_INVENTORY = "manage_inventory"
    VIEW_INVENTORY = "view_inventory"

    # Reporting
    VIEW_REPORTS = "view_reports"
    EXPORT_DATA = "export_data"
    VIEW_AUDIT_LOGS = "view_audit_logs"

    MANAGE_COUPONS = "manage_coupons"


ROLE_PERMISSIONS: Dict[AccountRole, FrozenSet[Permission]] = {
    AccountRole.ADMIN: frozenset(Permission),
    AccountRole.SUB_ADMIN: frozenset({
        Permission.VIEW_USERS,
        Permission.VIEW_PRODUCTS,
        Permission.CREATE_PRODUCTS,
        Permission.EDIT_PRODUCTS,
        Permission.VIEW_ASSIGNED_ORDERS,
        Permission.EDIT_ORDERS,
        Permission.RECORD_PAYMENTS,
        Permission.VIEW_PAYMENTS,
        Permission.MANAGE_INVENTORY,
        Permission.VIEW_INVENTORY,
    }),
    AccountRole.SALESMAN: frozenset({
        Permission.VIEW_PRODUCTS,
        Permission.VIEW_ASSIGNED_ORDERS,
        Permission.VIEW_PAYMENTS,
        Permission.RECORD_PAYMENTS,
    }),
    AccountRole.RETAILER: frozenset({Permission.VIEW_PRODUCTS}),
    AccountRole.BEAUTY_PARLOR: frozenset({Permission.VIEW_PRODUCTS}),
    AccountRole.LOCAL_CUSTOMER: frozenset({Permission.VIEW_PRODUCTS}),
}

# Roles that buy on credit and are bound by a pending amount limit
LIMITED_ROLES: FrozenSet[AccountRole] = frozenset({AccountRole.RETAILER, AccountRole.BEAUTY_PARLOR})

# Roles an anonymous visitor may pick when registering
SELF_REGISTRABLE_ROLES: FrozenSet[AccountRole] = frozenset({
    AccountRole.RETAILER,
    AccountRole.BEAUTY_PARLOR,
    AccountRole.LOCAL_CUSTOMER,
})

ROLE_DISPLAY_NAMES: Dict[AccountRole, str] = {
    AccountRole.ADMIN: "Administrator",
    AccountRole.SUB_ADMIN: "Sub-Admin",
    AccountRole.SALESMAN: "Salesman",
    AccountRole.RETAILER: "Retailer",
    AccountRole.BEAUTY_PARLOR: "Beauty Parlor",
    AccountRole.LOCAL_CUSTOMER: "Customer",
}


def parse_role(value: AccountRole | str) -> AccountRole:
    if isinstance(value, AccountRole):
        return value
    try:
        return AccountRole(str(value).strip().lower())
    except ValueError as exc:
        raise InvalidArgumentError(f"Unknown role: {value}") from exc


def has_permission(role: AccountRole, permission: Permission) -> bool:
    return permission in ROLE_PERMISSIONS.get(role, frozenset())


def is_admin(role: AccountRole) -> bool:
    return role == AccountRole.ADMIN


def is_credit_limited(role: AccountRole) -> bool:
    return role in LIMITED_ROLES


def display_name(role: AccountRole) -> str:
    return ROLE_DISPLAY_NAMES.get(role, role.value)
