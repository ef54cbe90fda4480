from __future__ import annotations

from typing import Optional, Tuple

VIEW_ORDERS = "view_orders"
CREATE_ORDERS = "create_orders"
VIEW_QUOTES = "view_quotes"
CREATE_QUOTES = "create_quotes"
MANAGE_QUOTES = "manage_quotes"
VIEW_INVOICES = "view_invoices"
VIEW_COMPANY = "view_company"
MANAGE_COMPANY = "manage_company"
MANAGE_USERS = "manage_users"
MANAGE_ADDRESSES = "manage_addresses"
VIEW_SHOPPING_LISTS = "view_shopping_lists"
MANAGE_SHOPPING_LISTS = "manage_shopping_lists"
SWITCH_COMPANIES = "switch_companies"

ALL_CAPABILITIES: Tuple[str, ...] = (
    VIEW_ORDERS,
    CREATE_ORDERS,
    VIEW_QUOTES,
    CREATE_QUOTES,
    MANAGE_QUOTES,
    VIEW_INVOICES,
    VIEW_COMPANY,
    MANAGE_COMPANY,
    MANAGE_USERS,
    MANAGE_ADDRESSES,
    VIEW_SHOPPING_LISTS,
    MANAGE_SHOPPING_LISTS,
    SWITCH_COMPANIES,
)

_BUYER: Tuple[str, ...] = (
    VIEW_ORDERS,
    CREATE_ORDERS,
    VIEW_QUOTES,
    CREATE_QUOTES,
    VIEW_INVOICES,
    VIEW_COMPANY,
    VIEW_SHOPPING_LISTS,
    MANAGE_SHOPPING_LISTS,
)

_MANAGER_EXTRA = (MANAGE_QUOTES, MANAGE_ADDRESSES, MANAGE_USERS, SWITCH_COMPANIES)

# Ordered by ALL_CAPABILITIES so listings are stable
ROLE_CAPABILITIES: dict[str, Tuple[str, ...]] = {
    "superadmin": ALL_CAPABILITIES,
    "admin": ALL_CAPABILITIES,
    "manager": tuple(c for c in ALL_CAPABILITIES if c in _BUYER or c in _MANAGER_EXTRA),
    "buyer": tuple(c for c in ALL_CAPABILITIES if c in _BUYER),
}

PRIVILEGED_ROLES = frozenset({"admin", "superadmin"})


def capabilities_for(role: Optional[str]) -> Tuple[str, ...]:
    """Capabilities granted to ``role``; unknown roles get none."""
    return ROLE_CAPABILITIES.get(role or "", ())


def has_capability(role: Optional[str], capability: str) -> bool:
    return capability in capabilities_for(role)


def is_privileged(role: Optional[str]) -> bool:
    """Privileged roles bypass tenant filtering."""
    return role in PRIVILEGED_ROLES
