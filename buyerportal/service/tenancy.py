"""Tenant isolation for data fetched from the upstream platform.

Every resource kind the broker serves must appear in ``OWNERSHIP_FIELDS``;
an unlisted kind raises rather than falling through unfiltered.
"""

from __future__ import annotations

from typing import Any, Iterable, List, Mapping, Optional, Protocol, Sequence

from buyerportal.service.errors import AuthorizationError, NotFoundError
from buyerportal.service.permissions import is_privileged
from buyerportal.storage.models import Company

# Checked in order; the first field present on the resource decides ownership
OWNERSHIP_FIELDS: dict[str, tuple[str, ...]] = {
    "orders": ("companyId",),
    "quotes": ("companyId",),
    "invoices": ("customerId", "companyId"),
    "addresses": ("companyId",),
    "company_users": ("companyId",),
    "shopping_lists": ("companyId",),
    "companies": ("id",),
}


class Principal(Protocol):
    role: str
    company_id: Optional[str]


class CompanyLookup(Protocol):
    def get_company(self, company_id: str) -> Optional[Company]: ...

    def list_child_companies(self, parent_company_id: str) -> List[Company]: ...


def _normalize(value: Any) -> Optional[str]:
    # Upstream ids arrive as numbers or strings
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def ownership_fields(kind: str) -> tuple[str, ...]:
    try:
        return OWNERSHIP_FIELDS[kind]
    except KeyError:
        raise ValueError(f"no ownership rule for resource kind {kind!r}") from None


def resource_owner(kind: str, resource: Mapping[str, Any]) -> Optional[str]:
    """Company id that owns ``resource`` according to its kind's rule."""
    for field in ownership_fields(kind):
        owner = _normalize(resource.get(field))
        if owner is not None:
            return owner
    return None


def owns_resource(kind: str, resource: Mapping[str, Any], principal: Principal) -> bool:
    fields = ownership_fields(kind)
    if is_privileged(principal.role):
        return True
    caller_company = _normalize(principal.company_id)
    if caller_company is None or not isinstance(resource, Mapping):
        return False
    for field in fields:
        owner = _normalize(resource.get(field))
        if owner is not None:
            return owner == caller_company
    return False


def filter_collection(
    kind: str, items: Iterable[Mapping[str, Any]], principal: Principal
) -> List[Mapping[str, Any]]:
    """Drop every item the caller's company does not own.

    A non-privileged caller without a company sees nothing.
    """
    ownership_fields(kind)
    items = list(items or [])
    if is_privileged(principal.role):
        return items
    if _normalize(principal.company_id) is None:
        return []
    return [item for item in items if owns_resource(kind, item, principal)]


def ensure_owned(
    kind: str, resource: Optional[Mapping[str, Any]], principal: Principal
) -> Mapping[str, Any]:
    """Return ``resource`` if the caller may see it, else raise 403 (404 when absent)."""
    if resource is None:
        raise NotFoundError(f"{kind} not found")
    if not owns_resource(kind, resource, principal):
        raise AuthorizationError(
            "resource belongs to another company",
            detail={"kind": kind},
        )
    return resource


def accessible_companies(store: CompanyLookup, company_id: Optional[str]) -> List[Company]:
    """Companies a member of ``company_id`` may view or switch into.

    Computed from the top-level ancestor: a subsidiary sees its parent and
    every sibling, a parent with subsidiaries sees itself and its children,
    and a standalone company sees only itself.
    """
    company_id = _normalize(company_id)
    if company_id is None:
        return []
    company = store.get_company(company_id)
    if company is None:
        return []
    root_id = company.parent_company_id or company.id
    root = store.get_company(root_id) if root_id != company.id else company
    if root is None:
        return [company]
    children = store.list_child_companies(root.id)
    if not children:
        return [root]
    return [root, *children]


def accessible_company_ids(store: CompanyLookup, company_id: Optional[str]) -> Sequence[str]:
    return [c.id for c in accessible_companies(store, company_id)]


def company_hierarchy(store: CompanyLookup, company_id: Optional[str]) -> dict[str, Any]:
    companies = accessible_companies(store, company_id)
    if not companies:
        return {"parent": None, "children": []}
    root, children = companies[0], companies[1:]
    return {"parent": root, "children": children}
