from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from fastapi import APIRouter, Body, Cookie, Depends, Header, Path, Query, Response

from buyerportal.api.schemas import (
    AddressRequest,
    AuthResponse,
    CompanyHierarchyResponse,
    CompanyResponse,
    DashboardStats,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    MeResponse,
    RefreshResponse,
    RegisterRequest,
    ResetPasswordRequest,
    SwitchCompanyRequest,
    SwitchCompanyResponse,
    TokenRefreshRequest,
    UserCreateRequest,
    UserResponse,
    UserUpdateRequest,
)
from buyerportal.config import Settings
from buyerportal.logging import get_logger
from buyerportal.service.auth import AuthContext
from buyerportal.service.errors import AuthorizationError, RateLimitedError
from buyerportal.service.permissions import (
    CREATE_ORDERS,
    CREATE_QUOTES,
    MANAGE_ADDRESSES,
    MANAGE_QUOTES,
    MANAGE_USERS,
    SWITCH_COMPANIES,
    VIEW_COMPANY,
    VIEW_INVOICES,
    VIEW_ORDERS,
    VIEW_QUOTES,
    VIEW_SHOPPING_LISTS,
    capabilities_for,
    has_capability,
    is_privileged,
)
from buyerportal.service.runtime import Runtime, check_rate_limit, get_runtime
from buyerportal.service.tenancy import (
    accessible_companies,
    company_hierarchy,
    ensure_owned,
    filter_collection,
    owns_resource,
    ownership_fields,
)
from buyerportal.storage.models import Company, User

logger = get_logger(__name__)

router = APIRouter(prefix="/api")

REFRESH_COOKIE = "refreshToken"

_PENDING_ORDER_STATUSES = {"pending", "processing"}
_COMPLETED_ORDER_STATUSES = {"completed", "shipped"}
_OPEN_QUOTE_STATUSES = {"open", "pending"}


def _id_path() -> Any:
    return Path(..., min_length=1, max_length=128, pattern=r"^[A-Za-z0-9_-]+$")


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    response: Optional[Response] = None,
) -> RateLimitInfo:
    """Consume one token from ``key``'s bucket or raise 429."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        logger.warning("rate_limit_exceeded", bucket=key.split(":", 1)[0])
        raise RateLimitedError(
            "too many attempts, please try again later",
            detail={"retry_after_seconds": reset_seconds},
        )
    return info


# identity dependencies
async def get_auth_context(authorization: Optional[str] = Header(None)) -> AuthContext:
    """Verify the bearer access token and bump session activity.

    Only the Authorization header is consulted; tokens in query strings are ignored.
    """
    return await get_runtime().auth.authenticate(authorization)


def require_capability(capability: str) -> Callable[..., Awaitable[AuthContext]]:
    async def _dependency(ctx: AuthContext = Depends(get_auth_context)) -> AuthContext:
        if not has_capability(ctx.role, capability):
            raise AuthorizationError(
                "insufficient permissions",
                detail={"required": [capability], "role": ctx.role},
            )
        return ctx

    return _dependency


# serialization helpers
def _ok(data: Any) -> Envelope:
    return Envelope(status="ok", data=data)


def _user_response(user: User) -> Dict[str, Any]:
    return UserResponse(
        id=user.id,
        email=user.email,
        name=user.name,
        role=user.role,
        company_id=user.company_id,
        status=user.status,
    ).model_dump(by_alias=True)


def _company_response(company: Company) -> Dict[str, Any]:
    return CompanyResponse(
        id=company.id,
        name=company.name,
        parent_company_id=company.parent_company_id,
        hierarchy_level=company.hierarchy_level,
        created_at=company.created_at,
    ).model_dump(by_alias=True, mode="json")


def _set_refresh_cookie(response: Response, token: str, settings: Settings) -> None:
    response.set_cookie(
        REFRESH_COOKIE,
        token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
        max_age=settings.refresh_token_ttl_minutes * 60,
        path="/api/auth",
    )


def _clear_refresh_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        REFRESH_COOKIE,
        path="/api/auth",
        secure=settings.cookie_secure,
        httponly=True,
        samesite="strict",
    )


# upstream access with tenant filtering
async def _list_owned(
    ctx: AuthContext, kind: str, params: Optional[Mapping[str, Any]] = None
) -> List[Mapping[str, Any]]:
    auth = get_runtime().auth
    items = await auth.call_upstream(
        ctx, lambda token: auth.upstream.list(kind, token, dict(params or {}))
    )
    visible = filter_collection(kind, items, ctx)
    if len(visible) != len(items):
        logger.info(
            "tenant_filter_dropped",
            kind=kind,
            user_id=ctx.user_id,
            dropped=len(items) - len(visible),
        )
    return visible


async def _get_owned(ctx: AuthContext, kind: str, resource_id: str) -> Mapping[str, Any]:
    """Fetch by id and re-verify ownership; fetch-by-id bypasses the collection filter."""
    auth = get_runtime().auth
    resource = await auth.call_upstream(
        ctx, lambda token: auth.upstream.get(kind, resource_id, token)
    )
    try:
        return ensure_owned(kind, resource, ctx)
    except AuthorizationError:
        logger.warning(
            "cross_tenant_access_denied",
            kind=kind,
            resource_id=resource_id,
            user_id=ctx.user_id,
            company_id=ctx.company_id,
        )
        raise


def _guard_reassignment(kind: str, payload: Mapping[str, Any], ctx: AuthContext) -> None:
    """Reject writes that would move a resource into another company."""
    if is_privileged(ctx.role):
        return
    for field in ownership_fields(kind):
        if field in payload and str(payload[field]) != str(ctx.company_id):
            raise AuthorizationError(
                "cannot assign resource to another company", detail={"field": field}
            )


def _scoped_payload(kind: str, payload: Dict[str, Any], ctx: AuthContext) -> Dict[str, Any]:
    """Stamp the caller's company on new resources created by non-privileged users."""
    if is_privileged(ctx.role):
        return payload
    if not ctx.company_id:
        raise AuthorizationError("no active company for this session")
    _guard_reassignment(kind, payload, ctx)
    return {**payload, "companyId": ctx.company_id}


async def _update_owned(
    ctx: AuthContext, kind: str, resource_id: str, payload: Dict[str, Any]
) -> Any:
    await _get_owned(ctx, kind, resource_id)
    _guard_reassignment(kind, payload, ctx)
    auth = get_runtime().auth
    return await auth.call_upstream(
        ctx, lambda token: auth.upstream.update(kind, resource_id, token, payload)
    )


async def collection_params(
    search: Optional[str] = Query(None, max_length=200),
    status: Optional[str] = Query(None, max_length=50),
    sort_by: Optional[str] = Query(None, alias="sortBy", max_length=50),
    limit: Optional[int] = Query(None, ge=1, le=500),
    recent: bool = Query(False),
) -> Dict[str, Any]:
    """Query parameters forwarded to upstream collections as-is."""
    return {
        "search": search,
        "status": status,
        "sortBy": sort_by,
        "limit": limit,
        "recent": recent,
    }


# auth
@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    """Exchange credentials for an internal session.

    The upstream token is stored server-side; with ``rememberMe`` the refresh
    token goes into an HTTP-only cookie instead of the body.
    """
    runtime = get_runtime()
    settings = runtime.settings
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email}",
        settings.login_rate_limit,
        settings.login_rate_window_seconds,
        response=response,
    )
    result = await runtime.auth.login(body.email, body.password)
    refresh_token: Optional[str] = result.tokens["refresh_token"]
    if body.remember_me:
        _set_refresh_cookie(response, refresh_token, settings)
        refresh_token = None
    data = AuthResponse(
        access_token=result.tokens["access_token"],
        refresh_token=refresh_token,
        token_type=result.tokens["token_type"],
        user=UserResponse(**_user_response(result.user)),
    )
    return _ok(data.model_dump(by_alias=True, exclude_none=True))


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, response: Response):
    runtime = get_runtime()
    settings = runtime.settings
    await _enforce_rate_limit(
        runtime,
        f"register:{body.email}",
        settings.register_rate_limit,
        settings.login_rate_window_seconds,
        response=response,
    )
    result = await runtime.auth.register(
        body.email, body.password, body.name, company_name=body.company_name
    )
    data = AuthResponse(
        access_token=result.tokens["access_token"],
        refresh_token=result.tokens["refresh_token"],
        token_type=result.tokens["token_type"],
        user=UserResponse(**_user_response(result.user)),
    )
    return _ok(data.model_dump(by_alias=True))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(response: Response, authorization: Optional[str] = Header(None)):
    """Clear the upstream token record and the refresh cookie.

    An idle-expired session may still log out.
    """
    runtime = get_runtime()
    ctx = await runtime.auth.authenticate(authorization, touch=False)
    await runtime.auth.logout(ctx)
    _clear_refresh_cookie(response, runtime.settings)
    return _ok({"loggedOut": True})


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(
    body: Optional[TokenRefreshRequest] = None,
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    runtime = get_runtime()
    token = (body.refresh_token if body else None) or refresh_cookie
    access_token = await runtime.auth.refresh(token)
    return _ok(RefreshResponse(access_token=access_token).model_dump(by_alias=True))


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest, response: Response):
    runtime = get_runtime()
    settings = runtime.settings
    await _enforce_rate_limit(
        runtime,
        f"forgot:{body.email}",
        settings.reset_rate_limit,
        settings.reset_rate_window_seconds,
        response=response,
    )
    await runtime.auth.forgot_password(body.email)
    # Same answer whether or not the account exists
    return _ok({"message": "If an account exists for that email, a reset link has been sent."})


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest, response: Response):
    runtime = get_runtime()
    settings = runtime.settings
    await _enforce_rate_limit(
        runtime,
        "reset:global",
        settings.reset_rate_limit * 10,
        settings.reset_rate_window_seconds,
    )
    await runtime.auth.reset_password(body.token, body.new_password)
    _clear_refresh_cookie(response, settings)
    return _ok({"message": "Password updated. Please sign in again."})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(ctx: AuthContext = Depends(get_auth_context)):
    user = get_runtime().store.get_user(ctx.user_id)
    data = MeResponse(
        user=UserResponse(
            id=ctx.user_id,
            email=ctx.email,
            name=user.name if user else None,
            role=ctx.role,
            company_id=ctx.company_id,
            status=user.status if user else "active",
        ),
        capabilities=list(capabilities_for(ctx.role)),
    )
    return _ok(data.model_dump(by_alias=True))


# dashboard
@router.get("/dashboard/stats", response_model=Envelope, tags=["dashboard"])
async def dashboard_stats(ctx: AuthContext = Depends(require_capability(VIEW_ORDERS))):
    orders = await _list_owned(ctx, "orders", {"limit": 100})
    quotes: List[Mapping[str, Any]] = []
    if has_capability(ctx.role, VIEW_QUOTES):
        quotes = await _list_owned(ctx, "quotes", {"limit": 100})

    def _status(item: Mapping[str, Any]) -> str:
        return str(item.get("status") or "").lower()

    stats = DashboardStats(
        total_orders=len(orders),
        pending_orders=sum(1 for o in orders if _status(o) in _PENDING_ORDER_STATUSES),
        completed_orders=sum(1 for o in orders if _status(o) in _COMPLETED_ORDER_STATUSES),
        total_quotes=len(quotes),
        open_quotes=sum(1 for q in quotes if _status(q) in _OPEN_QUOTE_STATUSES),
        approved_quotes=sum(1 for q in quotes if _status(q) == "approved"),
    )
    return _ok(stats.model_dump(by_alias=True))


# orders
@router.get("/orders", response_model=Envelope, tags=["orders"])
async def list_orders(
    params: Dict[str, Any] = Depends(collection_params),
    ctx: AuthContext = Depends(require_capability(VIEW_ORDERS)),
):
    return _ok(await _list_owned(ctx, "orders", params))


@router.get("/orders/{order_id}", response_model=Envelope, tags=["orders"])
async def get_order(
    order_id: str = _id_path(),
    ctx: AuthContext = Depends(require_capability(VIEW_ORDERS)),
):
    return _ok(await _get_owned(ctx, "orders", order_id))


@router.patch("/orders/{order_id}", response_model=Envelope, tags=["orders"])
async def update_order(
    order_id: str = _id_path(),
    payload: Dict[str, Any] = Body(...),
    ctx: AuthContext = Depends(require_capability(CREATE_ORDERS)),
):
    return _ok(await _update_owned(ctx, "orders", order_id, payload))


# quotes
@router.get("/quotes", response_model=Envelope, tags=["quotes"])
async def list_quotes(
    params: Dict[str, Any] = Depends(collection_params),
    ctx: AuthContext = Depends(require_capability(VIEW_QUOTES)),
):
    return _ok(await _list_owned(ctx, "quotes", params))


@router.post("/quotes", response_model=Envelope, status_code=201, tags=["quotes"])
async def create_quote(
    payload: Dict[str, Any] = Body(...),
    ctx: AuthContext = Depends(require_capability(CREATE_QUOTES)),
):
    auth = get_runtime().auth
    scoped = _scoped_payload("quotes", payload, ctx)
    created = await auth.call_upstream(
        ctx, lambda token: auth.upstream.create("quotes", token, scoped)
    )
    return _ok(created)


@router.get("/quotes/{quote_id}", response_model=Envelope, tags=["quotes"])
async def get_quote(
    quote_id: str = _id_path(),
    ctx: AuthContext = Depends(require_capability(VIEW_QUOTES)),
):
    return _ok(await _get_owned(ctx, "quotes", quote_id))


@router.patch("/quotes/{quote_id}", response_model=Envelope, tags=["quotes"])
async def update_quote(
    quote_id: str = _id_path(),
    payload: Dict[str, Any] = Body(...),
    ctx: AuthContext = Depends(require_capability(MANAGE_QUOTES)),
):
    return _ok(await _update_owned(ctx, "quotes", quote_id, payload))


@router.post("/quotes/{quote_id}/checkout", response_model=Envelope, tags=["quotes"])
async def checkout_quote(
    quote_id: str = _id_path(),
    ctx: AuthContext = Depends(require_capability(CREATE_ORDERS)),
):
    await _get_owned(ctx, "quotes", quote_id)
    auth = get_runtime().auth
    result = await auth.call_upstream(
        ctx, lambda token: auth.upstream.action("quotes", quote_id, "checkout", token)
    )
    logger.info("quote_checkout", quote_id=quote_id, user_id=ctx.user_id)
    return _ok(result)


# invoices
@router.get("/invoices", response_model=Envelope, tags=["invoices"])
async def list_invoices(
    params: Dict[str, Any] = Depends(collection_params),
    ctx: AuthContext = Depends(require_capability(VIEW_INVOICES)),
):
    return _ok(await _list_owned(ctx, "invoices", params))


@router.get("/invoices/{invoice_id}", response_model=Envelope, tags=["invoices"])
async def get_invoice(
    invoice_id: str = _id_path(),
    ctx: AuthContext = Depends(require_capability(VIEW_INVOICES)),
):
    return _ok(await _get_owned(ctx, "invoices", invoice_id))


@router.get("/invoices/{invoice_id}/pdf", response_model=Envelope, tags=["invoices"])
async def get_invoice_pdf(
    invoice_id: str = _id_path(),
    ctx: AuthContext = Depends(require_capability(VIEW_INVOICES)),
):
    await _get_owned(ctx, "invoices", invoice_id)
    auth = get_runtime().auth
    document = await auth.call_upstream(
        ctx,
        lambda token: auth.upstream.action("invoices", invoice_id, "pdf", token, method="GET"),
    )
    return _ok(document)


# company
@router.get("/company", response_model=Envelope, tags=["company"])
async def get_company(ctx: AuthContext = Depends(require_capability(VIEW_COMPANY))):
    """Active company of the caller.

    After a switch the upstream token still describes the login company, so
    the locally mirrored record for the active company answers instead.
    """
    runtime = get_runtime()
    auth = runtime.auth
    company = await auth.call_upstream(ctx, lambda token: auth.upstream.company(token))
    if company is not None and owns_resource("companies", company, ctx):
        return _ok(company)
    local = runtime.store.get_company(ctx.company_id) if ctx.company_id else None
    if local is not None:
        return _ok(_company_response(local))
    return _ok(ensure_owned("companies", company, ctx))


@router.get("/company/users", response_model=Envelope, tags=["company"])
async def list_company_users(ctx: AuthContext = Depends(require_capability(VIEW_COMPANY))):
    return _ok(await _list_owned(ctx, "company_users"))


@router.get("/company/addresses", response_model=Envelope, tags=["company"])
async def list_company_addresses(
    ctx: AuthContext = Depends(require_capability(VIEW_COMPANY)),
):
    return _ok(await _list_owned(ctx, "addresses"))


@router.get("/company/accessible", response_model=Envelope, tags=["company"])
async def list_accessible_companies(
    ctx: AuthContext = Depends(require_capability(VIEW_COMPANY)),
):
    companies = accessible_companies(get_runtime().store, ctx.company_id)
    return _ok([_company_response(c) for c in companies])


@router.get("/company/hierarchy", response_model=Envelope, tags=["company"])
async def get_company_hierarchy(
    ctx: AuthContext = Depends(require_capability(VIEW_COMPANY)),
):
    tree = company_hierarchy(get_runtime().store, ctx.company_id)
    data = CompanyHierarchyResponse(
        parent=CompanyResponse(**_company_response(tree["parent"])) if tree["parent"] else None,
        children=[CompanyResponse(**_company_response(c)) for c in tree["children"]],
    )
    return _ok(data.model_dump(by_alias=True, mode="json"))


@router.post("/company/switch", response_model=Envelope, tags=["company"])
async def switch_company(
    body: SwitchCompanyRequest,
    response: Response,
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
    ctx: AuthContext = Depends(require_capability(SWITCH_COMPANIES)),
):
    """Move the session into another company of the caller's accessible set."""
    runtime = get_runtime()
    result = await runtime.auth.switch_company(ctx, body.company_id)
    if refresh_cookie:
        _set_refresh_cookie(response, result["refresh_token"], runtime.settings)
    company: Optional[Company] = result["company"]
    data = SwitchCompanyResponse(
        access_token=result["access_token"],
        refresh_token=result["refresh_token"],
        token_type=result["token_type"],
        company=CompanyResponse(**_company_response(company)) if company else None,
    )
    return _ok(data.model_dump(by_alias=True, mode="json"))


# addresses
@router.get("/addresses", response_model=Envelope, tags=["addresses"])
async def list_addresses(ctx: AuthContext = Depends(require_capability(VIEW_COMPANY))):
    return _ok(await _list_owned(ctx, "addresses"))


@router.post("/addresses", response_model=Envelope, status_code=201, tags=["addresses"])
async def create_address(
    body: AddressRequest,
    ctx: AuthContext = Depends(require_capability(MANAGE_ADDRESSES)),
):
    auth = get_runtime().auth
    payload = _scoped_payload("addresses", body.to_upstream(), ctx)
    created = await auth.call_upstream(
        ctx, lambda token: auth.upstream.create("addresses", token, payload)
    )
    return _ok(created)


@router.patch("/addresses/{address_id}", response_model=Envelope, tags=["addresses"])
async def update_address(
    body: AddressRequest,
    address_id: str = _id_path(),
    ctx: AuthContext = Depends(require_capability(MANAGE_ADDRESSES)),
):
    return _ok(await _update_owned(ctx, "addresses", address_id, body.to_upstream()))


@router.delete("/addresses/{address_id}", response_model=Envelope, tags=["addresses"])
async def delete_address(
    address_id: str = _id_path(),
    ctx: AuthContext = Depends(require_capability(MANAGE_ADDRESSES)),
):
    await _get_owned(ctx, "addresses", address_id)
    auth = get_runtime().auth
    await auth.call_upstream(
        ctx, lambda token: auth.upstream.delete("addresses", address_id, token)
    )
    return _ok({"deleted": True, "id": address_id})


@router.patch(
    "/addresses/{address_id}/set-default", response_model=Envelope, tags=["addresses"]
)
async def set_default_address(
    address_id: str = _id_path(),
    ctx: AuthContext = Depends(require_capability(MANAGE_ADDRESSES)),
):
    return _ok(await _update_owned(ctx, "addresses", address_id, {"isDefault": True}))


# local users
@router.get("/users", response_model=Envelope, tags=["users"])
async def list_users(
    limit: int = Query(100, ge=1, le=500),
    ctx: AuthContext = Depends(require_capability(VIEW_COMPANY)),
):
    users = get_runtime().auth.list_company_users(ctx, limit=limit)
    return _ok([_user_response(user) for user in users])


@router.post("/users", response_model=Envelope, status_code=201, tags=["users"])
async def create_user(
    body: UserCreateRequest,
    ctx: AuthContext = Depends(require_capability(MANAGE_USERS)),
):
    user = get_runtime().auth.create_company_user(
        ctx,
        email=body.email,
        name=body.name,
        role=body.role,
        company_id=body.company_id,
        password=body.password,
    )
    return _ok(_user_response(user))


@router.patch("/users/{user_id}", response_model=Envelope, tags=["users"])
async def update_user(
    body: UserUpdateRequest,
    user_id: str = _id_path(),
    ctx: AuthContext = Depends(require_capability(MANAGE_USERS)),
):
    runtime = get_runtime()
    changes: Dict[str, Any] = {
        "name": body.name,
        "role": body.role,
        "company_id": body.company_id,
        "status": "active" if body.status == "active" else None,
    }
    user: Optional[User] = None
    if body.status != "inactive" or any(v is not None for v in changes.values()):
        user = runtime.auth.update_company_user(ctx, user_id, **changes)
    # Deactivation also drops the user's session state
    if body.status == "inactive":
        user = await runtime.auth.deactivate_company_user(ctx, user_id)
    return _ok(_user_response(user))


@router.delete("/users/{user_id}", response_model=Envelope, tags=["users"])
async def deactivate_user(
    user_id: str = _id_path(),
    ctx: AuthContext = Depends(require_capability(MANAGE_USERS)),
):
    user = await get_runtime().auth.deactivate_company_user(ctx, user_id)
    return _ok(_user_response(user))


# shopping lists
@router.get("/shopping-lists", response_model=Envelope, tags=["shopping-lists"])
async def list_shopping_lists(
    ctx: AuthContext = Depends(require_capability(VIEW_SHOPPING_LISTS)),
):
    return _ok(await _list_owned(ctx, "shopping_lists"))


@router.get("/shopping-lists/{list_id}", response_model=Envelope, tags=["shopping-lists"])
async def get_shopping_list(
    list_id: str = _id_path(),
    ctx: AuthContext = Depends(require_capability(VIEW_SHOPPING_LISTS)),
):
    return _ok(await _get_owned(ctx, "shopping_lists", list_id))
