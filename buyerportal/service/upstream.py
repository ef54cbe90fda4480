from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from buyerportal.config import Settings
from buyerportal.logging import get_logger, sanitize_error_message
from buyerportal.service.errors import (
    AuthenticationError,
    NotFoundError,
    ReauthRequiredError,
    UpstreamUnavailableError,
    ValidationError,
)

logger = get_logger(__name__)

RESOURCE_PATHS: Dict[str, str] = {
    "orders": "/api/v2/orders",
    "quotes": "/api/v2/quotes",
    "invoices": "/api/v2/invoices",
    "addresses": "/api/v2/company/addresses",
    "company_users": "/api/v2/company/users",
    "shopping_lists": "/api/v2/shopping-lists",
}

LOGIN_PATH = "/api/io/auth/customers"
COMPANY_PATH = "/api/v2/company"

# Upstream answers for bad credentials vary by store configuration
_LOGIN_REJECTED = {400, 401, 403, 404, 422}

_FORWARDED_PARAMS = ("search", "status", "sortBy", "limit", "recent")


@dataclass
class UpstreamIdentity:
    token: str
    email: str
    name: Optional[str] = None
    company_id: Optional[str] = None
    company_name: Optional[str] = None
    parent_company_id: Optional[str] = None


def _str_or_none(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def unwrap(body: Any) -> Any:
    """Strip the upstream ``{code, data, meta}`` envelope.

    Collections arrive as ``data.list`` or as a bare ``data`` array.
    """
    if not isinstance(body, dict):
        return body
    data = body.get("data", body)
    if isinstance(data, dict) and isinstance(data.get("list"), list):
        return data["list"]
    return data


def forwarded_params(params: Optional[Dict[str, Any]]) -> Dict[str, str]:
    """Collection query params passed through untouched, minus ``status=all``."""
    out: Dict[str, str] = {}
    for key in _FORWARDED_PARAMS:
        value = (params or {}).get(key)
        if value is None or value == "" or value is False:
            continue
        if key == "status" and str(value).lower() == "all":
            continue
        if key == "recent":
            out[key] = "true"
            continue
        out[key] = str(value)
    return out


class UpstreamClient:
    """HTTP client for the upstream B2B commerce platform.

    Every call carries the store headers and, when configured, the server
    token. User-scoped calls add the caller's upstream bearer token, which
    never leaves this process.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings
        self.base_url = settings.upstream_base_url
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(
                    self.settings.upstream_timeout_seconds,
                    connect=self.settings.upstream_connect_timeout_seconds,
                ),
                transport=self._transport,
            )
        return self._client

    def _headers(self, user_token: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "X-Store-Hash": self.settings.upstream_store_hash,
            "X-Channel-Id": str(self.settings.upstream_channel_id),
        }
        if self.settings.upstream_access_token:
            headers["X-Auth-Token"] = self.settings.upstream_access_token
        if user_token:
            headers["Authorization"] = f"Bearer {user_token}"
        return headers

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text or response.reason_phrase
        if isinstance(body, dict):
            meta = body.get("meta") if isinstance(body.get("meta"), dict) else {}
            message = meta.get("message") or body.get("message") or body.get("detail")
            if message:
                return str(message)
        return response.reason_phrase or "upstream error"

    async def _send(
        self,
        method: str,
        path: str,
        *,
        user_token: Optional[str] = None,
        params: Optional[Dict[str, str]] = None,
        json: Any = None,
    ) -> httpx.Response:
        client = await self._get_client()
        try:
            return await client.request(
                method,
                path,
                headers=self._headers(user_token),
                params=params or None,
                json=json,
            )
        except httpx.TimeoutException as exc:
            logger.error("upstream_timeout", method=method, path=path, error=str(exc))
            raise UpstreamUnavailableError(
                "upstream platform timed out", detail={"reason": "timeout"}
            ) from exc
        except httpx.ConnectError as exc:
            logger.error(
                "upstream_connect_error",
                method=method,
                path=path,
                api_base=self.base_url,
                error=str(exc),
            )
            raise UpstreamUnavailableError(
                "upstream platform unreachable", detail={"reason": "connect_error"}
            ) from exc
        except httpx.HTTPError as exc:
            logger.error(
                "upstream_transport_error",
                method=method,
                path=path,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise UpstreamUnavailableError(
                "upstream platform request failed", detail={"reason": "transport_error"}
            ) from exc

    def _raise_for_status(self, response: httpx.Response, *, resource: str) -> None:
        status = response.status_code
        if status < 400:
            return
        method = response.request.method
        path = response.request.url.path
        if status >= 500:
            logger.error("upstream_server_error", method=method, path=path, status_code=status)
            raise UpstreamUnavailableError(
                "upstream platform error",
                detail={"reason": "upstream_error", "upstream_status": status},
            )
        if status == 404:
            raise NotFoundError(f"{resource} not found")
        if status in (401, 403):
            logger.warning("upstream_token_rejected", method=method, path=path, status_code=status)
            raise ReauthRequiredError(detail={"reason": "upstream_token_rejected"})
        message = sanitize_error_message(self._error_message(response))
        logger.warning(
            "upstream_client_error", method=method, path=path, status_code=status, message=message
        )
        raise ValidationError(message, detail={"upstream_status": status})

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            logger.error(
                "upstream_invalid_json",
                path=response.request.url.path,
                status_code=response.status_code,
            )
            raise UpstreamUnavailableError(
                "upstream platform returned an unreadable response",
                detail={"reason": "invalid_response"},
            ) from exc

    async def _user_call(
        self,
        method: str,
        path: str,
        user_token: str,
        *,
        resource: str,
        params: Optional[Dict[str, str]] = None,
        json: Any = None,
    ) -> Any:
        response = await self._send(method, path, user_token=user_token, params=params, json=json)
        self._raise_for_status(response, resource=resource)
        return unwrap(self._json(response))

    @staticmethod
    def _resource_path(kind: str) -> str:
        try:
            return RESOURCE_PATHS[kind]
        except KeyError:
            raise ValueError(f"unknown upstream resource {kind!r}") from None

    # authentication
    async def login(self, email: str, password: str) -> UpstreamIdentity:
        """Exchange credentials for an upstream token plus company identity.

        Any rejection is reported as the same generic failure.
        """
        response = await self._send(
            "POST",
            LOGIN_PATH,
            json={
                "storeHash": self.settings.upstream_store_hash,
                "channelId": self.settings.upstream_channel_id,
                "name": "buyer portal token",
                "email": email,
                "password": password,
            },
        )
        if response.status_code in _LOGIN_REJECTED:
            logger.info("upstream_login_rejected", status_code=response.status_code)
            raise AuthenticationError("invalid credentials", reason="invalid_credentials")
        self._raise_for_status(response, resource="login")
        body = self._json(response) or {}
        data = body.get("data") if isinstance(body, dict) else None
        token = data.get("token") if isinstance(data, dict) else None
        if not token:
            logger.warning("upstream_login_missing_token")
            raise AuthenticationError("invalid credentials", reason="invalid_credentials")

        identity = UpstreamIdentity(token=token, email=email, name=email.split("@")[0])
        user_info = data.get("user") if isinstance(data.get("user"), dict) else {}
        self._apply_user_info(identity, user_info)
        try:
            company = await self.company(token)
        except ReauthRequiredError:
            # The token was refused right after issue; report it like a bad login
            logger.warning("upstream_login_token_refused")
            await self.logout(token)
            raise AuthenticationError("invalid credentials", reason="invalid_credentials")
        self._apply_company(identity, company)
        return identity

    @staticmethod
    def _apply_user_info(identity: UpstreamIdentity, info: Dict[str, Any]) -> None:
        full_name = " ".join(
            part for part in (info.get("firstName"), info.get("lastName")) if part
        )
        identity.name = full_name or info.get("name") or identity.name
        company_id = _str_or_none(info.get("companyId"))
        if company_id:
            identity.company_id = company_id

    @staticmethod
    def _apply_company(identity: UpstreamIdentity, company: Any) -> None:
        if not isinstance(company, dict):
            return
        company_id = _str_or_none(company.get("id") or company.get("companyId"))
        if company_id:
            identity.company_id = company_id
        identity.company_name = company.get("companyName") or company.get("name")
        parent = company.get("parentCompany")
        parent_id = company.get("parentCompanyId")
        if parent_id is None and isinstance(parent, dict):
            parent_id = parent.get("id") or parent.get("companyId")
        identity.parent_company_id = _str_or_none(parent_id)

    async def logout(self, user_token: str) -> bool:
        """Best-effort upstream logout; never raises."""
        try:
            response = await self._send(
                "POST", self.settings.upstream_logout_path, user_token=user_token
            )
        except UpstreamUnavailableError:
            logger.warning("upstream_logout_failed", reason="unavailable")
            return False
        if response.status_code >= 400:
            logger.warning("upstream_logout_failed", status_code=response.status_code)
            return False
        return True

    # resources
    async def company(self, user_token: str) -> Optional[Dict[str, Any]]:
        try:
            data = await self._user_call("GET", COMPANY_PATH, user_token, resource="company")
        except NotFoundError:
            return None
        return data if isinstance(data, dict) else None

    async def list(
        self, kind: str, user_token: str, params: Optional[Dict[str, Any]] = None
    ) -> List[Dict[str, Any]]:
        data = await self._user_call(
            "GET",
            self._resource_path(kind),
            user_token,
            resource=kind,
            params=forwarded_params(params),
        )
        if not isinstance(data, list):
            return []
        return [item for item in data if isinstance(item, dict)]

    async def get(self, kind: str, resource_id: str, user_token: str) -> Dict[str, Any]:
        data = await self._user_call(
            "GET", f"{self._resource_path(kind)}/{resource_id}", user_token, resource=kind
        )
        if not isinstance(data, dict):
            raise NotFoundError(f"{kind} not found")
        return data

    async def create(
        self, kind: str, user_token: str, payload: Dict[str, Any]
    ) -> Any:
        return await self._user_call(
            "POST", self._resource_path(kind), user_token, resource=kind, json=payload
        )

    async def update(
        self, kind: str, resource_id: str, user_token: str, payload: Dict[str, Any]
    ) -> Any:
        return await self._user_call(
            "PATCH",
            f"{self._resource_path(kind)}/{resource_id}",
            user_token,
            resource=kind,
            json=payload,
        )

    async def delete(self, kind: str, resource_id: str, user_token: str) -> Any:
        return await self._user_call(
            "DELETE", f"{self._resource_path(kind)}/{resource_id}", user_token, resource=kind
        )

    async def action(
        self,
        kind: str,
        resource_id: str,
        action: str,
        user_token: str,
        *,
        method: str = "POST",
        payload: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Sub-resource call such as ``quotes/{id}/checkout`` or ``invoices/{id}/pdf``."""
        body = payload if payload is not None else ({} if method != "GET" else None)
        return await self._user_call(
            method,
            f"{self._resource_path(kind)}/{resource_id}/{action}",
            user_token,
            resource=kind,
            json=body,
        )

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None
