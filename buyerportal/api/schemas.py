from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from buyerportal.logging import get_correlation_id

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "upstream_unavailable",
    "reauth_required",
})


class ErrorBody(BaseModel):
    """Error payload with a stable machine-readable code."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and strip zero-width and bidi override characters."""
    zero_width = "​‌‍﻿"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    """At least 8 characters with upper, lower and digit."""
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    if not re.search(r"[A-Z]", value):
        raise ValueError("password must contain at least one uppercase letter")
    if not re.search(r"[a-z]", value):
        raise ValueError("password must contain at least one lowercase letter")
    if not re.search(r"[0-9]", value):
        raise ValueError("password must contain at least one number")
    return value


class _CamelModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


Role = Literal["buyer", "manager", "admin", "superadmin"]


class LoginRequest(_CamelModel):
    email: str
    password: str = Field(..., min_length=1, max_length=256)
    remember_me: bool = False

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class RegisterRequest(_CamelModel):
    email: str
    password: str
    name: str = Field(..., min_length=2, max_length=200)
    company_name: Optional[str] = Field(default=None, max_length=200)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class TokenRefreshRequest(_CamelModel):
    refresh_token: Optional[str] = None


class ForgotPasswordRequest(_CamelModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_reset_email(cls, value: str) -> str:
        return _validate_email(value)


class ResetPasswordRequest(_CamelModel):
    token: str = Field(..., min_length=16, max_length=256)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class SwitchCompanyRequest(_CamelModel):
    company_id: str = Field(..., min_length=1, max_length=128)

    @field_validator("company_id", mode="before")
    @classmethod
    def _coerce_company_id(cls, value: Any) -> Any:
        # Upstream ids are numeric; clients may send them unquoted
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value


class UserCreateRequest(_CamelModel):
    email: str
    name: Optional[str] = Field(default=None, max_length=200)
    role: Role = "buyer"
    company_id: Optional[str] = Field(default=None, max_length=128)
    password: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _validate_user_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: Optional[str]) -> Optional[str]:
        return _validate_password_strength(value) if value is not None else None


class UserUpdateRequest(_CamelModel):
    name: Optional[str] = Field(default=None, min_length=2, max_length=200)
    role: Optional[Role] = None
    status: Optional[Literal["active", "inactive"]] = None
    company_id: Optional[str] = Field(default=None, max_length=128)


class AddressRequest(_CamelModel):
    """Address payload forwarded to the upstream platform."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    label: Optional[str] = Field(default=None, max_length=200)
    type: Optional[Literal["shipping", "billing", "both"]] = None
    street1: Optional[str] = Field(default=None, max_length=300)
    street2: Optional[str] = Field(default=None, max_length=300)
    city: Optional[str] = Field(default=None, max_length=200)
    state: Optional[str] = Field(default=None, max_length=100)
    postal_code: Optional[str] = Field(default=None, max_length=32)
    country: Optional[str] = Field(default=None, max_length=100)
    is_default: Optional[bool] = None

    def to_upstream(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class UserResponse(_CamelModel):
    id: str
    email: str
    name: Optional[str] = None
    role: str
    company_id: Optional[str] = None
    status: str = "active"


class AuthResponse(_CamelModel):
    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "bearer"
    user: UserResponse


class RefreshResponse(_CamelModel):
    access_token: str
    token_type: str = "bearer"


class MeResponse(_CamelModel):
    user: UserResponse
    capabilities: List[str]


class CompanyResponse(_CamelModel):
    id: str
    name: str
    parent_company_id: Optional[str] = None
    hierarchy_level: int = 0
    created_at: Optional[datetime] = None


class CompanyHierarchyResponse(_CamelModel):
    parent: Optional[CompanyResponse] = None
    children: List[CompanyResponse] = Field(default_factory=list)


class SwitchCompanyResponse(_CamelModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    company: Optional[CompanyResponse] = None


class DashboardStats(_CamelModel):
    total_orders: int = 0
    pending_orders: int = 0
    completed_orders: int = 0
    total_quotes: int = 0
    open_quotes: int = 0
    approved_quotes: int = 0
