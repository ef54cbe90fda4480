from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

ROLES = ("buyer", "manager", "admin", "superadmin")
USER_STATUSES = ("active", "inactive")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    name: Optional[str] = None
    role: str = "buyer"
    company_id: Optional[str] = None
    status: str = "active"
    created_at: datetime = field(default_factory=_utcnow)
    # Tokens issued before this instant are rejected (password reset)
    sessions_revoked_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == "active"


@dataclass
class Company:
    id: str
    name: str
    parent_company_id: Optional[str] = None
    hierarchy_level: int = 0
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(
        cls,
        name: str,
        *,
        parent_company_id: Optional[str] = None,
        company_id: Optional[str] = None,
    ) -> "Company":
        return cls(
            id=company_id or str(uuid.uuid4()),
            name=name,
            parent_company_id=parent_company_id,
            hierarchy_level=1 if parent_company_id else 0,
        )


@dataclass
class UpstreamTokenRecord:
    user_id: str
    upstream_token: str
    company_id: Optional[str]
    expires_at: datetime

    @classmethod
    def new(
        cls,
        user_id: str,
        upstream_token: str,
        company_id: Optional[str] = None,
        *,
        ttl_seconds: int = 24 * 3600,
    ) -> "UpstreamTokenRecord":
        return cls(
            user_id=user_id,
            upstream_token=upstream_token,
            company_id=company_id,
            expires_at=_utcnow() + timedelta(seconds=ttl_seconds),
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or _utcnow()) >= self.expires_at


@dataclass
class SessionActivity:
    user_id: str
    last_activity_at: datetime = field(default_factory=_utcnow)

    def idle_seconds(self, now: Optional[datetime] = None) -> float:
        return ((now or _utcnow()) - self.last_activity_at).total_seconds()
