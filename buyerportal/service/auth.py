from __future__ import annotations

import asyncio
import hashlib
import secrets
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, List, Optional, Protocol, Tuple, TypeVar

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from buyerportal.config import Settings
from buyerportal.logging import get_logger
from buyerportal.service.email import EmailService
from buyerportal.service.errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ReauthRequiredError,
    ServerError,
    ValidationError,
)
from buyerportal.service.permissions import is_privileged
from buyerportal.service.sessions import SessionActivityTracker
from buyerportal.service.tenancy import accessible_company_ids
from buyerportal.service.tokens import SessionClaims, SessionTokenIssuer
from buyerportal.service.upstream import UpstreamClient, UpstreamIdentity
from buyerportal.storage.errors import ConstraintViolation
from buyerportal.storage.models import Company, UpstreamTokenRecord, User
from buyerportal.storage.redis_cache import RedisCache
from buyerportal.storage.session_state import UpstreamTokenStore

logger = get_logger(__name__)

T = TypeVar("T")


class IdentityStore(Protocol):
    def create_user(
        self,
        email: str,
        *,
        name: Optional[str] = None,
        role: str = "buyer",
        company_id: Optional[str] = None,
        status: str = "active",
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def list_users(self, company_id: Optional[str] = None, limit: int = 100) -> List[User]: ...

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]: ...

    def deactivate_user(self, user_id: str) -> Optional[User]: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def create_company(
        self,
        name: str,
        *,
        parent_company_id: Optional[str] = None,
        company_id: Optional[str] = None,
    ) -> Company: ...

    def get_company(self, company_id: str) -> Optional[Company]: ...

    def list_child_companies(self, parent_company_id: str) -> List[Company]: ...


@dataclass
class AuthContext:
    user_id: str
    email: str
    role: str
    company_id: Optional[str] = None


@dataclass
class SessionResult:
    user: User
    tokens: dict[str, str]


def _hash_email(email: str) -> str:
    return hashlib.sha256(email.encode()).hexdigest()


class AuthService:
    """Session and authorization broker.

    Upstream credentials are exchanged for an upstream token, which is kept
    server-side in the token store, and an internal access/refresh pair,
    which is all the browser ever sees.
    """

    def __init__(
        self,
        store: IdentityStore,
        upstream: UpstreamClient,
        token_store: UpstreamTokenStore,
        tracker: SessionActivityTracker,
        issuer: SessionTokenIssuer,
        settings: Settings,
        *,
        cache: Optional[RedisCache] = None,
        email: Optional[EmailService] = None,
    ) -> None:
        self.store = store
        self.upstream = upstream
        self.token_store = token_store
        self.tracker = tracker
        self.issuer = issuer
        self.settings = settings
        self.cache = cache
        self.email = email
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # In-process reset tokens when Redis is unavailable
        self._state_lock = threading.Lock()
        self._password_reset_tokens: dict[str, tuple[str, datetime]] = {}
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    @staticmethod
    def _claims_for(user: User) -> SessionClaims:
        return SessionClaims(
            user_id=user.id, email=user.email, role=user.role, company_id=user.company_id
        )

    # passwords
    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), "argon2id"

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            return False
        stored_hash, algo = record
        if algo != "argon2id":
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def save_password(self, user_id: str, password: str) -> None:
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    # login / registration
    def _ensure_company(self, identity: UpstreamIdentity) -> None:
        """Mirror the upstream company (and its parent) locally for hierarchy lookups."""
        if not identity.company_id:
            return
        parent_id = identity.parent_company_id
        try:
            if parent_id and not self.store.get_company(parent_id):
                self.store.create_company(f"Company {parent_id}", company_id=parent_id)
            if not self.store.get_company(identity.company_id):
                self.store.create_company(
                    identity.company_name or f"Company {identity.company_id}",
                    parent_company_id=parent_id,
                    company_id=identity.company_id,
                )
        except ConstraintViolation as exc:
            # Concurrent first logins for the same company race here
            self.logger.info(
                "company_mirror_skipped",
                company_id=identity.company_id,
                reason=exc.message,
            )

    def _sync_user(self, identity: UpstreamIdentity) -> User:
        user = self.store.get_user_by_email(identity.email)
        if user is None:
            try:
                user = self.store.create_user(
                    identity.email,
                    name=identity.name,
                    role="buyer",
                    company_id=identity.company_id,
                )
                self.logger.info(
                    "user_provisioned_from_upstream",
                    user_id=user.id,
                    company_id=identity.company_id,
                )
                return user
            except ConstraintViolation:
                user = self.store.get_user_by_email(identity.email)
                if user is None:
                    raise
        # Upstream owns company membership
        if identity.company_id and user.company_id != identity.company_id:
            self.logger.info(
                "user_company_synced",
                user_id=user.id,
                previous_company_id=user.company_id,
                company_id=identity.company_id,
            )
            user = self.store.update_user(user.id, company_id=identity.company_id) or user
        return user

    async def login(self, email: str, password: str) -> SessionResult:
        email = email.strip().lower()
        identity: Optional[UpstreamIdentity] = None
        try:
            identity = await self.upstream.login(email, password)
        except AuthenticationError:
            # Locally provisioned accounts (bootstrap admins, registrations)
            local = self.store.get_user_by_email(email)
            if not local or not self.verify_password(local.id, password):
                self.logger.info("login_failed", email_hash=_hash_email(email))
                raise AuthenticationError("invalid credentials", reason="invalid_credentials")
            user = local
        else:
            self._ensure_company(identity)
            user = self._sync_user(identity)

        if not user.is_active:
            self.logger.warning("login_inactive_user", user_id=user.id)
            if identity is not None:
                await self.upstream.logout(identity.token)
            raise AuthenticationError("account disabled", reason="account_disabled")

        if identity is not None:
            record = UpstreamTokenRecord.new(
                user.id,
                identity.token,
                user.company_id,
                ttl_seconds=self.settings.upstream_token_ttl_seconds,
            )
            try:
                await self.token_store.set(record)
            except Exception as exc:
                # Login and token persistence succeed or fail together
                self.logger.error(
                    "upstream_token_persist_failed",
                    user_id=user.id,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                await self.upstream.logout(identity.token)
                raise ServerError("unable to establish session") from exc

        await self.tracker.start(user.id)
        tokens = self.issuer.issue_pair(self._claims_for(user))
        self.logger.info(
            "login_succeeded",
            user_id=user.id,
            company_id=user.company_id,
            upstream=identity is not None,
        )
        return SessionResult(user=user, tokens=tokens)

    async def register(
        self,
        email: str,
        password: str,
        name: str,
        company_name: Optional[str] = None,
    ) -> SessionResult:
        if not self.settings.allow_registration:
            raise AuthorizationError("registration is disabled")
        email = email.strip().lower()
        if self.store.get_user_by_email(email):
            raise ConflictError("email already registered", detail={"field": "email"})
        company_id = None
        if company_name:
            company_id = self.store.create_company(company_name.strip()).id
        try:
            user = self.store.create_user(email, name=name, role="buyer", company_id=company_id)
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail=exc.detail) from exc
        self.save_password(user.id, password)
        await self.tracker.start(user.id)
        tokens = self.issuer.issue_pair(self._claims_for(user))
        self.logger.info("user_registered", user_id=user.id, company_id=company_id)
        return SessionResult(user=user, tokens=tokens)

    async def logout(self, ctx: AuthContext) -> None:
        """Drop local session state, then tell upstream; local cleanup never depends on it."""
        record = await self.token_store.get(ctx.user_id)
        await self.token_store.clear(ctx.user_id)
        await self.tracker.end(ctx.user_id)
        if record is not None:
            await self.upstream.logout(record.upstream_token)
        self.logger.info("logout", user_id=ctx.user_id)

    async def refresh(self, refresh_token: Optional[str]) -> str:
        """Mint a new access token carrying exactly the refresh token's claims."""
        if not refresh_token:
            raise AuthenticationError("refresh token required", reason="missing_token")
        payload = self.issuer.decode_refresh(refresh_token)
        if payload is None:
            raise AuthorizationError(
                "invalid or expired refresh token", detail={"reason": "invalid_token"}
            )
        user = self.store.get_user(str(payload["sub"]))
        if user is None or not user.is_active:
            raise AuthorizationError(
                "invalid or expired refresh token", detail={"reason": "invalid_token"}
            )
        if self._revoked(user, payload):
            raise AuthorizationError(
                "session revoked", detail={"reason": "session_revoked"}
            )
        return self.issuer.issue_access(SessionClaims.from_payload(payload))

    # password reset
    async def _store_reset_token(self, token: str, user_id: str, ttl_seconds: int) -> None:
        if self.cache:
            await self.cache.set_reset_token(token, user_id, ttl_seconds)
            return
        key = hashlib.sha256(token.encode()).hexdigest()
        expires_at = self._now() + timedelta(seconds=ttl_seconds)
        with self._state_lock:
            self._password_reset_tokens[key] = (user_id, expires_at)

    async def _pop_reset_token(self, token: str) -> Optional[str]:
        if self.cache:
            return await self.cache.pop_reset_token(token)
        key = hashlib.sha256(token.encode()).hexdigest()
        with self._state_lock:
            stored = self._password_reset_tokens.pop(key, None)
        if not stored:
            return None
        user_id, expires_at = stored
        if expires_at <= self._now():
            return None
        return user_id

    def cleanup_expired_reset_tokens(self) -> int:
        now = self._now()
        with self._state_lock:
            expired = [k for k, (_, exp) in self._password_reset_tokens.items() if exp <= now]
            for key in expired:
                del self._password_reset_tokens[key]
        return len(expired)

    async def forgot_password(self, email: str) -> None:
        """Send a reset link if the account exists; callers always answer the same way."""
        email = email.strip().lower()
        user = self.store.get_user_by_email(email)
        if user is None or not user.is_active:
            self.logger.info("password_reset_unknown_account", email_hash=_hash_email(email))
            return
        token = secrets.token_urlsafe(32)
        await self._store_reset_token(
            token, user.id, self.settings.password_reset_ttl_minutes * 60
        )
        if self.email:
            sent = await asyncio.to_thread(self.email.send_password_reset, user.email, token)
            if not sent:
                self.logger.warning("password_reset_email_failed", user_id=user.id)
        self.logger.info("password_reset_requested", user_id=user.id)

    async def reset_password(self, token: str, new_password: str) -> None:
        user_id = await self._pop_reset_token(token)
        user = self.store.get_user(user_id) if user_id else None
        if user is None:
            self.logger.warning("password_reset_invalid_token")
            raise ValidationError("invalid or expired reset token")
        self.save_password(user.id, new_password)
        # Every token issued before this instant stops verifying
        self.store.update_user(user.id, sessions_revoked_at=self._now())
        await self.token_store.clear(user.id)
        await self.tracker.end(user.id)
        self.logger.info("password_reset_completed", user_id=user.id)

    # request authentication
    @staticmethod
    def _extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    @staticmethod
    def _revoked(user: User, payload: dict[str, Any]) -> bool:
        if user.sessions_revoked_at is None:
            return False
        try:
            issued_at = float(payload.get("iat"))
        except (TypeError, ValueError):
            return True
        return issued_at < user.sessions_revoked_at.timestamp()

    async def authenticate(
        self, authorization: Optional[str], *, touch: bool = True
    ) -> AuthContext:
        token = self._extract_bearer(authorization)
        if token is None:
            raise AuthenticationError("access token required", reason="missing_token")
        payload = self.issuer.decode_access(token)
        if payload is None:
            raise AuthenticationError("invalid or expired access token", reason="invalid_token")
        user = self.store.get_user(str(payload["sub"]))
        if user is None:
            raise AuthenticationError("invalid or expired access token", reason="invalid_token")
        if not user.is_active:
            raise AuthenticationError("account disabled", reason="account_disabled")
        if self._revoked(user, payload):
            raise AuthenticationError("session revoked", reason="session_revoked")
        # Claims win over the stored record until the token expires
        claims = SessionClaims.from_payload(payload)
        ctx = AuthContext(
            user_id=claims.user_id,
            email=claims.email,
            role=claims.role,
            company_id=claims.company_id,
        )
        if touch:
            await self.tracker.touch(ctx.user_id)
        return ctx

    async def upstream_token_for(self, ctx: AuthContext) -> str:
        record = await self.token_store.get(ctx.user_id)
        if record is None:
            raise ReauthRequiredError()
        return record.upstream_token

    async def call_upstream(
        self, ctx: AuthContext, operation: Callable[[str], Awaitable[T]]
    ) -> T:
        """Run ``operation`` with the caller's upstream token.

        A token the upstream rejects is dropped so the next call fails fast.
        """
        token = await self.upstream_token_for(ctx)
        try:
            return await operation(token)
        except ReauthRequiredError:
            await self.token_store.clear(ctx.user_id)
            raise

    # company context
    async def switch_company(self, ctx: AuthContext, company_id: str) -> dict[str, Any]:
        target = str(company_id).strip()
        allowed = accessible_company_ids(self.store, ctx.company_id)
        if target not in allowed:
            self.logger.warning(
                "company_switch_denied",
                user_id=ctx.user_id,
                company_id=ctx.company_id,
                target_company_id=target,
            )
            raise AuthorizationError(
                "company not accessible", detail={"company_id": target}
            )
        self.store.update_user(ctx.user_id, company_id=target)
        record = await self.token_store.get(ctx.user_id)
        if record is not None:
            await self.token_store.set(replace(record, company_id=target))
        claims = SessionClaims(
            user_id=ctx.user_id, email=ctx.email, role=ctx.role, company_id=target
        )
        self.logger.info(
            "company_switched",
            user_id=ctx.user_id,
            previous_company_id=ctx.company_id,
            company_id=target,
        )
        return {
            "company": self.store.get_company(target),
            **self.issuer.issue_pair(claims),
        }

    # local user management
    def _managed_user(self, ctx: AuthContext, user_id: str) -> User:
        target = self.store.get_user(user_id)
        if target is None:
            raise NotFoundError("user not found")
        if not is_privileged(ctx.role) and (
            not ctx.company_id or target.company_id != ctx.company_id
        ):
            raise AuthorizationError("user belongs to another company")
        if (is_privileged(target.role) and not is_privileged(ctx.role)) or (
            target.role == "superadmin" and ctx.role != "superadmin"
        ):
            raise AuthorizationError(
                "cannot manage a more privileged user", detail={"role": target.role}
            )
        return target

    @staticmethod
    def _check_role_grant(ctx: AuthContext, role: Optional[str]) -> None:
        if role is None:
            return
        if is_privileged(role) and not is_privileged(ctx.role):
            raise AuthorizationError(
                "cannot grant a privileged role", detail={"role": role}
            )
        if role == "superadmin" and ctx.role != "superadmin":
            raise AuthorizationError(
                "cannot grant a privileged role", detail={"role": role}
            )

    def list_company_users(self, ctx: AuthContext, limit: int = 100) -> List[User]:
        """Local users visible to the caller: their own company, or all for privileged roles."""
        if is_privileged(ctx.role):
            return self.store.list_users(limit=limit)
        if not ctx.company_id:
            return []
        return self.store.list_users(company_id=ctx.company_id, limit=limit)

    def create_company_user(
        self,
        ctx: AuthContext,
        *,
        email: str,
        name: Optional[str] = None,
        role: str = "buyer",
        company_id: Optional[str] = None,
        password: Optional[str] = None,
    ) -> User:
        target_company = str(company_id) if company_id else ctx.company_id
        if not is_privileged(ctx.role) and target_company != ctx.company_id:
            raise AuthorizationError("cannot create users for another company")
        if target_company and not self.store.get_company(target_company):
            raise NotFoundError("company not found")
        self._check_role_grant(ctx, role)
        try:
            user = self.store.create_user(
                email, name=name, role=role, company_id=target_company
            )
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail=exc.detail) from exc
        if password:
            self.save_password(user.id, password)
        self.logger.info(
            "company_user_created", actor_id=ctx.user_id, user_id=user.id, role=role
        )
        return user

    def update_company_user(self, ctx: AuthContext, user_id: str, **fields: Any) -> User:
        self._managed_user(ctx, user_id)
        changes = {k: v for k, v in fields.items() if v is not None}
        self._check_role_grant(ctx, changes.get("role"))
        if "company_id" in changes and not is_privileged(ctx.role):
            raise AuthorizationError("cannot move users between companies")
        if not changes:
            raise ValidationError("no changes supplied")
        try:
            updated = self.store.update_user(user_id, **changes)
        except ConstraintViolation as exc:
            raise ValidationError(exc.message, detail=exc.detail) from exc
        if updated is None:
            raise NotFoundError("user not found")
        self.logger.info(
            "company_user_updated",
            actor_id=ctx.user_id,
            user_id=user_id,
            fields=sorted(changes),
        )
        return updated

    async def deactivate_company_user(self, ctx: AuthContext, user_id: str) -> User:
        if user_id == ctx.user_id:
            raise ValidationError("cannot deactivate your own account")
        self._managed_user(ctx, user_id)
        updated = self.store.deactivate_user(user_id)
        if updated is None:
            raise NotFoundError("user not found")
        await self.token_store.clear(user_id)
        await self.tracker.end(user_id)
        self.logger.info("company_user_deactivated", actor_id=ctx.user_id, user_id=user_id)
        return updated
