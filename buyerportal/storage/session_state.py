from __future__ import annotations

import asyncio
import base64
import hashlib
import threading
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime, timezone
from typing import AsyncIterator, Dict, Optional, Protocol

from cryptography.fernet import Fernet, InvalidToken

from buyerportal.logging import get_logger
from buyerportal.storage.models import SessionActivity, UpstreamTokenRecord
from buyerportal.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UpstreamTokenStore(Protocol):
    """userId -> upstream token record, TTL enforced on read."""

    async def get(self, user_id: str) -> Optional[UpstreamTokenRecord]: ...

    async def set(self, record: UpstreamTokenRecord) -> None: ...

    async def clear(self, user_id: str) -> None: ...

    async def sweep(self) -> int: ...


class ActivityStore(Protocol):
    async def get(self, user_id: str) -> Optional[SessionActivity]: ...

    async def set(self, activity: SessionActivity) -> None: ...

    async def clear(self, user_id: str) -> None: ...


class KeyedLock:
    """One asyncio lock per key; entries are dropped once no task holds or waits."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._refs: Dict[str, int] = {}
        self._guard = threading.Lock()

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = asyncio.Lock()
            self._refs[key] = self._refs.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            with self._guard:
                self._refs[key] -= 1
                if not self._refs[key]:
                    del self._refs[key]
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class MemoryUpstreamTokenStore:
    """Process-local token records.

    Expiry is checked lazily on ``get``; ``sweep`` only reclaims memory.
    A restart drops every record while issued session tokens stay valid.
    """

    def __init__(self) -> None:
        self._records: Dict[str, UpstreamTokenRecord] = {}
        self._lock = threading.Lock()

    async def get(self, user_id: str) -> Optional[UpstreamTokenRecord]:
        with self._lock:
            record = self._records.get(user_id)
            if record is None:
                return None
            if record.is_expired():
                del self._records[user_id]
                logger.info("upstream_token_expired", user_id=user_id)
                return None
            return replace(record)

    async def set(self, record: UpstreamTokenRecord) -> None:
        # Single upstream session per user: overwrite
        with self._lock:
            self._records[record.user_id] = replace(record)

    async def clear(self, user_id: str) -> None:
        with self._lock:
            self._records.pop(user_id, None)

    async def sweep(self) -> int:
        now = _utcnow()
        with self._lock:
            expired = [uid for uid, rec in self._records.items() if rec.is_expired(now)]
            for uid in expired:
                del self._records[uid]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


class RedisUpstreamTokenStore:
    """Token records in Redis with ``EX`` set to the record's remaining lifetime.

    The upstream token is Fernet-encrypted at rest. Expiry is re-checked on
    read so clock drift against Redis can never extend a record.
    """

    def __init__(self, cache: RedisCache, key_material: str) -> None:
        self.cache = cache
        self._cipher = Fernet(self._derive_cipher_key(key_material))

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    async def get(self, user_id: str) -> Optional[UpstreamTokenRecord]:
        payload = await self.cache.get_upstream_token(user_id)
        if not payload:
            return None
        try:
            token = self._cipher.decrypt(payload["token"].encode()).decode()
            expires_at = datetime.fromisoformat(payload["expires_at"])
        except (InvalidToken, KeyError, ValueError, TypeError) as exc:
            logger.warning(
                "upstream_token_record_unreadable",
                user_id=user_id,
                error_type=type(exc).__name__,
            )
            await self.cache.delete_upstream_token(user_id)
            return None
        record = UpstreamTokenRecord(
            user_id=user_id,
            upstream_token=token,
            company_id=payload.get("company_id"),
            expires_at=expires_at,
        )
        if record.is_expired():
            await self.cache.delete_upstream_token(user_id)
            return None
        return record

    async def set(self, record: UpstreamTokenRecord) -> None:
        payload = {
            "token": self._cipher.encrypt(record.upstream_token.encode()).decode(),
            "company_id": record.company_id,
            "expires_at": record.expires_at.isoformat(),
        }
        await self.cache.set_upstream_token(record.user_id, payload, record.expires_at)

    async def clear(self, user_id: str) -> None:
        await self.cache.delete_upstream_token(user_id)

    async def sweep(self) -> int:
        # Redis expires keys on its own
        return 0


class MemoryActivityStore:
    def __init__(self) -> None:
        self._records: Dict[str, datetime] = {}
        self._lock = threading.Lock()

    async def get(self, user_id: str) -> Optional[SessionActivity]:
        with self._lock:
            at = self._records.get(user_id)
        return SessionActivity(user_id=user_id, last_activity_at=at) if at else None

    async def set(self, activity: SessionActivity) -> None:
        with self._lock:
            self._records[activity.user_id] = activity.last_activity_at

    async def clear(self, user_id: str) -> None:
        with self._lock:
            self._records.pop(user_id, None)


class RedisActivityStore:
    """Activity timestamps in Redis; keys outlive the idle window so a timeout is observable."""

    def __init__(self, cache: RedisCache, *, retention_seconds: int) -> None:
        self.cache = cache
        self.retention_seconds = retention_seconds

    async def get(self, user_id: str) -> Optional[SessionActivity]:
        at = await self.cache.get_session_activity(user_id)
        if at is None:
            return None
        if at.tzinfo is None:
            at = at.replace(tzinfo=timezone.utc)
        return SessionActivity(user_id=user_id, last_activity_at=at)

    async def set(self, activity: SessionActivity) -> None:
        await self.cache.set_session_activity(
            activity.user_id, activity.last_activity_at, self.retention_seconds
        )

    async def clear(self, user_id: str) -> None:
        await self.cache.delete_session_activity(user_id)
