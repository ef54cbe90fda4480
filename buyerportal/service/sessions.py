from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Optional

from buyerportal.logging import get_logger
from buyerportal.service.errors import IdleTimeoutError
from buyerportal.storage.models import SessionActivity
from buyerportal.storage.session_state import ActivityStore, KeyedLock

logger = get_logger(__name__)


class SessionActivityTracker:
    """Idle-timeout bookkeeping, independent of token expiry.

    A user with no activity record (first request after login, or after a
    broker restart) gets a fresh one instead of being rejected.
    """

    def __init__(
        self,
        store: ActivityStore,
        *,
        idle_timeout_seconds: int,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.idle_timeout_seconds = idle_timeout_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._locks = KeyedLock()

    async def touch(self, user_id: str) -> SessionActivity:
        async with self._locks.hold(user_id):
            now = self._clock()
            current = await self.store.get(user_id)
            if current is not None:
                idle = current.idle_seconds(now)
                if idle > self.idle_timeout_seconds:
                    await self.store.clear(user_id)
                    logger.info(
                        "session_idle_timeout",
                        user_id=user_id,
                        idle_seconds=int(idle),
                    )
                    raise IdleTimeoutError(
                        detail={"idle_timeout_seconds": self.idle_timeout_seconds}
                    )
            activity = SessionActivity(user_id=user_id, last_activity_at=now)
            await self.store.set(activity)
            return activity

    async def start(self, user_id: str) -> SessionActivity:
        """Begin a fresh session window, discarding any stale record."""
        async with self._locks.hold(user_id):
            activity = SessionActivity(user_id=user_id, last_activity_at=self._clock())
            await self.store.set(activity)
            return activity

    async def end(self, user_id: str) -> None:
        async with self._locks.hold(user_id):
            await self.store.clear(user_id)
