from datetime import datetime, timedelta, timezone

import pytest

from buyerportal.service.errors import AuthenticationError, IdleTimeoutError
from buyerportal.service.sessions import SessionActivityTracker
from buyerportal.storage.models import SessionActivity
from buyerportal.storage.session_state import MemoryActivityStore


class Clock:
    def __init__(self):
        self.now = datetime(2026, 1, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def tracker(clock):
    return SessionActivityTracker(MemoryActivityStore(), idle_timeout_seconds=3600, clock=clock)


async def test_first_touch_creates_record(tracker, clock):
    activity = await tracker.touch("u1")
    assert activity.last_activity_at == clock.now
    assert (await tracker.store.get("u1")).last_activity_at == clock.now


async def test_touch_within_window_bumps_timestamp(tracker, clock):
    await tracker.touch("u1")
    clock.advance(3000)
    await tracker.touch("u1")
    assert (await tracker.store.get("u1")).last_activity_at == clock.now


async def test_idle_session_rejected_and_record_removed(tracker, clock):
    await tracker.store.set(
        SessionActivity(user_id="u1", last_activity_at=clock.now - timedelta(seconds=3601))
    )
    with pytest.raises(IdleTimeoutError) as excinfo:
        await tracker.touch("u1")
    assert isinstance(excinfo.value, AuthenticationError)
    assert excinfo.value.status_code == 401
    assert excinfo.value.reason == "idle_timeout"
    assert excinfo.value.detail["idle_timeout_seconds"] == 3600
    assert await tracker.store.get("u1") is None

    # Next request starts a fresh session instead of staying idle
    activity = await tracker.touch("u1")
    assert activity.last_activity_at == clock.now


async def test_start_discards_stale_record(tracker, clock):
    await tracker.store.set(
        SessionActivity(user_id="u1", last_activity_at=clock.now - timedelta(days=2))
    )
    await tracker.start("u1")
    await tracker.touch("u1")


async def test_end_removes_record(tracker):
    await tracker.touch("u1")
    await tracker.end("u1")
    assert await tracker.store.get("u1") is None


async def test_users_are_tracked_independently(tracker, clock):
    await tracker.touch("u1")
    clock.advance(4000)
    await tracker.touch("u2")
    with pytest.raises(IdleTimeoutError):
        await tracker.touch("u1")
    await tracker.touch("u2")
