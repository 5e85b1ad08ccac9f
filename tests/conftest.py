"""Pytest configuration and fixtures."""

import os
import sys
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from reminders.dispatcher import NotificationDispatcher
from reminders.errors import CancellationFailed, PermissionDenied, SchedulingFailed
from reminders.models import NotificationPayload, PermissionStatus
from reminders.store import ReminderStore
from reminders.app import ReminderApp

TZ = ZoneInfo("Europe/London")


def local(*args) -> datetime:
    """Timestamp on the test calendar."""
    return datetime(*args, tzinfo=TZ)


class FakeClock:
    """Settable clock injected wherever the engine asks for 'now'."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, now: datetime) -> None:
        self.now = now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeDispatcher(NotificationDispatcher):
    """In-memory dispatcher that records every call.

    Registering an id that is already pending is a test failure: it would be
    a duplicate delivery.
    """

    def __init__(self, permission: PermissionStatus = PermissionStatus.GRANTED):
        super().__init__()
        self.permission = permission
        self.pending: dict[str, tuple[datetime, NotificationPayload]] = {}
        self.schedule_calls: list[str] = []
        self.cancel_calls: list[str] = []
        self.fail_schedule = False
        self.fail_cancel: set[str] = set()
        self.badge_count = 0
        self.clear_count = 0

    async def request_permission(self) -> PermissionStatus:
        return self.permission

    async def schedule(self, reminder_id, fire_at, payload) -> None:
        if self.permission == PermissionStatus.DENIED:
            raise PermissionDenied("denied")
        if self.fail_schedule:
            raise SchedulingFailed("quota exceeded")
        assert reminder_id not in self.pending, f"duplicate registration for {reminder_id}"
        self.schedule_calls.append(reminder_id)
        self.pending[reminder_id] = (fire_at, payload)

    async def cancel(self, reminder_id) -> None:
        if reminder_id in self.fail_cancel:
            raise CancellationFailed(f"cannot cancel {reminder_id}")
        self.cancel_calls.append(reminder_id)
        self.pending.pop(reminder_id, None)

    async def list_pending(self) -> set[str]:
        return {rid for rid, (_, payload) in self.pending.items() if not payload.is_test}

    async def set_badge_count(self, count: int) -> None:
        self.badge_count = count

    async def clear_delivered(self) -> None:
        self.clear_count += 1

    async def fire(self, reminder_id: str, foreground: bool) -> None:
        """Simulate the OS delivering a pending alert."""
        _, payload = self.pending.pop(reminder_id)
        await self.deliver(payload, foreground)


@pytest.fixture
def clock():
    """Clock starting at 2024-01-01 08:00 local time."""
    return FakeClock(local(2024, 1, 1, 8, 0))


@pytest.fixture
def store(tmp_path):
    """Fresh reminder database for each test."""
    reminder_store = ReminderStore(str(tmp_path / "reminders.db"))
    yield reminder_store
    reminder_store.close()


@pytest.fixture
def dispatcher():
    return FakeDispatcher()


@pytest.fixture
async def app(store, dispatcher, clock):
    """Launched app (permission granted, reconciled, active)."""
    reminder_app = ReminderApp(store, dispatcher, clock=clock)
    await reminder_app.launch()
    return reminder_app
