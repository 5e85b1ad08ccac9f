"""Notification dispatcher: schedules one-shot alerts and reports deliveries.

NotificationDispatcher is the interface the engine consumes. The delivery
router registers as the sole handler for the two event kinds (deliver,
interact). SchedulerDispatcher implements it on top of an APScheduler
AsyncIOScheduler, one DateTrigger job per pending alert.
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from concurrent.futures import Future
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger

import config
from logger import logger
from .errors import CancellationFailed, PermissionDenied, SchedulingFailed
from .models import ActionKind, NotificationPayload, PermissionStatus

DeliveryHandler = Callable[[NotificationPayload, bool], Awaitable[None]]
InteractionHandler = Callable[[NotificationPayload, ActionKind], Awaitable[None]]

REMINDER_JOB_PREFIX = "reminder:"
TEST_JOB_PREFIX = "test:"
TEST_NOTIFICATION_PREFIX = "test_notification_"


class NotificationDispatcher(ABC):
    """OS-level notification capability consumed by the engine."""

    def __init__(self):
        self._delivery_handler: Optional[DeliveryHandler] = None
        self._interaction_handler: Optional[InteractionHandler] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def on_deliver(self, handler: DeliveryHandler) -> None:
        """Register the sole delivery handler."""
        if self._delivery_handler is not None:
            raise RuntimeError("Delivery handler already registered")
        self._delivery_handler = handler

    def on_interact(self, handler: InteractionHandler) -> None:
        """Register the sole interaction handler."""
        if self._interaction_handler is not None:
            raise RuntimeError("Interaction handler already registered")
        self._interaction_handler = handler

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Bind the event loop that owns reminder state."""
        self._loop = loop

    async def deliver(self, payload: NotificationPayload, foreground: bool) -> None:
        """Hand a delivery to the registered handler."""
        if self._delivery_handler is None:
            logger.warning(f"Delivery for {payload.reminder_id} dropped: no handler registered")
            return
        await self._delivery_handler(payload, foreground)

    async def interact(self, payload: NotificationPayload, action: ActionKind) -> None:
        """Hand a user interaction to the registered handler."""
        if self._interaction_handler is None:
            logger.warning(f"Interaction for {payload.reminder_id} dropped: no handler registered")
            return
        await self._interaction_handler(payload, action)

    def deliver_threadsafe(self, payload: NotificationPayload, foreground: bool) -> Future:
        """Deliver from a foreign thread by handing off to the owning loop."""
        loop = self._require_loop()
        return asyncio.run_coroutine_threadsafe(self.deliver(payload, foreground), loop)

    def interact_threadsafe(self, payload: NotificationPayload, action: ActionKind) -> Future:
        """Report an interaction from a foreign thread."""
        loop = self._require_loop()
        return asyncio.run_coroutine_threadsafe(self.interact(payload, action), loop)

    async def schedule_test_notification(self, delay_seconds: int = 5) -> str:
        """Schedule a diagnostic alert that bypasses in-app routing.

        Returns:
            The test notification id
        """
        test_id = f"{TEST_NOTIFICATION_PREFIX}{uuid.uuid4().hex[:8]}"
        fire_at = datetime.now(config.TIMEZONE) + timedelta(seconds=delay_seconds)
        await self.schedule(test_id, fire_at, NotificationPayload(reminder_id=test_id, is_test=True))
        logger.info(f"Scheduled test notification {test_id} in {delay_seconds}s")
        return test_id

    def _require_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            raise RuntimeError("Dispatcher is not bound to an event loop")
        return self._loop

    @abstractmethod
    async def request_permission(self) -> PermissionStatus:
        """Ask the user for notification permission."""

    @abstractmethod
    async def schedule(self, reminder_id: str, fire_at: datetime, payload: NotificationPayload) -> None:
        """Register a one-shot alert.

        Raises:
            PermissionDenied: Notifications are not allowed
            SchedulingFailed: The registration was rejected
        """

    @abstractmethod
    async def cancel(self, reminder_id: str) -> None:
        """Cancel a pending alert. Cancelling an unknown id is not an error.

        Raises:
            CancellationFailed: The alert could not be cancelled
        """

    @abstractmethod
    async def list_pending(self) -> set[str]:
        """Ids of alerts registered but not yet delivered."""

    @abstractmethod
    async def set_badge_count(self, count: int) -> None:
        """Set the app badge."""

    @abstractmethod
    async def clear_delivered(self) -> None:
        """Remove delivered alerts from the notification centre."""


class SchedulerDispatcher(NotificationDispatcher):
    """Dispatcher backed by APScheduler date jobs.

    Usage:
        scheduler = AsyncIOScheduler(timezone=config.TIMEZONE)
        dispatcher = SchedulerDispatcher(scheduler, is_foreground=lambda: app.is_active)
        scheduler.start()
    """

    def __init__(
        self,
        scheduler: AsyncIOScheduler,
        is_foreground: Callable[[], bool],
        permission_prompt: Optional[Callable[[], Awaitable[PermissionStatus]]] = None
    ):
        """Initialize the dispatcher.

        Args:
            scheduler: APScheduler instance the alert jobs live in
            is_foreground: Reports whether the app is active when an alert fires
            permission_prompt: Async prompt answering the permission request
                (defaults to the NOTIFICATION_PERMISSION setting)
        """
        super().__init__()
        self.scheduler = scheduler
        self._is_foreground = is_foreground
        self._permission_prompt = permission_prompt
        self.permission = PermissionStatus.NOT_DETERMINED
        self.badge_count = 0
        self._delivered: set[str] = set()

    @property
    def delivered(self) -> set[str]:
        """Ids delivered and not yet cleared."""
        return set(self._delivered)

    async def request_permission(self) -> PermissionStatus:
        if self._permission_prompt is None:
            self.permission = _permission_from_config()
            return self.permission

        try:
            self.permission = await asyncio.wait_for(
                self._permission_prompt(),
                timeout=config.PERMISSION_TIMEOUT_SECONDS
            )
        except asyncio.TimeoutError:
            # Prompt dismissed without an answer
            logger.warning("Notification permission prompt timed out")
            self.permission = PermissionStatus.NOT_DETERMINED
        return self.permission

    async def schedule(self, reminder_id: str, fire_at: datetime, payload: NotificationPayload) -> None:
        if self.permission == PermissionStatus.DENIED:
            raise PermissionDenied(f"Notifications denied, not scheduling {reminder_id}")

        prefix = TEST_JOB_PREFIX if payload.is_test else REMINDER_JOB_PREFIX
        try:
            self.scheduler.add_job(
                self._fire,
                trigger=DateTrigger(run_date=fire_at, timezone=config.TIMEZONE),
                args=[payload.to_dict()],
                id=reminder_id,
                name=f"{prefix}{reminder_id}",
                misfire_grace_time=None,
                replace_existing=False
            )
        except Exception as e:
            raise SchedulingFailed(f"Failed to schedule {reminder_id}: {e}") from e

        logger.debug(f"Scheduled alert {reminder_id} at {fire_at}")

    async def cancel(self, reminder_id: str) -> None:
        try:
            self.scheduler.remove_job(reminder_id)
            logger.debug(f"Cancelled alert {reminder_id}")
        except JobLookupError:
            pass  # Already fired or never scheduled
        except Exception as e:
            raise CancellationFailed(f"Failed to cancel {reminder_id}: {e}") from e

    async def list_pending(self) -> set[str]:
        return {
            job.id for job in self.scheduler.get_jobs()
            if job.name.startswith(REMINDER_JOB_PREFIX)
        }

    async def set_badge_count(self, count: int) -> None:
        self.badge_count = count
        logger.debug(f"Badge set to {count}")

    async def clear_delivered(self) -> None:
        self._delivered.clear()

    async def _fire(self, payload_data: dict) -> None:
        """Job body: called by APScheduler when an alert is due."""
        payload = NotificationPayload.from_dict(payload_data)
        self._delivered.add(payload.reminder_id)
        await self.deliver(payload, self._is_foreground())


def _permission_from_config() -> PermissionStatus:
    if config.NOTIFICATION_PERMISSION == "granted":
        return PermissionStatus.GRANTED
    if config.NOTIFICATION_PERMISSION == "denied":
        return PermissionStatus.DENIED
    return PermissionStatus.NOT_DETERMINED
