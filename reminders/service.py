"""User-facing reminder flows.

Everything the create/edit/list screens need, built on the coordinator
(for dispatcher registrations) and the router (for completion and snooze).
"""

from datetime import datetime
from typing import Optional

from logger import logger
from .coordinator import SchedulingCoordinator
from .errors import CancellationFailed
from .expander import floor_to_minute, upcoming_occurrences
from .models import DeliveryStatus, Reminder, RepeatRule, localize
from .router import DeliveryRouter
from .store import ReminderStore


class ReminderService:
    """Create, edit, complete and delete reminders."""

    def __init__(self, store: ReminderStore, coordinator: SchedulingCoordinator, router: DeliveryRouter):
        self._store = store
        self._coordinator = coordinator
        self._router = router

    async def create_reminder(
        self,
        title: str,
        fire_at: datetime,
        rule: Optional[RepeatRule] = None,
        parent_reminder_id: Optional[str] = None
    ) -> Reminder:
        """Create and schedule a reminder.

        Succeeds even when notifications are denied; the reminder is stored
        and its delivery status says it won't notify.
        """
        start = floor_to_minute(localize(fire_at))
        reminder = Reminder(
            title=title or "Reminder",
            fire_at=start,
            repeat_rule=rule or RepeatRule.none(),
            parent_reminder_id=parent_reminder_id,
        )
        self._store.insert(reminder)
        status = await self._coordinator.on_reminder_created_or_updated(reminder)
        logger.info(f"Created reminder {reminder.id} '{reminder.title}' at {start} ({status.value})")
        return reminder

    async def update_reminder(self, reminder: Reminder) -> DeliveryStatus:
        """Save edits and re-register the reminder's alert."""
        reminder.fire_at = floor_to_minute(localize(reminder.fire_at))
        reminder.anchor_at = localize(reminder.anchor_at)
        self._store.update(reminder)
        return await self._coordinator.on_reminder_created_or_updated(reminder)

    async def complete_reminder(self, reminder_id: str) -> Reminder:
        """Mark a reminder done from the app.

        Raises:
            RecordNotFound: If the reminder no longer exists
        """
        return await self._router.complete(self._store.require(reminder_id))

    async def snooze_reminder(self, reminder_id: str, minutes: Optional[int] = None) -> Reminder:
        """Snooze a reminder from the app.

        Raises:
            RecordNotFound: If the reminder no longer exists
        """
        return await self._router.snooze(self._store.require(reminder_id), minutes)

    async def delete_reminder(self, reminder_id: str) -> bool:
        """Delete a reminder (and its series children, for a series parent).

        Returns:
            False if a pending alert couldn't be cancelled; the records are
            kept and the deletion is retried at next launch
        """
        try:
            deleted = await self._coordinator.on_reminder_deleted(reminder_id)
        except CancellationFailed as e:
            logger.warning(f"Delete of {reminder_id} deferred: {e}")
            return False
        for rid in deleted:
            self._router.forget(rid)
        return True

    def delivery_status(self, reminder_id: str) -> DeliveryStatus:
        return self._coordinator.delivery_status(reminder_id)

    # -------------------------------------------------------------------------
    # Series helpers
    # -------------------------------------------------------------------------

    async def add_occurrence(self, series_id: str, at: datetime) -> Optional[Reminder]:
        """Add a one-off occurrence to a series.

        Returns:
            The new occurrence, or None if the series already has one at that time

        Raises:
            RecordNotFound: If the series no longer exists
        """
        series = self._store.require(series_id)
        at = floor_to_minute(localize(at))
        if any(member.fire_at == at for member in self.related_reminders(series_id)):
            logger.debug(f"Series {series.series_id} already has an occurrence at {at}")
            return None
        return await self.create_reminder(series.title, at, parent_reminder_id=series.series_id)

    def related_reminders(self, reminder_id: str) -> list[Reminder]:
        """Every reminder in the same series, soonest first."""
        reminder = self._store.fetch_by_id(reminder_id)
        if reminder is None:
            return []
        series_id = reminder.series_id
        return self._store.query(lambda r: r.id == series_id or r.parent_reminder_id == series_id)

    async def remove_future_occurrences(self, reminder_id: str) -> int:
        """Delete the series' generated occurrences that come after this reminder.

        Returns:
            Count of occurrences removed
        """
        reminder = self._store.require(reminder_id)
        future = [
            r for r in self._store.children_of(reminder.series_id)
            if r.id != reminder.id and r.fire_at > reminder.fire_at
        ]
        removed = 0
        for occurrence in future:
            if await self.delete_reminder(occurrence.id):
                removed += 1
        return removed

    def upcoming(self, reminder_id: str, limit: int = 5) -> list[datetime]:
        """Preview the next occurrences of a reminder, starting with fire_at."""
        reminder = self._store.require(reminder_id)
        if reminder.is_completed or limit < 1:
            return []
        return [reminder.fire_at] + upcoming_occurrences(
            reminder.repeat_rule, reminder.fire_at, reminder.anchor_at, limit - 1
        )
