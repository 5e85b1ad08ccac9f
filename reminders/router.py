"""Route dispatcher deliveries and user interactions.

Per-occurrence state machine:
- PENDING → DELIVERED: the dispatcher fired the alert
- DELIVERED → RESCHEDULED: a repeating series moved on to its next occurrence
- DELIVERED → COMPLETED: the user marked the reminder done
- PENDING/RESCHEDULED → COMPLETED: completed from a notification action or the app

Foreground deliveries become in-app banners; background deliveries bump
the badge and leave the system alert alone. Test notifications bypass
routing entirely.
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

import config
from logger import logger
from .banners import BannerQueue
from .coordinator import SchedulingCoordinator
from .dispatcher import NotificationDispatcher
from .errors import RecordNotFound
from .expander import floor_to_minute, next_occurrence
from .models import ActionKind, NotificationPayload, Reminder, RepeatRule
from .store import ReminderStore

BadgeListener = Callable[[int], None]


class OccurrenceState(Enum):
    """Lifecycle of one occurrence."""
    PENDING = "pending"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    RESCHEDULED = "rescheduled"


_TRANSITIONS = {
    OccurrenceState.PENDING: {OccurrenceState.DELIVERED, OccurrenceState.COMPLETED},
    OccurrenceState.DELIVERED: {OccurrenceState.COMPLETED, OccurrenceState.RESCHEDULED},
    OccurrenceState.RESCHEDULED: {OccurrenceState.DELIVERED, OccurrenceState.COMPLETED},
    OccurrenceState.COMPLETED: set(),
}


class DeliveryRouter:
    """Sole handler of dispatcher deliver/interact events."""

    def __init__(
        self,
        store: ReminderStore,
        coordinator: SchedulingCoordinator,
        banners: BannerQueue,
        dispatcher: NotificationDispatcher,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self._store = store
        self._coordinator = coordinator
        self._banners = banners
        self._dispatcher = dispatcher
        self._clock = clock or (lambda: datetime.now(config.TIMEZONE))

        self.badge_count = 0
        self._states: dict[str, OccurrenceState] = {}
        # Occurrence each reminder was last delivered for
        self._delivered_at: dict[str, datetime] = {}
        self._badge_listeners: list[BadgeListener] = []

    def attach(self) -> None:
        """Register as the dispatcher's delivery and interaction handler."""
        self._dispatcher.on_deliver(self.on_deliver)
        self._dispatcher.on_interact(self.on_interact)

    def subscribe_badge(self, listener: BadgeListener) -> None:
        """Call `listener` with the badge count whenever it changes."""
        self._badge_listeners.append(listener)

    def occurrence_state(self, reminder_id: str) -> OccurrenceState:
        state = self._states.get(reminder_id)
        if state is not None:
            return state
        reminder = self._store.fetch_by_id(reminder_id)
        if reminder is not None and reminder.is_completed:
            return OccurrenceState.COMPLETED
        return OccurrenceState.PENDING

    def forget(self, reminder_id: str) -> None:
        """Drop per-occurrence state for a reminder that is gone."""
        self._states.pop(reminder_id, None)
        self._delivered_at.pop(reminder_id, None)

    # -------------------------------------------------------------------------
    # Dispatcher events
    # -------------------------------------------------------------------------

    async def on_deliver(self, payload: NotificationPayload, foreground: bool) -> None:
        """An alert fired."""
        if payload.is_test:
            logger.info(f"Test notification {payload.reminder_id} delivered, presenting unchanged")
            return

        reminder = self._store.fetch_by_id(payload.reminder_id)
        if reminder is None or reminder.is_completed:
            self._coordinator.mark_delivered(payload.reminder_id)
            logger.debug(f"Delivery for {payload.reminder_id} ignored: reminder missing or completed")
            return
        if reminder.fire_at > self._clock():
            # Redelivered alert for an occurrence the series already moved past
            logger.debug(f"Delivery for {reminder.id} ignored: next occurrence is {reminder.fire_at}")
            return
        self._coordinator.mark_delivered(reminder.id)
        self._delivered_at[reminder.id] = reminder.fire_at

        self._transition(reminder.id, OccurrenceState.DELIVERED)

        if foreground:
            self._banners.add_if_not_shown(reminder.id, reminder.title, reminder.fire_at)
        else:
            await self._set_badge(self.badge_count + 1)

        if reminder.repeats:
            try:
                await self._advance_series(reminder)
            except RecordNotFound:
                logger.debug(f"Series {reminder.id} deleted while advancing after delivery")
                self.forget(reminder.id)
                return
            self._transition(reminder.id, OccurrenceState.RESCHEDULED)

    async def on_interact(self, payload: NotificationPayload, action: ActionKind) -> None:
        """The user acted on a delivered alert."""
        if payload.is_test:
            return

        reminder = self._store.fetch_by_id(payload.reminder_id)
        if reminder is None or reminder.is_completed:
            logger.debug(f"Interaction {action.value} for {payload.reminder_id} ignored: reminder missing or completed")
            return

        # After a series advanced, fire_at already points at the next occurrence
        delivered_at = self._delivered_at.get(reminder.id, reminder.fire_at)
        try:
            if action == ActionKind.COMPLETE:
                await self.complete(reminder)
            elif action == ActionKind.SNOOZE:
                await self.snooze(reminder)
        except RecordNotFound:
            logger.debug(f"Reminder {payload.reminder_id} deleted while handling {action.value}")
            return

        self._banners.add_if_not_shown(reminder.id, reminder.title, delivered_at)

    # -------------------------------------------------------------------------
    # Reminder state changes
    # -------------------------------------------------------------------------

    async def complete(self, reminder: Reminder) -> Reminder:
        """Mark a reminder done.

        Non-repeating reminders are completed for good. Repeating reminders
        stay active and move on to their next occurrence.
        """
        self._banners.dismiss(reminder.id)

        if reminder.repeats:
            await self._advance_series(reminder)
        else:
            reminder.is_completed = True
            self._store.update(reminder)
            await self._coordinator.on_reminder_created_or_updated(reminder)

        self._transition(reminder.id, OccurrenceState.COMPLETED)
        self.forget(reminder.id)
        logger.info(f"Completed reminder {reminder.id} '{reminder.title}'")
        await self.recompute_badge()
        return reminder

    async def snooze(self, reminder: Reminder, minutes: Optional[int] = None) -> Reminder:
        """Push a reminder back by the snooze interval.

        Returns:
            The reminder that will fire after the snooze (a one-off spin-off
            for repeating series)
        """
        minutes = minutes or config.SNOOZE_MINUTES
        snooze_at = floor_to_minute(self._clock()) + timedelta(minutes=minutes)
        self._banners.dismiss(reminder.id)

        if not reminder.repeats:
            reminder.fire_at = snooze_at
            reminder.anchor_at = snooze_at
            self._store.update(reminder)
            await self._coordinator.on_reminder_created_or_updated(reminder)
            self.forget(reminder.id)
            logger.info(f"Snoozed reminder {reminder.id} until {snooze_at}")
            return reminder

        spin_off = Reminder(
            title=f"{reminder.title} (Snoozed)",
            fire_at=snooze_at,
            repeat_rule=RepeatRule.none(),
            parent_reminder_id=reminder.series_id,
        )
        self._store.insert(spin_off)
        await self._coordinator.on_reminder_created_or_updated(spin_off)
        await self._advance_series(reminder)
        logger.info(f"Snoozed series {reminder.id} as {spin_off.id} until {snooze_at}")
        return spin_off

    async def _advance_series(self, reminder: Reminder) -> None:
        """Move a repeating reminder past now and re-register it."""
        nxt = next_occurrence(reminder.repeat_rule, self._clock(), reminder.anchor_at)
        if nxt is None:
            # Custom dates exhausted
            reminder.is_completed = True
            logger.info(f"Series {reminder.id} has no further occurrences, completing")
        else:
            reminder.fire_at = nxt
        self._store.update(reminder)
        await self._coordinator.on_reminder_created_or_updated(reminder)

    def _transition(self, reminder_id: str, new_state: OccurrenceState) -> None:
        old_state = self._states.get(reminder_id, OccurrenceState.PENDING)
        if new_state not in _TRANSITIONS[old_state]:
            logger.warning(f"Reminder {reminder_id}: ignoring {old_state.value} → {new_state.value}")
            return
        self._states[reminder_id] = new_state
        logger.debug(f"Reminder {reminder_id}: {old_state.value} → {new_state.value}")

    # -------------------------------------------------------------------------
    # Badge and activation
    # -------------------------------------------------------------------------

    async def recompute_badge(self) -> int:
        """Badge = active reminders already due."""
        now = self._clock()
        due = self._store.query(lambda r: not r.is_completed and r.fire_at <= now)
        await self._set_badge(len(due))
        return self.badge_count

    async def reset_badge(self) -> None:
        """App became active: zero the badge and clear delivered alerts."""
        await self._set_badge(0)
        await self._dispatcher.clear_delivered()

    def catch_up_past_due(self) -> int:
        """Surface reminders that fell due shortly before the app became active.

        Returns:
            Count of banners enqueued
        """
        now = self._clock()
        window_start = now - timedelta(minutes=config.CATCH_UP_WINDOW_MINUTES)
        due = self._store.query(
            lambda r: not r.is_completed and window_start <= r.fire_at <= now
        )
        shown = sum(1 for r in due if self._banners.add_if_not_shown(r.id, r.title, r.fire_at))
        self._banners.prune(now)
        if shown:
            logger.info(f"Caught up {shown} past-due reminder(s)")
        return shown

    async def _set_badge(self, count: int) -> None:
        if count == self.badge_count:
            return
        self.badge_count = count
        await self._dispatcher.set_badge_count(count)
        for listener in self._badge_listeners:
            listener(count)
