"""In-app banner queue.

Shows "reminder is due" banners while the app is active. Every banner ever
shown this session leaves a shown record behind, so a redelivered alert for
the same occurrence is never displayed twice. A later occurrence of the same
repeating reminder is a new occurrence and may be shown again.

The shown records live as long as the queue, i.e. one app session.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

import config
from logger import logger
from .models import BannerEntry
from .store import ReminderStore

BannerListener = Callable[[list[BannerEntry]], None]


@dataclass
class ShownRecord:
    """When a reminder was last surfaced, and for which occurrence."""
    shown_at: datetime
    fire_at: datetime


class BannerQueue:
    """Deduplicated FIFO of visible banners."""

    def __init__(
        self,
        store: ReminderStore,
        clock: Optional[Callable[[], datetime]] = None,
        display_seconds: Optional[int] = None
    ):
        self._store = store
        self._clock = clock or (lambda: datetime.now(config.TIMEZONE))
        self.display_seconds = display_seconds or config.BANNER_DISPLAY_SECONDS

        self._visible: list[BannerEntry] = []
        self._shown: dict[str, ShownRecord] = {}
        self._listeners: list[BannerListener] = []

    @property
    def visible(self) -> list[BannerEntry]:
        """Banners on screen, oldest first."""
        return list(self._visible)

    def was_shown(self, reminder_id: str) -> bool:
        return reminder_id in self._shown

    def subscribe(self, listener: BannerListener) -> None:
        """Call `listener` with the visible list whenever it changes."""
        self._listeners.append(listener)

    def add_if_not_shown(self, reminder_id: str, title: str, fire_at: datetime) -> bool:
        """Safely enqueue a banner.

        Rejected silently when the reminder is gone or completed, the
        occurrence is not due yet, the reminder is already on screen, or this
        occurrence was already shown this session.

        Returns:
            True if a banner was enqueued
        """
        reminder = self._store.fetch_by_id(reminder_id)
        if reminder is None or reminder.is_completed:
            logger.debug(f"Banner for {reminder_id} skipped: reminder missing or completed")
            return False

        now = self._clock()
        if fire_at > now:
            logger.debug(f"Banner for {reminder_id} skipped: occurrence {fire_at} not due yet")
            return False

        if any(entry.reminder_id == reminder_id for entry in self._visible):
            logger.debug(f"Banner for {reminder_id} skipped: already visible")
            return False

        record = self._shown.get(reminder_id)
        if record is not None and record.fire_at >= fire_at:
            logger.debug(f"Banner for {reminder_id} skipped: occurrence {fire_at} already shown")
            return False

        self._visible.append(BannerEntry(reminder_id, title, fire_at, shown_at=now))
        self._shown[reminder_id] = ShownRecord(shown_at=now, fire_at=fire_at)
        logger.info(f"Showing banner for {reminder_id}: '{title}'")
        self._notify()
        return True

    def dismiss(self, reminder_id: str) -> bool:
        """Remove a banner from screen. Its shown record is kept."""
        before = len(self._visible)
        self._visible = [e for e in self._visible if e.reminder_id != reminder_id]
        if len(self._visible) == before:
            return False
        self._notify()
        return True

    def dismiss_all(self) -> None:
        if not self._visible:
            return
        self._visible.clear()
        self._notify()

    def expire(self, now: Optional[datetime] = None) -> int:
        """Dismiss banners that have been on screen past the display timeout.

        Returns:
            Count of banners dismissed
        """
        now = now or self._clock()
        cutoff = now - timedelta(seconds=self.display_seconds)
        kept = [e for e in self._visible if e.shown_at > cutoff]
        expired = len(self._visible) - len(kept)
        if expired:
            self._visible = kept
            self._notify()
        return expired

    def prune(self, now: Optional[datetime] = None) -> int:
        """Drop shown records for reminders that are gone, completed or stale."""
        now = now or self._clock()
        cutoff = now - timedelta(hours=config.BANNER_SHOWN_RETENTION_HOURS)
        removed = 0
        for reminder_id in list(self._shown):
            reminder = self._store.fetch_by_id(reminder_id)
            if reminder is None or reminder.is_completed or reminder.fire_at <= cutoff:
                del self._shown[reminder_id]
                removed += 1
        return removed

    def _notify(self) -> None:
        snapshot = self.visible
        for listener in self._listeners:
            listener(snapshot)
