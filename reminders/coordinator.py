"""Keep dispatcher registrations in step with the reminder store.

Dispatcher state is a derived projection of the store and is never
authoritative: reconcile_on_launch rebuilds it, registering reminders that
lost their alert and cancelling alerts whose reminder is gone.

Ordering:
- every mutation for a reminder id runs under that id's lock, so a
  cancel-then-register sequence completes before the next one starts
- deletion holds the locks of the whole lineage (in id order) from the
  first cancel until the records are gone
- mutations wait for the launch gate, which reconcile_on_launch opens

Deletion is persisted before anything is cancelled. If a cancel fails the
records stay in the store's pending deletions and the next launch, in this
process or a later one, retries them.
"""

import asyncio
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

import config
from logger import logger
from .dispatcher import NotificationDispatcher
from .errors import CancellationFailed, PermissionDenied, SchedulingFailed
from .expander import next_occurrence
from .models import (
    DeliveryStatus,
    NotificationPayload,
    PermissionStatus,
    Reminder,
    ScheduledEntry,
)
from .store import ReminderStore

_WAITING_FOR_PERMISSION = (DeliveryStatus.AWAITING_PERMISSION, DeliveryStatus.PERMISSION_DENIED)


@dataclass
class ReconcileReport:
    """Outcome of a launch reconciliation."""
    registered: int = 0
    adopted: int = 0
    orphans_cancelled: int = 0
    failed: int = 0
    deletions_retried: list[str] = field(default_factory=list)


class SchedulingCoordinator:
    """Owns the mapping from reminders to pending dispatcher entries."""

    def __init__(
        self,
        store: ReminderStore,
        dispatcher: NotificationDispatcher,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self._store = store
        self._dispatcher = dispatcher
        self._clock = clock or (lambda: datetime.now(config.TIMEZONE))
        self.permission = PermissionStatus.NOT_DETERMINED

        self._entries: dict[str, ScheduledEntry] = {}
        self._status: dict[str, DeliveryStatus] = {}
        # Locks exist only while someone holds or waits for them
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._ready = asyncio.Event()

    @property
    def is_ready(self) -> bool:
        return self._ready.is_set()

    def pending_entries(self) -> dict[str, ScheduledEntry]:
        """Entries currently registered with the dispatcher."""
        return dict(self._entries)

    def delivery_status(self, reminder_id: str) -> DeliveryStatus:
        """Status indicator for a reminder."""
        return self._status.get(reminder_id, DeliveryStatus.NOT_SCHEDULED)

    @property
    def deferred_deletions(self) -> set[str]:
        return self._store.deleting_ids()

    @asynccontextmanager
    async def _locked(self, reminder_id: str):
        lock = self._locks.get(reminder_id)
        if lock is None:
            lock = self._locks[reminder_id] = asyncio.Lock()
        self._lock_users[reminder_id] = self._lock_users.get(reminder_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[reminder_id] -= 1
            if not self._lock_users[reminder_id]:
                del self._lock_users[reminder_id]
                del self._locks[reminder_id]

    async def refresh_permission(self) -> PermissionStatus:
        """Ask the dispatcher for notification permission.

        A prompt that never answers times out to NOT_DETERMINED. When
        permission is granted after launch, reminders that were waiting for
        it are registered straight away.
        """
        previous = self.permission
        try:
            self.permission = await asyncio.wait_for(
                self._dispatcher.request_permission(),
                timeout=config.PERMISSION_TIMEOUT_SECONDS
            )
        except asyncio.TimeoutError:
            logger.warning("Permission request timed out, treating as not determined")
            self.permission = PermissionStatus.NOT_DETERMINED

        logger.info(f"Notification permission: {self.permission.value}")
        if self.is_ready and previous != PermissionStatus.GRANTED and self.permission == PermissionStatus.GRANTED:
            await self._register_waiting()
        return self.permission

    async def on_reminder_created_or_updated(self, reminder: Reminder) -> DeliveryStatus:
        """Upsert the single dispatcher entry for a reminder.

        Returns:
            The reminder's delivery status after the upsert
        """
        await self._ready.wait()
        async with self._locked(reminder.id):
            return await self._upsert_locked(reminder)

    async def on_reminder_deleted(self, reminder_id: str) -> list[str]:
        """Cancel a reminder's entry (and its series' entries), then delete the records.

        Cancellation happens first; if any cancel fails nothing is deleted and
        the deletion is retried at the next reconcile.

        Returns:
            Ids of the deleted records

        Raises:
            CancellationFailed: A pending alert could not be cancelled
        """
        await self._ready.wait()
        lineage = self._lineage(reminder_id)

        async with AsyncExitStack() as stack:
            for rid in sorted(lineage):
                await stack.enter_async_context(self._locked(rid))

            self._store.mark_deleting(lineage)
            for rid in lineage:
                try:
                    await self._cancel_locked(rid)
                except CancellationFailed:
                    logger.error(f"Deletion of {reminder_id} blocked: could not cancel alert {rid}")
                    raise

            deleted = [rid for rid in lineage if self._store.delete(rid)]
            for rid in lineage:
                self._status.pop(rid, None)

        logger.info(f"Deleted reminder {reminder_id} ({len(deleted)} record(s) in lineage)")
        return deleted

    def mark_delivered(self, reminder_id: str) -> Optional[ScheduledEntry]:
        """Forget the entry consumed by a delivery."""
        entry = self._entries.pop(reminder_id, None)
        if entry is not None:
            self._status.pop(reminder_id, None)
        return entry

    async def reconcile_on_launch(self) -> ReconcileReport:
        """Rebuild dispatcher state from the store. Opens the launch gate."""
        report = ReconcileReport()
        try:
            for reminder_id in sorted(self._store.deleting_ids()):
                await self._retry_deletion(reminder_id, report)
            still_deleting = self._store.deleting_ids()

            active = {r.id: r for r in self._store.fetch_all() if not r.is_completed}
            pending = await self._dispatcher.list_pending()

            for orphan_id in sorted(pending - active.keys() - still_deleting):
                async with self._locked(orphan_id):
                    try:
                        await self._cancel_locked(orphan_id)
                        report.orphans_cancelled += 1
                    except CancellationFailed as e:
                        logger.warning(f"Could not cancel orphaned alert {orphan_id}: {e}")
                        report.failed += 1

            for reminder in active.values():
                async with self._locked(reminder.id):
                    if reminder.id in pending and self._adopt_locked(reminder):
                        report.adopted += 1
                        continue
                    status = await self._upsert_locked(reminder)
                    if status == DeliveryStatus.SCHEDULED:
                        report.registered += 1
                    elif status in (DeliveryStatus.FAILED, DeliveryStatus.PERMISSION_DENIED):
                        report.failed += 1
        finally:
            self._ready.set()

        logger.info(
            f"Reconciled on launch: {report.registered} registered, {report.adopted} adopted, "
            f"{report.orphans_cancelled} orphans cancelled, {report.failed} failed"
        )
        return report

    def _lineage(self, reminder_id: str) -> list[str]:
        """The reminder itself plus, for a series parent, its generated children."""
        reminder = self._store.fetch_by_id(reminder_id, include_deleting=True)
        lineage = [reminder_id]
        if reminder is None or reminder.is_series_parent:
            lineage.extend(
                child.id for child in self._store.children_of(reminder_id, include_deleting=True)
            )
        return lineage

    async def _retry_deletion(self, reminder_id: str, report: ReconcileReport) -> None:
        async with self._locked(reminder_id):
            try:
                await self._cancel_locked(reminder_id)
            except CancellationFailed as e:
                logger.warning(f"Deferred deletion of {reminder_id} still blocked: {e}")
                return
            self._store.delete(reminder_id)
            self._status.pop(reminder_id, None)
        report.deletions_retried.append(reminder_id)
        logger.info(f"Completed deferred deletion of {reminder_id}")

    async def _register_waiting(self) -> None:
        waiting = [rid for rid, status in self._status.items() if status in _WAITING_FOR_PERMISSION]
        for reminder_id in waiting:
            reminder = self._store.fetch_by_id(reminder_id)
            if reminder is None:
                self._status.pop(reminder_id, None)
                continue
            async with self._locked(reminder_id):
                await self._upsert_locked(reminder)
        if waiting:
            logger.info(f"Permission granted, registered {len(waiting)} waiting reminder(s)")

    def _adopt_locked(self, reminder: Reminder) -> bool:
        """Take over an alert that survived a restart, if it is still current."""
        occurrence = self._next_for(reminder)
        if occurrence is None or occurrence != reminder.fire_at:
            return False
        payload = NotificationPayload(reminder_id=reminder.id)
        self._entries[reminder.id] = ScheduledEntry(reminder.id, occurrence, payload)
        self._status[reminder.id] = DeliveryStatus.SCHEDULED
        return True

    def _next_for(self, reminder: Reminder) -> Optional[datetime]:
        if reminder.is_completed:
            return None
        now = self._clock()
        if not reminder.repeats:
            return next_occurrence(reminder.repeat_rule, now, reminder.fire_at)
        return next_occurrence(reminder.repeat_rule, now, reminder.anchor_at)

    async def _upsert_locked(self, reminder: Reminder) -> DeliveryStatus:
        try:
            await self._cancel_locked(reminder.id)
        except CancellationFailed as e:
            # Registering now could leave two alerts for one reminder
            logger.error(f"Not rescheduling {reminder.id}: {e}")
            return self._set_status(reminder.id, DeliveryStatus.FAILED)

        if self._store.fetch_by_id(reminder.id) is None:
            logger.debug(f"Reminder {reminder.id} deleted, not registering")
            return self._set_status(reminder.id, DeliveryStatus.NOT_SCHEDULED)

        occurrence = self._next_for(reminder)
        if occurrence is None:
            logger.debug(f"Reminder {reminder.id} has no future occurrence")
            return self._set_status(reminder.id, DeliveryStatus.NOT_SCHEDULED)

        if reminder.repeats and occurrence != reminder.fire_at:
            reminder.fire_at = occurrence
            self._store.update(reminder)
            logger.info(f"Rescheduled series {reminder.id} to {occurrence}")

        if self.permission == PermissionStatus.DENIED:
            logger.warning(f"Notifications denied, reminder {reminder.id} will not notify")
            return self._set_status(reminder.id, DeliveryStatus.PERMISSION_DENIED)
        if self.permission == PermissionStatus.NOT_DETERMINED:
            logger.info(f"Permission not decided yet, reminder {reminder.id} left unscheduled")
            return self._set_status(reminder.id, DeliveryStatus.AWAITING_PERMISSION)

        payload = NotificationPayload(reminder_id=reminder.id)
        try:
            await self._dispatcher.schedule(reminder.id, occurrence, payload)
        except PermissionDenied as e:
            self.permission = PermissionStatus.DENIED
            logger.warning(f"Dispatcher refused {reminder.id}: {e}")
            return self._set_status(reminder.id, DeliveryStatus.PERMISSION_DENIED)
        except SchedulingFailed as e:
            logger.error(f"Scheduling failed for {reminder.id}, will retry on next launch: {e}")
            return self._set_status(reminder.id, DeliveryStatus.FAILED)

        self._entries[reminder.id] = ScheduledEntry(reminder.id, occurrence, payload)
        logger.info(f"Scheduled reminder {reminder.id} '{reminder.title}' at {occurrence}")
        return self._set_status(reminder.id, DeliveryStatus.SCHEDULED)

    async def _cancel_locked(self, reminder_id: str) -> None:
        await self._dispatcher.cancel(reminder_id)
        self._entries.pop(reminder_id, None)

    def _set_status(self, reminder_id: str, status: DeliveryStatus) -> DeliveryStatus:
        if status == DeliveryStatus.NOT_SCHEDULED:
            # Default for unknown ids
            self._status.pop(reminder_id, None)
        else:
            self._status[reminder_id] = status
        return status
