"""Reminder scheduling and delivery-deduplication engine.

Reminders fire once or on a repeat rule. Alerts are registered with a
notification dispatcher (APScheduler by default) and every due occurrence is
seen exactly once: as an in-app banner while active, as a system alert
otherwise.
"""

from .models import (
    ActionKind,
    BannerEntry,
    DeliveryStatus,
    NotificationPayload,
    PermissionStatus,
    Reminder,
    RepeatFrequency,
    RepeatRule,
    ScheduledEntry,
    localize,
)
from .errors import (
    CancellationFailed,
    PermissionDenied,
    RecordNotFound,
    ReminderError,
    SchedulingFailed,
)
from .expander import floor_to_minute, next_occurrence, upcoming_occurrences
from .store import ReminderStore
from .dispatcher import NotificationDispatcher, SchedulerDispatcher
from .coordinator import ReconcileReport, SchedulingCoordinator
from .banners import BannerQueue
from .router import DeliveryRouter, OccurrenceState
from .service import ReminderService
from .app import ReminderApp

__all__ = [
    "ActionKind",
    "BannerEntry",
    "DeliveryStatus",
    "NotificationPayload",
    "PermissionStatus",
    "Reminder",
    "RepeatFrequency",
    "RepeatRule",
    "ScheduledEntry",
    "localize",
    "CancellationFailed",
    "PermissionDenied",
    "RecordNotFound",
    "ReminderError",
    "SchedulingFailed",
    "floor_to_minute",
    "next_occurrence",
    "upcoming_occurrences",
    "ReminderStore",
    "NotificationDispatcher",
    "SchedulerDispatcher",
    "ReconcileReport",
    "SchedulingCoordinator",
    "BannerQueue",
    "DeliveryRouter",
    "OccurrenceState",
    "ReminderService",
    "ReminderApp",
]
