"""Reminder data model and dispatcher payload."""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, time
from enum import Enum
from typing import Optional

import config


class RepeatFrequency(Enum):
    """How often a reminder repeats."""
    NONE = "none"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"
    CUSTOM = "custom"


@dataclass(frozen=True)
class RepeatRule:
    """Repeat rule attached to a reminder.

    interval: every N units (daily/weekly/monthly/yearly only)
    dates: the calendar dates of a CUSTOM rule
    time_of_day: fire time for CUSTOM dates (config default when unset)
    """
    frequency: RepeatFrequency = RepeatFrequency.NONE
    interval: int = 1
    dates: frozenset = frozenset()
    time_of_day: Optional[time] = None

    @classmethod
    def none(cls) -> "RepeatRule":
        return cls()

    @classmethod
    def every(cls, frequency: RepeatFrequency, interval: int = 1) -> "RepeatRule":
        return cls(frequency=frequency, interval=interval)

    @classmethod
    def custom(cls, dates, time_of_day: Optional[time] = None) -> "RepeatRule":
        days = frozenset(d.date() if isinstance(d, datetime) else d for d in dates)
        return cls(frequency=RepeatFrequency.CUSTOM, dates=days, time_of_day=time_of_day)

    @property
    def repeats(self) -> bool:
        return self.frequency != RepeatFrequency.NONE


def localize(dt: Optional[datetime]) -> Optional[datetime]:
    """Put a naive timestamp on the local calendar. Aware timestamps pass through."""
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=config.TIMEZONE)
    return dt


def new_reminder_id() -> str:
    """Generate an opaque, stable reminder id."""
    return uuid.uuid4().hex


@dataclass
class Reminder:
    """A stored reminder.

    fire_at is the next occurrence (or the only one, for non-repeating
    reminders). anchor_at is the first occurrence of the series; repeating
    occurrences are always computed from it.
    """
    title: str
    fire_at: datetime
    repeat_rule: RepeatRule = field(default_factory=RepeatRule)
    is_completed: bool = False
    parent_reminder_id: Optional[str] = None
    id: str = field(default_factory=new_reminder_id)
    anchor_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    def __post_init__(self):
        self.fire_at = localize(self.fire_at)
        self.anchor_at = localize(self.anchor_at) if self.anchor_at is not None else self.fire_at
        self.created_at = localize(self.created_at)

    @property
    def repeats(self) -> bool:
        return self.repeat_rule.repeats

    @property
    def is_series_parent(self) -> bool:
        return self.repeats and self.parent_reminder_id is None

    @property
    def series_id(self) -> str:
        """Id shared by every member of this reminder's series."""
        return self.parent_reminder_id or self.id

    def copy(self, **changes) -> "Reminder":
        return replace(self, **changes)


@dataclass(frozen=True)
class NotificationPayload:
    """Payload carried through the dispatcher.

    Wire shape: {"reminderID": str, "isTest": bool}
    """
    reminder_id: str
    is_test: bool = False

    def to_dict(self) -> dict:
        return {"reminderID": self.reminder_id, "isTest": self.is_test}

    @classmethod
    def from_dict(cls, data: dict) -> "NotificationPayload":
        return cls(
            reminder_id=str(data.get("reminderID", "")),
            is_test=data.get("isTest") is True,
        )


@dataclass(frozen=True)
class ScheduledEntry:
    """One pending dispatcher registration."""
    reminder_id: str
    scheduled_at: datetime
    payload: NotificationPayload


class PermissionStatus(Enum):
    """Answer to a notification permission request."""
    GRANTED = "granted"
    DENIED = "denied"
    NOT_DETERMINED = "not_determined"


class DeliveryStatus(Enum):
    """Whether a reminder will actually notify. Shown as a status indicator."""
    SCHEDULED = "scheduled"
    NOT_SCHEDULED = "not_scheduled"  # No future occurrence
    AWAITING_PERMISSION = "awaiting_permission"
    PERMISSION_DENIED = "permission_denied"
    FAILED = "failed"


class ActionKind(Enum):
    """User interaction with a delivered notification."""
    OPEN = "open"
    COMPLETE = "complete"
    SNOOZE = "snooze"
    DISMISS = "dismiss"


@dataclass(frozen=True)
class BannerEntry:
    """An in-app banner currently (or previously) on screen."""
    reminder_id: str
    title: str
    fire_at: datetime
    shown_at: datetime
