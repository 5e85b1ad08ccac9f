"""Reminder engine error taxonomy.

None of these should ever crash the process. Permission and scheduling
failures degrade to "reminder exists but will not notify".
"""


class ReminderError(Exception):
    """Base class for reminder engine errors."""


class PermissionDenied(ReminderError):
    """The user has not allowed notifications."""


class SchedulingFailed(ReminderError):
    """The dispatcher rejected a registration (quota, bad trigger, ...)."""


class CancellationFailed(ReminderError):
    """The dispatcher could not cancel a pending delivery.

    Blocks deletion of the record the delivery belongs to.
    """


class RecordNotFound(ReminderError):
    """A reminder id no longer exists in the store."""

    def __init__(self, reminder_id: str):
        super().__init__(f"Reminder not found: {reminder_id}")
        self.reminder_id = reminder_id
