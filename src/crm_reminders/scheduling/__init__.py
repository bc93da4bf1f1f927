"""Scheduling: standalone reminders and the APScheduler integration."""

from crm_reminders.scheduling.reminders import (
    Reminder,
    append_reminder,
    list_reminders,
    remove_reminder,
)
from crm_reminders.scheduling.scheduler import setup_scheduler

__all__ = [
    "Reminder",
    "append_reminder",
    "list_reminders",
    "remove_reminder",
    "setup_scheduler",
]
