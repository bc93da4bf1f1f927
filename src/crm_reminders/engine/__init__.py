"""Due-reminder resolution and multi-channel dispatch."""

from crm_reminders.engine.dispatch import ChannelDispatcher, ChannelOutcome
from crm_reminders.engine.occurrences import EngineSettings, ReminderOccurrence
from crm_reminders.engine.report import RunReport
from crm_reminders.engine.runner import (
    PopupAckError,
    acknowledge_popup,
    check_reminders,
)

__all__ = [
    "ChannelDispatcher",
    "ChannelOutcome",
    "EngineSettings",
    "PopupAckError",
    "ReminderOccurrence",
    "RunReport",
    "acknowledge_popup",
    "check_reminders",
]
