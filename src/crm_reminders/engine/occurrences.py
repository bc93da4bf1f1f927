"""Uniform reminder occurrence model shared by every engine stage.

Standalone reminders, legacy task fields, and the reminder lists embedded in
tasks and meetings are all converted into ``ReminderOccurrence`` by the
source aggregator; nothing downstream looks at raw entity shapes again.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, time
from typing import Literal
from zoneinfo import ZoneInfo

from crm_reminders.config import (
    BUSINESS_NAME,
    IO_TIMEOUT_SECONDS,
    MAX_CONCURRENCY,
    TZ,
)
from crm_reminders.engine.timeutil import DEFAULT_REFERENCE_TIME

Channel = Literal["email", "chat", "sms", "popup"]
SourceKind = Literal["standalone", "task_legacy", "task_list", "meeting_list"]

REMOTE_CHANNELS: tuple[Channel, ...] = ("email", "chat", "sms")
CHANNELS: tuple[Channel, ...] = (*REMOTE_CHANNELS, "popup")

# Persisted field names per channel: (requested flag, sent flag, recipient list).
# The chat channel is stored under the whatsapp prefix.
CHANNEL_FIELDS: dict[Channel, tuple[str, str, str | None]] = {
    "email": ("notify_email", "email_sent", "email_recipients"),
    "chat": ("notify_whatsapp", "whatsapp_sent", "whatsapp_recipients"),
    "sms": ("notify_sms", "sms_sent", "sms_recipients"),
    "popup": ("notify_popup", "popup_shown", None),
}

COLLECTIONS: dict[SourceKind, str] = {
    "standalone": "reminders",
    "task_legacy": "tasks",
    "task_list": "tasks",
    "meeting_list": "meetings",
}

# Popup/result "type" as the app's UI knows it.
ENTITY_TYPES: dict[SourceKind, str] = {
    "standalone": "reminder",
    "task_legacy": "task",
    "task_list": "task",
    "meeting_list": "meeting",
}

LOOKAHEAD_HOURS = 24


@dataclass(frozen=True, slots=True)
class EngineSettings:
    tz: ZoneInfo = TZ
    lookahead_hours: int = LOOKAHEAD_HOURS
    io_timeout: float = IO_TIMEOUT_SECONDS
    max_concurrency: int = MAX_CONCURRENCY
    reference_time: time = DEFAULT_REFERENCE_TIME
    business_name: str = BUSINESS_NAME


@dataclass(frozen=True, slots=True)
class ChannelRequirement:
    requested: bool = False
    already_sent: bool = False

    @property
    def outstanding(self) -> bool:
        return self.requested and not self.already_sent


@dataclass(frozen=True, slots=True)
class Recurrence:
    frequency: str  # daily | weekly | monthly | yearly
    interval: int = 1
    end_date: str | None = None


@dataclass(frozen=True, slots=True)
class ReminderOccurrence:
    source_kind: SourceKind
    entity_id: str
    due_instant: datetime  # aware, UTC
    target_label: str
    message: str = ""
    channels: dict[Channel, ChannelRequirement] = field(default_factory=dict)
    recipients: dict[Channel, tuple[str, ...]] = field(default_factory=dict)
    creator: str | None = None
    additional_emails: tuple[str, ...] = ()
    occurrence_index: int | None = None
    entry_id: str | None = None  # embedded entry's own id, when it has one
    recurrence: Recurrence | None = None
    client_name: str | None = None
    ringtone: str = "ding"

    @property
    def collection(self) -> str:
        return COLLECTIONS[self.source_kind]

    @property
    def entity_type(self) -> str:
        return ENTITY_TYPES[self.source_kind]

    @property
    def key(self) -> str:
        """Popup identity: entity id, plus the list position for embedded entries."""
        if self.occurrence_index is None:
            return self.entity_id
        return f"{self.entity_id}_{self.occurrence_index}"

    def requirement(self, channel: Channel) -> ChannelRequirement:
        return self.channels.get(channel, ChannelRequirement())

    def outstanding(self, channel: Channel) -> bool:
        return self.requirement(channel).outstanding

    @property
    def remote_outstanding(self) -> bool:
        return any(self.outstanding(ch) for ch in REMOTE_CHANNELS)

    @property
    def popup_outstanding(self) -> bool:
        return self.outstanding("popup")

    @property
    def fully_resolved(self) -> bool:
        return not self.remote_outstanding and not self.popup_outstanding
