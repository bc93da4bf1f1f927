"""Standalone reminder records.

A standalone reminder is a ``reminders`` entity with status ``pending`` until
the reminder pass delivers it. Recurring reminders carry a ``recurrence``
mapping (frequency, interval, end_date); the pass creates the next pending
record after each delivery.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from crm_reminders.config import TZ
from crm_reminders.engine.timeutil import is_recurrence_frequency, resolve

if TYPE_CHECKING:
    from crm_reminders.storage import EntityStore, Record

COLLECTION = "reminders"

log = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Reminder:
    id: str
    target_name: str
    reminder_date: str  # ISO datetime; zone-less values are home-timezone wall clock
    message: str = ""
    status: str = "pending"
    created_by: str | None = None
    client_name: str | None = None
    email_recipients: list[str] = field(default_factory=list)
    additional_emails: list[str] = field(default_factory=list)
    whatsapp_recipients: list[str] = field(default_factory=list)
    sms_recipients: list[str] = field(default_factory=list)
    notify_email: bool = True
    notify_whatsapp: bool = False
    notify_sms: bool = False
    notify_popup: bool = False
    ringtone: str = "ding"
    recurrence: dict[str, Any] | None = None

    def __post_init__(self) -> None:
        if not self.recurrence or not self.recurrence.get("enabled"):
            return
        if not is_recurrence_frequency(self.recurrence.get("frequency")):
            raise ValueError(f"Unknown recurrence frequency: {self.recurrence.get('frequency')!r}")
        interval = self.recurrence.get("interval")
        if interval is not None and int(interval) < 1:
            raise ValueError("Recurrence interval must be >= 1")

    @staticmethod
    def new(
        target_name: str,
        *,
        at: str | None = None,
        delay_minutes: int | None = None,
        message: str = "",
        created_by: str | None = None,
        client_name: str | None = None,
        email_recipients: list[str] | None = None,
        whatsapp_recipients: list[str] | None = None,
        sms_recipients: list[str] | None = None,
        notify_email: bool = True,
        notify_whatsapp: bool = False,
        notify_sms: bool = False,
        notify_popup: bool = False,
        ringtone: str = "ding",
        repeat: str | None = None,
        interval: int = 1,
        until: str | None = None,
    ) -> Reminder:
        """Exactly one of at / delay_minutes sets the reminder time."""
        if (at is None) == (delay_minutes is None):
            raise ValueError("Specify exactly one of at or delay_minutes")
        if at is not None:
            resolve(at, TZ)  # reject unparseable input up front
            reminder_date = at
        else:
            assert delay_minutes is not None
            reminder_date = (datetime.now(TZ) + timedelta(minutes=delay_minutes)).isoformat()
        recurrence = (
            {"enabled": True, "frequency": repeat, "interval": interval, "end_date": until}
            if repeat
            else None
        )
        return Reminder(
            id=uuid4().hex[:8],
            target_name=target_name,
            reminder_date=reminder_date,
            message=message,
            created_by=created_by,
            client_name=client_name,
            email_recipients=email_recipients or [],
            whatsapp_recipients=whatsapp_recipients or [],
            sms_recipients=sms_recipients or [],
            notify_email=notify_email,
            notify_whatsapp=notify_whatsapp,
            notify_sms=notify_sms,
            notify_popup=notify_popup,
            ringtone=ringtone,
            recurrence=recurrence,
        )

    @staticmethod
    def from_record(record: Record) -> Reminder:
        """Known fields only; bookkeeping fields like sent flags are ignored."""
        names = {f.name for f in dataclasses.fields(Reminder)}
        data = {k: v for k, v in record.items() if k in names}
        data["id"] = str(record["id"])
        data["reminder_date"] = str(record.get("reminder_date") or "")
        data.setdefault("target_name", "")
        return Reminder(**data)


def append_reminder(store: EntityStore, reminder: Reminder) -> None:
    store.create(COLLECTION, asdict(reminder))


def list_reminders(store: EntityStore, status: str | None = None) -> list[Reminder]:
    records = store.filter(COLLECTION, status=status) if status else store.list(COLLECTION)
    result: list[Reminder] = []
    for record in records:
        try:
            result.append(Reminder.from_record(record))
        except (ValueError, TypeError, KeyError):
            log.warning("Skipping malformed reminder: %s", record.get("id"))
    return result


def remove_reminder(store: EntityStore, reminder_id: str) -> bool:
    return store.delete(COLLECTION, reminder_id)
