"""Collect candidate reminder occurrences from the three entity sources.

Sources:
- standalone reminders with status ``pending``;
- tasks not ``completed``: the legacy single-reminder fields and the embedded
  ``reminders`` list are both evaluated;
- meetings ``scheduled`` or ``confirmed``: embedded ``reminders`` list only.

Each source read is independent; a failed read contributes an empty list and
a diagnostic entry, never an exception.
"""

from __future__ import annotations

import logging
import re
from datetime import date, datetime, timedelta
from typing import TYPE_CHECKING, Any

from crm_reminders.engine.io import bounded
from crm_reminders.engine.occurrences import (
    CHANNEL_FIELDS,
    CHANNELS,
    REMOTE_CHANNELS,
    Channel,
    ChannelRequirement,
    EngineSettings,
    Recurrence,
    ReminderOccurrence,
)
from crm_reminders.engine.timeutil import (
    TimestampError,
    is_recurrence_frequency,
    resolve,
    resolve_reference,
)

if TYPE_CHECKING:
    from crm_reminders.engine.report import RunReport
    from crm_reminders.storage import EntityStore, Record

log = logging.getLogger(__name__)

TASK_DONE_STATUS = "completed"
MEETING_ACTIVE_STATUSES = ("scheduled", "confirmed")

_LIST_SPLIT = re.compile(r"[,;]+")

# Conversion problems that make a single reminder unusable, not the run.
_ENTRY_ERRORS = (TimestampError, ValueError, TypeError, KeyError)


def _flag(record: dict[str, Any], name: str, default: bool = False) -> bool:
    value = record.get(name)
    return default if value is None else bool(value)


def _str_list(value: Any) -> tuple[str, ...]:
    if not value:
        return ()
    items = _LIST_SPLIT.split(value) if isinstance(value, str) else value
    if not isinstance(items, (list, tuple)):
        return ()
    return tuple(str(v).strip() for v in items if v is not None and str(v).strip())


def _timestamp(value: Any) -> str | datetime | date:
    if isinstance(value, (str, datetime, date)):
        return value
    raise TypeError(f"Unsupported timestamp value: {value!r}")


def _requirements(
    record: dict[str, Any], *, email_default: bool = False
) -> dict[Channel, ChannelRequirement]:
    result: dict[Channel, ChannelRequirement] = {}
    for channel in CHANNELS:
        requested, sent, _ = CHANNEL_FIELDS[channel]
        default = email_default if channel == "email" else False
        result[channel] = ChannelRequirement(
            requested=_flag(record, requested, default),
            already_sent=_flag(record, sent),
        )
    return result


def _recipients(*records: dict[str, Any]) -> dict[Channel, tuple[str, ...]]:
    """First non-empty list per channel, most specific record first."""
    result: dict[Channel, tuple[str, ...]] = {}
    for channel in REMOTE_CHANNELS:
        field_name = CHANNEL_FIELDS[channel][2]
        assert field_name is not None
        for record in records:
            values = _str_list(record.get(field_name))
            if values:
                result[channel] = values
                break
    return result


def _recurrence(record: Record) -> Recurrence | None:
    raw = record.get("recurrence")
    if not isinstance(raw, dict) or not raw.get("enabled"):
        return None
    frequency = raw.get("frequency")
    interval = raw.get("interval") or 1
    if not is_recurrence_frequency(frequency) or not isinstance(interval, int) or interval < 1:
        log.warning(
            "Ignoring invalid recurrence on reminder %s: %r", record.get("id"), raw
        )
        return None
    end = raw.get("end_date")
    if isinstance(end, (date, datetime)):
        end = end.isoformat()
    return Recurrence(frequency=frequency, interval=interval, end_date=end or None)


def standalone_occurrence(record: Record, settings: EngineSettings) -> ReminderOccurrence:
    return ReminderOccurrence(
        source_kind="standalone",
        entity_id=str(record["id"]),
        due_instant=resolve(_timestamp(record.get("reminder_date")), settings.tz),
        target_label=str(record.get("target_name") or record.get("title") or ""),
        message=str(record.get("message") or ""),
        channels=_requirements(record, email_default=True),
        recipients=_recipients(record),
        creator=record.get("created_by"),
        additional_emails=_str_list(record.get("additional_emails")),
        recurrence=_recurrence(record),
        client_name=record.get("client_name"),
        ringtone=str(record.get("ringtone") or "ding"),
    )


def legacy_task_occurrence(
    task: Record, settings: EngineSettings
) -> ReminderOccurrence | None:
    """Occurrence for the deprecated flat reminder fields, or None when inactive."""
    if not task.get("reminder_enabled") or task.get("reminder_sent"):
        return None
    if not task.get("reminder_at"):
        return None
    channels: dict[Channel, ChannelRequirement] = {
        "email": ChannelRequirement(requested=task.get("notify_email") is not False),
        "chat": ChannelRequirement(requested=_flag(task, "notify_whatsapp")),
        "sms": ChannelRequirement(requested=_flag(task, "notify_sms")),
    }
    title = str(task.get("title") or "")
    return ReminderOccurrence(
        source_kind="task_legacy",
        entity_id=str(task["id"]),
        due_instant=resolve(_timestamp(task["reminder_at"]), settings.tz),
        target_label=title,
        message=f"Task reminder: {title}",
        channels=channels,
        recipients=_recipients(task),
        creator=task.get("created_by"),
        client_name=task.get("client_name"),
        ringtone=str(task.get("reminder_ringtone") or "ding"),
    )


def entry_due_instant(
    entry: dict[str, Any], reference: Any, settings: EngineSettings
) -> datetime | None:
    """Explicit reminder_at wins; otherwise minutes_before the owner's reference date."""
    if entry.get("reminder_at"):
        return resolve(_timestamp(entry["reminder_at"]), settings.tz)
    minutes = entry.get("minutes_before")
    if minutes is None or not reference:
        return None
    anchor = resolve_reference(
        _timestamp(reference), settings.tz, default_time=settings.reference_time
    )
    return anchor - timedelta(minutes=int(minutes))


def entry_occurrences(
    owner: Record,
    kind: str,
    now: datetime,
    settings: EngineSettings,
    report: RunReport,
) -> list[ReminderOccurrence]:
    """Occurrences for a task's or meeting's embedded reminder list."""
    entries = owner.get("reminders")
    if not isinstance(entries, list):
        return []

    source_kind = "meeting_list" if kind == "meeting" else "task_list"
    reference = owner.get("meeting_date" if kind == "meeting" else "due_date")
    title = str(owner.get("title") or "")
    result: list[ReminderOccurrence] = []
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict) or entry.get("sent"):
            continue
        key = f"{owner['id']}_{index}"
        try:
            due = entry_due_instant(entry, reference, settings)
        except _ENTRY_ERRORS as e:
            log.warning("Bad reminder time on %s %s: %s", kind, key, e)
            report.skip(id=key, type=kind, title=title, reason=f"invalid reminder time: {e}")
            continue
        if due is None:
            report.skip(id=key, type=kind, title=title, reason="no reminder time")
            continue

        minutes = entry.get("minutes_before")
        default_message = f"Reminder for {kind}: {title}" + (
            f" ({minutes} minutes before)" if minutes is not None and not entry.get("reminder_at") else ""
        )
        occ = ReminderOccurrence(
            source_kind=source_kind,
            entity_id=str(owner["id"]),
            due_instant=due,
            target_label=title,
            message=str(entry.get("message") or default_message),
            channels=_requirements(entry),
            recipients=_recipients(entry, owner),
            creator=owner.get("created_by"),
            occurrence_index=index,
            entry_id=str(entry["id"]) if entry.get("id") is not None else None,
            client_name=owner.get("client_name"),
            ringtone=str(entry.get("ringtone") or "ding"),
        )
        # Remote channels all satisfied: only a due, unshown popup keeps it alive.
        if not occ.remote_outstanding and not (occ.popup_outstanding and due <= now):
            continue
        result.append(occ)
    return result


async def _read(
    store: EntityStore,
    collection: str,
    settings: EngineSettings,
    report: RunReport,
    **criteria: Any,
) -> list[Record]:
    try:
        return await bounded(store.filter, collection, timeout=settings.io_timeout, **criteria)
    except Exception as e:
        log.warning("Reading %s failed, continuing without it: %s", collection, e)
        report.skip(source=collection, reason=f"read failed: {type(e).__name__}: {e}")
        return []


async def collect(
    store: EntityStore,
    now: datetime,
    settings: EngineSettings,
    report: RunReport,
) -> list[ReminderOccurrence]:
    """Uniform candidate occurrences from every source, due or not."""
    occurrences: list[ReminderOccurrence] = []

    reminders = await _read(store, "reminders", settings, report, status="pending")
    report.checked["reminders"] = len(reminders)
    for record in reminders:
        try:
            occurrences.append(standalone_occurrence(record, settings))
        except _ENTRY_ERRORS as e:
            log.warning("Skipping reminder %s: %s", record.get("id"), e)
            report.skip(id=record.get("id"), type="reminder", reason=f"invalid reminder: {e}")

    tasks = [
        t
        for t in await _read(store, "tasks", settings, report)
        if t.get("status") != TASK_DONE_STATUS
    ]
    report.checked["tasks"] = len(tasks)
    for task in tasks:
        try:
            legacy = legacy_task_occurrence(task, settings)
        except _ENTRY_ERRORS as e:
            log.warning("Skipping legacy reminder on task %s: %s", task.get("id"), e)
            report.skip(id=task.get("id"), type="task", reason=f"invalid reminder time: {e}")
            legacy = None
        if legacy is not None:
            if legacy.remote_outstanding:
                occurrences.append(legacy)
            else:
                report.skip(
                    id=legacy.key,
                    type="task",
                    title=legacy.target_label,
                    reason="popup-only legacy reminder",
                )
        occurrences.extend(entry_occurrences(task, "task", now, settings, report))

    meetings = await _read(
        store, "meetings", settings, report, status=MEETING_ACTIVE_STATUSES
    )
    report.checked["meetings"] = len(meetings)
    for meeting in meetings:
        occurrences.extend(entry_occurrences(meeting, "meeting", now, settings, report))

    return occurrences
