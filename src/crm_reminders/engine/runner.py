"""One reminder pass: collect, partition, dispatch, commit, report.

Occurrences are grouped by owning entity. Groups run concurrently (bounded by
``max_concurrency``); occurrences inside a group run strictly one after the
other, because each commit re-reads and rewrites the owner's reminder list.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

from crm_reminders.engine.commit import (
    CommitError,
    StateMutator,
    is_entry_resolved,
    locate_entry,
)
from crm_reminders.engine.dispatch import ChannelDispatcher, Mailer
from crm_reminders.engine.due import partition
from crm_reminders.engine.io import bounded
from crm_reminders.engine.occurrences import EngineSettings, ReminderOccurrence
from crm_reminders.engine.report import (
    OccurrenceResult,
    RunReport,
    build_result,
    failed_result,
)
from crm_reminders.engine.sources import collect

if TYPE_CHECKING:
    from crm_reminders.storage import EntityStore, Record

log = logging.getLogger(__name__)

_Processed = tuple[OccurrenceResult, dict[str, Any] | None]


class PopupAckError(ValueError):
    """The acknowledgement does not point at a popup-capable reminder."""


def _group_by_entity(
    occurrences: list[ReminderOccurrence],
) -> list[list[ReminderOccurrence]]:
    groups: dict[tuple[str, str], list[ReminderOccurrence]] = {}
    for occ in occurrences:
        groups.setdefault((occ.collection, occ.entity_id), []).append(occ)
    return list(groups.values())


async def _process(
    occ: ReminderOccurrence,
    dispatcher: ChannelDispatcher,
    mutator: StateMutator,
) -> _Processed:
    try:
        outcome = await dispatcher.dispatch(occ)
    except Exception as e:
        log.exception("Dispatch failed for %s %s", occ.entity_type, occ.key)
        return failed_result(occ, f"dispatch failed: {e}"), None

    try:
        created = await mutator.commit(occ, outcome)
    except Exception as e:
        log.exception("Commit failed for %s %s", occ.entity_type, occ.key)
        return build_result(occ, outcome, commit_error=f"{type(e).__name__}: {e}"), outcome.popup

    next_id = created["id"] if created else None
    return build_result(occ, outcome, next_reminder_id=next_id), outcome.popup


async def check_reminders(
    store: EntityStore,
    mailer: Mailer,
    *,
    now: datetime | None = None,
    settings: EngineSettings | None = None,
) -> RunReport:
    """Run one pass over every reminder source and return the run report."""
    settings = settings or EngineSettings()
    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=settings.tz)
    report = RunReport(server_time=now)

    occurrences = await collect(store, now, settings, report)
    due, upcoming = partition(
        occurrences, now, lookahead=timedelta(hours=settings.lookahead_hours)
    )
    for occ in upcoming:
        report.add_upcoming(occ)
    report.found_due = len(due)
    log.info("Found %d due reminder occurrences (%d upcoming)", len(due), len(upcoming))

    dispatcher = ChannelDispatcher(store, mailer, settings)
    mutator = StateMutator(store, settings)
    semaphore = asyncio.Semaphore(settings.max_concurrency)

    async def run_group(group: list[ReminderOccurrence]) -> list[_Processed]:
        async with semaphore:
            return [await _process(occ, dispatcher, mutator) for occ in group]

    batches = await asyncio.gather(*(run_group(g) for g in _group_by_entity(due)))
    for batch in batches:
        for result, popup in batch:
            report.add(result, popup)

    log.info("Reminder pass finished: %s", report.summary)
    return report


async def acknowledge_popup(
    store: EntityStore,
    entity_type: str,
    entity_id: str,
    reminder_index: int | None = None,
    *,
    settings: EngineSettings | None = None,
) -> Record:
    """Mark a surfaced popup as shown; closes the list entry if nothing else is outstanding."""
    settings = settings or EngineSettings()

    async def io(fn: Any, *args: Any) -> Any:
        return await bounded(fn, *args, timeout=settings.io_timeout)

    if entity_type == "reminder":
        return await io(store.update, "reminders", entity_id, {"popup_shown": True})

    collections = {"task": "tasks", "meeting": "meetings"}
    if entity_type not in collections:
        raise PopupAckError(f"Unknown entity type: {entity_type!r}")
    if reminder_index is None:
        raise PopupAckError(f"{entity_type} popups need a reminder index")

    collection = collections[entity_type]
    label = f"{entity_type} {entity_id}"

    def mark_shown(fresh: Record) -> dict[str, Any]:
        try:
            entries = locate_entry(fresh, label, reminder_index)
        except CommitError as e:
            raise PopupAckError(str(e)) from e
        entry = {**entries[reminder_index], "popup_shown": True}
        if is_entry_resolved(entry):
            entry["sent"] = True
        entries[reminder_index] = entry
        return {"reminders": entries}

    return await io(store.modify, collection, entity_id, mark_shown)
