"""Write delivery state back to the owning entities.

Embedded reminder lists are re-read and written back whole inside one
locked store modification; an index captured during collection is never
applied to a cached copy of the list.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Collection
from datetime import datetime
from typing import TYPE_CHECKING, Any, TypeVar
from uuid import uuid4

from crm_reminders.engine.io import bounded
from crm_reminders.engine.occurrences import (
    CHANNEL_FIELDS,
    CHANNELS,
    REMOTE_CHANNELS,
    Channel,
    EngineSettings,
    ReminderOccurrence,
)
from crm_reminders.engine.timeutil import next_occurrence, within_end
from crm_reminders.storage import EntityNotFound

if TYPE_CHECKING:
    from crm_reminders.engine.dispatch import ChannelOutcome
    from crm_reminders.storage import EntityStore, Record

log = logging.getLogger(__name__)

T = TypeVar("T")

_NOT_COPIED = ("id", "created_date", "updated_date", "next_reminder_id")


class CommitError(RuntimeError):
    """The owning entity no longer matches what the run collected."""


def is_entry_resolved(
    entry: dict[str, Any], unreachable: Collection[Channel] = ()
) -> bool:
    """Every requested channel delivered, or nothing left but a popup already shown.

    Channels in unreachable had no usable recipient and can never be
    delivered, so they do not hold the entry open.
    """
    for channel in REMOTE_CHANNELS:
        requested, sent, _ = CHANNEL_FIELDS[channel]
        if entry.get(requested) and not entry.get(sent) and channel not in unreachable:
            return False
    requested, shown, _ = CHANNEL_FIELDS["popup"]
    return not (entry.get(requested) and not entry.get(shown))


def locate_entry(record: Record | None, occ_label: str, index: int | None) -> list[Any]:
    """Fresh reminder list of record, validated to hold a mapping at index."""
    if record is None:
        raise CommitError(f"{occ_label} no longer exists")
    entries = record.get("reminders")
    if not isinstance(entries, list):
        raise CommitError(f"{occ_label} has no reminder list")
    if index is None or not 0 <= index < len(entries) or not isinstance(entries[index], dict):
        raise CommitError(f"{occ_label} has no reminder at index {index}")
    return list(entries)


class StateMutator:
    def __init__(self, store: EntityStore, settings: EngineSettings) -> None:
        self.store = store
        self.settings = settings

    async def _io(self, fn: Callable[..., T], *args: Any) -> T:
        return await bounded(fn, *args, timeout=self.settings.io_timeout)

    async def commit(self, occ: ReminderOccurrence, outcome: ChannelOutcome) -> Record | None:
        """Persist the outcome. Returns the next reminder of a recurring series, if any."""
        if occ.source_kind == "standalone":
            try:
                return await self._commit_standalone(occ, outcome)
            except EntityNotFound as e:
                raise CommitError(f"reminder {occ.entity_id} no longer exists") from e
        if occ.source_kind == "task_legacy":
            if outcome.attempted_any:
                await self._io(self.store.update, "tasks", occ.entity_id, {"reminder_sent": True})
            return None
        await self._commit_entry(occ, outcome)
        return None

    def _next_due(self, occ: ReminderOccurrence) -> datetime | None:
        rule = occ.recurrence
        if rule is None:
            return None
        tz = self.settings.tz
        nxt = next_occurrence(occ.due_instant, rule.frequency, rule.interval, tz)
        if not within_end(nxt, rule.end_date, tz):
            log.info("Recurrence of reminder %s ended at %s", occ.entity_id, rule.end_date)
            return None
        return nxt

    async def _commit_standalone(
        self, occ: ReminderOccurrence, outcome: ChannelOutcome
    ) -> Record | None:
        flags: dict[str, Any] = {
            CHANNEL_FIELDS[channel][1]: True
            for channel in REMOTE_CHANNELS
            if outcome.succeeded(channel)
        }
        nxt = self._next_due(occ)
        if nxt is None:
            await self._io(self.store.update, "reminders", occ.entity_id, {"status": "sent", **flags})
            return None

        # The original stays pending until its successor exists. Flags and the
        # successor id are stored first so a later pass can finish the handoff.
        def claim(current: Record) -> dict[str, Any]:
            return {**flags, "next_reminder_id": current.get("next_reminder_id") or uuid4().hex[:8]}

        current = await self._io(self.store.modify, "reminders", occ.entity_id, claim)
        successor = await self._io(self.store.get, "reminders", current["next_reminder_id"])
        if successor is None:
            successor = await self._io(self.store.create, "reminders", self._successor(current, nxt))
            log.info(
                "Scheduled next occurrence %s of reminder %s at %s",
                successor["id"],
                occ.entity_id,
                successor["reminder_date"],
            )
        await self._io(self.store.update, "reminders", occ.entity_id, {"status": "sent"})
        return successor

    def _successor(self, current: Record, nxt: datetime) -> dict[str, Any]:
        fields = {k: v for k, v in current.items() if k not in _NOT_COPIED}
        fields["id"] = current["next_reminder_id"]
        fields["status"] = "pending"
        fields["reminder_date"] = nxt.astimezone(self.settings.tz).isoformat()
        for channel in CHANNELS:
            fields[CHANNEL_FIELDS[channel][1]] = False
        return fields

    async def _commit_entry(self, occ: ReminderOccurrence, outcome: ChannelOutcome) -> None:
        label = f"{occ.entity_type} {occ.entity_id}"
        index = occ.occurrence_index
        unreachable = [ch for ch in REMOTE_CHANNELS if outcome.unreachable(ch)]

        def apply(fresh: Record) -> dict[str, Any]:
            entries = locate_entry(fresh, label, index)
            assert index is not None
            entry = dict(entries[index])
            if occ.entry_id is not None and str(entry.get("id")) != occ.entry_id:
                raise CommitError(f"{label}: reminder list changed at index {index}")
            for channel in REMOTE_CHANNELS:
                if outcome.succeeded(channel):
                    entry[CHANNEL_FIELDS[channel][1]] = True
            if is_entry_resolved(entry, unreachable):
                entry["sent"] = True
            entries[index] = entry
            return {"reminders": entries}

        try:
            await self._io(self.store.modify, occ.collection, occ.entity_id, apply)
        except EntityNotFound as e:
            raise CommitError(f"{label} no longer exists") from e
