"""Split candidate occurrences into due now and due soon."""

from datetime import datetime, timedelta

from crm_reminders.engine.occurrences import LOOKAHEAD_HOURS, ReminderOccurrence


def partition(
    occurrences: list[ReminderOccurrence],
    now: datetime,
    *,
    lookahead: timedelta = timedelta(hours=LOOKAHEAD_HOURS),
) -> tuple[list[ReminderOccurrence], list[ReminderOccurrence]]:
    """Return (due, upcoming), both ordered by due instant.

    An occurrence is due iff its due instant is at or before now. Upcoming
    holds the not-yet-due ones inside the lookahead window; they are kept for
    diagnostics only. Anything further out is dropped.
    """
    horizon = now + lookahead
    due: list[ReminderOccurrence] = []
    upcoming: list[ReminderOccurrence] = []
    for occ in sorted(occurrences, key=lambda o: o.due_instant):
        if occ.due_instant <= now:
            due.append(occ)
        elif occ.due_instant <= horizon:
            upcoming.append(occ)
    return due, upcoming
