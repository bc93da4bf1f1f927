"""Run summary returned by a single reminder pass."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Literal

if TYPE_CHECKING:
    from crm_reminders.engine.dispatch import ChannelOutcome
    from crm_reminders.engine.occurrences import ReminderOccurrence

ResultStatus = Literal["sent", "failed", "skipped"]

POPUP_ONLY = "popup only"


@dataclass(slots=True)
class OccurrenceResult:
    id: str
    status: ResultStatus
    type: str
    reminder_index: int | None = None
    recipients: list[str] | None = None
    channels: dict[str, dict[str, Any]] | None = None
    error: str | None = None
    reason: str | None = None
    next_reminder_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"id": self.id, "status": self.status, "type": self.type}
        optional = {
            "reminderIndex": self.reminder_index,
            "recipients": self.recipients,
            "channels": self.channels,
            "error": self.error,
            "reason": self.reason,
            "nextReminderId": self.next_reminder_id,
        }
        data.update({k: v for k, v in optional.items() if v is not None})
        return data


def _channel_summary(outcome: ChannelOutcome) -> dict[str, dict[str, Any]]:
    summary: dict[str, dict[str, Any]] = {}
    for channel, result in outcome.results.items():
        entry: dict[str, Any] = {
            "attempted": result.attempted,
            "succeeded": result.succeeded,
        }
        if result.error:
            entry["error"] = result.error
        summary[channel] = entry
    return summary


def build_result(
    occ: ReminderOccurrence,
    outcome: ChannelOutcome,
    *,
    commit_error: str | None = None,
    next_reminder_id: str | None = None,
) -> OccurrenceResult:
    """Classify one processed occurrence as sent, failed, or skipped."""
    errors = outcome.errors
    if commit_error is not None:
        status: ResultStatus = "failed"
        error: str | None = f"commit failed: {commit_error}"
        reason = None
    elif outcome.succeeded_any:
        status = "sent"
        error = "; ".join(errors) or None
        reason = None
    elif outcome.popup is not None:
        # Nothing went out remotely; the popup is surfaced again until acknowledged.
        status = "sent"
        error = "; ".join(errors) or None
        reason = POPUP_ONLY
    elif outcome.attempted_any:
        status = "failed"
        error = "; ".join(errors) or "all channel sends failed"
        reason = None
    else:
        status = "skipped"
        error = None
        reason = "; ".join(errors) or "no outstanding channels"

    return OccurrenceResult(
        id=occ.entity_id,
        status=status,
        type=occ.entity_type,
        reminder_index=occ.occurrence_index,
        recipients=outcome.delivered or None,
        channels=_channel_summary(outcome) or None,
        error=error,
        reason=reason,
        next_reminder_id=next_reminder_id,
    )


def failed_result(occ: ReminderOccurrence, error: str) -> OccurrenceResult:
    return OccurrenceResult(
        id=occ.entity_id,
        status="failed",
        type=occ.entity_type,
        reminder_index=occ.occurrence_index,
        error=error,
    )


@dataclass(slots=True)
class RunReport:
    server_time: datetime
    checked: dict[str, int] = field(
        default_factory=lambda: {"tasks": 0, "meetings": 0, "reminders": 0}
    )
    skipped: list[dict[str, Any]] = field(default_factory=list)
    found_due: int = 0
    results: list[OccurrenceResult] = field(default_factory=list)
    popups: list[dict[str, Any]] = field(default_factory=list)

    def skip(self, **info: Any) -> None:
        """Record a diagnostic-only skipped item."""
        self.skipped.append({k: v for k, v in info.items() if v is not None})

    def add_upcoming(self, occ: ReminderOccurrence) -> None:
        minutes = int((occ.due_instant - self.server_time).total_seconds() // 60)
        self.skip(
            id=occ.key,
            type=occ.entity_type,
            title=occ.target_label,
            reason="not yet due",
            due=occ.due_instant.isoformat(),
            minutes_until=minutes,
        )

    def add(self, result: OccurrenceResult, popup: dict[str, Any] | None = None) -> None:
        self.results.append(result)
        if popup is not None:
            self.popups.append(popup)

    def count(self, status: ResultStatus) -> int:
        return sum(1 for r in self.results if r.status == status)

    @property
    def popup_only(self) -> int:
        return sum(1 for r in self.results if r.reason == POPUP_ONLY)

    @property
    def summary(self) -> str:
        return (
            f"{self.found_due} due: {self.count('sent') - self.popup_only} sent, "
            f"{self.popup_only} popup only, {self.count('failed')} failed, "
            f"{self.count('skipped')} skipped, {len(self.popups)} popups"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "debugInfo": {
                "serverTime": self.server_time.isoformat(),
                "checked": dict(self.checked),
                "skipped": list(self.skipped),
                "foundDue": self.found_due,
                "summary": self.summary,
            },
            "success": True,
            "processed": len(self.results),
            "results": [r.to_dict() for r in self.results],
            "popups": list(self.popups),
        }
