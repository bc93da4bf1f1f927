"""Per-channel delivery of a due occurrence.

Email goes out through the mailer once per unique recipient. Chat and SMS are
queued as outbound message records for the messaging integration to pick up;
delivery confirmation is not this module's concern. Popups are returned to
the caller as payloads and never touch persisted state here.

Every channel (and every recipient within a channel) is isolated: a failure
or timeout is recorded in the outcome and the remaining sends still happen.
"""

from __future__ import annotations

import html
import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

from crm_reminders.engine.io import bounded
from crm_reminders.engine.occurrences import (
    REMOTE_CHANNELS,
    Channel,
    EngineSettings,
    ReminderOccurrence,
)

if TYPE_CHECKING:
    from crm_reminders.storage import EntityStore

log = logging.getLogger(__name__)

MESSAGES_COLLECTION = "communication_messages"

_EMAIL_RE = re.compile(r"^[^@\s<>,;]+@[^@\s<>,;]+\.[^@\s<>,;]+$")
_PHONE_RE = re.compile(r"^(whatsapp:)?\+?[\d\s\-().]+$")
_MIN_PHONE_DIGITS = 7

_QUEUE_TYPES: dict[Channel, str] = {"chat": "whatsapp", "sms": "sms"}


class Mailer(Protocol):
    def send(self, to: str, subject: str, body: str) -> None: ...


@dataclass(slots=True)
class ChannelResult:
    attempted: bool = False
    succeeded: bool = False
    unreachable: bool = False  # requested, but no usable recipient exists
    delivered: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def error(self) -> str | None:
        return "; ".join(self.errors) or None


@dataclass(slots=True)
class ChannelOutcome:
    results: dict[Channel, ChannelResult] = field(default_factory=dict)
    popup: dict[str, Any] | None = None

    def result(self, channel: Channel) -> ChannelResult:
        return self.results.get(channel, ChannelResult())

    def succeeded(self, channel: Channel) -> bool:
        return self.result(channel).succeeded

    def unreachable(self, channel: Channel) -> bool:
        return self.result(channel).unreachable

    @property
    def attempted_any(self) -> bool:
        return any(r.attempted for r in self.results.values())

    @property
    def succeeded_any(self) -> bool:
        return any(r.succeeded for r in self.results.values())

    @property
    def delivered(self) -> list[str]:
        return [to for r in self.results.values() for to in r.delivered]

    @property
    def errors(self) -> list[str]:
        return [f"{ch}: {err}" for ch, r in self.results.items() for err in r.errors]


def _dedupe(values: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    result: list[str] = []
    for value in values:
        key = value.lower()
        if key in seen:
            continue
        seen.add(key)
        result.append(value)
    return result


def is_plausible_email(value: str) -> bool:
    return bool(_EMAIL_RE.match(value))


def is_plausible_phone(value: str) -> bool:
    if not _PHONE_RE.match(value):
        return False
    return sum(c.isdigit() for c in value) >= _MIN_PHONE_DIGITS


def email_recipients(occ: ReminderOccurrence) -> list[str]:
    """Explicit list if non-empty, else the creator; then additional emails."""
    explicit = occ.recipients.get("email", ())
    base = list(explicit) if explicit else ([occ.creator] if occ.creator else [])
    candidates = (c.strip() for c in [*base, *occ.additional_emails])
    return _dedupe(c for c in candidates if is_plausible_email(c))


def phone_recipients(occ: ReminderOccurrence, channel: Channel) -> list[str]:
    """Explicit recipients only: no phone number is known for the creator."""
    candidates = (c.strip() for c in occ.recipients.get(channel, ()))
    return _dedupe(c for c in candidates if is_plausible_phone(c))


def _local_time(occ: ReminderOccurrence, settings: EngineSettings) -> str:
    return occ.due_instant.astimezone(settings.tz).strftime("%Y-%m-%d %H:%M")


def render_email(occ: ReminderOccurrence, settings: EngineSettings) -> tuple[str, str]:
    label = occ.target_label or "Untitled"
    message_html = f"<p>{html.escape(occ.message)}</p>" if occ.message else ""
    body = (
        '<div style="font-family: Arial, sans-serif;">'
        "<h2>Reminder</h2>"
        "<p>Hello,</p>"
        f"<p>This is a reminder for: <strong>{html.escape(label)}</strong></p>"
        f"{message_html}"
        f"<p>Reminder time: {_local_time(occ, settings)}</p>"
        f"<p>Best regards,<br/>{html.escape(settings.business_name)}</p>"
        "</div>"
    )
    return f"Reminder: {label}", body


def render_text(occ: ReminderOccurrence, settings: EngineSettings) -> str:
    return (
        f"🔔 Reminder: {occ.target_label}\n"
        f"{occ.message}\n"
        f"Due: {_local_time(occ, settings)}"
    )


def build_popup(occ: ReminderOccurrence, settings: EngineSettings) -> dict[str, Any]:
    return {
        "id": occ.key,
        "entityId": occ.entity_id,
        "type": occ.entity_type,
        "title": occ.target_label,
        "client_name": occ.client_name,
        "message": occ.message or occ.target_label,
        "ringtone": occ.ringtone,
        "reminderIndex": occ.occurrence_index,
        "due": occ.due_instant.astimezone(settings.tz).isoformat(),
    }


class ChannelDispatcher:
    def __init__(
        self, store: EntityStore, mailer: Mailer, settings: EngineSettings
    ) -> None:
        self.store = store
        self.mailer = mailer
        self.settings = settings

    async def dispatch(self, occ: ReminderOccurrence) -> ChannelOutcome:
        """Attempt every outstanding channel of occ; never raises for a channel failure."""
        outcome = ChannelOutcome()
        for channel in REMOTE_CHANNELS:
            if not occ.outstanding(channel):
                continue
            try:
                if channel == "email":
                    outcome.results[channel] = await self._send_email(occ)
                else:
                    outcome.results[channel] = await self._enqueue(occ, channel)
            except Exception as e:
                log.exception("Channel %s crashed for %s %s", channel, occ.entity_type, occ.key)
                outcome.results[channel] = ChannelResult(
                    attempted=True, errors=[f"{type(e).__name__}: {e}"]
                )
        if occ.popup_outstanding:
            outcome.popup = build_popup(occ, self.settings)
        return outcome

    async def _send_email(self, occ: ReminderOccurrence) -> ChannelResult:
        recipients = email_recipients(occ)
        if not recipients:
            log.warning("No email recipients for %s %s", occ.entity_type, occ.key)
            return ChannelResult(unreachable=True, errors=["no email recipients"])

        subject, body = render_email(occ, self.settings)
        result = ChannelResult(attempted=True)
        for to in recipients:
            try:
                await bounded(
                    self.mailer.send, to, subject, body, timeout=self.settings.io_timeout
                )
            except TimeoutError:
                log.warning("Email to %s timed out for %s", to, occ.key)
                result.errors.append(f"{to}: timed out")
            except Exception as e:
                log.warning("Email to %s failed for %s: %s", to, occ.key, e)
                result.errors.append(f"{to}: {e}")
            else:
                result.delivered.append(to)
        result.succeeded = bool(result.delivered)
        return result

    async def _enqueue(self, occ: ReminderOccurrence, channel: Channel) -> ChannelResult:
        phones = phone_recipients(occ, channel)
        if not phones:
            log.warning("No %s recipients for %s %s", channel, occ.entity_type, occ.key)
            return ChannelResult(unreachable=True, errors=[f"no {channel} recipients"])

        content = render_text(occ, self.settings)
        result = ChannelResult(attempted=True)
        for phone in phones:
            record = {
                "type": _QUEUE_TYPES[channel],
                "direction": "outbound",
                "status": "pending",
                "content": content,
                "metadata": {
                    "target_phone": phone,
                    "source": "reminder_system",
                    "entity_id": occ.entity_id,
                    "entity_type": occ.entity_type,
                    "reminder_index": occ.occurrence_index,
                },
            }
            try:
                await bounded(
                    self.store.create,
                    MESSAGES_COLLECTION,
                    record,
                    timeout=self.settings.io_timeout,
                )
            except TimeoutError:
                log.warning("Queueing %s to %s timed out for %s", channel, phone, occ.key)
                result.errors.append(f"{phone}: timed out")
            except Exception as e:
                log.warning("Could not queue %s to %s for %s: %s", channel, phone, occ.key, e)
                result.errors.append(f"{phone}: {e}")
            else:
                result.delivered.append(phone)
        result.succeeded = bool(result.delivered)
        return result
