"""Tests for engine/sources.py: collecting occurrences from every entity shape."""

from datetime import date, datetime, time, timezone

import pytest
from conftest import HOME_TZ

from crm_reminders.engine.report import RunReport
from crm_reminders.engine.sources import collect, entry_due_instant

NOW = datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc)


async def _collect(store, settings, now=NOW):
    report = RunReport(server_time=now)
    occurrences = await collect(store, now, settings, report)
    return occurrences, report


def _by_key(occurrences):
    return {o.key: o for o in occurrences}


@pytest.mark.asyncio
async def test_minutes_before_date_only_due_date(store, settings):
    store.create(
        "tasks",
        {
            "id": "t1",
            "title": "Send quote",
            "status": "open",
            "due_date": "2024-03-10",
            "reminders": [{"minutes_before": 60, "notify_email": True}],
        },
    )

    occurrences, _ = await _collect(store, settings)

    occ = _by_key(occurrences)["t1_0"]
    local = occ.due_instant.astimezone(HOME_TZ)
    assert (local.date(), local.time()) == (date(2024, 3, 10), time(8, 0))
    assert occ.source_kind == "task_list"
    assert occ.message == "Reminder for task: Send quote (60 minutes before)"


@pytest.mark.asyncio
async def test_unquoted_yaml_dates(store, settings, data_dir):
    tasks = data_dir / "entities" / "tasks"
    tasks.mkdir(parents=True)
    (tasks / "t9.yaml").write_text(
        "title: Hand edited\n"
        "status: open\n"
        "due_date: 2024-03-10\n"
        "reminders:\n"
        "  - minutes_before: 30\n"
        "    notify_email: true\n"
        "  - reminder_at: 2024-03-10 10:00:00\n"
        "    notify_email: true\n"
    )

    occurrences, _ = await _collect(store, settings)

    by_key = _by_key(occurrences)
    assert by_key["t9_0"].due_instant.astimezone(HOME_TZ).time() == time(8, 30)
    assert by_key["t9_1"].due_instant == datetime(2024, 3, 10, 8, 0, tzinfo=timezone.utc)


def test_explicit_reminder_at_wins(settings):
    entry = {"reminder_at": "2024-03-10T07:00:00Z", "minutes_before": 600}

    due = entry_due_instant(entry, "2024-03-10", settings)

    assert due == datetime(2024, 3, 10, 7, 0, tzinfo=timezone.utc)


def test_no_reminder_time(settings):
    assert entry_due_instant({"minutes_before": 30}, None, settings) is None
    assert entry_due_instant({}, "2024-03-10", settings) is None


@pytest.mark.asyncio
async def test_status_filters(store, settings):
    store.create("reminders", {"id": "r1", "status": "pending", "reminder_date": "2024-03-10T10:00:00"})
    store.create("reminders", {"id": "r2", "status": "sent", "reminder_date": "2024-03-10T10:00:00"})
    reminder = {"reminder_at": "2024-03-10T11:00:00Z", "notify_email": True}
    store.create("tasks", {"id": "t1", "status": "open", "reminders": [reminder]})
    store.create("tasks", {"id": "t2", "status": "completed", "reminders": [reminder]})
    store.create("meetings", {"id": "m1", "status": "scheduled", "reminders": [reminder]})
    store.create("meetings", {"id": "m2", "status": "confirmed", "reminders": [reminder]})
    store.create("meetings", {"id": "m3", "status": "cancelled", "reminders": [reminder]})

    occurrences, report = await _collect(store, settings)

    assert sorted(o.key for o in occurrences) == ["m1_0", "m2_0", "r1", "t1_0"]
    assert report.checked == {"tasks": 1, "meetings": 2, "reminders": 1}


@pytest.mark.asyncio
async def test_task_legacy_and_list_both_evaluated(store, settings):
    store.create(
        "tasks",
        {
            "id": "t1",
            "title": "Renewal",
            "status": "open",
            "reminder_enabled": True,
            "reminder_at": "2024-03-10T09:00:00",
            "reminders": [{"reminder_at": "2024-03-10T10:00:00", "notify_sms": True}],
        },
    )

    occurrences, _ = await _collect(store, settings)

    kinds = sorted(o.source_kind for o in occurrences)
    assert kinds == ["task_legacy", "task_list"]
    legacy = next(o for o in occurrences if o.source_kind == "task_legacy")
    assert legacy.outstanding("email")  # notify_email defaults on
    assert legacy.message == "Task reminder: Renewal"


@pytest.mark.asyncio
async def test_legacy_inactive_forms(store, settings):
    base = {"status": "open", "reminder_at": "2024-03-10T09:00:00"}
    store.create("tasks", {**base, "id": "off", "reminder_enabled": False})
    store.create("tasks", {**base, "id": "done", "reminder_enabled": True, "reminder_sent": True})
    store.create("tasks", {"id": "no_time", "status": "open", "reminder_enabled": True})

    occurrences, _ = await _collect(store, settings)

    assert occurrences == []


@pytest.mark.asyncio
async def test_legacy_popup_only_is_skipped(store, settings):
    store.create(
        "tasks",
        {
            "id": "t1",
            "title": "Ping",
            "status": "open",
            "reminder_enabled": True,
            "reminder_at": "2024-03-10T09:00:00",
            "reminder_popup": True,
            "notify_email": False,
        },
    )

    occurrences, report = await _collect(store, settings)

    assert occurrences == []
    assert report.skipped == [
        {"id": "t1", "type": "task", "title": "Ping", "reason": "popup-only legacy reminder"}
    ]


@pytest.mark.asyncio
async def test_satisfied_remote_with_due_popup_is_surfaced(store, settings):
    store.create(
        "meetings",
        {
            "id": "m1",
            "status": "scheduled",
            "reminders": [
                {"reminder_at": "2024-03-10T11:00:00Z", "notify_email": True, "email_sent": True, "notify_popup": True},
                {"reminder_at": "2024-03-10T13:00:00Z", "notify_email": True, "email_sent": True, "notify_popup": True},
                {"reminder_at": "2024-03-10T11:00:00Z", "notify_email": True, "email_sent": True},
                {"reminder_at": "2024-03-10T11:00:00Z", "notify_popup": True, "popup_shown": True},
            ],
        },
    )

    occurrences, _ = await _collect(store, settings)

    assert [o.key for o in occurrences] == ["m1_0"]
    occ = occurrences[0]
    assert occ.popup_outstanding
    assert not occ.remote_outstanding


@pytest.mark.asyncio
async def test_sent_entries_skipped(store, settings):
    store.create(
        "meetings",
        {
            "id": "m1",
            "status": "scheduled",
            "reminders": [
                {"reminder_at": "2024-03-10T11:00:00Z", "notify_email": True, "sent": True},
                {"reminder_at": "2024-03-10T11:00:00Z", "notify_email": True},
            ],
        },
    )

    occurrences, _ = await _collect(store, settings)

    assert [o.key for o in occurrences] == ["m1_1"]


@pytest.mark.asyncio
async def test_bad_entry_time_recorded_and_siblings_kept(store, settings):
    store.create(
        "meetings",
        {
            "id": "m1",
            "title": "Review",
            "status": "scheduled",
            "meeting_date": "2024-03-10T15:00:00",
            "reminders": [
                {"reminder_at": "garbage!!", "notify_email": True},
                {"minutes_before": 30, "notify_email": True},
                {"notify_email": True},
            ],
        },
    )

    occurrences, report = await _collect(store, settings)

    assert [o.key for o in occurrences] == ["m1_1"]
    reasons = {s["id"]: s["reason"] for s in report.skipped}
    assert reasons["m1_0"].startswith("invalid reminder time")
    assert reasons["m1_2"] == "no reminder time"


@pytest.mark.asyncio
async def test_bad_standalone_recorded(store, settings):
    store.create("reminders", {"id": "r1", "status": "pending", "reminder_date": "garbage!!"})
    store.create("reminders", {"id": "r2", "status": "pending", "reminder_date": None})
    store.create("reminders", {"id": "r3", "status": "pending", "reminder_date": "2024-03-10T09:00:00"})

    occurrences, report = await _collect(store, settings)

    assert [o.key for o in occurrences] == ["r3"]
    assert {s["id"] for s in report.skipped} == {"r1", "r2"}


@pytest.mark.asyncio
async def test_source_read_failure_is_isolated(store, settings, monkeypatch):
    store.create("reminders", {"id": "r1", "status": "pending", "reminder_date": "2024-03-10T09:00:00"})
    store.create(
        "meetings",
        {"id": "m1", "status": "scheduled", "reminders": [{"reminder_at": "2024-03-10T11:00:00Z", "notify_email": True}]},
    )
    original = store.filter

    def flaky_filter(collection, **criteria):
        if collection == "tasks":
            raise OSError("disk on fire")
        return original(collection, **criteria)

    monkeypatch.setattr(store, "filter", flaky_filter)

    occurrences, report = await _collect(store, settings)

    assert sorted(o.key for o in occurrences) == ["m1_0", "r1"]
    assert report.checked["tasks"] == 0
    assert report.skipped == [{"source": "tasks", "reason": "read failed: OSError: disk on fire"}]


@pytest.mark.asyncio
async def test_standalone_fields(store, settings):
    store.create(
        "reminders",
        {
            "id": "r1",
            "status": "pending",
            "reminder_date": "2024-03-10T09:00:00",
            "target_name": "Call Dana",
            "created_by": "owner@example.com",
            "additional_emails": "a@example.com; b@example.com",
            "whatsapp_recipients": ["+972501234567"],
            "notify_whatsapp": True,
            "ringtone": "chime",
            "recurrence": {"enabled": True, "frequency": "weekly", "interval": 2, "end_date": "2024-06-01"},
        },
    )

    occurrences, _ = await _collect(store, settings)

    occ = occurrences[0]
    assert occ.outstanding("email")  # standalone email defaults on
    assert occ.outstanding("chat")
    assert not occ.outstanding("sms")
    assert occ.additional_emails == ("a@example.com", "b@example.com")
    assert occ.recipients["chat"] == ("+972501234567",)
    assert occ.recurrence.frequency == "weekly"
    assert occ.recurrence.interval == 2
    assert occ.recurrence.end_date == "2024-06-01"
    assert occ.ringtone == "chime"


@pytest.mark.asyncio
async def test_invalid_recurrence_ignored(store, settings):
    store.create(
        "reminders",
        {
            "id": "r1",
            "status": "pending",
            "reminder_date": "2024-03-10T09:00:00",
            "recurrence": {"enabled": True, "frequency": "hourly"},
        },
    )

    occurrences, _ = await _collect(store, settings)

    assert occurrences[0].recurrence is None


@pytest.mark.asyncio
async def test_entry_recipients_override_owner(store, settings):
    store.create(
        "meetings",
        {
            "id": "m1",
            "status": "scheduled",
            "email_recipients": ["team@example.com"],
            "sms_recipients": "+15551234567, +15557654321",
            "reminders": [
                {"reminder_at": "2024-03-10T11:00:00Z", "notify_email": True, "email_recipients": ["solo@example.com"]},
            ],
        },
    )

    occurrences, _ = await _collect(store, settings)

    occ = occurrences[0]
    assert occ.recipients["email"] == ("solo@example.com",)
    assert occ.recipients["sms"] == ("+15551234567", "+15557654321")


@pytest.mark.asyncio
async def test_entry_id_and_custom_message(store, settings):
    store.create(
        "meetings",
        {
            "id": "m1",
            "title": "Kickoff",
            "status": "scheduled",
            "reminders": [
                {"id": 7, "reminder_at": "2024-03-10T11:00:00Z", "notify_email": True, "message": "Bring the deck"},
            ],
        },
    )

    occurrences, _ = await _collect(store, settings)

    assert occurrences[0].entry_id == "7"
    assert occurrences[0].message == "Bring the deck"
