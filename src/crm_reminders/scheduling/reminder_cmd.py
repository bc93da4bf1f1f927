"""CLI handler for `crm-reminders reminder` subcommand."""

import argparse
import sys

from crm_reminders.engine.timeutil import TimestampError
from crm_reminders.scheduling.reminders import (
    Reminder,
    append_reminder,
    list_reminders,
    remove_reminder,
)
from crm_reminders.storage import open_store


def _summary(r: Reminder) -> str:
    if r.message:
        return f"{r.target_name}: {r.message}"
    return r.target_name


def _fmt_channels(r: Reminder) -> str:
    channels = [
        name
        for name, on in (
            ("email", r.notify_email),
            ("whatsapp", r.notify_whatsapp),
            ("sms", r.notify_sms),
            ("popup", r.notify_popup),
        )
        if on
    ]
    return ",".join(channels) or "none"


def _fmt_schedule(r: Reminder) -> str:
    sched = f"at {r.reminder_date[:16]}"
    if r.recurrence and r.recurrence.get("enabled"):
        every = r.recurrence.get("interval") or 1
        sched += f"  (every {every} {r.recurrence.get('frequency')}"
        if r.recurrence.get("end_date"):
            sched += f" until {r.recurrence['end_date']}"
        sched += ")"
    return sched


def run_reminder_command(argv: list[str]) -> None:
    parser = argparse.ArgumentParser(prog="crm-reminders reminder")
    sub = parser.add_subparsers(dest="action")

    add_p = sub.add_parser("add", help="Create a standalone reminder")
    add_p.add_argument("--target", "-t", required=True, help="What the reminder is about")
    add_p.add_argument("--message", "-m", default="", help="Reminder message")
    when = add_p.add_mutually_exclusive_group(required=True)
    when.add_argument("--at", help="ISO datetime; no offset means home timezone")
    when.add_argument("--delay", type=int, help="Due in N minutes")
    add_p.add_argument("--created-by", default=None, help="Creator email (fallback recipient)")
    add_p.add_argument("--client", default=None, help="Client name")
    add_p.add_argument("--email", nargs="+", default=None, help="Email recipients")
    add_p.add_argument("--whatsapp", nargs="+", default=None, help="WhatsApp recipients")
    add_p.add_argument("--sms", nargs="+", default=None, help="SMS recipients")
    add_p.add_argument("--no-email", action="store_true", help="Do not send email")
    add_p.add_argument("--popup", action="store_true", help="Show an in-app popup")
    add_p.add_argument("--ringtone", default="ding", help="Popup alert tone")
    add_p.add_argument(
        "--repeat",
        default=None,
        choices=["daily", "weekly", "monthly", "yearly"],
        help="Recurrence frequency",
    )
    add_p.add_argument("--interval", type=int, default=1, help="Repeat every N periods")
    add_p.add_argument("--until", default=None, help="Recurrence end date")

    list_p = sub.add_parser("list", help="Show reminders")
    list_p.add_argument("--all", action="store_true", help="Include sent reminders")

    cancel_p = sub.add_parser("cancel", help="Cancel a reminder by ID")
    cancel_p.add_argument("id", help="Reminder ID")

    args = parser.parse_args(argv)

    if args.action == "add":
        _handle_add(args)
    elif args.action == "list":
        _handle_list(include_sent=args.all)
    elif args.action == "cancel":
        _handle_cancel(args.id)
    else:
        parser.print_help()
        sys.exit(1)


def _handle_add(args: argparse.Namespace) -> None:
    try:
        reminder = Reminder.new(
            args.target,
            at=args.at,
            delay_minutes=args.delay,
            message=args.message,
            created_by=args.created_by,
            client_name=args.client,
            email_recipients=args.email,
            whatsapp_recipients=args.whatsapp,
            sms_recipients=args.sms,
            notify_email=not args.no_email,
            notify_whatsapp=bool(args.whatsapp),
            notify_sms=bool(args.sms),
            notify_popup=args.popup,
            ringtone=args.ringtone,
            repeat=args.repeat,
            interval=args.interval,
            until=args.until,
        )
    except (TimestampError, ValueError) as e:
        print(f"invalid reminder: {e}")
        sys.exit(1)
    append_reminder(open_store(), reminder)
    print(f"scheduled {reminder.id}: {_fmt_schedule(reminder)} -- {_summary(reminder)}")


def _handle_list(*, include_sent: bool) -> None:
    reminders = list_reminders(open_store(), status=None if include_sent else "pending")
    if not reminders:
        print("no pending reminders")
        return
    for r in reminders:
        print(
            f"  {r.id}  {r.status:7s}  {_fmt_schedule(r):24s}  [{_fmt_channels(r)}]  {_summary(r)}"
        )


def _handle_cancel(reminder_id: str) -> None:
    if remove_reminder(open_store(), reminder_id):
        print(f"cancelled {reminder_id}")
    else:
        print(f"reminder {reminder_id} not found")
        sys.exit(1)
