"""CLI handlers for `crm-reminders check` and `crm-reminders popup`."""

import argparse
import asyncio
import json
import sys

from crm_reminders.engine import PopupAckError, acknowledge_popup, check_reminders
from crm_reminders.storage import EntityNotFound, open_store


def run_check_command(argv: list[str]) -> None:
    parser = argparse.ArgumentParser(
        prog="crm-reminders check", description="Run one reminder pass now"
    )
    parser.add_argument(
        "--summary", action="store_true", help="Print only the one-line summary"
    )
    args = parser.parse_args(argv)

    from crm_reminders.google import GmailSender

    report = asyncio.run(check_reminders(open_store(), GmailSender()))
    if args.summary:
        print(report.summary)
    else:
        print(json.dumps(report.to_dict(), indent=2, ensure_ascii=False))


def run_popup_command(argv: list[str]) -> None:
    parser = argparse.ArgumentParser(prog="crm-reminders popup")
    sub = parser.add_subparsers(dest="action")

    ack_p = sub.add_parser("ack", help="Mark a popup as shown")
    ack_p.add_argument(
        "--type", required=True, choices=["reminder", "task", "meeting"], dest="entity_type"
    )
    ack_p.add_argument("--id", required=True, dest="entity_id", help="Entity ID")
    ack_p.add_argument("--index", type=int, default=None, help="Reminder list index")

    args = parser.parse_args(argv)
    if args.action != "ack":
        parser.print_help()
        sys.exit(1)

    try:
        asyncio.run(
            acknowledge_popup(open_store(), args.entity_type, args.entity_id, args.index)
        )
    except EntityNotFound:
        print(f"{args.entity_type} {args.entity_id} not found")
        sys.exit(1)
    except PopupAckError as e:
        print(f"cannot acknowledge popup: {e}")
        sys.exit(1)
    print(f"acknowledged popup for {args.entity_type} {args.entity_id}")
