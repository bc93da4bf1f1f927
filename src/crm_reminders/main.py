"""Entry point for crm-reminders."""

from __future__ import annotations

import asyncio
import atexit
import logging
import os
import signal
import sys
from pathlib import Path

from dotenv import load_dotenv

from crm_reminders.storage import STATE_DIR

PID_FILE = STATE_DIR / "serve.pid"


HELP = """\
crm-reminders -- due-reminder delivery for the CRM

commands:
  crm-reminders                  Run the HTTP surface and periodic passes
  crm-reminders serve            Same as above
  crm-reminders check            Run one reminder pass, print the report
  crm-reminders reminder add     Create a standalone reminder
  crm-reminders reminder list    Show pending reminders
  crm-reminders reminder cancel  Cancel a reminder by ID
  crm-reminders popup ack        Mark a popup as shown
  crm-reminders help             Show this help message

examples:
  crm-reminders reminder add -t "Call Dana" --delay 30 --email dana@example.com
  crm-reminders reminder add -t "Weekly sync" --at 2026-03-02T10:00 --repeat weekly
  crm-reminders check --summary
  crm-reminders popup ack --type meeting --id m1 --index 0
"""


def _check_already_running() -> None:
    STATE_DIR.mkdir(parents=True, exist_ok=True)
    if PID_FILE.exists():
        pid = int(PID_FILE.read_text().strip())
        proc_cmdline = Path(f"/proc/{pid}/cmdline")
        if proc_cmdline.exists() and "crm-reminders" in proc_cmdline.read_bytes().decode(
            errors="replace"
        ):
            print(f"crm-reminders is already running (pid {pid})")
            raise SystemExit(1)
    PID_FILE.write_text(str(os.getpid()))
    atexit.register(PID_FILE.unlink, missing_ok=True)


def _dispatch_subcommand() -> bool:
    """Route CLI subcommands. Returns True if handled."""
    if len(sys.argv) < 2:
        return False
    cmd = sys.argv[1]
    rest = sys.argv[2:]
    if cmd in ("help", "--help", "-h"):
        print(HELP)
        return True
    routes: dict[str, tuple[str, str]] = {
        "reminder": ("crm_reminders.scheduling.reminder_cmd", "run_reminder_command"),
        "check": ("crm_reminders.check_cmd", "run_check_command"),
        "popup": ("crm_reminders.check_cmd", "run_popup_command"),
    }
    if cmd in routes:
        from importlib import import_module

        mod_path, func_name = routes[cmd]
        getattr(import_module(mod_path), func_name)(rest)
        return True
    return False


log = logging.getLogger(__name__)


async def _serve() -> None:
    """Scheduler plus HTTP surface until SIGTERM/SIGINT."""
    from crm_reminders import webhook
    from crm_reminders.google import GmailSender
    from crm_reminders.scheduling import setup_scheduler
    from crm_reminders.storage import open_store

    store = open_store()
    mailer = GmailSender()
    lock = asyncio.Lock()

    loop = asyncio.get_running_loop()
    stopping = asyncio.Event()
    loop.add_signal_handler(signal.SIGTERM, stopping.set)
    loop.add_signal_handler(signal.SIGINT, stopping.set)

    scheduler = setup_scheduler(store, mailer, lock=lock)
    scheduler.start()
    await webhook.start(store, mailer, lock)
    log.info("crm-reminders running")
    try:
        await stopping.wait()
    finally:
        scheduler.shutdown(wait=False)
        await webhook.stop()
        log.info("crm-reminders stopped")


def main() -> None:
    if _dispatch_subcommand():
        return
    if len(sys.argv) > 1 and sys.argv[1] != "serve":
        print(f"unknown command: {sys.argv[1]}\n")
        print(HELP)
        raise SystemExit(1)

    load_dotenv()
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    _check_already_running()
    asyncio.run(_serve())


if __name__ == "__main__":
    main()
