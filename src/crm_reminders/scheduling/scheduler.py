"""Periodic reminder passes via APScheduler."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from crm_reminders.config import CHECK_INTERVAL_SECONDS, TZ
from crm_reminders.engine import EngineSettings, check_reminders

if TYPE_CHECKING:
    from crm_reminders.engine.dispatch import Mailer
    from crm_reminders.storage import EntityStore

log = logging.getLogger(__name__)

JOB_ID = "check_reminders"


def setup_scheduler(
    store: EntityStore,
    mailer: Mailer,
    *,
    lock: asyncio.Lock,
    interval_seconds: int = CHECK_INTERVAL_SECONDS,
    settings: EngineSettings | None = None,
) -> AsyncIOScheduler:
    """One interval job; lock is shared with the HTTP route so passes never overlap."""
    scheduler = AsyncIOScheduler(timezone=TZ.key)

    # max_instances=1 keeps APScheduler from stacking ticks; the lock also
    # covers passes started over HTTP while a tick is pending.
    @scheduler.scheduled_job(
        IntervalTrigger(seconds=interval_seconds),
        id=JOB_ID,
        max_instances=1,
        coalesce=True,
    )
    async def run_check() -> None:
        if lock.locked():
            log.info("Reminder pass already running, skipping this tick")
            return
        async with lock:
            try:
                report = await check_reminders(store, mailer, settings=settings)
            except Exception:
                log.exception("Scheduled reminder pass failed")
                raise
        for result in report.results:
            if result.status == "failed":
                log.warning(
                    "Reminder %s (%s) failed: %s", result.id, result.type, result.error
                )

    return scheduler
