"""Periodic relay jobs, run by APScheduler on the application's event loop.

- debounce_tick_job: evaluate quiet checkouts (every DEBOUNCE_TICK_SECONDS)
- sweep_job: reap stale locks, fire due scheduled actions (every SWEEP_INTERVAL_SECONDS)
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler

if TYPE_CHECKING:
    from src.serve import Relay

logger = logging.getLogger(__name__)


async def debounce_tick_job(relay: Relay) -> None:
    """Consume checkouts that have been quiet for the debounce delay."""
    try:
        consumed = await relay.router.run_debounce_tick()
        if consumed:
            logger.info("Debounce tick complete: %d checkout(s) evaluated", consumed)
    except Exception:
        logger.warning("Debounce tick job failed", exc_info=True)


async def sweep_job(relay: Relay) -> None:
    """Fire scheduled actions whose timers were lost (restart) or failed."""
    try:
        fired = await relay.scheduler.sweep()
        logger.info("Scheduled-action sweep complete: %d fired", fired)
    except Exception:
        logger.warning("Scheduled-action sweep job failed", exc_info=True)


def build_scheduler(relay: Relay) -> AsyncIOScheduler:
    """Create (not start) the APScheduler instance with the relay jobs."""
    scheduler = AsyncIOScheduler(timezone="UTC")
    scheduler.add_job(
        debounce_tick_job,
        "interval",
        seconds=relay.settings.debounce_tick_seconds,
        args=[relay],
        id="debounce_tick",
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        sweep_job,
        "interval",
        seconds=relay.settings.sweep_interval_seconds,
        args=[relay],
        id="scheduled_sweep",
        max_instances=1,
        coalesce=True,
    )
    return scheduler
