"""
APScheduler-based periodic sweep of expired agent state.

This module wraps an `AsyncIOScheduler` (the asyncio variant of the Advanced
Python Scheduler) that runs `AgentStateStore.sweep_expired` on a fixed
interval, five minutes by default. Reads of the store already hide expired
records, so the sweep only reclaims space; a failed run is logged and the
next run simply tries again.

Lifecycle: `start()` must be called from inside a running event loop (the
FastAPI lifespan does this) and `stop()` shuts the scheduler down so no timer
outlives the application.
"""

from __future__ import annotations

import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from monitoring.metrics import AGENT_STATES_SWEPT, ERROR_COUNT
from services.agent_state import AgentStateStore

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "agent_state_sweep"
DEFAULT_SWEEP_INTERVAL_SECONDS = 300


def run_sweep_job(store: AgentStateStore, logger: logging.Logger) -> int:
    """
    Execute one sweep and log a concise summary; never raise exceptions.

    Returns:
        int: Number of deleted records, 0 when the sweep failed.
    """
    try:
        deleted = store.sweep_expired()
    except Exception as exc:
        ERROR_COUNT.labels(type='storage', location='agent_state_sweep').inc()
        logger.warning("agent_state sweep failed: %s", exc)
        return 0

    AGENT_STATES_SWEPT.inc(deleted)
    if deleted:
        logger.info("agent_state sweep: deleted=%s", deleted)
    else:
        logger.debug("agent_state sweep: nothing expired")
    return deleted


class AgentStateSweeper:
    """
    Owns the scheduler that periodically sweeps expired agent state.

    Args:
        store (AgentStateStore): Store to sweep.
        interval_seconds (int): Seconds between sweeps.
    """

    def __init__(self, store: AgentStateStore, interval_seconds: int = DEFAULT_SWEEP_INTERVAL_SECONDS):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.store = store
        self.interval_seconds = interval_seconds
        self._scheduler: Optional[AsyncIOScheduler] = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> None:
        """Start the periodic sweep; calling it while running is a no-op."""
        if self.running:
            return
        scheduler = AsyncIOScheduler()
        scheduler.add_job(
            run_sweep_job,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            args=[self.store, logger],
            id=SWEEP_JOB_ID,
            coalesce=True,
            max_instances=1,
            replace_existing=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info(f"[AgentStateSweeper] Started, interval {self.interval_seconds}s")

    def stop(self) -> None:
        """Stop the scheduler if it was started. Safe to call more than once."""
        scheduler, self._scheduler = self._scheduler, None
        if scheduler is None or not scheduler.running:
            return
        scheduler.shutdown(wait=False)
        logger.info("[AgentStateSweeper] Stopped")
