"""
Expired-session sweeper.

Completes in-progress sessions whose duration has elapsed even if the student
never comes back to check. This is housekeeping: reads and writes of a single
session already re-check the timeout, so a failed sweep is logged and dropped.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from examhall.services.exam_status import as_utc, utcnow

logger = logging.getLogger(__name__)


class ExpiredSessionSweeper:
    """Batch-completes timed-out sessions through the lifecycle manager."""

    def __init__(self, store, lifecycle):
        self.store = store
        self.lifecycle = lifecycle

    def find_expired(self, now: datetime) -> list[int]:
        expired = []
        for session, duration in self.store.list_in_progress_sessions():
            start_time = as_utc(session.start_time)
            if start_time is None:
                continue
            if now > start_time + timedelta(minutes=duration):
                expired.append(session.id)
        return expired

    def sweep(self, now: Optional[datetime] = None) -> int:
        """Complete every expired session; returns how many were transitioned, 0 on failure."""
        now = as_utc(now) or utcnow()
        try:
            expired = self.find_expired(now)
            if not expired:
                return 0

            completed = self.lifecycle.force_complete(expired, now)
            logger.info("Auto-completed %d expired exam sessions", completed)
            return completed
        except Exception:
            logger.exception("Failed to check and complete expired sessions")
            return 0


async def run_periodic_sweeps(make_sweeper: Callable[[], tuple], interval_seconds: int) -> None:
    """
    Run a sweep every interval_seconds until cancelled.

    make_sweeper returns (sweeper, close) so each pass gets a fresh database
    session; close is called once the pass is done. Passes run in a worker
    thread to keep blocking database calls off the event loop.
    """
    logger.info("Expired-session sweeper running every %ss", interval_seconds)

    def _one_pass() -> int:
        sweeper, close = make_sweeper()
        try:
            return sweeper.sweep()
        finally:
            close()

    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await asyncio.to_thread(_one_pass)
        except Exception:
            logger.exception("Sweeper pass could not run")
