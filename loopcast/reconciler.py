"""Periodic uptime and viewer-count updates for the live status row."""

from __future__ import annotations

import datetime as dt
import logging
import random
from typing import Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from .models import STATUS_LIVE, StatusUpdate, utcnow
from .storage import StatusStore

logger = logging.getLogger(__name__)

JOB_ID = "status-reconciler"


def format_uptime(seconds: float) -> str:
    total = max(0, int(seconds))
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


class StatusReconciler:
    """Ticks on the scheduler while a session is active.

    The viewer count is a display placeholder: a baseline with random jitter,
    never negative.
    """

    def __init__(
        self,
        status_store: StatusStore,
        scheduler: AsyncIOScheduler,
        is_active: Callable[[], bool],
        interval: float = 5.0,
        baseline: int = 50,
        jitter: int = 50,
        clock: Callable[[], dt.datetime] = utcnow,
        rng: Optional[random.Random] = None,
    ):
        self.status_store = status_store
        self.scheduler = scheduler
        self.is_active = is_active
        self.interval = interval
        self.baseline = baseline
        self.jitter = jitter
        self.clock = clock
        self.rng = rng or random.Random()
        self.started_at: Optional[dt.datetime] = None

    @property
    def is_tracking(self) -> bool:
        return self.started_at is not None

    def start_tracking(self) -> None:
        self.started_at = self.clock()
        if not self.scheduler.running:
            self.scheduler.start()
        self.scheduler.add_job(
            self.tick,
            trigger="interval",
            seconds=self.interval,
            id=JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

    def stop_tracking(self) -> None:
        if self.scheduler.get_job(JOB_ID) is not None:
            self.scheduler.remove_job(JOB_ID)
        self.started_at = None

    def synthetic_viewers(self) -> int:
        if self.jitter <= 0:
            return max(0, self.baseline)
        return max(0, self.baseline + self.rng.randint(-self.jitter, self.jitter - 1))

    async def tick(self) -> None:
        if self.started_at is None or not self.is_active():
            return
        uptime = format_uptime((self.clock() - self.started_at).total_seconds())
        try:
            status = await self.status_store.get_status()
            if status.status != STATUS_LIVE:
                return
            await self.status_store.update_status(
                StatusUpdate(uptime=uptime, viewer_count=self.synthetic_viewers())
            )
        except Exception as exc:  # noqa: BLE001
            logger.error("Error updating uptime and viewer count: %s", exc)
