import datetime as dt
import random

import pytest
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from dateutil.tz import tzutc

from conftest import MemoryStore
from loopcast.models import STATUS_LIVE, STATUS_OFFLINE
from loopcast.reconciler import JOB_ID, StatusReconciler, format_uptime


class FakeClock:
    def __init__(self):
        self.now = dt.datetime(2024, 1, 1, tzinfo=tzutc())

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += dt.timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def scheduler():
    scheduler = AsyncIOScheduler(timezone=tzutc())
    yield scheduler
    if scheduler.running:
        scheduler.shutdown(wait=False)


@pytest.fixture
def status_store():
    store = MemoryStore()
    store.current.status = STATUS_LIVE
    return store


@pytest.fixture
def reconciler(status_store, scheduler, clock):
    return StatusReconciler(
        status_store,
        scheduler,
        is_active=lambda: True,
        interval=60,
        clock=clock,
        rng=random.Random(7),
    )


@pytest.mark.parametrize(
    "seconds, expected",
    [(0, "00:00:00"), (59.9, "00:00:59"), (3725, "01:02:05"), (90000, "25:00:00"), (-3, "00:00:00")],
)
def test_format_uptime(seconds, expected):
    assert format_uptime(seconds) == expected


async def test_tick_writes_uptime_and_viewers(reconciler, status_store, clock):
    reconciler.start_tracking()
    clock.advance(3725)

    await reconciler.tick()

    assert status_store.current.uptime == "01:02:05"
    assert 0 <= status_store.current.viewer_count < 100
    assert list(status_store.writes[-1].changes()) == ["uptime", "viewer_count"]


async def test_tick_skips_status_that_is_not_live(reconciler, status_store, clock):
    status_store.current.status = STATUS_OFFLINE
    reconciler.start_tracking()
    clock.advance(10)

    await reconciler.tick()

    assert status_store.writes == []


async def test_tick_skips_without_active_sessions(status_store, scheduler, clock):
    reconciler = StatusReconciler(status_store, scheduler, is_active=lambda: False, clock=clock)
    reconciler.start_tracking()

    await reconciler.tick()

    assert status_store.writes == []


async def test_stop_tracking_cancels_job_and_later_ticks(reconciler, status_store, scheduler):
    reconciler.start_tracking()
    assert scheduler.get_job(JOB_ID) is not None

    reconciler.stop_tracking()
    await reconciler.tick()

    assert scheduler.get_job(JOB_ID) is None
    assert not reconciler.is_tracking
    assert status_store.writes == []


async def test_start_tracking_resets_clock(reconciler, clock):
    reconciler.start_tracking()
    clock.advance(30)
    reconciler.start_tracking()

    assert reconciler.started_at == clock.now
    assert len([job for job in reconciler.scheduler.get_jobs() if job.id == JOB_ID]) == 1


def test_synthetic_viewers_never_negative(status_store):
    reconciler = StatusReconciler(
        status_store, AsyncIOScheduler(), is_active=lambda: True, baseline=10, jitter=50, rng=random.Random(1)
    )
    counts = [reconciler.synthetic_viewers() for _ in range(500)]

    assert min(counts) == 0
    assert max(counts) <= 59


def test_synthetic_viewers_without_jitter(status_store):
    reconciler = StatusReconciler(status_store, AsyncIOScheduler(), is_active=lambda: True, baseline=50, jitter=0)
    assert reconciler.synthetic_viewers() == 50


async def test_tick_survives_write_failure(reconciler, status_store, clock, caplog):
    reconciler.start_tracking()
    status_store.fail_writes = True
    clock.advance(5)

    await reconciler.tick()

    assert "Error updating uptime and viewer count" in caplog.text
