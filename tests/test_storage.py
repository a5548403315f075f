import datetime as dt

import pytest
from dateutil.tz import tzutc

from loopcast.models import STATUS_LIVE, STATUS_OFFLINE, StatusUpdate, StreamProfile
from loopcast.storage import SQLiteStore


@pytest.fixture
async def sqlite_store(tmp_path):
    store = SQLiteStore(str(tmp_path / "loopcast.db"))
    await store.open()
    yield store
    await store.close()


async def test_open_bootstraps_default_status(sqlite_store):
    status = await sqlite_store.get_status()

    assert status.status == STATUS_OFFLINE
    assert status.uptime == "00:00:00"
    assert status.viewer_count == 0
    assert not status.loop_playlist
    assert status.current_item_id is None


async def test_reopening_keeps_single_status_row(tmp_path):
    path = str(tmp_path / "loopcast.db")
    for _ in range(2):
        store = SQLiteStore(path)
        await store.open()
        await store.close()

    store = SQLiteStore(path)
    await store.open()
    async with store.db.execute("SELECT COUNT(*) FROM stream_status") as cursor:
        (count,) = await cursor.fetchone()
    await store.close()
    assert count == 1


async def test_update_status_writes_only_set_fields(sqlite_store):
    started = dt.datetime(2024, 5, 1, 12, 0, tzinfo=tzutc())
    await sqlite_store.update_status(
        StatusUpdate(status=STATUS_LIVE, current_item_id=3, started_at=started, loop_playlist=True)
    )
    await sqlite_store.update_status(StatusUpdate(uptime="00:01:00", viewer_count=42))

    status = await sqlite_store.get_status()
    assert status.status == STATUS_LIVE
    assert status.current_item_id == 3
    assert status.started_at == started
    assert status.loop_playlist
    assert status.uptime == "00:01:00"
    assert status.viewer_count == 42


async def test_update_status_none_clears_fields(sqlite_store):
    await sqlite_store.update_status(StatusUpdate(current_item_id=3, error_message="boom"))
    await sqlite_store.update_status(StatusUpdate(current_item_id=None, error_message=None))

    status = await sqlite_store.get_status()
    assert status.current_item_id is None
    assert status.error_message is None


async def test_media_ordering_and_reorder(sqlite_store):
    first = await sqlite_store.add_media("First", "a.mp4", "00:10")
    second = await sqlite_store.add_media("Second", "b.mp4", "00:08")
    third = await sqlite_store.add_media("Third", "c.mp4")

    assert [item.playlist_order for item in (first, second, third)] == [1, 2, 3]

    await sqlite_store.reorder_media([third.id, first.id, second.id])

    assert [item.title for item in await sqlite_store.list_media()] == ["Third", "First", "Second"]
    assert (await sqlite_store.get_media(first.id)).playlist_order == 2
    assert await sqlite_store.get_media(999) is None


async def test_save_profile_replaces_active_profile(sqlite_store):
    assert await sqlite_store.get_active_profile() is None

    await sqlite_store.save_profile(StreamProfile(platform="youtube", stream_key="old"))
    await sqlite_store.save_profile(
        StreamProfile(platform="custom", stream_key="new", rtmp_url="rtmp://ingest/live", resolution="720p")
    )

    profile = await sqlite_store.get_active_profile()
    assert profile.stream_key == "new"
    assert profile.rtmp_url == "rtmp://ingest/live"
    assert profile.resolution == "720p"


def test_status_update_changes():
    update = StatusUpdate(status=STATUS_OFFLINE, current_item_id=None)
    assert update.changes() == {"status": STATUS_OFFLINE, "current_item_id": None}
    assert StatusUpdate().changes() == {}


async def test_update_media_title(sqlite_store):
    item = await sqlite_store.add_media("Draft", "a.mp4")

    renamed = await sqlite_store.update_media_title(item.id, "Final")

    assert renamed.title == "Final"
    assert renamed.playlist_order == item.playlist_order
    assert await sqlite_store.update_media_title(999, "ghost") is None


async def test_delete_media_returns_removed_row(sqlite_store):
    first = await sqlite_store.add_media("First", "a.mp4")
    second = await sqlite_store.add_media("Second", "b.mp4")

    removed = await sqlite_store.delete_media(first.id)

    assert removed.filename == "a.mp4"
    assert [item.id for item in await sqlite_store.list_media()] == [second.id]
    assert await sqlite_store.delete_media(first.id) is None


async def test_set_playlist_orders(sqlite_store):
    first = await sqlite_store.add_media("First", "a.mp4")
    second = await sqlite_store.add_media("Second", "b.mp4")

    await sqlite_store.set_playlist_orders([(10, first.id), (5, second.id)])

    assert [item.title for item in await sqlite_store.list_media()] == ["Second", "First"]
