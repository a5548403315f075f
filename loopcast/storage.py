"""Persistence for media items, destination profiles and stream status."""

from __future__ import annotations

import datetime as dt
import logging
from typing import Any, Iterable, List, Optional, Protocol, Sequence, Tuple

import aiosqlite
from dateutil import parser as date_parser

from .models import STATUS_OFFLINE, ZERO_UPTIME, MediaItem, StatusUpdate, StreamProfile, StreamStatus

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS videos (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    title           TEXT NOT NULL,
    filename        TEXT NOT NULL,
    duration        TEXT NOT NULL DEFAULT '00:00',
    playlist_order  INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS stream_configs (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    platform        TEXT NOT NULL,
    stream_key      TEXT NOT NULL,
    rtmp_url        TEXT,
    resolution      TEXT NOT NULL,
    framerate       INTEGER NOT NULL,
    bitrate         INTEGER NOT NULL,
    audio_quality   INTEGER NOT NULL,
    is_active       INTEGER DEFAULT 0
);

CREATE TABLE IF NOT EXISTS stream_status (
    id                INTEGER PRIMARY KEY AUTOINCREMENT,
    status            TEXT NOT NULL,
    viewer_count      INTEGER DEFAULT 0,
    uptime            TEXT DEFAULT '00:00:00',
    current_video_id  INTEGER,
    started_at        TEXT,
    loop_playlist     INTEGER DEFAULT 0,
    error_message     TEXT
);
"""

# StatusUpdate field -> stream_status column
_STATUS_COLUMNS = {
    "status": "status",
    "current_item_id": "current_video_id",
    "started_at": "started_at",
    "uptime": "uptime",
    "viewer_count": "viewer_count",
    "loop_playlist": "loop_playlist",
    "error_message": "error_message",
}

_LATEST_STATUS = "(SELECT MAX(id) FROM stream_status)"


class MediaStore(Protocol):
    async def get_media(self, item_id: int) -> Optional[MediaItem]: ...

    async def list_media(self) -> List[MediaItem]: ...

    async def update_media_title(self, item_id: int, title: str) -> Optional[MediaItem]: ...

    async def delete_media(self, item_id: int) -> Optional[MediaItem]: ...


class ProfileStore(Protocol):
    async def get_active_profile(self) -> Optional[StreamProfile]: ...


class StatusStore(Protocol):
    async def get_status(self) -> StreamStatus: ...

    async def update_status(self, update: StatusUpdate) -> None: ...


def _to_column(name: str, value: Any) -> Any:
    if name == "started_at" and isinstance(value, dt.datetime):
        return value.isoformat()
    if name == "loop_playlist":
        return int(bool(value))
    return value


class SQLiteStore:
    """aiosqlite-backed implementation of the media, profile and status stores."""

    def __init__(self, path: str):
        self.path = path
        self._db: Optional[aiosqlite.Connection] = None

    async def open(self) -> None:
        self._db = await aiosqlite.connect(self.path)
        self._db.row_factory = aiosqlite.Row
        await self._db.executescript(SCHEMA)
        async with self._db.execute("SELECT COUNT(*) FROM stream_status") as cursor:
            (count,) = await cursor.fetchone()
        if count == 0:
            await self._db.execute(
                "INSERT INTO stream_status (status, viewer_count, uptime, loop_playlist) VALUES (?, ?, ?, ?)",
                (STATUS_OFFLINE, 0, ZERO_UPTIME, 0),
            )
            logger.info("Default stream status initialized")
        await self._db.commit()

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("SQLiteStore.open() has not been called.")
        return self._db

    # Media

    async def get_media(self, item_id: int) -> Optional[MediaItem]:
        async with self.db.execute("SELECT * FROM videos WHERE id = ?", (item_id,)) as cursor:
            row = await cursor.fetchone()
        return self._media_from_row(row) if row else None

    async def list_media(self) -> List[MediaItem]:
        async with self.db.execute("SELECT * FROM videos ORDER BY playlist_order ASC, id ASC") as cursor:
            rows = await cursor.fetchall()
        return [self._media_from_row(row) for row in rows]

    async def add_media(self, title: str, filename: str, duration: str = "00:00") -> MediaItem:
        async with self.db.execute("SELECT COALESCE(MAX(playlist_order), 0) FROM videos") as cursor:
            (last_order,) = await cursor.fetchone()
        cursor = await self.db.execute(
            "INSERT INTO videos (title, filename, duration, playlist_order) VALUES (?, ?, ?, ?)",
            (title, filename, duration, last_order + 1),
        )
        await self.db.commit()
        return MediaItem(
            id=cursor.lastrowid, title=title, filename=filename, duration=duration, playlist_order=last_order + 1
        )

    async def update_media_title(self, item_id: int, title: str) -> Optional[MediaItem]:
        cursor = await self.db.execute("UPDATE videos SET title = ? WHERE id = ?", (title, item_id))
        await self.db.commit()
        if cursor.rowcount == 0:
            return None
        return await self.get_media(item_id)

    async def delete_media(self, item_id: int) -> Optional[MediaItem]:
        """Delete the row and return what it held, or ``None`` for an unknown id."""
        item = await self.get_media(item_id)
        if item is None:
            return None
        await self.db.execute("DELETE FROM videos WHERE id = ?", (item_id,))
        await self.db.commit()
        return item

    async def reorder_media(self, item_ids: Sequence[int]) -> None:
        await self.set_playlist_orders(enumerate(item_ids, start=1))

    async def set_playlist_orders(self, positions: Iterable[Tuple[int, int]]) -> None:
        """Apply ``(playlist_order, item_id)`` pairs in one transaction."""
        await self.db.executemany("UPDATE videos SET playlist_order = ? WHERE id = ?", list(positions))
        await self.db.commit()

    @staticmethod
    def _media_from_row(row: aiosqlite.Row) -> MediaItem:
        return MediaItem(
            id=row["id"],
            title=row["title"],
            filename=row["filename"],
            duration=row["duration"],
            playlist_order=row["playlist_order"],
        )

    # Profiles

    async def get_active_profile(self) -> Optional[StreamProfile]:
        async with self.db.execute(
            "SELECT * FROM stream_configs WHERE is_active = 1 ORDER BY id DESC LIMIT 1"
        ) as cursor:
            row = await cursor.fetchone()
        if not row:
            return None
        return StreamProfile(
            platform=row["platform"],
            stream_key=row["stream_key"],
            rtmp_url=row["rtmp_url"],
            resolution=row["resolution"],
            framerate=row["framerate"],
            bitrate=row["bitrate"],
            audio_quality=row["audio_quality"],
        )

    async def save_profile(self, profile: StreamProfile) -> None:
        await self.db.execute("UPDATE stream_configs SET is_active = 0")
        await self.db.execute(
            "INSERT INTO stream_configs (platform, stream_key, rtmp_url, resolution, framerate, bitrate, "
            "audio_quality, is_active) VALUES (?, ?, ?, ?, ?, ?, ?, 1)",
            (
                profile.platform,
                profile.stream_key,
                profile.rtmp_url,
                profile.resolution,
                profile.framerate,
                profile.bitrate,
                profile.audio_quality,
            ),
        )
        await self.db.commit()

    # Status

    async def get_status(self) -> StreamStatus:
        async with self.db.execute("SELECT * FROM stream_status ORDER BY id DESC LIMIT 1") as cursor:
            row = await cursor.fetchone()
        if not row:
            return StreamStatus()
        started_at = row["started_at"]
        return StreamStatus(
            status=row["status"],
            current_item_id=row["current_video_id"],
            started_at=date_parser.isoparse(started_at) if started_at else None,
            uptime=row["uptime"] or ZERO_UPTIME,
            viewer_count=row["viewer_count"] or 0,
            loop_playlist=bool(row["loop_playlist"]),
            error_message=row["error_message"],
        )

    async def update_status(self, update: StatusUpdate) -> None:
        changes = update.changes()
        if not changes:
            return
        assignments = ", ".join(f"{_STATUS_COLUMNS[name]} = ?" for name in changes)
        values = [_to_column(name, value) for name, value in changes.items()]
        await self.db.execute(f"UPDATE stream_status SET {assignments} WHERE id = {_LATEST_STATUS}", values)  # noqa: S608
        await self.db.commit()
