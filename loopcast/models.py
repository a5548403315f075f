"""Domain models for stream sessions and persisted status."""

from __future__ import annotations

import asyncio
import datetime as dt
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional

from dateutil.tz import tzutc

STATUS_OFFLINE = "offline"
STATUS_LIVE = "live"
STATUS_ERROR = "error"

ZERO_UPTIME = "00:00:00"

SESSION_LOG_LIMIT = 200


def utcnow() -> dt.datetime:
    return dt.datetime.now(tz=tzutc())


@dataclass(frozen=True)
class StreamProfile:
    platform: str
    stream_key: str
    rtmp_url: Optional[str] = None
    resolution: str = "1920x1080"
    framerate: int = 30
    bitrate: int = 2500
    audio_quality: int = 128


@dataclass
class MediaItem:
    id: int
    title: str
    filename: str
    duration: str = "00:00"
    playlist_order: int = 0


@dataclass(frozen=True)
class Destination:
    url: str
    key: str

    @property
    def target(self) -> str:
        return f"{self.url.rstrip('/')}/{self.key}"


@dataclass
class Session:
    key: str
    item_id: int
    process: Any = None
    profile: Optional[StreamProfile] = None
    primary: bool = True
    started_at: dt.datetime = field(default_factory=utcnow)
    log: List[str] = field(default_factory=list)
    watcher: Optional[asyncio.Task] = field(default=None, repr=False, compare=False)

    @property
    def mock(self) -> bool:
        return self.process is None

    def append_log(self, message: str) -> None:
        timestamp = utcnow().isoformat()
        self.log.append(f"[{timestamp}] {message}")
        del self.log[:-SESSION_LOG_LIMIT]


@dataclass
class StreamStatus:
    status: str = STATUS_OFFLINE
    current_item_id: Optional[int] = None
    started_at: Optional[dt.datetime] = None
    uptime: str = ZERO_UPTIME
    viewer_count: int = 0
    loop_playlist: bool = False
    error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "currentVideoId": self.current_item_id,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "uptime": self.uptime,
            "viewerCount": self.viewer_count,
            "loopPlaylist": self.loop_playlist,
            "errorMessage": self.error_message,
        }


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()


@dataclass
class StatusUpdate:
    """Partial update of the latest status row.

    Fields left as ``UNSET`` are not written. ``None`` is a value: it clears
    ``current_item_id``, ``started_at`` or ``error_message``.
    """

    status: Any = UNSET
    current_item_id: Any = UNSET
    started_at: Any = UNSET
    uptime: Any = UNSET
    viewer_count: Any = UNSET
    loop_playlist: Any = UNSET
    error_message: Any = UNSET

    def changes(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name) is not UNSET}

    def apply(self, current: StreamStatus) -> StreamStatus:
        for name, value in self.changes().items():
            setattr(current, name, value)
        return current
