from __future__ import annotations

import asyncio
from dataclasses import replace
from pathlib import Path
from typing import List, Optional, Sequence

import pytest

from loopcast.config import EngineConfig
from loopcast.models import MediaItem, StatusUpdate, StreamProfile, StreamStatus
from loopcast.stream_manager import StreamingManager


class FakeStream:
    def __init__(self) -> None:
        self._chunks: asyncio.Queue = asyncio.Queue()

    def feed(self, data: bytes) -> None:
        self._chunks.put_nowait(data)

    def fail(self, exc: BaseException) -> None:
        self._chunks.put_nowait(exc)

    def close(self) -> None:
        self._chunks.put_nowait(b"")

    async def read(self, n: int = -1) -> bytes:
        chunk = await self._chunks.get()
        if isinstance(chunk, BaseException):
            raise chunk
        return chunk


class FakeProcess:
    def __init__(self, pid: int, output: bytes = b"", exit_code: int = 0) -> None:
        self.pid = pid
        self.stdout = FakeStream()
        self.returncode: Optional[int] = None
        self.terminated = False
        self.killed = False
        self.waited = False
        self.hangs = False
        self._exited = asyncio.Event()
        self._output = output
        self._exit_code = exit_code

    def finish(self, code: int = 0) -> None:
        if self.returncode is not None:
            return
        self.returncode = code
        self.stdout.close()
        self._exited.set()

    async def wait(self) -> int:
        self.waited = True
        await self._exited.wait()
        return self.returncode

    def terminate(self) -> None:
        self.terminated = True
        self.finish(-15)

    def kill(self) -> None:
        self.killed = True
        self.finish(-9)

    async def communicate(self):
        if self.hangs:
            await self._exited.wait()
        self.returncode = self._exit_code
        return self._output, None


class FakeRuntime:
    def __init__(self) -> None:
        self.spawned: List[tuple] = []
        self.fail_with: Optional[BaseException] = None
        self.hang_probe = False
        self.probe_output = b"ffmpeg version 6.1.1 Copyright (c) 2000-2023 the FFmpeg developers\n"

    async def spawn(self, executable: str, args: Sequence[str]) -> FakeProcess:
        if self.fail_with is not None:
            raise self.fail_with
        process = FakeProcess(pid=1000 + len(self.spawned), output=self.probe_output)
        process.hangs = self.hang_probe
        self.spawned.append((executable, list(args), process))
        return process

    @property
    def processes(self) -> List[FakeProcess]:
        return [process for _, _, process in self.spawned]

    @property
    def last(self) -> FakeProcess:
        return self.spawned[-1][2]


class MemoryStore:
    """Media, profile and status store kept in dictionaries."""

    def __init__(self, items: Sequence[MediaItem] = (), profile: Optional[StreamProfile] = None) -> None:
        self.items = {item.id: item for item in items}
        self.profile = profile
        self.current = StreamStatus()
        self.writes: List[StatusUpdate] = []
        self.fail_writes = False

    async def get_media(self, item_id: int) -> Optional[MediaItem]:
        return self.items.get(item_id)

    async def list_media(self) -> List[MediaItem]:
        return sorted(self.items.values(), key=lambda item: (item.playlist_order, item.id))

    async def update_media_title(self, item_id: int, title: str) -> Optional[MediaItem]:
        if item_id not in self.items:
            return None
        self.items[item_id] = replace(self.items[item_id], title=title)
        return self.items[item_id]

    async def delete_media(self, item_id: int) -> Optional[MediaItem]:
        return self.items.pop(item_id, None)

    async def get_active_profile(self) -> Optional[StreamProfile]:
        return self.profile

    async def get_status(self) -> StreamStatus:
        return replace(self.current)

    async def update_status(self, update: StatusUpdate) -> None:
        if self.fail_writes:
            raise RuntimeError("database unavailable")
        self.writes.append(update)
        update.apply(self.current)


async def finish_session(manager: StreamingManager, key: str, code: int = 0) -> None:
    """End the fake process behind ``key`` and wait until its exit is handled."""
    session = manager.registry.get(key)
    assert session is not None, f"no session {key}"
    session.process.finish(code)
    await session.watcher


@pytest.fixture
def media_dir(tmp_path: Path) -> Path:
    for name in ("a.mp4", "b.mp4", "c.mp4"):
        (tmp_path / name).write_bytes(b"\x00\x00\x00\x18ftypmp42")
    return tmp_path


@pytest.fixture
def items() -> List[MediaItem]:
    return [
        MediaItem(id=1, title="A", filename="a.mp4", duration="00:10", playlist_order=1),
        MediaItem(id=2, title="B", filename="b.mp4", duration="00:08", playlist_order=2),
    ]


@pytest.fixture
def profile() -> StreamProfile:
    return StreamProfile(platform="youtube", stream_key="abc")


@pytest.fixture
def store(items: List[MediaItem], profile: StreamProfile) -> MemoryStore:
    return MemoryStore(items, profile)


@pytest.fixture
def engine_config(media_dir: Path) -> EngineConfig:
    return EngineConfig(media_dir=str(media_dir), tick_interval=60, restart_delay=0.05)


@pytest.fixture
def runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
async def manager(engine_config: EngineConfig, store: MemoryStore, runtime: FakeRuntime):
    manager = StreamingManager(engine_config, store, store, store, runtime=runtime)
    yield manager
    await manager.shutdown()
