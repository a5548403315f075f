"""Coordinate stream sessions, the looped playlist and the persisted status."""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
from typing import Any, Dict, List, Optional, Sequence, Set

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from dateutil.tz import tzutc

from .config import EngineConfig, NotifierConfig
from .errors import MediaNotFoundError, NoCurrentItemError, ProfileNotFoundError
from .models import (
    STATUS_ERROR,
    STATUS_LIVE,
    STATUS_OFFLINE,
    UNSET,
    ZERO_UPTIME,
    Destination,
    MediaItem,
    Session,
    StatusUpdate,
    StreamProfile,
    StreamStatus,
    utcnow,
)
from .notifier import Notifier, StreamEvent
from .playlist import PlaylistAdvancer
from .process_controller import AsyncioProcessRuntime, ProcessRuntime, TranscoderController
from .reconciler import StatusReconciler
from .registry import SessionRegistry
from .storage import MediaStore, ProfileStore, StatusStore

logger = logging.getLogger(__name__)

_DEFAULT_RUNTIME: Any = object()


class StreamingManager:
    """Single entry point for request handlers driving the stream engine."""

    def __init__(
        self,
        config: EngineConfig,
        media_store: MediaStore,
        profile_store: ProfileStore,
        status_store: StatusStore,
        runtime: Optional[ProcessRuntime] = _DEFAULT_RUNTIME,
        notifier: Optional[Notifier] = None,
    ):
        if runtime is _DEFAULT_RUNTIME:
            runtime = None if config.mock_processes else AsyncioProcessRuntime()
        self.config = config
        self.media_store = media_store
        self.profile_store = profile_store
        self.status_store = status_store
        self.notifier = notifier or Notifier(NotifierConfig())
        self.registry = SessionRegistry()
        self.scheduler = AsyncIOScheduler(timezone=tzutc())
        self.controller = TranscoderController(config, self.registry, media_store, runtime)
        self.controller.on_exit = self._handle_exit
        self.controller.on_error = self._handle_error
        self.advancer = PlaylistAdvancer(media_store, status_store, profile_store)
        self.reconciler = StatusReconciler(
            status_store,
            self.scheduler,
            is_active=self.is_streaming,
            interval=config.tick_interval,
            baseline=config.viewer_baseline,
            jitter=config.viewer_jitter,
        )
        self.loop_enabled = False
        self.rapid_failures = 0
        self._background: Set[asyncio.Task] = set()

    # Loop flag

    def is_loop_enabled(self) -> bool:
        return self.loop_enabled

    async def set_loop_enabled(self, enabled: bool) -> None:
        self.loop_enabled = enabled
        logger.info("24x7 loop %s", "enabled" if enabled else "disabled")
        await self._write_status(StatusUpdate(loop_playlist=enabled))

    async def loop_status(self) -> Dict[str, bool]:
        status = await self.status_store.get_status()
        return {"loopEnabled": status.loop_playlist, "engineLoopEnabled": self.loop_enabled}

    def is_streaming(self) -> bool:
        return len(self.registry) > 0

    # Starting

    async def start_stream(self, item_id: int, profile: StreamProfile) -> bool:
        started = await self._start(item_id, profile)
        if started:
            self.rapid_failures = 0
        return started

    async def _start(self, item_id: int, profile: StreamProfile) -> bool:
        if not await self.controller.start_session(item_id, profile):
            return False
        await self.advancer.refresh()
        self.reconciler.start_tracking()
        await self._write_status(
            StatusUpdate(status=STATUS_LIVE, current_item_id=item_id, started_at=utcnow(), error_message=None)
        )
        self._notify(StreamEvent("started", item_id, f"streaming to {profile.platform}"))
        return True

    async def start_current(self) -> bool:
        """Start the persisted current item on the active profile."""
        status = await self.status_store.get_status()
        if status.current_item_id is None:
            raise NoCurrentItemError("No video selected for streaming")
        if await self.media_store.get_media(status.current_item_id) is None:
            raise MediaNotFoundError("Selected video not found")
        profile = await self.profile_store.get_active_profile()
        if profile is None:
            raise ProfileNotFoundError("Stream configuration not found")
        self.loop_enabled = status.loop_playlist
        return await self.start_stream(status.current_item_id, profile)

    async def set_current(self, item_id: int) -> StreamStatus:
        if await self.media_store.get_media(item_id) is None:
            raise MediaNotFoundError(f"Video {item_id} not found")
        await self._write_status(StatusUpdate(current_item_id=item_id))
        return await self.status_store.get_status()

    # Playlist editing

    async def rename_media(self, item_id: int, title: str) -> MediaItem:
        item = await self.media_store.update_media_title(item_id, title)
        if item is None:
            raise MediaNotFoundError("Video not found")
        await self.advancer.refresh()
        return item

    async def delete_media(self, item_id: int) -> MediaItem:
        """Remove an item and its file; a running session keeps playing it."""
        item = await self.media_store.delete_media(item_id)
        if item is None:
            raise MediaNotFoundError("Video not found")
        path = self.controller.media_path(item)
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            logger.error("Error deleting video file %s: %s", path, exc)
        await self.advancer.refresh()
        logger.info("Video %s deleted", item_id)
        return item

    async def stream_to_multiple_platforms(self, item_id: int, destinations: Sequence[Destination]) -> bool:
        return await self.controller.start_fanout(item_id, destinations)

    # Stopping

    async def stop_all_streams(self) -> bool:
        self.controller.stop_all()
        self.loop_enabled = False
        self.reconciler.stop_tracking()
        await self._write_status(
            StatusUpdate(
                status=STATUS_OFFLINE,
                current_item_id=None,
                started_at=None,
                viewer_count=0,
                uptime=ZERO_UPTIME,
                loop_playlist=False,
            )
        )
        return True

    async def restart_stream(self) -> StreamStatus:
        """Stop everything now and relaunch the current item after ``restart_delay``.

        The relaunch is not cancellable: a stop issued while it is pending does
        not prevent it.
        """
        status = await self.status_store.get_status()
        if status.current_item_id is None:
            raise NoCurrentItemError("No video selected for streaming")
        item_id = status.current_item_id

        self.controller.stop_all()
        self.reconciler.stop_tracking()
        await self._write_status(StatusUpdate(status=STATUS_OFFLINE, started_at=None))

        if not self.scheduler.running:
            self.scheduler.start()
        run_date = utcnow() + dt.timedelta(seconds=self.config.restart_delay)
        self.scheduler.add_job(
            self._relaunch,
            trigger="date",
            run_date=run_date,
            args=[item_id],
            id=f"restart-{item_id}-{run_date.timestamp()}",
        )
        logger.info("Restart of video %s scheduled for %s", item_id, run_date.isoformat())
        return await self.status_store.get_status()

    async def _relaunch(self, item_id: int) -> None:
        try:
            profile = await self.profile_store.get_active_profile()
            if profile is None:
                logger.warning("Restart of video %s skipped: no stream configuration", item_id)
                return
            await self.start_stream(item_id, profile)
        except Exception as exc:  # noqa: BLE001
            logger.error("Error during stream restart: %s", exc)
            await self._write_status(StatusUpdate(status=STATUS_ERROR, error_message=str(exc)))

    # Process lifecycle

    async def _handle_exit(self, session: Session, returncode: Optional[int]) -> None:
        if not session.primary:
            logger.info("Multi-platform stream %s ended with code %s", session.key, returncode)
            return

        if self.loop_enabled:
            if self._loop_failure_limit_reached(session, returncode):
                await self._halt_loop(session)
                return
            logger.info("Loop enabled - automatically playing next video")
            await self.advancer.advance(self._start)
            return

        logger.info("Stream ended - updating status to offline")
        self.reconciler.stop_tracking()
        await self._write_status(
            StatusUpdate(
                status=STATUS_OFFLINE,
                current_item_id=None,
                started_at=None,
                viewer_count=0,
                uptime=ZERO_UPTIME,
                loop_playlist=False,
            )
        )
        self._notify(StreamEvent("ended", session.item_id, f"ffmpeg exited with code {returncode}"))

    async def _handle_error(self, session: Session, exc: BaseException) -> None:
        if not session.primary:
            logger.error("Multi-platform stream %s failed: %s", session.key, exc)
            return
        logger.error("Stream %s encountered an error: %s", session.key, exc)
        self.loop_enabled = False
        self.reconciler.stop_tracking()
        await self._write_status(
            StatusUpdate(
                status=STATUS_ERROR,
                current_item_id=None,
                started_at=None,
                viewer_count=0,
                uptime=ZERO_UPTIME,
                loop_playlist=False,
                error_message=str(exc),
            )
        )
        self._notify(StreamEvent("error", session.item_id, str(exc)))

    def _loop_failure_limit_reached(self, session: Session, returncode: Optional[int]) -> bool:
        ran_for = (utcnow() - session.started_at).total_seconds()
        if returncode not in (0, None) and ran_for < self.config.rapid_failure_window:
            self.rapid_failures += 1
        else:
            self.rapid_failures = 0
        limit = self.config.loop_failure_limit
        return limit > 0 and self.rapid_failures >= limit

    async def _halt_loop(self, session: Session) -> None:
        message = f"Loop halted after {self.rapid_failures} consecutive failed launches"
        logger.error("%s (last: video %s)", message, session.item_id)
        self.loop_enabled = False
        self.rapid_failures = 0
        self.reconciler.stop_tracking()
        await self._write_status(
            StatusUpdate(
                status=STATUS_ERROR,
                started_at=None,
                viewer_count=0,
                uptime=ZERO_UPTIME,
                loop_playlist=False,
                error_message=message,
            )
        )
        self._notify(StreamEvent("loop_halted", session.item_id, message))

    # Status

    async def status(self) -> Dict[str, Any]:
        status = await self.status_store.get_status()
        sessions: List[Dict[str, Any]] = [
            {
                "key": session.key,
                "videoId": session.item_id,
                "mock": session.mock,
                "startedAt": session.started_at.isoformat(),
                "logTail": session.log[-10:],
            }
            for session in self.registry
        ]
        return {**status.to_dict(), "streaming": self.is_streaming(), "sessions": sessions}

    async def probe_transcoder(self) -> Dict[str, Any]:
        return await self.controller.probe_transcoder()

    async def _write_status(self, update: StatusUpdate) -> None:
        try:
            await self.status_store.update_status(update)
        except Exception as exc:  # noqa: BLE001
            logger.error("Error updating stream status %s: %s", update.changes(), exc)
        else:
            if update.status is not UNSET:
                logger.info("Stream status updated: %s", update.status)

    def _notify(self, event: StreamEvent) -> None:
        if not self.notifier.wants(event.kind):
            return
        task = asyncio.create_task(asyncio.to_thread(self.notifier.notify, event))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def shutdown(self) -> None:
        await self.controller.cancel_watchers()
        self.controller.stop_all()
        self.reconciler.stop_tracking()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
