"""Launch, observe and stop the ffmpeg process behind each stream session."""

from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Sequence

from .config import EngineConfig
from .errors import EngineError, MediaNotFoundError, ProfileNotFoundError, RuntimeUnavailableError
from .ffmpeg import build_fanout_args, build_stream_args, destination_url, format_command
from .models import Destination, MediaItem, Session, StreamProfile
from .registry import SessionRegistry, multistream_key, session_key
from .storage import MediaStore

logger = logging.getLogger(__name__)

ExitCallback = Callable[[Session, Optional[int]], Awaitable[None]]
ErrorCallback = Callable[[Session, BaseException], Awaitable[None]]

_LINE_BREAK = re.compile(r"[\r\n]+")
_READ_CHUNK = 4096

# category -> (substrings, operator hint)
OUTPUT_SIGNALS: Dict[str, tuple] = {
    "connected": (
        ("Stream mapping:", "Press [q] to stop"),
        "ffmpeg connected to the RTMP server",
    ),
    "connection_refused": (
        ("Connection refused", "No route to host"),
        "connection error, check stream key and network connectivity",
    ),
    "auth_rejected": (
        ("401 Unauthorized", "403 Forbidden", "Invalid stream name"),
        "authentication error, check the platform stream key",
    ),
    "network": (
        ("Network is unreachable", "Connection timed out"),
        "network error, check internet connection and firewall settings",
    ),
    "format": (
        ("Invalid argument", "not known"),
        "format error, check video codec and streaming parameters",
    ),
}


def classify_output(line: str) -> Optional[str]:
    for category, (needles, _hint) in OUTPUT_SIGNALS.items():
        if any(needle in line for needle in needles):
            return category
    return None


def _mask(text: str, secret: Optional[str]) -> str:
    return text.replace(secret, "****") if secret else text


class ProcessRuntime(Protocol):
    async def spawn(self, executable: str, args: Sequence[str]) -> Any: ...


class AsyncioProcessRuntime:
    """Spawn ffmpeg through asyncio with stderr folded into stdout."""

    async def spawn(self, executable: str, args: Sequence[str]) -> asyncio.subprocess.Process:
        try:
            return await asyncio.create_subprocess_exec(
                executable,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except NotImplementedError as exc:
            raise RuntimeUnavailableError("event loop does not support subprocesses") from exc


class TranscoderController:
    """Owns one ffmpeg process per registry key and reports how it ends."""

    def __init__(
        self,
        config: EngineConfig,
        registry: SessionRegistry,
        media_store: MediaStore,
        runtime: Optional[ProcessRuntime],
    ):
        self.config = config
        self.registry = registry
        self.media_store = media_store
        self.runtime = runtime
        self.on_exit: Optional[ExitCallback] = None
        self.on_error: Optional[ErrorCallback] = None

    def media_path(self, item: MediaItem) -> Path:
        path = Path(item.filename)
        if path.is_absolute():
            return path
        return Path(self.config.media_dir) / path

    async def _resolve_media(self, item_id: int) -> Path:
        item = await self.media_store.get_media(item_id)
        if item is None:
            raise MediaNotFoundError(f"Video {item_id} not found")
        path = self.media_path(item)
        if not path.is_file():
            raise MediaNotFoundError(f"Video file {path} not found on disk")
        return path

    async def start_session(self, item_id: int, profile: StreamProfile) -> bool:
        logger.info("Starting RTMP stream for video %s on %s", item_id, profile.platform)
        try:
            if not profile.stream_key:
                raise ProfileNotFoundError("Destination profile has no stream key")
            path = await self._resolve_media(item_id)
        except EngineError as exc:
            logger.error("Cannot start stream for video %s: %s", item_id, exc)
            return False
        except Exception as exc:  # noqa: BLE001
            logger.error("Error starting RTMP stream for video %s: %s", item_id, exc)
            return False

        key = session_key(item_id)
        if key in self.registry:
            self.stop_session(key)

        args = build_stream_args(str(path), destination_url(profile), profile)
        logger.info("FFmpeg command: %s", _mask(format_command(self.config.ffmpeg_binary, args), profile.stream_key))
        session = Session(key=key, item_id=item_id, profile=profile)
        return await self._launch(session, args)

    async def start_fanout(self, item_id: int, destinations: Sequence[Destination]) -> bool:
        if not destinations:
            logger.error("Multi-platform stream for video %s has no destinations", item_id)
            return False
        try:
            path = await self._resolve_media(item_id)
        except EngineError as exc:
            logger.error("Cannot start multi-platform stream for video %s: %s", item_id, exc)
            return False
        except Exception as exc:  # noqa: BLE001
            logger.error("Error starting multi-platform stream for video %s: %s", item_id, exc)
            return False

        key = multistream_key(item_id)
        if key in self.registry:
            self.stop_session(key)

        logger.info("Starting multi-platform stream for video %s to %d platforms", item_id, len(destinations))
        session = Session(key=key, item_id=item_id, primary=False)
        return await self._launch(session, build_fanout_args(str(path), destinations))

    async def _launch(self, session: Session, args: Sequence[str]) -> bool:
        if self.runtime is None:
            return self._register_mock(session, "process runtime disabled")
        try:
            process = await self.runtime.spawn(self.config.ffmpeg_binary, args)
        except RuntimeUnavailableError as exc:
            return self._register_mock(session, str(exc))
        except OSError as exc:
            logger.error("FFmpeg error for %s: %s", session.key, exc)
            session.append_log(f"Launch failed: {exc}")
            await self._dispatch_error(session, exc)
            return False

        session.process = process
        session.append_log(f"ffmpeg started with pid {process.pid}")
        self.registry.add(session)
        session.watcher = asyncio.create_task(self._watch(session), name=f"watch-{session.key}")
        return True

    def _register_mock(self, session: Session, reason: str) -> bool:
        logger.warning("Using mock stream for %s: %s", session.key, reason)
        session.append_log(f"Mock session ({reason})")
        self.registry.add(session)
        return True

    async def _watch(self, session: Session) -> None:
        process = session.process
        try:
            await self._drain_output(session, process)
            returncode = await process.wait()
        except (OSError, ValueError) as exc:
            logger.error("FFmpeg error for %s: %s", session.key, exc)
            if self.registry.remove(session.key, process) is not None:
                await self._dispatch_error(session, exc)
            return

        logger.info("FFmpeg process for %s exited with code %s", session.key, returncode)
        session.append_log(f"ffmpeg exited with code {returncode}")
        if self.registry.remove(session.key, process) is None:
            logger.debug("Exit of %s was already handled by a stop or a newer session", session.key)
            return
        await self._dispatch_exit(session, returncode)

    async def _drain_output(self, session: Session, process: Any) -> None:
        stream = process.stdout
        if stream is None:
            return
        pending = ""
        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                break
            pending += chunk.decode("utf-8", errors="replace")
            *lines, pending = _LINE_BREAK.split(pending)
            for line in lines:
                self._observe(session, line)
        if pending:
            self._observe(session, pending)

    def _observe(self, session: Session, line: str) -> None:
        if not line:
            return
        logger.debug("FFmpeg [%s]: %s", session.key, line)
        category = classify_output(line)
        if category is None:
            return
        hint = OUTPUT_SIGNALS[category][1]
        session.append_log(f"{category}: {line}")
        if category == "connected":
            logger.info("FFmpeg %s: %s", session.key, hint)
        else:
            logger.warning("FFmpeg %s: %s", session.key, hint)

    async def _dispatch_exit(self, session: Session, returncode: Optional[int]) -> None:
        if self.on_exit is None:
            return
        try:
            await self.on_exit(session, returncode)
        except Exception:  # noqa: BLE001
            logger.exception("Exit handler failed for %s", session.key)

    async def _dispatch_error(self, session: Session, exc: BaseException) -> None:
        if self.on_error is None:
            return
        try:
            await self.on_error(session, exc)
        except Exception:  # noqa: BLE001
            logger.exception("Error handler failed for %s", session.key)

    def stop_session(self, key: str) -> bool:
        session = self.registry.remove(key)
        if session is not None:
            self._terminate(session)
        return True

    def stop_all(self) -> bool:
        for session in self.registry.clear():
            self._terminate(session)
        return True

    def _terminate(self, session: Session) -> None:
        process = session.process
        if process is None or process.returncode is not None:
            logger.info("RTMP stream %s stopped", session.key)
            return
        session.append_log("Stopping ffmpeg process.")
        try:
            process.terminate()
        except ProcessLookupError:
            logger.debug("FFmpeg process for %s already gone", session.key)
        logger.info("RTMP stream %s stopped", session.key)

    async def cancel_watchers(self) -> None:
        tasks = [s.watcher for s in self.registry if s.watcher is not None and not s.watcher.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def probe_transcoder(self, timeout: float = 10.0) -> Dict[str, Any]:
        """Run ``ffmpeg -version`` and report whether the binary works."""
        binary = self.config.ffmpeg_binary
        if self.runtime is None:
            return {
                "success": False,
                "message": "process runtime not available in this environment",
                "error": "streaming not supported",
            }
        try:
            process = await self.runtime.spawn(binary, ["-version"])
        except (RuntimeUnavailableError, OSError) as exc:
            return {"success": False, "message": "FFmpeg is not installed or not accessible", "error": str(exc)}

        try:
            output, _ = await asyncio.wait_for(process.communicate(), timeout)
        except asyncio.TimeoutError:
            try:
                process.kill()
            except ProcessLookupError:
                logger.debug("FFmpeg probe already exited")
            await process.wait()
            return {"success": False, "message": "FFmpeg test timed out", "error": "Test took too long to complete"}

        text = (output or b"").decode("utf-8", errors="replace")
        match = re.search(r"ffmpeg version (\S+)", text)
        if process.returncode == 0 and match:
            version = match.group(1)
            return {"success": True, "version": version, "message": f"FFmpeg {version} is available and working"}
        return {
            "success": False,
            "message": "FFmpeg is not available or not working properly",
            "error": text.strip() or "FFmpeg test failed",
        }
