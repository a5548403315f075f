"""FastAPI application exposing the stream engine controls."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field

from .config import AppConfig, NotifierConfig, configure_logging, load_config
from .errors import MediaNotFoundError, NoCurrentItemError, ProfileNotFoundError
from .models import Destination, MediaItem, StreamProfile, utcnow
from .notifier import Notifier
from .process_controller import AsyncioProcessRuntime, ProcessRuntime
from .storage import SQLiteStore
from .stream_manager import StreamingManager

logger = logging.getLogger(__name__)

RTMP_EVENTS = {
    "publish": "RTMP Publish started",
    "play": "RTMP Play started",
    "publish_done": "RTMP Publish ended",
    "play_done": "RTMP Play ended",
    "record_done": "RTMP Recording finished",
}


class StreamConfigPayload(BaseModel):
    platform: str = Field("youtube", description="youtube|twitch|facebook|custom")
    streamKey: str = Field(..., min_length=1)
    rtmpUrl: Optional[str] = Field(None, description="Ingest URL for the custom platform.")
    resolution: str = "1920x1080"
    framerate: int = Field(30, gt=0)
    bitrate: int = Field(2500, gt=0, description="Video bitrate in kbps.")
    audioQuality: int = 128


class VideoPayload(BaseModel):
    title: str = "Untitled Video"
    filename: str = Field(..., description="File name inside the media directory, or an absolute path.")
    duration: str = "00:00"


class VideoTitlePayload(BaseModel):
    title: str = Field(..., min_length=1)


class PlaylistPosition(BaseModel):
    id: int
    playlistOrder: int


class ReorderPayload(BaseModel):
    videoIds: Optional[List[int]] = Field(None, description="Ids in their new playlist order.")
    updates: Optional[List[PlaylistPosition]] = Field(None, description="Explicit position per id.")


class SetCurrentPayload(BaseModel):
    videoId: int


class PlatformPayload(BaseModel):
    url: str
    key: str


class MultiPlatformPayload(BaseModel):
    videoId: int
    platforms: List[PlatformPayload] = Field(..., min_length=1)


def _video_dict(item: MediaItem) -> Dict[str, Any]:
    return {
        "id": item.id,
        "title": item.title,
        "filename": item.filename,
        "duration": item.duration,
        "playlistOrder": item.playlist_order,
    }


def _profile_dict(profile: StreamProfile) -> Dict[str, Any]:
    return {
        "platform": profile.platform,
        "streamKey": profile.stream_key,
        "rtmpUrl": profile.rtmp_url,
        "resolution": profile.resolution,
        "framerate": profile.framerate,
        "bitrate": profile.bitrate,
        "audioQuality": profile.audio_quality,
    }


def get_manager(request: Request) -> StreamingManager:
    return request.app.state.manager


def get_store(request: Request) -> SQLiteStore:
    return request.app.state.store


def create_app(
    config: Optional[AppConfig] = None,
    store: Optional[SQLiteStore] = None,
    runtime: Optional[ProcessRuntime] = None,
) -> FastAPI:
    config = config or load_config()
    configure_logging(config.log_level)
    store = store or SQLiteStore(config.database_path)
    if runtime is None and not config.engine.mock_processes:
        runtime = AsyncioProcessRuntime()
    app = FastAPI(title=config.project_name)
    app.state.store = store

    @app.on_event("startup")
    async def startup_event() -> None:
        await store.open()
        app.state.manager = StreamingManager(
            config.engine,
            media_store=store,
            profile_store=store,
            status_store=store,
            runtime=runtime,
            notifier=Notifier(config.notifier or NotifierConfig()),
        )
        logger.info("%s started.", config.project_name)

    @app.on_event("shutdown")
    async def shutdown_event() -> None:
        await app.state.manager.shutdown()
        await store.close()

    @app.get("/health")
    async def health() -> Dict[str, str]:
        return {"status": "ok", "timestamp": utcnow().isoformat()}

    @app.get("/api/stream-status")
    async def stream_status(manager: StreamingManager = Depends(get_manager)):
        return await manager.status()

    @app.get("/api/stream-config")
    async def get_stream_config(store: SQLiteStore = Depends(get_store)):
        profile = await store.get_active_profile()
        if profile is None:
            return _profile_dict(StreamProfile(platform="youtube", stream_key=""))
        return _profile_dict(profile)

    @app.post("/api/stream-config")
    async def save_stream_config(payload: StreamConfigPayload, store: SQLiteStore = Depends(get_store)):
        profile = StreamProfile(
            platform=payload.platform,
            stream_key=payload.streamKey,
            rtmp_url=payload.rtmpUrl,
            resolution=payload.resolution,
            framerate=payload.framerate,
            bitrate=payload.bitrate,
            audio_quality=payload.audioQuality,
        )
        await store.save_profile(profile)
        return _profile_dict(profile)

    @app.get("/api/videos")
    async def list_videos(store: SQLiteStore = Depends(get_store)):
        return [_video_dict(item) for item in await store.list_media()]

    @app.post("/api/videos")
    async def add_video(payload: VideoPayload, store: SQLiteStore = Depends(get_store)):
        item = await store.add_media(payload.title, payload.filename, payload.duration)
        return _video_dict(item)

    @app.put("/api/videos/{video_id}")
    async def rename_video(
        video_id: int, payload: VideoTitlePayload, manager: StreamingManager = Depends(get_manager)
    ):
        try:
            item = await manager.rename_media(video_id, payload.title)
        except MediaNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return _video_dict(item)

    @app.delete("/api/videos/{video_id}")
    async def delete_video(video_id: int, manager: StreamingManager = Depends(get_manager)):
        try:
            await manager.delete_media(video_id)
        except MediaNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return {"message": "Video deleted successfully"}

    @app.post("/api/videos/reorder")
    async def reorder_videos(payload: ReorderPayload, store: SQLiteStore = Depends(get_store)):
        if payload.videoIds is not None:
            await store.reorder_media(payload.videoIds)
        elif payload.updates is not None:
            await store.set_playlist_orders((update.playlistOrder, update.id) for update in payload.updates)
        else:
            raise HTTPException(status_code=400, detail="Either videoIds or updates array is required")
        return {"message": "Playlist reordered successfully"}

    @app.post("/api/stream/start")
    async def start_stream(manager: StreamingManager = Depends(get_manager)):
        try:
            started = await manager.start_current()
        except (NoCurrentItemError, MediaNotFoundError, ProfileNotFoundError) as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        if not started:
            raise HTTPException(status_code=500, detail="Failed to start RTMP stream")
        return await manager.status()

    @app.post("/api/stream/stop")
    async def stop_stream(manager: StreamingManager = Depends(get_manager)):
        await manager.stop_all_streams()
        return await manager.status()

    @app.post("/api/stream/set-current")
    async def set_current(payload: SetCurrentPayload, manager: StreamingManager = Depends(get_manager)):
        try:
            status = await manager.set_current(payload.videoId)
        except MediaNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return status.to_dict()

    @app.post("/api/stream/restart")
    async def restart_stream(manager: StreamingManager = Depends(get_manager)):
        try:
            status = await manager.restart_stream()
        except NoCurrentItemError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return status.to_dict()

    @app.post("/api/stream/loop/enable")
    async def enable_loop(manager: StreamingManager = Depends(get_manager)):
        await manager.set_loop_enabled(True)
        return {"message": "24x7 loop enabled", **await manager.loop_status()}

    @app.post("/api/stream/loop/disable")
    async def disable_loop(manager: StreamingManager = Depends(get_manager)):
        await manager.set_loop_enabled(False)
        return {"message": "24x7 loop disabled", **await manager.loop_status()}

    @app.get("/api/stream/loop/status")
    async def loop_status(manager: StreamingManager = Depends(get_manager)):
        return await manager.loop_status()

    @app.post("/api/stream/multi-platform")
    async def multi_platform(payload: MultiPlatformPayload, manager: StreamingManager = Depends(get_manager)):
        destinations = [Destination(url=platform.url, key=platform.key) for platform in payload.platforms]
        if not await manager.stream_to_multiple_platforms(payload.videoId, destinations):
            raise HTTPException(status_code=500, detail="Failed to start multi-platform stream")
        return {"message": f"Streaming video {payload.videoId} to {len(destinations)} platforms"}

    @app.post("/api/stream/test")
    async def test_transcoder(manager: StreamingManager = Depends(get_manager)):
        result = await manager.probe_transcoder()
        if not result["success"]:
            return JSONResponse(status_code=400, content=result)
        return result

    def _register_rtmp_hook(event: str, label: str) -> None:
        async def hook(request: Request) -> PlainTextResponse:
            body = await request.body()
            logger.info("%s: %s", label, body.decode("utf-8", errors="replace"))
            return PlainTextResponse("OK")

        app.add_api_route(f"/api/rtmp/{event}", hook, methods=["POST"], name=f"rtmp_{event}")

    for event, label in RTMP_EVENTS.items():
        _register_rtmp_hook(event, label)

    return app
