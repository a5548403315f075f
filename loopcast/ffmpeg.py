"""Build ffmpeg argument lists for outbound RTMP sessions."""

from __future__ import annotations

import shlex
from typing import List, Optional, Sequence

from .models import Destination, StreamProfile

YOUTUBE_INGEST = "rtmp://a.rtmp.youtube.com/live2"
TWITCH_INGEST = "rtmp://live.twitch.tv/app"
FACEBOOK_INGEST = "rtmps://live-api-s.facebook.com:443/rtmp"
LOCAL_INGEST = "rtmp://localhost:1935/live"

DEFAULT_BITRATE = 2500
DEFAULT_FRAMERATE = 30
DEFAULT_HEIGHT = 720

_RESOLUTION_HEIGHTS = {
    "1920x1080": 1080,
    "1080p": 1080,
    "1280x720": 720,
    "720p": 720,
    "854x480": 480,
    "480p": 480,
    "640x360": 360,
    "360p": 360,
}


def resolve_destination(platform: Optional[str], custom_url: Optional[str] = None) -> str:
    name = (platform or "").lower()
    if name == "youtube":
        return YOUTUBE_INGEST
    if name == "twitch":
        return TWITCH_INGEST
    if name == "facebook":
        return FACEBOOK_INGEST
    if name == "custom":
        return custom_url or LOCAL_INGEST
    return custom_url or YOUTUBE_INGEST


def destination_url(profile: StreamProfile) -> str:
    return f"{resolve_destination(profile.platform, profile.rtmp_url)}/{profile.stream_key}"


def resolution_height(resolution: Optional[str]) -> int:
    return _RESOLUTION_HEIGHTS.get(resolution or "", DEFAULT_HEIGHT)


def build_stream_args(input_path: str, output_url: str, profile: StreamProfile) -> List[str]:
    """Arguments for a looped single-destination broadcast of ``input_path``."""
    bitrate = profile.bitrate or DEFAULT_BITRATE
    framerate = profile.framerate or DEFAULT_FRAMERATE

    args = [
        "-stream_loop",
        "-1",
        "-re",
        "-i",
        input_path,
        "-c:v",
        "libx264",
        "-preset",
        "veryfast",
        "-tune",
        "zerolatency",
        "-pix_fmt",
        "yuv420p",
        "-b:v",
        f"{bitrate}k",
        "-maxrate",
        f"{bitrate}k",
        "-bufsize",
        f"{bitrate * 2}k",
        "-r",
        str(framerate),
        "-g",
        str(framerate * 2),
    ]

    if profile.resolution and profile.resolution != "original":
        args.extend(["-vf", f"scale=-2:{resolution_height(profile.resolution)}"])

    args.extend(
        [
            "-c:a",
            "aac",
            "-b:a",
            "128k",
            "-ar",
            "44100",
            "-ac",
            "2",
            "-f",
            "flv",
            "-reconnect",
            "1",
            "-reconnect_streamed",
            "1",
            "-reconnect_delay_max",
            "5",
            output_url,
        ]
    )
    return args


def build_fanout_args(input_path: str, destinations: Sequence[Destination]) -> List[str]:
    """One 720p encode of ``input_path`` pushed to every destination via the tee muxer."""
    if not destinations:
        raise ValueError("At least one destination is required.")

    tee_targets = "|".join(f"[f=flv:onfail=ignore]{dest.target}" for dest in destinations)
    return [
        "-re",
        "-i",
        input_path,
        "-map",
        "0:v:0",
        "-map",
        "0:a:0?",
        "-c:v",
        "libx264",
        "-preset",
        "veryfast",
        "-maxrate",
        "3000k",
        "-bufsize",
        "6000k",
        "-vf",
        "scale=-2:720",
        "-g",
        "60",
        "-r",
        "30",
        "-c:a",
        "aac",
        "-f",
        "tee",
        tee_targets,
    ]


def format_command(executable: str, args: Sequence[str]) -> str:
    return shlex.join([executable, *args])
