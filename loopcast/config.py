"""Configuration helpers for the loopcast engine."""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass, field
from typing import FrozenSet, Optional, Tuple

_LOGGING_CONFIGURED = False


@dataclass
class NotifierConfig:
    webhook_url: Optional[str] = None
    timeout: float = 10.0
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_starttls: bool = True
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    sender: Optional[str] = None
    recipients: Tuple[str, ...] = ()
    # None delivers every lifecycle event.
    events: Optional[FrozenSet[str]] = None
    subject_prefix: str = "loopcast"

    @property
    def email_ready(self) -> bool:
        return bool(self.smtp_host and self.sender and self.recipients)


@dataclass
class EngineConfig:
    media_dir: str = "uploads"
    ffmpeg_binary: str = "ffmpeg"
    tick_interval: float = 5.0
    restart_delay: float = 2.0
    viewer_baseline: int = 50
    viewer_jitter: int = 50
    # 0 disables the guard and keeps relaunching forever.
    loop_failure_limit: int = 5
    rapid_failure_window: float = 10.0
    mock_processes: bool = False


@dataclass
class AppConfig:
    project_name: str = "Loopcast Streamer"
    database_path: str = "loopcast.db"
    log_level: str = "INFO"
    engine: EngineConfig = field(default_factory=EngineConfig)
    notifier: NotifierConfig | None = None


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_list(name: str) -> Tuple[str, ...]:
    return tuple(part.strip() for part in os.getenv(name, "").split(",") if part.strip())


def load_config() -> AppConfig:
    """Load configuration from environment variables."""
    engine = EngineConfig(
        media_dir=os.getenv("LOOPCAST_MEDIA_DIR", "uploads"),
        ffmpeg_binary=os.getenv("LOOPCAST_FFMPEG", "ffmpeg"),
        tick_interval=float(os.getenv("LOOPCAST_TICK_INTERVAL", "5")),
        restart_delay=float(os.getenv("LOOPCAST_RESTART_DELAY", "2")),
        viewer_baseline=int(os.getenv("LOOPCAST_VIEWER_BASELINE", "50")),
        viewer_jitter=int(os.getenv("LOOPCAST_VIEWER_JITTER", "50")),
        loop_failure_limit=int(os.getenv("LOOPCAST_LOOP_FAILURE_LIMIT", "5")),
        rapid_failure_window=float(os.getenv("LOOPCAST_RAPID_FAILURE_WINDOW", "10")),
        mock_processes=_env_bool("LOOPCAST_MOCK_PROCESSES"),
    )

    events = _env_list("LOOPCAST_NOTIFY_EVENTS")
    notifier = NotifierConfig(
        webhook_url=os.getenv("LOOPCAST_NOTIFY_WEBHOOK"),
        timeout=float(os.getenv("LOOPCAST_NOTIFY_TIMEOUT", "10")),
        smtp_host=os.getenv("LOOPCAST_SMTP_HOST"),
        smtp_port=int(os.getenv("LOOPCAST_SMTP_PORT", "587")),
        smtp_starttls=_env_bool("LOOPCAST_SMTP_STARTTLS", True),
        smtp_username=os.getenv("LOOPCAST_SMTP_USERNAME"),
        smtp_password=os.getenv("LOOPCAST_SMTP_PASSWORD"),
        sender=os.getenv("LOOPCAST_NOTIFY_FROM"),
        recipients=_env_list("LOOPCAST_NOTIFY_TO"),
        events=frozenset(events) if events else None,
        subject_prefix=os.getenv("LOOPCAST_NOTIFY_PREFIX", "loopcast"),
    )

    return AppConfig(
        project_name=os.getenv("PROJECT_NAME", "Loopcast Streamer"),
        database_path=os.getenv("LOOPCAST_DATABASE", "loopcast.db"),
        log_level=os.getenv("LOOPCAST_LOG_LEVEL", "INFO"),
        engine=engine,
        notifier=notifier,
    )


def configure_logging(level: str = "INFO") -> None:
    """Attach a console handler to the root logger once."""
    global _LOGGING_CONFIGURED

    if _LOGGING_CONFIGURED:
        return

    root = logging.getLogger()
    root.setLevel(level.upper())
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s %(levelname)s %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    root.addHandler(handler)
    _LOGGING_CONFIGURED = True
