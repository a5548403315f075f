"""Deliver stream lifecycle events to a webhook and an inbox."""

from __future__ import annotations

import datetime as dt
import logging
import smtplib
import ssl
from dataclasses import dataclass, field
from email.message import EmailMessage
from typing import Any, Dict, Optional

import requests

from .config import NotifierConfig
from .models import utcnow

logger = logging.getLogger(__name__)

EVENT_SUMMARIES = {
    "started": "Video {item} is live",
    "ended": "Video {item} went offline",
    "error": "Video {item} stopped on an error",
    "loop_halted": "24x7 loop halted at video {item}",
}


@dataclass(frozen=True)
class StreamEvent:
    kind: str
    item_id: Optional[int]
    detail: str = ""
    at: dt.datetime = field(default_factory=utcnow)

    @property
    def summary(self) -> str:
        template = EVENT_SUMMARIES.get(self.kind, self.kind + " for video {item}")
        return template.format(item=self.item_id if self.item_id is not None else "-")

    def as_payload(self) -> Dict[str, Any]:
        return {
            "event": self.kind,
            "videoId": self.item_id,
            "summary": self.summary,
            "detail": self.detail,
            "timestamp": self.at.isoformat(),
        }


class Notifier:
    """Fan a ``StreamEvent`` out to every configured channel.

    Delivery is blocking and failures are only logged, so callers run
    ``notify`` off the event loop.
    """

    def __init__(self, config: NotifierConfig):
        self.config = config

    def wants(self, kind: str) -> bool:
        if not (self.config.webhook_url or self.config.email_ready):
            return False
        return self.config.events is None or kind in self.config.events

    def notify(self, event: StreamEvent) -> None:
        if not self.wants(event.kind):
            return
        if self.config.webhook_url:
            self._post(event)
        if self.config.email_ready:
            self._mail(event)

    def _subject(self, event: StreamEvent) -> str:
        return f"[{self.config.subject_prefix}] {event.summary}"

    def _post(self, event: StreamEvent) -> None:
        payload = {**event.as_payload(), "subject": self._subject(event)}
        try:
            response = requests.post(self.config.webhook_url, json=payload, timeout=self.config.timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            logger.error("Failed to deliver %s event to webhook: %s", event.kind, exc)

    def _mail(self, event: StreamEvent) -> None:
        email = EmailMessage()
        email["From"] = self.config.sender
        email["To"] = ", ".join(self.config.recipients)
        email["Subject"] = self._subject(event)
        lines = [event.summary, f"At: {event.at.isoformat()}"]
        if event.detail:
            lines.append(f"Detail: {event.detail}")
        email.set_content("\n".join(lines))

        try:
            with smtplib.SMTP(self.config.smtp_host, self.config.smtp_port, timeout=self.config.timeout) as smtp:
                if self.config.smtp_starttls:
                    smtp.starttls(context=ssl.create_default_context())
                if self.config.smtp_username and self.config.smtp_password:
                    smtp.login(self.config.smtp_username, self.config.smtp_password)
                smtp.send_message(email)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("Failed to mail %s event to %s: %s", event.kind, email["To"], exc)
