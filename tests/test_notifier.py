import datetime as dt

import requests
from dateutil.tz import tzutc

from loopcast import notifier as notifier_module
from loopcast.config import NotifierConfig
from loopcast.notifier import Notifier, StreamEvent

AT = dt.datetime(2024, 5, 1, 12, 0, tzinfo=tzutc())


class FakeResponse:
    def __init__(self, status_code=200):
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


class FakeSMTP:
    sent = []

    def __init__(self, host, port, timeout):
        self.host = host
        self.port = port
        self.tls = False

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context):
        self.tls = True

    def login(self, username, password):
        pass

    def send_message(self, message):
        FakeSMTP.sent.append((self.tls, message))


def test_webhook_payload(monkeypatch):
    posts = []
    monkeypatch.setattr(
        notifier_module.requests, "post", lambda url, json, timeout: posts.append((url, json)) or FakeResponse()
    )
    notifier = Notifier(NotifierConfig(webhook_url="https://hooks.example/loopcast"))

    notifier.notify(StreamEvent("error", 3, "broken pipe", at=AT))

    url, payload = posts[0]
    assert url == "https://hooks.example/loopcast"
    assert payload == {
        "event": "error",
        "videoId": 3,
        "summary": "Video 3 stopped on an error",
        "detail": "broken pipe",
        "timestamp": "2024-05-01T12:00:00+00:00",
        "subject": "[loopcast] Video 3 stopped on an error",
    }


def test_webhook_failure_is_logged(monkeypatch, caplog):
    monkeypatch.setattr(notifier_module.requests, "post", lambda *args, **kwargs: FakeResponse(502))
    notifier = Notifier(NotifierConfig(webhook_url="https://hooks.example/loopcast"))

    notifier.notify(StreamEvent("started", 1))

    assert "Failed to deliver started event" in caplog.text


def test_email_delivery(monkeypatch):
    FakeSMTP.sent = []
    monkeypatch.setattr(notifier_module.smtplib, "SMTP", FakeSMTP)
    notifier = Notifier(
        NotifierConfig(smtp_host="smtp.example", sender="bot@example", recipients=("ops@example", "me@example"))
    )

    notifier.notify(StreamEvent("loop_halted", 2, "Loop halted after 5 consecutive failed launches", at=AT))

    tls, message = FakeSMTP.sent[0]
    assert tls
    assert message["To"] == "ops@example, me@example"
    assert message["Subject"] == "[loopcast] 24x7 loop halted at video 2"
    assert "Detail: Loop halted after 5" in message.get_content()


def test_event_filter():
    config = NotifierConfig(webhook_url="https://hooks.example", events=frozenset({"error", "loop_halted"}))
    notifier = Notifier(config)

    assert notifier.wants("error")
    assert not notifier.wants("started")
    assert not Notifier(NotifierConfig()).wants("error")


def test_unknown_event_summary():
    assert StreamEvent("paused", None).summary == "paused for video -"
