from __future__ import annotations

import json
import urllib.error

from quest_ops.alerting import AlertRouter


class DummyResponse:
    status = 200

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False


def test_webhook_payload_carries_headline(monkeypatch):
    sent = []

    def fake_urlopen(request, timeout=None):
        sent.append((request.full_url, json.loads(request.data)))
        return DummyResponse()

    monkeypatch.setattr("urllib.request.urlopen", fake_urlopen)
    router = AlertRouter(["https://hooks.example.com/a", "https://hooks.example.com/b"])

    routed = router.notify(
        event="ops_alert.revoked_recent",
        message="Quest recently revoked",
        severity="error",
        metadata={"quest_id": "q1"},
    )

    assert routed is True
    assert [url for url, _ in sent] == ["https://hooks.example.com/a", "https://hooks.example.com/b"]
    body = sent[0][1]
    assert body["text"] == "[ERROR] Quest recently revoked"
    assert body["content"] == body["text"]
    assert body["username"] == "Quest Ops"
    assert body["metadata"] == {"quest_id": "q1"}


def test_muted_events_are_dropped(monkeypatch):
    def fail_urlopen(request, timeout=None):
        raise AssertionError("muted alerts must not be sent")

    monkeypatch.setattr("urllib.request.urlopen", fail_urlopen)
    router = AlertRouter(["https://hooks.example.com"], muted_events={"ops_alert.stale_instance"})

    assert router.notify(event="ops_alert.stale_instance", message="x") is False


def test_webhook_failure_is_logged_not_raised(monkeypatch, caplog):
    def broken_urlopen(request, timeout=None):
        raise urllib.error.URLError("down")

    monkeypatch.setattr("urllib.request.urlopen", broken_urlopen)
    router = AlertRouter(["https://hooks.example.com"])

    assert router.notify(event="e", message="m") is False
    assert "Failed to deliver alert webhook" in caplog.text


def test_email_delivery(monkeypatch):
    sent_messages = []

    class DummySMTP:
        started_tls = False

        def __init__(self, host, port, timeout=None):
            self.host = host

        def starttls(self):
            DummySMTP.started_tls = True

        def login(self, username, password):
            pass

        def send_message(self, message):
            sent_messages.append(message)

        def __enter__(self):
            return self

        def __exit__(self, exc_type, exc, tb):
            return False

    monkeypatch.setattr("smtplib.SMTP", DummySMTP)
    router = AlertRouter(
        email_host="smtp.example.com",
        email_from="ops@example.com",
        email_recipients=["oncall@example.com"],
    )

    assert router.notify(event="ops_alert.low_signups", message="Low", severity="warning")
    assert "ops_alert.low_signups" in sent_messages[0]["Subject"]
    assert sent_messages[0]["To"] == "oncall@example.com"
    assert DummySMTP.started_tls is True


def test_from_env(monkeypatch):
    monkeypatch.setenv("QUEST_OPS_ALERT_WEBHOOK_URLS", "https://a.example.com, https://b.example.com")
    monkeypatch.setenv("QUEST_OPS_ALERT_MUTED_EVENTS", "ops_alert.stale_instance")
    monkeypatch.setenv("QUEST_OPS_ALERT_EMAIL_STARTTLS", "off")
    monkeypatch.delenv("QUEST_OPS_ALERT_EMAIL_HOST", raising=False)

    router = AlertRouter.from_env()

    assert router.configured
    assert router.notify(event="ops_alert.stale_instance", message="quiet") is False
    assert router._email_use_tls is False
