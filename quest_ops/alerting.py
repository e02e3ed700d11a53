"""Route console alerts to ops webhooks and email."""

from __future__ import annotations

import json
import logging
import os
import smtplib
import threading
import time
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from email.message import EmailMessage
from typing import Any, Dict, List, Optional, Set

logger = logging.getLogger(__name__)


@dataclass
class AlertPayload:
    """One outbound notification."""

    event: str
    message: str
    severity: str
    source: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def headline(self) -> str:
        return f"[{self.severity.upper()}] {self.message}"


def _split_env(name: str) -> List[str]:
    return [value.strip() for value in os.getenv(name, "").split(",") if value.strip()]


class AlertRouter:
    """Fan an alert out to every configured webhook and, optionally, SMTP."""

    def __init__(
        self,
        webhook_urls: Optional[List[str]] = None,
        *,
        timeout: float = 5.0,
        muted_events: Optional[Set[str]] = None,
        email_host: Optional[str] = None,
        email_port: int = 587,
        email_username: Optional[str] = None,
        email_password: Optional[str] = None,
        email_from: Optional[str] = None,
        email_recipients: Optional[List[str]] = None,
        email_use_tls: bool = True,
        username: str = "Quest Ops",
    ) -> None:
        self._webhook_urls = [url for url in (webhook_urls or []) if url]
        self._timeout = timeout
        self._muted_events = set(muted_events or ())
        self._lock = threading.Lock()
        self._email_host = email_host
        self._email_port = email_port
        self._email_username = email_username
        self._email_password = email_password
        self._email_from = email_from
        self._email_recipients = list(email_recipients or [])
        self._email_use_tls = email_use_tls
        self._username = username

    @property
    def configured(self) -> bool:
        return bool(self._webhook_urls or self._email_host)

    def notify(
        self,
        *,
        event: str,
        message: str,
        severity: str = "warning",
        source: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Deliver an alert; returns ``True`` when at least one output accepted it."""

        if event in self._muted_events:
            logger.debug("Alert event '%s' is muted", event)
            return False

        payload = AlertPayload(
            event=event,
            message=message,
            severity=severity,
            source=source,
            metadata=dict(metadata or {}),
        )
        delivered = False
        for url in self._webhook_urls:
            delivered = self._post_webhook(payload, url) or delivered
        if self._email_host:
            delivered = self._send_email(payload) or delivered

        if not delivered:
            logger.warning("Alert not routed anywhere: %s | %s", event, message)
        return delivered

    def _post_webhook(self, payload: AlertPayload, url: str) -> bool:
        headline = payload.headline()
        body = {
            "event": payload.event,
            "severity": payload.severity,
            "message": payload.message,
            "source": payload.source,
            "metadata": payload.metadata,
            "timestamp": payload.timestamp,
            # Slack reads "text", Discord reads "content".
            "text": headline,
            "content": headline,
            "username": self._username,
        }
        request = urllib.request.Request(
            url,
            data=json.dumps(body, default=str).encode("utf-8"),
            headers={"Content-Type": "application/json"},
        )
        try:
            with self._lock:
                with urllib.request.urlopen(request, timeout=self._timeout) as response:
                    logger.debug("Webhook answered %s for %s", response.status, payload.event)
            return True
        except (urllib.error.URLError, OSError):
            logger.exception("Failed to deliver alert webhook for event %s", payload.event)
            return False

    def _send_email(self, payload: AlertPayload) -> bool:
        if not self._email_from or not self._email_recipients:
            logger.debug("Email alert skipped: sender or recipients missing")
            return False

        msg = EmailMessage()
        msg["Subject"] = f"[{payload.severity.upper()}] {payload.event}"
        msg["From"] = self._email_from
        msg["To"] = ", ".join(self._email_recipients)
        lines = [
            f"Event: {payload.event}",
            f"Severity: {payload.severity}",
            f"Message: {payload.message}",
        ]
        if payload.source:
            lines.append(f"Source: {payload.source}")
        if payload.metadata:
            lines.append(f"Metadata: {json.dumps(payload.metadata, default=str, ensure_ascii=False)}")
        lines.append(
            "Timestamp: " + time.strftime("%Y-%m-%d %H:%M:%S UTC", time.gmtime(payload.timestamp))
        )
        msg.set_content("\n".join(lines))

        try:
            with smtplib.SMTP(self._email_host, self._email_port, timeout=self._timeout) as smtp:
                if self._email_use_tls:
                    smtp.starttls()
                if self._email_username and self._email_password:
                    smtp.login(self._email_username, self._email_password)
                smtp.send_message(msg)
            return True
        except (smtplib.SMTPException, OSError):
            logger.exception("Failed to deliver alert email for event %s", payload.event)
            return False

    @classmethod
    def from_env(cls) -> "AlertRouter":
        return cls(
            webhook_urls=_split_env("QUEST_OPS_ALERT_WEBHOOK_URLS"),
            timeout=float(os.getenv("QUEST_OPS_ALERT_TIMEOUT", "5") or 5),
            muted_events=set(_split_env("QUEST_OPS_ALERT_MUTED_EVENTS")),
            email_host=os.getenv("QUEST_OPS_ALERT_EMAIL_HOST") or None,
            email_port=int(os.getenv("QUEST_OPS_ALERT_EMAIL_PORT", "587") or 587),
            email_username=os.getenv("QUEST_OPS_ALERT_EMAIL_USERNAME"),
            email_password=os.getenv("QUEST_OPS_ALERT_EMAIL_PASSWORD"),
            email_from=os.getenv("QUEST_OPS_ALERT_EMAIL_FROM"),
            email_recipients=_split_env("QUEST_OPS_ALERT_EMAIL_TO"),
            email_use_tls=os.getenv("QUEST_OPS_ALERT_EMAIL_STARTTLS", "true").lower()
            not in {"false", "0", "off"},
        )


_alert_router: Optional[AlertRouter] = None


def get_alert_router() -> AlertRouter:
    """Return the lazily instantiated alert router."""

    global _alert_router
    if _alert_router is None:
        _alert_router = AlertRouter.from_env()
    return _alert_router


def set_alert_router(router: Optional[AlertRouter]) -> None:
    """Override the global alert router (primarily for testing)."""

    global _alert_router
    _alert_router = router


__all__ = ["AlertRouter", "AlertPayload", "get_alert_router", "set_alert_router"]
