"""Status reports for persistent degradation and fatal conditions."""

from __future__ import annotations

import logging
import smtplib
import ssl
from email.message import EmailMessage
from typing import Any, Dict, List

import requests

from .config import NotifierConfig
from .models import QualityAlert, RecoveryAttempt, StreamEnded

logger = logging.getLogger(__name__)


class Notifier:
    """Send webhook or email notifications for relay events."""

    def __init__(self, config: NotifierConfig, project_name: str = "Relay Agent"):
        self.config = config
        self.project_name = project_name

    @property
    def enabled(self) -> bool:
        return bool(self.config.webhook_url or self._email_configured())

    def _email_configured(self) -> bool:
        return bool(self.config.smtp_host and self.config.email_from and self.config.email_to)

    def notify(self, subject: str, message: str) -> None:
        subject = f"[{self.project_name}] {subject}"
        if self.config.webhook_url:
            self._send_webhook(subject, message)
        if self._email_configured():
            self._send_email(subject, message)

    def quality_alert(self, alert: QualityAlert) -> None:
        status = alert.status
        issues = "; ".join(status.issues) or "no specific issue"
        self.notify(
            subject=f"Stream quality {status.status.value}",
            message=(
                f"Quality score {status.score:.0f} for {alert.consecutive_count} consecutive checks: {issues}."
            ),
        )

    def recovery_failed(self, payload: Dict[str, Any]) -> None:
        attempts: List[RecoveryAttempt] = payload.get("attempts", [])
        lines = [f"- {a.action_name}: {'ok' if a.success else a.error or 'failed'}" for a in attempts]
        self.notify(
            subject="Recovery exhausted, restarting agent",
            message="\n".join([payload.get("reason", "Recovery failed"), *lines]),
        )

    def stream_ended(self, event: StreamEnded) -> None:
        final = event.final_metrics
        self.notify(
            subject="Stream ended",
            message=(
                f"{final.stream_url or 'Stream'} ended after {event.duration:.0f}s "
                f"(exit code {event.exit_code}, signal {event.signal})."
            ),
        )

    def _send_webhook(self, subject: str, message: str) -> None:
        payload = {"subject": subject, "message": message}
        try:
            response = requests.post(self.config.webhook_url, json=payload, timeout=10)
            response.raise_for_status()
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to send webhook: %s", exc)

    def _send_email(self, subject: str, message: str) -> None:
        email = EmailMessage()
        email["From"] = self.config.email_from or ""
        email["To"] = self.config.email_to or ""
        email["Subject"] = subject
        email.set_content(message)

        context = ssl.create_default_context()
        try:
            with smtplib.SMTP(self.config.smtp_host, self.config.smtp_port) as smtp:
                smtp.starttls(context=context)
                if self.config.smtp_username and self.config.smtp_password:
                    smtp.login(self.config.smtp_username, self.config.smtp_password)
                smtp.send_message(email)
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to send email: %s", exc)
