"""
Run notifications
- Slack, Email, Webhook channels
- Run lifecycle events (start, success, failure, degraded rollout, rollback)
- Unconfigured channels log the message instead of sending it
"""

import json
import smtplib
from dataclasses import dataclass, field
from datetime import datetime
from email.mime.text import MIMEText
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional

import requests
from slack_sdk import WebClient as SlackClient

from shipyard.core.logging import get_logger

logger = get_logger(__name__)


class NotificationChannel(str, Enum):
    SLACK = "slack"
    EMAIL = "email"
    WEBHOOK = "webhook"


@dataclass
class RunNotification:
    channel: NotificationChannel
    event_type: str
    pipeline: str
    status: str
    message: str
    timestamp: datetime = field(default_factory=datetime.now)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def subject(self) -> str:
        return f"[{self.status.upper()}] {self.pipeline}: {self.event_type.replace('_', ' ')}"

    def to_dict(self, with_metadata: bool = True) -> Dict[str, Any]:
        data = {
            "channel": self.channel.value,
            "event_type": self.event_type,
            "pipeline": self.pipeline,
            "status": self.status,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }
        if with_metadata:
            data["metadata"] = self.metadata
        return data


@dataclass
class EmailTransport:
    """SMTP delivery settings; mail is only sent once host, sender and recipients are set"""

    smtp_host: Optional[str] = None
    smtp_port: int = 587
    sender: Optional[str] = None
    recipients: List[str] = field(default_factory=list)
    password: Optional[str] = None
    timeout: float = 10.0

    @classmethod
    def from_mapping(cls, config: Mapping[str, Any]) -> "EmailTransport":
        recipients = config.get("recipients") or []
        if isinstance(recipients, str):
            recipients = [r.strip() for r in recipients.split(",") if r.strip()]
        return cls(
            smtp_host=config.get("smtp_host"),
            smtp_port=int(config.get("smtp_port", 587)),
            sender=config.get("sender"),
            recipients=list(recipients),
            password=config.get("password") or None,
            timeout=float(config.get("timeout", 10.0)),
        )

    @property
    def configured(self) -> bool:
        return bool(self.smtp_host and self.sender and self.recipients)

    def __repr__(self) -> str:
        return f"EmailTransport(smtp_host={self.smtp_host!r}, sender={self.sender!r}, recipients={self.recipients!r})"


class NotificationManager:
    """Sends run lifecycle notifications to the configured channels"""

    def __init__(
        self,
        slack_token: Optional[str] = None,
        slack_channel: str = "#deployments",
        webhook_url: Optional[str] = None,
        email_config: Optional[Mapping[str, Any]] = None,
        channels: Optional[List[NotificationChannel]] = None,
    ):
        self.slack_token = slack_token
        self.slack_channel = slack_channel
        self.webhook_url = webhook_url
        self.email = EmailTransport.from_mapping(email_config or {})
        self.channels = list(channels) if channels is not None else [NotificationChannel.SLACK]
        self._history: List[RunNotification] = []
        self._senders: Dict[NotificationChannel, Callable[[RunNotification], None]] = {
            NotificationChannel.SLACK: self._send_slack,
            NotificationChannel.EMAIL: self._send_email,
            NotificationChannel.WEBHOOK: self._send_webhook,
        }

    @classmethod
    def from_settings(cls, settings) -> "NotificationManager":
        password = settings.smtp_password.get_secret_value() if settings.smtp_password else None
        return cls(
            slack_token=settings.slack_token,
            slack_channel=settings.slack_channel,
            webhook_url=settings.webhook_url,
            email_config={
                "smtp_host": settings.smtp_host,
                "smtp_port": settings.smtp_port,
                "sender": settings.email_sender,
                "recipients": settings.email_recipients,
                "password": password,
            },
            channels=[NotificationChannel(c) for c in settings.channels],
        )

    # ============================================================
    # Lifecycle events
    # ============================================================

    def notify_run_started(self, pipeline: str, run_id: str, **kwargs: Any) -> List[RunNotification]:
        return self._broadcast(
            "run_started", pipeline, "started",
            ["🚀 Run started", f"Pipeline: {pipeline}", f"Run: {run_id}"],
            {"run_id": run_id, **kwargs},
        )

    def notify_run_succeeded(
        self, pipeline: str, run_id: str, duration_s: float = 0, **kwargs: Any
    ) -> List[RunNotification]:
        return self._broadcast(
            "run_succeeded", pipeline, "succeeded",
            ["✅ Run succeeded", f"Pipeline: {pipeline}", f"Run: {run_id}", f"Duration: {duration_s:.1f}s"],
            {"run_id": run_id, "duration_s": duration_s, **kwargs},
        )

    def notify_run_failed(
        self,
        pipeline: str,
        run_id: str,
        stage: Optional[str],
        error_kind: Optional[str],
        error: str = "",
        **kwargs: Any,
    ) -> List[RunNotification]:
        lines = ["❌ Run failed", f"Pipeline: {pipeline}", f"Run: {run_id}",
                 f"Stage: {stage or '-'} ({error_kind or 'unknown'})"]
        if error:
            lines.append(f"Error: {error}")
        return self._broadcast(
            "run_failed", pipeline, "failed", lines,
            {"run_id": run_id, "stage": stage, "error_kind": error_kind, "error": error, **kwargs},
        )

    def notify_run_cancelled(self, pipeline: str, run_id: str, **kwargs: Any) -> List[RunNotification]:
        return self._broadcast(
            "run_cancelled", pipeline, "cancelled",
            ["⏹ Run cancelled", f"Pipeline: {pipeline}", f"Run: {run_id}"],
            {"run_id": run_id, **kwargs},
        )

    def notify_rollout_degraded(
        self, pipeline: str, target: str, detail: str = "", **kwargs: Any
    ) -> List[RunNotification]:
        lines = ["⚠️ Rollout degraded", f"Pipeline: {pipeline}", f"Target: {target}"]
        if detail:
            lines.append(detail)
        lines.append("No automatic rollback was performed.")
        return self._broadcast(
            "rollout_degraded", pipeline, "degraded", lines,
            {"target": target, "detail": detail, **kwargs},
        )

    def notify_rollback(
        self, pipeline: str, target: str, revision: Optional[int], state: str, **kwargs: Any
    ) -> List[RunNotification]:
        to = f"revision {revision}" if revision is not None else "the previous revision"
        return self._broadcast(
            "rollback", pipeline, state,
            [f"⏪ Rollback of {target} to {to}: {state}"],
            {"target": target, "revision": revision, **kwargs},
        )

    # ============================================================
    # Delivery
    # ============================================================

    def _broadcast(
        self,
        event_type: str,
        pipeline: str,
        status: str,
        lines: List[str],
        metadata: Dict[str, Any],
    ) -> List[RunNotification]:
        """Deliver one notification per channel; delivery errors are logged, not raised"""
        message = "\n".join(lines)
        sent = []
        for channel in self.channels:
            notification = RunNotification(channel, event_type, pipeline, status, message, metadata=metadata)
            try:
                self._senders[channel](notification)
            except Exception as e:
                logger.error(f"{channel.value} delivery of {event_type} failed: {e}")
            self._history.append(notification)
            sent.append(notification)
        return sent

    def _send_slack(self, notification: RunNotification) -> None:
        if not self.slack_token:
            logger.info(f"[slack:unconfigured] {notification.message}")
            return
        SlackClient(token=self.slack_token).chat_postMessage(
            channel=self.slack_channel, text=notification.message
        )
        logger.debug(f"Posted {notification.event_type} to {self.slack_channel}")

    def _send_email(self, notification: RunNotification) -> None:
        email = self.email
        if not email.configured:
            logger.info(f"[email:unconfigured] {notification.subject}")
            return

        mail = MIMEText(notification.message)
        mail["Subject"] = notification.subject
        mail["From"] = email.sender
        mail["To"] = ", ".join(email.recipients)

        with smtplib.SMTP(email.smtp_host, email.smtp_port, timeout=email.timeout) as server:
            server.starttls()
            if email.password:
                server.login(email.sender, email.password)
            server.sendmail(email.sender, email.recipients, mail.as_string())
        logger.debug(f"Mailed {notification.event_type} to {len(email.recipients)} recipient(s)")

    def _send_webhook(self, notification: RunNotification) -> None:
        body = json.dumps(notification.to_dict(), default=str)
        if not self.webhook_url:
            logger.info(f"[webhook:unconfigured] {body}")
            return
        response = requests.post(
            self.webhook_url, data=body, headers={"Content-Type": "application/json"}, timeout=10
        )
        response.raise_for_status()
        logger.debug(f"Webhook accepted {notification.event_type} ({response.status_code})")

    def get_notification_history(
        self, limit: int = 50, event_type: Optional[str] = None, pipeline: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        matching = [
            n for n in self._history
            if (event_type is None or n.event_type == event_type)
            and (pipeline is None or n.pipeline == pipeline)
        ]
        return [n.to_dict(with_metadata=False) for n in matching[-limit:]]
