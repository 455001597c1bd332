"""
Alert notification channels and the fan-out dispatcher.

Every channel call runs in its own task under a timeout. A failing channel
is logged and never affects the others or the request that raised the alert.
"""

import asyncio
import smtplib
from abc import ABC, abstractmethod
from email.message import EmailMessage
from typing import Any, Dict, Iterable, List, Optional, Set

import httpx
from loguru import logger

from request_defense.models.security import Alert
from request_defense.utils.exceptions import NotificationDeliveryError

SLACK_SEVERITY_COLORS = {
    "low": "#36a64f",
    "medium": "#ffaa00",
    "high": "#ff6b35",
    "critical": "#ff0000",
}


class NotificationChannel(ABC):
    """A single delivery target."""

    name: str = "channel"

    @abstractmethod
    async def send(self, alert: Alert) -> None:
        """Deliver the alert or raise NotificationDeliveryError."""


class WebhookChannel(NotificationChannel):
    """JSON POST of the alert to a generic security webhook."""

    name = "webhook"

    def __init__(self, url: str, client: httpx.AsyncClient):
        self.url = url
        self.client = client

    async def send(self, alert: Alert) -> None:
        payload = {"type": "security_alert", **alert.to_dict()}
        try:
            response = await self.client.post(self.url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise NotificationDeliveryError(f"Webhook delivery failed: {e}", channel=self.name) from e


def build_slack_message(alert: Alert) -> Dict:
    """Slack incoming-webhook payload with a severity colour bar."""
    return {
        "text": f"Security Alert: {alert.rule_name}",
        "attachments": [
            {
                "color": SLACK_SEVERITY_COLORS.get(alert.severity.value, "#36a64f"),
                "fields": [
                    {"title": "Event Type", "value": alert.event_type, "short": True},
                    {"title": "Severity", "value": alert.severity.value, "short": True},
                    {"title": "Count", "value": str(alert.count), "short": True},
                    {"title": "IP Address", "value": alert.ip, "short": True},
                    {"title": "Timestamp", "value": alert.timestamp.isoformat(), "short": True},
                ],
            }
        ],
    }


class SlackChannel(NotificationChannel):
    """Slack incoming webhook."""

    name = "slack"

    def __init__(self, url: str, client: httpx.AsyncClient):
        self.url = url
        self.client = client

    async def send(self, alert: Alert) -> None:
        try:
            response = await self.client.post(self.url, json=build_slack_message(alert))
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise NotificationDeliveryError(f"Slack delivery failed: {e}", channel=self.name) from e


def build_email(alert: Alert, sender: str, recipient: str) -> EmailMessage:
    msg = EmailMessage()
    msg["Subject"] = f"[{alert.severity.value.upper()}] Security alert: {alert.rule_name}"
    msg["From"] = sender
    msg["To"] = recipient
    msg.set_content(
        f"Rule: {alert.rule_name} ({alert.rule_id})\n"
        f"Event type: {alert.event_type}\n"
        f"Severity: {alert.severity.value}\n"
        f"Count: {alert.count}\n"
        f"IP address: {alert.ip}\n"
        f"User: {alert.user_id or '-'}\n"
        f"Time: {alert.timestamp.isoformat()}\n"
    )
    return msg


class EmailChannel(NotificationChannel):
    """SMTP delivery to the admin address. Logs only when SMTP is unset."""

    name = "email"

    def __init__(
        self,
        recipient: str,
        host: Optional[str] = None,
        port: int = 587,
        username: Optional[str] = None,
        password: Optional[str] = None,
        sender: str = "security@localhost",
        use_tls: bool = True,
        timeout: float = 10.0,
    ):
        self.recipient = recipient
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender = sender
        self.use_tls = use_tls
        self.timeout = timeout

    def _send_sync(self, msg: EmailMessage) -> None:
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
            if self.use_tls:
                server.starttls()
            if self.username:
                server.login(self.username, self.password or "")
            server.send_message(msg)

    async def send(self, alert: Alert) -> None:
        msg = build_email(alert, self.sender, self.recipient)
        if not self.host:
            logger.info(f"Email alert for {self.recipient} (SMTP not configured): {msg['Subject']}")
            return
        try:
            await asyncio.to_thread(self._send_sync, msg)
        except (smtplib.SMTPException, OSError) as e:
            raise NotificationDeliveryError(f"Email delivery failed: {e}", channel=self.name) from e


class AlertDispatcher:
    """Fans an alert out to its channels as background tasks."""

    def __init__(
        self,
        channels: Optional[Dict[str, NotificationChannel]] = None,
        timeout_seconds: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.channels: Dict[str, NotificationChannel] = dict(channels or {})
        self.timeout_seconds = timeout_seconds
        self.client = client
        self._tasks: Set[asyncio.Task] = set()
        self.delivered = 0
        self.failed = 0

    @classmethod
    def from_settings(cls, settings) -> "AlertDispatcher":
        client = httpx.AsyncClient(timeout=settings.NOTIFICATION_TIMEOUT_SECONDS)
        channels: Dict[str, NotificationChannel] = {}
        if settings.SECURITY_WEBHOOK_URL:
            channels["webhook"] = WebhookChannel(settings.SECURITY_WEBHOOK_URL, client)
        if settings.SLACK_WEBHOOK_URL:
            channels["slack"] = SlackChannel(settings.SLACK_WEBHOOK_URL, client)
        if settings.ADMIN_EMAIL:
            channels["email"] = EmailChannel(
                recipient=settings.ADMIN_EMAIL,
                host=settings.SMTP_HOST,
                port=settings.SMTP_PORT,
                username=settings.SMTP_USERNAME,
                password=settings.SMTP_PASSWORD,
                sender=settings.SMTP_FROM,
                use_tls=settings.SMTP_USE_TLS,
                timeout=settings.NOTIFICATION_TIMEOUT_SECONDS,
            )
        return cls(channels, timeout_seconds=settings.NOTIFICATION_TIMEOUT_SECONDS, client=client)

    def dispatch(self, alert: Alert, channel_names: Iterable[str]) -> List[asyncio.Task]:
        """Start delivery without waiting for it."""
        tasks = []
        for name in channel_names:
            channel = self.channels.get(name)
            if channel is None:
                logger.debug(f"Alert channel {name} not configured; skipping")
                continue
            task = asyncio.create_task(self._deliver_one(channel, alert))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            tasks.append(task)
        return tasks

    async def deliver(self, alert: Alert, channel_names: Iterable[str]) -> Dict[str, bool]:
        """Deliver to every channel and wait; returns success per channel."""
        names = [name for name in channel_names if name in self.channels]
        results = await asyncio.gather(
            *(self._deliver_one(self.channels[name], alert) for name in names)
        )
        return dict(zip(names, results))

    async def _deliver_one(self, channel: NotificationChannel, alert: Alert) -> bool:
        try:
            await asyncio.wait_for(channel.send(alert), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            error = NotificationDeliveryError(
                f"{channel.name} delivery timed out after {self.timeout_seconds}s",
                channel=channel.name,
            )
        except NotificationDeliveryError as e:
            error = e
        except Exception as e:
            error = NotificationDeliveryError(f"{channel.name} delivery failed: {e}", channel=channel.name)
        else:
            self.delivered += 1
            logger.info(f"Alert {alert.alert_id} delivered via {channel.name}")
            return True

        self.failed += 1
        logger.error(f"Alert {alert.alert_id} not delivered: {error.message}")
        return False

    def get_statistics(self) -> Dict[str, Any]:
        return {
            "channels": sorted(self.channels),
            "delivered": self.delivered,
            "failed": self.failed,
            "in_flight": len(self._tasks),
        }

    async def stop(self) -> None:
        """Wait briefly for in-flight deliveries, then close the HTTP client."""
        if self._tasks:
            await asyncio.wait(list(self._tasks), timeout=self.timeout_seconds)
        if self.client is not None:
            await self.client.aclose()
