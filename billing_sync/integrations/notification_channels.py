"""
Delivery channels for admin escalations.

Each channel reports success as a bool; exceptions raised here are caught and
logged by the escalation pipeline.
"""
from typing import Any, Dict, List, Optional

import httpx
import structlog

from billing_sync.config import Settings
from billing_sync.core.escalation import NotificationChannel, NotificationEvent, Severity
from billing_sync.database.repository import RecordStore

logger = structlog.get_logger(__name__)

_LOG_METHOD_BY_SEVERITY = {
    Severity.LOW: "info",
    Severity.MEDIUM: "warning",
    Severity.HIGH: "error",
    Severity.CRITICAL: "critical",
}


def _event_body(event: NotificationEvent) -> Dict[str, Any]:
    return {
        "severity": event.severity.value,
        "title": event.title,
        "message": event.message,
        "operation": event.operation,
        "error_type": event.error_type,
        "payload": event.payload,
        "created_at": event.created_at.isoformat(),
        "dedupe_key": event.dedupe_key,
    }


class LogChannel(NotificationChannel):
    """Writes the alert to the structured log at a severity-matched level."""

    name = "log"

    async def deliver(self, event: NotificationEvent) -> bool:
        log = getattr(logger, _LOG_METHOD_BY_SEVERITY[event.severity])
        log("admin_notification", **_event_body(event))
        return True


class DatabaseChannel(NotificationChannel):
    """Persists the alert as an AdminNotification row."""

    name = "database"

    def __init__(self, store: RecordStore):
        self.store = store

    async def deliver(self, event: NotificationEvent) -> bool:
        await self.store.add_admin_notification(
            severity=event.severity.value,
            title=event.title,
            message=event.message,
            operation=event.operation,
            error_type=event.error_type,
            payload=event.payload,
            created_at=event.created_at,
        )
        return True


class WebhookChannel(NotificationChannel):
    """POSTs the alert as JSON to an operator webhook."""

    name = "webhook"

    def __init__(self, url: str, client: httpx.AsyncClient):
        self.url = url
        self.client = client

    async def deliver(self, event: NotificationEvent) -> bool:
        response = await self.client.post(self.url, json=_event_body(event))
        if response.is_success:
            return True
        logger.warning(
            "notification_webhook_rejected",
            status_code=response.status_code,
            dedupe_key=event.dedupe_key,
        )
        return False


class EmailChannel(NotificationChannel):
    """Sends a plain-text email through an HTTP email API."""

    name = "email"

    def __init__(
        self,
        api_url: str,
        api_key: str,
        sender: str,
        recipients: List[str],
        client: httpx.AsyncClient,
    ):
        self.api_url = api_url
        self.api_key = api_key
        self.sender = sender
        self.recipients = recipients
        self.client = client

    @staticmethod
    def render_text(event: NotificationEvent) -> str:
        lines = [
            f"Severity: {event.severity.value.upper()}",
            f"Operation: {event.operation}",
            f"Error type: {event.error_type}",
            f"Time: {event.created_at.isoformat()}",
            "",
            event.message,
        ]
        if event.payload:
            lines.append("")
            lines.append("Details:")
            lines.extend(f"  {key}: {value}" for key, value in sorted(event.payload.items()))
        return "\n".join(lines)

    async def deliver(self, event: NotificationEvent) -> bool:
        if not self.recipients:
            logger.warning("notification_email_no_recipients", dedupe_key=event.dedupe_key)
            return False

        response = await self.client.post(
            self.api_url,
            headers={"Authorization": f"Bearer {self.api_key}"},
            json={
                "from": self.sender,
                "to": self.recipients,
                "subject": f"[{event.severity.value.upper()}] {event.title}",
                "text": self.render_text(event),
            },
        )
        if response.is_success:
            return True
        logger.warning(
            "notification_email_rejected",
            status_code=response.status_code,
            dedupe_key=event.dedupe_key,
        )
        return False


def build_channels(
    settings: Settings,
    store: Optional[RecordStore] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> List[NotificationChannel]:
    """
    Build the channels named in settings.

    Channels whose dependencies are not configured are skipped with a warning.
    """
    channels: List[NotificationChannel] = []
    for name in settings.get_escalation_channels_list():
        if name == "log":
            channels.append(LogChannel())
        elif name == "database":
            if store is None:
                logger.warning("notification_channel_unavailable", channel=name)
                continue
            channels.append(DatabaseChannel(store))
        elif name == "webhook":
            if not settings.escalation_webhook_url or http_client is None:
                logger.warning("notification_channel_unavailable", channel=name)
                continue
            channels.append(WebhookChannel(settings.escalation_webhook_url, http_client))
        elif name == "email":
            if (
                not settings.escalation_email_api_url
                or not settings.escalation_email_api_key
                or http_client is None
            ):
                logger.warning("notification_channel_unavailable", channel=name)
                continue
            channels.append(
                EmailChannel(
                    settings.escalation_email_api_url,
                    settings.escalation_email_api_key,
                    settings.escalation_email_sender,
                    settings.get_email_recipients_list(),
                    http_client,
                )
            )
    return channels
