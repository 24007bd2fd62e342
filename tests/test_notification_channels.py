"""
Tests for escalation delivery channels.
"""
import json
from typing import List

import httpx
import pytest
from sqlalchemy import select

from billing_sync.core.escalation import NotificationEvent, Severity
from billing_sync.database.models import AdminNotification
from billing_sync.database.repository import SqlAlchemyRecordStore
from billing_sync.integrations.notification_channels import (
    DatabaseChannel,
    EmailChannel,
    LogChannel,
    WebhookChannel,
    build_channels,
)


@pytest.fixture
def event() -> NotificationEvent:
    return NotificationEvent(
        severity=Severity.CRITICAL,
        title="Critical System Error",
        message="Critical error in webhook_processing: boom",
        operation="webhook_processing",
        error_type="critical_system_error",
        payload={"event_id": "evt_1"},
    )


def _client(requests: List[httpx.Request], status_code: int = 200) -> httpx.AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(status_code, json={"ok": status_code < 400})

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.unit
class TestHttpChannels:
    @pytest.mark.asyncio
    async def test_webhook_posts_event_json(self, event: NotificationEvent) -> None:
        requests: List[httpx.Request] = []
        async with _client(requests) as client:
            ok = await WebhookChannel("https://hooks.example.com/alerts", client).deliver(event)

        assert ok
        body = json.loads(requests[0].content)
        assert body["severity"] == "critical"
        assert body["dedupe_key"] == "webhook_processing:critical_system_error:critical"
        assert body["payload"] == {"event_id": "evt_1"}

    @pytest.mark.asyncio
    async def test_webhook_rejection_reports_failure(self, event: NotificationEvent) -> None:
        requests: List[httpx.Request] = []
        async with _client(requests, status_code=500) as client:
            ok = await WebhookChannel("https://hooks.example.com/alerts", client).deliver(event)

        assert not ok

    @pytest.mark.asyncio
    async def test_email_sends_bearer_authenticated_mail(self, event: NotificationEvent) -> None:
        requests: List[httpx.Request] = []
        async with _client(requests) as client:
            channel = EmailChannel(
                "https://mail.example.com/send",
                "key_123",
                "alerts@example.com",
                ["ops@example.com"],
                client,
            )
            ok = await channel.deliver(event)

        assert ok
        request = requests[0]
        assert request.headers["Authorization"] == "Bearer key_123"
        body = json.loads(request.content)
        assert body["to"] == ["ops@example.com"]
        assert body["subject"] == "[CRITICAL] Critical System Error"
        assert "event_id: evt_1" in body["text"]

    @pytest.mark.asyncio
    async def test_email_without_recipients_is_not_sent(self, event: NotificationEvent) -> None:
        requests: List[httpx.Request] = []
        async with _client(requests) as client:
            channel = EmailChannel("https://mail.example.com/send", "k", "a@b.c", [], client)
            ok = await channel.deliver(event)

        assert not ok
        assert requests == []


@pytest.mark.integration
class TestDatabaseChannel:
    @pytest.mark.asyncio
    async def test_persists_notification(
        self, store: SqlAlchemyRecordStore, event: NotificationEvent
    ) -> None:
        assert await DatabaseChannel(store).deliver(event)

        async with store.session_factory() as session:
            rows = (await session.execute(select(AdminNotification))).scalars().all()

        assert len(rows) == 1
        assert rows[0].severity == "critical"
        assert rows[0].operation == "webhook_processing"
        assert rows[0].payload == {"event_id": "evt_1"}


@pytest.mark.unit
class TestBuildChannels:
    def test_skips_unconfigured_channels(self, test_settings) -> None:
        settings = test_settings.model_copy(update={"escalation_channels": "log,webhook,email"})

        channels = build_channels(settings)

        assert [type(c) for c in channels] == [LogChannel]

    @pytest.mark.asyncio
    async def test_builds_configured_channels(self, test_settings) -> None:
        settings = test_settings.model_copy(
            update={
                "escalation_channels": "log,webhook,email",
                "escalation_webhook_url": "https://hooks.example.com/alerts",
                "escalation_email_api_url": "https://mail.example.com/send",
                "escalation_email_api_key": "key_123",
                "escalation_email_recipients": "ops@example.com,cto@example.com",
            }
        )
        async with httpx.AsyncClient() as client:
            channels = build_channels(settings, http_client=client)

        assert [c.name for c in channels] == ["log", "webhook", "email"]
        assert channels[2].recipients == ["ops@example.com", "cto@example.com"]
