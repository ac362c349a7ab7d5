"""
Pytest configuration and fixtures for notifier tests.

The pipeline runs against the in-memory store and queue, a fake clock and
an httpx.MockTransport standing in for every HTTP provider.
"""
from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import pytest
import pytest_asyncio

from sso_notifier.clock import Clock
from sso_notifier.config import (
    AuditConfig,
    EmailChannelConfig,
    EscalationConfig,
    NotifierConfig,
    ProcessingConfig,
    RetryConfig,
    ServiceConfiguration,
    SlackChannelConfig,
    SMSChannelConfig,
    TeamsChannelConfig,
    WebhookChannelConfig,
)
from sso_notifier.domain.service import create_notifier_service
from sso_notifier.events import AuditEvent, AuditEventType
from sso_notifier.infrastructure.audit import AuditLogger
from sso_notifier.infrastructure.queue import InMemoryQueueManager
from sso_notifier.infrastructure.store import InMemoryNotificationStore

WEBHOOK_URL = "https://hooks.example.com/notify"
SLACK_URL = "https://hooks.slack.test/services/T000/B000/XXX"


class FakeClock(Clock):
    """Manually advanced clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float = 0, milliseconds: float = 0) -> datetime:
        self._now += timedelta(seconds=seconds, milliseconds=milliseconds)
        return self._now

    async def sleep(self, seconds: float) -> None:
        self.advance(seconds)
        await asyncio.sleep(0)


class FakeProvider:
    """
    Scripted HTTP provider.

    Responses are taken from `script` in order, then `default_status`;
    `route` may override the status for a request.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.script: list[int] = []
        self.default_status = 200
        self.route = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status = None
        if self.route is not None:
            status = self.route(request)
        if status is None:
            status = self.script.pop(0) if self.script else self.default_status
        return httpx.Response(status, json={"ok": status < 400})

    def bodies(self, host: str | None = None) -> list[dict[str, Any]]:
        return [
            json.loads(r.content) for r in self.requests
            if host is None or r.url.host == host
        ]


class RecordingAuditLogger(AuditLogger):
    """Audit logger that keeps events in memory instead of shipping them."""

    def __init__(self) -> None:
        super().__init__(AuditConfig(enabled=False))
        self.events: list[AuditEvent] = []

    def log(self, event: AuditEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: AuditEventType) -> list[AuditEvent]:
        return [e for e in self.events if e.event_type == event_type]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    """Webhook-only configuration with fast retries and a one-minute escalation step."""
    return NotifierConfig(
        service=ServiceConfiguration(run_workers=False),
        retry=RetryConfig(attempts=2, delay_ms=1000, max_delay_ms=8000),
        processing=ProcessingConfig(concurrency=2, batch_size=10),
        escalation=EscalationConfig(
            enabled=True,
            delay_ms=60000,
            max_levels=2,
            level_recipients=[["oncall@sso-hub.com"], ["cto@sso-hub.com"]],
            channels=["webhook"],
        ),
        audit=AuditConfig(enabled=False),
        email=EmailChannelConfig(enabled=False),
        slack=SlackChannelConfig(enabled=False),
        webhook=WebhookChannelConfig(enabled=True, url=WEBHOOK_URL, hmac_secret="test-secret-123"),
        sms=SMSChannelConfig(enabled=False),
        teams=TeamsChannelConfig(enabled=False),
    )


@pytest.fixture
def store():
    return InMemoryNotificationStore()


@pytest_asyncio.fixture
async def queue(config, clock):
    manager = InMemoryQueueManager(config.queue, clock)
    await manager.connect()
    yield manager
    await manager.close()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest_asyncio.fixture
async def http_client(provider):
    client = httpx.AsyncClient(transport=httpx.MockTransport(provider))
    yield client
    await client.aclose()


@pytest.fixture
def audit():
    return RecordingAuditLogger()


@pytest_asyncio.fixture
async def service(config, clock, store, queue, http_client, audit):
    """Started notifier service with workers left stopped; tests drive run_once()."""
    notifier = create_notifier_service(
        config, clock=clock, store=store, queue=queue, http_client=http_client, audit=audit,
    )
    await notifier.startup(run_workers=False)
    yield notifier
    await notifier.shutdown()
