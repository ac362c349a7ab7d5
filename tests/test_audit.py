"""
Unit tests for the audit trail shipper.
"""
import asyncio
import json

import httpx
import pytest
import pytest_asyncio

from sso_notifier.config import AuditConfig
from sso_notifier.events import AuditEvent, AuditEventType
from sso_notifier.infrastructure.audit import AuditLogger


def event(event_type=AuditEventType.NOTIFICATION_CREATED, priority="medium"):
    return AuditEvent(event_type=event_type, resource_id="n-1", priority=priority, details={"type": "security"})


@pytest.fixture
def received():
    return []


@pytest.fixture
def audit_status():
    return {"code": 200}


@pytest_asyncio.fixture
async def audit_client(received, audit_status):
    def handler(request: httpx.Request) -> httpx.Response:
        received.append(request)
        return httpx.Response(audit_status["code"], json={})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    yield client
    await client.aclose()


def make_logger(client, **overrides):
    config = AuditConfig(enabled=True, service_url="http://audit.test:3009/", **overrides)
    return AuditLogger(config, client, service_name="notifier", service_version="1.0.0")


class TestAuditEvent:
    """Tests for the audit wire format."""

    def test_entry(self):
        entry = event().to_entry("notifier")

        assert entry["event_type"] == "notification.created"
        assert entry["action"] == "created"
        assert entry["service"] == "notifier"

    def test_urgency(self):
        assert event(priority="critical").is_urgent is True
        assert event(AuditEventType.NOTIFICATION_FAILED).is_urgent is True
        assert event().is_urgent is False


class TestAuditLogger:
    """Tests for buffering and flushing."""

    @pytest.mark.asyncio
    async def test_flush_posts_batch(self, audit_client, received):
        audit = make_logger(audit_client)
        audit.log(event())
        audit.log(event(AuditEventType.NOTIFICATION_QUEUED))

        assert await audit.flush() == 2

        request = received[0]
        assert str(request.url) == "http://audit.test:3009/api/events/batch"
        assert request.headers["X-Service-Name"] == "notifier"
        assert request.headers["X-Service-Version"] == "1.0.0"
        assert [e["event_type"] for e in json.loads(request.content)["events"]] == [
            "notification.created", "notification.queued",
        ]
        assert audit.status()["buffered"] == 0

    @pytest.mark.asyncio
    async def test_failed_flush_rebuffers(self, audit_client, audit_status, received):
        """Test entries survive an audit service outage."""
        audit = make_logger(audit_client)
        audit_status["code"] = 503
        audit.log(event())

        assert await audit.flush() == 0
        assert audit.status()["buffered"] == 1
        assert audit.status()["failed_flushes"] == 1

        audit_status["code"] = 200
        assert await audit.flush() == 1
        assert len(received) == 2

    @pytest.mark.asyncio
    async def test_overflow_drops_oldest(self, audit_client):
        audit = make_logger(audit_client, max_buffer=10)
        for i in range(12):
            audit.log(AuditEvent(event_type=AuditEventType.NOTIFICATION_CREATED, resource_id=str(i)))

        status = audit.status()
        assert status["buffered"] == 10
        assert status["dropped"] == 2
        assert audit._buffer[0]["resource_id"] == "2"

    @pytest.mark.asyncio
    async def test_urgent_event_flushes(self, audit_client, received):
        audit = make_logger(audit_client)

        audit.log(event(AuditEventType.ESCALATION_EXHAUSTED))
        await asyncio.sleep(0.01)

        assert len(received) == 1
        assert audit.status()["buffered"] == 0

    @pytest.mark.asyncio
    async def test_disabled_only_logs(self, audit_client, received):
        audit = AuditLogger(AuditConfig(enabled=False), audit_client)

        audit.log(event(priority="critical"))
        await audit.flush()

        assert received == []
        assert audit.status()["buffered"] == 0

    @pytest.mark.asyncio
    async def test_stop_flushes_remaining(self, audit_client, received):
        audit = make_logger(audit_client, flush_interval_seconds=60)
        await audit.start()
        audit.log(event())

        await audit.stop()

        assert len(received) == 1
