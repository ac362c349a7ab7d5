"""
Integration tests for the REST API.

The application runs through FastAPI's TestClient with an in-memory
service injected; background workers stay off.
"""
from uuid import uuid4

import httpx
import pytest
from fastapi.testclient import TestClient

from sso_notifier.domain.service import create_notifier_service
from sso_notifier.infrastructure.queue import InMemoryQueueManager
from sso_notifier.infrastructure.store import InMemoryNotificationStore
from sso_notifier.main import create_app

USER = {"x-user-sub": "user-123", "x-user-email": "ada@sso-hub.com", "x-user-roles": "user"}
ADMIN = {"x-user-sub": "admin-1", "x-user-email": "root@sso-hub.com", "x-user-roles": "user, admin"}


@pytest.fixture
def client(config, clock, provider, audit):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(provider))
    notifier = create_notifier_service(
        config,
        clock=clock,
        store=InMemoryNotificationStore(),
        queue=InMemoryQueueManager(config.queue, clock),
        http_client=http_client,
        audit=audit,
    )
    with TestClient(create_app(config, service=notifier)) as test_client:
        yield test_client


def notification_body(**overrides):
    body = {
        "type": "tool_health",
        "priority": "high",
        "title": "GitHub integration degraded",
        "message": "Webhook deliveries are failing.",
        "recipients": ["ops@sso-hub.com"],
        "channels": ["webhook"],
    }
    body.update(overrides)
    return body


class TestAuthentication:
    """Tests for gateway identity enforcement."""

    def test_missing_headers(self, client):
        response = client.get("/api/notifications")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "UNAUTHORIZED"

    def test_health_is_open(self, client):
        assert client.get("/healthz").json()["status"] == "healthy"

    def test_ready(self, client):
        response = client.get("/readyz")

        assert response.status_code == 200
        assert response.json()["checks"] == {"store": True, "queue": True}
        assert response.json()["processing"]["state"] == "stopped"


class TestNotificationEndpoints:
    """Tests for notification intake and reads."""

    def test_create_and_fetch(self, client):
        response = client.post("/api/notifications", json=notification_body(), headers=USER)

        assert response.status_code == 201
        created = response.json()
        assert created["status"] == "queued"
        assert created["queue"]["queue"] == "immediate"

        fetched = client.get(f"/api/notifications/{created['notification_id']}", headers=USER).json()
        assert fetched["created_by"] == "user-123"
        assert fetched["max_retries"] == 2
        assert fetched["deliveries"] == []
        assert "claim_token" not in fetched

    def test_request_validation(self, client):
        response = client.post("/api/notifications", json=notification_body(recipients=[]), headers=USER)

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_content_required(self, client):
        response = client.post("/api/notifications", json=notification_body(title=None), headers=USER)

        assert response.status_code == 422

    def test_missing_template_variable(self, client):
        """Test a template render failure rejects the request and stores nothing."""
        client.post("/api/templates", headers=USER, json={
            "name": "welcome", "type": "onboarding", "subject_template": "Welcome {{ user_name }}",
            "body_template": "Hello {{ user_name }}", "variables": ["user_name"],
        })

        response = client.post("/api/notifications", headers=USER, json=notification_body(
            title=None, message=None, template_name="welcome", variables={},
        ))

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "MISSING_VARIABLE"
        listing = client.get("/api/notifications", headers=USER).json()
        assert listing["pagination"]["total"] == 0

    def test_unknown_notification(self, client):
        response = client.get(f"/api/notifications/delivery/{uuid4()}", headers=USER)

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    def test_batch(self, client):
        response = client.post("/api/notifications/batch", headers=USER, json={
            "notifications": [notification_body(), notification_body(priority="low")],
        })

        assert response.status_code == 201
        assert response.json()["count"] == 2
        assert response.json()["queue"]["queue"] == "batch"

    def test_list_filters_by_status(self, client):
        client.post("/api/notifications", json=notification_body(), headers=USER)

        queued = client.get("/api/notifications", params={"status": "queued"}, headers=USER).json()
        failed = client.get("/api/notifications", params={"status": "failed"}, headers=USER).json()

        assert queued["pagination"]["total"] == 1
        assert failed["notifications"] == []


class TestTemplateEndpoints:
    """Tests for template administration."""

    def test_invalid_template(self, client):
        response = client.post("/api/templates", headers=USER, json={
            "name": "broken", "type": "ops", "subject_template": "{% if %}", "body_template": "x",
        })

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "TEMPLATE_SYNTAX_INVALID"

    def test_dry_run(self, client):
        client.post("/api/templates", headers=USER, json={
            "name": "tool_down", "type": "tool_health", "subject_template": "{{ tool_name }} is down",
            "body_template": "Down since {{ since }}", "variables": ["tool_name", "since"],
        })

        result = client.post("/api/templates/tool_down/test", headers=USER,
                             json={"variables": {"tool_name": "Jira", "since": "noon"}}).json()

        assert result["success"] is True
        assert result["rendered"]["subject"] == "Jira is down"


class TestChannelEndpoints:
    """Tests for channel administration."""

    def test_secrets_are_redacted(self, client):
        response = client.post("/api/channels", headers=USER, json={
            "name": "ops-webhook", "type": "webhook",
            "config": {"url": "https://hooks.example.com/ops", "hmac_secret": "s3cret-value"},
        })

        assert response.status_code == 201
        assert response.json()["config"]["hmac_secret"] == "***"
        listed = client.get("/api/channels", headers=USER).json()
        assert {c["name"] for c in listed["channels"]} == {"default-webhook", "ops-webhook"}

    def test_invalid_config(self, client):
        response = client.post("/api/channels", headers=USER, json={
            "name": "bad-slack", "type": "slack", "config": {"webhook_url": "not-a-url"},
        })

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_channel_probe(self, client, provider):
        channel = client.get("/api/channels", headers=USER).json()["channels"][0]

        response = client.post(f"/api/channels/{channel['channel_id']}/test", headers=USER)

        assert response.status_code == 200
        assert response.json()["healthy"] is True
        assert len(provider.requests) == 1


class TestQueueEndpoints:
    """Tests for queue observability and control."""

    def test_stats(self, client):
        client.post("/api/notifications", json=notification_body(), headers=USER)

        stats = client.get("/api/queue/stats", headers=USER).json()

        assert stats["queues"]["immediate"]["waiting"] == 1
        assert stats["notifications"] == {"queued": 1}

    def test_pause_requires_admin(self, client):
        assert client.post("/api/queue/pause", headers=USER).status_code == 403

        response = client.post("/api/queue/pause", headers=ADMIN)
        assert response.status_code == 200

    def test_clear_queue(self, client):
        client.post("/api/notifications", json=notification_body(), headers=USER)

        response = client.delete("/api/queue/immediate", headers=ADMIN)

        assert response.json() == {"queue": "immediate", "removed": 1}
