"""
Unit tests for channel configuration and adapters.
"""
import asyncio
import hashlib
import hmac
import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch
from urllib.parse import parse_qs

import aiosmtplib
import httpx
import pytest
from pydantic import ValidationError

from sso_notifier.domain.channels import (
    Channel,
    ChannelRegistry,
    EmailAdapter,
    EmailConfig,
    SlackAdapter,
    SlackConfig,
    SMSAdapter,
    SMSConfig,
    TeamsAdapter,
    TeamsConfig,
    WebhookAdapter,
    WebhookConfig,
    build_adapter,
    config_model_for,
)
from sso_notifier.domain.entities import ChannelKind, Delivery, DeliveryStatus, Notification, Priority
from sso_notifier.domain.templates import RenderedContent

CREATED_AT = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def notification():
    return Notification(
        title="GitHub degraded",
        message="Webhook deliveries are failing",
        recipients=["ops@sso-hub.com"],
        channels=["email", "slack", "webhook"],
        priority=Priority.HIGH,
        source_service="tool-health",
        source_tool="github",
        created_at=CREATED_AT,
    )


@pytest.fixture
def content():
    return RenderedContent(subject="GitHub degraded", body="Webhook deliveries are failing",
                           html="<p>Webhook deliveries are failing</p>")


def delivery_for(notification, channel, recipient):
    return Delivery(notification_id=notification.notification_id, channel=channel, recipient=recipient)


def webhook_channel(**config):
    return Channel(name="ops-webhook", kind=ChannelKind.WEBHOOK,
                   config={"url": "https://hooks.example.com/notify", "hmac_secret": "s3cret-value", **config})


class TestChannelDefinition:
    """Tests for typed per-kind channel configuration."""

    def test_config_model_per_kind(self):
        assert config_model_for(ChannelKind.EMAIL) is EmailConfig
        assert config_model_for(ChannelKind.SLACK) is SlackConfig
        assert config_model_for(ChannelKind.WEBHOOK) is WebhookConfig
        assert config_model_for(ChannelKind.SMS) is SMSConfig
        assert config_model_for(ChannelKind.TEAMS) is TeamsConfig

    def test_config_parsed_by_kind(self):
        """Test a raw config map is validated against the kind's model."""
        channel = webhook_channel()
        assert isinstance(channel.config, WebhookConfig)
        assert channel.config.signature_header == "X-SSO-Hub-Signature"

    def test_unknown_fields_rejected(self):
        with pytest.raises(ValidationError):
            webhook_channel(retries=5)

    def test_missing_required_field_rejected(self):
        with pytest.raises(ValidationError):
            Channel(name="slack", kind=ChannelKind.SLACK, config={})

    def test_non_http_url_rejected(self):
        with pytest.raises(ValidationError):
            Channel(name="teams", kind=ChannelKind.TEAMS, config={"webhook_url": "ftp://teams"})

    def test_redacted_masks_secrets(self):
        """Test credentials never leave through the read model."""
        data = webhook_channel().redacted()
        assert data["config"]["hmac_secret"] == "***"
        assert data["config"]["url"] == "https://hooks.example.com/notify"

    def test_build_adapter_matches_kind(self):
        assert isinstance(build_adapter(webhook_channel()), WebhookAdapter)


class TestWebhookAdapter:
    """Tests for the signed webhook adapter."""

    @pytest.mark.asyncio
    async def test_posts_signed_payload(self, provider, http_client, notification, content):
        """Test the body is signed with HMAC-SHA256 over the exact bytes sent."""
        adapter = WebhookAdapter(webhook_channel(), http_client)
        delivery = delivery_for(notification, ChannelKind.WEBHOOK, "ops@sso-hub.com")

        outcome = await adapter.send(delivery, content, notification)

        assert outcome.success
        assert outcome.status == DeliveryStatus.DELIVERED
        request = provider.requests[0]
        expected = hmac.new(b"s3cret-value", request.content, hashlib.sha256).hexdigest()
        assert request.headers["X-SSO-Hub-Signature"] == f"sha256={expected}"
        assert request.headers["X-SSO-Hub-Notification-ID"] == str(notification.notification_id)
        assert request.headers["User-Agent"] == "SSO-Hub-Notifier/1.0"
        body = json.loads(request.content)
        assert body["title"] == "GitHub degraded"
        assert body["recipient"] == "ops@sso-hub.com"
        assert body["timestamp"] == CREATED_AT.isoformat()
        assert body["channel"]["type"] == "webhook"

    @pytest.mark.asyncio
    async def test_retries_are_byte_identical(self, provider, http_client, notification, content):
        """Test repeated sends produce the same body and signature."""
        adapter = WebhookAdapter(webhook_channel(), http_client)
        delivery = delivery_for(notification, ChannelKind.WEBHOOK, "ops@sso-hub.com")

        await adapter.send(delivery, content, notification)
        await adapter.send(delivery, content, notification)

        first, second = provider.requests
        assert first.content == second.content
        assert first.headers["X-SSO-Hub-Signature"] == second.headers["X-SSO-Hub-Signature"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code,retryable", [
        (400, False), (401, False), (404, False), (410, False), (422, False),
        (408, True), (429, True), (500, True), (503, True),
    ])
    async def test_status_classification(self, provider, http_client, notification, content,
                                         status_code, retryable):
        """Test HTTP failures are classified as retryable or permanent."""
        provider.default_status = status_code
        adapter = WebhookAdapter(webhook_channel(), http_client)

        outcome = await adapter.send(delivery_for(notification, ChannelKind.WEBHOOK, "x"), content, notification)

        assert outcome.status == DeliveryStatus.FAILED
        assert outcome.retryable is retryable
        assert outcome.status_code == status_code

    @pytest.mark.asyncio
    async def test_connection_error_is_retryable(self, notification, content):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(refuse)) as client:
            adapter = WebhookAdapter(webhook_channel(), client)
            outcome = await adapter.send(delivery_for(notification, ChannelKind.WEBHOOK, "x"), content, notification)

        assert outcome.status == DeliveryStatus.FAILED
        assert outcome.retryable is True
        assert "ConnectError" in outcome.error

    @pytest.mark.asyncio
    async def test_send_timeout_is_retryable(self, notification, content):
        """Test the per-send timeout bounds a hanging provider."""
        async def hang(request):
            await asyncio.sleep(5)
            return httpx.Response(200)

        async with httpx.AsyncClient(transport=httpx.MockTransport(hang)) as client:
            adapter = WebhookAdapter(webhook_channel(), client, send_timeout_seconds=0.05)
            outcome = await adapter.send(delivery_for(notification, ChannelKind.WEBHOOK, "x"), content, notification)

        assert adapter.timeout_seconds == 0.05
        assert outcome.retryable is True
        assert "timed out" in outcome.error

    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_outcome(self, http_client, notification, content):
        """Test an error raised inside the adapter is reported, not propagated."""
        adapter = WebhookAdapter(webhook_channel(), http_client)

        with patch.object(adapter, "_deliver", AsyncMock(side_effect=KeyError("sid"))):
            outcome = await adapter.send(delivery_for(notification, ChannelKind.WEBHOOK, "ops"),
                                         content, notification)

        assert outcome.status == DeliveryStatus.FAILED
        assert outcome.retryable is True
        assert outcome.error.startswith("KeyError")
        assert outcome.latency_ms is not None

    @pytest.mark.asyncio
    async def test_probe(self, provider, http_client):
        adapter = WebhookAdapter(webhook_channel(), http_client)

        result = await adapter.test()

        assert result.healthy is True
        assert result.status_code == 200
        assert json.loads(provider.requests[0].content)["type"] == "test"

    @pytest.mark.asyncio
    async def test_probe_failure(self, provider, http_client):
        provider.default_status = 500
        adapter = WebhookAdapter(webhook_channel(), http_client)

        result = await adapter.test()

        assert result.healthy is False
        assert result.status_code == 500


class TestSlackAdapter:
    """Tests for the Slack adapter."""

    @pytest.fixture
    def channel(self):
        return Channel(name="slack", kind=ChannelKind.SLACK,
                       config={"webhook_url": "https://hooks.slack.test/x", "default_channel": "#general"})

    @pytest.mark.asyncio
    async def test_payload_format(self, channel, provider, http_client, notification, content):
        """Test attachment colour, priority field and channel selection."""
        adapter = SlackAdapter(channel, http_client)

        outcome = await adapter.send(delivery_for(notification, ChannelKind.SLACK, "#incidents"),
                                     content, notification)

        assert outcome.status == DeliveryStatus.DELIVERED
        payload = provider.bodies()[0]
        assert payload["channel"] == "#incidents"
        attachment = payload["attachments"][0]
        assert attachment["color"] == "#ff0000"
        assert attachment["footer"] == "SSO Hub Notifier"
        assert attachment["fields"][0]["value"] == ":exclamation: HIGH"
        assert {"title": "Tool", "value": "github", "short": True} in attachment["fields"]

    @pytest.mark.asyncio
    async def test_identifying_headers(self, channel, provider, http_client, notification, content):
        adapter = SlackAdapter(channel, http_client)

        await adapter.send(delivery_for(notification, ChannelKind.SLACK, "#ops"), content, notification)
        await adapter.test()

        sent, health_check = provider.requests
        assert sent.headers["User-Agent"] == "SSO-Hub-Notifier/1.0"
        assert sent.headers["X-SSO-Hub-Notification-ID"] == str(notification.notification_id)
        assert health_check.headers["User-Agent"] == "SSO-Hub-Notifier/1.0"

    def test_non_channel_recipient_uses_default(self, channel, notification, content):
        payload = SlackAdapter(channel).build_payload("ops@sso-hub.com", content, notification)
        assert payload["channel"] == "#general"


class TestTeamsAdapter:
    """Tests for the Teams adapter."""

    @pytest.mark.asyncio
    async def test_message_card(self, provider, http_client, notification, content):
        channel = Channel(name="teams", kind=ChannelKind.TEAMS,
                          config={"webhook_url": "https://outlook.example.com/webhook/abc"})
        adapter = TeamsAdapter(channel, http_client)

        outcome = await adapter.send(delivery_for(notification, ChannelKind.TEAMS, "ops"), content, notification)

        assert outcome.success
        card = provider.bodies()[0]
        assert card["@type"] == "MessageCard"
        assert card["themeColor"] == "FF6600"
        assert card["sections"][0]["activityTitle"] == "GitHub degraded"
        request = provider.requests[0]
        assert request.headers["User-Agent"] == "SSO-Hub-Notifier/1.0"
        assert request.headers["X-SSO-Hub-Notification-ID"] == str(notification.notification_id)

    @pytest.mark.asyncio
    async def test_custom_user_agent(self, provider, http_client, notification, content):
        channel = Channel(name="teams", kind=ChannelKind.TEAMS, config={
            "webhook_url": "https://outlook.example.com/webhook/abc", "user_agent": "SSO-Hub-Alerts/2.0",
        })

        await TeamsAdapter(channel, http_client).send(
            delivery_for(notification, ChannelKind.TEAMS, "ops"), content, notification)

        assert provider.requests[0].headers["User-Agent"] == "SSO-Hub-Alerts/2.0"


class TestSMSAdapter:
    """Tests for the SMS adapter."""

    @pytest.fixture
    def channel(self):
        return Channel(name="sms", kind=ChannelKind.SMS, config={
            "provider_url": "https://sms.example.com/2010-04-01",
            "account_sid": "AC123",
            "auth_token": "token",
            "from_number": "+15550001111",
            "max_length": 160,
        })

    @pytest.mark.asyncio
    async def test_sends_form_post(self, channel, notification, content):
        """Test the provider call and the truncated body."""
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(201, json={"sid": "SM42"})

        long_content = content.model_copy(update={"body": "x" * 500})
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            adapter = SMSAdapter(channel, client)
            outcome = await adapter.send(delivery_for(notification, ChannelKind.SMS, "+1 555-123-4567"),
                                         long_content, notification)

        assert outcome.status == DeliveryStatus.SENT
        assert outcome.provider_message_id == "SM42"
        request = seen[0]
        assert request.url.path == "/2010-04-01/Accounts/AC123/Messages.json"
        form = parse_qs(request.content.decode())
        assert form["To"] == ["+15551234567"]
        assert len(form["Body"][0]) == 160

    @pytest.mark.asyncio
    async def test_plain_text_acceptance(self, channel, notification, content):
        """Test a 2xx without a JSON body still counts as sent."""
        def handler(request):
            return httpx.Response(201, text="OK", headers={"Content-Type": "text/plain"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            outcome = await SMSAdapter(channel, client).send(
                delivery_for(notification, ChannelKind.SMS, "+15551234567"), content, notification)

        assert outcome.status == DeliveryStatus.SENT
        assert outcome.status_code == 201
        assert outcome.provider_message_id is None

    @pytest.mark.asyncio
    async def test_invalid_number_is_permanent(self, channel, provider, http_client, notification, content):
        adapter = SMSAdapter(channel, http_client)

        outcome = await adapter.send(delivery_for(notification, ChannelKind.SMS, "ops@sso-hub.com"),
                                     content, notification)

        assert outcome.status == DeliveryStatus.FAILED
        assert outcome.retryable is False
        assert provider.requests == []


class TestEmailAdapter:
    """Tests for the SMTP email adapter."""

    @pytest.fixture
    def channel(self):
        return Channel(name="email", kind=ChannelKind.EMAIL, config={
            "smtp_host": "smtp.test.com",
            "smtp_username": "notifier",
            "smtp_password": "secret",
            "reply_to": "noreply@sso-hub.com",
        })

    @pytest.fixture
    def smtp(self):
        client = MagicMock()
        client.__aenter__.return_value = client
        client.__aexit__.return_value = False
        client.login = AsyncMock()
        client.send_message = AsyncMock(return_value=({}, "2.0.0 queued"))
        with patch("sso_notifier.domain.channels.aiosmtplib.SMTP", return_value=client):
            yield client

    def test_message_headers(self, channel, notification, content):
        """Test priority headers, reply-to and both MIME parts."""
        message = EmailAdapter(channel).build_message("ops@sso-hub.com", content, notification)

        assert message["To"] == "ops@sso-hub.com"
        assert message["X-Notification-ID"] == str(notification.notification_id)
        assert message["X-Priority"] == "1"
        assert message["Importance"] == "High"
        assert message["Reply-To"] == "noreply@sso-hub.com"
        assert [part.get_content_type() for part in message.get_payload()] == ["text/plain", "text/html"]

    def test_subject_header_injection_stripped(self, channel, notification, content):
        hostile = content.model_copy(update={"subject": "Hello\r\nBcc: victim@example.com"})
        message = EmailAdapter(channel).build_message("ops@sso-hub.com", hostile, notification)
        assert "\n" not in str(message["Subject"])

    @pytest.mark.asyncio
    async def test_send_success(self, channel, smtp, notification, content):
        adapter = EmailAdapter(channel)

        outcome = await adapter.send(delivery_for(notification, ChannelKind.EMAIL, "ops@sso-hub.com"),
                                     content, notification)

        assert outcome.status == DeliveryStatus.SENT
        smtp.login.assert_awaited_once_with("notifier", "secret")
        smtp.send_message.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_invalid_address_is_permanent(self, channel, smtp, notification, content):
        outcome = await EmailAdapter(channel).send(
            delivery_for(notification, ChannelKind.EMAIL, "not-an-address"), content, notification,
        )

        assert outcome.retryable is False
        smtp.send_message.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error,retryable", [
        (aiosmtplib.SMTPResponseException(550, "mailbox unavailable"), False),
        (aiosmtplib.SMTPResponseException(451, "try again later"), True),
        (aiosmtplib.SMTPAuthenticationError(535, "bad credentials"), False),
        (aiosmtplib.SMTPRecipientsRefused([aiosmtplib.SMTPRecipientRefused(550, "no such user", "ops@sso-hub.com")]),
         False),
        (aiosmtplib.SMTPServerDisconnected("lost connection"), True),
    ])
    async def test_smtp_error_classification(self, channel, smtp, notification, content, error, retryable):
        """Test SMTP failures are classified as retryable or permanent."""
        smtp.send_message.side_effect = error

        outcome = await EmailAdapter(channel).send(
            delivery_for(notification, ChannelKind.EMAIL, "ops@sso-hub.com"), content, notification,
        )

        assert outcome.status == DeliveryStatus.FAILED
        assert outcome.retryable is retryable


class TestChannelRegistry:
    """Tests for the adapter registry."""

    @pytest.mark.asyncio
    async def test_for_kind_skips_disabled(self, http_client):
        registry = ChannelRegistry(http_client)
        disabled = webhook_channel().model_copy(update={"enabled": False})
        await registry.register(disabled)

        assert registry.for_kind(ChannelKind.WEBHOOK) is None
        assert registry.enabled_kinds() == []

        await registry.register(webhook_channel())
        assert registry.for_kind(ChannelKind.WEBHOOK) is not None
        assert registry.enabled_kinds() == [ChannelKind.WEBHOOK]

    @pytest.mark.asyncio
    async def test_register_replaces_same_channel(self, http_client):
        registry = ChannelRegistry(http_client)
        channel = webhook_channel()

        await registry.register(channel)
        await registry.register(channel.model_copy(update={"description": "updated"}))

        assert len(registry.list_channels()) == 1
        assert registry.get(channel.channel_id).channel.description == "updated"

    @pytest.mark.asyncio
    async def test_health_check_all(self, http_client):
        registry = ChannelRegistry(http_client)
        await registry.register(webhook_channel())

        assert await registry.health_check_all() == {"ops-webhook": True}
