"""
SSO Hub Notifier - Channel Adapters.

One adapter per delivery mechanism (email, Slack, signed webhook, SMS,
Teams) behind a uniform send/test contract. Adapters classify every
failure as retryable or permanent and never raise into the processor.

Architecture Layer: Domain/Infrastructure
Principles: Strategy Pattern, Tagged Variants, Async I/O
"""
from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from email.header import Header
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr
from typing import Any, Union, assert_never
from uuid import UUID, uuid4

import aiosmtplib
import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator
import structlog

from .entities import ChannelKind, Delivery, DeliveryStatus, Notification, Priority
from .templates import RenderedContent

logger = structlog.get_logger(__name__)


# Pattern for detecting header injection attempts (newlines and control characters)
_HEADER_INJECTION_PATTERN = re.compile(r'[\r\n\x00\x0b\x0c]')
_EMAIL_PATTERN = re.compile(r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$')
_PHONE_PATTERN = re.compile(r'^\+?[1-9]\d{6,14}$')

PERMANENT_HTTP_STATUSES = frozenset({400, 401, 403, 404, 410, 413, 422})
PERMANENT_SMTP_CODES = frozenset({550, 551, 553})
SECRET_FIELDS = frozenset({"smtp_password", "hmac_secret", "auth_token"})
DEFAULT_USER_AGENT = "SSO-Hub-Notifier/1.0"

PRIORITY_COLORS = {
    Priority.LOW: "#36a64f",
    Priority.MEDIUM: "#ff9500",
    Priority.HIGH: "#ff0000",
    Priority.CRITICAL: "#8B0000",
}
PRIORITY_EMOJIS = {
    Priority.LOW: ":information_source:",
    Priority.MEDIUM: ":warning:",
    Priority.HIGH: ":exclamation:",
    Priority.CRITICAL: ":rotating_light:",
}


def _sanitize_header(value: str, max_length: int = 998) -> str:
    """
    Sanitize a string for safe use in email headers.

    Removes newlines and control characters that would allow header injection
    and truncates to the RFC 5322 line limit.
    """
    if not value:
        return ""
    sanitized = _HEADER_INJECTION_PATTERN.sub('', value)
    return sanitized[:max_length].strip()


def _validate_email_address(email: str) -> bool:
    if not email or len(email) > 254:  # RFC 5321 max length
        return False
    return _EMAIL_PATTERN.match(email) is not None


def _require_http_url(value: str) -> str:
    value = value.strip()
    if value and not value.startswith(("http://", "https://")):
        raise ValueError("must be an http(s) URL")
    return value


def _chat_headers(user_agent: str, notification: Notification) -> dict[str, str]:
    return {"User-Agent": user_agent, "X-SSO-Hub-Notification-ID": str(notification.notification_id)}


# ---------------------------------------------------------------------------
# Typed per-kind configuration
# ---------------------------------------------------------------------------

class ChannelConfig(BaseModel):
    """Base configuration shared by every channel kind."""
    timeout_seconds: float = Field(default=30.0, ge=1.0, le=300.0)

    model_config = ConfigDict(extra="forbid")


class EmailConfig(ChannelConfig):
    """SMTP email configuration."""
    smtp_host: str = Field(default="localhost", min_length=1)
    smtp_port: int = Field(default=587, ge=1, le=65535)
    smtp_username: str = Field(default="")
    smtp_password: str = Field(default="")
    use_tls: bool = Field(default=False)
    start_tls: bool = Field(default=True)
    from_address: str = Field(default="notifications@sso-hub.com")
    from_name: str = Field(default="SSO Hub Notifications")
    reply_to: str | None = Field(default=None)

    @field_validator("from_address")
    @classmethod
    def validate_from_address(cls, v: str) -> str:
        if not _validate_email_address(v):
            raise ValueError("Invalid email format")
        return v.lower()


class SlackConfig(ChannelConfig):
    """Slack incoming-webhook configuration."""
    webhook_url: str = Field(..., min_length=1)
    default_channel: str = Field(default="#alerts")
    username: str = Field(default="SSO Hub Bot")
    icon_emoji: str = Field(default=":warning:")
    user_agent: str = Field(default=DEFAULT_USER_AGENT)

    @field_validator("webhook_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        return _require_http_url(v)


class WebhookConfig(ChannelConfig):
    """Generic signed webhook configuration."""
    url: str = Field(..., min_length=1)
    hmac_secret: str = Field(..., min_length=8)
    signature_header: str = Field(default="X-SSO-Hub-Signature")
    user_agent: str = Field(default=DEFAULT_USER_AGENT)
    headers: dict[str, str] = Field(default_factory=dict)

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        return _require_http_url(v)


class SMSConfig(ChannelConfig):
    """SMS configuration (Twilio-compatible)."""
    provider_url: str = Field(default="https://api.twilio.com/2010-04-01")
    account_sid: str = Field(..., min_length=1)
    auth_token: str = Field(..., min_length=1)
    from_number: str = Field(..., min_length=1)
    max_length: int = Field(default=1600, ge=160, le=1600)

    @field_validator("provider_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        return _require_http_url(v)


class TeamsConfig(ChannelConfig):
    """Microsoft Teams incoming-webhook configuration."""
    webhook_url: str = Field(..., min_length=1)
    user_agent: str = Field(default=DEFAULT_USER_AGENT)

    @field_validator("webhook_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        return _require_http_url(v)


AnyChannelConfig = Union[EmailConfig, SlackConfig, WebhookConfig, SMSConfig, TeamsConfig]


def config_model_for(kind: ChannelKind) -> type[ChannelConfig]:
    """Select the configuration model for a channel kind."""
    match kind:
        case ChannelKind.EMAIL:
            return EmailConfig
        case ChannelKind.SLACK:
            return SlackConfig
        case ChannelKind.WEBHOOK:
            return WebhookConfig
        case ChannelKind.SMS:
            return SMSConfig
        case ChannelKind.TEAMS:
            return TeamsConfig
        case _:
            assert_never(kind)


class Channel(BaseModel):
    """A configured delivery mechanism instance."""
    channel_id: UUID = Field(default_factory=uuid4)
    name: str = Field(..., min_length=1, max_length=100)
    kind: ChannelKind = Field(...)
    description: str = Field(default="", max_length=500)
    config: AnyChannelConfig = Field(...)
    enabled: bool = Field(default=True)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("config", mode="before")
    @classmethod
    def parse_config(cls, v: Any, info: ValidationInfo) -> Any:
        kind = info.data.get("kind")
        if kind is None:
            return v
        model = config_model_for(ChannelKind(kind))
        if isinstance(v, model):
            return v
        if isinstance(v, BaseModel):
            v = v.model_dump()
        return model.model_validate(v or {})

    def redacted(self) -> dict[str, Any]:
        """Serializable view with credentials masked."""
        data = self.model_dump(mode="json")
        data["config"] = {
            key: ("***" if key in SECRET_FIELDS and value else value)
            for key, value in data["config"].items()
        }
        return data


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------

class ChannelError(Exception):
    """Base exception for channel errors."""
    def __init__(self, channel_type: ChannelKind, message: str) -> None:
        self.channel_type = channel_type
        super().__init__(f"[{channel_type.value}] {message}")


class DeliveryError(ChannelError):
    """Raised inside adapters when a provider rejects or fails a send."""
    def __init__(
        self,
        channel_type: ChannelKind,
        recipient: str,
        reason: str,
        *,
        retryable: bool,
        status_code: int | None = None,
    ) -> None:
        self.recipient = recipient
        self.reason = reason
        self.retryable = retryable
        self.status_code = status_code
        super().__init__(channel_type, f"Failed to deliver to {recipient}: {reason}")


class DeliveryOutcome(BaseModel):
    """Result of one adapter send."""
    status: DeliveryStatus
    retryable: bool = False
    status_code: int | None = None
    latency_ms: float = 0.0
    error: str | None = None
    provider_message_id: str | None = None

    @property
    def success(self) -> bool:
        return self.status in (DeliveryStatus.SENT, DeliveryStatus.DELIVERED)

    @classmethod
    def permanent_failure(cls, error: str, status_code: int | None = None) -> DeliveryOutcome:
        return cls(status=DeliveryStatus.FAILED, retryable=False, error=error, status_code=status_code)


class HealthResult(BaseModel):
    """Result of a channel connectivity probe."""
    channel_id: UUID
    channel_name: str
    kind: ChannelKind
    healthy: bool
    latency_ms: float = 0.0
    status_code: int | None = None
    detail: str | None = None
    checked_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class _Receipt:
    status: DeliveryStatus
    status_code: int | None = None
    message_id: str | None = None


# ---------------------------------------------------------------------------
# Adapters
# ---------------------------------------------------------------------------

class ChannelAdapter(ABC):
    """
    Abstract base class for channel adapters.

    Implements the Template Method pattern: subclasses provide _deliver and
    _probe; the base class applies the per-send timeout, measures latency
    and converts every failure into a classified DeliveryOutcome.
    """

    def __init__(
        self,
        channel: Channel,
        client: httpx.AsyncClient | None = None,
        send_timeout_seconds: float | None = None,
    ) -> None:
        self._channel = channel
        self._send_timeout = send_timeout_seconds
        self._client = client
        self._owns_client = client is None

    @property
    @abstractmethod
    def kind(self) -> ChannelKind:
        """Return the channel kind."""

    @property
    def channel(self) -> Channel:
        return self._channel

    @property
    def timeout_seconds(self) -> float:
        if self._send_timeout is None:
            return self._channel.config.timeout_seconds
        return min(self._channel.config.timeout_seconds, self._send_timeout)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds)
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        if self._owns_client and self._client is not None and not self._client.is_closed:
            await self._client.aclose()

    async def send(
        self,
        delivery: Delivery,
        content: RenderedContent,
        notification: Notification,
    ) -> DeliveryOutcome:
        """Deliver rendered content to one recipient."""
        start = time.perf_counter()
        try:
            receipt = await asyncio.wait_for(
                self._deliver(delivery, content, notification),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            outcome = DeliveryOutcome(
                status=DeliveryStatus.FAILED, retryable=True,
                error=f"send timed out after {self.timeout_seconds}s",
            )
        except DeliveryError as e:
            outcome = DeliveryOutcome(
                status=DeliveryStatus.FAILED, retryable=e.retryable,
                status_code=e.status_code, error=e.reason,
            )
        except (httpx.TimeoutException, httpx.TransportError) as e:
            outcome = DeliveryOutcome(
                status=DeliveryStatus.FAILED, retryable=True,
                error=f"{type(e).__name__}: {e}",
            )
        except Exception as e:
            logger.error("delivery_adapter_error", channel=self.kind.value,
                         notification_id=str(delivery.notification_id), error=str(e), exc_info=True)
            outcome = DeliveryOutcome(
                status=DeliveryStatus.FAILED, retryable=True,
                error=f"{type(e).__name__}: {e}",
            )
        else:
            outcome = DeliveryOutcome(
                status=receipt.status, status_code=receipt.status_code,
                provider_message_id=receipt.message_id,
            )
        outcome.latency_ms = round((time.perf_counter() - start) * 1000, 2)

        if outcome.success:
            logger.info("delivery_sent", channel=self.kind.value, channel_name=self._channel.name,
                        notification_id=str(delivery.notification_id), recipient=delivery.recipient,
                        latency_ms=outcome.latency_ms)
        else:
            logger.warning("delivery_attempt_failed", channel=self.kind.value,
                           notification_id=str(delivery.notification_id), recipient=delivery.recipient,
                           retryable=outcome.retryable, status_code=outcome.status_code,
                           error=outcome.error)
        return outcome

    async def test(self) -> HealthResult:
        """Probe provider connectivity without touching any notification."""
        start = time.perf_counter()
        healthy, status_code, detail = False, None, None
        try:
            status_code = await asyncio.wait_for(self._probe(), timeout=self.timeout_seconds)
            healthy = True
        except asyncio.TimeoutError:
            detail = f"probe timed out after {self.timeout_seconds}s"
        except DeliveryError as e:
            status_code, detail = e.status_code, e.reason
        except (httpx.HTTPError, aiosmtplib.SMTPException, OSError) as e:
            detail = f"{type(e).__name__}: {e}"
        result = HealthResult(
            channel_id=self._channel.channel_id, channel_name=self._channel.name, kind=self.kind,
            healthy=healthy, status_code=status_code, detail=detail,
            latency_ms=round((time.perf_counter() - start) * 1000, 2),
        )
        logger.info("channel_tested", channel=self._channel.name, kind=self.kind.value, healthy=healthy)
        return result

    @abstractmethod
    async def _deliver(
        self,
        delivery: Delivery,
        content: RenderedContent,
        notification: Notification,
    ) -> _Receipt:
        """Actual delivery implementation."""

    @abstractmethod
    async def _probe(self) -> int | None:
        """Connectivity check; raises on failure, returns a status code if any."""

    def _check_response(self, response: httpx.Response, recipient: str) -> None:
        if response.is_success:
            return
        reason = f"HTTP {response.status_code}"
        body = response.text[:200] if response.text else ""
        if body:
            reason = f"{reason}: {body}"
        raise DeliveryError(
            self.kind, recipient, reason,
            retryable=response.status_code not in PERMANENT_HTTP_STATUSES,
            status_code=response.status_code,
        )


class EmailAdapter(ChannelAdapter):
    """Email adapter using SMTP."""

    @property
    def kind(self) -> ChannelKind:
        return ChannelKind.EMAIL

    @property
    def _config(self) -> EmailConfig:
        return self._channel.config  # type: ignore[return-value]

    def build_message(
        self,
        recipient: str,
        content: RenderedContent,
        notification: Notification,
    ) -> MIMEMultipart:
        config = self._config
        message = MIMEMultipart("alternative")
        message["Subject"] = Header(_sanitize_header(content.subject, max_length=200), "utf-8")
        message["From"] = formataddr((_sanitize_header(config.from_name, max_length=100),
                                      _sanitize_header(config.from_address)))
        message["To"] = recipient
        if config.reply_to:
            message["Reply-To"] = _sanitize_header(config.reply_to)
        message["X-Notification-ID"] = str(notification.notification_id)
        if notification.priority in (Priority.HIGH, Priority.CRITICAL):
            message["X-Priority"] = "1"
            message["Importance"] = "High"
        message.attach(MIMEText(content.body, "plain", "utf-8"))
        if content.html:
            message.attach(MIMEText(content.html, "html", "utf-8"))
        return message

    def _smtp(self) -> aiosmtplib.SMTP:
        config = self._config
        return aiosmtplib.SMTP(
            hostname=config.smtp_host,
            port=config.smtp_port,
            use_tls=config.use_tls,
            start_tls=config.start_tls if not config.use_tls else False,
            timeout=config.timeout_seconds,
        )

    async def _deliver(
        self,
        delivery: Delivery,
        content: RenderedContent,
        notification: Notification,
    ) -> _Receipt:
        recipient = _sanitize_header(delivery.recipient)
        if not _validate_email_address(recipient):
            raise DeliveryError(self.kind, delivery.recipient,
                                f"Invalid email address format: {delivery.recipient[:50]}",
                                retryable=False)

        message = self.build_message(recipient, content, notification)
        config = self._config
        try:
            async with self._smtp() as smtp:
                if config.smtp_username:
                    await smtp.login(config.smtp_username, config.smtp_password)
                _, response = await smtp.send_message(message)
        except aiosmtplib.SMTPRecipientsRefused as e:
            raise DeliveryError(self.kind, recipient, f"recipient refused: {e}", retryable=False) from e
        except (aiosmtplib.SMTPAuthenticationError, aiosmtplib.SMTPSenderRefused) as e:
            raise DeliveryError(self.kind, recipient, f"{type(e).__name__}: {e.message}",
                                retryable=False, status_code=e.code) from e
        except aiosmtplib.SMTPResponseException as e:
            raise DeliveryError(self.kind, recipient, f"SMTP {e.code}: {e.message}",
                                retryable=e.code not in PERMANENT_SMTP_CODES, status_code=e.code) from e
        except (aiosmtplib.SMTPException, OSError) as e:
            raise DeliveryError(self.kind, recipient, f"{type(e).__name__}: {e}", retryable=True) from e
        return _Receipt(status=DeliveryStatus.SENT, message_id=str(response) if response else None)

    async def _probe(self) -> int | None:
        config = self._config
        async with self._smtp() as smtp:
            if config.smtp_username:
                await smtp.login(config.smtp_username, config.smtp_password)
            response = await smtp.noop()
        return response.code


class SlackAdapter(ChannelAdapter):
    """Slack adapter using an incoming webhook."""

    @property
    def kind(self) -> ChannelKind:
        return ChannelKind.SLACK

    @property
    def _config(self) -> SlackConfig:
        return self._channel.config  # type: ignore[return-value]

    def build_payload(
        self,
        recipient: str,
        content: RenderedContent,
        notification: Notification,
    ) -> dict[str, Any]:
        config = self._config
        fields = [{
            "title": "Priority",
            "value": f"{PRIORITY_EMOJIS[notification.priority]} {notification.priority.value.upper()}",
            "short": True,
        }]
        if notification.source_tool:
            fields.append({"title": "Tool", "value": notification.source_tool, "short": True})
        if notification.source_service:
            fields.append({"title": "Service", "value": notification.source_service, "short": True})
        return {
            "channel": recipient if recipient.startswith("#") else config.default_channel,
            "username": config.username,
            "icon_emoji": config.icon_emoji,
            "attachments": [{
                "color": PRIORITY_COLORS[notification.priority],
                "title": content.subject,
                "text": content.body,
                "fields": fields,
                "footer": "SSO Hub Notifier",
                "ts": int(notification.created_at.timestamp()),
            }],
        }

    async def _deliver(
        self,
        delivery: Delivery,
        content: RenderedContent,
        notification: Notification,
    ) -> _Receipt:
        client = await self._get_client()
        response = await client.post(
            self._config.webhook_url,
            json=self.build_payload(delivery.recipient, content, notification),
            headers=_chat_headers(self._config.user_agent, notification),
        )
        self._check_response(response, delivery.recipient)
        return _Receipt(status=DeliveryStatus.DELIVERED, status_code=response.status_code)

    async def _probe(self) -> int | None:
        config = self._config
        client = await self._get_client()
        response = await client.post(config.webhook_url, json={
            "channel": config.default_channel,
            "username": config.username,
            "icon_emoji": config.icon_emoji,
            "text": ":white_check_mark: SSO Hub Notifier - Slack Channel Test",
        }, headers={"User-Agent": config.user_agent})
        self._check_response(response, config.default_channel)
        return response.status_code


class WebhookAdapter(ChannelAdapter):
    """Generic webhook adapter posting an HMAC-signed JSON body."""

    @property
    def kind(self) -> ChannelKind:
        return ChannelKind.WEBHOOK

    @property
    def _config(self) -> WebhookConfig:
        return self._channel.config  # type: ignore[return-value]

    def build_payload(
        self,
        recipient: str,
        content: RenderedContent,
        notification: Notification,
    ) -> dict[str, Any]:
        return {
            "notification_id": str(notification.notification_id),
            "type": notification.type,
            "priority": notification.priority.value,
            "title": content.subject,
            "message": content.body,
            "source_service": notification.source_service,
            "source_tool": notification.source_tool,
            "user_id": notification.user_id,
            "recipient": recipient,
            "metadata": notification.metadata,
            "timestamp": notification.created_at.isoformat(),
            "channel": {
                "id": str(self._channel.channel_id),
                "name": self._channel.name,
                "type": self.kind.value,
            },
        }

    def sign(self, body: bytes) -> str:
        digest = hmac.new(self._config.hmac_secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
        return f"sha256={digest}"

    def _headers(self, body: bytes, notification_id: str, timestamp: str) -> dict[str, str]:
        config = self._config
        return {
            **config.headers,
            "Content-Type": "application/json",
            "User-Agent": config.user_agent,
            "X-SSO-Hub-Notification-ID": notification_id,
            "X-SSO-Hub-Timestamp": timestamp,
            config.signature_header: self.sign(body),
        }

    @staticmethod
    def encode(payload: dict[str, Any]) -> bytes:
        return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str).encode("utf-8")

    async def _deliver(
        self,
        delivery: Delivery,
        content: RenderedContent,
        notification: Notification,
    ) -> _Receipt:
        payload = self.build_payload(delivery.recipient, content, notification)
        body = self.encode(payload)
        client = await self._get_client()
        response = await client.post(
            self._config.url,
            content=body,
            headers=self._headers(body, payload["notification_id"], payload["timestamp"]),
        )
        self._check_response(response, delivery.recipient)
        return _Receipt(status=DeliveryStatus.DELIVERED, status_code=response.status_code)

    async def _probe(self) -> int | None:
        payload = {
            "type": "test",
            "title": "SSO Hub Notifier - Webhook Channel Test",
            "channel": {"id": str(self._channel.channel_id), "name": self._channel.name, "type": self.kind.value},
        }
        body = self.encode(payload)
        client = await self._get_client()
        response = await client.post(
            self._config.url,
            content=body,
            headers=self._headers(body, "test", datetime.now(timezone.utc).isoformat()),
        )
        self._check_response(response, self._config.url)
        return response.status_code


class SMSAdapter(ChannelAdapter):
    """SMS adapter (Twilio-compatible API)."""

    @property
    def kind(self) -> ChannelKind:
        return ChannelKind.SMS

    @property
    def _config(self) -> SMSConfig:
        return self._channel.config  # type: ignore[return-value]

    def format_body(self, content: RenderedContent) -> str:
        text = f"{content.subject}\n\n{content.body}" if content.subject else content.body
        return text[:self._config.max_length]

    async def _deliver(
        self,
        delivery: Delivery,
        content: RenderedContent,
        notification: Notification,
    ) -> _Receipt:
        recipient = delivery.recipient.replace(" ", "").replace("-", "")
        if not _PHONE_PATTERN.match(recipient):
            raise DeliveryError(self.kind, delivery.recipient, "Invalid phone number", retryable=False)

        config = self._config
        client = await self._get_client()
        response = await client.post(
            f"{config.provider_url}/Accounts/{config.account_sid}/Messages.json",
            auth=(config.account_sid, config.auth_token),
            data={"From": config.from_number, "To": recipient, "Body": self.format_body(content)},
        )
        self._check_response(response, recipient)
        sid = None
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            sid = body.get("sid")
        return _Receipt(status=DeliveryStatus.SENT, status_code=response.status_code, message_id=sid)

    async def _probe(self) -> int | None:
        config = self._config
        client = await self._get_client()
        response = await client.get(
            f"{config.provider_url}/Accounts/{config.account_sid}.json",
            auth=(config.account_sid, config.auth_token),
        )
        self._check_response(response, config.account_sid)
        return response.status_code


class TeamsAdapter(ChannelAdapter):
    """Microsoft Teams adapter posting an Office 365 MessageCard."""

    THEME_COLORS = {
        Priority.LOW: "00CC00",
        Priority.MEDIUM: "FFCC00",
        Priority.HIGH: "FF6600",
        Priority.CRITICAL: "FF0000",
    }

    @property
    def kind(self) -> ChannelKind:
        return ChannelKind.TEAMS

    @property
    def _config(self) -> TeamsConfig:
        return self._channel.config  # type: ignore[return-value]

    def build_card(self, content: RenderedContent, notification: Notification) -> dict[str, Any]:
        facts = [{"name": "Priority", "value": notification.priority.value.upper()}]
        if notification.source_service:
            facts.append({"name": "Service", "value": notification.source_service})
        if notification.source_tool:
            facts.append({"name": "Tool", "value": notification.source_tool})
        return {
            "@type": "MessageCard",
            "@context": "http://schema.org/extensions",
            "themeColor": self.THEME_COLORS[notification.priority],
            "summary": content.subject,
            "sections": [{
                "activityTitle": content.subject,
                "activitySubtitle": f"Notification {notification.notification_id}",
                "facts": facts,
                "text": content.body,
            }],
        }

    async def _deliver(
        self,
        delivery: Delivery,
        content: RenderedContent,
        notification: Notification,
    ) -> _Receipt:
        client = await self._get_client()
        response = await client.post(
            self._config.webhook_url,
            json=self.build_card(content, notification),
            headers=_chat_headers(self._config.user_agent, notification),
        )
        self._check_response(response, delivery.recipient)
        return _Receipt(status=DeliveryStatus.DELIVERED, status_code=response.status_code)

    async def _probe(self) -> int | None:
        client = await self._get_client()
        response = await client.post(self._config.webhook_url, json={
            "@type": "MessageCard",
            "@context": "http://schema.org/extensions",
            "summary": "SSO Hub Notifier - Teams Channel Test",
            "text": "SSO Hub Notifier - Teams Channel Test",
        }, headers={"User-Agent": self._config.user_agent})
        self._check_response(response, self._config.webhook_url)
        return response.status_code


def build_adapter(
    channel: Channel,
    client: httpx.AsyncClient | None = None,
    send_timeout_seconds: float | None = None,
) -> ChannelAdapter:
    """Construct the adapter for a channel's kind."""
    match channel.kind:
        case ChannelKind.EMAIL:
            return EmailAdapter(channel, client, send_timeout_seconds)
        case ChannelKind.SLACK:
            return SlackAdapter(channel, client, send_timeout_seconds)
        case ChannelKind.WEBHOOK:
            return WebhookAdapter(channel, client, send_timeout_seconds)
        case ChannelKind.SMS:
            return SMSAdapter(channel, client, send_timeout_seconds)
        case ChannelKind.TEAMS:
            return TeamsAdapter(channel, client, send_timeout_seconds)
        case _:
            assert_never(channel.kind)


class ChannelRegistry:
    """
    Registry of channel adapters.

    Holds one adapter per configured channel; the processor resolves the
    adapter for a delivery by channel kind. Channel configuration is
    read-only from the pipeline's perspective.
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        send_timeout_seconds: float | None = None,
    ) -> None:
        self._adapters: dict[UUID, ChannelAdapter] = {}
        self._client = client
        self._send_timeout = send_timeout_seconds
        logger.info("channel_registry_initialized")

    async def register(self, channel: Channel) -> ChannelAdapter:
        """Register or replace the adapter for a channel."""
        previous = self._adapters.pop(channel.channel_id, None)
        if previous is not None:
            await previous.close()
        adapter = build_adapter(channel, self._client, self._send_timeout)
        self._adapters[channel.channel_id] = adapter
        logger.info("channel_registered", channel=channel.name, kind=channel.kind.value,
                    enabled=channel.enabled)
        return adapter

    def get(self, channel_id: UUID) -> ChannelAdapter | None:
        return self._adapters.get(channel_id)

    def for_kind(self, kind: ChannelKind) -> ChannelAdapter | None:
        """First enabled adapter of the given kind."""
        for adapter in self._adapters.values():
            if adapter.kind == kind and adapter.channel.enabled:
                return adapter
        return None

    def enabled_kinds(self) -> list[ChannelKind]:
        return [kind for kind in ChannelKind if self.for_kind(kind) is not None]

    def list_channels(self) -> list[Channel]:
        return [adapter.channel for adapter in self._adapters.values()]

    async def health_check_all(self) -> dict[str, bool]:
        results = {}
        for adapter in self._adapters.values():
            if adapter.channel.enabled:
                results[adapter.channel.name] = (await adapter.test()).healthy
        return results

    async def close(self) -> None:
        for adapter in self._adapters.values():
            await adapter.close()
        self._adapters.clear()
