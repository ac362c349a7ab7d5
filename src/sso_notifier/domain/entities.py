"""
SSO Hub Notifier - Domain Entities.

Core entities for notifications, per-recipient deliveries and templates,
plus the rule that derives a notification's status from its deliveries.

Architecture Layer: Domain
Principles: Rich Domain Model, Entity Identity, Guarded State Transitions
"""
from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, field_validator, model_validator
import structlog

logger = structlog.get_logger(__name__)


class Priority(str, Enum):
    """Notification priority."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        """Numeric priority, lower is more urgent."""
        return _PRIORITY_RANKS[self]


_PRIORITY_RANKS = {
    Priority.CRITICAL: 1,
    Priority.HIGH: 25,
    Priority.MEDIUM: 50,
    Priority.LOW: 100,
}


class ChannelKind(str, Enum):
    """Supported delivery mechanisms."""
    EMAIL = "email"
    SLACK = "slack"
    WEBHOOK = "webhook"
    SMS = "sms"
    TEAMS = "teams"


class NotificationStatus(str, Enum):
    """Aggregate lifecycle status of a notification."""
    QUEUED = "queued"
    PROCESSING = "processing"
    SENT = "sent"
    PARTIALLY_DELIVERED = "partially_delivered"
    DELIVERED = "delivered"
    FAILED = "failed"
    EXPIRED = "expired"


TERMINAL_NOTIFICATION_STATUSES = frozenset({
    NotificationStatus.DELIVERED,
    NotificationStatus.PARTIALLY_DELIVERED,
    NotificationStatus.FAILED,
    NotificationStatus.EXPIRED,
})


class DeliveryStatus(str, Enum):
    """Status of a single (recipient x channel) delivery."""
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    RETRYING = "retrying"


SUCCESS_DELIVERY_STATUSES = frozenset({DeliveryStatus.SENT, DeliveryStatus.DELIVERED})
TERMINAL_DELIVERY_STATUSES = SUCCESS_DELIVERY_STATUSES | {DeliveryStatus.FAILED}


def _dedupe(values: Iterable[Any]) -> list[Any]:
    seen: set[Any] = set()
    ordered = []
    for value in values:
        if value not in seen:
            seen.add(value)
            ordered.append(value)
    return ordered


class Notification(BaseModel):
    """
    A unit of intent to inform one or more recipients.

    Carries either direct content (title + message) or a template reference
    with its variables. The status field is only ever written as the
    aggregate of the notification's deliveries.
    """
    notification_id: UUID = Field(default_factory=uuid4)
    external_id: str | None = Field(default=None, max_length=255)
    type: str = Field(default="general", min_length=1, max_length=100)
    priority: Priority = Field(default=Priority.MEDIUM)

    title: str | None = Field(default=None, max_length=500)
    message: str | None = Field(default=None, max_length=10000)
    html_message: str | None = Field(default=None, max_length=100000)
    template_name: str | None = Field(default=None, max_length=100)
    variables: dict[str, Any] = Field(default_factory=dict)

    recipients: list[str] = Field(..., min_length=1)
    channels: list[ChannelKind] = Field(..., min_length=1)
    metadata: dict[str, Any] = Field(default_factory=dict)
    max_retries: int = Field(default=3, ge=0, le=10)

    source_service: str | None = Field(default=None, max_length=100)
    source_tool: str | None = Field(default=None, max_length=100)
    user_id: str | None = Field(default=None, max_length=255)
    created_by: str | None = Field(default=None, max_length=255)

    status: NotificationStatus = Field(default=NotificationStatus.QUEUED)
    escalation_level: int = Field(default=0, ge=0)
    next_escalation_at: datetime | None = Field(default=None)
    claim_token: str | None = Field(default=None)
    claim_expires_at: datetime | None = Field(default=None)
    version: int = Field(default=0, ge=0)

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    scheduled_at: datetime | None = Field(default=None)
    expires_at: datetime | None = Field(default=None)
    completed_at: datetime | None = Field(default=None)

    @field_validator("recipients", mode="before")
    @classmethod
    def normalize_recipients(cls, v: Any) -> Any:
        if isinstance(v, (list, tuple)):
            return _dedupe(str(r).strip() for r in v if str(r).strip())
        return v

    @field_validator("channels", mode="after")
    @classmethod
    def dedupe_channels(cls, v: list[ChannelKind]) -> list[ChannelKind]:
        return _dedupe(v)

    @model_validator(mode="after")
    def check_content(self) -> Notification:
        if not self.template_name and not (self.title and self.message):
            raise ValueError("either template_name or both title and message are required")
        if self.expires_at and self.scheduled_at and self.expires_at <= self.scheduled_at:
            raise ValueError("expires_at must be after scheduled_at")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_NOTIFICATION_STATUSES

    def is_expired(self, now: datetime) -> bool:
        """Delivery must not be attempted after expires_at."""
        return self.expires_at is not None and now > self.expires_at

    def is_claimed(self, now: datetime) -> bool:
        return (
            self.claim_token is not None
            and self.claim_expires_at is not None
            and self.claim_expires_at > now
        )


class Delivery(BaseModel):
    """One delivery record per (notification x recipient x channel)."""
    delivery_id: UUID = Field(default_factory=uuid4)
    notification_id: UUID = Field(...)
    channel: ChannelKind = Field(...)
    recipient: str = Field(..., min_length=1)
    status: DeliveryStatus = Field(default=DeliveryStatus.PENDING)
    attempt_count: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=4, ge=1, le=11)
    escalation_level: int = Field(default=0, ge=0)
    last_error: str | None = Field(default=None)
    status_code: int | None = Field(default=None)
    latency_ms: float | None = Field(default=None)
    next_attempt_at: datetime | None = Field(default=None)
    first_attempted_at: datetime | None = Field(default=None)
    last_attempted_at: datetime | None = Field(default=None)
    completed_at: datetime | None = Field(default=None)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_DELIVERY_STATUSES

    @property
    def is_success(self) -> bool:
        return self.status in SUCCESS_DELIVERY_STATUSES

    @property
    def key(self) -> tuple[str, str]:
        return (self.channel.value, self.recipient)

    def is_due(self, now: datetime) -> bool:
        return not self.is_terminal and (self.next_attempt_at is None or self.next_attempt_at <= now)

    def _begin_attempt(self, now: datetime) -> None:
        if self.is_terminal:
            raise ValueError(f"delivery {self.delivery_id} is terminal ({self.status.value})")
        if self.attempt_count >= self.max_attempts:
            raise ValueError(f"delivery {self.delivery_id} has no attempts left")
        self.attempt_count += 1
        self.first_attempted_at = self.first_attempted_at or now
        self.last_attempted_at = now

    def record_success(
        self,
        now: datetime,
        status: DeliveryStatus = DeliveryStatus.DELIVERED,
        *,
        status_code: int | None = None,
        latency_ms: float | None = None,
    ) -> None:
        """Record a successful attempt; the delivery becomes terminal."""
        if status not in SUCCESS_DELIVERY_STATUSES:
            raise ValueError(f"{status.value} is not a success status")
        self._begin_attempt(now)
        self.status = status
        self.status_code = status_code
        self.latency_ms = latency_ms
        self.last_error = None
        self.next_attempt_at = None
        self.completed_at = now

    def record_failure(
        self,
        now: datetime,
        error: str,
        *,
        retryable: bool,
        backoff_ms: Callable[[int], int],
        status_code: int | None = None,
        latency_ms: float | None = None,
    ) -> None:
        """
        Record a failed attempt.

        Retryable failures with attempts left move to retrying with the next
        attempt scheduled after backoff_ms(retry_number); anything else is
        terminal failed.
        """
        self._begin_attempt(now)
        self.last_error = error[:2000]
        self.status_code = status_code
        self.latency_ms = latency_ms
        if retryable and self.attempt_count < self.max_attempts:
            self.status = DeliveryStatus.RETRYING
            self.next_attempt_at = now + timedelta(milliseconds=backoff_ms(self.attempt_count))
        else:
            self.status = DeliveryStatus.FAILED
            self.next_attempt_at = None
            self.completed_at = now

    def abandon(self, now: datetime, reason: str) -> None:
        """Terminate without another attempt (escalation exhausted or notification expired)."""
        if self.is_terminal:
            raise ValueError(f"delivery {self.delivery_id} is terminal ({self.status.value})")
        self.status = DeliveryStatus.FAILED
        self.last_error = reason
        self.next_attempt_at = None
        self.completed_at = now


class Template(BaseModel):
    """A named, versioned rendering recipe."""
    template_id: UUID = Field(default_factory=uuid4)
    name: str = Field(..., min_length=1, max_length=100)
    type: str = Field(..., min_length=1, max_length=100)
    description: str = Field(default="", max_length=500)
    subject_template: str = Field(..., min_length=1)
    body_template: str = Field(..., min_length=1)
    html_template: str | None = Field(default=None)
    variables: list[str] = Field(default_factory=list)
    supported_channels: list[ChannelKind] = Field(default_factory=lambda: list(ChannelKind))
    priority: Priority = Field(default=Priority.MEDIUM)
    enabled: bool = Field(default=True)
    version: int = Field(default=1, ge=1)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("variables", mode="before")
    @classmethod
    def ensure_list(cls, v: Any) -> list[str]:
        if v is None:
            return []
        values = list(v) if isinstance(v, (list, tuple, set)) else [v]
        return _dedupe(str(x) for x in values)

    def supports(self, channel: ChannelKind) -> bool:
        return channel in self.supported_channels


class DeliverySummary(BaseModel):
    """Delivery counts for one notification."""
    total: int = 0
    sent: int = 0
    delivered: int = 0
    failed: int = 0
    pending: int = 0

    @classmethod
    def from_deliveries(cls, deliveries: Iterable[Delivery]) -> DeliverySummary:
        summary = cls()
        for delivery in deliveries:
            summary.total += 1
            if delivery.status == DeliveryStatus.SENT:
                summary.sent += 1
            elif delivery.status == DeliveryStatus.DELIVERED:
                summary.delivered += 1
            elif delivery.status == DeliveryStatus.FAILED:
                summary.failed += 1
            else:
                summary.pending += 1
        return summary


def aggregate_status(deliveries: Iterable[Delivery]) -> NotificationStatus | None:
    """
    Derive a notification's status from its deliveries.

    All success -> delivered, all failed -> failed, mixed terminal ->
    partially_delivered. While deliveries are outstanding the interim status
    is sent when something already succeeded, otherwise processing. Returns None
    when there are no deliveries.
    """
    items = list(deliveries)
    if not items:
        return None
    successes = sum(1 for d in items if d.is_success)
    failures = sum(1 for d in items if d.status == DeliveryStatus.FAILED)
    if successes + failures < len(items):
        return NotificationStatus.SENT if successes else NotificationStatus.PROCESSING
    if failures == 0:
        return NotificationStatus.DELIVERED
    if successes == 0:
        return NotificationStatus.FAILED
    return NotificationStatus.PARTIALLY_DELIVERED
