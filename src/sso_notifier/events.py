"""
SSO Hub Notifier - Audit Events.

Lifecycle events emitted by the pipeline and shipped to the audit service.

Architecture Layer: Domain
Principles: Event-Driven Architecture, Structured Audit Trail
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class AuditEventType(str, Enum):
    """Audit event types."""
    NOTIFICATION_CREATED = "notification.created"
    NOTIFICATION_QUEUED = "notification.queued"
    NOTIFICATION_COMPLETED = "notification.completed"
    NOTIFICATION_EXPIRED = "notification.expired"
    NOTIFICATION_ESCALATED = "notification.escalated"
    ESCALATION_EXHAUSTED = "notification.escalation_exhausted"
    NOTIFICATION_FAILED = "notification.failed"
    DELIVERY_ATTEMPTED = "notification.delivery.attempted"
    BATCH_QUEUED = "notification.batch.queued"
    TEMPLATE_CREATED = "template.created"
    TEMPLATE_UPDATED = "template.updated"
    TEMPLATE_TESTED = "template.tested"
    CHANNEL_CREATED = "channel.created"
    CHANNEL_TESTED = "channel.tested"
    SERVICE_STARTED = "system.service_started"
    SERVICE_STOPPED = "system.service_stopped"


_FAILURE_EVENTS = frozenset({
    AuditEventType.NOTIFICATION_FAILED,
    AuditEventType.ESCALATION_EXHAUSTED,
})


class AuditEvent(BaseModel):
    """Structured audit record for one lifecycle transition."""
    event_type: AuditEventType
    resource_type: str = Field(default="notification")
    resource_id: str | None = Field(default=None)
    user_id: str = Field(default="system")
    priority: str | None = Field(default=None)
    details: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_urgent(self) -> bool:
        """Critical-priority and failure events bypass the flush interval."""
        return self.priority == "critical" or self.event_type in _FAILURE_EVENTS

    def to_entry(self, service: str = "notifier") -> dict[str, Any]:
        """Serialize to the audit service wire format."""
        return {
            "service": service,
            "event_type": self.event_type.value,
            "user_id": self.user_id,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "action": self.event_type.value.rsplit(".", 1)[-1],
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }
