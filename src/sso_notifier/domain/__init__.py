"""
SSO Hub Notifier - Domain Layer.

Entities, template rendering, channel adapters and the escalation policy.
The processor and service modules depend on infrastructure and are
imported from their own modules.
"""
from .channels import Channel, ChannelAdapter, ChannelRegistry, DeliveryOutcome, HealthResult
from .entities import (
    ChannelKind,
    Delivery,
    DeliveryStatus,
    DeliverySummary,
    Notification,
    NotificationStatus,
    Priority,
    Template,
    aggregate_status,
)
from .escalation import EscalationDecision, EscalationEngine
from .templates import RenderedContent, TemplateEngine

__all__ = [
    "Channel",
    "ChannelAdapter",
    "ChannelKind",
    "ChannelRegistry",
    "Delivery",
    "DeliveryOutcome",
    "DeliveryStatus",
    "DeliverySummary",
    "EscalationDecision",
    "EscalationEngine",
    "HealthResult",
    "Notification",
    "NotificationStatus",
    "Priority",
    "RenderedContent",
    "Template",
    "TemplateEngine",
    "aggregate_status",
]
