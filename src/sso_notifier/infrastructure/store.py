"""
SSO Hub Notifier - Notification Store.

Single source of truth for notifications, deliveries, templates and
channels. Aggregate writes go through a compare-and-swap on the
notification version, and exclusive processing goes through a leased
claim token, so concurrent workers (even across processes) never
overwrite each other.

Architecture Layer: Infrastructure
Principles: Repository Pattern, Optimistic Concurrency, Copy-on-Read
"""
from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

import structlog

from ..domain.channels import Channel
from ..domain.entities import (
    Delivery,
    Notification,
    NotificationStatus,
    Template,
    TERMINAL_NOTIFICATION_STATUSES,
)
from ..exceptions import ConflictError, NotFoundError

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class NotificationFilter:
    """List filters for notifications."""
    type: str | None = None
    priority: str | None = None
    status: str | None = None
    source_service: str | None = None
    source_tool: str | None = None
    user_id: str | None = None

    def matches(self, notification: Notification) -> bool:
        checks: list[tuple[Any, Any]] = [
            (self.type, notification.type),
            (self.priority, notification.priority.value),
            (self.status, notification.status.value),
            (self.source_service, notification.source_service),
            (self.source_tool, notification.source_tool),
            (self.user_id, notification.user_id),
        ]
        return all(expected is None or expected == actual for expected, actual in checks)

    def as_dict(self) -> dict[str, str]:
        return {k: v for k, v in self.__dict__.items() if v is not None}


class NotificationStore(ABC):
    """Abstract persistence port for the notification pipeline."""

    @abstractmethod
    async def connect(self) -> None: ...
    @abstractmethod
    async def close(self) -> None: ...
    @abstractmethod
    async def health_check(self) -> bool: ...

    # Notifications

    @abstractmethod
    async def create_notification(self, notification: Notification) -> Notification:
        """Persist a new notification. Raises ConflictError on a duplicate external_id."""

    @abstractmethod
    async def get_notification(self, notification_id: UUID) -> Notification | None: ...
    @abstractmethod
    async def get_notification_by_external_id(self, external_id: str) -> Notification | None: ...
    @abstractmethod
    async def list_notifications(
        self, filters: NotificationFilter, limit: int = 50, offset: int = 0,
    ) -> list[Notification]: ...
    @abstractmethod
    async def count_notifications(self, filters: NotificationFilter) -> int: ...
    @abstractmethod
    async def delete_notification(self, notification_id: UUID) -> bool: ...

    @abstractmethod
    async def claim_notification(
        self, notification_id: UUID, token: str, now: datetime, lease: timedelta,
    ) -> Notification | None:
        """
        Take the exclusive processing claim.

        Returns the claimed notification (version bumped), or None when a
        different, unexpired claim is held. Raises NotFoundError if the
        notification does not exist.
        """

    @abstractmethod
    async def release_claim(self, notification_id: UUID, token: str) -> bool:
        """Drop the claim if token still holds it."""

    @abstractmethod
    async def update_notification(self, notification: Notification, expected_version: int) -> Notification | None:
        """
        Compare-and-swap write. Succeeds only if the stored version equals
        expected_version; the stored version becomes expected_version + 1.
        Returns None on a version conflict.
        """

    # Deliveries

    @abstractmethod
    async def create_deliveries(self, deliveries: list[Delivery]) -> int:
        """Insert deliveries, skipping any (notification, channel, recipient, level) already present."""

    @abstractmethod
    async def list_deliveries(self, notification_id: UUID) -> list[Delivery]: ...

    @abstractmethod
    async def update_delivery(self, delivery: Delivery) -> bool:
        """Persist a delivery; refused (False) if the stored row is already terminal."""

    # Templates and channels

    @abstractmethod
    async def create_template(self, template: Template) -> Template: ...
    @abstractmethod
    async def update_template(self, template: Template) -> Template: ...
    @abstractmethod
    async def get_template(self, template_id: UUID) -> Template | None: ...
    @abstractmethod
    async def get_template_by_name(self, name: str) -> Template | None: ...
    @abstractmethod
    async def list_templates(self, type: str | None = None, enabled_only: bool = False) -> list[Template]: ...
    @abstractmethod
    async def create_channel(self, channel: Channel) -> Channel: ...
    @abstractmethod
    async def get_channel(self, channel_id: UUID) -> Channel | None: ...
    @abstractmethod
    async def list_channels(self) -> list[Channel]: ...

    # Sweeps

    @abstractmethod
    async def expire_overdue(self, now: datetime) -> list[Notification]:
        """Mark unclaimed, never-expanded notifications past expires_at as expired."""

    @abstractmethod
    async def escalation_candidates(self, now: datetime, limit: int = 100) -> list[UUID]:
        """Non-terminal, unclaimed notifications whose next_escalation_at has passed."""

    @abstractmethod
    async def counts_by_status(self) -> dict[str, int]: ...


class InMemoryNotificationStore(NotificationStore):
    """In-memory store for development and tests. Every read returns a copy."""

    def __init__(self) -> None:
        self._notifications: dict[UUID, Notification] = {}
        self._deliveries: dict[UUID, dict[UUID, Delivery]] = {}
        self._templates: dict[UUID, Template] = {}
        self._channels: dict[UUID, Channel] = {}
        self._lock = asyncio.Lock()

    async def connect(self) -> None:
        logger.info("notification_store_connected", provider="memory")

    async def close(self) -> None:
        logger.info("notification_store_closed", provider="memory")

    async def health_check(self) -> bool:
        return True

    async def create_notification(self, notification: Notification) -> Notification:
        async with self._lock:
            if notification.external_id and any(
                n.external_id == notification.external_id for n in self._notifications.values()
            ):
                raise ConflictError(f"Notification with external_id '{notification.external_id}' exists",
                                    details={"external_id": notification.external_id})
            self._notifications[notification.notification_id] = notification.model_copy(deep=True)
            self._deliveries[notification.notification_id] = {}
        return notification.model_copy(deep=True)

    async def get_notification(self, notification_id: UUID) -> Notification | None:
        found = self._notifications.get(notification_id)
        return found.model_copy(deep=True) if found else None

    async def get_notification_by_external_id(self, external_id: str) -> Notification | None:
        for notification in self._notifications.values():
            if notification.external_id == external_id:
                return notification.model_copy(deep=True)
        return None

    async def list_notifications(
        self, filters: NotificationFilter, limit: int = 50, offset: int = 0,
    ) -> list[Notification]:
        matched = [n for n in self._notifications.values() if filters.matches(n)]
        matched.sort(key=lambda n: n.created_at, reverse=True)
        return [n.model_copy(deep=True) for n in matched[offset:offset + limit]]

    async def count_notifications(self, filters: NotificationFilter) -> int:
        return sum(1 for n in self._notifications.values() if filters.matches(n))

    async def delete_notification(self, notification_id: UUID) -> bool:
        async with self._lock:
            self._deliveries.pop(notification_id, None)
            return self._notifications.pop(notification_id, None) is not None

    async def claim_notification(
        self, notification_id: UUID, token: str, now: datetime, lease: timedelta,
    ) -> Notification | None:
        async with self._lock:
            stored = self._notifications.get(notification_id)
            if stored is None:
                raise NotFoundError("notification", str(notification_id))
            if stored.is_claimed(now) and stored.claim_token != token:
                return None
            stored.claim_token = token
            stored.claim_expires_at = now + lease
            stored.version += 1
            return stored.model_copy(deep=True)

    async def release_claim(self, notification_id: UUID, token: str) -> bool:
        async with self._lock:
            stored = self._notifications.get(notification_id)
            if stored is None or stored.claim_token != token:
                return False
            stored.claim_token = None
            stored.claim_expires_at = None
            return True

    async def update_notification(self, notification: Notification, expected_version: int) -> Notification | None:
        async with self._lock:
            stored = self._notifications.get(notification.notification_id)
            if stored is None:
                raise NotFoundError("notification", str(notification.notification_id))
            if stored.version != expected_version:
                logger.debug("notification_version_conflict", notification_id=str(notification.notification_id),
                             expected=expected_version, actual=stored.version)
                return None
            updated = notification.model_copy(deep=True)
            updated.version = expected_version + 1
            updated.claim_token = stored.claim_token
            updated.claim_expires_at = stored.claim_expires_at
            self._notifications[notification.notification_id] = updated
            return updated.model_copy(deep=True)

    async def create_deliveries(self, deliveries: list[Delivery]) -> int:
        inserted = 0
        async with self._lock:
            for delivery in deliveries:
                rows = self._deliveries.setdefault(delivery.notification_id, {})
                identity = (delivery.channel, delivery.recipient, delivery.escalation_level)
                if any((d.channel, d.recipient, d.escalation_level) == identity for d in rows.values()):
                    continue
                rows[delivery.delivery_id] = delivery.model_copy(deep=True)
                inserted += 1
        return inserted

    async def list_deliveries(self, notification_id: UUID) -> list[Delivery]:
        rows = self._deliveries.get(notification_id, {})
        return sorted((d.model_copy(deep=True) for d in rows.values()),
                      key=lambda d: (d.escalation_level, d.created_at))

    async def update_delivery(self, delivery: Delivery) -> bool:
        async with self._lock:
            rows = self._deliveries.get(delivery.notification_id, {})
            stored = rows.get(delivery.delivery_id)
            if stored is None:
                raise NotFoundError("delivery", str(delivery.delivery_id))
            if stored.is_terminal:
                logger.warning("terminal_delivery_update_refused", delivery_id=str(delivery.delivery_id),
                               status=stored.status.value)
                return False
            rows[delivery.delivery_id] = delivery.model_copy(deep=True)
            return True

    async def create_template(self, template: Template) -> Template:
        async with self._lock:
            if any(t.name == template.name for t in self._templates.values()):
                raise ConflictError(f"Template '{template.name}' already exists", details={"name": template.name})
            self._templates[template.template_id] = template.model_copy(deep=True)
        return template

    async def update_template(self, template: Template) -> Template:
        async with self._lock:
            if template.template_id not in self._templates:
                raise NotFoundError("template", str(template.template_id))
            if any(t.name == template.name and t.template_id != template.template_id
                   for t in self._templates.values()):
                raise ConflictError(f"Template '{template.name}' already exists", details={"name": template.name})
            self._templates[template.template_id] = template.model_copy(deep=True)
        return template

    async def get_template(self, template_id: UUID) -> Template | None:
        found = self._templates.get(template_id)
        return found.model_copy(deep=True) if found else None

    async def get_template_by_name(self, name: str) -> Template | None:
        for template in self._templates.values():
            if template.name == name:
                return template.model_copy(deep=True)
        return None

    async def list_templates(self, type: str | None = None, enabled_only: bool = False) -> list[Template]:
        templates = [
            t for t in self._templates.values()
            if (type is None or t.type == type) and (not enabled_only or t.enabled)
        ]
        return [t.model_copy(deep=True) for t in sorted(templates, key=lambda t: t.name)]

    async def create_channel(self, channel: Channel) -> Channel:
        async with self._lock:
            if any(c.name == channel.name for c in self._channels.values()):
                raise ConflictError(f"Channel '{channel.name}' already exists", details={"name": channel.name})
            self._channels[channel.channel_id] = channel.model_copy(deep=True)
        return channel

    async def get_channel(self, channel_id: UUID) -> Channel | None:
        found = self._channels.get(channel_id)
        return found.model_copy(deep=True) if found else None

    async def list_channels(self) -> list[Channel]:
        return [c.model_copy(deep=True) for c in sorted(self._channels.values(), key=lambda c: c.name)]

    async def expire_overdue(self, now: datetime) -> list[Notification]:
        expired = []
        async with self._lock:
            for notification in self._notifications.values():
                if (
                    notification.status == NotificationStatus.QUEUED
                    and notification.is_expired(now)
                    and not notification.is_claimed(now)
                    and not self._deliveries.get(notification.notification_id)
                ):
                    notification.status = NotificationStatus.EXPIRED
                    notification.completed_at = now
                    notification.updated_at = now
                    notification.version += 1
                    expired.append(notification.model_copy(deep=True))
        return expired

    async def escalation_candidates(self, now: datetime, limit: int = 100) -> list[UUID]:
        candidates = [
            n for n in self._notifications.values()
            if n.status not in TERMINAL_NOTIFICATION_STATUSES
            and n.next_escalation_at is not None
            and n.next_escalation_at <= now
            and not n.is_claimed(now)
        ]
        candidates.sort(key=lambda n: n.next_escalation_at)
        return [n.notification_id for n in candidates[:limit]]

    async def counts_by_status(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for notification in self._notifications.values():
            counts[notification.status.value] = counts.get(notification.status.value, 0) + 1
        return counts


def create_notification_store(config: Any) -> NotificationStore:
    """Build the store selected by DATABASE_PROVIDER."""
    if config.provider == "postgres":
        from .postgres import PostgresNotificationStore
        return PostgresNotificationStore(config)
    return InMemoryNotificationStore()
