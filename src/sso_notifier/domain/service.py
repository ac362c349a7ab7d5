"""
SSO Hub Notifier - Notifier Service.

Application facade used by the REST layer: accepts notifications,
routes them to the right queue, exposes read models and the template and
channel administration the pipeline depends on. Owns startup/shutdown of
every collaborator it was constructed with.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

import httpx
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
import structlog

from ..clock import Clock, SystemClock
from ..config import NotifierConfig
from ..events import AuditEvent, AuditEventType
from ..exceptions import (
    ChannelDisabledError,
    NotFoundError,
    QueueUnavailableError,
    TemplateSyntaxInvalid,
    ValidationError,
)
from ..infrastructure.audit import AuditLogger
from ..infrastructure.queue import QueueManager, QueueName, create_queue_manager
from ..infrastructure.store import NotificationFilter, NotificationStore, create_notification_store
from .channels import Channel, ChannelRegistry, HealthResult, config_model_for
from .entities import ChannelKind, Delivery, DeliverySummary, Notification, Priority, Template
from .escalation import EscalationEngine
from .processor import NotificationProcessor, WorkerPool, batch_payload, process_payload
from .templates import TemplateEngine

logger = structlog.get_logger(__name__)


class QueueResult(BaseModel):
    """Where a newly accepted notification was queued."""
    queued: bool
    queue: QueueName | None = None
    item_id: str | None = None
    run_at: datetime | None = None
    priority_rank: int | None = None
    deduplicated: bool = False


class NotifierService:
    """
    Notification pipeline facade.

    Every dependency is injected; nothing here is a process-wide singleton.
    """

    def __init__(
        self,
        config: NotifierConfig,
        store: NotificationStore,
        queue: QueueManager,
        templates: TemplateEngine,
        channels: ChannelRegistry,
        processor: NotificationProcessor,
        pool: WorkerPool,
        audit: AuditLogger,
        clock: Clock,
    ) -> None:
        self._config = config
        self._store = store
        self._queue = queue
        self._templates = templates
        self._channels = channels
        self._processor = processor
        self._pool = pool
        self._audit = audit
        self._clock = clock
        logger.info("notifier_service_initialized")

    @property
    def config(self) -> NotifierConfig:
        return self._config

    @property
    def pool(self) -> WorkerPool:
        return self._pool

    @property
    def processor(self) -> NotificationProcessor:
        return self._processor

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def startup(self, *, run_workers: bool | None = None) -> None:
        await self._store.connect()
        await self._queue.connect()
        await self._audit.start()
        for channel in await self._store.list_channels():
            await self._channels.register(channel)
        await self.register_default_channels()
        if run_workers if run_workers is not None else self._config.service.run_workers:
            self._pool.start()
        self._emit(AuditEventType.SERVICE_STARTED, "service", self._config.service.name,
                   {"version": self._config.service.version})

    async def shutdown(self) -> None:
        await self._pool.stop()
        self._emit(AuditEventType.SERVICE_STOPPED, "service", self._config.service.name, {})
        await self._audit.stop()
        await self._channels.close()
        await self._queue.close()
        await self._store.close()

    async def register_default_channels(self) -> list[Channel]:
        """Register one channel per env-enabled kind unless the store already has an enabled one."""
        sections = {
            ChannelKind.EMAIL: self._config.email,
            ChannelKind.SLACK: self._config.slack,
            ChannelKind.WEBHOOK: self._config.webhook,
            ChannelKind.SMS: self._config.sms,
            ChannelKind.TEAMS: self._config.teams,
        }
        registered = []
        for kind_name in self._config.get_enabled_channels():
            kind = ChannelKind(kind_name)
            if self._channels.for_kind(kind) is not None:
                continue
            try:
                channel_config = config_model_for(kind).model_validate(
                    sections[kind].model_dump(exclude={"enabled"})
                )
            except PydanticValidationError as e:
                logger.warning("default_channel_skipped", kind=kind.value, errors=e.error_count())
                continue
            channel = Channel(name=f"default-{kind.value}", kind=kind, config=channel_config,
                              description="Configured from environment")
            existing = {c.name for c in await self._store.list_channels()}
            if channel.name not in existing:
                await self._store.create_channel(channel)
            await self._channels.register(channel)
            registered.append(channel)
        return registered

    async def readiness(self) -> dict[str, bool]:
        return {
            "store": await self._store.health_check(),
            "queue": await self._queue.health_check(),
        }

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def route(self, notification: Notification, immediate: bool = False) -> tuple[QueueName, int | None]:
        """Choose the queue and optional run-at (epoch ms) for a new notification."""
        now = self._clock.now()
        if notification.priority == Priority.CRITICAL or immediate:
            return QueueName.IMMEDIATE, None
        if notification.scheduled_at is not None and notification.scheduled_at > now:
            return QueueName.DELAYED, int(notification.scheduled_at.timestamp() * 1000)
        return QueueName.IMMEDIATE, None

    async def _prepare(self, notification: Notification) -> Notification:
        """Render template content up front so missing variables are rejected before anything is stored."""
        if notification.template_name:
            rendered = await self._templates.render(notification.template_name, notification.variables)
            notification.title = notification.title or rendered.subject[:500]
            notification.message = notification.message or rendered.body
            notification.html_message = notification.html_message or rendered.html
        now = self._clock.now()
        notification.created_at = now
        notification.updated_at = now
        return notification

    async def create_notification(
        self,
        notification: Notification,
        *,
        immediate: bool = False,
    ) -> tuple[Notification, QueueResult]:
        """
        Persist and enqueue a notification.

        Raises:
            MissingVariable / UnknownTemplate: template path could not render
            QueueUnavailableError: nothing was queued and nothing is kept
        """
        if notification.external_id:
            existing = await self._store.get_notification_by_external_id(notification.external_id)
            if existing is not None:
                logger.info("notification_deduplicated", external_id=notification.external_id,
                            notification_id=str(existing.notification_id))
                return existing, QueueResult(queued=False, deduplicated=True,
                                             priority_rank=existing.priority.rank)

        notification = await self._prepare(notification)
        await self._store.create_notification(notification)

        queue, run_at_ms = self.route(notification, immediate)
        nid = notification.notification_id
        try:
            item = await self._queue.enqueue(queue, process_payload(nid), run_at_ms=run_at_ms,
                                             dedupe_key=f"{nid}:process")
        except QueueUnavailableError:
            await self._store.delete_notification(nid)
            logger.error("notification_enqueue_failed", notification_id=str(nid), queue=queue.value)
            raise

        result = QueueResult(
            queued=True,
            queue=queue,
            item_id=item.item_id if item else None,
            run_at=notification.scheduled_at if queue == QueueName.DELAYED else None,
            priority_rank=notification.priority.rank,
        )
        logger.info("notification_created", notification_id=str(nid), queue=queue.value,
                    priority=notification.priority.value, recipients=len(notification.recipients),
                    channels=[c.value for c in notification.channels])
        self._emit(AuditEventType.NOTIFICATION_CREATED, "notification", str(nid),
                   {"type": notification.type, "channels": [c.value for c in notification.channels],
                    "recipients": len(notification.recipients)},
                   user_id=notification.created_by, priority=notification.priority.value)
        self._emit(AuditEventType.NOTIFICATION_QUEUED, "notification", str(nid),
                   {"queue": queue.value, "priority_rank": notification.priority.rank},
                   user_id=notification.created_by, priority=notification.priority.value)
        return notification, result

    async def send_notification(self, notification: Notification) -> tuple[Notification, QueueResult]:
        """Accept a notification for immediate processing."""
        return await self.create_notification(notification, immediate=True)

    async def create_batch(self, notifications: list[Notification]) -> tuple[list[Notification], QueueResult]:
        """Persist a bulk submission and enqueue it as one batch item."""
        limit = self._config.processing.batch_size
        if not notifications:
            raise ValidationError("Batch must contain at least one notification", field="notifications")
        if len(notifications) > limit:
            raise ValidationError(f"Batch exceeds maximum size of {limit}", field="notifications")

        prepared = [await self._prepare(n) for n in notifications]
        stored: list[Notification] = []
        try:
            for notification in prepared:
                stored.append(await self._store.create_notification(notification))
            item = await self._queue.enqueue(QueueName.BATCH, batch_payload([n.notification_id for n in stored]))
        except Exception:
            for notification in stored:
                await self._store.delete_notification(notification.notification_id)
            raise

        logger.info("notification_batch_queued", count=len(stored), item_id=item.item_id if item else None)
        self._emit(AuditEventType.BATCH_QUEUED, "notification_batch", item.item_id if item else None,
                   {"count": len(stored), "notification_ids": [str(n.notification_id) for n in stored]})
        return stored, QueueResult(queued=True, queue=QueueName.BATCH, item_id=item.item_id if item else None)

    async def get_notification(self, notification_id: UUID) -> tuple[Notification, list[Delivery]]:
        notification = await self._store.get_notification(notification_id)
        if notification is None:
            raise NotFoundError("notification", str(notification_id))
        return notification, await self._store.list_deliveries(notification_id)

    async def list_notifications(
        self, filters: NotificationFilter, limit: int = 50, offset: int = 0,
    ) -> tuple[list[Notification], int]:
        items = await self._store.list_notifications(filters, limit, offset)
        return items, await self._store.count_notifications(filters)

    async def get_delivery_status(self, notification_id: UUID) -> tuple[Notification, list[Delivery], DeliverySummary]:
        notification, deliveries = await self.get_notification(notification_id)
        return notification, deliveries, DeliverySummary.from_deliveries(deliveries)

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------

    async def list_templates(self, type: str | None = None, enabled_only: bool = False) -> list[Template]:
        return await self._store.list_templates(type, enabled_only)

    async def create_template(self, template: Template, created_by: str | None = None) -> Template:
        errors = self._templates.validate_template(template)
        if errors:
            raise TemplateSyntaxInvalid(errors)
        created = await self._store.create_template(template)
        self._templates.clear_cache()
        logger.info("template_created", template=template.name, template_id=str(template.template_id))
        self._emit(AuditEventType.TEMPLATE_CREATED, "template", str(template.template_id),
                   {"name": template.name, "type": template.type}, user_id=created_by)
        return created

    async def update_template(self, template_id: UUID, changes: dict[str, Any],
                              updated_by: str | None = None) -> Template:
        current = await self._store.get_template(template_id)
        if current is None:
            raise NotFoundError("template", str(template_id))
        try:
            updated = Template.model_validate({
                **current.model_dump(),
                **changes,
                "template_id": current.template_id,
                "version": current.version + 1,
                "created_at": current.created_at,
                "updated_at": self._clock.now(),
            })
        except PydanticValidationError as e:
            raise ValidationError("Invalid template update", details={"errors": e.errors(include_url=False)}) from e
        errors = self._templates.validate_template(updated)
        if errors:
            raise TemplateSyntaxInvalid(errors)
        await self._store.update_template(updated)
        self._templates.invalidate(current.name)
        self._templates.invalidate(str(template_id))
        logger.info("template_updated", template=updated.name, version=updated.version)
        self._emit(AuditEventType.TEMPLATE_UPDATED, "template", str(template_id),
                   {"name": updated.name, "version": updated.version}, user_id=updated_by)
        return updated

    async def test_template(self, template_ref: str, variables: dict[str, Any],
                            tested_by: str | None = None) -> dict[str, Any]:
        result = await self._templates.test_template(template_ref, variables)
        self._emit(AuditEventType.TEMPLATE_TESTED, "template", result["template_id"],
                   {"success": result["success"]}, user_id=tested_by)
        return result

    def template_cache_stats(self) -> dict[str, Any]:
        return self._templates.cache_stats()

    # ------------------------------------------------------------------
    # Channels
    # ------------------------------------------------------------------

    async def list_channels(self) -> list[Channel]:
        return await self._store.list_channels()

    async def create_channel(self, channel: Channel, created_by: str | None = None) -> Channel:
        created = await self._store.create_channel(channel)
        await self._channels.register(channel)
        logger.info("channel_created", channel=channel.name, kind=channel.kind.value)
        self._emit(AuditEventType.CHANNEL_CREATED, "channel", str(channel.channel_id),
                   {"name": channel.name, "kind": channel.kind.value}, user_id=created_by)
        return created

    async def test_channel(self, channel_id: UUID, tested_by: str | None = None) -> HealthResult:
        channel = await self._store.get_channel(channel_id)
        if channel is None:
            raise NotFoundError("channel", str(channel_id))
        if not channel.enabled:
            raise ChannelDisabledError(f"Channel '{channel.name}' is disabled",
                                       details={"channel_id": str(channel_id)})
        adapter = self._channels.get(channel_id) or await self._channels.register(channel)
        result = await adapter.test()
        self._emit(AuditEventType.CHANNEL_TESTED, "channel", str(channel_id),
                   {"name": channel.name, "healthy": result.healthy, "status_code": result.status_code},
                   user_id=tested_by)
        return result

    # ------------------------------------------------------------------
    # Queues
    # ------------------------------------------------------------------

    async def queue_stats(self) -> dict[str, Any]:
        stats = await self._queue.stats()
        return {
            "queues": {queue.value: s.to_dict() for queue, s in stats.items()},
            "processing": self._pool.status(),
            "notifications": await self._store.counts_by_status(),
            "audit": self._audit.status(),
            "template_cache": self._templates.cache_stats(),
        }

    def pause_processing(self) -> None:
        self._pool.pause()

    def resume_processing(self) -> None:
        self._pool.resume()

    async def clear_queue(self, queue: QueueName) -> int:
        return await self._queue.clear(queue)

    def _emit(
        self,
        event_type: AuditEventType,
        resource_type: str,
        resource_id: str | None,
        details: dict[str, Any],
        *,
        user_id: str | None = None,
        priority: str | None = None,
    ) -> None:
        self._audit.log(AuditEvent(
            event_type=event_type,
            resource_type=resource_type,
            resource_id=resource_id,
            user_id=user_id or "system",
            priority=priority,
            details=details,
            timestamp=self._clock.now(),
        ))


def create_notifier_service(
    config: NotifierConfig,
    *,
    clock: Clock | None = None,
    store: NotificationStore | None = None,
    queue: QueueManager | None = None,
    http_client: httpx.AsyncClient | None = None,
    audit_client: httpx.AsyncClient | None = None,
    audit: AuditLogger | None = None,
) -> NotifierService:
    """
    Factory function to wire a NotifierService from configuration.

    Store and queue default to the providers selected in config; tests pass
    in-memory instances and a fake clock.
    """
    clock = clock or SystemClock()
    store = store or create_notification_store(config.database)
    queue = queue or create_queue_manager(config.queue, clock)
    templates = TemplateEngine(
        store,
        cache_enabled=config.template.cache_enabled,
        cache_ttl_seconds=config.template.cache_ttl_seconds,
        cache_max_entries=config.template.cache_max_entries,
        clock=clock,
    )
    channels = ChannelRegistry(http_client, send_timeout_seconds=config.processing.send_timeout_ms / 1000)
    escalation = EscalationEngine(config.escalation)
    audit = audit or AuditLogger(config.audit, audit_client, service_name=config.service.name,
                                 service_version=config.service.version)
    processor = NotificationProcessor(
        store, queue, templates, channels, escalation, audit,
        config.retry, config.processing, clock,
    )
    pool = WorkerPool(processor, queue, config.processing)
    return NotifierService(config, store, queue, templates, channels, processor, pool, audit, clock)
