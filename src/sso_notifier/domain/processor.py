"""
SSO Hub Notifier - Notification Processor.

Orchestrates one queue item at a time: claim the notification, expand it
into deliveries, attempt every due delivery through its channel adapter,
persist outcomes and decide what happens next (retry, escalation or a
final aggregate status). State is re-read from the store at every stage;
nothing is cached across queue hops.

Architecture Layer: Domain
Principles: Single Writer per Notification, At-Least-Once Processing, Injected Dependencies
"""
from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID, uuid4

import structlog

from ..clock import Clock, SystemClock
from ..config import ProcessingConfig, RetryConfig
from ..events import AuditEvent, AuditEventType
from ..exceptions import (
    NotFoundError,
    NotificationBusy,
    QueueUnavailableError,
    RepositoryError,
    TemplateError,
)
from ..infrastructure.audit import AuditLogger
from ..infrastructure.queue import POLL_ORDER, QueueItem, QueueManager, QueueName
from ..infrastructure.store import NotificationStore
from .channels import ChannelRegistry
from .entities import (
    ChannelKind,
    Delivery,
    DeliveryStatus,
    Notification,
    NotificationStatus,
    aggregate_status,
)
from .escalation import EscalationEngine, escalation_subject
from .templates import RenderedContent, TemplateEngine

logger = structlog.get_logger(__name__)

ITEM_PROCESS = "process"
ITEM_BATCH = "batch"

_CAS_ATTEMPTS = 3


def process_payload(notification_id: UUID) -> dict[str, Any]:
    return {"kind": ITEM_PROCESS, "notification_id": str(notification_id)}


def batch_payload(notification_ids: list[UUID]) -> dict[str, Any]:
    return {"kind": ITEM_BATCH, "notification_ids": [str(n) for n in notification_ids]}


class NotificationProcessor:
    """Processes queue items against the notification store."""

    def __init__(
        self,
        store: NotificationStore,
        queue: QueueManager,
        templates: TemplateEngine,
        channels: ChannelRegistry,
        escalation: EscalationEngine,
        audit: AuditLogger,
        retry: RetryConfig,
        processing: ProcessingConfig,
        clock: Clock | None = None,
    ) -> None:
        self._store = store
        self._queue = queue
        self._templates = templates
        self._channels = channels
        self._escalation = escalation
        self._audit = audit
        self._retry = retry
        self._processing = processing
        self._clock = clock or SystemClock()

    # ------------------------------------------------------------------
    # Queue item handling
    # ------------------------------------------------------------------

    async def handle(self, item: QueueItem) -> None:
        """Process one leased item and ack or nack it."""
        try:
            await self._dispatch(item)
        except NotificationBusy:
            logger.debug("notification_busy", item_id=item.item_id, queue=item.queue.value)
            await self._settle_item(item, nack_ms=self._processing.busy_retry_ms)
            return
        except (QueueUnavailableError, RepositoryError) as e:
            # Left leased; requeue_expired() redelivers it once the lease lapses.
            logger.error("queue_item_deferred", item_id=item.item_id, queue=item.queue.value, error=str(e))
            return
        except Exception as e:
            attempt = item.attempts + 1
            if attempt >= self._processing.max_item_attempts:
                logger.error("queue_item_abandoned", item_id=item.item_id, queue=item.queue.value,
                             attempts=attempt, error=str(e), exc_info=True)
                await self._settle_item(item)
            else:
                logger.warning("queue_item_failed", item_id=item.item_id, queue=item.queue.value,
                               attempt=attempt, error=str(e))
                await self._settle_item(item, nack_ms=self._retry.backoff_ms(attempt))
            return
        await self._settle_item(item)

    async def _settle_item(self, item: QueueItem, nack_ms: int | None = None) -> None:
        try:
            if nack_ms is None:
                await self._queue.ack(item)
            else:
                await self._queue.nack(item, nack_ms)
        except QueueUnavailableError as e:
            logger.error("queue_item_settle_failed", item_id=item.item_id, error=str(e))

    async def _dispatch(self, item: QueueItem) -> None:
        payload = item.payload
        if payload.get("kind") == ITEM_BATCH:
            await self.process_batch([UUID(n) for n in payload.get("notification_ids", [])])
            return
        notification_id = UUID(payload["notification_id"])
        await self.process_notification(notification_id, escalate=item.queue == QueueName.ESCALATION)

    async def process_batch(self, notification_ids: list[UUID]) -> int:
        """Process a bulk submission in chunks; items that cannot run now are requeued individually."""
        processed = 0
        size = self._processing.batch_size
        for start in range(0, len(notification_ids), size):
            chunk = notification_ids[start:start + size]
            results = await asyncio.gather(
                *(self.process_notification(nid) for nid in chunk), return_exceptions=True,
            )
            for nid, result in zip(chunk, results):
                if isinstance(result, BaseException):
                    logger.warning("batch_item_requeued", notification_id=str(nid), error=str(result))
                    await self._queue.enqueue(QueueName.IMMEDIATE, process_payload(nid))
                else:
                    processed += 1
        logger.info("batch_processed", total=len(notification_ids), processed=processed)
        return processed

    # ------------------------------------------------------------------
    # Notification processing
    # ------------------------------------------------------------------

    async def process_notification(self, notification_id: UUID, *, escalate: bool = False) -> Notification | None:
        """
        Run one processing pass for a notification under an exclusive claim.

        Raises:
            NotificationBusy: another worker holds an unexpired claim
        """
        token = uuid4().hex
        lease = timedelta(seconds=self._processing.claim_lease_seconds)
        try:
            notification = await self._store.claim_notification(notification_id, token, self._clock.now(), lease)
        except NotFoundError:
            logger.warning("notification_missing", notification_id=str(notification_id))
            return None
        if notification is None:
            raise NotificationBusy(f"Notification {notification_id} is claimed by another worker")

        logger.debug("notification_claimed", notification_id=str(notification_id), escalate=escalate)
        try:
            return await self._process_claimed(notification, escalate)
        finally:
            await self._store.release_claim(notification_id, token)

    async def _process_claimed(self, notification: Notification, escalate: bool) -> Notification:
        nid = notification.notification_id
        if notification.is_terminal:
            logger.debug("notification_already_terminal", notification_id=str(nid),
                         status=notification.status.value)
            return notification

        now = self._clock.now()
        if notification.is_expired(now):
            return await self._expire(notification, now)

        deliveries = await self._store.list_deliveries(nid)
        if not deliveries and notification.scheduled_at is not None and notification.scheduled_at > now:
            run_at_ms = int(notification.scheduled_at.timestamp() * 1000)
            await self._queue.enqueue(QueueName.DELAYED, process_payload(nid), run_at_ms=run_at_ms,
                                      dedupe_key=f"{nid}:scheduled:{run_at_ms}")
            logger.info("notification_not_yet_due", notification_id=str(nid),
                        scheduled_at=notification.scheduled_at.isoformat())
            return notification
        if not deliveries:
            notification = await self._expand(notification, now)
        elif escalate:
            notification = await self._escalate(notification, deliveries, now)
            if notification.is_terminal:
                return notification

        deliveries = await self._store.list_deliveries(nid)
        due = [d for d in deliveries if d.is_due(now)]
        if due:
            contents: dict[tuple[ChannelKind, int], RenderedContent | TemplateError] = {}
            for delivery in due:
                key = (delivery.channel, delivery.escalation_level)
                if key not in contents:
                    contents[key] = await self._render(notification, delivery)
            await asyncio.gather(*(
                self._attempt(notification, d, contents[(d.channel, d.escalation_level)], now) for d in due
            ))
        return await self._settle(notification)

    async def _expire(self, notification: Notification, now: datetime) -> Notification:
        for delivery in await self._store.list_deliveries(notification.notification_id):
            if not delivery.is_terminal:
                delivery.abandon(now, "notification expired")
                await self._store.update_delivery(delivery)

        def apply(n: Notification) -> None:
            n.status = NotificationStatus.EXPIRED
            n.completed_at = now
            n.next_escalation_at = None

        updated = await self._write(notification, apply)
        logger.info("notification_expired", notification_id=str(notification.notification_id))
        self._emit(AuditEventType.NOTIFICATION_EXPIRED, updated,
                   {"expires_at": notification.expires_at.isoformat() if notification.expires_at else None})
        return updated

    def _new_delivery(self, notification: Notification, channel: ChannelKind, recipient: str,
                      level: int, now: datetime) -> Delivery:
        return Delivery(
            notification_id=notification.notification_id,
            channel=channel,
            recipient=recipient,
            max_attempts=notification.max_retries + 1,
            escalation_level=level,
            created_at=now,
        )

    async def _expand(self, notification: Notification, now: datetime) -> Notification:
        deliveries = [
            self._new_delivery(notification, channel, recipient, 0, now)
            for recipient in notification.recipients
            for channel in notification.channels
        ]
        inserted = await self._store.create_deliveries(deliveries)
        logger.info("notification_expanded", notification_id=str(notification.notification_id),
                    deliveries=inserted)

        def apply(n: Notification) -> None:
            n.status = NotificationStatus.PROCESSING
            if self._escalation.enabled and n.next_escalation_at is None:
                n.next_escalation_at = now + self._escalation.delay

        return await self._write(notification, apply)

    async def _escalate(self, notification: Notification, deliveries: list[Delivery], now: datetime) -> Notification:
        nid = notification.notification_id
        if notification.next_escalation_at is None or notification.next_escalation_at > now:
            logger.debug("escalation_not_due", notification_id=str(nid))
            return notification
        if all(d.is_terminal for d in deliveries):
            return notification

        decision = self._escalation.evaluate(notification, notification.escalation_level)
        if decision.exhausted:
            for delivery in deliveries:
                if not delivery.is_terminal:
                    delivery.abandon(now, f"escalation exhausted after {notification.escalation_level} levels")
                    await self._store.update_delivery(delivery)

            def exhaust(n: Notification) -> None:
                n.status = NotificationStatus.FAILED
                n.completed_at = now
                n.next_escalation_at = None

            updated = await self._write(notification, exhaust)
            self._emit(AuditEventType.ESCALATION_EXHAUSTED, updated, {
                "level": notification.escalation_level,
                "max_levels": self._escalation.max_levels,
                "summary": _summary(await self._store.list_deliveries(nid)),
            })
            return updated

        created = [
            self._new_delivery(notification, channel, recipient, decision.next_level, now)
            for recipient in decision.target_recipients
            for channel in decision.channels
        ]
        inserted = await self._store.create_deliveries(created)

        def escalate(n: Notification) -> None:
            n.escalation_level = decision.next_level
            n.next_escalation_at = now + decision.delay_before_next
            n.metadata = {
                **n.metadata,
                "escalation": {
                    "level": decision.next_level,
                    "original_recipients": list(notification.recipients),
                    "escalated_at": now.isoformat(),
                },
            }

        updated = await self._write(notification, escalate)
        logger.info("notification_escalated", notification_id=str(nid), level=decision.next_level,
                    deliveries=inserted)
        self._emit(AuditEventType.NOTIFICATION_ESCALATED, updated, {
            "level": decision.next_level,
            "recipients": decision.target_recipients,
            "channels": [c.value for c in decision.channels],
        })
        return updated

    async def _render(self, notification: Notification, delivery: Delivery) -> RenderedContent | TemplateError:
        try:
            if notification.template_name:
                content = await self._templates.render(
                    notification.template_name, notification.variables, delivery.channel,
                )
            else:
                content = RenderedContent(
                    subject=notification.title or "",
                    body=notification.message or "",
                    html=notification.html_message,
                )
        except TemplateError as e:
            logger.warning("delivery_render_failed", notification_id=str(notification.notification_id),
                           channel=delivery.channel.value, error=e.message)
            return e
        if delivery.escalation_level > 0:
            content = content.model_copy(update={
                "subject": escalation_subject(delivery.escalation_level, content.subject),
            })
        return content

    async def _attempt(
        self,
        notification: Notification,
        delivery: Delivery,
        content: RenderedContent | TemplateError,
        now: datetime,
    ) -> None:
        if isinstance(content, TemplateError):
            delivery.record_failure(now, f"{content.error_code}: {content.message}",
                                    retryable=False, backoff_ms=self._retry.backoff_ms)
        else:
            adapter = self._channels.for_kind(delivery.channel)
            if adapter is None:
                delivery.record_failure(now, f"no enabled channel of kind '{delivery.channel.value}'",
                                        retryable=False, backoff_ms=self._retry.backoff_ms)
            else:
                outcome = await adapter.send(delivery, content, notification)
                if outcome.success:
                    delivery.record_success(now, outcome.status, status_code=outcome.status_code,
                                            latency_ms=outcome.latency_ms)
                else:
                    delivery.record_failure(now, outcome.error or "delivery failed",
                                            retryable=outcome.retryable, backoff_ms=self._retry.backoff_ms,
                                            status_code=outcome.status_code, latency_ms=outcome.latency_ms)

        await self._store.update_delivery(delivery)
        self._emit(AuditEventType.DELIVERY_ATTEMPTED, notification, {
            "delivery_id": str(delivery.delivery_id),
            "channel": delivery.channel.value,
            "recipient": delivery.recipient,
            "status": delivery.status.value,
            "attempt": delivery.attempt_count,
            "escalation_level": delivery.escalation_level,
            "error": delivery.last_error,
        })

    async def _settle(self, notification: Notification) -> Notification:
        nid = notification.notification_id
        now = self._clock.now()
        deliveries = await self._store.list_deliveries(nid)
        status = aggregate_status(deliveries) or NotificationStatus.FAILED
        finished = all(d.is_terminal for d in deliveries)

        def apply(n: Notification) -> None:
            n.status = status
            if finished:
                n.completed_at = now
                n.next_escalation_at = None

        updated = await self._write(notification, apply)
        if finished:
            event = (AuditEventType.NOTIFICATION_FAILED if status == NotificationStatus.FAILED
                     else AuditEventType.NOTIFICATION_COMPLETED)
            logger.info("notification_completed", notification_id=str(nid), status=status.value)
            self._emit(event, updated, {"status": status.value, "summary": _summary(deliveries)})
            return updated

        await self._schedule_followup(updated, deliveries, now)
        return updated

    async def _schedule_followup(self, notification: Notification, deliveries: list[Delivery], now: datetime) -> None:
        nid = notification.notification_id
        escalation_at = notification.next_escalation_at if self._escalation.enabled else None
        if escalation_at is not None and escalation_at <= now:
            await self.enqueue_escalation(notification)
            return

        pending = [d.next_attempt_at or now for d in deliveries if not d.is_terminal]
        run_at = min(pending)
        if escalation_at is not None:
            run_at = min(run_at, escalation_at)
        run_at_ms = int(run_at.timestamp() * 1000)
        await self._queue.enqueue(QueueName.RETRY, process_payload(nid), run_at_ms=run_at_ms,
                                  dedupe_key=f"{nid}:retry:{run_at_ms}")
        logger.info("notification_retry_scheduled", notification_id=str(nid), run_at=run_at.isoformat())

    async def enqueue_escalation(self, notification: Notification) -> QueueItem | None:
        nid = notification.notification_id
        item = await self._queue.enqueue(
            QueueName.ESCALATION, process_payload(nid),
            dedupe_key=f"{nid}:escalation:{notification.escalation_level + 1}",
        )
        if item is not None:
            logger.info("notification_escalation_queued", notification_id=str(nid),
                        next_level=notification.escalation_level + 1)
        return item

    async def _write(self, notification: Notification, apply: Callable[[Notification], None]) -> Notification:
        """Apply a mutation and persist it with compare-and-swap, re-reading on conflict."""
        current = notification
        for _ in range(_CAS_ATTEMPTS):
            apply(current)
            current.updated_at = self._clock.now()
            updated = await self._store.update_notification(current, current.version)
            if updated is not None:
                return updated
            fresh = await self._store.get_notification(notification.notification_id)
            if fresh is None:
                raise NotFoundError("notification", str(notification.notification_id))
            current = fresh
        raise RepositoryError(f"Concurrent update conflict on notification {notification.notification_id}")

    def _emit(self, event_type: AuditEventType, notification: Notification, details: dict[str, Any]) -> None:
        self._audit.log(AuditEvent(
            event_type=event_type,
            resource_id=str(notification.notification_id),
            user_id=notification.user_id or "system",
            priority=notification.priority.value,
            details={"type": notification.type, **details},
            timestamp=self._clock.now(),
        ))

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    async def sweep(self) -> dict[str, int]:
        """Promote due delayed work, recover expired leases, queue stalled escalations, expire overdue."""
        now = self._clock.now()
        promoted = await self._queue.promote_due()
        recovered = await self._queue.requeue_expired()

        escalations = 0
        if self._escalation.enabled:
            for nid in await self._store.escalation_candidates(now):
                notification = await self._store.get_notification(nid)
                if notification is not None and await self.enqueue_escalation(notification) is not None:
                    escalations += 1

        expired = await self._store.expire_overdue(now)
        for notification in expired:
            self._emit(AuditEventType.NOTIFICATION_EXPIRED, notification, {"swept": True})

        result = {"promoted": promoted, "recovered": recovered, "escalations": escalations, "expired": len(expired)}
        if any(result.values()):
            logger.info("housekeeping_sweep", **result)
        return result


def _summary(deliveries: list[Delivery]) -> dict[str, int]:
    counts = {status.value: 0 for status in DeliveryStatus}
    for delivery in deliveries:
        counts[delivery.status.value] += 1
    return counts


class WorkerPool:
    """
    Fixed-size pool of polling workers plus a housekeeping sweeper.

    Workers poll the queues in priority order; mutual exclusion on a
    notification comes from the store claim, so several pools (in several
    processes) may share the same queues.
    """

    def __init__(
        self,
        processor: NotificationProcessor,
        queue: QueueManager,
        config: ProcessingConfig,
    ) -> None:
        self._processor = processor
        self._queue = queue
        self._config = config
        self._tasks: list[asyncio.Task[None]] = []
        self._stopping = asyncio.Event()
        self._paused = False
        self._active = 0

    @property
    def state(self) -> str:
        if not self._tasks:
            return "stopped"
        return "paused" if self._paused else "running"

    def status(self) -> dict[str, Any]:
        return {
            "state": self.state,
            "workers": max(len(self._tasks) - 1, 0),
            "concurrency": self._config.concurrency,
            "active": self._active,
        }

    def start(self) -> None:
        if self._tasks:
            return
        self._stopping.clear()
        self._paused = False
        self._tasks = [asyncio.create_task(self._worker(i)) for i in range(self._config.concurrency)]
        self._tasks.append(asyncio.create_task(self._sweeper()))
        logger.info("worker_pool_started", concurrency=self._config.concurrency)

    def pause(self) -> None:
        self._paused = True
        logger.info("worker_pool_paused")

    def resume(self) -> None:
        self._paused = False
        logger.info("worker_pool_resumed")

    async def stop(self) -> None:
        """Stop polling and wait for in-flight items to finish."""
        if not self._tasks:
            return
        self._stopping.set()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("worker_pool_stopped")

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def poll(self) -> QueueItem | None:
        for queue in POLL_ORDER:
            item = await self._queue.dequeue(queue)
            if item is not None:
                return item
        return None

    async def _worker(self, index: int) -> None:
        idle_ms = self._config.idle_backoff_ms
        while not self._stopping.is_set():
            if self._paused:
                await self._sleep(self._config.idle_backoff_ms / 1000)
                continue
            try:
                item = await self.poll()
            except QueueUnavailableError as e:
                logger.warning("worker_poll_failed", worker=index, error=str(e), backoff_ms=idle_ms)
                await self._sleep(idle_ms / 1000)
                idle_ms = min(idle_ms * 2, self._config.max_idle_backoff_ms)
                continue
            if item is None:
                await self._sleep(idle_ms / 1000)
                idle_ms = min(idle_ms * 2, self._config.max_idle_backoff_ms)
                continue
            idle_ms = self._config.idle_backoff_ms
            self._active += 1
            try:
                await self._processor.handle(item)
            finally:
                self._active -= 1

    async def _sweeper(self) -> None:
        while not self._stopping.is_set():
            if not self._paused:
                try:
                    await self._processor.sweep()
                except (QueueUnavailableError, RepositoryError) as e:
                    logger.warning("housekeeping_sweep_failed", error=str(e))
            await self._sleep(self._config.sweep_interval_seconds)

    async def run_once(self, max_items: int = 1000) -> int:
        """Sweep, then drain every ready item in the current process. Returns items handled."""
        await self._processor.sweep()
        handled = 0
        while handled < max_items:
            item = await self.poll()
            if item is None:
                break
            await self._processor.handle(item)
            handled += 1
        return handled
