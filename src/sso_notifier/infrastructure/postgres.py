"""
SSO Hub Notifier - PostgreSQL Notification Store.

Durable asyncpg-backed implementation of the NotificationStore port.
Claims and aggregate writes are single conditional UPDATE statements,
so mutual exclusion holds across any number of worker processes.
"""
from __future__ import annotations

import json
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

import asyncpg
import structlog

from ..config import DatabaseConfig
from ..domain.channels import Channel
from ..domain.entities import Delivery, Notification, Template
from ..exceptions import ConflictError, NotFoundError, QueryError, RepositoryConnectionError
from .store import NotificationFilter, NotificationStore

logger = structlog.get_logger(__name__)

SCHEMA_DDL = """
CREATE TABLE IF NOT EXISTS notifications (
    id UUID PRIMARY KEY,
    external_id VARCHAR(255) UNIQUE,
    type VARCHAR(100) NOT NULL,
    priority VARCHAR(20) NOT NULL,
    title VARCHAR(500),
    message TEXT,
    html_message TEXT,
    template_name VARCHAR(100),
    variables JSONB NOT NULL DEFAULT '{}',
    recipients JSONB NOT NULL,
    channels JSONB NOT NULL,
    metadata JSONB NOT NULL DEFAULT '{}',
    max_retries INT NOT NULL DEFAULT 3,
    source_service VARCHAR(100),
    source_tool VARCHAR(100),
    user_id VARCHAR(255),
    created_by VARCHAR(255),
    status VARCHAR(30) NOT NULL DEFAULT 'queued',
    escalation_level INT NOT NULL DEFAULT 0,
    next_escalation_at TIMESTAMPTZ,
    claim_token VARCHAR(64),
    claim_expires_at TIMESTAMPTZ,
    version INT NOT NULL DEFAULT 0,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    scheduled_at TIMESTAMPTZ,
    expires_at TIMESTAMPTZ,
    completed_at TIMESTAMPTZ
);
CREATE INDEX IF NOT EXISTS idx_notifications_status ON notifications (status, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_notifications_escalation ON notifications (next_escalation_at)
    WHERE status NOT IN ('delivered', 'partially_delivered', 'failed', 'expired');
CREATE INDEX IF NOT EXISTS idx_notifications_expiry ON notifications (expires_at)
    WHERE status = 'queued';

CREATE TABLE IF NOT EXISTS notification_deliveries (
    id UUID PRIMARY KEY,
    notification_id UUID NOT NULL REFERENCES notifications (id) ON DELETE CASCADE,
    channel VARCHAR(20) NOT NULL,
    recipient VARCHAR(500) NOT NULL,
    status VARCHAR(20) NOT NULL DEFAULT 'pending',
    attempt_count INT NOT NULL DEFAULT 0,
    max_attempts INT NOT NULL,
    escalation_level INT NOT NULL DEFAULT 0,
    last_error TEXT,
    status_code INT,
    latency_ms DOUBLE PRECISION,
    next_attempt_at TIMESTAMPTZ,
    first_attempted_at TIMESTAMPTZ,
    last_attempted_at TIMESTAMPTZ,
    completed_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE (notification_id, channel, recipient, escalation_level)
);
CREATE INDEX IF NOT EXISTS idx_deliveries_notification ON notification_deliveries (notification_id);

CREATE TABLE IF NOT EXISTS notification_templates (
    id UUID PRIMARY KEY,
    name VARCHAR(100) NOT NULL UNIQUE,
    type VARCHAR(100) NOT NULL,
    description VARCHAR(500) NOT NULL DEFAULT '',
    subject_template TEXT NOT NULL,
    body_template TEXT NOT NULL,
    html_template TEXT,
    variables JSONB NOT NULL DEFAULT '[]',
    supported_channels JSONB NOT NULL,
    priority VARCHAR(20) NOT NULL DEFAULT 'medium',
    enabled BOOLEAN NOT NULL DEFAULT TRUE,
    version INT NOT NULL DEFAULT 1,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS notification_channels (
    id UUID PRIMARY KEY,
    name VARCHAR(100) NOT NULL UNIQUE,
    kind VARCHAR(20) NOT NULL,
    description VARCHAR(500) NOT NULL DEFAULT '',
    config JSONB NOT NULL,
    enabled BOOLEAN NOT NULL DEFAULT TRUE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""

_TERMINAL_SQL = "('delivered', 'partially_delivered', 'failed', 'expired')"
_TERMINAL_DELIVERY_SQL = "('sent', 'delivered', 'failed')"
_JSON_COLUMNS = ("variables", "recipients", "channels", "metadata", "supported_channels", "config")


def _jsonb(value: Any) -> str:
    return json.dumps(value, default=str)


def _row_dict(row: Any) -> dict[str, Any]:
    data = dict(row)
    for column in _JSON_COLUMNS:
        if isinstance(data.get(column), str):
            data[column] = json.loads(data[column])
    return data


def _affected(status: str) -> int:
    """Row count from an asyncpg command status such as 'UPDATE 1' or 'INSERT 0 1'."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, AttributeError):
        return 0


class PostgresNotificationStore(NotificationStore):
    """PostgreSQL implementation of the notification store."""

    def __init__(self, config: DatabaseConfig, pool: Any = None) -> None:
        self._config = config
        self._pool = pool

    async def connect(self) -> None:
        if self._pool is None:
            try:
                self._pool = await asyncpg.create_pool(
                    self._config.url,
                    min_size=self._config.min_pool_size,
                    max_size=self._config.max_pool_size,
                    command_timeout=self._config.command_timeout_seconds,
                )
            except (OSError, asyncpg.PostgresError) as e:
                logger.error("postgres_connection_failed", error=str(e))
                raise RepositoryConnectionError(f"Failed to connect to PostgreSQL: {e}") from e
        async with self._pool.acquire() as conn:
            await conn.execute(SCHEMA_DDL)
        logger.info("notification_store_connected", provider="postgres")

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
        logger.info("notification_store_closed", provider="postgres")

    async def health_check(self) -> bool:
        if self._pool is None:
            return False
        try:
            async with self._pool.acquire() as conn:
                return await conn.fetchval("SELECT 1") == 1
        except Exception as e:
            logger.warning("postgres_health_check_failed", error=str(e))
            return False

    async def _fetch(self, query: str, *args: Any) -> list[Any]:
        try:
            async with self._pool.acquire() as conn:
                return await conn.fetch(query, *args)
        except asyncpg.PostgresError as e:
            logger.error("postgres_query_failed", error=str(e))
            raise QueryError(f"Query failed: {e}") from e
        except (OSError, asyncpg.InterfaceError) as e:
            raise RepositoryConnectionError(f"PostgreSQL unavailable: {e}") from e

    async def _fetchrow(self, query: str, *args: Any) -> Any:
        rows = await self._fetch(query, *args)
        return rows[0] if rows else None

    async def _execute(self, query: str, *args: Any) -> str:
        try:
            async with self._pool.acquire() as conn:
                return await conn.execute(query, *args)
        except asyncpg.UniqueViolationError as e:
            raise ConflictError(f"Duplicate record: {e.detail or e}") from e
        except asyncpg.PostgresError as e:
            logger.error("postgres_command_failed", error=str(e))
            raise QueryError(f"Command failed: {e}") from e
        except (OSError, asyncpg.InterfaceError) as e:
            raise RepositoryConnectionError(f"PostgreSQL unavailable: {e}") from e

    # Notifications

    @staticmethod
    def _to_notification(row: Any) -> Notification:
        data = _row_dict(row)
        data["notification_id"] = data.pop("id")
        return Notification.model_validate(data)

    async def create_notification(self, notification: Notification) -> Notification:
        n = notification
        await self._execute(
            """INSERT INTO notifications
               (id, external_id, type, priority, title, message, html_message, template_name,
                variables, recipients, channels, metadata, max_retries, source_service,
                source_tool, user_id, created_by, status, escalation_level, next_escalation_at,
                version, created_at, updated_at, scheduled_at, expires_at, completed_at)
               VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9::jsonb, $10::jsonb, $11::jsonb, $12::jsonb,
                       $13, $14, $15, $16, $17, $18, $19, $20, $21, $22, $23, $24, $25, $26)""",
            n.notification_id, n.external_id, n.type, n.priority.value, n.title, n.message,
            n.html_message, n.template_name, _jsonb(n.variables), _jsonb(n.recipients),
            _jsonb([c.value for c in n.channels]), _jsonb(n.metadata), n.max_retries,
            n.source_service, n.source_tool, n.user_id, n.created_by, n.status.value,
            n.escalation_level, n.next_escalation_at, n.version, n.created_at, n.updated_at,
            n.scheduled_at, n.expires_at, n.completed_at,
        )
        logger.debug("notification_saved", notification_id=str(n.notification_id))
        return notification

    async def get_notification(self, notification_id: UUID) -> Notification | None:
        row = await self._fetchrow("SELECT * FROM notifications WHERE id = $1", notification_id)
        return self._to_notification(row) if row else None

    async def get_notification_by_external_id(self, external_id: str) -> Notification | None:
        row = await self._fetchrow("SELECT * FROM notifications WHERE external_id = $1", external_id)
        return self._to_notification(row) if row else None

    @staticmethod
    def _where(filters: NotificationFilter) -> tuple[str, list[Any]]:
        clauses, args = [], []
        for column, value in filters.as_dict().items():
            args.append(value)
            clauses.append(f"{column} = ${len(args)}")
        return (" WHERE " + " AND ".join(clauses)) if clauses else "", args

    async def list_notifications(
        self, filters: NotificationFilter, limit: int = 50, offset: int = 0,
    ) -> list[Notification]:
        where, args = self._where(filters)
        rows = await self._fetch(
            f"SELECT * FROM notifications{where} ORDER BY created_at DESC "
            f"LIMIT ${len(args) + 1} OFFSET ${len(args) + 2}",
            *args, limit, offset,
        )
        return [self._to_notification(row) for row in rows]

    async def count_notifications(self, filters: NotificationFilter) -> int:
        where, args = self._where(filters)
        row = await self._fetchrow(f"SELECT COUNT(*) AS total FROM notifications{where}", *args)
        return int(row["total"]) if row else 0

    async def delete_notification(self, notification_id: UUID) -> bool:
        return _affected(await self._execute("DELETE FROM notifications WHERE id = $1", notification_id)) > 0

    async def claim_notification(
        self, notification_id: UUID, token: str, now: datetime, lease: timedelta,
    ) -> Notification | None:
        row = await self._fetchrow(
            """UPDATE notifications
               SET claim_token = $2, claim_expires_at = $3, version = version + 1
               WHERE id = $1
                 AND (claim_token IS NULL OR claim_expires_at <= $4 OR claim_token = $2)
               RETURNING *""",
            notification_id, token, now + lease, now,
        )
        if row is not None:
            return self._to_notification(row)
        exists = await self._fetchrow("SELECT 1 FROM notifications WHERE id = $1", notification_id)
        if exists is None:
            raise NotFoundError("notification", str(notification_id))
        return None

    async def release_claim(self, notification_id: UUID, token: str) -> bool:
        status = await self._execute(
            """UPDATE notifications SET claim_token = NULL, claim_expires_at = NULL
               WHERE id = $1 AND claim_token = $2""",
            notification_id, token,
        )
        return _affected(status) > 0

    async def update_notification(self, notification: Notification, expected_version: int) -> Notification | None:
        n = notification
        row = await self._fetchrow(
            """UPDATE notifications
               SET status = $3, escalation_level = $4, next_escalation_at = $5, title = $6,
                   message = $7, html_message = $8, metadata = $9::jsonb, updated_at = $10,
                   completed_at = $11, version = version + 1
               WHERE id = $1 AND version = $2
               RETURNING *""",
            n.notification_id, expected_version, n.status.value, n.escalation_level,
            n.next_escalation_at, n.title, n.message, n.html_message, _jsonb(n.metadata),
            n.updated_at, n.completed_at,
        )
        if row is not None:
            return self._to_notification(row)
        exists = await self._fetchrow("SELECT version FROM notifications WHERE id = $1", n.notification_id)
        if exists is None:
            raise NotFoundError("notification", str(n.notification_id))
        logger.debug("notification_version_conflict", notification_id=str(n.notification_id),
                     expected=expected_version, actual=exists["version"])
        return None

    # Deliveries

    @staticmethod
    def _to_delivery(row: Any) -> Delivery:
        data = dict(row)
        data["delivery_id"] = data.pop("id")
        return Delivery.model_validate(data)

    async def create_deliveries(self, deliveries: list[Delivery]) -> int:
        inserted = 0
        try:
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    for d in deliveries:
                        status = await conn.execute(
                            """INSERT INTO notification_deliveries
                               (id, notification_id, channel, recipient, status, attempt_count,
                                max_attempts, escalation_level, next_attempt_at, created_at)
                               VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                               ON CONFLICT (notification_id, channel, recipient, escalation_level)
                               DO NOTHING""",
                            d.delivery_id, d.notification_id, d.channel.value, d.recipient,
                            d.status.value, d.attempt_count, d.max_attempts, d.escalation_level,
                            d.next_attempt_at, d.created_at,
                        )
                        inserted += _affected(status)
        except asyncpg.PostgresError as e:
            logger.error("postgres_command_failed", error=str(e))
            raise QueryError(f"Delivery insert failed: {e}") from e
        return inserted

    async def list_deliveries(self, notification_id: UUID) -> list[Delivery]:
        rows = await self._fetch(
            """SELECT * FROM notification_deliveries WHERE notification_id = $1
               ORDER BY escalation_level, created_at""",
            notification_id,
        )
        return [self._to_delivery(row) for row in rows]

    async def update_delivery(self, delivery: Delivery) -> bool:
        d = delivery
        status = await self._execute(
            f"""UPDATE notification_deliveries
                SET status = $2, attempt_count = $3, last_error = $4, status_code = $5,
                    latency_ms = $6, next_attempt_at = $7, first_attempted_at = $8,
                    last_attempted_at = $9, completed_at = $10
                WHERE id = $1 AND status NOT IN {_TERMINAL_DELIVERY_SQL}""",
            d.delivery_id, d.status.value, d.attempt_count, d.last_error, d.status_code,
            d.latency_ms, d.next_attempt_at, d.first_attempted_at, d.last_attempted_at,
            d.completed_at,
        )
        if _affected(status) == 0:
            logger.warning("terminal_delivery_update_refused", delivery_id=str(d.delivery_id))
            return False
        return True

    # Templates

    @staticmethod
    def _to_template(row: Any) -> Template:
        data = _row_dict(row)
        data["template_id"] = data.pop("id")
        return Template.model_validate(data)

    async def create_template(self, template: Template) -> Template:
        t = template
        await self._execute(
            """INSERT INTO notification_templates
               (id, name, type, description, subject_template, body_template, html_template,
                variables, supported_channels, priority, enabled, version, created_at, updated_at)
               VALUES ($1, $2, $3, $4, $5, $6, $7, $8::jsonb, $9::jsonb, $10, $11, $12, $13, $14)""",
            t.template_id, t.name, t.type, t.description, t.subject_template, t.body_template,
            t.html_template, _jsonb(t.variables), _jsonb([c.value for c in t.supported_channels]),
            t.priority.value, t.enabled, t.version, t.created_at, t.updated_at,
        )
        return template

    async def update_template(self, template: Template) -> Template:
        t = template
        status = await self._execute(
            """UPDATE notification_templates
               SET name = $2, type = $3, description = $4, subject_template = $5, body_template = $6,
                   html_template = $7, variables = $8::jsonb, supported_channels = $9::jsonb,
                   priority = $10, enabled = $11, version = $12, updated_at = $13
               WHERE id = $1""",
            t.template_id, t.name, t.type, t.description, t.subject_template, t.body_template,
            t.html_template, _jsonb(t.variables), _jsonb([c.value for c in t.supported_channels]),
            t.priority.value, t.enabled, t.version, t.updated_at,
        )
        if _affected(status) == 0:
            raise NotFoundError("template", str(t.template_id))
        return template

    async def get_template(self, template_id: UUID) -> Template | None:
        row = await self._fetchrow("SELECT * FROM notification_templates WHERE id = $1", template_id)
        return self._to_template(row) if row else None

    async def get_template_by_name(self, name: str) -> Template | None:
        row = await self._fetchrow("SELECT * FROM notification_templates WHERE name = $1", name)
        return self._to_template(row) if row else None

    async def list_templates(self, type: str | None = None, enabled_only: bool = False) -> list[Template]:
        rows = await self._fetch(
            """SELECT * FROM notification_templates
               WHERE ($1::text IS NULL OR type = $1) AND (NOT $2 OR enabled)
               ORDER BY name""",
            type, enabled_only,
        )
        return [self._to_template(row) for row in rows]

    # Channels

    @staticmethod
    def _to_channel(row: Any) -> Channel:
        data = _row_dict(row)
        data["channel_id"] = data.pop("id")
        return Channel.model_validate(data)

    async def create_channel(self, channel: Channel) -> Channel:
        c = channel
        await self._execute(
            """INSERT INTO notification_channels
               (id, name, kind, description, config, enabled, created_at, updated_at)
               VALUES ($1, $2, $3, $4, $5::jsonb, $6, $7, $8)""",
            c.channel_id, c.name, c.kind.value, c.description, _jsonb(c.config.model_dump()),
            c.enabled, c.created_at, c.updated_at,
        )
        return channel

    async def get_channel(self, channel_id: UUID) -> Channel | None:
        row = await self._fetchrow("SELECT * FROM notification_channels WHERE id = $1", channel_id)
        return self._to_channel(row) if row else None

    async def list_channels(self) -> list[Channel]:
        rows = await self._fetch("SELECT * FROM notification_channels ORDER BY name")
        return [self._to_channel(row) for row in rows]

    # Sweeps

    async def expire_overdue(self, now: datetime) -> list[Notification]:
        rows = await self._fetch(
            """UPDATE notifications n
               SET status = 'expired', completed_at = $1, updated_at = $1, version = version + 1
               WHERE status = 'queued' AND expires_at < $1
                 AND (claim_token IS NULL OR claim_expires_at <= $1)
                 AND NOT EXISTS (SELECT 1 FROM notification_deliveries d WHERE d.notification_id = n.id)
               RETURNING *""",
            now,
        )
        return [self._to_notification(row) for row in rows]

    async def escalation_candidates(self, now: datetime, limit: int = 100) -> list[UUID]:
        rows = await self._fetch(
            f"""SELECT id FROM notifications
                WHERE status NOT IN {_TERMINAL_SQL}
                  AND next_escalation_at <= $1
                  AND (claim_token IS NULL OR claim_expires_at <= $1)
                ORDER BY next_escalation_at
                LIMIT $2""",
            now, limit,
        )
        return [row["id"] for row in rows]

    async def counts_by_status(self) -> dict[str, int]:
        rows = await self._fetch("SELECT status, COUNT(*) AS total FROM notifications GROUP BY status")
        return {row["status"]: int(row["total"]) for row in rows}
