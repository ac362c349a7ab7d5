"""
SSO Hub Notifier - Audit Logger.

Buffered, best-effort client for the audit service. Entries are batched
and POSTed periodically; urgent entries (critical priority or failures)
trigger an immediate flush. Failures are logged and re-buffered, never
raised into the pipeline.
"""
from __future__ import annotations

import asyncio
from collections import deque
from datetime import datetime, timezone
from typing import Any

import httpx
import structlog

from ..config import AuditConfig
from ..events import AuditEvent

logger = structlog.get_logger(__name__)


class AuditLogger:
    """Fire-and-forget audit trail shipper."""

    def __init__(
        self,
        config: AuditConfig,
        client: httpx.AsyncClient | None = None,
        service_name: str = "notifier",
        service_version: str = "1.0.0",
    ) -> None:
        self._config = config
        self._client = client
        self._service_name = service_name
        self._service_version = service_version
        self._buffer: deque[dict[str, Any]] = deque()
        self._flush_lock = asyncio.Lock()
        self._flush_task: asyncio.Task[None] | None = None
        self._pending: set[asyncio.Task[Any]] = set()
        self._dropped = 0
        self._failures = 0
        self._last_flush_at: datetime | None = None

    @property
    def endpoint(self) -> str:
        return f"{self._config.service_url.rstrip('/')}/api/events/batch"

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self._config.timeout_seconds)
        return self._client

    async def start(self) -> None:
        if self._config.enabled and self._flush_task is None:
            self._flush_task = asyncio.create_task(self._run())
            logger.info("audit_logger_started", endpoint=self.endpoint,
                        flush_interval_seconds=self._config.flush_interval_seconds)

    async def stop(self) -> None:
        if self._flush_task is not None:
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
            self._flush_task = None
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        await self.flush()
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        logger.info("audit_logger_stopped", buffered=len(self._buffer))

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._config.flush_interval_seconds)
            await self.flush()

    def log(self, event: AuditEvent) -> None:
        """Buffer one event. Never raises."""
        entry = event.to_entry(self._service_name)
        if not self._config.enabled:
            logger.info("audit_event", **{k: v for k, v in entry.items() if k != "details"})
            return
        self._append([entry])
        if event.is_urgent:
            try:
                task = asyncio.get_running_loop().create_task(self.flush())
            except RuntimeError:
                return
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    def _append(self, entries: list[dict[str, Any]], front: bool = False) -> None:
        if front:
            self._buffer.extendleft(reversed(entries))
        else:
            self._buffer.extend(entries)
        overflow = len(self._buffer) - self._config.max_buffer
        if overflow > 0:
            for _ in range(overflow):
                self._buffer.popleft()
            self._dropped += overflow
            logger.warning("audit_buffer_overflow", dropped=overflow, max_buffer=self._config.max_buffer)

    async def flush(self) -> int:
        """Send everything buffered. Returns the number of entries shipped."""
        async with self._flush_lock:
            if not self._buffer:
                return 0
            batch = list(self._buffer)
            self._buffer.clear()
            try:
                client = await self._get_client()
                response = await client.post(
                    self.endpoint,
                    json={"events": batch},
                    headers={
                        "X-Service-Name": self._service_name,
                        "X-Service-Version": self._service_version,
                    },
                )
                response.raise_for_status()
            except httpx.HTTPError as e:
                self._failures += 1
                self._append(batch, front=True)
                logger.error("audit_flush_failed", error=str(e), entries=len(batch))
                return 0
            self._last_flush_at = datetime.now(timezone.utc)
            logger.debug("audit_flushed", entries=len(batch))
            return len(batch)

    def status(self) -> dict[str, Any]:
        return {
            "enabled": self._config.enabled,
            "buffered": len(self._buffer),
            "dropped": self._dropped,
            "failed_flushes": self._failures,
            "last_flush_at": self._last_flush_at.isoformat() if self._last_flush_at else None,
        }
