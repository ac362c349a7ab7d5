"""
SSO Hub Notifier - Queue Manager.

Five named at-least-once work queues (immediate, delayed, retry,
escalation, batch). An item is invisible to other consumers between
dequeue and ack; if it is neither acked nor nacked before its lease
expires, requeue_expired() makes it visible again.

Architecture Layer: Infrastructure
Principles: Ports & Adapters, At-Least-Once Delivery, Fail-Loud Enqueue
"""
from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any
from uuid import uuid4

import redis.asyncio as aioredis
from redis.exceptions import RedisError
import structlog

from ..clock import Clock, SystemClock
from ..config import QueueConfig
from ..exceptions import QueueUnavailableError

logger = structlog.get_logger(__name__)


class QueueName(str, Enum):
    """Named queues, in worker polling priority order."""
    IMMEDIATE = "immediate"
    ESCALATION = "escalation"
    RETRY = "retry"
    DELAYED = "delayed"
    BATCH = "batch"


POLL_ORDER: tuple[QueueName, ...] = tuple(QueueName)


@dataclass
class QueueItem:
    """A unit of queued work."""
    item_id: str
    queue: QueueName
    payload: dict[str, Any]
    run_at_ms: int
    enqueued_at_ms: int
    attempts: int = 0
    dedupe_key: str | None = None
    member: str = ""

    def to_json(self) -> str:
        return json.dumps({
            "item_id": self.item_id,
            "payload": self.payload,
            "run_at_ms": self.run_at_ms,
            "enqueued_at_ms": self.enqueued_at_ms,
            "attempts": self.attempts,
            "dedupe_key": self.dedupe_key,
        })

    @classmethod
    def from_json(cls, raw: str | bytes, queue: QueueName, member: str) -> QueueItem:
        data = json.loads(raw)
        return cls(
            item_id=data["item_id"],
            queue=queue,
            payload=data.get("payload", {}),
            run_at_ms=data.get("run_at_ms", 0),
            enqueued_at_ms=data.get("enqueued_at_ms", 0),
            attempts=data.get("attempts", 0),
            dedupe_key=data.get("dedupe_key"),
            member=member,
        )


@dataclass
class QueueStats:
    """Depth of one queue."""
    waiting: int = 0
    active: int = 0
    delayed: int = 0

    def to_dict(self) -> dict[str, int]:
        return {"waiting": self.waiting, "active": self.active, "delayed": self.delayed}


class QueueManager(ABC):
    """Port for the durable work queues."""

    def __init__(self, config: QueueConfig, clock: Clock | None = None) -> None:
        self._config = config
        self._clock = clock or SystemClock()

    @property
    def visibility_timeout_ms(self) -> int:
        return self._config.visibility_timeout_seconds * 1000

    @abstractmethod
    async def connect(self) -> None:
        """Open the backing store. Raises QueueUnavailableError on failure."""

    @abstractmethod
    async def close(self) -> None:
        """Release the backing store."""

    @abstractmethod
    async def health_check(self) -> bool:
        """True when the backing store answers."""

    @abstractmethod
    async def enqueue(
        self,
        queue: QueueName,
        payload: dict[str, Any],
        *,
        run_at_ms: int | None = None,
        dedupe_key: str | None = None,
    ) -> QueueItem | None:
        """
        Add an item. Returns None when dedupe_key was already used within
        the dedupe TTL. Raises QueueUnavailableError if the store is down.
        """

    @abstractmethod
    async def dequeue(self, queue: QueueName) -> QueueItem | None:
        """Lease the oldest ready item, or return None."""

    @abstractmethod
    async def ack(self, item: QueueItem) -> None:
        """Remove a leased item permanently."""

    @abstractmethod
    async def nack(self, item: QueueItem, delay_ms: int = 0) -> None:
        """Return a leased item to its queue, visible again after delay_ms."""

    @abstractmethod
    async def promote_due(self) -> int:
        """Move delayed items whose run_at has passed to the immediate queue."""

    @abstractmethod
    async def requeue_expired(self) -> int:
        """Make items whose lease expired visible again."""

    @abstractmethod
    async def stats(self) -> dict[QueueName, QueueStats]:
        """Per-queue depth."""

    @abstractmethod
    async def clear(self, queue: QueueName) -> int:
        """Drop every item of a queue, returning how many were removed."""

    def _new_item(
        self,
        queue: QueueName,
        payload: dict[str, Any],
        run_at_ms: int | None,
        dedupe_key: str | None,
    ) -> QueueItem:
        now_ms = self._clock.now_ms()
        return QueueItem(
            item_id=str(uuid4()),
            queue=queue,
            payload=payload,
            run_at_ms=max(run_at_ms if run_at_ms is not None else now_ms, 0),
            enqueued_at_ms=now_ms,
            dedupe_key=dedupe_key,
        )


# Lua scripts run atomically on the server so two workers can never lease the same member.
_DEQUEUE_SCRIPT = """
local members = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1], 'LIMIT', 0, 1)
if #members == 0 then
    return nil
end
local member = members[1]
redis.call('ZREM', KEYS[1], member)
redis.call('ZADD', KEYS[2], ARGV[2], member)
return {member, redis.call('HGET', KEYS[3], member)}
"""

_NACK_SCRIPT = """
if redis.call('ZREM', KEYS[2], ARGV[1]) == 0 then
    return 0
end
redis.call('HSET', KEYS[3], ARGV[1], ARGV[3])
redis.call('ZADD', KEYS[1], ARGV[2], ARGV[1])
return 1
"""

_PROMOTE_SCRIPT = """
local members = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1], 'LIMIT', 0, tonumber(ARGV[2]))
for _, member in ipairs(members) do
    local raw = redis.call('HGET', KEYS[2], member)
    redis.call('ZREM', KEYS[1], member)
    redis.call('HDEL', KEYS[2], member)
    if raw then
        redis.call('HSET', KEYS[4], member, raw)
        redis.call('ZADD', KEYS[3], ARGV[1], member)
    end
end
return #members
"""

_REQUEUE_SCRIPT = """
local members = redis.call('ZRANGEBYSCORE', KEYS[2], '-inf', ARGV[1])
for _, member in ipairs(members) do
    redis.call('ZREM', KEYS[2], member)
    redis.call('ZADD', KEYS[1], ARGV[1], member)
end
return #members
"""


class RedisQueueManager(QueueManager):
    """
    Redis-backed queues.

    Per queue: a sorted set of members scored by ready time, a hash of
    member -> item JSON and a processing sorted set scored by lease
    expiry. Members are prefixed with a global sequence so equal scores
    dequeue in FIFO order.
    """

    def __init__(self, config: QueueConfig, clock: Clock | None = None, client: Any = None) -> None:
        super().__init__(config, clock)
        self._client = client
        self._names = {QueueName(k): v for k, v in config.queue_names().items()}
        self._scripts: dict[str, Any] = {}

    def _keys(self, queue: QueueName) -> tuple[str, str, str]:
        name = self._names[queue]
        return name, f"{name}:processing", f"{name}:items"

    def _seq_key(self) -> str:
        return f"{self._names[QueueName.IMMEDIATE]}:seq"

    @staticmethod
    def _dedupe_key(key: str) -> str:
        return f"notifier:dedupe:{key}"

    async def connect(self) -> None:
        """Connect with exponential backoff retry."""
        retries = self._config.connect_retries
        for attempt in range(retries + 1):
            try:
                if self._client is None:
                    self._client = aioredis.from_url(self._config.redis_url, decode_responses=True)
                await self._client.ping()
                break
            except (RedisError, OSError) as e:
                if attempt < retries:
                    delay = min(2 ** attempt, 30.0)
                    logger.warning("queue_connect_retry", attempt=attempt + 1, max_retries=retries,
                                   delay_seconds=delay, error=str(e))
                    await asyncio.sleep(delay)
                else:
                    logger.error("queue_connect_failed", error=str(e), attempts=retries + 1)
                    raise QueueUnavailableError(f"Queue store unreachable: {e}") from e
        self._scripts = {
            "dequeue": self._client.register_script(_DEQUEUE_SCRIPT),
            "nack": self._client.register_script(_NACK_SCRIPT),
            "promote": self._client.register_script(_PROMOTE_SCRIPT),
            "requeue": self._client.register_script(_REQUEUE_SCRIPT),
        }
        logger.info("queue_connected", provider="redis", queues=list(self._names.values()))

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        logger.info("queue_closed", provider="redis")

    async def health_check(self) -> bool:
        if self._client is None:
            return False
        try:
            return bool(await self._client.ping())
        except Exception as e:
            logger.warning("queue_health_check_failed", error=str(e))
            return False

    async def _call(self, operation: str, coro: Any) -> Any:
        if self._client is None:
            coro.close()
            raise QueueUnavailableError("Queue store not connected")
        try:
            return await coro
        except (RedisError, OSError) as e:
            logger.error("queue_operation_failed", operation=operation, error=str(e))
            raise QueueUnavailableError(f"Queue {operation} failed: {e}") from e

    async def enqueue(
        self,
        queue: QueueName,
        payload: dict[str, Any],
        *,
        run_at_ms: int | None = None,
        dedupe_key: str | None = None,
    ) -> QueueItem | None:
        if self._client is None:
            raise QueueUnavailableError("Queue store not connected")
        if dedupe_key is not None:
            fresh = await self._call("dedupe", self._client.set(
                self._dedupe_key(dedupe_key), "1", nx=True, ex=self._config.dedupe_ttl_seconds,
            ))
            if not fresh:
                logger.debug("queue_enqueue_deduplicated", queue=queue.value, dedupe_key=dedupe_key)
                return None

        item = self._new_item(queue, payload, run_at_ms, dedupe_key)
        zset, _, items = self._keys(queue)
        try:
            seq = await self._call("sequence", self._client.incr(self._seq_key()))
            item.member = f"{seq:020d}:{item.item_id}"
            pipe = self._client.pipeline(transaction=True)
            pipe.hset(items, item.member, item.to_json())
            pipe.zadd(zset, {item.member: item.run_at_ms})
            await self._call("enqueue", pipe.execute())
        except QueueUnavailableError:
            if dedupe_key is not None:
                await self._release_dedupe(dedupe_key)
            logger.error("queue_enqueue_failed", queue=queue.value, item_id=item.item_id)
            raise
        logger.debug("queue_enqueued", queue=queue.value, item_id=item.item_id, run_at_ms=item.run_at_ms)
        return item

    async def _release_dedupe(self, dedupe_key: str) -> None:
        try:
            await self._client.delete(self._dedupe_key(dedupe_key))
        except Exception as e:
            logger.warning("queue_dedupe_release_failed", dedupe_key=dedupe_key, error=str(e))

    async def dequeue(self, queue: QueueName) -> QueueItem | None:
        if self._client is None:
            raise QueueUnavailableError("Queue store not connected")
        now_ms = self._clock.now_ms()
        result = await self._call("dequeue", self._scripts["dequeue"](
            keys=list(self._keys(queue)), args=[now_ms, now_ms + self.visibility_timeout_ms],
        ))
        if not result:
            return None
        member, raw = result
        if raw is None:
            await self._call("ack", self._client.zrem(self._keys(queue)[1], member))
            logger.warning("queue_orphan_member_dropped", queue=queue.value, member=member)
            return None
        return QueueItem.from_json(raw, queue, member)

    async def ack(self, item: QueueItem) -> None:
        if self._client is None:
            raise QueueUnavailableError("Queue store not connected")
        _, processing, items = self._keys(item.queue)
        pipe = self._client.pipeline(transaction=True)
        pipe.zrem(processing, item.member)
        pipe.hdel(items, item.member)
        await self._call("ack", pipe.execute())

    async def nack(self, item: QueueItem, delay_ms: int = 0) -> None:
        if self._client is None:
            raise QueueUnavailableError("Queue store not connected")
        item.attempts += 1
        item.run_at_ms = self._clock.now_ms() + max(delay_ms, 0)
        await self._call("nack", self._scripts["nack"](
            keys=list(self._keys(item.queue)), args=[item.member, item.run_at_ms, item.to_json()],
        ))

    async def promote_due(self) -> int:
        if self._client is None:
            raise QueueUnavailableError("Queue store not connected")
        delayed, _, delayed_items = self._keys(QueueName.DELAYED)
        immediate, _, immediate_items = self._keys(QueueName.IMMEDIATE)
        moved = await self._call("promote", self._scripts["promote"](
            keys=[delayed, delayed_items, immediate, immediate_items],
            args=[self._clock.now_ms(), 1000],
        ))
        if moved:
            logger.info("queue_delayed_promoted", count=moved)
        return int(moved)

    async def requeue_expired(self) -> int:
        if self._client is None:
            raise QueueUnavailableError("Queue store not connected")
        total = 0
        now_ms = self._clock.now_ms()
        for queue in QueueName:
            zset, processing, _ = self._keys(queue)
            moved = await self._call("requeue", self._scripts["requeue"](
                keys=[zset, processing], args=[now_ms],
            ))
            if moved:
                logger.warning("queue_leases_expired", queue=queue.value, count=moved)
            total += int(moved)
        return total

    async def stats(self) -> dict[QueueName, QueueStats]:
        if self._client is None:
            raise QueueUnavailableError("Queue store not connected")
        now_ms = self._clock.now_ms()
        pipe = self._client.pipeline(transaction=False)
        for queue in QueueName:
            zset, processing, _ = self._keys(queue)
            pipe.zcount(zset, "-inf", now_ms)
            pipe.zcount(zset, f"({now_ms}", "+inf")
            pipe.zcard(processing)
        counts = await self._call("stats", pipe.execute())
        return {
            queue: QueueStats(waiting=counts[i * 3], delayed=counts[i * 3 + 1], active=counts[i * 3 + 2])
            for i, queue in enumerate(QueueName)
        }

    async def clear(self, queue: QueueName) -> int:
        if self._client is None:
            raise QueueUnavailableError("Queue store not connected")
        zset, processing, items = self._keys(queue)
        removed = await self._call("clear", self._client.hlen(items))
        await self._call("clear", self._client.delete(zset, processing, items))
        logger.info("queue_cleared", queue=queue.value, removed=removed)
        return int(removed)


class InMemoryQueueManager(QueueManager):
    """Process-local queues with the same lease semantics, for development and tests."""

    def __init__(self, config: QueueConfig, clock: Clock | None = None) -> None:
        super().__init__(config, clock)
        self._ready: dict[QueueName, dict[str, QueueItem]] = {q: {} for q in QueueName}
        self._processing: dict[QueueName, dict[str, tuple[int, QueueItem]]] = {q: {} for q in QueueName}
        self._dedupe: dict[str, int] = {}
        self._seq = 0
        self._lock = asyncio.Lock()
        self._connected = False

    async def connect(self) -> None:
        self._connected = True
        logger.info("queue_connected", provider="memory")

    async def close(self) -> None:
        self._connected = False
        logger.info("queue_closed", provider="memory")

    async def health_check(self) -> bool:
        return self._connected

    def _check(self) -> None:
        if not self._connected:
            raise QueueUnavailableError("Queue store not connected")

    async def enqueue(
        self,
        queue: QueueName,
        payload: dict[str, Any],
        *,
        run_at_ms: int | None = None,
        dedupe_key: str | None = None,
    ) -> QueueItem | None:
        self._check()
        async with self._lock:
            now_ms = self._clock.now_ms()
            self._dedupe = {key: expires for key, expires in self._dedupe.items() if expires > now_ms}
            if dedupe_key is not None:
                expires_ms = self._dedupe.get(dedupe_key)
                if expires_ms is not None and expires_ms > now_ms:
                    logger.debug("queue_enqueue_deduplicated", queue=queue.value, dedupe_key=dedupe_key)
                    return None
                self._dedupe[dedupe_key] = now_ms + self._config.dedupe_ttl_seconds * 1000
            item = self._new_item(queue, payload, run_at_ms, dedupe_key)
            self._seq += 1
            item.member = f"{self._seq:020d}:{item.item_id}"
            self._ready[queue][item.member] = item
        logger.debug("queue_enqueued", queue=queue.value, item_id=item.item_id, run_at_ms=item.run_at_ms)
        return item

    async def dequeue(self, queue: QueueName) -> QueueItem | None:
        self._check()
        async with self._lock:
            now_ms = self._clock.now_ms()
            due = [item for item in self._ready[queue].values() if item.run_at_ms <= now_ms]
            if not due:
                return None
            item = min(due, key=lambda i: (i.run_at_ms, i.member))
            del self._ready[queue][item.member]
            self._processing[queue][item.member] = (now_ms + self.visibility_timeout_ms, item)
            return item

    async def ack(self, item: QueueItem) -> None:
        self._check()
        async with self._lock:
            self._processing[item.queue].pop(item.member, None)

    async def nack(self, item: QueueItem, delay_ms: int = 0) -> None:
        self._check()
        async with self._lock:
            if self._processing[item.queue].pop(item.member, None) is None:
                return
            item.attempts += 1
            item.run_at_ms = self._clock.now_ms() + max(delay_ms, 0)
            self._ready[item.queue][item.member] = item

    async def promote_due(self) -> int:
        self._check()
        async with self._lock:
            now_ms = self._clock.now_ms()
            due = [item for item in self._ready[QueueName.DELAYED].values() if item.run_at_ms <= now_ms]
            for item in due:
                del self._ready[QueueName.DELAYED][item.member]
                item.queue = QueueName.IMMEDIATE
                item.run_at_ms = now_ms
                self._ready[QueueName.IMMEDIATE][item.member] = item
        if due:
            logger.info("queue_delayed_promoted", count=len(due))
        return len(due)

    async def requeue_expired(self) -> int:
        self._check()
        total = 0
        async with self._lock:
            now_ms = self._clock.now_ms()
            for queue in QueueName:
                expired = [m for m, (lease, _) in self._processing[queue].items() if lease <= now_ms]
                for member in expired:
                    _, item = self._processing[queue].pop(member)
                    item.run_at_ms = now_ms
                    self._ready[queue][member] = item
                if expired:
                    logger.warning("queue_leases_expired", queue=queue.value, count=len(expired))
                total += len(expired)
        return total

    async def stats(self) -> dict[QueueName, QueueStats]:
        self._check()
        now_ms = self._clock.now_ms()
        result = {}
        for queue in QueueName:
            ready = self._ready[queue].values()
            result[queue] = QueueStats(
                waiting=sum(1 for i in ready if i.run_at_ms <= now_ms),
                delayed=sum(1 for i in ready if i.run_at_ms > now_ms),
                active=len(self._processing[queue]),
            )
        return result

    async def clear(self, queue: QueueName) -> int:
        self._check()
        async with self._lock:
            removed = len(self._ready[queue]) + len(self._processing[queue])
            self._ready[queue].clear()
            self._processing[queue].clear()
        logger.info("queue_cleared", queue=queue.value, removed=removed)
        return removed


def create_queue_manager(config: QueueConfig, clock: Clock | None = None) -> QueueManager:
    """Build the queue manager selected by QUEUE_PROVIDER."""
    if config.provider == "redis":
        return RedisQueueManager(config, clock)
    return InMemoryQueueManager(config, clock)
