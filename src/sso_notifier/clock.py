"""
SSO Hub Notifier - Time Source.

All scheduling decisions (run_at, leases, backoff, expiry, escalation) read
time from an injected Clock so they can be driven deterministically in tests.
"""
from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timezone


class Clock(ABC):
    """Abstract time source."""

    @abstractmethod
    def now(self) -> datetime:
        """Current timezone-aware UTC time."""

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)

    def now_ms(self) -> int:
        return int(self.now().timestamp() * 1000)


class SystemClock(Clock):
    """Wall-clock time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)
