"""
SSO Hub Notifier - Escalation Engine.

Pure policy evaluator: given a notification and its current escalation
level, decide whether another level is available and who it targets.
The processor applies the decision; this module never touches storage.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta

import structlog

from ..config import EscalationConfig
from .entities import ChannelKind, Notification

logger = structlog.get_logger(__name__)

ESCALATION_SUBJECT_PREFIX = "ESCALATION (L{level}): "


@dataclass(frozen=True)
class EscalationDecision:
    """Outcome of evaluating one notification against the escalation policy."""
    next_level: int
    target_recipients: list[str] = field(default_factory=list)
    channels: list[ChannelKind] = field(default_factory=list)
    delay_before_next: timedelta = timedelta(0)
    exhausted: bool = False


def escalation_subject(level: int, title: str) -> str:
    return f"{ESCALATION_SUBJECT_PREFIX.format(level=level)}{title}"


class EscalationEngine:
    """
    Escalation policy.

    Level n (1-based) targets the notification's original recipients plus
    every recipient configured for levels 1..n, so the audience only ever
    widens. Levels beyond the configured recipient lists reuse the last one.
    """

    def __init__(self, config: EscalationConfig) -> None:
        self._config = config
        self._channels = [ChannelKind(c) for c in config.channels]

    @property
    def enabled(self) -> bool:
        return self._config.enabled and self._config.max_levels > 0

    @property
    def max_levels(self) -> int:
        return self._config.max_levels

    @property
    def delay(self) -> timedelta:
        return timedelta(milliseconds=self._config.delay_ms)

    def recipients_for_level(self, level: int) -> list[str]:
        """Cumulative configured recipients for levels 1..level."""
        configured = self._config.level_recipients
        recipients: list[str] = []
        for n in range(1, level + 1):
            if not configured:
                break
            for recipient in configured[min(n, len(configured)) - 1]:
                if recipient not in recipients:
                    recipients.append(recipient)
        return recipients

    def evaluate(self, notification: Notification, current_level: int) -> EscalationDecision:
        if not self.enabled or current_level >= self._config.max_levels:
            logger.info("escalation_exhausted", notification_id=str(notification.notification_id),
                        level=current_level, max_levels=self._config.max_levels)
            return EscalationDecision(next_level=current_level, exhausted=True)

        next_level = current_level + 1
        targets = list(notification.recipients)
        for recipient in self.recipients_for_level(next_level):
            if recipient not in targets:
                targets.append(recipient)

        decision = EscalationDecision(
            next_level=next_level,
            target_recipients=targets,
            channels=list(self._channels),
            delay_before_next=self.delay,
        )
        logger.info("escalation_evaluated", notification_id=str(notification.notification_id),
                    next_level=next_level, recipients=len(targets),
                    channels=[c.value for c in decision.channels])
        return decision
