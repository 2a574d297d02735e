"""
Notifier
========
Outbound notifications (email etc.) consumed through a narrow interface.
Sends never gate a business-state commit: failures are logged and dropped.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Set

import structlog

from .models import NotificationKind, NotificationResult

logger = structlog.get_logger(__name__)


class Notifier(ABC):
    """Delivers a notification of a given kind to one recipient."""

    @abstractmethod
    async def send(
        self,
        kind: NotificationKind,
        recipient: str,
        template_data: Optional[Dict[str, Any]] = None,
    ) -> NotificationResult:
        ...


class LoggingNotifier(Notifier):
    """Default notifier: records the send in the log only."""

    async def send(self, kind, recipient, template_data=None) -> NotificationResult:
        logger.info(
            "Notification sent",
            kind=kind.value if isinstance(kind, NotificationKind) else kind,
            recipient=recipient,
            fields=sorted((template_data or {}).keys()),
        )
        return NotificationResult(success=True)


class NotificationDispatcher:
    """
    Fire-and-forget wrapper around a Notifier.

    Each send runs as a tracked background task; its outcome is only logged.
    `drain()` waits for in-flight sends (shutdown, tests).
    """

    def __init__(self, notifier: Notifier):
        self.notifier = notifier
        self._tasks: Set[asyncio.Task] = set()

    def dispatch(
        self,
        kind: NotificationKind,
        recipient: Optional[str],
        template_data: Optional[Dict[str, Any]] = None,
    ) -> None:
        if not recipient:
            return
        task = asyncio.create_task(self._send(kind, recipient, template_data or {}))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _send(self, kind, recipient, template_data) -> None:
        try:
            result = await self.notifier.send(kind, recipient, template_data)
        except Exception as e:
            logger.warning("Notification failed", kind=kind.value, recipient=recipient, error=str(e))
            return
        if not result.success:
            logger.warning("Notification rejected", kind=kind.value, recipient=recipient, error=result.error)

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
