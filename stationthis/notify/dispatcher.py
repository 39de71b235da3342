"""Routes terminal run events to per-platform notifiers.

Delivery is best-effort and bounded: a notifier failing every attempt is
logged and the event dropped. Delivery never feeds back into run state.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod

import structlog

from stationthis.infra.errors import NotificationError
from stationthis.notify.events import RunEventSink, RunTerminalEvent

logger = structlog.get_logger()


class Notifier(ABC):
    @abstractmethod
    async def notify(self, event: RunTerminalEvent) -> None:
        """Deliver one event. Raises NotificationError on failure."""
        ...


class LogNotifier(Notifier):
    """Default notifier: records the outcome in the structured log."""

    async def notify(self, event: RunTerminalEvent) -> None:
        logger.info(
            "run_terminal",
            run_id=event.run.id,
            status=event.status.value,
            platform=event.platform,
            initiator_id=event.run.initiator_id,
            accumulated_cost=str(event.run.accumulated_cost),
            failure_reason=event.failure_reason,
        )


class NotificationDispatcher(RunEventSink):
    def __init__(
        self,
        *,
        default: Notifier | None = None,
        max_attempts: int = 3,
        base_delay: float = 0.5,
    ) -> None:
        self._notifiers: dict[str, Notifier] = {}
        self._default = default
        self._max_attempts = max_attempts
        self._base_delay = base_delay

    def register(self, platform: str, notifier: Notifier) -> None:
        if platform in self._notifiers:
            raise ValueError(f"Notifier already registered for platform: {platform}")
        self._notifiers[platform] = notifier
        logger.info("notifier_registered", platform=platform)

    def platforms(self) -> list[str]:
        return list(self._notifiers.keys())

    async def publish(self, event: RunTerminalEvent) -> None:
        notifier = self._notifiers.get(event.platform, self._default)
        if notifier is None:
            logger.warning(
                "notifier_missing", run_id=event.run.id, platform=event.platform
            )
            return

        for attempt in range(1, self._max_attempts + 1):
            try:
                await notifier.notify(event)
                return
            except NotificationError as e:
                if attempt == self._max_attempts:
                    logger.error(
                        "notification_dropped",
                        run_id=event.run.id,
                        platform=event.platform,
                        attempts=attempt,
                        error=str(e),
                    )
                    return
                delay = self._base_delay * (2 ** (attempt - 1))
                logger.warning(
                    "notification_retry",
                    run_id=event.run.id,
                    attempt=attempt,
                    delay=delay,
                    error=str(e),
                )
                await asyncio.sleep(delay)
