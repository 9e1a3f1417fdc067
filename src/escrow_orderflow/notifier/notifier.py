"""Notifier: events and alerts topics -> notification channels.

Deliveries are deduplicated per channel with a Redis ledger keyed by the
event or alert id. The ledger entry is written only after the channel
accepted the message, so a crash in between means one duplicate send,
never a lost one.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol

from redis.asyncio import Redis

from escrow_orderflow.bus.models import BusMessage
from escrow_orderflow.consumer.framework import MalformedMessageError, MessageHandler
from escrow_orderflow.ingestor.models import NormalizedEvent
from escrow_orderflow.notifier.formatter import NotificationFormatter
from escrow_orderflow.risk.models import AlertEvent

logger = logging.getLogger(__name__)

DEFAULT_LEDGER_KEY_PREFIX = "escrow:notifier:delivered:"
DEFAULT_LEDGER_TTL_SECONDS = 7 * 24 * 3600


class AlertChannel(Protocol):
    """A destination for formatted notifications."""

    name: str

    async def send(self, text: str) -> None: ...


class LogChannel:
    """Writes notifications to the application log."""

    name = "log"

    def __init__(
        self, *, level: int = logging.INFO, logger_name: str = "escrow_orderflow.notifications"
    ) -> None:
        self._level = level
        self._logger = logging.getLogger(logger_name)

    async def send(self, text: str) -> None:
        self._logger.log(self._level, "%s", text)


class DeliveryLedger:
    """Remembers which ids were delivered to which channel."""

    def __init__(
        self,
        redis: Redis,
        *,
        key_prefix: str = DEFAULT_LEDGER_KEY_PREFIX,
        ttl_seconds: int = DEFAULT_LEDGER_TTL_SECONDS,
    ) -> None:
        self._redis = redis
        self._key_prefix = key_prefix
        self._ttl = ttl_seconds

    def _key(self, channel: str, delivery_id: str) -> str:
        return f"{self._key_prefix}{channel}:{delivery_id}"

    async def is_delivered(self, channel: str, delivery_id: str) -> bool:
        return bool(await self._redis.exists(self._key(channel, delivery_id)))

    async def mark_delivered(self, channel: str, delivery_id: str) -> None:
        await self._redis.set(self._key(channel, delivery_id), "1", ex=self._ttl)


@dataclass
class NotifierStats:
    events_seen: int = 0
    alerts_seen: int = 0
    sent: int = 0
    duplicates_skipped: int = 0


class Notifier:
    """Formats bus messages and fans them out to channels.

    Example:
        ```python
        notifier = Notifier(DeliveryLedger(redis), channels=[LogChannel()])
        runner = ConsumerGroupRunner(bus, group="notifier-v1", handlers=notifier.handlers())
        ```
    """

    def __init__(
        self,
        ledger: DeliveryLedger,
        *,
        channels: Sequence[AlertChannel] | None = None,
        formatter: NotificationFormatter | None = None,
        events_topic: str = "escrow.events.v1",
        alerts_topic: str = "escrow.alerts.v1",
    ) -> None:
        self._ledger = ledger
        self._channels: list[AlertChannel] = list(channels) if channels is not None else [LogChannel()]
        self._formatter = formatter or NotificationFormatter()
        self._events_topic = events_topic
        self._alerts_topic = alerts_topic
        self._stats = NotifierStats()

    @property
    def stats(self) -> NotifierStats:
        return self._stats

    def handlers(self) -> dict[str, MessageHandler]:
        return {self._events_topic: self.handle_event, self._alerts_topic: self.handle_alert}

    async def handle_event(self, message: BusMessage) -> None:
        try:
            event = NormalizedEvent.from_json(message.payload)
        except ValueError as e:
            raise MalformedMessageError(f"undecodable event {message.message_id}: {e}") from e
        self._stats.events_seen += 1
        await self.deliver(event.event_id, self._formatter.format_event(event))

    async def handle_alert(self, message: BusMessage) -> None:
        try:
            alert = AlertEvent.from_json(message.payload)
        except ValueError as e:
            raise MalformedMessageError(f"undecodable alert {message.message_id}: {e}") from e
        self._stats.alerts_seen += 1
        await self.deliver(alert.alert_id, self._formatter.format_alert(alert))

    async def deliver(self, delivery_id: str, text: str) -> int:
        """Send ``text`` to every channel that has not received ``delivery_id``.

        Returns:
            Number of channels the text was sent to.
        """
        sent = 0
        for channel in self._channels:
            if await self._ledger.is_delivered(channel.name, delivery_id):
                self._stats.duplicates_skipped += 1
                logger.debug("%s already delivered to %s", delivery_id, channel.name)
                continue
            await channel.send(text)
            await self._ledger.mark_delivered(channel.name, delivery_id)
            sent += 1
        self._stats.sent += sent
        return sent
