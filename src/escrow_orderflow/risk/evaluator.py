"""Risk evaluator: events topic -> rules -> alerts topic."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from redis.asyncio import Redis

from escrow_orderflow.bus.models import BusMessage, EventBus
from escrow_orderflow.consumer.framework import MalformedMessageError
from escrow_orderflow.ingestor.models import NormalizedEvent
from escrow_orderflow.risk.history import HistoryStore, HistoryView
from escrow_orderflow.risk.models import AlertEvent
from escrow_orderflow.risk.rules import RuleRegistry, default_registry

logger = logging.getLogger(__name__)

DEFAULT_ALERTS_TOPIC = "escrow.alerts.v1"
DEFAULT_MARKER_KEY_PREFIX = "escrow:risk:alert:"
DEFAULT_MARKER_TTL_SECONDS = 7 * 24 * 3600


@dataclass
class RiskStats:
    events_evaluated: int = 0
    alerts_published: int = 0
    alerts_suppressed: int = 0
    rule_failures: int = 0


class RiskEvaluator:
    """Runs every registered rule against each event and publishes alerts.

    Alert publishing is idempotent across redelivery: a marker keyed by
    ``alert_id`` is written after a successful publish and checked first.
    History is recorded after the alerts are out, so a retried event sees
    the same history and yields the same alerts.

    Example:
        ```python
        evaluator = RiskEvaluator(bus, redis, RedisHistoryStore(redis))
        runner = ConsumerGroupRunner(bus, group="risk-engine-v1",
                                     handlers={"escrow.events.v1": evaluator.handle})
        ```
    """

    def __init__(
        self,
        bus: EventBus,
        redis: Redis,
        history: HistoryStore,
        *,
        registry: RuleRegistry | None = None,
        alerts_topic: str = DEFAULT_ALERTS_TOPIC,
        marker_key_prefix: str = DEFAULT_MARKER_KEY_PREFIX,
        marker_ttl_seconds: int = DEFAULT_MARKER_TTL_SECONDS,
    ) -> None:
        self._bus = bus
        self._redis = redis
        self._history = history
        self._registry = registry if registry is not None else default_registry()
        self._alerts_topic = alerts_topic
        self._marker_prefix = marker_key_prefix
        self._marker_ttl = marker_ttl_seconds
        self._stats = RiskStats()

    @property
    def stats(self) -> RiskStats:
        return self._stats

    @property
    def registry(self) -> RuleRegistry:
        return self._registry

    async def handle(self, message: BusMessage) -> None:
        """ConsumerFramework handler for the events topic."""
        try:
            event = NormalizedEvent.from_json(message.payload)
        except ValueError as e:
            raise MalformedMessageError(f"undecodable event {message.message_id}: {e}") from e
        await self.evaluate(event)

    def run_rules(self, event: NormalizedEvent, history: HistoryView) -> list[AlertEvent]:
        """Evaluate all rules; a failing rule is logged and skipped."""
        alerts: list[AlertEvent] = []
        for rule in self._registry:
            try:
                alerts.extend(rule.evaluate(event, history))
            except Exception as e:
                self._stats.rule_failures += 1
                logger.warning("Rule %s failed on %s: %s", rule.rule_id, event.event_id, e)
        return alerts

    async def evaluate(self, event: NormalizedEvent) -> list[AlertEvent]:
        """Evaluate ``event``, publish its alerts and record it in history.

        Returns:
            Alerts raised for the event (including ones already published).
        """
        history = await self._history.view(event)
        alerts = self.run_rules(event, history)
        for alert in alerts:
            await self._emit(alert)
        await self._history.record(event)
        self._stats.events_evaluated += 1
        return alerts

    def _marker_key(self, alert_id: str) -> str:
        return f"{self._marker_prefix}{alert_id}"

    async def _emit(self, alert: AlertEvent) -> None:
        key = self._marker_key(alert.alert_id)
        if await self._redis.exists(key):
            self._stats.alerts_suppressed += 1
            logger.debug("Alert %s already published", alert.alert_id)
            return
        await self._bus.publish(self._alerts_topic, alert.maker, alert.to_json())
        await self._redis.set(key, "1", ex=self._marker_ttl)
        self._stats.alerts_published += 1
        logger.info(
            "ALERT %s severity=%s maker=%s offer_id=%s",
            alert.alert_id,
            alert.severity.value,
            alert.maker,
            alert.offer_id,
        )
