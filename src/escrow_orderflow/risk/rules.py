"""Risk rules.

A rule is a pure function of the incoming event and a read-only history
view. Rules never touch I/O; the evaluator feeds them history and publishes
whatever they return.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import TYPE_CHECKING

from escrow_orderflow.ingestor.models import EventType, NormalizedEvent
from escrow_orderflow.risk.history import HistoryView
from escrow_orderflow.risk.models import AlertEvent, Severity, make_alert_id

if TYPE_CHECKING:
    from escrow_orderflow.config import RiskSettings

logger = logging.getLogger(__name__)

DEFAULT_LARGE_AMOUNT_THRESHOLD = 1_000_000_000
DEFAULT_CANCEL_THRESHOLD = 5
DEFAULT_CANCEL_WINDOW_MS = 10 * 60 * 1000

RuleFunc = Callable[[NormalizedEvent, HistoryView], list[AlertEvent]]


class RuleError(Exception):
    """Raised for invalid rule registrations."""


@dataclass(frozen=True)
class Rule:
    rule_id: str
    severity: Severity
    evaluate: RuleFunc
    description: str = ""


class RuleRegistry:
    """Ordered ``rule_id -> Rule`` mapping."""

    def __init__(self, rules: list[Rule] | None = None) -> None:
        self._rules: dict[str, Rule] = {}
        for rule in rules or []:
            self.register(rule)

    def register(self, rule: Rule) -> None:
        if rule.rule_id in self._rules:
            raise RuleError(f"rule {rule.rule_id!r} is already registered")
        self._rules[rule.rule_id] = rule

    def get(self, rule_id: str) -> Rule | None:
        return self._rules.get(rule_id)

    def __contains__(self, rule_id: object) -> bool:
        return rule_id in self._rules

    def __iter__(self) -> Iterator[Rule]:
        return iter(list(self._rules.values()))

    def __len__(self) -> int:
        return len(self._rules)


def large_amount_rule(*, threshold: int = DEFAULT_LARGE_AMOUNT_THRESHOLD) -> Rule:
    """Either side of an offer at or above ``threshold`` base units."""

    def evaluate(event: NormalizedEvent, history: HistoryView) -> list[AlertEvent]:
        if int(event.amount_a) < threshold and int(event.amount_b) < threshold:
            return []
        return [
            AlertEvent(
                alert_id=make_alert_id("large_amount", event.event_id),
                rule_id="large_amount",
                severity=Severity.HIGH,
                maker=event.maker,
                offer_id=event.offer_id,
                ts_ms=event.ts_ingest_ms,
                details={
                    "event_id": event.event_id,
                    "event_type": event.event_type.value,
                    "amount_a": event.amount_a,
                    "amount_b": event.amount_b,
                    "threshold": str(threshold),
                },
            )
        ]

    return Rule(
        rule_id="large_amount",
        severity=Severity.HIGH,
        evaluate=evaluate,
        description="amount_a or amount_b >= threshold",
    )


def freq_cancel_rule(
    *,
    threshold: int = DEFAULT_CANCEL_THRESHOLD,
    window_ms: int = DEFAULT_CANCEL_WINDOW_MS,
) -> Rule:
    """A maker cancelling ``threshold`` or more offers within ``window_ms``.

    The window ends at the cancel being evaluated and includes it. Entries are
    counted by ``event_id``, so a redelivered cancel is never counted twice.
    """

    def evaluate(event: NormalizedEvent, history: HistoryView) -> list[AlertEvent]:
        if event.event_type is not EventType.OFFER_CANCELLED:
            return []
        window_start = event.ts_ingest_ms - window_ms
        cancels = {
            entry.event_id: entry
            for entry in history.maker_events_since(window_start, event_type=EventType.OFFER_CANCELLED)
            if entry.ts_ms <= event.ts_ingest_ms
        }
        cancels.pop(event.event_id, None)
        count = len(cancels) + 1
        if count < threshold:
            return []
        return [
            AlertEvent(
                alert_id=make_alert_id("freq_cancel", event.event_id),
                rule_id="freq_cancel",
                severity=Severity.MEDIUM,
                maker=event.maker,
                offer_id=event.offer_id,
                ts_ms=event.ts_ingest_ms,
                details={
                    "event_id": event.event_id,
                    "cancel_count": count,
                    "threshold": threshold,
                    "window_ms": window_ms,
                },
            )
        ]

    return Rule(
        rule_id="freq_cancel",
        severity=Severity.MEDIUM,
        evaluate=evaluate,
        description="maker cancels >= threshold offers within the window",
    )


def self_fill_rule() -> Rule:
    """A maker filling their own offer."""

    def evaluate(event: NormalizedEvent, history: HistoryView) -> list[AlertEvent]:
        if event.event_type is not EventType.OFFER_FILLED or event.taker != event.maker:
            return []
        return [
            AlertEvent(
                alert_id=make_alert_id("self_fill", event.event_id),
                rule_id="self_fill",
                severity=Severity.MEDIUM,
                maker=event.maker,
                offer_id=event.offer_id,
                ts_ms=event.ts_ingest_ms,
                details={"event_id": event.event_id, "taker": event.taker},
            )
        ]

    return Rule(
        rule_id="self_fill",
        severity=Severity.MEDIUM,
        evaluate=evaluate,
        description="taker equals maker",
    )


def default_registry(settings: RiskSettings | None = None) -> RuleRegistry:
    """Registry with the built-in rules, configured from ``settings``."""
    if settings is None:
        return RuleRegistry([large_amount_rule(), freq_cancel_rule(), self_fill_rule()])
    return RuleRegistry(
        [
            large_amount_rule(threshold=settings.large_amount_threshold),
            freq_cancel_rule(
                threshold=settings.cancel_threshold,
                window_ms=settings.cancel_window_minutes * 60 * 1000,
            ),
            self_fill_rule(),
        ]
    )
