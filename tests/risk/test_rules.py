"""Tests for risk rules and the rule registry."""

from __future__ import annotations

import pytest
from conftest import MAKER, TAKER, make_event

from escrow_orderflow.config import RiskSettings
from escrow_orderflow.ingestor.models import EventType
from escrow_orderflow.risk.history import HistoryEntry, HistoryView
from escrow_orderflow.risk.models import Severity
from escrow_orderflow.risk.rules import (
    Rule,
    RuleError,
    RuleRegistry,
    default_registry,
    freq_cancel_rule,
    large_amount_rule,
    self_fill_rule,
)

NOW = 1_700_000_600_000
EMPTY = HistoryView()


def cancel_entry(event_id: str, ts_ms: int, offer_id: str = "9") -> HistoryEntry:
    return HistoryEntry(
        event_id=event_id, event_type=EventType.OFFER_CANCELLED, offer_id=offer_id, slot=1, ts_ms=ts_ms
    )


class TestLargeAmountRule:
    """Tests for the large_amount rule."""

    def test_fires_at_threshold(self) -> None:
        rule = large_amount_rule(threshold=1000)
        event = make_event(amount_a="1000", amount_b="1", ts_ingest_ms=NOW)

        alerts = rule.evaluate(event, EMPTY)

        assert len(alerts) == 1
        alert = alerts[0]
        assert alert.alert_id == f"large_amount:{event.event_id}"
        assert alert.rule_id == "large_amount"
        assert alert.severity is Severity.HIGH
        assert alert.maker == MAKER
        assert alert.offer_id == "42"
        assert alert.ts_ms == NOW
        assert alert.details["threshold"] == "1000"

    def test_either_side(self) -> None:
        rule = large_amount_rule(threshold=1000)
        assert rule.evaluate(make_event(amount_a="1", amount_b="5000"), EMPTY)

    def test_below_threshold(self) -> None:
        rule = large_amount_rule(threshold=1000)
        assert rule.evaluate(make_event(amount_a="999", amount_b="999"), EMPTY) == []

    def test_u64_amounts(self) -> None:
        rule = large_amount_rule(threshold=2**63)
        assert rule.evaluate(make_event(amount_a=str(2**64 - 1)), EMPTY)

    def test_same_event_same_alert_id(self) -> None:
        rule = large_amount_rule(threshold=1)
        event = make_event()
        assert rule.evaluate(event, EMPTY)[0].alert_id == rule.evaluate(event, EMPTY)[0].alert_id


class TestFreqCancelRule:
    """Tests for the freq_cancel rule."""

    def test_fires_when_threshold_reached(self) -> None:
        rule = freq_cancel_rule(threshold=3, window_ms=60_000)
        history = HistoryView(maker_events=(cancel_entry("a", NOW - 50_000), cancel_entry("b", NOW - 1)))
        event = make_event(EventType.OFFER_CANCELLED, ts_ingest_ms=NOW)

        alerts = rule.evaluate(event, history)

        assert len(alerts) == 1
        assert alerts[0].severity is Severity.MEDIUM
        assert alerts[0].details["cancel_count"] == 3
        assert alerts[0].alert_id == f"freq_cancel:{event.event_id}"

    def test_below_threshold(self) -> None:
        rule = freq_cancel_rule(threshold=3, window_ms=60_000)
        history = HistoryView(maker_events=(cancel_entry("a", NOW - 1),))
        assert rule.evaluate(make_event(EventType.OFFER_CANCELLED, ts_ingest_ms=NOW), history) == []

    def test_old_cancels_fall_out_of_window(self) -> None:
        rule = freq_cancel_rule(threshold=3, window_ms=60_000)
        history = HistoryView(maker_events=(cancel_entry("a", NOW - 60_001), cancel_entry("b", NOW - 1)))
        assert rule.evaluate(make_event(EventType.OFFER_CANCELLED, ts_ingest_ms=NOW), history) == []

    def test_window_boundary_is_inclusive(self) -> None:
        rule = freq_cancel_rule(threshold=2, window_ms=60_000)
        history = HistoryView(maker_events=(cancel_entry("a", NOW - 60_000),))
        assert rule.evaluate(make_event(EventType.OFFER_CANCELLED, ts_ingest_ms=NOW), history)

    def test_redelivered_cancel_not_counted_twice(self) -> None:
        rule = freq_cancel_rule(threshold=3, window_ms=60_000)
        event = make_event(EventType.OFFER_CANCELLED, ts_ingest_ms=NOW)
        history = HistoryView(maker_events=(cancel_entry("a", NOW - 1), cancel_entry(event.event_id, NOW)))

        assert rule.evaluate(event, history) == []

    def test_ignores_other_event_types(self) -> None:
        rule = freq_cancel_rule(threshold=1, window_ms=60_000)
        assert rule.evaluate(make_event(EventType.OFFER_CREATED), EMPTY) == []
        assert rule.evaluate(make_event(EventType.OFFER_FILLED, taker=TAKER), EMPTY) == []

    def test_fills_in_history_not_counted(self) -> None:
        rule = freq_cancel_rule(threshold=2, window_ms=60_000)
        fill = HistoryEntry(
            event_id="f", event_type=EventType.OFFER_FILLED, offer_id="9", slot=1, ts_ms=NOW - 1
        )
        history = HistoryView(maker_events=(fill,))
        assert rule.evaluate(make_event(EventType.OFFER_CANCELLED, ts_ingest_ms=NOW), history) == []


class TestSelfFillRule:
    """Tests for the self_fill rule."""

    def test_maker_fills_own_offer(self) -> None:
        alerts = self_fill_rule().evaluate(make_event(EventType.OFFER_FILLED, taker=MAKER), EMPTY)
        assert [a.rule_id for a in alerts] == ["self_fill"]

    def test_other_taker(self) -> None:
        assert self_fill_rule().evaluate(make_event(EventType.OFFER_FILLED, taker=TAKER), EMPTY) == []


class TestRuleRegistry:
    """Tests for RuleRegistry."""

    def test_register_and_lookup(self) -> None:
        registry = RuleRegistry()
        rule = self_fill_rule()
        registry.register(rule)

        assert "self_fill" in registry
        assert registry.get("self_fill") is rule
        assert len(registry) == 1
        assert list(registry) == [rule]

    def test_duplicate_rule_id(self) -> None:
        registry = RuleRegistry([self_fill_rule()])
        with pytest.raises(RuleError):
            registry.register(self_fill_rule())

    def test_custom_rule(self) -> None:
        registry = RuleRegistry([Rule(rule_id="noop", severity=Severity.LOW, evaluate=lambda e, h: [])])
        assert registry.get("noop") is not None

    def test_default_registry_from_settings(self) -> None:
        settings = RiskSettings(RISK_LARGE_AMOUNT_THRESHOLD=10, RISK_CANCEL_THRESHOLD=2)
        registry = default_registry(settings)

        assert [r.rule_id for r in registry] == ["large_amount", "freq_cancel", "self_fill"]
        large = registry.get("large_amount")
        assert large is not None
        assert large.evaluate(make_event(amount_a="10", amount_b="0"), EMPTY)
