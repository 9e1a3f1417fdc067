"""Tests for the alert contract."""

import json

import pytest

from escrow_orderflow.risk.models import AlertEvent, Severity, make_alert_id


def _alert_dict(**overrides: object) -> dict[str, object]:
    data: dict[str, object] = {
        "alert_id": "large_amount:sig:0:2",
        "rule_id": "large_amount",
        "severity": "high",
        "maker": "Maker111",
        "offer_id": "42",
        "ts_ms": 1_700_000_000_000,
        "details": {"threshold": "1000"},
    }
    data.update(overrides)
    return data


class TestAlertEvent:
    """Tests for AlertEvent."""

    def test_make_alert_id(self) -> None:
        assert make_alert_id("self_fill", "sig:0:3") == "self_fill:sig:0:3"

    def test_from_dict(self) -> None:
        alert = AlertEvent.from_dict(_alert_dict())

        assert alert.severity is Severity.HIGH
        assert alert.offer_id == "42"
        assert alert.details == {"threshold": "1000"}

    def test_to_json(self) -> None:
        alert = AlertEvent.from_dict(_alert_dict(offer_id=None))
        data = json.loads(alert.to_json())

        assert data["severity"] == "high"
        assert data["offer_id"] is None
        assert AlertEvent.from_json(alert.to_json()) == alert

    @pytest.mark.parametrize(
        "overrides",
        [
            {"severity": "critical"},
            {"alert_id": ""},
            {"ts_ms": "soon"},
            {"ts_ms": True},
            {"details": []},
            {"offer_id": 42},
        ],
    )
    def test_schema_violations(self, overrides: dict[str, object]) -> None:
        with pytest.raises(ValueError):
            AlertEvent.from_dict(_alert_dict(**overrides))

    def test_invalid_json(self) -> None:
        with pytest.raises(ValueError):
            AlertEvent.from_json(b"\x00{")
