"""Data models for the risk module."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from escrow_orderflow.ingestor.models import now_ms


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


def make_alert_id(rule_id: str, event_id: str) -> str:
    """Idempotency key of the alert a rule raises for one event."""
    return f"{rule_id}:{event_id}"


@dataclass(frozen=True)
class AlertEvent:
    """Alert published on ``escrow.alerts.v1``, keyed by ``maker``.

    Attributes:
        alert_id: Idempotency key; the same rule firing on the same event
            always yields the same id.
        rule_id: Rule that raised the alert.
        severity: Alert severity.
        maker: Maker the alert is about.
        offer_id: Offer involved, if any.
        ts_ms: When the alert was raised (epoch ms).
        details: Rule-specific JSON object.
    """

    alert_id: str
    rule_id: str
    severity: Severity
    maker: str
    offer_id: str | None = None
    ts_ms: int = field(default_factory=now_ms)
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AlertEvent:
        """Create an alert from its JSON object form.

        Raises:
            ValueError: If a field is missing or invalid.
        """
        if not isinstance(data, dict):
            raise ValueError("alert must be a JSON object")
        for key in ("alert_id", "rule_id", "maker"):
            if not isinstance(data.get(key), str) or not data[key]:
                raise ValueError(f"missing or invalid field {key!r}")
        try:
            severity = Severity(data.get("severity"))
        except ValueError as e:
            raise ValueError(f"unrecognized severity {data.get('severity')!r}") from e
        offer_id = data.get("offer_id")
        if offer_id is not None and not isinstance(offer_id, str):
            raise ValueError("field 'offer_id' must be a string or null")
        ts_ms = data.get("ts_ms")
        if not isinstance(ts_ms, int) or isinstance(ts_ms, bool):
            raise ValueError("field 'ts_ms' must be an integer")
        details = data.get("details", {})
        if not isinstance(details, dict):
            raise ValueError("field 'details' must be a JSON object")
        return cls(
            alert_id=data["alert_id"],
            rule_id=data["rule_id"],
            severity=severity,
            maker=data["maker"],
            offer_id=offer_id,
            ts_ms=ts_ms,
            details=details,
        )

    @classmethod
    def from_json(cls, raw: str | bytes) -> AlertEvent:
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ValueError(f"invalid JSON: {e}") from e
        return cls.from_dict(data)

    def to_dict(self) -> dict[str, object]:
        """Serialize to dictionary for bus publishing."""
        return {
            "alert_id": self.alert_id,
            "rule_id": self.rule_id,
            "severity": self.severity.value,
            "maker": self.maker,
            "offer_id": self.offer_id,
            "ts_ms": self.ts_ms,
            "details": self.details,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))
