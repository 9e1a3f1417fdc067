"""Notification text formatting for events and alerts."""

from __future__ import annotations

from typing import Literal

from escrow_orderflow.ingestor.models import NormalizedEvent
from escrow_orderflow.risk.models import AlertEvent, Severity

Verbosity = Literal["compact", "detailed"]

SEVERITY_LABELS = {
    Severity.HIGH: "HIGH",
    Severity.MEDIUM: "MEDIUM",
    Severity.LOW: "LOW",
}


def truncate_address(address: str | None, chars: int = 4) -> str:
    """Truncate a base58 account address to ``AbCd...WxYz`` form."""
    if not address:
        return "-"
    if len(address) <= chars * 2 + 3:
        return address
    return f"{address[:chars]}...{address[-chars:]}"


class NotificationFormatter:
    """Formats events and alerts into one-line notifications.

    Supports two verbosity levels:
    - compact: Essential info only (type, offer, maker)
    - detailed: Also amounts, mints, slot and ids
    """

    def __init__(self, verbosity: Verbosity = "compact") -> None:
        self.verbosity = verbosity

    def format_event(self, event: NormalizedEvent) -> str:
        parts = [
            f"EVENT {event.event_type.value}",
            f"offer_id={event.offer_id}",
            f"maker={truncate_address(event.maker)}",
        ]
        if event.taker is not None:
            parts.append(f"taker={truncate_address(event.taker)}")
        if self.verbosity == "detailed":
            parts.extend(
                [
                    f"a={event.amount_a} {truncate_address(event.mint_a)}",
                    f"b={event.amount_b} {truncate_address(event.mint_b)}",
                    f"slot={event.slot}",
                    f"commitment={event.commitment}",
                    f"event_id={event.event_id}",
                ]
            )
        return " ".join(parts)

    def format_alert(self, alert: AlertEvent) -> str:
        parts = [
            f"ALERT severity={SEVERITY_LABELS[alert.severity]}",
            f"rule={alert.rule_id}",
            f"maker={truncate_address(alert.maker)}",
            f"offer_id={alert.offer_id or '-'}",
        ]
        if self.verbosity == "detailed":
            details = ", ".join(f"{k}={v}" for k, v in sorted(alert.details.items()))
            parts.append(f"alert_id={alert.alert_id}")
            if details:
                parts.append(f"details[{details}]")
        return " ".join(parts)
