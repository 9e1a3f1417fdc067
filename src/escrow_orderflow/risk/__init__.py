"""Risk evaluation - rule registry, bounded history and alert publishing."""

from escrow_orderflow.risk.evaluator import RiskEvaluator, RiskStats
from escrow_orderflow.risk.history import (
    HistoryEntry,
    HistoryStore,
    HistoryView,
    InMemoryHistoryStore,
    RedisHistoryStore,
)
from escrow_orderflow.risk.models import AlertEvent, Severity, make_alert_id
from escrow_orderflow.risk.rules import (
    Rule,
    RuleError,
    RuleRegistry,
    default_registry,
    freq_cancel_rule,
    large_amount_rule,
    self_fill_rule,
)

__all__ = [
    "AlertEvent",
    "HistoryEntry",
    "HistoryStore",
    "HistoryView",
    "InMemoryHistoryStore",
    "RedisHistoryStore",
    "RiskEvaluator",
    "RiskStats",
    "Rule",
    "RuleError",
    "RuleRegistry",
    "Severity",
    "default_registry",
    "freq_cancel_rule",
    "large_amount_rule",
    "make_alert_id",
    "self_fill_rule",
]
