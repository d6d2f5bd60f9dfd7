"""
Alert System
Rule-based alerts over logistics jobs.

Structure:
    alerts/
    ├── models.py    → AlertRule, Alert, Severity, AlertHistoryEntry
    ├── queue.py     → AlertPriorityQueue (active alerts, priority order)
    ├── rules.py     → built-in job rules + JSON rule loading
    └── engine.py    → AlertEngine (evaluation, dedup, lifecycle)

Usage:
    from alerts import AlertEngine, default_rules

    engine = AlertEngine(rules=default_rules(), dedup_window_sec=300)

    # Evaluate (called once per poll cycle)
    result = engine.evaluate_jobs(records)

    # Operator actions
    engine.acknowledge_alert(result.new_alerts[0].id, "dispatcher")
    top = engine.get_highest_priority_alert()
"""

from .models import (
    Alert,
    AlertAction,
    AlertHistoryEntry,
    AlertRule,
    AlertStatus,
    EvaluationResult,
    RuleCondition,
    RuleOperator,
    Severity,
)

from .queue import AlertPriorityQueue
from .rules import build_rules, default_rules, load_rules_file
from .engine import AlertEngine

__all__ = [
    # Models
    "Alert",
    "AlertAction",
    "AlertHistoryEntry",
    "AlertRule",
    "AlertStatus",
    "EvaluationResult",
    "RuleCondition",
    "RuleOperator",
    "Severity",
    # Queue
    "AlertPriorityQueue",
    # Rules
    "build_rules",
    "default_rules",
    "load_rules_file",
    # Engine
    "AlertEngine",
]
