import itertools
import threading
import time
import uuid
from collections import deque
from datetime import datetime
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Sequence

from loguru import logger

from core.exceptions import RuleEvaluationError
from core.models import Record
from .models import (
    Alert,
    AlertAction,
    AlertHistoryEntry,
    AlertRule,
    AlertStatus,
    EvaluationResult,
    Severity,
)
from .queue import AlertPriorityQueue
from .rules import default_rules


class AlertEngine:
    """
    Evaluates rules against job batches and owns the active alert set.

    Lifecycle:
        ACTIVE(unack) -> ACTIVE(ack) -> DISMISSED | RESOLVED
        ACTIVE(unack) -> DISMISSED | RESOLVED

    Deduplication:
        Every firing of a (rule, record) key stamps a monotonic time.
        A key with an active alert is kept as-is. A key without an active
        alert that fired within the window is suppressed.
    """

    def __init__(
        self,
        rules: Optional[Sequence[AlertRule]] = None,
        dedup_window_sec: float = 300.0,
        history_size: int = 500,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._rules: List[AlertRule] = list(rules) if rules is not None else default_rules()
        self._dedup_window = dedup_window_sec
        self._clock = clock
        self._queue = AlertPriorityQueue()
        self._by_key: Dict[str, Alert] = {}
        self._dedup: Dict[str, float] = {}
        self._history: Deque[AlertHistoryEntry] = deque(maxlen=history_size)
        self._seq = itertools.count(1)
        self._lock = threading.RLock()
        self._stats = {
            "evaluations": 0,
            "triggers": 0,
            "suppressed": 0,
            "resolved": 0,
            "rule_errors": 0,
            "start_time": datetime.now(),
        }

    @property
    def rules(self) -> List[AlertRule]:
        return list(self._rules)

    # =========================================================================
    # Evaluation
    # =========================================================================

    def evaluate_jobs(self, records: Iterable[Record]) -> EvaluationResult:
        """Evaluate every rule against every record, then resolve what stopped firing"""
        result = EvaluationResult()

        with self._lock:
            self._stats["evaluations"] += 1
            now = self._clock()
            self._prune_dedup(now)

            fired = set()
            for record in records:
                for rule in self._rules:
                    try:
                        if not rule.evaluate(record):
                            continue
                        key = rule.dedup_key(record)
                        message = rule.render_message(record)
                    except RuleEvaluationError as e:
                        self._stats["rule_errors"] += 1
                        logger.warning(e.message)
                        continue

                    fired.add(key)

                    if key in self._by_key:
                        continue

                    last = self._dedup.get(key)
                    if last is not None and now - last < self._dedup_window:
                        self._stats["suppressed"] += 1
                        result.suppressed += 1
                        continue

                    alert = self._create_alert(rule, record, key, message)
                    self._dedup[key] = now
                    result.new_alerts.append(alert)

            for key, alert in list(self._by_key.items()):
                if key not in fired:
                    self._resolve(alert)
                    result.resolved_alerts.append(alert)

            result.total = len(self._queue)
            result.by_severity = self._count_by_severity()

        if result.new or result.resolved:
            logger.info(
                f"Alert evaluation: {result.new} new, {result.resolved} resolved, "
                f"{result.suppressed} suppressed, {result.total} active"
            )
        return result

    def _create_alert(self, rule: AlertRule, record: Record, key: str, message: str) -> Alert:
        alert = Alert(
            id=f"alert_{uuid.uuid4().hex[:12]}",
            rule_id=rule.id,
            rule_name=rule.name,
            severity=rule.severity,
            title=rule.name,
            message=message,
            record_id=record.id,
            fingerprint=key,
            created_at=datetime.now(),
            seq=next(self._seq),
        )
        self._queue.push(alert)
        self._by_key[key] = alert
        self._stats["triggers"] += 1
        self._record(AlertAction.CREATED, alert)
        return alert

    def _resolve(self, alert: Alert) -> None:
        alert.status = AlertStatus.RESOLVED
        alert.resolved_at = datetime.now()
        self._remove(alert)
        self._stats["resolved"] += 1
        self._record(AlertAction.RESOLVED, alert)

    def _remove(self, alert: Alert) -> None:
        self._queue.remove(alert.id)
        self._by_key.pop(alert.fingerprint, None)

    def _prune_dedup(self, now: float) -> None:
        expired = [k for k, t in self._dedup.items() if now - t >= self._dedup_window]
        for key in expired:
            del self._dedup[key]

    def _record(self, action: AlertAction, alert: Alert, actor: Optional[str] = None) -> None:
        self._history.append(AlertHistoryEntry(
            action=action,
            at=datetime.now(),
            actor=actor,
            alert=alert.to_dict(),
        ))

    def _count_by_severity(self) -> Dict[str, int]:
        counts = {s.value: 0 for s in Severity}
        for alert in self._queue:
            counts[alert.severity.value] += 1
        return counts

    # =========================================================================
    # Queries
    # =========================================================================

    def get_active_alerts(
        self,
        severity: Optional[Severity] = None,
        rule_id: Optional[str] = None,
        acknowledged: Optional[bool] = None,
        limit: Optional[int] = None,
    ) -> List[Alert]:
        """Active alerts in priority order, optionally filtered"""
        with self._lock:
            alerts = [
                a for a in self._queue
                if (severity is None or a.severity == severity)
                and (rule_id is None or a.rule_id == rule_id)
                and (acknowledged is None or a.acknowledged == acknowledged)
            ]
        return alerts[:limit] if limit is not None else alerts

    def get_highest_priority_alert(self) -> Optional[Alert]:
        with self._lock:
            return self._queue.peek()

    def get_alert(self, alert_id: str) -> Optional[Alert]:
        with self._lock:
            return self._queue.get(alert_id)

    def get_alerts_by_severity(self) -> Dict[str, List[Alert]]:
        grouped: Dict[str, List[Alert]] = {s.value: [] for s in Severity}
        with self._lock:
            for alert in self._queue:
                grouped[alert.severity.value].append(alert)
        return grouped

    def get_alerts_by_severity_level(self, severity: Severity) -> List[Alert]:
        return self.get_active_alerts(severity=severity)

    def get_history(self, limit: int = 50) -> List[AlertHistoryEntry]:
        """Lifecycle log, newest first"""
        with self._lock:
            history = list(self._history)
        history.reverse()
        return history[:limit]

    # =========================================================================
    # Operator actions
    # =========================================================================

    def acknowledge_alert(self, alert_id: str, acknowledged_by: str = "system") -> bool:
        """
        Mark an active alert as seen. The alert stays active.

        Returns False for unknown or terminal ids. A repeated acknowledge
        returns True and keeps the first acknowledgement.
        """
        with self._lock:
            alert = self._queue.get(alert_id)
            if alert is None:
                return False
            if alert.acknowledged:
                return True

            alert.acknowledged = True
            alert.acknowledged_by = acknowledged_by
            alert.acknowledged_at = datetime.now()
            self._record(AlertAction.ACKNOWLEDGED, alert, acknowledged_by)

        logger.info(f"Alert {alert_id} acknowledged by {acknowledged_by}")
        return True

    def dismiss_alert(self, alert_id: str, dismissed_by: str = "system") -> bool:
        """Remove an active alert. Returns False for unknown or terminal ids."""
        with self._lock:
            alert = self._queue.get(alert_id)
            if alert is None:
                return False

            alert.dismissed = True
            alert.dismissed_by = dismissed_by
            alert.dismissed_at = datetime.now()
            alert.status = AlertStatus.DISMISSED
            self._remove(alert)
            self._record(AlertAction.DISMISSED, alert, dismissed_by)

        logger.info(f"Alert {alert_id} dismissed by {dismissed_by}")
        return True

    def bulk_acknowledge(self, alert_ids: Iterable[str], acknowledged_by: str = "system") -> Dict[str, Any]:
        acknowledged, failed = [], []
        with self._lock:
            for alert_id in alert_ids:
                (acknowledged if self.acknowledge_alert(alert_id, acknowledged_by) else failed).append(alert_id)
        return {
            "acknowledged": len(acknowledged),
            "failed": len(failed),
            "acknowledged_ids": acknowledged,
            "failed_ids": failed,
        }

    def bulk_dismiss(self, alert_ids: Iterable[str], dismissed_by: str = "system") -> Dict[str, Any]:
        dismissed, failed = [], []
        with self._lock:
            for alert_id in alert_ids:
                (dismissed if self.dismiss_alert(alert_id, dismissed_by) else failed).append(alert_id)
        return {
            "dismissed": len(dismissed),
            "failed": len(failed),
            "dismissed_ids": dismissed,
            "failed_ids": failed,
        }

    def clear_alerts(self) -> None:
        """Drop every active alert and the dedup cache (history is kept)"""
        with self._lock:
            self._queue.clear()
            self._by_key.clear()
            self._dedup.clear()
        logger.info("All active alerts cleared")

    # =========================================================================
    # Deduplication
    # =========================================================================

    def set_deduplication_window(self, milliseconds: int) -> None:
        if milliseconds < 0:
            raise ValueError("Deduplication window must be >= 0")
        with self._lock:
            self._dedup_window = milliseconds / 1000.0
        logger.info(f"Deduplication window set to {milliseconds}ms")

    def get_deduplication_stats(self) -> Dict[str, Any]:
        with self._lock:
            now = self._clock()
            entries = [
                {"key": key, "age_ms": int((now - t) * 1000)}
                for key, t in self._dedup.items()
            ]
            return {
                "cache_size": len(self._dedup),
                "window_ms": int(self._dedup_window * 1000),
                "entries": entries,
            }

    # =========================================================================
    # Stats
    # =========================================================================

    def get_statistics(self) -> Dict[str, Any]:
        with self._lock:
            alerts = list(self._queue)
            by_rule: Dict[str, int] = {}
            for alert in alerts:
                by_rule[alert.rule_id] = by_rule.get(alert.rule_id, 0) + 1
            acknowledged = sum(1 for a in alerts if a.acknowledged)
            uptime = (datetime.now() - self._stats["start_time"]).total_seconds()

            return {
                "total": len(alerts),
                "acknowledged": acknowledged,
                "unacknowledged": len(alerts) - acknowledged,
                "by_severity": self._count_by_severity(),
                "by_rule": by_rule,
                "priority_queue_size": len(self._queue),
                "deduplication_cache_size": len(self._dedup),
                "suppressed": self._stats["suppressed"],
                "history_size": len(self._history),
                "evaluations": self._stats["evaluations"],
                "triggers": self._stats["triggers"],
                "resolved": self._stats["resolved"],
                "rule_errors": self._stats["rule_errors"],
                "rules_count": len(self._rules),
                "uptime_seconds": round(uptime, 2),
            }
