"""
Alert Models
Data structures for alert rules, alerts, and the alert lifecycle log.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple, Union
from enum import Enum

from core.exceptions import RuleEvaluationError
from core.models import Record


class Severity(str, Enum):
    """Alert severity levels"""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}


class AlertStatus(str, Enum):
    """Alert lifecycle status"""
    ACTIVE = "active"
    DISMISSED = "dismissed"
    RESOLVED = "resolved"


class AlertAction(str, Enum):
    """Entries written to the alert history log"""
    CREATED = "created"
    ACKNOWLEDGED = "acknowledged"
    DISMISSED = "dismissed"
    RESOLVED = "resolved"


class RuleOperator(str, Enum):
    """Operators for data-driven rule conditions"""
    EQ = "=="
    NE = "!="
    BLANK = "blank"
    PRESENT = "present"
    IN = "in"
    NOT_IN = "not_in"
    GT = ">"
    LT = "<"
    GTE = ">="
    LTE = "<="


def is_blank(value: Any) -> bool:
    return value is None or value == ""


def as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


class _TemplateFields(dict):
    """Format mapping where unknown fields render empty"""

    def __missing__(self, key: str) -> str:
        return ""


@dataclass(frozen=True)
class RuleCondition:
    """
    One clause of a data-driven rule.

    Example:
        {"field": "job_status", "operator": "==", "value": "Entered"}
    """
    field: str
    operator: RuleOperator
    value: Any = None

    def matches(self, record: Record) -> bool:
        actual = record.get(self.field)
        op = self.operator

        if op == RuleOperator.BLANK:
            return is_blank(actual)
        if op == RuleOperator.PRESENT:
            return not is_blank(actual)
        if op == RuleOperator.EQ:
            return as_text(actual) == as_text(self.value)
        if op == RuleOperator.NE:
            return as_text(actual) != as_text(self.value)
        if op == RuleOperator.IN:
            return as_text(actual) in {as_text(v) for v in self.value}
        if op == RuleOperator.NOT_IN:
            return as_text(actual) not in {as_text(v) for v in self.value}

        # Numeric comparisons never match a blank field
        if is_blank(actual):
            return False
        left, right = float(actual), float(self.value)
        if op == RuleOperator.GT:
            return left > right
        if op == RuleOperator.LT:
            return left < right
        if op == RuleOperator.GTE:
            return left >= right
        if op == RuleOperator.LTE:
            return left <= right
        return False

    def to_dict(self) -> Dict[str, Any]:
        return {"field": self.field, "operator": self.operator.value, "value": self.value}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RuleCondition":
        operator = RuleOperator(data["operator"])
        value = data.get("value")
        if operator in (RuleOperator.IN, RuleOperator.NOT_IN) and not isinstance(value, (list, tuple)):
            raise ValueError(f"Operator {operator.value!r} needs a list value for field {data['field']!r}")
        return cls(field=data["field"], operator=operator, value=value)


MessageTemplate = Union[str, Callable[[Record], str]]


@dataclass(frozen=True)
class AlertRule:
    """
    A named predicate over a single record.

    `message_template` is either a callable or a format string over
    `{id}` and the record's field names, e.g.
        "Job {id} is Entered but has no truck assigned"

    `state_fields` makes deduplication value-sensitive: the alert key
    includes those fields' values, so a changed value raises a fresh alert.
    """
    id: str
    name: str
    severity: Severity
    predicate: Callable[[Record], bool]
    message_template: MessageTemplate
    state_fields: Tuple[str, ...] = ()
    conditions: Tuple[RuleCondition, ...] = ()
    description: str = ""

    def evaluate(self, record: Record) -> bool:
        """Run the predicate; any failure is raised as RuleEvaluationError"""
        try:
            return bool(self.predicate(record))
        except Exception as e:
            raise RuleEvaluationError(self.id, record.id, e) from e

    def render_message(self, record: Record) -> str:
        try:
            if callable(self.message_template):
                return str(self.message_template(record))
            fields = _TemplateFields(
                {k: as_text(v) for k, v in record.field_data.items()}
            )
            fields["id"] = record.id
            return self.message_template.format_map(fields)
        except Exception as e:
            raise RuleEvaluationError(self.id, record.id, e) from e

    def dedup_key(self, record: Record) -> str:
        key = f"{self.id}:{record.id}"
        if self.state_fields:
            key += ":" + "|".join(as_text(record.get(f)) for f in self.state_fields)
        return key

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "severity": self.severity.value,
            "description": self.description,
            "state_fields": list(self.state_fields),
            "conditions": [c.to_dict() for c in self.conditions],
            "message": self.message_template if isinstance(self.message_template, str) else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AlertRule":
        """Build a rule whose predicate is the conjunction of its conditions"""
        conditions = tuple(RuleCondition.from_dict(c) for c in data.get("conditions", []))
        if not conditions:
            raise ValueError(f"Rule {data.get('id')!r} has no conditions")

        def predicate(record: Record) -> bool:
            return all(c.matches(record) for c in conditions)

        return cls(
            id=data["id"],
            name=data.get("name") or data["id"],
            severity=Severity(str(data.get("severity", "MEDIUM")).upper()),
            predicate=predicate,
            message_template=data.get("message") or f"{data.get('name') or data['id']}: job {{id}}",
            state_fields=tuple(data.get("state_fields", ())),
            conditions=conditions,
            description=data.get("description", ""),
        )


@dataclass
class Alert:
    """
    A raised alert.

    Owned by the AlertEngine while active. Mutated only through
    acknowledge / dismiss / resolve.
    """
    id: str
    rule_id: str
    rule_name: str
    severity: Severity
    title: str
    message: str
    record_id: str
    fingerprint: str
    created_at: datetime = field(default_factory=datetime.now)
    seq: int = 0
    acknowledged: bool = False
    acknowledged_by: Optional[str] = None
    acknowledged_at: Optional[datetime] = None
    dismissed: bool = False
    dismissed_by: Optional[str] = None
    dismissed_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    status: AlertStatus = AlertStatus.ACTIVE

    @property
    def is_terminal(self) -> bool:
        return self.status != AlertStatus.ACTIVE

    @property
    def priority_key(self) -> Tuple[int, datetime, int]:
        return (-self.severity.rank, self.created_at, self.seq)

    def to_dict(self) -> Dict[str, Any]:
        def iso(dt: Optional[datetime]) -> Optional[str]:
            return dt.isoformat() if dt else None

        return {
            "id": self.id,
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "severity": self.severity.value,
            "title": self.title,
            "message": self.message,
            "record_id": self.record_id,
            "fingerprint": self.fingerprint,
            "created_at": iso(self.created_at),
            "acknowledged": self.acknowledged,
            "acknowledged_by": self.acknowledged_by,
            "acknowledged_at": iso(self.acknowledged_at),
            "dismissed": self.dismissed,
            "dismissed_by": self.dismissed_by,
            "dismissed_at": iso(self.dismissed_at),
            "resolved_at": iso(self.resolved_at),
            "status": self.status.value,
        }


@dataclass
class AlertHistoryEntry:
    """One lifecycle event of an alert (snapshot taken at the time)"""
    action: AlertAction
    at: datetime
    actor: Optional[str]
    alert: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action.value,
            "at": self.at.isoformat(),
            "actor": self.actor,
            "alert": self.alert,
        }


@dataclass
class EvaluationResult:
    """Outcome of one AlertEngine.evaluate_jobs pass"""
    new_alerts: List[Alert] = field(default_factory=list)
    resolved_alerts: List[Alert] = field(default_factory=list)
    total: int = 0
    suppressed: int = 0
    by_severity: Dict[str, int] = field(default_factory=dict)

    @property
    def new(self) -> int:
        return len(self.new_alerts)

    @property
    def resolved(self) -> int:
        return len(self.resolved_alerts)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "new": self.new,
            "resolved": self.resolved,
            "total": self.total,
            "suppressed": self.suppressed,
            "by_severity": dict(self.by_severity),
            "new_alerts": [a.to_dict() for a in self.new_alerts],
            "resolved_alerts": [a.to_dict() for a in self.resolved_alerts],
        }
