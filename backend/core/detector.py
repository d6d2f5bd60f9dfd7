import threading
from typing import Any, Callable, Dict, Iterable, List, Optional

from loguru import logger

from .cache import RecordCache
from .models import ChangeRecord, ChangeSummary, ChangeType, FieldChange, HistoryEntry, Record

OnChangesCallback = Callable[[ChangeSummary], None]

DEFAULT_CRITICAL_FIELDS = (
    "job_status",
    "job_status_driver",
    "time_arival",
    "time_complete",
    "_kf_trucks_id",
    "_kf_driver_id",
    "_kf_route_id",
    "job_date",
    "job_type",
)

STATUS_FIELDS = ("job_status", "job_status_driver")
ASSIGNMENT_FIELDS = ("_kf_trucks_id", "_kf_driver_id")
TIME_FIELDS = ("time_arival", "time_complete")


def _is_absent(value: Any) -> bool:
    return value is None or value == ""


def _as_text(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


class ChangeDetector:
    def __init__(self, cache: RecordCache, critical_fields: Iterable[str] = DEFAULT_CRITICAL_FIELDS):
        self._cache = cache
        self.critical_fields = frozenset(critical_fields)
        self._on_changes: List[OnChangesCallback] = []
        self._lock = threading.RLock()
        self._last_summary: Optional[ChangeSummary] = None
        self._stats = {
            "passes": 0,
            "records_seen": 0,
            "total_changes": 0,
            "listener_errors": 0,
        }

    @property
    def last_summary(self) -> Optional[ChangeSummary]:
        return self._last_summary

    def detect_changes(self, records: List[Record]) -> ChangeSummary:
        summary = ChangeSummary()

        with self._lock:
            seen = set()

            for record in records:
                seen.add(record.id)
                cached = self._cache.get(record.id)

                if cached is None:
                    summary.new.append(ChangeRecord(
                        id=record.id, change_type=ChangeType.NEW, record=record
                    ))
                    self._cache.set(record.id, record)
                    self._cache.add_to_history(record.id, record, ChangeType.NEW.value)
                    continue

                field_changes = self.compare_records(cached, record)
                if field_changes:
                    summary.updated.append(ChangeRecord(
                        id=record.id,
                        change_type=ChangeType.UPDATED,
                        record=record,
                        previous=cached,
                        field_changes=field_changes,
                    ))
                    self._cache.set(record.id, record)
                    self._cache.add_to_history(record.id, record, ChangeType.UPDATED.value)
                else:
                    summary.unchanged.append(ChangeRecord(
                        id=record.id, change_type=ChangeType.UNCHANGED, record=record
                    ))

            for record_key in self._cache.keys():
                if record_key in seen:
                    continue
                cached = self._cache.get(record_key)
                summary.deleted.append(ChangeRecord(
                    id=record_key, change_type=ChangeType.DELETED, previous=cached
                ))
                self._cache.delete(record_key)
                self._cache.add_to_history(record_key, cached, ChangeType.DELETED.value)

            self._last_summary = summary
            self._stats["passes"] += 1
            self._stats["records_seen"] += len(records)
            self._stats["total_changes"] += summary.total_changes

        if summary.total_changes > 0:
            self._notify(summary)

        return summary

    def compare_records(self, old: Record, new: Record) -> List[FieldChange]:
        changes = []
        old_fields = old.field_data
        new_fields = new.field_data

        for name, new_value in new_fields.items():
            old_value = old_fields.get(name)
            if self.has_changed(old_value, new_value):
                changes.append(FieldChange(
                    field=name,
                    old_value=old_value,
                    new_value=new_value,
                    is_critical=name in self.critical_fields,
                ))

        for name, old_value in old_fields.items():
            if name not in new_fields:
                changes.append(FieldChange(
                    field=name,
                    old_value=old_value,
                    new_value=None,
                    is_critical=name in self.critical_fields,
                    removed=True,
                ))

        return changes

    @staticmethod
    def has_changed(old_value: Any, new_value: Any) -> bool:
        """None and "" both mean absent; otherwise compare as text."""
        if _is_absent(old_value) and _is_absent(new_value):
            return False
        if _is_absent(old_value) or _is_absent(new_value):
            return True
        return _as_text(old_value) != _as_text(new_value)

    def on_changes(self, callback: OnChangesCallback) -> None:
        self._on_changes.append(callback)

    def _notify(self, summary: ChangeSummary) -> None:
        for callback in self._on_changes:
            try:
                callback(summary)
            except Exception as e:
                self._stats["listener_errors"] += 1
                logger.exception(f"Change listener {getattr(callback, '__name__', callback)!r} failed: {e}")

    def analyze_changes(self, summary: ChangeSummary) -> Dict[str, Any]:
        field_counts: Dict[str, int] = {}
        analysis = {
            "critical_changes": 0,
            "status_changes": 0,
            "assignment_changes": 0,
            "time_changes": 0,
        }

        for change in summary.updated:
            for fc in change.field_changes:
                field_counts[fc.field] = field_counts.get(fc.field, 0) + 1
                if fc.is_critical:
                    analysis["critical_changes"] += 1
                if fc.field in STATUS_FIELDS:
                    analysis["status_changes"] += 1
                if fc.field in ASSIGNMENT_FIELDS:
                    analysis["assignment_changes"] += 1
                if fc.field in TIME_FIELDS:
                    analysis["time_changes"] += 1

        analysis["most_changed_fields"] = dict(
            sorted(field_counts.items(), key=lambda kv: kv[1], reverse=True)
        )
        return analysis

    def get_critical_changes(self, summary: ChangeSummary) -> List[ChangeRecord]:
        critical = []
        for change in summary.updated:
            fields = [fc for fc in change.field_changes if fc.is_critical]
            if fields:
                critical.append(ChangeRecord(
                    id=change.id,
                    change_type=change.change_type,
                    record=change.record,
                    previous=change.previous,
                    field_changes=fields,
                    detected_at=change.detected_at,
                ))
        return critical

    def get_change_history(self, record_key: str, limit: int = 10) -> List[HistoryEntry]:
        return self._cache.get_history(record_key, limit)

    def stats(self) -> Dict[str, Any]:
        last = self._last_summary
        return {
            **self._stats,
            "listeners": len(self._on_changes),
            "last_detected_at": last.detected_at.isoformat() if last else None,
            "last_summary": last.summary() if last else None,
            "cache": self._cache.stats(),
        }
