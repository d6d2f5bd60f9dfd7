"""
Core Module
Record model, error taxonomy, cache and change detection.

Exports:
    Models: Record, ChangeType, FieldChange, ChangeRecord, ChangeSummary
    Errors: MonitorError, FetchError, PersistenceError, CorruptRowError,
            RuleEvaluationError, NotFoundError
    Converters: to_record

The cache and detector depend on the db layer, so they are imported
from their modules directly:
    from core.cache import RecordCache
    from core.detector import ChangeDetector
"""

from .models import (
    CacheEntry,
    ChangeRecord,
    ChangeSummary,
    ChangeType,
    FieldChange,
    HistoryEntry,
    Record,
    to_record,
)

from .exceptions import (
    CorruptRowError,
    FetchError,
    MonitorError,
    NotFoundError,
    PersistenceError,
    RuleEvaluationError,
)

__all__ = [
    # Models
    "CacheEntry",
    "ChangeRecord",
    "ChangeSummary",
    "ChangeType",
    "FieldChange",
    "HistoryEntry",
    "Record",
    "to_record",
    # Errors
    "CorruptRowError",
    "FetchError",
    "MonitorError",
    "NotFoundError",
    "PersistenceError",
    "RuleEvaluationError",
]
