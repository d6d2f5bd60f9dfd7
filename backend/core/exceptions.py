"""
Error Taxonomy
Exceptions raised at the component boundaries of the pipeline.

    FetchError           → source system unreachable / auth failure (retried next cycle)
    PersistenceError     → durable store unavailable (cache degrades to memory-only)
    CorruptRowError      → a stored row cannot be decoded (dropped, treated as absent)
    RuleEvaluationError  → a rule predicate raised (treated as "did not fire")
    NotFoundError        → unknown alert / record id (HTTP 404)
"""

from typing import Any, Dict, Optional


class MonitorError(Exception):
    """Base exception for all pipeline errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class FetchError(MonitorError):
    """Raised when records cannot be fetched from the source system."""

    pass


class PersistenceError(MonitorError):
    """Raised when the durable store cannot be read or written."""

    pass


class CorruptRowError(PersistenceError):
    """Raised when a stored row exists but cannot be decoded."""

    def __init__(self, record_key: str, cause: Exception):
        super().__init__(
            message=f"Unreadable stored row for {record_key}: {cause}",
            details={"record_key": record_key, "error": str(cause)},
        )


class RuleEvaluationError(MonitorError):
    """Raised when an alert rule predicate fails for a record."""

    def __init__(self, rule_id: str, record_id: str, cause: Exception):
        super().__init__(
            message=f"Rule {rule_id} failed for record {record_id}: {cause}",
            details={"rule_id": rule_id, "record_id": record_id, "error": str(cause)},
        )
        self.cause = cause


class NotFoundError(MonitorError):
    """Raised when a requested alert or record does not exist."""

    def __init__(self, kind: str, item_id: str):
        super().__init__(
            message=f"{kind.capitalize()} not found: {item_id}",
            details={"kind": kind, "id": item_id},
        )
