"""
Domain Models
The SINGLE SOURCE OF TRUTH for record and change formats.

After normalization, the pipeline only sees these types.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# =============================================================================
# Record: The Core Data Contract
# =============================================================================

class Record(BaseModel):
    """
    A single operational record (a logistics job).

    This is THE internal representation. The cache, the change detector
    and the alert engine never see raw source payloads, only Records.

    Fields:
        id: Stable business id (the job id)
        field_data: Field name → scalar value (str, number or None)
        record_id: Source row id, if the source has one
        mod_id: Source modification counter, if the source has one
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(..., min_length=1)
    field_data: Dict[str, Any] = Field(default_factory=dict, alias="fieldData")
    record_id: Optional[str] = Field(default=None, alias="recordId")
    mod_id: Optional[str] = Field(default=None, alias="modId")

    @field_validator("id", "record_id", "mod_id", mode="before")
    @classmethod
    def stringify_ids(cls, v):
        """Source ids arrive as numbers or strings"""
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(int(v)) if float(v).is_integer() else str(v)
        return v

    def get(self, name: str, default: Any = None) -> Any:
        """Field value by name"""
        return self.field_data.get(name, default)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "recordId": self.record_id,
            "modId": self.mod_id,
            "fieldData": dict(self.field_data),
        }


# =============================================================================
# Cache & History
# =============================================================================

@dataclass
class CacheEntry:
    """Metadata kept alongside each cached record"""
    id: str
    data: Record
    cached_at: float
    updated_at: float
    hits: int = 0

    def age(self, now: float) -> float:
        return now - self.cached_at


@dataclass
class HistoryEntry:
    """One row of the append-only change history"""
    id: str
    record_id: Optional[str]
    data: Optional[Dict[str, Any]]
    change_type: str
    changed_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "record_id": self.record_id,
            "data": self.data,
            "change_type": self.change_type,
            "changed_at": self.changed_at.isoformat(),
        }


# =============================================================================
# Change Detection
# =============================================================================

class ChangeType(str, Enum):
    """How a record differs from its cached copy"""
    NEW = "new"
    UPDATED = "updated"
    DELETED = "deleted"
    UNCHANGED = "unchanged"


@dataclass
class FieldChange:
    """A single field-level difference"""
    field: str
    old_value: Any
    new_value: Any
    is_critical: bool = False
    removed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field": self.field,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "is_critical": self.is_critical,
            "removed": self.removed,
        }


@dataclass
class ChangeRecord:
    """
    Classification of one record in a detection pass.

    `updated` always carries at least one FieldChange; every other
    change type carries none.
    """
    id: str
    change_type: ChangeType
    record: Optional[Record] = None
    previous: Optional[Record] = None
    field_changes: List[FieldChange] = field(default_factory=list)
    detected_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "change_type": self.change_type.value,
            "field_changes": [fc.to_dict() for fc in self.field_changes],
            "detected_at": self.detected_at.isoformat(),
        }


@dataclass
class ChangeSummary:
    """Result of ChangeDetector.detect_changes"""
    new: List[ChangeRecord] = field(default_factory=list)
    updated: List[ChangeRecord] = field(default_factory=list)
    deleted: List[ChangeRecord] = field(default_factory=list)
    unchanged: List[ChangeRecord] = field(default_factory=list)
    detected_at: datetime = field(default_factory=datetime.now)

    @property
    def new_count(self) -> int:
        return len(self.new)

    @property
    def updated_count(self) -> int:
        return len(self.updated)

    @property
    def deleted_count(self) -> int:
        return len(self.deleted)

    @property
    def unchanged_count(self) -> int:
        return len(self.unchanged)

    @property
    def total_changes(self) -> int:
        return self.new_count + self.updated_count + self.deleted_count

    def summary(self) -> Dict[str, int]:
        return {
            "new_count": self.new_count,
            "updated_count": self.updated_count,
            "deleted_count": self.deleted_count,
            "unchanged_count": self.unchanged_count,
            "total_changes": self.total_changes,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summary": self.summary(),
            "detected_at": self.detected_at.isoformat(),
            "new": [c.to_dict() for c in self.new],
            "updated": [c.to_dict() for c in self.updated],
            "deleted": [c.to_dict() for c in self.deleted],
        }


# =============================================================================
# Converters: External → Internal
# =============================================================================

def to_record(data: Dict[str, Any], id_field: str = "_kp_job_id") -> Optional[Record]:
    """
    Convert a raw source row to a Record.

    This is the NORMALIZATION POINT.
    All source payloads go through here.

    Handles:
    - FileMaker shape: {"recordId", "modId", "fieldData": {...}}
    - flat dicts with the id field at the top level
    - rows without an id (returns None, caller skips them)
    """
    field_data = data.get("fieldData")
    if field_data is None:
        field_data = {k: v for k, v in data.items() if k not in ("recordId", "modId")}

    record_key = field_data.get(id_field)
    if record_key is None or record_key == "":
        return None

    return Record(
        id=record_key,
        field_data=field_data,
        record_id=data.get("recordId"),
        mod_id=data.get("modId"),
    )
