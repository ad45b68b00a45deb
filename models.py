"""
Bridge Data Models
Entity types, detection results, cascade impacts and transfer queue entries
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from dateutil import parser as dtparser


# Watermark used when an entity type has never been synchronized
EPOCH_SENTINEL = datetime(2020, 1, 1, tzinfo=timezone.utc)

MAX_TRANSFER_RETRIES = 3
DEFAULT_TARGET_SYSTEM = "QUICKBOOKS"


class EntityType(str, Enum):
    CONTACT = "CONTACT"
    COMPANY = "COMPANY"
    INVOICE = "INVOICE"
    LINE_ITEM = "LINE_ITEM"


class ChangeKind(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


class ActionType(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"

    @classmethod
    def for_change(cls, kind: ChangeKind) -> "ActionType":
        return {
            ChangeKind.CREATED: cls.CREATE,
            ChangeKind.UPDATED: cls.UPDATE,
            ChangeKind.DELETED: cls.DELETE,
        }[kind]


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]

    @property
    def is_high(self) -> bool:
        return self in (Priority.HIGH, Priority.CRITICAL)


_PRIORITY_RANK = {Priority.LOW: 0, Priority.MEDIUM: 1, Priority.HIGH: 2, Priority.CRITICAL: 3}


class QueueStatus(str, Enum):
    PENDING_REVIEW = "PENDING_REVIEW"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    TRANSFERRED = "TRANSFERRED"
    FAILED = "FAILED"


# --- Time helpers ---

def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    """Serialize a timestamp for storage; fixed width so text comparison orders correctly"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_ts(value: Any) -> Optional[datetime]:
    """Parse a stored or remote timestamp (ISO string, epoch millis or datetime)"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)) or (isinstance(value, str) and value.isdigit()):
        dt = datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
    else:
        dt = dtparser.parse(str(value))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


# --- Detection & cascade ---

@dataclass
class Watermark:
    entity_type: EntityType
    last_sync_at: Optional[datetime] = None
    entity_count: int = 0
    error_count: int = 0
    last_error_message: Optional[str] = None
    updated_at: Optional[datetime] = None


@dataclass
class EntityChange:
    entity_type: EntityType
    entity_id: str
    external_id: str
    change_kind: ChangeKind
    modified_at: datetime
    snapshot: Optional[Dict[str, Any]] = None

    @property
    def key(self) -> str:
        return f"{self.entity_type.value}:{self.external_id}"


@dataclass
class ImpactedEntity:
    entity_type: EntityType
    entity_id: str
    external_id: str
    impact_reason: str
    requires_sync: bool
    priority: Priority


@dataclass
class CascadeImpact:
    source_change: EntityChange
    impacted_entities: List[ImpactedEntity] = field(default_factory=list)

    @property
    def impacted_count(self) -> int:
        return len(self.impacted_entities)

    @property
    def cascade_depth(self) -> int:
        """Distinct entity types touched; a coarse severity signal"""
        return len({e.entity_type for e in self.impacted_entities})


@dataclass
class ChangeSummary:
    change_count: int
    last_change: Optional[datetime]
    critical_changes: int
    estimated_sync_ms: int


# --- Transfer queue ---

@dataclass
class TransferQueueEntry:
    id: int
    entity_type: EntityType
    entity_id: str
    external_id: str
    target_system: str
    action_type: ActionType
    status: QueueStatus
    priority: Priority
    created_at: datetime
    updated_at: Optional[datetime] = None
    trigger_reason: Optional[str] = None
    entity_data: Optional[Dict[str, Any]] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejected_by: Optional[str] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    validation_notes: Optional[str] = None
    retry_count: int = 0
    next_retry_at: Optional[datetime] = None
    transferred_at: Optional[datetime] = None
    external_system_id: Optional[str] = None
    last_transfer_error: Optional[str] = None
    failure_kind: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        if self.status in (QueueStatus.REJECTED, QueueStatus.TRANSFERRED):
            return True
        return self.status == QueueStatus.FAILED and self.retry_count >= MAX_TRANSFER_RETRIES

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "TransferQueueEntry":
        return cls(
            id=row["id"],
            entity_type=EntityType(row["entity_type"]),
            entity_id=row["entity_id"],
            external_id=row["external_id"],
            target_system=row["target_system"],
            action_type=ActionType(row["action_type"]),
            status=QueueStatus(row["status"]),
            priority=Priority(row["priority"]),
            created_at=parse_ts(row["created_at"]),
            updated_at=parse_ts(row.get("updated_at")),
            trigger_reason=row.get("trigger_reason"),
            entity_data=row.get("entity_data"),
            approved_by=row.get("approved_by"),
            approved_at=parse_ts(row.get("approved_at")),
            rejected_by=row.get("rejected_by"),
            rejected_at=parse_ts(row.get("rejected_at")),
            rejection_reason=row.get("rejection_reason"),
            validation_notes=row.get("validation_notes"),
            retry_count=row.get("retry_count") or 0,
            next_retry_at=parse_ts(row.get("next_retry_at")),
            transferred_at=parse_ts(row.get("transferred_at")),
            external_system_id=row.get("external_system_id"),
            last_transfer_error=row.get("last_transfer_error"),
            failure_kind=row.get("failure_kind"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "entity_type": self.entity_type.value,
            "entity_id": self.entity_id,
            "external_id": self.external_id,
            "target_system": self.target_system,
            "action_type": self.action_type.value,
            "status": self.status.value,
            "priority": self.priority.value,
            "trigger_reason": self.trigger_reason,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
            "approved_by": self.approved_by,
            "approved_at": to_iso(self.approved_at),
            "rejected_by": self.rejected_by,
            "rejected_at": to_iso(self.rejected_at),
            "rejection_reason": self.rejection_reason,
            "validation_notes": self.validation_notes,
            "retry_count": self.retry_count,
            "next_retry_at": to_iso(self.next_retry_at),
            "transferred_at": to_iso(self.transferred_at),
            "external_system_id": self.external_system_id,
            "last_transfer_error": self.last_transfer_error,
            "failure_kind": self.failure_kind,
        }
