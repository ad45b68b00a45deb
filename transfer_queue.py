"""
QuickBooks Transfer Queue
Durable, deduplicated work queue with a human approval step between change
detection and the transfer to QuickBooks.

    PENDING_REVIEW --approve--> APPROVED --ok--> TRANSFERRED
    PENDING_REVIEW --reject---> REJECTED
    APPROVED --error--> FAILED --retry due--> APPROVED   (until 3 attempts)
"""

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from database import BridgeDB
from errors import BridgeError, InvalidStateError, NotFoundError, ValidationError
from models import (
    DEFAULT_TARGET_SYSTEM,
    MAX_TRANSFER_RETRIES,
    ActionType,
    CascadeImpact,
    EntityType,
    Priority,
    QueueStatus,
    TransferQueueEntry,
    to_iso,
    utc_now,
)

logger = logging.getLogger(__name__)

REVIEW_MINUTES_PER_ENTRY = 2
TRANSFER_MS_PER_ENTRY = 2000
MAX_BACKOFF = timedelta(hours=24)

# Entries that still represent outstanding work and absorb new enqueues
_OPEN_CONDITION = (
    "(status IN ('PENDING_REVIEW', 'APPROVED') "
    f"OR (status = 'FAILED' AND retry_count < {MAX_TRANSFER_RETRIES}))"
)


def retry_backoff(retry_count: int) -> timedelta:
    """min(2^n minutes, 24h)"""
    if retry_count >= 11:
        return MAX_BACKOFF
    return min(timedelta(minutes=2 ** retry_count), MAX_BACKOFF)


def direct_priority(entity_type: EntityType) -> Priority:
    if entity_type in (EntityType.INVOICE, EntityType.LINE_ITEM):
        return Priority.HIGH
    return Priority.MEDIUM


@dataclass
class EnqueueResult:
    new_entries: int = 0
    cascade_entries_added: int = 0
    high_priority_entries: int = 0
    processing_duration_ms: int = 0
    skipped_duplicates: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class BulkApprovalResult:
    total_processed: int = 0
    successfully_approved: int = 0
    failed: List[Dict[str, Any]] = field(default_factory=list)
    estimated_transfer_ms: int = 0


class TransferQueue:
    """Queue persistence and its guarded state transitions.

    Every transition is a compare-and-set on the current status; a lost
    race or an illegal transition leaves the row untouched.
    """

    def __init__(self, db: BridgeDB, target_system: str = DEFAULT_TARGET_SYSTEM,
                 clock: Callable[[], datetime] = utc_now):
        self.db = db
        self.target_system = target_system
        self.clock = clock

    # ============================================
    # ENQUEUE
    # ============================================

    def enqueue(self, impacts: Iterable[CascadeImpact]) -> EnqueueResult:
        """Queue every source change plus each impacted entity that requires sync"""
        started = time.monotonic()
        result = EnqueueResult()

        for impact in impacts:
            change = impact.source_change
            priority = direct_priority(change.entity_type)
            try:
                if self._add(change.entity_type, change.entity_id, change.external_id,
                             ActionType.for_change(change.change_kind), priority,
                             "direct_change", change.snapshot):
                    result.new_entries += 1
                    if priority.is_high:
                        result.high_priority_entries += 1
                else:
                    result.skipped_duplicates += 1
            except Exception as e:
                logger.error(f"Failed to queue {change.key}: {e}")
                result.errors.append({"entity": change.key,
                                      "source_type": change.entity_type.value, "error": str(e)})

            for impacted in impact.impacted_entities:
                if not impacted.requires_sync:
                    continue
                trigger = f"cascade_from_{change.entity_type.value}: {impacted.impact_reason}"
                try:
                    if self._add(impacted.entity_type, impacted.entity_id, impacted.external_id,
                                 ActionType.UPDATE, impacted.priority, trigger, None):
                        result.cascade_entries_added += 1
                        if impacted.priority.is_high:
                            result.high_priority_entries += 1
                    else:
                        result.skipped_duplicates += 1
                except Exception as e:
                    key = f"{impacted.entity_type.value}:{impacted.external_id}"
                    logger.error(f"Failed to queue cascade entry {key}: {e}")
                    result.errors.append({"entity": key,
                                          "source_type": change.entity_type.value, "error": str(e)})

        result.processing_duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(f"Queue processing completed in {result.processing_duration_ms}ms. "
                    f"Added {result.new_entries} direct entries and "
                    f"{result.cascade_entries_added} cascade entries")
        return result

    def _add(self, entity_type: EntityType, entity_id: str, external_id: str,
             action_type: ActionType, priority: Priority, trigger_reason: str,
             entity_data: Optional[Dict[str, Any]]) -> bool:
        """Insert a PENDING_REVIEW entry unless an open one exists; True when inserted"""
        with self.db.transaction():
            existing = self.db.fetchone_dict(f"""
                SELECT id, status, priority, action_type FROM transfer_queue
                WHERE entity_type = ? AND external_id = ? AND target_system = ?
                  AND {_OPEN_CONDITION}
                ORDER BY id LIMIT 1
            """, (entity_type.value, external_id, self.target_system))

            now = to_iso(self.clock())
            if existing:
                if priority.rank > Priority(existing["priority"]).rank:
                    self.db.execute(
                        "UPDATE transfer_queue SET priority = ?, updated_at = ? WHERE id = ?",
                        (priority.value, now, existing["id"]))
                    logger.debug(f"Raised priority of entry {existing['id']} to {priority.value}")
                if (action_type == ActionType.DELETE
                        and existing["status"] == QueueStatus.PENDING_REVIEW.value
                        and existing["action_type"] != ActionType.DELETE.value):
                    self.db.execute(
                        "UPDATE transfer_queue SET action_type = ?, updated_at = ? WHERE id = ?",
                        (ActionType.DELETE.value, now, existing["id"]))
                logger.debug(f"Queue entry already exists for {entity_type.value} {external_id}")
                return False

            if entity_data is None:
                entity_data = self.db.get_entity(entity_type, entity_id)

            self.db.insert_returning_id("""
                INSERT INTO transfer_queue(entity_type, entity_id, external_id, target_system,
                                           action_type, status, priority, trigger_reason,
                                           entity_data, created_at, updated_at, retry_count)
                VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0)
            """, (entity_type.value, entity_id, external_id, self.target_system,
                  action_type.value, QueueStatus.PENDING_REVIEW.value, priority.value,
                  trigger_reason, json.dumps(entity_data, default=str) if entity_data else None,
                  now, now))
        logger.debug(f"Added {entity_type.value} {external_id} to transfer queue")
        return True

    # ============================================
    # READS
    # ============================================

    def get_entry(self, entry_id: int) -> TransferQueueEntry:
        entry = self._find(entry_id)
        if entry is None:
            raise NotFoundError(f"Queue entry {entry_id} not found", {"id": entry_id})
        return entry

    def _find(self, entry_id: int) -> Optional[TransferQueueEntry]:
        row = self.db.fetchone_dict("SELECT * FROM transfer_queue WHERE id = ?", (entry_id,))
        return _entry(row) if row else None

    def get_pending_entries(self, limit: Optional[int] = None,
                            entity_type: Optional[EntityType] = None) -> List[TransferQueueEntry]:
        query = "SELECT * FROM transfer_queue WHERE status = ?"
        params: List[Any] = [QueueStatus.PENDING_REVIEW.value]
        if entity_type is not None:
            query += " AND entity_type = ?"
            params.append(entity_type.value)
        query += " ORDER BY created_at ASC, id ASC"
        if limit:
            query += " LIMIT ?"
            params.append(int(limit))
        return [_entry(r) for r in self.db.fetchall_dicts(query, tuple(params))]

    def get_approved_entries(self, limit: Optional[int] = None) -> List[TransferQueueEntry]:
        """APPROVED entries whose retry time (if any) has come, oldest approval first"""
        query = """
            SELECT * FROM transfer_queue
            WHERE status = ? AND (next_retry_at IS NULL OR next_retry_at <= ?)
            ORDER BY approved_at ASC, id ASC
        """
        params: List[Any] = [QueueStatus.APPROVED.value, to_iso(self.clock())]
        if limit:
            query += " LIMIT ?"
            params.append(int(limit))
        return [_entry(r) for r in self.db.fetchall_dicts(query, tuple(params))]

    def get_queue_summary(self) -> Dict[str, Any]:
        rows = self.db.fetchall("""
            SELECT status, entity_type, COUNT(*) FROM transfer_queue
            GROUP BY status, entity_type
        """)
        totals = {s: 0 for s in QueueStatus}
        by_type: Dict[str, Dict[str, int]] = {}
        for status, entity_type, count in rows:
            status = QueueStatus(status)
            totals[status] += count
            bucket = by_type.setdefault(entity_type, {
                "pending": 0, "approved": 0, "rejected": 0, "transferred": 0, "failed": 0})
            bucket[_SUMMARY_KEYS[status]] += count

        oldest = self.db.fetchone(
            "SELECT MIN(created_at) FROM transfer_queue WHERE status = ?",
            (QueueStatus.PENDING_REVIEW.value,))
        pending = totals[QueueStatus.PENDING_REVIEW]
        return {
            "total_pending_review": pending,
            "total_approved": totals[QueueStatus.APPROVED],
            "total_rejected": totals[QueueStatus.REJECTED],
            "total_transferred": totals[QueueStatus.TRANSFERRED],
            "total_failed": totals[QueueStatus.FAILED],
            "by_entity_type": by_type,
            "oldest_pending_entry": oldest[0] if oldest else None,
            "estimated_review_minutes": pending * REVIEW_MINUTES_PER_ENTRY,
        }

    # ============================================
    # TRANSITIONS
    # ============================================

    def _transition(self, entry_id: int, from_status: QueueStatus, to_status: QueueStatus,
                    values: Dict[str, Any]) -> TransferQueueEntry:
        values = dict(values, status=to_status.value, updated_at=to_iso(self.clock()))
        assignments = ", ".join(f"{k} = ?" for k in values)
        with self.db.transaction():
            cur = self.db.execute(
                f"UPDATE transfer_queue SET {assignments} WHERE id = ? AND status = ?",
                tuple(values.values()) + (entry_id, from_status.value))
            if cur.rowcount == 0:
                current = self._find(entry_id)
                if current is None:
                    raise NotFoundError(f"Queue entry {entry_id} not found", {"id": entry_id})
                raise InvalidStateError(
                    f"Queue entry {entry_id} is {current.status.value}, expected {from_status.value}",
                    current_status=current.status.value, attempted=to_status.value)
        return self.get_entry(entry_id)

    def approve_entry(self, entry_id: int, approved_by: str,
                      notes: Optional[str] = None) -> TransferQueueEntry:
        if not approved_by or not approved_by.strip():
            raise ValidationError("approved_by is required", field="approved_by")
        entry = self._transition(entry_id, QueueStatus.PENDING_REVIEW, QueueStatus.APPROVED, {
            "approved_by": approved_by,
            "approved_at": to_iso(self.clock()),
            "validation_notes": notes,
        })
        logger.info(f"Queue entry {entry_id} approved by {approved_by}")
        return entry

    def reject_entry(self, entry_id: int, rejected_by: str, reason: str,
                     notes: Optional[str] = None) -> TransferQueueEntry:
        if not reason or not reason.strip():
            raise ValidationError("A rejection reason is required", field="reason")
        if not rejected_by or not rejected_by.strip():
            raise ValidationError("rejected_by is required", field="rejected_by")
        entry = self._transition(entry_id, QueueStatus.PENDING_REVIEW, QueueStatus.REJECTED, {
            "rejected_by": rejected_by,
            "rejected_at": to_iso(self.clock()),
            "rejection_reason": reason,
            "validation_notes": notes,
        })
        logger.info(f"Queue entry {entry_id} rejected by {rejected_by}: {reason}")
        return entry

    def bulk_approve(self, entry_ids: Iterable[int], approved_by: str,
                     notes: Optional[str] = None) -> BulkApprovalResult:
        result = BulkApprovalResult()
        for entry_id in entry_ids:
            result.total_processed += 1
            try:
                self.approve_entry(entry_id, approved_by, notes)
                result.successfully_approved += 1
            except BridgeError as e:
                result.failed.append({"id": entry_id, "reason": e.message})
            except Exception as e:
                logger.error(f"Unexpected error approving entry {entry_id}: {e}")
                result.failed.append({"id": entry_id, "reason": str(e)})
        result.estimated_transfer_ms = result.successfully_approved * TRANSFER_MS_PER_ENTRY
        logger.info(f"Bulk approval: {result.successfully_approved}/{result.total_processed} approved")
        return result

    def mark_as_transferred(self, entry_id: int, external_system_id: str) -> TransferQueueEntry:
        now = to_iso(self.clock())
        return self._transition(entry_id, QueueStatus.APPROVED, QueueStatus.TRANSFERRED, {
            "transferred_at": now,
            "external_system_id": external_system_id,
            "last_transfer_error": None,
            "failure_kind": None,
            "next_retry_at": None,
        })

    def mark_as_failed(self, entry_id: int, error: str, increment_retry: bool = True,
                       exhaust_retries: bool = False,
                       failure_kind: str = "transient") -> TransferQueueEntry:
        """Record a transfer failure and schedule the next attempt while retries remain"""
        with self.db.transaction():
            entry = self.get_entry(entry_id)
            if entry.status not in (QueueStatus.APPROVED, QueueStatus.FAILED):
                raise InvalidStateError(
                    f"Queue entry {entry_id} is {entry.status.value}; only APPROVED or FAILED "
                    f"entries can be marked failed",
                    current_status=entry.status.value, attempted=QueueStatus.FAILED.value)

            retry_count = entry.retry_count
            if exhaust_retries:
                retry_count = MAX_TRANSFER_RETRIES
            elif increment_retry:
                retry_count = min(retry_count + 1, MAX_TRANSFER_RETRIES)

            now = self.clock()
            next_retry_at = entry.next_retry_at
            if retry_count < MAX_TRANSFER_RETRIES:
                candidate = now + retry_backoff(retry_count)
                if next_retry_at is None or candidate > next_retry_at:
                    next_retry_at = candidate

            cur = self.db.execute("""
                UPDATE transfer_queue
                SET status = ?, retry_count = ?, next_retry_at = ?, last_transfer_error = ?,
                    failure_kind = ?, updated_at = ?
                WHERE id = ? AND status = ?
            """, (QueueStatus.FAILED.value, retry_count, to_iso(next_retry_at), error,
                  failure_kind, to_iso(now), entry_id, entry.status.value))
            if cur.rowcount == 0:
                raise InvalidStateError(f"Queue entry {entry_id} changed concurrently",
                                        attempted=QueueStatus.FAILED.value)

        if retry_count >= MAX_TRANSFER_RETRIES:
            logger.error(f"Queue entry {entry_id} exhausted retries ({failure_kind}): {error}")
        else:
            logger.warning(f"Queue entry {entry_id} failed (attempt {retry_count}), "
                           f"retry after {to_iso(next_retry_at)}: {error}")
        return self.get_entry(entry_id)

    def requeue_due_retries(self, now: Optional[datetime] = None) -> int:
        """Move FAILED entries whose retry time has come back to APPROVED"""
        now = now or self.clock()
        cur = self.db.execute("""
            UPDATE transfer_queue
            SET status = ?, updated_at = ?
            WHERE status = ? AND retry_count < ?
              AND next_retry_at IS NOT NULL AND next_retry_at <= ?
        """, (QueueStatus.APPROVED.value, to_iso(now), QueueStatus.FAILED.value,
              MAX_TRANSFER_RETRIES, to_iso(now)))
        self.db.commit()
        if cur.rowcount:
            logger.info(f"Re-queued {cur.rowcount} failed entries for retry")
        return cur.rowcount

    # ============================================
    # CLEANUP
    # ============================================

    def cleanup_old_entries(self, older_than_days: int = 30) -> int:
        """Delete terminal entries older than the cutoff; open work is never touched"""
        cutoff = to_iso(self.clock() - timedelta(days=older_than_days))
        cur = self.db.execute("""
            DELETE FROM transfer_queue
            WHERE COALESCE(updated_at, created_at) < ?
              AND (status IN (?, ?) OR (status = ? AND retry_count >= ?))
        """, (cutoff, QueueStatus.REJECTED.value, QueueStatus.TRANSFERRED.value,
              QueueStatus.FAILED.value, MAX_TRANSFER_RETRIES))
        self.db.commit()
        logger.info(f"Cleaned up {cur.rowcount} queue entries older than {older_than_days} days")
        return cur.rowcount

    def delete_transferred_before(self, cutoff: datetime) -> int:
        cur = self.db.execute("""
            DELETE FROM transfer_queue
            WHERE status = ? AND COALESCE(transferred_at, updated_at) < ?
        """, (QueueStatus.TRANSFERRED.value, to_iso(cutoff)))
        self.db.commit()
        return cur.rowcount


_SUMMARY_KEYS = {
    QueueStatus.PENDING_REVIEW: "pending",
    QueueStatus.APPROVED: "approved",
    QueueStatus.REJECTED: "rejected",
    QueueStatus.TRANSFERRED: "transferred",
    QueueStatus.FAILED: "failed",
}


def _entry(row: Dict[str, Any]) -> TransferQueueEntry:
    if row.get("entity_data"):
        row["entity_data"] = json.loads(row["entity_data"])
    return TransferQueueEntry.from_row(row)
