"""
QuickBooks Transfer Executor
Drains APPROVED queue entries into the target adapter one at a time and
reports each outcome back into the queue.
"""

import dataclasses
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from database import BridgeDB
from errors import ExternalError, NotFoundError
from models import EntityType, QueueStatus, TransferQueueEntry, to_iso, utc_now
from transfer_queue import TransferQueue

logger = logging.getLogger(__name__)


@dataclass
class TransferResult:
    success: bool
    quickbooks_id: Optional[str] = None
    error: Optional[str] = None
    details: Optional[Dict[str, Any]] = None


@dataclass
class BulkTransferResult:
    total_processed: int = 0
    successful: int = 0
    failed: int = 0
    duration_ms: int = 0
    results: List[Dict[str, Any]] = field(default_factory=list)
    cancelled: bool = False


class TransferExecutor:
    """Sequential writer from the transfer queue into QuickBooks"""

    def __init__(self, db: BridgeDB, queue: TransferQueue, target,
                 transfer_delay_seconds: float = 1.0,
                 clock: Callable[[], datetime] = utc_now,
                 sleep: Callable[[float], None] = time.sleep):
        self.db = db
        self.queue = queue
        self.target = target
        self.transfer_delay_seconds = transfer_delay_seconds
        self.clock = clock
        self.sleep = sleep

    def build_entity_data(self, entry: TransferQueueEntry) -> Dict[str, Any]:
        """Current local snapshot of the entity; invoices carry line items and associations"""
        data = self.db.get_entity(entry.entity_type, entry.entity_id)
        if data is None:
            logger.warning(f"{entry.entity_type.value} {entry.entity_id} missing locally; "
                           f"using queued snapshot")
            return dict(entry.entity_data or {})

        if entry.entity_type == EntityType.INVOICE:
            data["line_items"] = self.db.get_line_items_for_invoice(entry.entity_id)
            associations = []
            for assoc in self.db.get_associations_for_invoice(entry.entity_id):
                associations.append({
                    "is_primary_contact": bool(assoc["is_primary_contact"]),
                    "is_primary_company": bool(assoc["is_primary_company"]),
                    "contact": self.db.get_entity(EntityType.CONTACT, assoc["contact_id"])
                    if assoc["contact_id"] else None,
                    "company": self.db.get_entity(EntityType.COMPANY, assoc["company_id"])
                    if assoc["company_id"] else None,
                })
            data["associations"] = associations
        return data

    def _write(self, entry: TransferQueueEntry) -> Dict[str, Any]:
        payload = dataclasses.replace(entry, entity_data=self.build_entity_data(entry))
        written = self.target.write_entity(payload)
        if not written or not written.get("external_id"):
            raise ExternalError("Target returned no identifier")
        return written

    def transfer_entry(self, entry: TransferQueueEntry) -> TransferResult:
        """Write one entry and record the outcome in the queue"""
        try:
            written = self._write(entry)
        except ExternalError as e:
            error = str(e)
            if e.failure_kind == "counterparty_missing":
                error = f"{error}; requires data fix"
            self._record_failure(entry, error, exhaust=not e.retryable, kind=e.failure_kind)
            return TransferResult(False, error=error, details={"failure_kind": e.failure_kind})
        except Exception as e:
            logger.error(f"Failed to process entry {entry.id}: {e}")
            self._record_failure(entry, str(e) or e.__class__.__name__, exhaust=False, kind="transient")
            return TransferResult(False, error=str(e), details={"failure_kind": "transient"})

        try:
            self.queue.mark_as_transferred(entry.id, str(written["external_id"]))
        except Exception as e:
            error = f"Written as QuickBooks {written['external_id']} but not marked transferred: {e}"
            logger.error(f"Entry {entry.id}: {error}")
            # The adapter upserts by natural key, so the scheduled retry rewrites the same record
            self._record_failure(entry, error, exhaust=False, kind="transient")
            return TransferResult(False, quickbooks_id=str(written["external_id"]), error=error,
                                  details={"failure_kind": "transient"})
        logger.info(f"✓ Transferred {entry.entity_type.value} {entry.external_id} "
                    f"-> QuickBooks {written['external_id']}")
        return TransferResult(True, quickbooks_id=str(written["external_id"]),
                              details=written.get("details"))

    def _record_failure(self, entry: TransferQueueEntry, error: str, exhaust: bool, kind: str) -> None:
        try:
            self.queue.mark_as_failed(entry.id, error, increment_retry=True,
                                      exhaust_retries=exhaust, failure_kind=kind)
        except Exception as e:
            logger.error(f"Could not record failure for entry {entry.id}: {e}")

    def process_approved_entries(self, max_entries: int = 50,
                                 stop_event: Optional[threading.Event] = None) -> BulkTransferResult:
        started = time.monotonic()
        logger.info(f"Starting bulk transfer of approved queue entries (max: {max_entries})")
        result = BulkTransferResult()
        entries = self.queue.get_approved_entries(max_entries)
        if not entries:
            logger.info("No approved entries found for transfer")

        for index, entry in enumerate(entries):
            if stop_event is not None and stop_event.is_set():
                result.cancelled = True
                logger.info("Transfer run cancelled")
                break
            if index and self.transfer_delay_seconds:
                self.sleep(self.transfer_delay_seconds)

            logger.info(f"Processing {entry.entity_type.value} entry {entry.id}")
            outcome = self.transfer_entry(entry)
            result.total_processed += 1
            if outcome.success:
                result.successful += 1
            else:
                result.failed += 1
            result.results.append({
                "queue_entry_id": entry.id,
                "entity_type": entry.entity_type.value,
                "success": outcome.success,
                "quickbooks_id": outcome.quickbooks_id,
                "error": outcome.error,
            })

        result.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(f"Bulk transfer completed in {result.duration_ms}ms: "
                    f"{result.successful} successful, {result.failed} failed")
        return result

    def test_single_transfer(self, entry_id: int) -> TransferResult:
        """Dry write of one APPROVED entry; the queue is left unchanged"""
        try:
            entry = self.queue.get_entry(entry_id)
        except NotFoundError:
            return TransferResult(False, error="Queue entry not found")
        if entry.status != QueueStatus.APPROVED:
            return TransferResult(False, error=f"Entry must be approved for transfer "
                                               f"(current status: {entry.status.value})")
        try:
            written = self._write(entry)
        except Exception as e:
            return TransferResult(False, error=str(e))
        return TransferResult(True, quickbooks_id=str(written["external_id"]),
                              details=written.get("details"))

    def get_transfer_statistics(self) -> Dict[str, Any]:
        rows = self.db.fetchall("""
            SELECT status, entity_type, COUNT(*) FROM transfer_queue
            WHERE status IN (?, ?)
            GROUP BY status, entity_type
        """, (QueueStatus.TRANSFERRED.value, QueueStatus.FAILED.value))
        by_type: Dict[str, Dict[str, int]] = {}
        total_transferred = 0
        total_failed = 0
        for status, entity_type, count in rows:
            bucket = by_type.setdefault(entity_type, {"transferred": 0, "failed": 0})
            if status == QueueStatus.TRANSFERRED.value:
                bucket["transferred"] += count
                total_transferred += count
            else:
                bucket["failed"] += count
                total_failed += count

        since = to_iso(self.clock() - timedelta(hours=24))
        recent = self.db.fetchone("""
            SELECT COUNT(*) FROM transfer_queue WHERE status = ? AND transferred_at >= ?
        """, (QueueStatus.TRANSFERRED.value, since))
        oldest = self.db.fetchone(
            "SELECT MIN(approved_at) FROM transfer_queue WHERE status = ?",
            (QueueStatus.APPROVED.value,))

        return {
            "total_transferred": total_transferred,
            "total_failed": total_failed,
            "transfers_by_entity_type": by_type,
            "recent_transfers": recent[0] if recent else 0,
            "oldest_pending_transfer": oldest[0] if oldest else None,
        }

    def cleanup_successful_transfers(self, older_than_days: int = 7) -> int:
        deleted = self.queue.delete_transferred_before(self.clock() - timedelta(days=older_than_days))
        logger.info(f"Cleaned up {deleted} transferred entries older than {older_than_days} days")
        return deleted
