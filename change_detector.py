"""
Entity Change Detector
Watermark-based incremental detection over the local HubSpot mirror, plus
ingestion of modified objects from HubSpot and deletion inference.
"""

import logging
import threading
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from database import BridgeDB
from hubspot_client import MODIFIED_PROPERTY
from models import (
    EPOCH_SENTINEL,
    ChangeKind,
    EntityChange,
    EntityType,
    parse_ts,
    utc_now,
)
from watermarks import WatermarkStore

logger = logging.getLogger(__name__)


@dataclass
class IngestionResult:
    entity_type: EntityType
    fetched: int = 0
    stored: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    cancelled: bool = False

    @property
    def error_count(self) -> int:
        return len(self.errors)


def _num(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def map_source_fields(entity_type: EntityType, props: Dict[str, Any]) -> Dict[str, Any]:
    """Translate HubSpot property names into local column names"""
    if entity_type == EntityType.CONTACT:
        return {
            "email": props.get("email"),
            "first_name": props.get("firstname"),
            "last_name": props.get("lastname"),
            "phone": props.get("phone"),
            "city": props.get("city"),
            "country": props.get("country"),
        }
    if entity_type == EntityType.COMPANY:
        return {
            "name": props.get("name"),
            "domain": props.get("domain"),
            "city": props.get("city"),
            "state": props.get("state"),
            "zip": props.get("zip"),
            "country": props.get("country"),
        }
    if entity_type == EntityType.INVOICE:
        return {
            "invoice_number": props.get("hs_invoice_number"),
            "title": props.get("hs_invoice_description") or props.get("hs_invoice_number"),
            "status": props.get("hs_invoice_status"),
            "amount": _num(props.get("hs_subtotal")) or _num(props.get("hs_invoice_amount")) or 0.0,
            "currency": props.get("hs_invoice_currency"),
            "due_date": props.get("hs_invoice_due_date"),
        }
    return {
        "product_name": props.get("name"),
        "quantity": _num(props.get("quantity")),
        "unit_price": _num(props.get("price")),
        "amount": _num(props.get("amount")),
        "currency": props.get("hs_line_item_currency_code"),
        "tax_rate": _num(props.get("hs_tax_rate")),
        "tax_amount": _num(props.get("hs_tax_amount")),
    }


def source_modified_at(entity_type: EntityType, obj: Dict[str, Any]) -> Optional[datetime]:
    props = obj.get("properties") or {}
    return parse_ts(props.get(MODIFIED_PROPERTY[entity_type]) or obj.get("updatedAt"))


class ChangeDetector:
    """Reports entities modified since each type's watermark.

    detect_changes() is read-only; ingest_modified() and detect_deletions()
    write to the local mirror and need a source adapter.
    """

    def __init__(self, db: BridgeDB, watermarks: WatermarkStore, source=None,
                 batch_size: int = 10, batch_delay_seconds: float = 0.5):
        self.db = db
        self.watermarks = watermarks
        self.source = source
        self.batch_size = max(1, batch_size)
        self.batch_delay_seconds = batch_delay_seconds

    def detect_changes(self, entity_type: EntityType) -> List[EntityChange]:
        watermark = self.watermarks.get(entity_type)
        since = watermark.last_sync_at if watermark else None
        full_sync = since is None
        threshold = since or EPOCH_SENTINEL

        changes = []
        for row in self.db.list_entities(entity_type):
            modified_at = parse_ts(row.get("hubspot_updated_at")) or parse_ts(row["updated_at"])
            if not full_sync and modified_at < threshold:
                continue
            created_at = parse_ts(row["created_at"])
            kind = ChangeKind.CREATED if created_at >= threshold else ChangeKind.UPDATED
            changes.append(EntityChange(
                entity_type=entity_type,
                entity_id=row["id"],
                external_id=row["hubspot_id"],
                change_kind=kind,
                modified_at=modified_at,
                snapshot=row,
            ))

        changes.sort(key=lambda c: (c.modified_at, c.external_id))
        if full_sync:
            logger.info(f"No watermark for {entity_type.value}; full sync returned {len(changes)} entities")
        else:
            logger.info(f"Detected {len(changes)} {entity_type.value} changes since {threshold.isoformat()}")
        return changes

    # ============================================
    # DELETION INFERENCE
    # ============================================

    def detect_deletions(self, entity_type: EntityType,
                         stop_event: Optional[threading.Event] = None) -> List[EntityChange]:
        """Tombstone local rows that a full re-fetch no longer returns"""
        if self.source is None:
            logger.warning("Deletion inference skipped: no source adapter configured")
            return []

        remote_ids = {str(obj["id"]) for obj in self.source.get_all(entity_type)}
        local = self.db.list_hubspot_ids(entity_type)
        if local and not remote_ids:
            # An empty listing against a populated mirror is far more likely an API fault
            logger.warning(f"Source returned no {entity_type.value} objects; skipping deletion inference")
            return []

        now = utc_now()
        changes = []
        for hubspot_id, entity_id in sorted(local.items()):
            if stop_event is not None and stop_event.is_set():
                logger.info("Deletion inference cancelled")
                break
            if hubspot_id in remote_ids:
                continue
            self.db.mark_entity_deleted(entity_type, entity_id, now)
            changes.append(EntityChange(entity_type, entity_id, hubspot_id, ChangeKind.DELETED, now))

        if changes:
            logger.info(f"🗑️ Inferred {len(changes)} deleted {entity_type.value} entities")
        return changes

    # ============================================
    # INGESTION FROM SOURCE
    # ============================================

    def ingest_modified(self, entity_type: EntityType, since: Optional[datetime] = None,
                        stop_event: Optional[threading.Event] = None) -> IngestionResult:
        """Pull objects modified since the checkpoint into the local mirror"""
        result = IngestionResult(entity_type)
        if self.source is None:
            logger.warning("Ingestion skipped: no source adapter configured")
            return result

        if since is None:
            watermark = self.watermarks.get(entity_type)
            since = (watermark.last_sync_at if watermark else None) or EPOCH_SENTINEL

        objects = self.source.get_modified_since(entity_type, since)
        result.fetched = len(objects)

        for start in range(0, len(objects), self.batch_size):
            if start and self.batch_delay_seconds:
                time.sleep(self.batch_delay_seconds)
            for obj in objects[start:start + self.batch_size]:
                if stop_event is not None and stop_event.is_set():
                    result.cancelled = True
                    logger.info(f"Ingestion of {entity_type.value} cancelled after {result.stored} entities")
                    return result
                try:
                    if entity_type == EntityType.INVOICE:
                        self._ingest_invoice(obj)
                    else:
                        self._store(entity_type, obj)
                    result.stored += 1
                except Exception as e:
                    logger.error(f"Failed to ingest {entity_type.value} {obj.get('id')}: {e}")
                    result.errors.append({"id": str(obj.get("id")), "error": str(e)})

        logger.info(f"Ingested {result.stored}/{result.fetched} {entity_type.value} objects "
                    f"({result.error_count} errors)")
        return result

    def _store(self, entity_type: EntityType, obj: Dict[str, Any],
               extra: Optional[Dict[str, Any]] = None) -> str:
        fields = map_source_fields(entity_type, obj.get("properties") or {})
        if extra:
            fields.update(extra)
        return self.db.upsert_entity(
            entity_type,
            str(obj["id"]),
            fields,
            hubspot_updated_at=source_modified_at(entity_type, obj),
            raw_data=obj,
        )

    def _ingest_invoice(self, obj: Dict[str, Any]) -> str:
        """Store an invoice with its line items, associations and tax summary atomically"""
        hubspot_id = str(obj["id"])
        line_items = self.source.get_line_items_for_invoice(hubspot_id)
        associations = self.source.get_invoice_associations(hubspot_id)

        with self.db.transaction():
            invoice_id = self._store(EntityType.INVOICE, obj)
            for item in line_items:
                self._store(EntityType.LINE_ITEM, item, extra={"invoice_id": invoice_id})
            removed = self.db.detach_line_items(invoice_id, [str(item["id"]) for item in line_items])
            if removed:
                logger.info(f"Invoice {hubspot_id}: detached {removed} line items no longer on it")

            rows = []
            for contact in associations.get("contacts", []):
                local = self.db.get_entity_by_hubspot_id(EntityType.CONTACT, contact["id"])
                if local is None:
                    logger.warning(f"Invoice {hubspot_id}: contact {contact['id']} not mirrored yet")
                    continue
                rows.append({"contact_id": local["id"], "is_primary_contact": contact.get("primary", False)})
            for company in associations.get("companies", []):
                local = self.db.get_entity_by_hubspot_id(EntityType.COMPANY, company["id"])
                if local is None:
                    logger.warning(f"Invoice {hubspot_id}: company {company['id']} not mirrored yet")
                    continue
                rows.append({"company_id": local["id"], "is_primary_company": company.get("primary", False)})
            self.db.replace_invoice_associations(invoice_id, rows)

            self._store_tax_summary(invoice_id, line_items)
        return invoice_id

    def _store_tax_summary(self, invoice_id: str, line_items: List[Dict[str, Any]]) -> None:
        subtotal = 0.0
        total_tax = 0.0
        currency = None
        by_label: Dict[str, Dict[str, Any]] = defaultdict(lambda: {"amount": 0.0, "rate": None})
        for item in line_items:
            props = item.get("properties") or {}
            subtotal += _num(props.get("amount")) or 0.0
            tax = _num(props.get("hs_tax_amount")) or 0.0
            currency = currency or props.get("hs_line_item_currency_code")
            if tax > 0:
                total_tax += tax
                entry = by_label[props.get("hs_tax_label") or "Tax"]
                entry["amount"] += tax
                entry["rate"] = _num(props.get("hs_tax_rate"))

        if total_tax <= 0:
            self.db.delete_tax_summary(invoice_id)
            return
        breakdown = [{"label": k, "amount": v["amount"], "rate": v["rate"]} for k, v in by_label.items()]
        self.db.upsert_tax_summary(invoice_id, currency, subtotal, total_tax,
                                   subtotal + total_tax, breakdown)
