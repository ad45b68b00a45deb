"""
Cascade Impact Analyzer
Expands one entity change into the dependents that must be re-synchronized,
following contact -> company -> invoice -> line item over local associations.
"""

import logging
from typing import Callable, Dict, List, Optional

from change_detector import ChangeDetector
from database import BridgeDB
from models import (
    CascadeImpact,
    ChangeSummary,
    EntityChange,
    EntityType,
    ImpactedEntity,
    Priority,
)

logger = logging.getLogger(__name__)

# Per-entity transfer time estimates (milliseconds)
DEFAULT_SYNC_MS = 1500
LINE_ITEM_SYNC_MS = 2000

CRITICAL_TYPES = (EntityType.INVOICE, EntityType.LINE_ITEM)


class CascadeImpactAnalyzer:
    """One-hop dependency expansion over the local association graph.

    Only local state is read; a failed lookup for one association degrades
    to "no impact" for that association and is logged.
    """

    def __init__(self, db: BridgeDB, detector: Optional[ChangeDetector] = None):
        self.db = db
        self.detector = detector
        self._routines: Dict[EntityType, Callable[[EntityChange], List[ImpactedEntity]]] = {
            EntityType.CONTACT: self._contact_impacts,
            EntityType.COMPANY: self._company_impacts,
            EntityType.INVOICE: self._invoice_impacts,
            EntityType.LINE_ITEM: self._line_item_impacts,
        }
        missing = set(EntityType) - set(self._routines)
        if missing:
            raise RuntimeError(f"No cascade routine for {sorted(m.value for m in missing)}")

    def analyze_cascade_impact(self, change: EntityChange) -> CascadeImpact:
        impacts = self._routines[change.entity_type](change)
        result = CascadeImpact(source_change=change, impacted_entities=impacts)
        if impacts:
            logger.debug(f"{change.key} impacts {result.impacted_count} entities "
                         f"across {result.cascade_depth} types")
        return result

    def analyze_all(self, changes: List[EntityChange]) -> List[CascadeImpact]:
        results = []
        for change in changes:
            try:
                results.append(self.analyze_cascade_impact(change))
            except Exception as e:
                logger.error(f"Failed to analyze cascade impact for {change.key}: {e}")
                results.append(CascadeImpact(source_change=change))
        return results

    def get_changes_summary(self) -> Dict[EntityType, ChangeSummary]:
        """Per-type pending change counts with a rough transfer time estimate"""
        if self.detector is None:
            raise RuntimeError("Change summary requires a change detector")
        summary = {}
        for entity_type in EntityType:
            changes = self.detector.detect_changes(entity_type)
            per_entity_ms = LINE_ITEM_SYNC_MS if entity_type == EntityType.LINE_ITEM else DEFAULT_SYNC_MS
            summary[entity_type] = ChangeSummary(
                change_count=len(changes),
                last_change=max((c.modified_at for c in changes), default=None),
                critical_changes=len(changes) if entity_type in CRITICAL_TYPES else 0,
                estimated_sync_ms=len(changes) * per_entity_ms,
            )
        return summary

    # ============================================
    # PER-TYPE ROUTINES
    # ============================================

    def _impact(self, entity_type: EntityType, entity_id: str, reason: str,
                priority: Priority, requires_sync: bool = True) -> Optional[ImpactedEntity]:
        try:
            entity = self.db.get_entity(entity_type, entity_id)
        except Exception as e:
            logger.warning(f"Lookup of {entity_type.value} {entity_id} failed: {e}")
            return None
        if entity is None:
            logger.warning(f"Associated {entity_type.value} {entity_id} not found locally")
            return None
        return ImpactedEntity(entity_type, entity_id, entity["hubspot_id"], reason,
                              requires_sync, priority)

    def _line_items_of(self, invoice_id: str, reason: str, priority: Priority) -> List[ImpactedEntity]:
        try:
            items = self.db.get_line_items_for_invoice(invoice_id)
        except Exception as e:
            logger.warning(f"Line item lookup for invoice {invoice_id} failed: {e}")
            return []
        return [ImpactedEntity(EntityType.LINE_ITEM, i["id"], i["hubspot_id"], reason, True, priority)
                for i in items]

    def _contact_impacts(self, change: EntityChange) -> List[ImpactedEntity]:
        impacts = []
        for assoc in self.db.get_associations_for_contact(change.entity_id):
            primary = bool(assoc["is_primary_contact"])
            invoice = self._impact(
                EntityType.INVOICE, assoc["invoice_id"],
                "Contact modification may affect invoice contact details",
                Priority.HIGH if primary else Priority.MEDIUM)
            if invoice is None:
                continue
            impacts.append(invoice)
            if primary:
                impacts.extend(self._line_items_of(
                    assoc["invoice_id"],
                    "Primary contact change affects line item billing information",
                    Priority.MEDIUM))
        return impacts

    def _company_impacts(self, change: EntityChange) -> List[ImpactedEntity]:
        impacts = []
        for assoc in self.db.get_associations_for_company(change.entity_id):
            primary = bool(assoc["is_primary_company"])
            invoice = self._impact(
                EntityType.INVOICE, assoc["invoice_id"],
                "Company modification may affect invoice billing details",
                Priority.HIGH if primary else Priority.MEDIUM)
            if invoice is None:
                continue
            impacts.append(invoice)
            if not primary:
                continue
            contact_id = self._primary_contact_of(assoc["invoice_id"]) or assoc.get("contact_id")
            if contact_id:
                contact = self._impact(
                    EntityType.CONTACT, contact_id,
                    "Primary company change affects contact company association",
                    Priority.MEDIUM)
                if contact is not None:
                    impacts.append(contact)
        return impacts

    def _primary_contact_of(self, invoice_id: str) -> Optional[str]:
        try:
            for assoc in self.db.get_associations_for_invoice(invoice_id):
                if assoc["is_primary_contact"] and assoc["contact_id"]:
                    return assoc["contact_id"]
        except Exception as e:
            logger.warning(f"Association lookup for invoice {invoice_id} failed: {e}")
        return None

    def _invoice_impacts(self, change: EntityChange) -> List[ImpactedEntity]:
        impacts = self._line_items_of(
            change.entity_id, "Invoice modification may require line items recalculation",
            Priority.HIGH)
        for assoc in self.db.get_associations_for_invoice(change.entity_id):
            # Informational only; never enqueued
            if assoc["contact_id"]:
                contact = self._impact(
                    EntityType.CONTACT, assoc["contact_id"],
                    "Invoice status change may affect contact payment history",
                    Priority.LOW, requires_sync=False)
                if contact is not None:
                    impacts.append(contact)
            if assoc["company_id"]:
                company = self._impact(
                    EntityType.COMPANY, assoc["company_id"],
                    "Invoice status change may affect company billing summary",
                    Priority.LOW, requires_sync=False)
                if company is not None:
                    impacts.append(company)
        return impacts

    def _line_item_impacts(self, change: EntityChange) -> List[ImpactedEntity]:
        invoice_id = (change.snapshot or {}).get("invoice_id")
        if not invoice_id:
            row = self.db.get_entity(EntityType.LINE_ITEM, change.entity_id)
            invoice_id = row.get("invoice_id") if row else None
        if not invoice_id:
            logger.debug(f"Line item {change.external_id} has no parent invoice")
            return []

        impacts = []
        invoice = self._impact(EntityType.INVOICE, invoice_id,
                               "Line item change requires invoice total recalculation",
                               Priority.CRITICAL)
        if invoice is None:
            return impacts
        impacts.append(invoice)
        try:
            has_tax = self.db.get_tax_summary(invoice_id) is not None
        except Exception as e:
            logger.warning(f"Tax summary lookup for invoice {invoice_id} failed: {e}")
            has_tax = False
        if has_tax:
            impacts.append(ImpactedEntity(
                EntityType.INVOICE, invoice_id, invoice.external_id,
                "Line item change requires tax summary recalculation", True, Priority.CRITICAL))
        return impacts
