"""
Tests for watermark-based change detection, ingestion and deletion inference
"""

import threading
from datetime import timedelta

import pytest

from change_detector import ChangeDetector, map_source_fields
from models import ChangeKind, EntityType

from conftest import T0


@pytest.fixture
def detector(db, watermarks, source):
    return ChangeDetector(db, watermarks, source, batch_size=2, batch_delay_seconds=0)


def test_full_sync_without_watermark(db, detector):
    """Every live row is reported when a type has never been synced"""
    db.upsert_entity(EntityType.CONTACT, "hs-2", {"email": "b@example.com"}, now=T0 + timedelta(minutes=5))
    db.upsert_entity(EntityType.CONTACT, "hs-1", {"email": "a@example.com"}, now=T0)

    changes = detector.detect_changes(EntityType.CONTACT)

    assert [c.external_id for c in changes] == ["hs-1", "hs-2"]
    assert all(c.change_kind == ChangeKind.CREATED for c in changes)
    assert changes[0].snapshot["email"] == "a@example.com"


def test_empty_type_returns_no_changes(detector):
    assert detector.detect_changes(EntityType.COMPANY) == []


def test_incremental_detection_respects_watermark(db, watermarks, detector):
    """Only rows modified at or after the watermark come back"""
    db.upsert_entity(EntityType.CONTACT, "old", {}, now=T0 - timedelta(hours=2))
    db.upsert_entity(EntityType.CONTACT, "edited", {}, now=T0 - timedelta(hours=2))
    watermarks.record_run(EntityType.CONTACT, T0, entity_count=2)

    db.upsert_entity(EntityType.CONTACT, "edited", {"phone": "555"}, now=T0 + timedelta(minutes=1))
    db.upsert_entity(EntityType.CONTACT, "boundary", {}, now=T0)
    db.upsert_entity(EntityType.CONTACT, "new", {}, now=T0 + timedelta(minutes=2))

    changes = detector.detect_changes(EntityType.CONTACT)

    kinds = {c.external_id: c.change_kind for c in changes}
    assert kinds == {
        "boundary": ChangeKind.CREATED,
        "edited": ChangeKind.UPDATED,
        "new": ChangeKind.CREATED,
    }
    assert [c.external_id for c in changes] == ["boundary", "edited", "new"]


def test_detection_prefers_source_modification_time(db, watermarks, detector):
    db.upsert_entity(EntityType.COMPANY, "co", {"name": "Acme"},
                     hubspot_updated_at=T0 - timedelta(days=1), now=T0 + timedelta(hours=1))
    watermarks.record_run(EntityType.COMPANY, T0, entity_count=0)

    assert detector.detect_changes(EntityType.COMPANY) == []


def test_deleted_rows_are_not_reported(db, detector):
    entity_id = db.upsert_entity(EntityType.CONTACT, "gone", {}, now=T0)
    db.mark_entity_deleted(EntityType.CONTACT, entity_id)

    assert detector.detect_changes(EntityType.CONTACT) == []


def test_map_source_fields_for_line_item():
    fields = map_source_fields(EntityType.LINE_ITEM, {
        "name": "Widget", "quantity": "2", "price": "10.5", "amount": "21", "hs_tax_amount": "",
    })
    assert fields["product_name"] == "Widget"
    assert fields["quantity"] == 2.0
    assert fields["unit_price"] == 10.5
    assert fields["tax_amount"] is None


def test_ingest_stores_contacts_in_batches(db, source, detector):
    for n in range(5):
        source.add(EntityType.CONTACT, str(n), {"email": f"{n}@example.com", "firstname": "N"},
                   T0 + timedelta(minutes=n))

    result = detector.ingest_modified(EntityType.CONTACT, T0 + timedelta(minutes=1))

    assert result.fetched == 4
    assert result.stored == 4
    assert result.error_count == 0
    stored = db.get_entity_by_hubspot_id(EntityType.CONTACT, "3")
    assert stored["email"] == "3@example.com"
    assert stored["first_name"] == "N"
    assert stored["raw_data"]["id"] == "3"
    assert db.get_entity_by_hubspot_id(EntityType.CONTACT, "0") is None


def test_ingest_records_per_entity_failures(db, source, detector):
    """One malformed object does not stop the batch"""
    source.add(EntityType.COMPANY, "1", {"name": "Good"}, T0)
    source.objects[EntityType.COMPANY].append({"properties": {"name": "No id"}, "updatedAt": T0.isoformat()})
    source.add(EntityType.COMPANY, "2", {"name": "Also good"}, T0)

    result = detector.ingest_modified(EntityType.COMPANY, T0)

    assert result.stored == 2
    assert result.error_count == 1
    assert db.get_entity_by_hubspot_id(EntityType.COMPANY, "2")["name"] == "Also good"


def test_ingest_invoice_with_line_items_associations_and_tax(db, source, detector):
    db.upsert_entity(EntityType.CONTACT, "c-100", {"email": "pay@example.com"})
    db.upsert_entity(EntityType.COMPANY, "co-100", {"name": "Payer Inc"})
    source.add(EntityType.INVOICE, "inv-100",
               {"hs_invoice_number": "INV-100", "hs_subtotal": "150", "hs_invoice_currency": "EUR"}, T0)
    source.line_items["inv-100"] = [
        {"id": "li-a", "properties": {"name": "Design", "amount": "100", "hs_tax_amount": "10",
                                      "hs_tax_label": "VAT", "hs_tax_rate": "10",
                                      "hs_line_item_currency_code": "EUR"}},
        {"id": "li-b", "properties": {"name": "Hosting", "amount": "50"}},
    ]
    source.associations["inv-100"] = {
        "contacts": [{"id": "c-100", "primary": True}, {"id": "c-unknown", "primary": False}],
        "companies": [{"id": "co-100", "primary": True}],
    }

    result = detector.ingest_modified(EntityType.INVOICE, T0)

    assert result.stored == 1
    invoice = db.get_entity_by_hubspot_id(EntityType.INVOICE, "inv-100")
    assert invoice["invoice_number"] == "INV-100"
    assert invoice["amount"] == 150.0

    items = db.get_line_items_for_invoice(invoice["id"])
    assert sorted(i["hubspot_id"] for i in items) == ["li-a", "li-b"]

    associations = db.get_associations_for_invoice(invoice["id"])
    assert len(associations) == 2
    contact_rows = [a for a in associations if a["contact_id"]]
    assert contact_rows[0]["is_primary_contact"] == 1

    tax = db.get_tax_summary(invoice["id"])
    assert tax["total_tax_amount"] == 10.0
    assert tax["total_after_tax"] == 160.0
    assert tax["tax_breakdown"] == [{"label": "VAT", "amount": 10.0, "rate": 10.0}]


def test_reingest_drops_removed_line_items_and_stale_tax(db, source, detector):
    source.add(EntityType.INVOICE, "inv-200", {"hs_invoice_number": "INV-200"}, T0)
    source.line_items["inv-200"] = [
        {"id": "li-x", "properties": {"name": "Audit", "amount": "100", "hs_tax_amount": "10"}},
        {"id": "li-y", "properties": {"name": "Travel", "amount": "40"}},
    ]
    detector.ingest_modified(EntityType.INVOICE, T0)
    invoice = db.get_entity_by_hubspot_id(EntityType.INVOICE, "inv-200")
    assert db.get_tax_summary(invoice["id"])["total_tax_amount"] == 10.0

    source.line_items["inv-200"] = [{"id": "li-x", "properties": {"name": "Audit", "amount": "100"}}]
    result = detector.ingest_modified(EntityType.INVOICE, T0)

    assert result.error_count == 0
    assert [i["hubspot_id"] for i in db.get_line_items_for_invoice(invoice["id"])] == ["li-x"]
    removed = db.get_entity_by_hubspot_id(EntityType.LINE_ITEM, "li-y")
    assert removed["invoice_id"] is None
    assert removed["deleted"] is True
    assert db.get_tax_summary(invoice["id"]) is None


def test_ingest_stops_when_cancelled(source, detector):
    source.add(EntityType.CONTACT, "1", {}, T0)
    stop = threading.Event()
    stop.set()

    result = detector.ingest_modified(EntityType.CONTACT, T0, stop_event=stop)

    assert result.cancelled
    assert result.stored == 0


def test_detect_deletions_tombstones_missing_rows(db, source, detector):
    db.upsert_entity(EntityType.CONTACT, "keep", {})
    gone_id = db.upsert_entity(EntityType.CONTACT, "gone", {})
    source.add(EntityType.CONTACT, "keep", {}, T0)

    changes = detector.detect_deletions(EntityType.CONTACT)

    assert [(c.external_id, c.change_kind) for c in changes] == [("gone", ChangeKind.DELETED)]
    assert db.get_entity(EntityType.CONTACT, gone_id)["deleted"] is True
    assert set(db.list_hubspot_ids(EntityType.CONTACT)) == {"keep"}


def test_detect_deletions_skips_empty_remote_listing(db, detector):
    db.upsert_entity(EntityType.COMPANY, "co", {})

    assert detector.detect_deletions(EntityType.COMPANY) == []
    assert db.list_hubspot_ids(EntityType.COMPANY) != {}


def test_ingestion_without_source_is_a_no_op(db, watermarks):
    detector = ChangeDetector(db, watermarks, source=None)

    result = detector.ingest_modified(EntityType.CONTACT)

    assert result.fetched == 0
    assert detector.detect_deletions(EntityType.CONTACT) == []
