"""
Tests for the sync orchestrator, configuration loading and the CLI
"""

import threading
from datetime import datetime, timedelta, timezone

import pytest

import sync_engine
from models import EntityType, Priority, QueueStatus, to_iso
from sync_engine import Config, SyncOrchestrator, load_config

from conftest import T0, FakeSource, seed_invoice_graph


def _settle_watermarks(orchestrator, at):
    for et in EntityType:
        orchestrator.watermarks.record_run(et, at, entity_count=0)


def test_line_item_change_end_to_end(db, orchestrator, clock):
    """li-1 changes -> one critical inv-1 entry -> approved by alice -> transferred"""
    seed_invoice_graph(db, now=T0 - timedelta(hours=2))
    _settle_watermarks(orchestrator, T0 - timedelta(hours=1))
    db.upsert_entity(EntityType.LINE_ITEM, "hs-li-1", {"invoice_id": "inv-1", "amount": 130.0},
                     now=T0 - timedelta(minutes=30))

    run = orchestrator.run_change_detection()

    assert run["status"] == "success"
    assert run["changes_detected"] == 1
    assert run["queue"]["new_entries"] == 1
    assert run["queue"]["cascade_entries_added"] == 1

    invoices = orchestrator.queue.get_pending_entries(entity_type=EntityType.INVOICE)
    assert len(invoices) == 1
    invoice_entry = invoices[0]
    assert invoice_entry.entity_id == "inv-1"
    assert invoice_entry.priority == Priority.CRITICAL
    assert invoice_entry.status == QueueStatus.PENDING_REVIEW

    approved = orchestrator.queue.approve_entry(invoice_entry.id, "alice")
    assert approved.status == QueueStatus.APPROVED

    transfers = orchestrator.run_transfers()

    assert transfers["successful"] == 1
    done = orchestrator.queue.get_entry(invoice_entry.id)
    assert done.status == QueueStatus.TRANSFERRED
    assert done.external_system_id == "QB-hs-inv-1"
    assert done.retry_count == 0


def test_watermarks_advance_to_run_start(db, orchestrator, clock):
    seed_invoice_graph(db, now=T0 - timedelta(hours=1))

    first = orchestrator.run_change_detection()
    assert first["changes_detected"] == 6
    for et in EntityType:
        assert orchestrator.watermarks.get(et).last_sync_at == T0

    clock.advance(minutes=15)
    second = orchestrator.run_change_detection()

    assert second["changes_detected"] == 0
    assert orchestrator.watermarks.get(EntityType.CONTACT).last_sync_at == T0 + timedelta(minutes=15)


def test_watermark_never_moves_backward(orchestrator, clock):
    orchestrator.watermarks.record_run(EntityType.CONTACT, T0 + timedelta(days=1), entity_count=3)

    orchestrator.run_change_detection()

    assert orchestrator.watermarks.get(EntityType.CONTACT).last_sync_at == T0 + timedelta(days=1)
    assert orchestrator.watermarks.get(EntityType.COMPANY).last_sync_at == T0


def test_failed_type_keeps_its_watermark(db, orchestrator, clock, monkeypatch):
    _settle_watermarks(orchestrator, T0 - timedelta(hours=1))
    real_detect = orchestrator.detector.detect_changes

    def flaky(entity_type):
        if entity_type == EntityType.COMPANY:
            raise RuntimeError("store read failed")
        return real_detect(entity_type)

    monkeypatch.setattr(orchestrator.detector, "detect_changes", flaky)

    run = orchestrator.run_change_detection()

    assert run["status"] == "partial"
    assert run["by_entity_type"]["COMPANY"]["status"] == "failed"
    company = orchestrator.watermarks.get(EntityType.COMPANY)
    assert company.last_sync_at == T0 - timedelta(hours=1)
    assert company.error_count == 1
    assert "store read failed" in company.last_error_message
    assert orchestrator.watermarks.get(EntityType.INVOICE).last_sync_at == T0


def test_queue_errors_hold_back_the_watermark(db, orchestrator, clock, monkeypatch):
    seed_invoice_graph(db, now=T0 - timedelta(hours=1))
    real_add = orchestrator.queue._add

    def failing_add(entity_type, *args):
        if entity_type == EntityType.CONTACT:
            raise RuntimeError("queue insert failed")
        return real_add(entity_type, *args)

    monkeypatch.setattr(orchestrator.queue, "_add", failing_add)

    run = orchestrator.run_change_detection()

    assert run["status"] == "partial"
    assert run["by_entity_type"]["CONTACT"]["status"] == "partial"
    contact = orchestrator.watermarks.get(EntityType.CONTACT)
    assert contact.last_sync_at is None
    assert contact.error_count == 2
    assert "2 queue errors" in contact.last_error_message
    assert orchestrator.watermarks.get(EntityType.INVOICE).last_sync_at == T0

    monkeypatch.undo()
    clock.advance(minutes=15)
    again = orchestrator.run_change_detection()

    assert again["status"] == "success"
    contacts = orchestrator.queue.get_pending_entries(entity_type=EntityType.CONTACT)
    assert {"hs-c-1", "hs-c-2"} <= {e.external_id for e in contacts}
    assert orchestrator.watermarks.get(EntityType.CONTACT).last_sync_at == T0 + timedelta(minutes=15)


def test_ingestion_errors_make_the_run_partial(db, target, clock):
    class BrokenInvoiceSource(FakeSource):
        def get_line_items_for_invoice(self, invoice_id):
            raise RuntimeError("line item fetch failed")

    source = BrokenInvoiceSource()
    source.add(EntityType.INVOICE, "701", {"hs_invoice_number": "INV-701"}, T0 - timedelta(days=1))
    cfg = Config(raw={"sync": {"batch_delay_seconds": 0, "transfer_delay_seconds": 0}})
    orchestrator = SyncOrchestrator(cfg, db, source=source, target=target, clock=clock)
    orchestrator.watermarks.record_run(EntityType.INVOICE, T0 - timedelta(days=2), entity_count=0)

    run = orchestrator.run_change_detection()

    assert run["status"] == "partial"
    assert run["ingestion"]["INVOICE"]["errors"] == 1
    invoice = orchestrator.watermarks.get(EntityType.INVOICE)
    assert invoice.last_sync_at == T0 - timedelta(days=2)
    assert invoice.error_count == 1


def test_cancelled_run_leaves_watermarks_alone(db, orchestrator):
    seed_invoice_graph(db)
    stop = threading.Event()
    stop.set()

    run = orchestrator.run_change_detection(stop_event=stop)

    assert run["status"] == "cancelled"
    assert all(w is None for w in orchestrator.watermarks.get_all().values())
    assert orchestrator.queue.get_pending_entries() == []


def test_detection_is_single_flight(orchestrator):
    assert sync_engine._detection_lock.acquire(blocking=False)
    try:
        assert orchestrator.run_change_detection()["status"] == "skipped"
        assert orchestrator.get_sync_status()["sync_in_progress"]["change_detection"] is True
    finally:
        sync_engine._detection_lock.release()


def test_transfers_are_single_flight(orchestrator):
    with sync_engine._transfer_lock:
        assert orchestrator.run_transfers()["status"] == "skipped"


def test_transfers_require_a_target(config, db):
    orchestrator = SyncOrchestrator(config, db)

    assert orchestrator.run_transfers()["status"] == "error"


def test_transfer_run_requeues_due_retries(db, orchestrator, target, clock):
    seed_invoice_graph(db)
    orchestrator.run_change_detection()
    entry = orchestrator.queue.get_pending_entries(entity_type=EntityType.COMPANY)[0]
    orchestrator.queue.approve_entry(entry.id, "alice")
    target.failures["hs-co-1"] = RuntimeError("connection reset")
    orchestrator.run_transfers()

    del target.failures["hs-co-1"]
    clock.advance(minutes=5)
    run = orchestrator.run_transfers()

    assert run["requeued"] == 1
    assert orchestrator.queue.get_entry(entry.id).status == QueueStatus.TRANSFERRED


def test_transfer_run_reports_partial_failure(db, orchestrator, target):
    for hubspot_id in ("hs-ok", "hs-bad"):
        db.upsert_entity(EntityType.CONTACT, hubspot_id, {"email": f"{hubspot_id}@example.com"})
    orchestrator.run_change_detection()
    for entry in orchestrator.queue.get_pending_entries():
        orchestrator.queue.approve_entry(entry.id, "alice")
    target.failures["hs-bad"] = RuntimeError("connection reset")

    run = orchestrator.run_transfers()

    assert run["status"] == "partial"
    assert (run["successful"], run["failed"]) == (1, 1)


def test_transfer_run_reports_total_failure(db, orchestrator, target):
    db.upsert_entity(EntityType.CONTACT, "hs-bad", {"email": "bad@example.com"})
    orchestrator.run_change_detection()
    entry = orchestrator.queue.get_pending_entries()[0]
    orchestrator.queue.approve_entry(entry.id, "alice")
    target.failures["hs-bad"] = RuntimeError("connection reset")

    run = orchestrator.run_transfers()

    assert run["status"] == "failed"
    assert (run["successful"], run["failed"]) == (0, 1)


def test_check_connections(config, db, target):
    assert SyncOrchestrator(config, db).check_connections() == {"hubspot": None, "quickbooks": None}
    assert SyncOrchestrator(config, db, source=FakeSource(), target=target).check_connections() == {
        "hubspot": True, "quickbooks": True}


def test_ingestion_feeds_detection(db, target, clock):
    source = FakeSource()
    old = T0 - timedelta(days=3)
    source.add(EntityType.CONTACT, "501", {"email": "x@example.com"}, old)
    source.add(EntityType.COMPANY, "601", {"name": "Xco"}, old)
    source.add(EntityType.INVOICE, "701", {"hs_invoice_number": "INV-701"}, old)
    source.line_items["701"] = [{"id": "801", "properties": {"name": "Thing", "amount": "10"},
                                 "updatedAt": to_iso(old)}]
    source.associations["701"] = {"contacts": [{"id": "501", "primary": True}],
                                  "companies": [{"id": "601", "primary": True}]}
    cfg = Config(raw={"sync": {"batch_delay_seconds": 0, "transfer_delay_seconds": 0,
                               "detect_deletions": True}})
    orchestrator = SyncOrchestrator(cfg, db, source=source, target=target, clock=clock)

    run = orchestrator.run_change_detection()

    assert run["status"] == "success"
    assert run["ingestion"]["INVOICE"] == {"fetched": 1, "stored": 1, "errors": 0}
    assert run["changes_detected"] == 4
    invoice = db.get_entity_by_hubspot_id(EntityType.INVOICE, "701")
    assert len(db.get_associations_for_invoice(invoice["id"])) == 2

    clock.advance(minutes=15)
    source.objects[EntityType.COMPANY] = []
    source.objects[EntityType.CONTACT] = []
    again = orchestrator.run_change_detection()

    assert again["changes_detected"] == 0
    assert again["ingestion"]["CONTACT"]["fetched"] == 0


def test_sync_status_and_housekeeping(db, orchestrator, clock):
    status = orchestrator.get_sync_status()
    assert status["entity_types"]["CONTACT"] == {"never_synced": True}
    assert status["sync_in_progress"] == {"change_detection": False, "transfers": False}

    orchestrator.run_change_detection()
    status = orchestrator.get_sync_status()
    assert status["entity_types"]["INVOICE"]["last_sync_at"] == "2024-03-01T09:00:00.000000+00:00"

    assert orchestrator.run_housekeeping() == {"transferred_removed": 0, "queue_entries_removed": 0}


# --- Configuration ---

def test_config_defaults_and_overrides():
    cfg = Config(raw={"sync": {"batch_size": 25}})

    assert cfg.setting("batch_size") == 25
    assert cfg.setting("max_transfer_entries") == 50
    assert cfg.setting("target_system") == "QUICKBOOKS"
    assert cfg.validate() == []


def test_config_validation_errors():
    cfg = Config(raw={
        "sync": {"batch_size": 0, "transfer_delay_seconds": -1, "colour": "blue"},
        "quickbooks": {"access_token": "abc"},
    })

    errors = cfg.validate()

    assert "Unknown setting: sync.colour" in errors
    assert "sync.batch_size must be a positive integer" in errors
    assert "sync.transfer_delay_seconds must be a non-negative number" in errors
    assert "Missing quickbooks.realm_id" in errors


def test_load_config_reads_yaml_and_environment(tmp_path, monkeypatch):
    path = tmp_path / "config.yaml"
    path.write_text("environment: production\nsync:\n  batch_size: 5\n", encoding="utf-8")
    monkeypatch.setenv("HUBSPOT_ACCESS_TOKEN", "pat-123")
    monkeypatch.delenv("QUICKBOOKS_ACCESS_TOKEN", raising=False)
    monkeypatch.delenv("QUICKBOOKS_REALM_ID", raising=False)

    cfg = load_config(str(path))

    assert cfg.environment == "production"
    assert cfg.setting("batch_size") == 5
    assert cfg.hubspot["access_token"] == "pat-123"


def test_load_config_rejects_invalid_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("sync:\n  batch_size: -3\n", encoding="utf-8")

    with pytest.raises(ValueError, match="batch_size"):
        load_config(str(path))


def test_build_orchestrator_without_credentials(tmp_path, monkeypatch):
    for name in ("HUBSPOT_ACCESS_TOKEN", "QUICKBOOKS_ACCESS_TOKEN", "QUICKBOOKS_REALM_ID"):
        monkeypatch.delenv(name, raising=False)
    cfg = Config(raw={"database": {"path": str(tmp_path / "cli.db")}})

    orchestrator = sync_engine.build_orchestrator(cfg)

    assert orchestrator.source is None
    assert orchestrator.executor is None


def test_cli_status_command(tmp_path, monkeypatch, capsys):
    monkeypatch.chdir(tmp_path)
    for name in ("HUBSPOT_ACCESS_TOKEN", "QUICKBOOKS_ACCESS_TOKEN", "QUICKBOOKS_REALM_ID"):
        monkeypatch.delenv(name, raising=False)

    assert sync_engine.main(["status"]) == 0
    assert '"sync_in_progress"' in capsys.readouterr().out


def test_run_start_comes_from_injected_clock(db, target):
    fixed = datetime(2030, 1, 1, tzinfo=timezone.utc)
    orchestrator = SyncOrchestrator(Config(raw={}), db, target=target, clock=lambda: fixed)

    run = orchestrator.run_change_detection()

    assert run["started_at"] == "2030-01-01T00:00:00.000000+00:00"
    assert orchestrator.watermarks.get(EntityType.LINE_ITEM).last_sync_at == fixed
