"""
Shared fixtures: temporary SQLite store, controllable clock and fake
HubSpot / QuickBooks adapters
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from database import BridgeDB
from models import ChangeKind, EntityChange, EntityType, parse_ts, to_iso
from sync_engine import Config, SyncOrchestrator
from transfer_queue import TransferQueue
from watermarks import WatermarkStore


T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeSource:
    """In-memory HubSpot: objects are {"id", "properties", "updatedAt"}"""

    def __init__(self):
        self.objects: Dict[EntityType, List[Dict[str, Any]]] = {et: [] for et in EntityType}
        self.line_items: Dict[str, List[Dict[str, Any]]] = {}
        self.associations: Dict[str, Dict[str, List[Dict[str, Any]]]] = {}

    def add(self, entity_type: EntityType, obj_id: str, properties: Dict[str, Any],
            updated_at: datetime) -> Dict[str, Any]:
        obj = {"id": obj_id, "properties": properties, "updatedAt": to_iso(updated_at)}
        self.objects[entity_type].append(obj)
        return obj

    def get_modified_since(self, entity_type: EntityType, since: datetime) -> List[Dict[str, Any]]:
        return [o for o in self.objects[entity_type] if parse_ts(o["updatedAt"]) >= since]

    def get_all(self, entity_type: EntityType) -> List[Dict[str, Any]]:
        return list(self.objects[entity_type])

    def get_line_items_for_invoice(self, invoice_id: str) -> List[Dict[str, Any]]:
        return self.line_items.get(invoice_id, [])

    def get_invoice_associations(self, invoice_id: str) -> Dict[str, List[Dict[str, Any]]]:
        return self.associations.get(invoice_id, {"contacts": [], "companies": []})

    def test_connection(self) -> bool:
        return True


class FakeTarget:
    """In-memory QuickBooks; `failures` maps external_id -> exception to raise"""

    def __init__(self):
        self.writes: List[Any] = []
        self.failures: Dict[str, Exception] = {}

    def write_entity(self, entry) -> Dict[str, Any]:
        self.writes.append(entry)
        if entry.external_id in self.failures:
            raise self.failures[entry.external_id]
        return {"external_id": f"QB-{entry.external_id}", "details": {"action": entry.action_type.value}}

    def test_connection(self) -> bool:
        return not self.failures


@pytest.fixture
def db(tmp_path):
    return BridgeDB(str(tmp_path / "bridge.db"))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def queue(db, clock):
    return TransferQueue(db, clock=clock)


@pytest.fixture
def watermarks(db):
    return WatermarkStore(db)


@pytest.fixture
def source():
    return FakeSource()


@pytest.fixture
def target():
    return FakeTarget()


@pytest.fixture
def config():
    return Config(raw={"sync": {"batch_delay_seconds": 0, "transfer_delay_seconds": 0}})


@pytest.fixture
def orchestrator(config, db, target, clock):
    return SyncOrchestrator(config, db, source=None, target=target, clock=clock)


def seed_invoice_graph(db: BridgeDB, now: datetime = T0, with_tax: bool = True) -> None:
    """c-1 (primary contact) and co-1 (primary company) on inv-1, which holds li-1 and li-2"""
    db.upsert_entity(EntityType.CONTACT, "hs-c-1",
                     {"email": "ada@example.com", "first_name": "Ada", "last_name": "Lovelace"},
                     entity_id="c-1", now=now)
    db.upsert_entity(EntityType.CONTACT, "hs-c-2", {"email": "bob@example.com"},
                     entity_id="c-2", now=now)
    db.upsert_entity(EntityType.COMPANY, "hs-co-1", {"name": "Analytical Engines Ltd"},
                     entity_id="co-1", now=now)
    db.upsert_entity(EntityType.INVOICE, "hs-inv-1",
                     {"invoice_number": "INV-001", "amount": 200.0, "currency": "USD"},
                     entity_id="inv-1", now=now)
    db.upsert_entity(EntityType.LINE_ITEM, "hs-li-1",
                     {"invoice_id": "inv-1", "product_name": "Consulting", "amount": 120.0},
                     entity_id="li-1", now=now)
    db.upsert_entity(EntityType.LINE_ITEM, "hs-li-2",
                     {"invoice_id": "inv-1", "product_name": "Support", "amount": 80.0},
                     entity_id="li-2", now=now + timedelta(seconds=1))
    db.replace_invoice_associations("inv-1", [
        {"contact_id": "c-1", "is_primary_contact": True},
        {"contact_id": "c-2", "is_primary_contact": False},
        {"company_id": "co-1", "is_primary_company": True},
    ])
    if with_tax:
        db.upsert_tax_summary("inv-1", "USD", 200.0, 20.0, 220.0,
                              [{"label": "VAT", "amount": 20.0, "rate": 10.0}])


def make_change(db: BridgeDB, entity_type: EntityType, hubspot_id: str,
                kind: ChangeKind = ChangeKind.UPDATED, now: datetime = T0,
                fields: Optional[Dict[str, Any]] = None) -> EntityChange:
    """Store an entity and describe it as a detected change"""
    entity_id = db.upsert_entity(entity_type, hubspot_id, fields or {}, now=now)
    return EntityChange(entity_type, entity_id, hubspot_id, kind, now,
                        snapshot=db.get_entity(entity_type, entity_id))
