"""
HubSpot/QuickBooks Bridge Database Abstraction Layer
Supports both SQLite (local development) and PostgreSQL (Vercel/production)
"""

import os
import json
import uuid
import sqlite3
import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple
from abc import ABC, abstractmethod

from models import EntityType, to_iso, utc_now

logger = logging.getLogger(__name__)

# Check if we're on Vercel (PostgreSQL) or local (SQLite)
IS_VERCEL = os.environ.get('VERCEL') == '1' or os.environ.get('POSTGRES_URL') is not None
DATABASE_URL = os.environ.get('POSTGRES_URL') or os.environ.get('DATABASE_URL')


ENTITY_TABLES = {
    EntityType.CONTACT: "contacts",
    EntityType.COMPANY: "companies",
    EntityType.INVOICE: "invoices",
    EntityType.LINE_ITEM: "line_items",
}

# Business columns that may be written through upsert_entity
ENTITY_FIELDS = {
    EntityType.CONTACT: ("email", "first_name", "last_name", "phone", "city", "country"),
    EntityType.COMPANY: ("name", "domain", "city", "state", "zip", "country"),
    EntityType.INVOICE: ("invoice_number", "title", "status", "amount", "currency", "due_date"),
    EntityType.LINE_ITEM: ("invoice_id", "product_name", "quantity", "unit_price", "amount",
                           "currency", "tax_rate", "tax_amount"),
}

_ENTITY_COMMON = """
    hubspot_updated_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    last_sync_at TEXT,
    deleted INTEGER NOT NULL DEFAULT 0,
    raw_data TEXT
"""

# {pk} is replaced with the backend's auto-increment primary key declaration
SCHEMA_STATEMENTS = [
    f"""
    CREATE TABLE IF NOT EXISTS contacts (
        id TEXT PRIMARY KEY,
        hubspot_id TEXT UNIQUE NOT NULL,
        email TEXT,
        first_name TEXT,
        last_name TEXT,
        phone TEXT,
        city TEXT,
        country TEXT,
        {_ENTITY_COMMON}
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS companies (
        id TEXT PRIMARY KEY,
        hubspot_id TEXT UNIQUE NOT NULL,
        name TEXT,
        domain TEXT,
        city TEXT,
        state TEXT,
        zip TEXT,
        country TEXT,
        {_ENTITY_COMMON}
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS invoices (
        id TEXT PRIMARY KEY,
        hubspot_id TEXT UNIQUE NOT NULL,
        invoice_number TEXT,
        title TEXT,
        status TEXT,
        amount REAL,
        currency TEXT,
        due_date TEXT,
        {_ENTITY_COMMON}
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS line_items (
        id TEXT PRIMARY KEY,
        hubspot_id TEXT UNIQUE NOT NULL,
        invoice_id TEXT,
        product_name TEXT,
        quantity REAL,
        unit_price REAL,
        amount REAL,
        currency TEXT,
        tax_rate REAL,
        tax_amount REAL,
        {_ENTITY_COMMON}
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS invoice_associations (
        id {pk},
        invoice_id TEXT NOT NULL,
        contact_id TEXT,
        company_id TEXT,
        is_primary_contact INTEGER NOT NULL DEFAULT 0,
        is_primary_company INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tax_summaries (
        invoice_id TEXT PRIMARY KEY,
        currency TEXT,
        subtotal_before_tax REAL,
        total_tax_amount REAL,
        total_after_tax REAL,
        tax_breakdown TEXT,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sync_watermarks (
        entity_type TEXT PRIMARY KEY,
        last_sync_at TEXT,
        entity_count INTEGER NOT NULL DEFAULT 0,
        error_count INTEGER NOT NULL DEFAULT 0,
        last_error_message TEXT,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS transfer_queue (
        id {pk},
        entity_type TEXT NOT NULL,
        entity_id TEXT NOT NULL,
        external_id TEXT NOT NULL,
        target_system TEXT NOT NULL DEFAULT 'QUICKBOOKS',
        action_type TEXT NOT NULL,
        status TEXT NOT NULL,
        priority TEXT NOT NULL,
        trigger_reason TEXT,
        entity_data TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT,
        approved_by TEXT,
        approved_at TEXT,
        rejected_by TEXT,
        rejected_at TEXT,
        rejection_reason TEXT,
        validation_notes TEXT,
        retry_count INTEGER NOT NULL DEFAULT 0,
        next_retry_at TEXT,
        transferred_at TEXT,
        external_system_id TEXT,
        last_transfer_error TEXT,
        failure_kind TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_invoice_assoc_invoice ON invoice_associations(invoice_id)",
    "CREATE INDEX IF NOT EXISTS idx_invoice_assoc_contact ON invoice_associations(contact_id)",
    "CREATE INDEX IF NOT EXISTS idx_invoice_assoc_company ON invoice_associations(company_id)",
    "CREATE INDEX IF NOT EXISTS idx_line_items_invoice ON line_items(invoice_id)",
    "CREATE INDEX IF NOT EXISTS idx_transfer_queue_status ON transfer_queue(status)",
    """
    CREATE INDEX IF NOT EXISTS idx_transfer_queue_dedup
    ON transfer_queue(entity_type, external_id, target_system)
    """,
]


class DatabaseInterface(ABC):
    """Abstract base class for database operations"""

    # Auto-increment primary key declaration used by the shared schema
    pk_column = "INTEGER PRIMARY KEY AUTOINCREMENT"

    @abstractmethod
    def execute(self, query: str, params: tuple = ()) -> Any:
        pass

    @abstractmethod
    def fetchone(self, query: str, params: tuple = ()) -> Optional[Tuple]:
        pass

    @abstractmethod
    def fetchall(self, query: str, params: tuple = ()) -> List[Tuple]:
        pass

    @abstractmethod
    def commit(self) -> None:
        pass

    @abstractmethod
    def rollback(self) -> None:
        pass

    def fetchall_dicts(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        cur = self.execute(query, params)
        columns = [d[0] for d in cur.description]
        return [dict(zip(columns, row)) for row in cur.fetchall()]

    def init_schema(self) -> None:
        for statement in SCHEMA_STATEMENTS:
            self.execute(statement.replace("{pk}", self.pk_column))
        self.commit()


class SQLiteDatabase(DatabaseInterface):
    """SQLite implementation for local development"""

    def __init__(self, path: str = "bridge.db"):
        self.path = path
        self.conn = sqlite3.connect(path, check_same_thread=False)
        self.conn.execute("PRAGMA journal_mode=WAL;")
        self.conn.execute("PRAGMA foreign_keys=ON;")
        self.init_schema()

    def execute(self, query: str, params: tuple = ()) -> Any:
        return self.conn.execute(query, params)

    def fetchone(self, query: str, params: tuple = ()) -> Optional[Tuple]:
        return self.conn.execute(query, params).fetchone()

    def fetchall(self, query: str, params: tuple = ()) -> List[Tuple]:
        return self.conn.execute(query, params).fetchall()

    def commit(self) -> None:
        self.conn.commit()

    def rollback(self) -> None:
        self.conn.rollback()

    def insert_returning_id(self, query: str, params: tuple = ()) -> int:
        return self.conn.execute(query, params).lastrowid


class PostgreSQLDatabase(DatabaseInterface):
    """PostgreSQL implementation for Vercel/production"""

    pk_column = "SERIAL PRIMARY KEY"

    def __init__(self, database_url: str = None):
        import psycopg2

        self.database_url = database_url or DATABASE_URL
        if not self.database_url:
            raise ValueError("No PostgreSQL database URL provided. Set POSTGRES_URL environment variable.")

        self.conn = psycopg2.connect(self.database_url)
        self.conn.autocommit = False
        self.init_schema()

    def execute(self, query: str, params: tuple = ()) -> Any:
        # Convert SQLite-style ? placeholders to PostgreSQL-style %s
        query = self._convert_placeholders(query)
        cur = self.conn.cursor()
        cur.execute(query, params)
        return cur

    def fetchone(self, query: str, params: tuple = ()) -> Optional[Tuple]:
        return self.execute(query, params).fetchone()

    def fetchall(self, query: str, params: tuple = ()) -> List[Tuple]:
        return self.execute(query, params).fetchall()

    def commit(self) -> None:
        self.conn.commit()

    def rollback(self) -> None:
        self.conn.rollback()

    def insert_returning_id(self, query: str, params: tuple = ()) -> int:
        # PostgreSQL returns the ID via RETURNING clause
        cur = self.execute(query.rstrip() + " RETURNING id", params)
        result = cur.fetchone()
        return result[0] if result else None

    def _convert_placeholders(self, query: str) -> str:
        """Convert SQLite ? placeholders to PostgreSQL %s"""
        return query.replace('?', '%s')


class BridgeDB:
    """
    Local mirror of the source CRM plus the bridge's own bookkeeping tables.
    Automatically selects the appropriate backend based on environment.

    All access goes through one re-entrant lock, so worker threads share a
    single connection safely and transaction() blocks are serialised.
    """

    def __init__(self, path: str = "bridge.db", database_url: Optional[str] = None):
        url = database_url or (DATABASE_URL if IS_VERCEL else None)
        self.is_postgres = bool(url)
        self._lock = threading.RLock()
        self._tx_depth = 0

        if self.is_postgres:
            logger.info("🐘 Using PostgreSQL database (Vercel mode)")
            self._db = PostgreSQLDatabase(url)
        else:
            logger.info(f"📁 Using SQLite database: {path}")
            self._db = SQLiteDatabase(path)
            self.path = path

    def execute(self, query: str, params: tuple = ()) -> Any:
        with self._lock:
            return self._db.execute(query, params)

    def fetchone(self, query: str, params: tuple = ()) -> Optional[Tuple]:
        with self._lock:
            return self._db.fetchone(query, params)

    def fetchall(self, query: str, params: tuple = ()) -> List[Tuple]:
        with self._lock:
            return self._db.fetchall(query, params)

    def fetchall_dicts(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        with self._lock:
            return self._db.fetchall_dicts(query, params)

    def fetchone_dict(self, query: str, params: tuple = ()) -> Optional[Dict[str, Any]]:
        rows = self.fetchall_dicts(query, params)
        return rows[0] if rows else None

    def insert_returning_id(self, query: str, params: tuple = ()) -> int:
        with self._lock:
            return self._db.insert_returning_id(query, params)

    def commit(self) -> None:
        # Inside transaction() the outermost block commits
        with self._lock:
            if self._tx_depth == 0:
                self._db.commit()

    @contextmanager
    def transaction(self) -> Iterator["BridgeDB"]:
        with self._lock:
            self._tx_depth += 1
            try:
                yield self
            except Exception:
                self._tx_depth -= 1
                if self._tx_depth == 0:
                    self._db.rollback()
                raise
            else:
                self._tx_depth -= 1
                if self._tx_depth == 0:
                    self._db.commit()

    # ============================================
    # ENTITY STORE
    # ============================================

    def upsert_entity(self, entity_type: EntityType, hubspot_id: str, fields: Dict[str, Any],
                      hubspot_updated_at: Optional[datetime] = None,
                      raw_data: Optional[Dict[str, Any]] = None,
                      entity_id: Optional[str] = None,
                      now: Optional[datetime] = None) -> str:
        """Insert or update a mirrored entity keyed by its HubSpot id; returns the internal id"""
        table = ENTITY_TABLES[entity_type]
        values = {k: fields[k] for k in ENTITY_FIELDS[entity_type] if k in fields}
        stamp = to_iso(now or utc_now())
        raw = json.dumps(raw_data, default=str) if raw_data is not None else None

        with self.transaction():
            row = self.fetchone(f"SELECT id FROM {table} WHERE hubspot_id = ?", (hubspot_id,))
            if row:
                entity_id = row[0]
                columns = list(values) + ["hubspot_updated_at", "raw_data", "updated_at",
                                          "last_sync_at", "deleted"]
                params = list(values.values()) + [to_iso(hubspot_updated_at), raw, stamp, stamp, 0]
                assignments = ", ".join(f"{c} = ?" for c in columns)
                self.execute(f"UPDATE {table} SET {assignments} WHERE id = ?",
                             tuple(params) + (entity_id,))
            else:
                entity_id = entity_id or uuid.uuid4().hex
                columns = ["id", "hubspot_id"] + list(values) + [
                    "hubspot_updated_at", "raw_data", "created_at", "updated_at", "last_sync_at"]
                params = [entity_id, hubspot_id] + list(values.values()) + [
                    to_iso(hubspot_updated_at), raw, stamp, stamp, stamp]
                placeholders = ", ".join("?" for _ in columns)
                self.execute(f"INSERT INTO {table}({', '.join(columns)}) VALUES({placeholders})",
                             tuple(params))
        return entity_id

    def get_entity(self, entity_type: EntityType, entity_id: str) -> Optional[Dict[str, Any]]:
        row = self.fetchone_dict(f"SELECT * FROM {ENTITY_TABLES[entity_type]} WHERE id = ?",
                                 (entity_id,))
        return _decode_entity(row) if row else None

    def get_entity_by_hubspot_id(self, entity_type: EntityType, hubspot_id: str) -> Optional[Dict[str, Any]]:
        row = self.fetchone_dict(f"SELECT * FROM {ENTITY_TABLES[entity_type]} WHERE hubspot_id = ?",
                                 (hubspot_id,))
        return _decode_entity(row) if row else None

    def list_entities(self, entity_type: EntityType, include_deleted: bool = False) -> List[Dict[str, Any]]:
        query = f"SELECT * FROM {ENTITY_TABLES[entity_type]}"
        if not include_deleted:
            query += " WHERE deleted = 0"
        query += " ORDER BY created_at, id"
        return [_decode_entity(r) for r in self.fetchall_dicts(query)]

    def list_hubspot_ids(self, entity_type: EntityType) -> Dict[str, str]:
        """Map of HubSpot id -> internal id for live rows"""
        rows = self.fetchall(
            f"SELECT hubspot_id, id FROM {ENTITY_TABLES[entity_type]} WHERE deleted = 0")
        return {r[0]: r[1] for r in rows}

    def mark_entity_deleted(self, entity_type: EntityType, entity_id: str,
                            now: Optional[datetime] = None) -> None:
        stamp = to_iso(now or utc_now())
        self.execute(f"""
            UPDATE {ENTITY_TABLES[entity_type]}
            SET deleted = 1, updated_at = ?, hubspot_updated_at = ?
            WHERE id = ?
        """, (stamp, stamp, entity_id))
        self.commit()

    # ============================================
    # ASSOCIATIONS & TAX SUMMARIES
    # ============================================

    def add_invoice_association(self, invoice_id: str, contact_id: Optional[str] = None,
                                company_id: Optional[str] = None,
                                is_primary_contact: bool = False,
                                is_primary_company: bool = False) -> int:
        assoc_id = self.insert_returning_id("""
            INSERT INTO invoice_associations(invoice_id, contact_id, company_id,
                                             is_primary_contact, is_primary_company, created_at)
            VALUES(?, ?, ?, ?, ?, ?)
        """, (invoice_id, contact_id, company_id, 1 if is_primary_contact else 0,
              1 if is_primary_company else 0, to_iso(utc_now())))
        self.commit()
        return assoc_id

    def replace_invoice_associations(self, invoice_id: str, associations: Iterable[Dict[str, Any]]) -> None:
        """Swap the whole association set of an invoice in one transaction"""
        with self.transaction():
            self.execute("DELETE FROM invoice_associations WHERE invoice_id = ?", (invoice_id,))
            for assoc in associations:
                self.add_invoice_association(
                    invoice_id,
                    contact_id=assoc.get("contact_id"),
                    company_id=assoc.get("company_id"),
                    is_primary_contact=assoc.get("is_primary_contact", False),
                    is_primary_company=assoc.get("is_primary_company", False),
                )

    def get_associations_for_invoice(self, invoice_id: str) -> List[Dict[str, Any]]:
        return self.fetchall_dicts("""
            SELECT * FROM invoice_associations WHERE invoice_id = ? ORDER BY id
        """, (invoice_id,))

    def get_associations_for_contact(self, contact_id: str) -> List[Dict[str, Any]]:
        return self.fetchall_dicts("""
            SELECT * FROM invoice_associations WHERE contact_id = ? ORDER BY id
        """, (contact_id,))

    def get_associations_for_company(self, company_id: str) -> List[Dict[str, Any]]:
        return self.fetchall_dicts("""
            SELECT * FROM invoice_associations WHERE company_id = ? ORDER BY id
        """, (company_id,))

    def get_line_items_for_invoice(self, invoice_id: str) -> List[Dict[str, Any]]:
        rows = self.fetchall_dicts("""
            SELECT * FROM line_items
            WHERE invoice_id = ? AND deleted = 0
            ORDER BY created_at, id
        """, (invoice_id,))
        return [_decode_entity(r) for r in rows]

    def detach_line_items(self, invoice_id: str, keep_hubspot_ids: Iterable[str],
                          now: Optional[datetime] = None) -> int:
        """Unlink and tombstone an invoice's line items that are no longer on it"""
        keep = set(keep_hubspot_ids)
        stamp = to_iso(now or utc_now())
        detached = 0
        with self.transaction():
            for row in self.get_line_items_for_invoice(invoice_id):
                if row["hubspot_id"] in keep:
                    continue
                self.execute("""
                    UPDATE line_items
                    SET invoice_id = NULL, deleted = 1, updated_at = ?, hubspot_updated_at = ?
                    WHERE id = ?
                """, (stamp, stamp, row["id"]))
                detached += 1
        return detached

    def get_tax_summary(self, invoice_id: str) -> Optional[Dict[str, Any]]:
        row = self.fetchone_dict("SELECT * FROM tax_summaries WHERE invoice_id = ?", (invoice_id,))
        if row and row.get("tax_breakdown"):
            row["tax_breakdown"] = json.loads(row["tax_breakdown"])
        return row

    def upsert_tax_summary(self, invoice_id: str, currency: Optional[str],
                           subtotal_before_tax: float, total_tax_amount: float,
                           total_after_tax: float,
                           tax_breakdown: Optional[List[Dict[str, Any]]] = None) -> None:
        self.execute("""
            INSERT INTO tax_summaries(invoice_id, currency, subtotal_before_tax,
                                      total_tax_amount, total_after_tax, tax_breakdown, updated_at)
            VALUES(?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(invoice_id) DO UPDATE SET
                currency = excluded.currency,
                subtotal_before_tax = excluded.subtotal_before_tax,
                total_tax_amount = excluded.total_tax_amount,
                total_after_tax = excluded.total_after_tax,
                tax_breakdown = excluded.tax_breakdown,
                updated_at = excluded.updated_at
        """, (invoice_id, currency, subtotal_before_tax, total_tax_amount, total_after_tax,
              json.dumps(tax_breakdown or []), to_iso(utc_now())))
        self.commit()

    def delete_tax_summary(self, invoice_id: str) -> None:
        self.execute("DELETE FROM tax_summaries WHERE invoice_id = ?", (invoice_id,))
        self.commit()


def _decode_entity(row: Dict[str, Any]) -> Dict[str, Any]:
    if row.get("raw_data"):
        row["raw_data"] = json.loads(row["raw_data"])
    row["deleted"] = bool(row.get("deleted"))
    return row
