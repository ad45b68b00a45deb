"""
HubSpot -> QuickBooks Sync Engine
Runs change detection, cascade analysis and queueing on a schedule, and
drains operator-approved queue entries into QuickBooks.
"""

import argparse
import json
import os
import sys
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
import logging

import yaml

# Import the database abstraction layer (supports both SQLite and PostgreSQL)
from database import BridgeDB, IS_VERCEL
from cascade_analyzer import CascadeImpactAnalyzer
from change_detector import ChangeDetector
from models import EPOCH_SENTINEL, DEFAULT_TARGET_SYSTEM, EntityType, to_iso, utc_now
from transfer_executor import TransferExecutor
from transfer_queue import TransferQueue
from watermarks import WatermarkStore

# Single-flight guards; a second caller skips instead of waiting
_detection_lock = threading.Lock()
_transfer_lock = threading.Lock()

MAX_DETECTION_WORKERS = 4

# Roots first so invoice associations resolve against mirrored contacts/companies
INGEST_ORDER = [EntityType.CONTACT, EntityType.COMPANY, EntityType.INVOICE, EntityType.LINE_ITEM]


# --- Enhanced Logging ---
def setup_logging():
    """Configure logging (console-only on Vercel due to read-only filesystem)"""
    log_format = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

    handlers = [logging.StreamHandler(sys.stdout)]

    # Only add file logging if not on Vercel (read-only filesystem)
    if not IS_VERCEL:
        try:
            if not os.path.exists('logs'):
                os.makedirs('logs')
            handlers.append(logging.FileHandler('logs/bridge_sync.log', encoding='utf-8'))
        except OSError:
            pass  # Skip file logging if directory creation fails

    logging.basicConfig(
        level=logging.INFO,
        format=log_format,
        handlers=handlers
    )
    return logging.getLogger(__name__)


logger = setup_logging()


# --- Configuration Management ---
SYNC_DEFAULTS: Dict[str, Any] = {
    "batch_size": 10,
    "batch_delay_seconds": 0.5,
    "detect_deletions": False,
    "ingest_from_source": True,
    "max_transfer_entries": 50,
    "transfer_delay_seconds": 1.0,
    "queue_retention_days": 30,
    "transferred_retention_days": 7,
    "change_detection_interval_minutes": 15,
    "transfer_interval_minutes": 5,
    "request_timeout_seconds": 30,
    "target_system": DEFAULT_TARGET_SYSTEM,
}

_POSITIVE_INTS = ("batch_size", "max_transfer_entries", "queue_retention_days",
                  "transferred_retention_days", "change_detection_interval_minutes",
                  "transfer_interval_minutes")
_NON_NEGATIVE = ("batch_delay_seconds", "transfer_delay_seconds")


@dataclass
class Config:
    """Bridge configuration with validation"""
    raw: Dict[str, Any]

    @property
    def hubspot(self) -> Dict[str, Any]:
        return self.raw.get("hubspot") or {}

    @property
    def quickbooks(self) -> Dict[str, Any]:
        return self.raw.get("quickbooks") or {}

    @property
    def sync(self) -> Dict[str, Any]:
        return dict(SYNC_DEFAULTS, **(self.raw.get("sync") or {}))

    @property
    def environment(self) -> str:
        return self.raw.get("environment", "development")

    @property
    def database_path(self) -> str:
        return (self.raw.get("database") or {}).get("path", "bridge.db")

    def setting(self, key: str) -> Any:
        return self.sync[key]

    def validate(self) -> List[str]:
        """Validate configuration"""
        errors = []
        sync = self.sync

        unknown = set(self.raw.get("sync") or {}) - set(SYNC_DEFAULTS)
        for key in sorted(unknown):
            errors.append(f"Unknown setting: sync.{key}")

        for key in _POSITIVE_INTS:
            value = sync[key]
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                errors.append(f"sync.{key} must be a positive integer")
        for key in _NON_NEGATIVE:
            value = sync[key]
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
                errors.append(f"sync.{key} must be a non-negative number")
        timeout = sync["request_timeout_seconds"]
        if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
            errors.append("sync.request_timeout_seconds must be positive")
        if not isinstance(sync["target_system"], str) or not sync["target_system"].strip():
            errors.append("sync.target_system must be a non-empty string")

        qb = self.quickbooks
        if qb.get("access_token") and not qb.get("realm_id"):
            errors.append("Missing quickbooks.realm_id")

        return errors


def _apply_env_overrides(raw: Dict[str, Any]) -> None:
    """Environment variables take precedence over the file"""
    overrides = [
        ("HUBSPOT_ACCESS_TOKEN", "hubspot", "access_token"),
        ("QUICKBOOKS_ACCESS_TOKEN", "quickbooks", "access_token"),
        ("QUICKBOOKS_REALM_ID", "quickbooks", "realm_id"),
    ]
    for env_name, section, key in overrides:
        value = os.environ.get(env_name)
        if value:
            raw.setdefault(section, {})
            if raw[section] is None:
                raw[section] = {}
            raw[section][key] = value


def load_config(path: Optional[str] = None) -> Config:
    """Load and validate configuration from YAML plus environment"""
    raw: Dict[str, Any] = {}
    if path:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
        if not isinstance(raw, dict):
            raise ValueError("Config YAML must be a mapping at the top level.")

    _apply_env_overrides(raw)
    config = Config(raw=raw)
    errors = config.validate()

    if errors:
        error_msg = "Configuration errors:\n" + "\n".join(f"  - {e}" for e in errors)
        logger.error(error_msg)
        raise ValueError(error_msg)

    logger.info(f"Configuration loaded from {path or 'environment'}")
    return config


def static_token(token: str) -> Callable[[], str]:
    """Token provider for a long-lived credential"""
    return lambda: token


# --- Orchestrator ---
class SyncOrchestrator:
    """Wires detector -> analyzer -> queue -> executor around one database"""

    def __init__(self, cfg: Config, db: BridgeDB, source=None, target=None,
                 clock: Callable[[], datetime] = utc_now):
        self.cfg = cfg
        self.db = db
        self.source = source
        self.target = target
        self.clock = clock

        self.watermarks = WatermarkStore(db)
        self.detector = ChangeDetector(db, self.watermarks, source,
                                       batch_size=cfg.setting("batch_size"),
                                       batch_delay_seconds=cfg.setting("batch_delay_seconds"))
        self.analyzer = CascadeImpactAnalyzer(db, self.detector)
        self.queue = TransferQueue(db, target_system=cfg.setting("target_system"), clock=clock)
        self.executor = None
        if target is not None:
            self.executor = TransferExecutor(db, self.queue, target,
                                             transfer_delay_seconds=cfg.setting("transfer_delay_seconds"),
                                             clock=clock)

    def run_change_detection(self, stop_event: Optional[threading.Event] = None) -> Dict[str, Any]:
        """
        Main change detection job: ingest, detect, expand, queue, then advance
        watermarks. Called by the scheduler or the cron endpoint.
        """
        if not _detection_lock.acquire(blocking=False):
            logger.warning("Change detection already in progress, skipping...")
            return {"status": "skipped", "message": "Change detection already in progress"}

        try:
            run_started = self.clock()
            logger.info("🔄 Starting change detection cycle...")
            results: Dict[str, Any] = {
                "status": "success",
                "started_at": to_iso(run_started),
                "changes_detected": 0,
                "by_entity_type": {},
            }
            failures: Dict[EntityType, str] = {}
            ingest_errors: Dict[EntityType, int] = {et: 0 for et in EntityType}

            # 1. Pull modified objects into the local mirror
            if self.cfg.setting("ingest_from_source") and self.source is not None:
                ingestion = {}
                for entity_type in INGEST_ORDER:
                    if stop_event is not None and stop_event.is_set():
                        break
                    try:
                        watermark = self.watermarks.get(entity_type)
                        since = (watermark.last_sync_at if watermark else None) or EPOCH_SENTINEL
                        outcome = self.detector.ingest_modified(entity_type, since, stop_event)
                        ingest_errors[entity_type] = outcome.error_count
                        ingestion[entity_type.value] = {"fetched": outcome.fetched,
                                                        "stored": outcome.stored,
                                                        "errors": outcome.error_count}
                    except Exception as e:
                        logger.error(f"Ingestion of {entity_type.value} failed: {e}")
                        failures[entity_type] = f"Ingestion failed: {e}"
                results["ingestion"] = ingestion

            # 2. Detect and expand per entity type
            outcomes: Dict[EntityType, Dict[str, Any]] = {}
            pending = [et for et in EntityType if et not in failures]
            with ThreadPoolExecutor(max_workers=min(MAX_DETECTION_WORKERS, len(pending) or 1)) as pool:
                futures = {pool.submit(self._detect_and_analyze, et, stop_event): et for et in pending}
                for future in as_completed(futures):
                    entity_type = futures[future]
                    try:
                        outcomes[entity_type] = future.result()
                    except Exception as e:
                        logger.error(f"Change detection for {entity_type.value} failed: {e}")
                        failures[entity_type] = str(e)

            if stop_event is not None and stop_event.is_set():
                logger.warning("Change detection cancelled; watermarks left unchanged")
                results["status"] = "cancelled"
                return results

            # 3. Queue in a stable order, independent of thread completion
            impacts = []
            for entity_type in EntityType:
                if entity_type in outcomes:
                    impacts.extend(outcomes[entity_type]["impacts"])
            enqueue_result = self.queue.enqueue(impacts)
            results["queue"] = asdict(enqueue_result)
            queue_errors: Dict[EntityType, int] = {et: 0 for et in EntityType}
            for error in enqueue_result.errors:
                queue_errors[EntityType(error["source_type"])] += 1

            # 4. Advance watermarks; a type with any lost change keeps its old one
            partial = False
            for entity_type in EntityType:
                errors = ingest_errors[entity_type] + queue_errors[entity_type]
                if entity_type in failures:
                    self.watermarks.record_run(entity_type, None, entity_count=0,
                                               error_count=errors + 1,
                                               error_message=failures[entity_type])
                    results["by_entity_type"][entity_type.value] = {
                        "status": "failed", "error": failures[entity_type]}
                    continue
                outcome = outcomes[entity_type]
                if errors:
                    partial = True
                    message = (f"{ingest_errors[entity_type]} ingestion errors, "
                               f"{queue_errors[entity_type]} queue errors")
                    self.watermarks.record_run(entity_type, None, entity_count=len(outcome["changes"]),
                                               error_count=errors, error_message=message)
                    logger.warning(f"{entity_type.value} watermark held back: {message}")
                else:
                    self.watermarks.record_run(entity_type, run_started,
                                               entity_count=len(outcome["changes"]))
                results["by_entity_type"][entity_type.value] = {
                    "status": "partial" if errors else "ok",
                    "changes": len(outcome["changes"]),
                    "impacts": sum(i.impacted_count for i in outcome["impacts"]),
                    "errors": errors,
                }
                results["changes_detected"] += len(outcome["changes"])

            if failures or partial:
                results["status"] = "partial"
            results["finished_at"] = to_iso(self.clock())
            logger.info(f"✓ Change detection complete: {results['changes_detected']} changes, "
                        f"{enqueue_result.new_entries + enqueue_result.cascade_entries_added} queued, "
                        f"{len(failures)} failed types")
            return results
        finally:
            _detection_lock.release()

    def _detect_and_analyze(self, entity_type: EntityType,
                            stop_event: Optional[threading.Event]) -> Dict[str, Any]:
        changes = self.detector.detect_changes(entity_type)
        if self.cfg.setting("detect_deletions") and self.source is not None:
            changes.extend(self.detector.detect_deletions(entity_type, stop_event))
        impacts = self.analyzer.analyze_all(changes)
        return {"changes": changes, "impacts": impacts}

    def run_transfers(self, max_entries: Optional[int] = None,
                      stop_event: Optional[threading.Event] = None) -> Dict[str, Any]:
        """Re-queue due retries, then push approved entries to QuickBooks"""
        if self.executor is None:
            return {"status": "error", "message": "QuickBooks target not configured"}
        if not _transfer_lock.acquire(blocking=False):
            logger.warning("Transfer run already in progress, skipping...")
            return {"status": "skipped", "message": "Transfer run already in progress"}

        try:
            requeued = self.queue.requeue_due_retries()
            result = self.executor.process_approved_entries(
                max_entries or self.cfg.setting("max_transfer_entries"), stop_event)
            status = "success"
            if result.failed:
                status = "partial" if result.successful else "failed"
            return {"status": status, "requeued": requeued, **asdict(result)}
        finally:
            _transfer_lock.release()

    def get_sync_status(self) -> Dict[str, Any]:
        entity_types = {}
        for entity_type, watermark in self.watermarks.get_all().items():
            if watermark is None:
                entity_types[entity_type.value] = {"never_synced": True}
                continue
            entity_types[entity_type.value] = {
                "never_synced": watermark.last_sync_at is None,
                "last_sync_at": to_iso(watermark.last_sync_at),
                "entity_count": watermark.entity_count,
                "error_count": watermark.error_count,
                "last_error_message": watermark.last_error_message,
                "updated_at": to_iso(watermark.updated_at),
            }
        return {
            "sync_in_progress": {
                "change_detection": _detection_lock.locked(),
                "transfers": _transfer_lock.locked(),
            },
            "entity_types": entity_types,
        }

    def check_connections(self) -> Dict[str, Optional[bool]]:
        """Probe each configured platform; None where no adapter is configured"""
        return {
            "hubspot": self.source.test_connection() if self.source is not None else None,
            "quickbooks": self.target.test_connection() if self.target is not None else None,
        }

    def run_housekeeping(self) -> Dict[str, int]:
        if self.executor is not None:
            transferred = self.executor.cleanup_successful_transfers(
                self.cfg.setting("transferred_retention_days"))
        else:
            transferred = 0
        removed = self.queue.cleanup_old_entries(self.cfg.setting("queue_retention_days"))
        return {"transferred_removed": transferred, "queue_entries_removed": removed}


def build_orchestrator(cfg: Config, db: Optional[BridgeDB] = None) -> SyncOrchestrator:
    """Construct the orchestrator and whichever platform adapters have credentials"""
    from hubspot_client import HubSpotClient
    from quickbooks_client import QuickBooksClient

    db = db or BridgeDB(cfg.database_path)
    timeout = cfg.setting("request_timeout_seconds")

    source = None
    if cfg.hubspot.get("access_token"):
        source = HubSpotClient(static_token(cfg.hubspot["access_token"]), timeout=timeout)
        logger.info("✓ HubSpot source adapter initialized")
    else:
        logger.warning("No HubSpot credentials; ingestion disabled")

    target = None
    qb = cfg.quickbooks
    if qb.get("access_token") and qb.get("realm_id"):
        target = QuickBooksClient(static_token(qb["access_token"]), str(qb["realm_id"]),
                                  sandbox=bool(qb.get("sandbox", False)), timeout=timeout,
                                  income_account_id=str(qb.get("income_account_id", "1")))
        logger.info("✓ QuickBooks target adapter initialized")
    else:
        logger.warning("No QuickBooks credentials; transfers disabled")

    return SyncOrchestrator(cfg, db, source, target)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="HubSpot -> QuickBooks bridge")
    parser.add_argument("--config", default="config.yaml", help="Path to config.yaml")
    parser.add_argument("command", choices=["detect", "transfer", "status", "housekeeping"])
    args = parser.parse_args(argv)

    cfg = load_config(args.config if os.path.exists(args.config) else None)
    orchestrator = build_orchestrator(cfg)

    if args.command == "detect":
        result = orchestrator.run_change_detection()
    elif args.command == "transfer":
        result = orchestrator.run_transfers()
    elif args.command == "status":
        result = orchestrator.get_sync_status()
    else:
        result = orchestrator.run_housekeeping()

    print(json.dumps(result, indent=2, default=str))
    return 0 if result.get("status", "success") in ("success", "skipped") else 1


if __name__ == "__main__":
    sys.exit(main())
