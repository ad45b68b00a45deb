"""
HubSpot -> QuickBooks Bridge
FastAPI operator surface: queue review and approval, transfer runs, sync status
and cron triggers.

Supports both local development (SQLite + APScheduler) and
Vercel deployment (PostgreSQL + Cron Jobs)
"""

import os
import asyncio
import logging
import threading
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from fastapi import Depends, FastAPI, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from database import IS_VERCEL
from errors import InvalidStateError, NotFoundError, ValidationError
from models import EntityType, to_iso
from sync_engine import SyncOrchestrator, build_orchestrator, load_config

logger = logging.getLogger(__name__)

VERSION = "1.0.0"
CONFIG_PATH = Path(os.environ.get("BRIDGE_CONFIG", Path(__file__).parent / "config.yaml"))


# Pydantic models
class HealthResponse(BaseModel):
    status: str
    timestamp: datetime
    version: str


class ApproveRequest(BaseModel):
    approved_by: str
    notes: Optional[str] = None


class RejectRequest(BaseModel):
    rejected_by: str
    reason: str = ""
    notes: Optional[str] = None


class BulkApproveRequest(BaseModel):
    ids: List[int]
    approved_by: str
    notes: Optional[str] = None


class TransferRequest(BaseModel):
    max_entries: Optional[int] = None


def verify_cron_auth(authorization: Optional[str]) -> bool:
    """Verify cron request authorization"""
    cron_secret = os.environ.get('CRON_SECRET')
    if cron_secret and authorization != f"Bearer {cron_secret}":
        return False
    return True


def _unauthorized() -> JSONResponse:
    return JSONResponse(status_code=401, content={"status": "error", "message": "Unauthorized"})


_init_lock = threading.Lock()


def init_orchestrator(app: FastAPI) -> Optional[SyncOrchestrator]:
    """Build the orchestrator from config once; later calls return the same instance"""
    with _init_lock:
        if app.state.orchestrator is None:
            try:
                cfg = load_config(str(CONFIG_PATH) if CONFIG_PATH.exists() else None)
                app.state.orchestrator = build_orchestrator(cfg)
                logger.info("✓ Sync orchestrator initialized")
            except Exception as e:
                logger.error(f"Failed to initialize sync orchestrator: {e}")
        return app.state.orchestrator


class BridgeUnavailable(Exception):
    pass


def get_orchestrator(request: Request) -> SyncOrchestrator:
    orchestrator = request.app.state.orchestrator
    if orchestrator is None and request.app.state.lazy_init:
        orchestrator = init_orchestrator(request.app)
    if orchestrator is None:
        raise BridgeUnavailable()
    return orchestrator


def _parse_entity_type(value: Optional[str]) -> Optional[EntityType]:
    if value is None:
        return None
    try:
        return EntityType(value.upper())
    except ValueError:
        raise ValidationError(f"Unknown entity type: {value}", field="entity_type")


def _start_scheduler(orchestrator: SyncOrchestrator) -> AsyncIOScheduler:
    scheduler = AsyncIOScheduler()
    loop = asyncio.get_event_loop()

    async def detection_job():
        logger.info("🔄 Running scheduled change detection...")
        results = await loop.run_in_executor(None, orchestrator.run_change_detection)
        logger.info(f"✓ Scheduled change detection: {results.get('status')}")

    async def transfer_job():
        results = await loop.run_in_executor(None, orchestrator.run_transfers)
        logger.info(f"✓ Scheduled transfer run: {results.get('status')}")

    async def housekeeping_job():
        results = await loop.run_in_executor(None, orchestrator.run_housekeeping)
        logger.info(f"✓ Housekeeping: {results}")

    cfg = orchestrator.cfg
    scheduler.add_job(detection_job,
                      IntervalTrigger(minutes=cfg.setting("change_detection_interval_minutes")),
                      id='change_detection', name='Change Detection', replace_existing=True)
    scheduler.add_job(transfer_job,
                      IntervalTrigger(minutes=cfg.setting("transfer_interval_minutes")),
                      id='transfers', name='QuickBooks Transfers', replace_existing=True)
    scheduler.add_job(housekeeping_job, CronTrigger(hour=3, minute=0),
                      id='housekeeping', name='Queue Housekeeping', replace_existing=True)
    scheduler.start()
    logger.info("✓ Background scheduler started")
    return scheduler


def create_app(orchestrator: Optional[SyncOrchestrator] = None,
               enable_scheduler: bool = not IS_VERCEL) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Handle application startup and shutdown"""
        if app.state.lazy_init:
            init_orchestrator(app)

        scheduler = None
        if enable_scheduler and app.state.orchestrator is not None:
            try:
                scheduler = _start_scheduler(app.state.orchestrator)
            except Exception as e:
                logger.error(f"Failed to start scheduler: {e}")

        yield

        if scheduler and scheduler.running:
            scheduler.shutdown(wait=False)
            logger.info("✓ Scheduler shut down")

    app = FastAPI(
        title="HubSpot QuickBooks Bridge",
        description="Human-approved HubSpot to QuickBooks transfer pipeline",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.orchestrator = orchestrator
    # An injected orchestrator is used as-is; otherwise it is built from config on demand
    app.state.lazy_init = orchestrator is None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"status": "error", "message": exc.message})

    @app.exception_handler(InvalidStateError)
    async def invalid_state_handler(request: Request, exc: InvalidStateError):
        return JSONResponse(status_code=409, content={
            "status": "error", "message": exc.message, "current_status": exc.current_status})

    @app.exception_handler(ValidationError)
    async def validation_handler(request: Request, exc: ValidationError):
        return JSONResponse(status_code=400, content={
            "status": "error", "message": exc.message, "field": exc.field})

    @app.exception_handler(BridgeUnavailable)
    async def unavailable_handler(request: Request, exc: BridgeUnavailable):
        return JSONResponse(status_code=503, content={
            "status": "error", "message": "Sync engine not configured"})

    register_routes(app)
    return app


def register_routes(app: FastAPI) -> None:

    @app.get("/health", response_model=HealthResponse)
    async def health_check():
        """Health check endpoint"""
        return HealthResponse(status="healthy", timestamp=datetime.now(timezone.utc), version=VERSION)

    # ============================================
    # QUEUE REVIEW
    # ============================================

    @app.get("/api/queue/pending")
    def pending_entries(limit: Optional[int] = None, entity_type: Optional[str] = None,
                        orch: SyncOrchestrator = Depends(get_orchestrator)):
        entries = orch.queue.get_pending_entries(limit, _parse_entity_type(entity_type))
        return {"status": "success", "entries": [e.to_dict() for e in entries]}

    @app.get("/api/queue/summary")
    def queue_summary(orch: SyncOrchestrator = Depends(get_orchestrator)):
        return {"status": "success", "summary": orch.queue.get_queue_summary()}

    @app.get("/api/queue/approved")
    def approved_entries(limit: Optional[int] = None,
                         orch: SyncOrchestrator = Depends(get_orchestrator)):
        entries = orch.queue.get_approved_entries(limit)
        return {"status": "success", "entries": [e.to_dict() for e in entries]}

    @app.get("/api/queue/{entry_id}")
    def queue_entry(entry_id: int, orch: SyncOrchestrator = Depends(get_orchestrator)):
        entry = orch.queue.get_entry(entry_id)
        return {"status": "success", "entry": dict(entry.to_dict(), entity_data=entry.entity_data)}

    @app.post("/api/queue/bulk-approve")
    def bulk_approve(body: BulkApproveRequest, orch: SyncOrchestrator = Depends(get_orchestrator)):
        result = orch.queue.bulk_approve(body.ids, body.approved_by, body.notes)
        status_code = 207 if result.failed else 200
        return JSONResponse(status_code=status_code, content={"status": "success", **asdict(result)})

    @app.post("/api/queue/{entry_id}/approve")
    def approve_entry(entry_id: int, body: ApproveRequest,
                      orch: SyncOrchestrator = Depends(get_orchestrator)):
        entry = orch.queue.approve_entry(entry_id, body.approved_by, body.notes)
        return {"status": "success", "entry": entry.to_dict()}

    @app.post("/api/queue/{entry_id}/reject")
    def reject_entry(entry_id: int, body: RejectRequest,
                     orch: SyncOrchestrator = Depends(get_orchestrator)):
        entry = orch.queue.reject_entry(entry_id, body.rejected_by, body.reason, body.notes)
        return {"status": "success", "entry": entry.to_dict()}

    @app.post("/api/queue/cleanup")
    def cleanup_queue(older_than_days: int = 30, orch: SyncOrchestrator = Depends(get_orchestrator)):
        if older_than_days < 1:
            raise ValidationError("older_than_days must be at least 1", field="older_than_days")
        return {"status": "success", "deleted": orch.queue.cleanup_old_entries(older_than_days)}

    # ============================================
    # TRANSFERS
    # ============================================

    @app.post("/api/transfers/process")
    def process_transfers(body: Optional[TransferRequest] = None,
                          orch: SyncOrchestrator = Depends(get_orchestrator)):
        result = orch.run_transfers(body.max_entries if body else None)
        status_code = 207 if result.get("failed") else 200
        return JSONResponse(status_code=status_code, content=result)

    @app.post("/api/transfers/{entry_id}/test")
    def test_transfer(entry_id: int, orch: SyncOrchestrator = Depends(get_orchestrator)):
        if orch.executor is None:
            return {"status": "error", "message": "QuickBooks target not configured"}
        result = orch.executor.test_single_transfer(entry_id)
        return {"status": "success" if result.success else "error", **asdict(result)}

    @app.get("/api/transfers/stats")
    def transfer_stats(orch: SyncOrchestrator = Depends(get_orchestrator)):
        if orch.executor is None:
            return {"status": "error", "message": "QuickBooks target not configured"}
        return {"status": "success", "statistics": orch.executor.get_transfer_statistics()}

    # ============================================
    # CHANGES & SYNC STATUS
    # ============================================

    @app.get("/api/changes/summary")
    def changes_summary(orch: SyncOrchestrator = Depends(get_orchestrator)):
        summary = orch.analyzer.get_changes_summary()
        return {"status": "success", "summary": {
            et.value: {
                "change_count": s.change_count,
                "last_change": to_iso(s.last_change),
                "critical_changes": s.critical_changes,
                "estimated_sync_ms": s.estimated_sync_ms,
            } for et, s in summary.items()
        }}

    @app.get("/api/sync/connections")
    def sync_connections(orch: SyncOrchestrator = Depends(get_orchestrator)):
        return {"status": "success", "connections": orch.check_connections()}

    @app.get("/api/sync/status")
    def sync_status(orch: SyncOrchestrator = Depends(get_orchestrator)):
        return {"status": "success", **orch.get_sync_status()}

    @app.post("/api/sync/run")
    def run_sync(orch: SyncOrchestrator = Depends(get_orchestrator)):
        """Manually trigger a change detection cycle"""
        return orch.run_change_detection()

    # ============================================
    # VERCEL CRON JOB ENDPOINTS
    # These are called by Vercel's cron scheduler instead of APScheduler
    # ============================================

    @app.get("/api/cron/change-detection")
    def cron_change_detection(authorization: Optional[str] = Header(None),
                              orch: SyncOrchestrator = Depends(get_orchestrator)):
        if not verify_cron_auth(authorization):
            logger.warning("Unauthorized cron request attempted")
            return _unauthorized()
        logger.info("🔄 Cron: Running change detection...")
        return cron_result("Change detection", orch.run_change_detection)

    @app.get("/api/cron/transfers")
    def cron_transfers(authorization: Optional[str] = Header(None),
                       orch: SyncOrchestrator = Depends(get_orchestrator)):
        if not verify_cron_auth(authorization):
            logger.warning("Unauthorized cron request attempted")
            return _unauthorized()
        return cron_result("Transfer run", orch.run_transfers)

    @app.get("/api/cron/housekeeping")
    def cron_housekeeping(authorization: Optional[str] = Header(None),
                          orch: SyncOrchestrator = Depends(get_orchestrator)):
        if not verify_cron_auth(authorization):
            logger.warning("Unauthorized cron request attempted")
            return _unauthorized()
        return cron_result("Housekeeping", orch.run_housekeeping)


def cron_result(label: str, job) -> Dict[str, Any]:
    try:
        results = job()
        logger.info(f"✓ Cron: {label} complete")
        return {"status": "success", "message": f"{label} completed", "results": results}
    except Exception as e:
        logger.error(f"Cron {label.lower()} failed: {e}")
        return {"status": "error", "message": str(e)}


app = create_app()


def start_server():
    """Start the server manually"""
    import uvicorn
    print("Starting HubSpot -> QuickBooks bridge...")
    print("API Documentation at: http://localhost:8004/docs")
    print("Press Ctrl+C to stop the server")
    try:
        uvicorn.run("app:app", host="0.0.0.0", port=8004, reload=True)
    except KeyboardInterrupt:
        print("\nServer stopped")


if __name__ == "__main__":
    start_server()
