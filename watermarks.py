"""
Per-entity-type synchronization checkpoints
"""

import logging
from datetime import datetime
from typing import Dict, Optional

from database import BridgeDB
from models import EntityType, Watermark, parse_ts, to_iso, utc_now

logger = logging.getLogger(__name__)


class WatermarkStore:
    """Reads and advances the sync_watermarks table.

    A watermark's last_sync_at only ever moves forward; a run that failed
    records its error but keeps the previous timestamp.
    """

    def __init__(self, db: BridgeDB):
        self.db = db

    def get(self, entity_type: EntityType) -> Optional[Watermark]:
        row = self.db.fetchone_dict(
            "SELECT * FROM sync_watermarks WHERE entity_type = ?", (entity_type.value,))
        if not row:
            return None
        return Watermark(
            entity_type=entity_type,
            last_sync_at=parse_ts(row["last_sync_at"]),
            entity_count=row["entity_count"] or 0,
            error_count=row["error_count"] or 0,
            last_error_message=row["last_error_message"],
            updated_at=parse_ts(row["updated_at"]),
        )

    def get_all(self) -> Dict[EntityType, Optional[Watermark]]:
        return {et: self.get(et) for et in EntityType}

    def record_run(self, entity_type: EntityType, run_started_at: Optional[datetime],
                   entity_count: int, error_count: int = 0,
                   error_message: Optional[str] = None) -> Watermark:
        """Upsert the watermark after a run.

        Pass run_started_at=None for a failed run: counts and the error are
        recorded, the timestamp stays where it was.
        """
        now = utc_now()
        with self.db.transaction():
            current = self.get(entity_type)
            previous = current.last_sync_at if current else None
            new_sync_at = previous
            if run_started_at is not None and (previous is None or run_started_at > previous):
                new_sync_at = run_started_at
            elif run_started_at is not None and run_started_at < previous:
                logger.warning(
                    f"Watermark for {entity_type.value} not moved back "
                    f"({to_iso(run_started_at)} < {to_iso(previous)})")

            self.db.execute("""
                INSERT INTO sync_watermarks(entity_type, last_sync_at, entity_count,
                                            error_count, last_error_message, updated_at)
                VALUES(?, ?, ?, ?, ?, ?)
                ON CONFLICT(entity_type) DO UPDATE SET
                    last_sync_at = excluded.last_sync_at,
                    entity_count = excluded.entity_count,
                    error_count = excluded.error_count,
                    last_error_message = excluded.last_error_message,
                    updated_at = excluded.updated_at
            """, (entity_type.value, to_iso(new_sync_at), entity_count, error_count,
                  error_message, to_iso(now)))

        return Watermark(entity_type, new_sync_at, entity_count, error_count, error_message, now)
