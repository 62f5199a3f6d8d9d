"""
Daily sync run records.

One row per calendar day. Reruns on the same day overwrite the row and
merge their per-campaign payload into it; rows beyond the retention count
are purged oldest first.
"""
import json
import zlib
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import delete, select

from bema_sync.lib.db import SessionFactory, retry_on_deadlock, session_scope, utcnow
from bema_sync.lib.logging import get_logger
from bema_sync.models.sync_run import SyncRun


logger = get_logger(__name__)

DEFAULT_RETENTION = 10


def compress_payload(payload: Dict[str, Any]) -> bytes:
    return zlib.compress(json.dumps(payload, default=str).encode("utf-8"))


def decompress_payload(data: Optional[bytes]) -> Dict[str, Any]:
    if not data:
        return {}
    return json.loads(zlib.decompress(data).decode("utf-8"))


class SyncLogService:
    def __init__(
        self,
        session_factory: SessionFactory,
        retention: int = DEFAULT_RETENTION,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self.retention = retention
        self._clock = clock

    @retry_on_deadlock
    def record(self, campaign: str, status: str, entry: Dict[str, Any], notes: Optional[str] = None) -> int:
        """
        Upsert today's record with the outcome for one campaign.

        Args:
            campaign: Campaign name, used as the payload key
            status: Run status for the row (completed, failed, stopped)
            entry: Per-campaign counters, stored in the compressed payload
            notes: Free-form note, typically the error message

        Returns:
            Id of today's record
        """
        today: date = self._clock().date()
        with session_scope(self._session_factory) as db:
            run = db.scalar(select(SyncRun).where(SyncRun.sync_date == today))
            if run is None:
                run = SyncRun(sync_date=today, status=status, synced_subscribers=0)
                db.add(run)

            payload = decompress_payload(run.data)
            payload[campaign] = entry
            run.data = compress_payload(payload)
            run.status = status
            run.synced_subscribers = sum(int(e.get("applied", 0) or 0) for e in payload.values())
            run.notes = notes
            db.flush()
            run_id = run.id

            self._purge(db)
        return run_id

    def _purge(self, db) -> None:
        keep = list(db.scalars(select(SyncRun.id).order_by(SyncRun.sync_date.desc()).limit(self.retention)))
        result = db.execute(delete(SyncRun).where(SyncRun.id.not_in(keep)))
        if result.rowcount:
            logger.debug(f"Purged {result.rowcount} old sync run records")

    def list_runs(self) -> List[Dict[str, Any]]:
        with session_scope(self._session_factory) as db:
            runs = db.scalars(select(SyncRun).order_by(SyncRun.sync_date.desc()))
            return [
                {
                    "id": run.id,
                    "sync_date": run.sync_date.isoformat(),
                    "status": run.status,
                    "synced_subscribers": run.synced_subscribers,
                    "notes": run.notes,
                }
                for run in runs
            ]

    def get_payload(self, run_id: int) -> Optional[Dict[str, Any]]:
        with session_scope(self._session_factory) as db:
            run = db.get(SyncRun, run_id)
            if run is None:
                return None
            return decompress_payload(run.data)
