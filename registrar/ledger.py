"""
River Intel - Run Ledger
Run-level and per-river audit records for ingestion pipelines.
"""

import logging
import uuid
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from core.exceptions import RunFatalError, StoreError
from core.models import RunStatus
from core.timeutil import parse_timestamp, to_utc_iso, utc_now

logger = logging.getLogger("ledger")

RUNS_TABLE = "ingest_runs"
SITE_LOGS_TABLE = "ingest_site_logs"

ORPHAN_AFTER = timedelta(hours=2)


def terminal_status(ok: int, failed: int) -> RunStatus:
    """failed when nothing succeeded, success when nothing failed, else partial."""
    if failed == 0:
        return RunStatus.SUCCESS
    if ok == 0:
        return RunStatus.FAILED
    return RunStatus.PARTIAL


class RunLedger:
    def __init__(self, store, pipeline: str, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.pipeline = pipeline
        self.clock = clock

    async def start_run(self, cadence: str, obs_date: date) -> str:
        """Create the `running` entry. Failure here is run-fatal."""
        run_id = str(uuid.uuid4())
        try:
            await self.store.insert(RUNS_TABLE, {
                "id": run_id,
                "pipeline": self.pipeline,
                "cadence": cadence,
                "status": RunStatus.RUNNING.value,
                "obs_date": obs_date.isoformat(),
                "started_at": to_utc_iso(self.clock()),
            })
        except StoreError as e:
            logger.error("Failed to create %s ingestion run: %s", self.pipeline, e)
            raise RunFatalError("Failed to create ingestion run", detail=e.detail or str(e)) from e
        logger.info("Run %s started (%s, cadence=%s, obs_date=%s)", run_id, self.pipeline, cadence, obs_date)
        return run_id

    async def log_site(self, run_id: str, river_id: int, entry: Dict[str, Any]) -> None:
        row = {"run_id": run_id, "river_id": river_id, "created_at": to_utc_iso(self.clock())}
        row.update(entry)
        await self.store.upsert(SITE_LOGS_TABLE, row, on_conflict="run_id,river_id")

    async def fail_run(self, run_id: str, error_message: str) -> None:
        try:
            await self.store.update(RUNS_TABLE, {
                "status": RunStatus.FAILED.value,
                "finished_at": to_utc_iso(self.clock()),
                "error_message": error_message,
            }, {"id": run_id})
        except StoreError as e:
            logger.error("Could not mark run %s failed: %s", run_id, e)

    async def finish_run(
        self,
        run_id: str,
        ok: int,
        failed: int,
        rpc_errors: Optional[Dict[str, str]] = None,
        error_message: Optional[str] = None,
    ) -> RunStatus:
        """Close the run with its terminal status. Raises StoreError on write failure."""
        status = terminal_status(ok, failed)
        await self.store.update(RUNS_TABLE, {
            "status": status.value,
            "finished_at": to_utc_iso(self.clock()),
            "rivers_total": ok + failed,
            "rivers_ok": ok,
            "rivers_failed": failed,
            "rpc_errors": rpc_errors or {},
            "error_message": error_message,
        }, {"id": run_id})
        logger.info("Run %s finished: %s (ok=%d failed=%d)", run_id, status.value, ok, failed)
        return status

    async def get_run(self, run_id: str) -> Optional[Dict[str, Any]]:
        rows = await self.store.select(RUNS_TABLE, filters={"id": run_id})
        if not rows:
            return None
        run = rows[0]
        run["sites"] = await self.store.select(
            SITE_LOGS_TABLE, filters={"run_id": run_id}, order_by="river_id"
        )
        return run

    async def list_recent_runs(self, limit: int = 20, status: Optional[str] = None) -> List[Dict[str, Any]]:
        filters: Dict[str, Any] = {"pipeline": self.pipeline} if self.pipeline else {}
        if status:
            filters["status"] = status
        return await self.store.select(RUNS_TABLE, filters=filters or None, order_by="-started_at", limit=limit)

    async def list_orphaned_runs(self, older_than: timedelta = ORPHAN_AFTER) -> List[Dict[str, Any]]:
        """Entries still `running` whose start is older than the threshold."""
        filters: Dict[str, Any] = {"status": RunStatus.RUNNING.value}
        if self.pipeline:
            filters["pipeline"] = self.pipeline
        cutoff = self.clock() - older_than
        orphaned = []
        for run in await self.store.select(RUNS_TABLE, filters=filters, order_by="started_at"):
            started = parse_timestamp(run.get("started_at"))
            if started is not None and started < cutoff:
                orphaned.append(run)
        return orphaned
