"""
River Intel - USGS Ingest (Run Orchestrator)

One run: open a ledger entry, load rivers and station configuration once,
resolve flow / temperature / stage per river through the source cascade,
upsert river_daily + river_hourly, log each river, then call the metrics and
scoring procedures once and close the ledger.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional

from config import RPC_COMPUTE_SCORES, RPC_REFRESH_METRICS, Settings
from collector.timeseries_parser import merge_history
from core.cascade import ROLE_SPECS, CascadeFetcher, SeriesCache, default_strategies
from core.exceptions import CascadeExhaustedError, RunFatalError, StoreError
from core.models import (
    AttemptOutcome,
    DailyRecord,
    Feed,
    HourlyRecord,
    River,
    Role,
    RoleResolution,
)
from core.resolver import StationDirectory, load_active_rivers
from core.timeutil import get_zone, local_date, utc_now
from registrar.ledger import RunLedger, terminal_status

logger = logging.getLogger("usgs_ingest")

PIPELINE = "usgs"
ROLE_ORDER = (Role.FLOW, Role.TEMPERATURE, Role.STAGE)
SUMMARY_ERROR_LIMIT = 5

HOURLY_COLUMNS = {
    ROLE_SPECS[Role.FLOW].parameter_code: "flow_cfs",
    ROLE_SPECS[Role.TEMPERATURE].parameter_code: "water_temp_f",
    ROLE_SPECS[Role.STAGE].parameter_code: "gage_height_ft",
}


@dataclass
class RiverOutcome:
    river: River
    status: str                      # success | partial | failed
    resolutions: Dict[Role, RoleResolution] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status != "failed"


def build_hourly_records(river_id: int, resolutions: Dict[Role, RoleResolution], limit: int) -> List[HourlyRecord]:
    """Merge live-feed points of each resolved role into per-timestamp rows."""
    observations = [
        r.observation for r in resolutions.values()
        if r.feed == Feed.LIVE and r.observation is not None
    ]
    records = []
    for row in merge_history(observations, limit):
        record = HourlyRecord(river_id=river_id, observed_at=row.observed_at)
        for code, value in row.values.items():
            column = HOURLY_COLUMNS.get(code)
            if column:
                setattr(record, column, value)
        records.append(record)
    return records


def _audit_summary(resolutions: Dict[Role, RoleResolution]) -> Dict[str, Any]:
    summary: Dict[str, Any] = {}
    for role, res in resolutions.items():
        summary[role.value] = {
            "site_no": res.site_no,
            "feed": res.feed.value if res.feed else None,
            "reason": res.reason,
            "series": res.series.raw_summary if res.series else {},
        }
    return summary


def _http_status(resolutions: Dict[Role, RoleResolution]) -> Optional[int]:
    attempts = [a for r in resolutions.values() for a in r.attempts]
    if any(a.outcome != AttemptOutcome.TRANSPORT_ERROR for a in attempts):
        return 200
    codes = [a.status_code for a in attempts if a.status_code]
    return codes[-1] if codes else None


class UsgsIngestRun:
    def __init__(
        self,
        store,
        client,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.client = client
        self.settings = settings or Settings()
        self.clock = clock
        self.ledger = RunLedger(store, PIPELINE, clock=clock)

    async def run(self, cadence: str = "manual") -> Dict[str, Any]:
        now = self.clock()
        obs_date = local_date(self.settings.default_timezone, now)
        run_id = await self.ledger.start_run(cadence, obs_date)

        try:
            rivers = await load_active_rivers(self.store)
            directory = await StationDirectory.load(self.store)
        except StoreError as e:
            logger.error("Run %s: failed to load rivers: %s", run_id, e)
            await self.ledger.fail_run(run_id, str(e))
            raise RunFatalError("Failed to load rivers", detail=e.detail or str(e), run_id=run_id) from e

        fetcher = CascadeFetcher(
            SeriesCache(self.client, history_limit=self.settings.hourly_point_limit),
            default_strategies(self.settings.live_window_hours, self.settings.delayed_window_hours),
        )

        outcomes: List[RiverOutcome] = []
        for river in rivers:
            try:
                outcome = await self.ingest_river(run_id, river, directory, fetcher, obs_date, now)
            except Exception as e:
                logger.warning("failed %s: %s", river.slug, e)
                outcome = RiverOutcome(river=river, status="failed", error=str(e))
                await self._log_failure(run_id, river, obs_date, e)
            outcomes.append(outcome)

        rpc_errors = await self._call_procedures(obs_date)

        ok = sum(1 for o in outcomes if o.ok)
        failed = len(outcomes) - ok
        summary: Dict[str, Any] = {
            "run_id": run_id,
            "pipeline": PIPELINE,
            "cadence": cadence,
            "obs_date": obs_date.isoformat(),
            "rivers_total": len(outcomes),
            "rivers_ok": ok,
            "rivers_failed": failed,
            "rivers_partial": sum(1 for o in outcomes if o.status == "partial"),
            "rpc_errors": rpc_errors,
            "errors": [
                {"river_id": o.river.id, "slug": o.river.slug, "error": o.error}
                for o in outcomes if o.error
            ][:SUMMARY_ERROR_LIMIT],
        }
        try:
            status = await self.ledger.finish_run(run_id, ok, failed, rpc_errors=rpc_errors)
        except StoreError as e:
            logger.error("Run %s: ingest complete but run summary update failed: %s", run_id, e)
            status = terminal_status(ok, failed)
            summary["warning"] = f"Ingest complete but run summary update failed: {e}"
        summary["status"] = status.value
        return summary

    async def ingest_river(
        self,
        run_id: str,
        river: River,
        directory: StationDirectory,
        fetcher: CascadeFetcher,
        obs_date: date,
        now: datetime,
    ) -> RiverOutcome:
        tz = get_zone(river.timezone, self.settings.default_timezone)
        resolutions: Dict[Role, RoleResolution] = {}
        errors: Dict[Role, CascadeExhaustedError] = {}

        for role in ROLE_ORDER:
            candidates = directory.candidates(river, role)
            pool = directory.registry_pool(river, role, exclude=candidates)
            try:
                resolutions[role] = await fetcher.resolve(ROLE_SPECS[role], candidates, pool, now, tz)
            except CascadeExhaustedError as e:
                errors[role] = e

        reachable = any(
            a.outcome != AttemptOutcome.TRANSPORT_ERROR
            for r in resolutions.values() for a in r.attempts
        )
        if errors and not reachable:
            # every station this river asked for was unreachable
            raise next(iter(errors.values()))

        record = DailyRecord(
            river_id=river.id,
            obs_date=obs_date,
            flow=resolutions.get(Role.FLOW),
            temperature=resolutions.get(Role.TEMPERATURE),
            stage=resolutions.get(Role.STAGE),
            parameter_codes=sorted({
                code for r in resolutions.values() if r.series for code in r.series.parameter_codes
            }),
            raw_summary=_audit_summary(resolutions),
            updated_at=now,
        )
        await self.store.upsert("river_daily", record.to_row(), on_conflict="river_id,obs_date")

        hourly = build_hourly_records(river.id, resolutions, self.settings.hourly_point_limit)
        if hourly:
            await self.store.upsert("river_hourly", [h.to_row() for h in hourly], on_conflict="river_id,observed_at")

        status = "partial" if errors else "success"
        error = "; ".join(str(e) for e in errors.values()) or None
        flow = resolutions.get(Role.FLOW)
        temp = resolutions.get(Role.TEMPERATURE)
        stage = resolutions.get(Role.STAGE)
        await self.ledger.log_site(run_id, river.id, {
            "site_no": flow.site_no if flow else None,
            "obs_date": obs_date.isoformat(),
            "status": status,
            "http_status": _http_status(resolutions),
            "flow_cfs": flow.value if flow else None,
            "water_temp_f": temp.value if temp else None,
            "gage_height_ft": stage.value if stage else None,
            "flow_source_kind": flow.source_kind.value if flow and flow.source_kind else None,
            "temp_source_kind": temp.source_kind.value if temp and temp.source_kind else None,
            "temp_unavailable_reason": temp.reason if temp else None,
            "attempts": {
                role.value: [a.to_dict() for a in res.attempts] for role, res in resolutions.items()
            },
            "error_message": error,
        })

        logger.info(
            "ok %s flow=%s temp=%s stage=%s%s",
            river.slug,
            flow.value if flow else None,
            temp.value if temp else None,
            stage.value if stage else None,
            f" ({error})" if error else "",
        )
        return RiverOutcome(river=river, status=status, resolutions=resolutions, error=error)

    async def _log_failure(self, run_id: str, river: River, obs_date: date, error: Exception) -> None:
        attempts = getattr(error, "attempts", None) or []
        entry = {
            "obs_date": obs_date.isoformat(),
            "status": "failed",
            "http_status": next((a.status_code for a in reversed(attempts) if a.status_code), None),
            "attempts": {getattr(error, "role", "river"): [a.to_dict() for a in attempts]},
            "error_message": str(error),
        }
        try:
            await self.ledger.log_site(run_id, river.id, entry)
        except StoreError as e:
            logger.error("Could not write failure log for %s: %s", river.slug, e)

    async def _call_procedures(self, obs_date: date) -> Dict[str, str]:
        errors: Dict[str, str] = {}
        for name in (RPC_REFRESH_METRICS, RPC_COMPUTE_SCORES):
            try:
                await self.store.rpc(name, {"p_obs_date": obs_date.isoformat()})
            except StoreError as e:
                logger.error("%s failed: %s", name, e)
                errors[name] = str(e)
        return errors
