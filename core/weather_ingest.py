"""
River Intel - Weather Ingest
Per-river Open-Meteo summary for the river's local date, upserted into
weather_daily. The score recompute runs once after all rivers, for each
distinct local date written; rivers on the same local date share a single call,
and each further local date (rivers in far-apart zones) adds one.
"""

import logging
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional

from config import RPC_COMPUTE_SCORES, Settings
from collector.weather_fetcher import summarize_weather_day
from core.exceptions import RunFatalError, StoreError
from core.resolver import load_active_rivers
from core.timeutil import local_date, utc_now
from registrar.ledger import RunLedger, terminal_status

logger = logging.getLogger("weather_ingest")

PIPELINE = "weather"
SUMMARY_ERROR_LIMIT = 10


class WeatherIngestRun:
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
            rivers = [r for r in await load_active_rivers(self.store) if r.has_coordinates]
        except StoreError as e:
            logger.error("Run %s: failed to load rivers: %s", run_id, e)
            await self.ledger.fail_run(run_id, str(e))
            raise RunFatalError("Failed to load rivers", detail=e.detail or str(e), run_id=run_id) from e

        ok = 0
        errors: List[Dict[str, Any]] = []
        target_dates = set()
        for river in rivers:
            tz_name = river.timezone or self.settings.default_timezone
            target = local_date(tz_name, now)
            try:
                payload = await self.client.fetch_forecast(river.lat, river.lon, tz_name)
                day = summarize_weather_day(payload, river.id, target)
                await self.store.upsert("weather_daily", day.to_row(), on_conflict="river_id,date")
            except Exception as e:
                logger.warning("weather failed %s: %s", river.slug, e)
                errors.append({"river_id": river.id, "slug": river.slug, "error": str(e)})
                await self._log_site(run_id, river.id, target, "failed", str(e))
                continue
            ok += 1
            target_dates.add(target)
            logger.info(
                "ok %s am=%s pm=%s high=%s", river.slug, day.wind_am_mph, day.wind_pm_mph, day.air_temp_high_f
            )
            await self._log_site(run_id, river.id, target, "success", None)

        rpc_errors = await self._recompute_scores(target_dates or {obs_date})
        failed = len(errors)
        summary: Dict[str, Any] = {
            "run_id": run_id,
            "pipeline": PIPELINE,
            "cadence": cadence,
            "obs_date": obs_date.isoformat(),
            "rivers_total": len(rivers),
            "weather_ok": ok,
            "weather_failed": failed,
            "score_recompute_error": rpc_errors.get(RPC_COMPUTE_SCORES),
            "errors": errors[:SUMMARY_ERROR_LIMIT],
        }
        try:
            status = await self.ledger.finish_run(
                run_id, ok, failed,
                rpc_errors=rpc_errors,
                error_message=rpc_errors.get(RPC_COMPUTE_SCORES) or (errors[0]["error"] if errors else None),
            )
        except StoreError as e:
            logger.error("Run %s: weather complete but run summary update failed: %s", run_id, e)
            status = terminal_status(ok, failed)
            summary["warning"] = f"Ingest complete but run summary update failed: {e}"
        summary["status"] = status.value
        return summary

    async def _log_site(self, run_id: str, river_id: int, target: date, status: str, error: Optional[str]) -> None:
        try:
            await self.ledger.log_site(run_id, river_id, {
                "obs_date": target.isoformat(),
                "status": status,
                "error_message": error,
            })
        except StoreError as e:
            logger.error("Could not write weather log for river %s: %s", river_id, e)

    async def _recompute_scores(self, dates) -> Dict[str, str]:
        errors: Dict[str, str] = {}
        for target in sorted(dates):
            try:
                await self.store.rpc(RPC_COMPUTE_SCORES, {"p_obs_date": target.isoformat()})
            except StoreError as e:
                logger.error("%s(%s) failed: %s", RPC_COMPUTE_SCORES, target, e)
                errors[RPC_COMPUTE_SCORES] = str(e)
        return errors
