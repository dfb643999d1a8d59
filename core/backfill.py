"""
River Intel - Daily Flow Backfill
Fills river_daily flow columns from the delayed (daily-value) feed for the
last N days, one row per local date.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from config import PARAM_FLOW, Settings
from core.exceptions import ProviderError, StoreError
from core.models import Feed, Role, SourceKind
from core.resolver import StationDirectory, load_active_rivers
from core.timeutil import get_zone, local_date, to_utc_iso, utc_now

logger = logging.getLogger("backfill")

DEFAULT_DAYS = 30


async def backfill_daily_flow(
    store,
    client,
    days: int = DEFAULT_DAYS,
    settings: Optional[Settings] = None,
    clock: Callable[[], datetime] = utc_now,
) -> Dict[str, Any]:
    """
    Partially upsert flow columns for each river's primary flow station.

    Dates whose stored flow came from the live feed are left alone.
    """
    settings = settings or Settings()
    rivers = await load_active_rivers(store)
    directory = await StationDirectory.load(store)
    now = clock()

    report: List[Dict[str, Any]] = []
    for river in rivers:
        candidates = directory.candidates(river, Role.FLOW)
        if not candidates:
            report.append({"river": river.slug, "site_no": None, "days": 0, "error": "no_flow_site_mapping"})
            continue
        site_no = candidates[0]
        tz_name = river.timezone or settings.default_timezone
        end = local_date(tz_name, now)
        start = end - timedelta(days=days)

        try:
            series = await client.fetch_series(
                Feed.DELAYED, site_no, codes=[PARAM_FLOW],
                default_tz=get_zone(tz_name, settings.default_timezone),
                start_date=start.isoformat(), end_date=end.isoformat(),
            )
            existing = {
                row["obs_date"]: row
                for row in await store.select("river_daily", filters={"river_id": river.id})
            }
            obs = series.get(PARAM_FLOW)
            rows = []
            for point in obs.points if obs else []:
                day = point.observed_at.date().isoformat()
                if (existing.get(day) or {}).get("flow_source_kind") == SourceKind.LIVE.value:
                    continue
                rows.append({
                    "river_id": river.id,
                    "obs_date": day,
                    "flow_cfs": point.value,
                    "flow_site_no": site_no,
                    "flow_source_kind": SourceKind.DELAYED.value,
                    "flow_observed_at": to_utc_iso(point.observed_at),
                    "flow_is_stale": False,
                    "flow_unavailable_reason": None,
                })
            if rows:
                await store.upsert("river_daily", rows, on_conflict="river_id,obs_date")
        except (ProviderError, StoreError) as e:
            logger.error("%s: %s", river.slug, e)
            report.append({"river": river.slug, "site_no": site_no, "days": 0, "error": str(e)})
            continue

        logger.info("%s backfilled %d days", river.slug, len(rows))
        report.append({"river": river.slug, "site_no": site_no, "days": len(rows), "error": None})

    return {
        "rivers": len(rivers),
        "days_written": sum(r["days"] for r in report),
        "report": report,
    }
