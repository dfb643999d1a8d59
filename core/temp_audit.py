"""
River Intel - Temperature Availability Audit
Probes every configured station for water temperature on the live feed and
the last 14 days of the delayed feed.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from config import PARAM_WATER_TEMP
from core.exceptions import ProviderError, StoreError
from core.models import Feed, ParsedSeries, Role
from core.resolver import StationDirectory, load_active_rivers
from core.timeutil import to_utc_iso, utc_now

logger = logging.getLogger("temp_audit")

AUDIT_DV_PERIOD = "P14D"


def has_temperature(series: ParsedSeries) -> bool:
    obs = series.get(PARAM_WATER_TEMP)
    return obs is not None and bool(obs.points)


def temp_source_label(has_iv: bool, has_dv: bool) -> str:
    if has_iv:
        return "IV"
    if has_dv:
        return "DV fallback"
    return "None"


async def collect_sites(store) -> Dict[str, str]:
    """Distinct configured site numbers -> a river label for the report."""
    rivers = await load_active_rivers(store)
    directory = await StationDirectory.load(store)
    sites: Dict[str, str] = {}
    for river in rivers:
        label = river.name or river.slug
        for role in (Role.FLOW, Role.TEMPERATURE):
            for site_no in directory.candidates(river, role):
                sites.setdefault(site_no, label)
    return sites


async def audit_temp_availability(
    store,
    client,
    clock: Callable[[], datetime] = utc_now,
) -> Dict[str, Any]:
    sites = await collect_sites(store)
    report: List[Dict[str, Any]] = []
    upserts: List[Dict[str, Any]] = []

    for site_no, river in sites.items():
        entry: Dict[str, Any] = {"site_no": site_no, "river": river}
        try:
            live = await client.fetch_series(Feed.LIVE, site_no, codes=[PARAM_WATER_TEMP])
            delayed = await client.fetch_series(
                Feed.DELAYED, site_no, codes=[PARAM_WATER_TEMP], period=AUDIT_DV_PERIOD
            )
        except ProviderError as e:
            logger.warning("Probe failed for %s: %s", site_no, e)
            entry.update({"has_temp_iv": False, "has_temp_dv": False, "source": "None", "error": str(e)})
            report.append(entry)
            continue

        has_iv, has_dv = has_temperature(live), has_temperature(delayed)
        entry.update({"has_temp_iv": has_iv, "has_temp_dv": has_dv, "source": temp_source_label(has_iv, has_dv)})
        report.append(entry)
        upserts.append({
            "site_no": site_no,
            "has_temp_iv": has_iv,
            "has_temp_dv": has_dv,
            "checked_at": to_utc_iso(clock()),
        })

    upsert_error: Optional[str] = None
    if upserts:
        try:
            await store.upsert("usgs_site_parameters", upserts, on_conflict="site_no")
        except StoreError as e:
            logger.warning("Skipping usgs_site_parameters upsert: %s", e)
            upsert_error = str(e)

    return {
        "sites": len(report),
        "iv": sum(1 for r in report if r["has_temp_iv"]),
        "dv_only": sum(1 for r in report if not r["has_temp_iv"] and r["has_temp_dv"]),
        "none": sum(1 for r in report if not r["has_temp_iv"] and not r["has_temp_dv"]),
        "report": report,
        "upsert_error": upsert_error,
    }
