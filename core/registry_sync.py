"""
River Intel - Station Registry Sync

Discovers USGS monitoring locations around each river and records which of
them publish flow or water temperature. The ingest cascade uses these rows
as its last-resort candidate pool.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from config import Settings
from collector.ogc_fetcher import OgcClient, build_probe, monitoring_id, padded_bbox
from core.exceptions import ProviderError, StoreError
from core.resolver import load_active_rivers
from core.timeutil import parse_timestamp, to_utc_iso, utc_now

logger = logging.getLogger("registry_sync")

REGISTRY_TABLE = "usgs_station_registry"


class RegistrySync:
    def __init__(
        self,
        store,
        ogc: OgcClient,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.ogc = ogc
        self.settings = settings or Settings()
        self.clock = clock

    async def latest_check_by_river(self) -> Dict[int, datetime]:
        rows = await self.store.select(REGISTRY_TABLE, filters={"is_active": True}, order_by="-checked_at")
        latest: Dict[int, datetime] = {}
        for row in rows:
            checked = parse_timestamp(row.get("checked_at"))
            river_id = row.get("river_id")
            if checked is None or river_id is None or river_id in latest:
                continue
            latest[river_id] = checked
        return latest

    async def run(self, river_match: Optional[str] = None, force: bool = False) -> Dict[str, Any]:
        rivers = [r for r in await load_active_rivers(self.store) if r.has_coordinates]
        if river_match:
            needle = river_match.strip().lower()
            rivers = [r for r in rivers if needle in f"{r.name} {r.slug} {r.id}".lower()]

        latest = {} if force else await self.latest_check_by_river()
        skip_window = timedelta(hours=self.settings.ogc_skip_fresh_hours)
        report: List[Dict[str, Any]] = []
        skipped: List[Dict[str, Any]] = []
        failed: List[Dict[str, Any]] = []

        for idx, river in enumerate(rivers, start=1):
            label = river.name or river.slug
            checked = latest.get(river.id)
            if checked is not None and self.clock() - checked <= skip_window:
                logger.info("[%d/%d] skip fresh %s", idx, len(rivers), label)
                skipped.append({"river": label, "checked_at": to_utc_iso(checked)})
                continue
            try:
                entry = await self.sync_river(river)
            except (ProviderError, StoreError) as e:
                logger.warning("[%d/%d] failed %s: %s", idx, len(rivers), label, e)
                failed.append({"river": label, "error": str(e)})
                continue
            logger.info(
                "[%d/%d] done %s stations=%d flow=%d temp=%d wq=%d",
                idx, len(rivers), label, entry["stations"], entry["flow"], entry["temp"], entry["wq"],
            )
            report.append(entry)

        return {"rivers": len(rivers), "report": report, "skipped": skipped, "failed": failed}

    async def sync_river(self, river) -> Dict[str, Any]:
        bbox = padded_bbox(river.lat, river.lon, self.settings.ogc_bbox_pad_deg)
        features = await self.ogc.monitoring_locations(bbox, self.settings.ogc_max_stations_per_river)

        seen = set()
        rows = []
        counts = {"flow": 0, "temp": 0, "wq": 0}
        for feature in features:
            location_id = monitoring_id(feature)
            if not location_id or location_id in seen:
                continue
            seen.add(location_id)
            ts_payload = await self.ogc.time_series_metadata(location_id)
            probe = build_probe(feature, ts_payload)
            if probe is None:
                continue
            counts["flow"] += probe.has_flow
            counts["temp"] += probe.has_temp
            counts["wq"] += probe.has_wq
            rows.append({
                "river_id": river.id,
                "site_no": probe.site_no,
                "monitoring_location_id": probe.monitoring_location_id,
                "station_name": probe.station_name,
                "latitude": probe.latitude,
                "longitude": probe.longitude,
                "parameter_codes": probe.parameter_codes,
                "has_flow": probe.has_flow,
                "has_temp": probe.has_temp,
                "has_wq": probe.has_wq,
                "metadata": probe.properties,
                "ts_metadata": {"parameter_codes": probe.parameter_codes},
                "checked_at": to_utc_iso(self.clock()),
                "is_active": True,
            })

        # persist per river so an interrupted sync keeps what it found
        if rows:
            await self.store.upsert(REGISTRY_TABLE, rows, on_conflict="river_id,site_no")
        return {"river": river.name or river.slug, "stations": len(seen), **counts}
