import asyncio
from datetime import datetime, timezone
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
sys.path.insert(0, str(Path(__file__).resolve().parent))

from config import Settings
from core.backfill import backfill_daily_flow
from core.models import Feed
from core.temp_audit import audit_temp_availability, temp_source_label
from database import SQLiteStore
from usgs_fakes import FakeUsgsClient, transport_error, usgs_payload

NOW = datetime(2024, 5, 1, 18, 0, tzinfo=timezone.utc)


def _store(tmp_path):
    store = SQLiteStore(str(tmp_path / "river.db"))
    store.init_schema()

    async def _seed():
        await store.insert("rivers", {
            "id": 1, "slug": "arkansas", "name": "Arkansas", "usgs_site_no": "100", "timezone": "America/Denver",
        })
        await store.insert("rivers", {"id": 2, "slug": "blue", "name": "Blue"})
        await store.insert("river_station_roles", {"river_id": 1, "role": "temperature", "site_no": "101"})
        await store.insert("river_usgs_map", {"river_id": 2, "temp_site_no": "102"})

    asyncio.run(_seed())
    return store


def test_temp_source_label():
    assert temp_source_label(True, True) == "IV"
    assert temp_source_label(False, True) == "DV fallback"
    assert temp_source_label(False, False) == "None"


def test_audit_reports_live_daily_and_missing_temperature(tmp_path):
    store = _store(tmp_path)
    client = FakeUsgsClient({
        (Feed.LIVE, "100"): usgs_payload(flow=[("2024-05-01T10:00:00Z", 400)]),
        (Feed.LIVE, "101"): usgs_payload(temp=[("2024-05-01T10:00:00Z", 9.5)]),
        (Feed.DELAYED, "101"): usgs_payload(temp=[("2024-04-30T00:00:00.000", 9.0)]),
        (Feed.DELAYED, "102"): usgs_payload(temp=[("2024-04-30T00:00:00.000", 7.0)]),
    })

    result = asyncio.run(audit_temp_availability(store, client, clock=lambda: NOW))

    by_site = {row["site_no"]: row for row in result["report"]}
    assert by_site["100"]["source"] == "None"
    assert by_site["101"]["source"] == "IV"
    assert by_site["102"]["source"] == "DV fallback"
    assert by_site["102"]["river"] == "Blue"
    assert (result["sites"], result["iv"], result["dv_only"], result["none"]) == (3, 1, 1, 1)
    delayed_query = [q for feed, site, q in client.calls if feed == Feed.DELAYED and site == "101"][0]
    assert delayed_query == {"period": "P14D"}

    rows = asyncio.run(store.select("usgs_site_parameters", order_by="site_no"))
    assert [(r["site_no"], r["has_temp_iv"], r["has_temp_dv"]) for r in rows] == [
        ("100", False, False),
        ("101", True, True),
        ("102", False, True),
    ]


def test_audit_probe_failure_is_reported_not_persisted(tmp_path):
    store = _store(tmp_path)
    client = FakeUsgsClient({(Feed.LIVE, "101"): transport_error(500)})

    result = asyncio.run(audit_temp_availability(store, client, clock=lambda: NOW))

    failed = [row for row in result["report"] if row.get("error")]
    assert [row["site_no"] for row in failed] == ["101"]
    sites = [r["site_no"] for r in asyncio.run(store.select("usgs_site_parameters"))]
    assert "101" not in sites


def test_backfill_writes_delayed_flow_and_keeps_live_days(tmp_path):
    store = _store(tmp_path)
    asyncio.run(store.insert("river_daily", {
        "river_id": 1, "obs_date": "2024-04-30", "flow_cfs": 999.0, "flow_source_kind": "live",
        "water_temp_f": 50.0,
    }))
    asyncio.run(store.insert("river_daily", {
        "river_id": 1, "obs_date": "2024-04-29", "water_temp_f": 49.0,
    }))
    client = FakeUsgsClient({
        (Feed.DELAYED, "100"): usgs_payload(flow=[
            ("2024-04-28T00:00:00.000", 380),
            ("2024-04-29T00:00:00.000", 390),
            ("2024-04-30T00:00:00.000", 400),
        ]),
    })

    result = asyncio.run(backfill_daily_flow(store, client, days=5, settings=Settings(), clock=lambda: NOW))

    assert result["days_written"] == 2
    report = {row["river"]: row for row in result["report"]}
    assert report["arkansas"]["site_no"] == "100"
    assert report["blue"]["error"] == "no_flow_site_mapping"
    query = client.calls[0][2]
    assert query == {"start_date": "2024-04-26", "end_date": "2024-05-01"}

    rows = {r["obs_date"]: r for r in asyncio.run(store.select("river_daily", filters={"river_id": 1}))}
    assert rows["2024-04-30"]["flow_cfs"] == 999.0
    assert rows["2024-04-29"]["flow_cfs"] == 390.0
    assert rows["2024-04-29"]["flow_source_kind"] == "delayed"
    assert rows["2024-04-29"]["water_temp_f"] == 49.0
    assert rows["2024-04-28"]["flow_cfs"] == 380.0
