import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path
import sys

import httpx

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from config import Settings
from collector.ogc_fetcher import OgcClient, build_probe, padded_bbox, to_site_no
from collector.rate_limiter import DomainRateLimiter
from core.registry_sync import RegistrySync
from database import SQLiteStore

NOW = datetime(2024, 5, 1, 18, 0, tzinfo=timezone.utc)


def _location(site_no, lon=-106.0, lat=38.5):
    return {
        "id": f"USGS-{site_no}",
        "geometry": {"type": "Point", "coordinates": [lon, lat]},
        "properties": {"monitoring_location_name": f"Station {site_no}"},
    }


def _series_meta(*codes):
    return {"features": [{"properties": {"parameter_code": code}} for code in codes]}


async def _no_sleep(_seconds):
    return None


def _ogc(http, max_retries=0, sleeps=None):
    async def sleep(seconds):
        if sleeps is not None:
            sleeps.append(seconds)

    return OgcClient(
        http,
        DomainRateLimiter(0.0, sleep=_no_sleep),
        max_retries=max_retries,
        page_size=2,
        sleep=sleep,
    )


def test_site_number_helpers():
    assert to_site_no("USGS-07091200") == "07091200"
    assert to_site_no("AZ014-331104111455701") == "331104111455701"
    assert to_site_no("bogus") is None
    assert padded_bbox(38.5, -106.0, 0.5) == (-106.5, 38.0, -105.5, 39.0)
    assert build_probe({"id": "no-digits"}, {}) is None


def test_get_json_retries_with_retry_after():
    responses = [httpx.Response(429, headers={"Retry-After": "2"}), httpx.Response(200, json={"ok": True})]
    sleeps = []

    async def _run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: responses.pop(0))) as http:
            return await _ogc(http, max_retries=2, sleeps=sleeps).get_json("https://api.waterdata.usgs.gov/x")

    assert asyncio.run(_run()) == {"ok": True}
    assert len(sleeps) == 1
    assert 2.0 <= sleeps[0] <= 2.35


def test_monitoring_locations_pages_until_short_page():
    offsets = []
    pages = {0: [_location("1000001"), _location("1000002")], 2: [_location("1000003")]}

    def handler(request):
        offset = int(request.url.params["offset"])
        offsets.append(offset)
        return httpx.Response(200, json={"features": pages.get(offset, [])})

    async def _run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            return await _ogc(http).monitoring_locations((-106.1, 38.4, -105.9, 38.6))

    features = asyncio.run(_run())

    assert [f["id"] for f in features] == ["USGS-1000001", "USGS-1000002", "USGS-1000003"]
    assert offsets == [0, 2]


def _store(tmp_path):
    store = SQLiteStore(str(tmp_path / "river.db"))
    store.init_schema()

    async def _seed():
        await store.insert("rivers", {"id": 1, "slug": "arkansas", "name": "Arkansas", "lat": 38.5, "lon": -106.0})
        await store.insert("rivers", {"id": 2, "slug": "inland", "name": "No Coords"})

    asyncio.run(_seed())
    return store


def _sync_handler(request):
    path = request.url.path
    if path.endswith("/monitoring-locations/items"):
        return httpx.Response(200, json={"features": [_location("07091200"), _location("07093700")]})
    location = request.url.params["monitoring_location_id"]
    if location == "USGS-07091200":
        return httpx.Response(200, json=_series_meta("00060", "00065", "00010"))
    return httpx.Response(500, text="upstream error")


def test_sync_records_capabilities_and_skips_recently_checked(tmp_path):
    store = _store(tmp_path)
    clock = [NOW]

    async def _run(force=False):
        async with httpx.AsyncClient(transport=httpx.MockTransport(_sync_handler)) as http:
            sync = RegistrySync(store, _ogc(http), Settings(), clock=lambda: clock[0])
            return await sync.run(force=force)

    first = asyncio.run(_run())
    rows = asyncio.run(store.select("usgs_station_registry", order_by="site_no"))

    assert first["rivers"] == 1
    assert first["report"] == [{"river": "Arkansas", "stations": 2, "flow": 1, "temp": 1, "wq": 1}]
    assert [(r["site_no"], r["has_flow"], r["has_temp"]) for r in rows] == [
        ("07091200", True, True),
        ("07093700", False, False),
    ]
    assert rows[0]["parameter_codes"] == ["00010", "00060", "00065"]
    assert rows[0]["station_name"] == "Station 07091200"

    clock[0] = NOW + timedelta(hours=2)
    second = asyncio.run(_run())
    assert second["report"] == []
    assert second["skipped"][0]["river"] == "Arkansas"

    forced = asyncio.run(_run(force=True))
    assert len(forced["report"]) == 1
    assert len(asyncio.run(store.select("usgs_station_registry"))) == 2


def test_sync_failure_for_one_river_is_reported(tmp_path):
    store = _store(tmp_path)

    async def _run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(503))) as http:
            return await RegistrySync(store, _ogc(http), Settings(), clock=lambda: NOW).run(river_match="ark")

    result = asyncio.run(_run())

    assert result["report"] == []
    assert result["failed"][0]["river"] == "Arkansas"
    assert "503" in result["failed"][0]["error"]
