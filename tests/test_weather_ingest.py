import asyncio
from datetime import date, datetime, timezone
from pathlib import Path
import sys

import httpx
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from config import RPC_COMPUTE_SCORES, Settings
from collector.weather_fetcher import WeatherClient, summarize_weather_day, window_average
from core.exceptions import ProviderTransportError
from core.weather_ingest import WeatherIngestRun
from database import SQLiteStore

TARGET = date(2024, 5, 1)


def _forecast(day: str, wind_key: str = "wind_speed_10m"):
    hours = [5, 7, 9, 13, 20]
    return {
        "hourly": {
            "time": [f"{day}T{h:02d}:00" for h in hours] + ["2024-05-03T07:00"],
            wind_key: [10, 20, 30, 40, 50, 99],
        },
        "daily": {
            "time": ["2024-04-30", day],
            "temperature_2m_max": [60.0, 71.5],
            "temperature_2m_min": [35.0, 41.2],
            "precipitation_sum": [0.0, 1.4],
            "precipitation_probability_max": [5, 40],
            "wind_speed_10m_max": [12.0, 18.3],
        },
    }


def test_window_average_uses_inclusive_local_hour_windows():
    payload = _forecast("2024-05-01")
    times, winds = payload["hourly"]["time"], payload["hourly"]["wind_speed_10m"]

    assert window_average(times, winds, TARGET, (6, 11)) == 25.0
    assert window_average(times, winds, TARGET, (12, 18)) == 40.0
    assert window_average(times, winds, date(2024, 5, 2), (6, 11)) is None


def test_summary_reads_daily_block_for_target_date():
    day = summarize_weather_day(_forecast("2024-05-01"), river_id=7, target=TARGET)

    assert day.wind_am_mph == 25.0
    assert day.wind_pm_mph == 40.0
    assert day.air_temp_high_f == 71.5
    assert day.air_temp_low_f == 41.2
    assert day.precip_mm == 1.4
    assert day.precip_probability_pct == 40.0
    assert day.wind_speed_max_mph == 18.3
    assert day.to_row()["date"] == "2024-05-01"


def test_summary_without_target_date_leaves_daily_fields_empty():
    day = summarize_weather_day(_forecast("2024-05-02"), river_id=7, target=TARGET)

    assert day.air_temp_high_f is None
    assert day.precip_mm is None
    assert day.wind_am_mph is None


def test_summary_accepts_legacy_wind_key():
    day = summarize_weather_day(_forecast("2024-05-01", wind_key="windspeed_10m"), river_id=7, target=TARGET)

    assert day.wind_pm_mph == 40.0


def test_weather_client_maps_http_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["timezone"] == "America/Denver"
        return httpx.Response(502, text="bad gateway")

    async def _run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            return await WeatherClient(http).fetch_forecast(38.5, -106.0, "America/Denver")

    with pytest.raises(ProviderTransportError) as exc:
        asyncio.run(_run())
    assert exc.value.status_code == 502


class _FakeWeather:
    def __init__(self, fail_for=()):
        self.fail_for = set(fail_for)
        self.calls = []

    async def fetch_forecast(self, lat, lon, tz_name):
        self.calls.append((lat, lon, tz_name))
        if lat in self.fail_for:
            raise ProviderTransportError("Open-Meteo timeout after 15.0s")
        day = "2024-05-02" if tz_name == "Asia/Tokyo" else "2024-05-01"
        return _forecast(day)


def _store(tmp_path):
    store = SQLiteStore(str(tmp_path / "river.db"))
    store.init_schema()

    async def _seed():
        await store.insert("rivers", {"id": 1, "slug": "arkansas", "name": "Arkansas", "lat": 38.5, "lon": -106.0})
        await store.insert("rivers", {
            "id": 2, "slug": "kamo", "name": "Kamo", "lat": 35.0, "lon": 135.7, "timezone": "Asia/Tokyo",
        })
        await store.insert("rivers", {"id": 3, "slug": "nocoords", "name": "No Coords"})
        await store.insert("rivers", {"id": 4, "slug": "gunnison", "name": "Gunnison", "lat": 38.6, "lon": -107.0})

    asyncio.run(_seed())
    return store


def test_weather_run_targets_each_rivers_local_date(tmp_path):
    store = _store(tmp_path)
    recomputed = []
    store.register_procedure(RPC_COMPUTE_SCORES, lambda conn, params: recomputed.append(params["p_obs_date"]))
    client = _FakeWeather(fail_for={38.6})
    clock = lambda: datetime(2024, 5, 2, 3, 0, tzinfo=timezone.utc)

    summary = asyncio.run(WeatherIngestRun(store, client, Settings(), clock=clock).run("daily"))

    assert [c[2] for c in client.calls] == ["America/Denver", "Asia/Tokyo", "America/Denver"]
    assert summary["rivers_total"] == 3
    assert summary["weather_ok"] == 2
    assert summary["weather_failed"] == 1
    assert summary["errors"][0]["slug"] == "gunnison"
    assert summary["status"] == "partial"
    assert summary["score_recompute_error"] is None
    assert recomputed == ["2024-05-01", "2024-05-02"]

    rows = asyncio.run(store.select("weather_daily", order_by="river_id"))
    assert [(r["river_id"], r["date"]) for r in rows] == [(1, "2024-05-01"), (2, "2024-05-02")]
    assert rows[0]["wind_am_mph"] == 25.0

    logs = asyncio.run(store.select("ingest_site_logs", order_by="river_id"))
    assert [(log["river_id"], log["status"]) for log in logs] == [(1, "success"), (2, "success"), (4, "failed")]


def test_weather_recompute_failure_is_reported(tmp_path):
    store = _store(tmp_path)

    def broken(conn, params):
        raise KeyError("p_obs_date")

    store.register_procedure(RPC_COMPUTE_SCORES, broken)
    clock = lambda: datetime(2024, 5, 1, 18, 0, tzinfo=timezone.utc)

    summary = asyncio.run(WeatherIngestRun(store, _FakeWeather(), Settings(), clock=clock).run())

    assert summary["status"] == "success"
    assert "rejected parameters" in summary["score_recompute_error"]
    run = asyncio.run(store.select("ingest_runs"))[0]
    assert run["error_message"] == summary["score_recompute_error"]


def test_weather_recompute_runs_once_when_rivers_share_a_local_date(tmp_path):
    store = _store(tmp_path)
    recomputed = []
    store.register_procedure(RPC_COMPUTE_SCORES, lambda conn, params: recomputed.append(params["p_obs_date"]))
    # 02:00 in Denver, 17:00 in Tokyo: both on May 1
    clock = lambda: datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc)

    summary = asyncio.run(WeatherIngestRun(store, _FakeWeather(), Settings(), clock=clock).run())

    assert summary["weather_ok"] == 3
    assert recomputed == ["2024-05-01"]
