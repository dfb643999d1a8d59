import asyncio
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
import sys

from fastapi.testclient import TestClient

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import web_server
from config import Settings
from core.exceptions import RunFatalError
from database import SQLiteStore
from main import run_pipeline
from registrar.ledger import RunLedger


def _client(tmp_path, runner=None):
    store = SQLiteStore(str(tmp_path / "river.db"))
    store.init_schema()
    web_server.app.dependency_overrides[web_server.get_store] = lambda: store
    web_server.app.dependency_overrides[web_server.get_settings] = lambda: Settings()
    if runner is not None:
        web_server.app.dependency_overrides[web_server.get_runner] = lambda: runner
    return TestClient(web_server.app), store


def teardown_function(_fn):
    web_server.app.dependency_overrides.clear()


def test_ingest_trigger_passes_cadence_header_to_runner(tmp_path):
    calls = []

    async def runner(pipeline, cadence):
        calls.append((pipeline, cadence))
        return {"run_id": "r1", "status": "success", "rivers_ok": 3}

    client, _ = _client(tmp_path, runner)

    hourly = client.post("/functions/v1/usgs-ingest", headers={"x-ingest-cadence": "hourly"})
    manual = client.post("/functions/v1/weather-ingest")

    assert hourly.status_code == 200
    assert hourly.json()["rivers_ok"] == 3
    assert manual.status_code == 200
    assert calls == [("usgs", "hourly"), ("weather", "manual")]


def test_fatal_run_returns_500_with_details(tmp_path):
    async def runner(pipeline, cadence):
        raise RunFatalError("Failed to create ingestion run", detail="relation ingest_runs does not exist")

    client, _ = _client(tmp_path, runner)

    response = client.post("/functions/v1/usgs-ingest")

    assert response.status_code == 500
    assert response.json() == {
        "error": "Failed to create ingestion run",
        "details": "relation ingest_runs does not exist",
    }


def test_unclosed_ledger_returns_207(tmp_path):
    async def runner(pipeline, cadence):
        return {"run_id": "r1", "status": "success", "warning": "Ingest complete but run summary update failed"}

    client, _ = _client(tmp_path, runner)

    response = client.post("/functions/v1/usgs-ingest")

    assert response.status_code == 207
    assert response.json()["warning"].startswith("Ingest complete")


def test_run_listing_detail_and_orphans(tmp_path):
    client, store = _client(tmp_path)
    clock = lambda: datetime.now(timezone.utc) - timedelta(hours=3)
    ledger = RunLedger(store, "usgs", clock=clock)

    async def _seed():
        stuck = await ledger.start_run("hourly", date(2024, 5, 1))
        done = await ledger.start_run("hourly", date(2024, 5, 1))
        await ledger.log_site(done, 1, {"status": "success"})
        await ledger.finish_run(done, ok=1, failed=0)
        return stuck, done

    stuck, done = asyncio.run(_seed())

    runs = client.get("/api/runs", params={"pipeline": "usgs"})
    assert runs.status_code == 200
    assert {r["id"] for r in runs.json()} == {stuck, done}

    finished = client.get("/api/runs", params={"status": "success"}).json()
    assert [r["id"] for r in finished] == [done]

    orphaned = client.get("/api/runs/orphaned")
    assert orphaned.status_code == 200
    assert [r["id"] for r in orphaned.json()] == [stuck]

    detail = client.get(f"/api/runs/{done}")
    assert detail.status_code == 200
    assert detail.json()["sites"][0]["status"] == "success"

    assert client.get("/api/runs/does-not-exist").status_code == 404


def test_health_reports_backend(tmp_path):
    client, _ = _client(tmp_path)

    response = client.get("/health")

    assert response.json() == {"status": "ok", "store_backend": "sqlite"}


def test_run_pipeline_with_empty_river_table(tmp_path):
    store = SQLiteStore(str(tmp_path / "river.db"))
    store.init_schema()
    settings = Settings(database_path=str(tmp_path / "river.db"))

    summary = asyncio.run(run_pipeline(settings, "usgs", cadence="manual", store=store))

    assert summary["status"] == "success"
    assert summary["rivers_total"] == 0
    assert asyncio.run(store.select("ingest_runs"))[0]["status"] == "success"
