# Load environment variables FIRST (before any other imports)
from __future__ import annotations

from dotenv import load_dotenv
load_dotenv()

import logging
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel

# Silence verbose loggers
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
logger = logging.getLogger("web_server")

from config import Settings, load_settings
from core.exceptions import ConfigurationError, RunFatalError, StoreError
from main import run_pipeline
from postgrest_store import open_store
from registrar.ledger import RunLedger

PipelineRunner = Callable[[str, str], Awaitable[Dict[str, Any]]]

app = FastAPI(title="River Intel Ingest")

_settings: Optional[Settings] = None
_store = None


class HealthStatus(BaseModel):
    status: str
    store_backend: str


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def get_store():
    global _store
    if _store is None:
        _store = open_store(get_settings())
    return _store


def get_runner() -> PipelineRunner:
    settings = get_settings()

    async def runner(pipeline: str, cadence: str) -> Dict[str, Any]:
        return await run_pipeline(settings, pipeline, cadence=cadence, store=get_store())

    return runner


async def _trigger(pipeline: str, cadence: Optional[str], runner: PipelineRunner) -> JSONResponse:
    cadence = cadence or "manual"
    try:
        summary = await runner(pipeline, cadence)
    except RunFatalError as e:
        logger.error("%s run fatal: %s (%s)", pipeline, e, e.detail)
        return JSONResponse(status_code=500, content={"error": str(e), "details": e.detail})
    except ConfigurationError as e:
        return JSONResponse(status_code=500, content={"error": str(e), "details": None})
    # finished ingesting, but the ledger could not be closed
    status_code = 207 if summary.get("warning") else 200
    return JSONResponse(status_code=status_code, content=summary)


@app.post("/functions/v1/usgs-ingest")
async def usgs_ingest(
    x_ingest_cadence: Optional[str] = Header(default=None),
    runner: PipelineRunner = Depends(get_runner),
):
    return await _trigger("usgs", x_ingest_cadence, runner)


@app.post("/functions/v1/weather-ingest")
async def weather_ingest(
    x_ingest_cadence: Optional[str] = Header(default=None),
    runner: PipelineRunner = Depends(get_runner),
):
    return await _trigger("weather", x_ingest_cadence, runner)


@app.get("/api/runs")
async def list_runs(
    pipeline: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = Query(default=20, ge=1, le=500),
    store=Depends(get_store),
) -> List[Dict[str, Any]]:
    """Recent ledger entries, newest first."""
    try:
        return await RunLedger(store, pipeline).list_recent_runs(limit=limit, status=status)
    except StoreError as e:
        raise HTTPException(status_code=502, detail=str(e))


@app.get("/api/runs/orphaned")
async def orphaned_runs(
    pipeline: Optional[str] = None,
    older_than_minutes: int = Query(default=120, ge=1),
    store=Depends(get_store),
) -> List[Dict[str, Any]]:
    """Runs still marked running after the threshold (interrupted invocations)."""
    try:
        return await RunLedger(store, pipeline).list_orphaned_runs(timedelta(minutes=older_than_minutes))
    except StoreError as e:
        raise HTTPException(status_code=502, detail=str(e))


@app.get("/api/runs/{run_id}")
async def get_run(run_id: str, store=Depends(get_store)) -> Dict[str, Any]:
    try:
        run = await RunLedger(store, None).get_run(run_id)
    except StoreError as e:
        raise HTTPException(status_code=502, detail=str(e))
    if run is None:
        raise HTTPException(status_code=404, detail=f"Run not found: {run_id}")
    return run


@app.get("/health", response_model=HealthStatus)
def health(settings: Settings = Depends(get_settings)):
    return HealthStatus(status="ok", store_backend=settings.store_backend)


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    uvicorn.run(app, host="0.0.0.0", port=8000)
