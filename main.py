# River Intel - Main Orchestrator
# Scheduler for USGS and weather ingestion runs.

# Load environment variables FIRST (before any other imports)
from dotenv import load_dotenv
load_dotenv()

import argparse
import asyncio
import json
import logging
import sys
import time
from typing import Any, Dict, List, Optional

import httpx
import schedule

from config import USER_AGENT, Settings, load_settings
from collector.usgs_fetcher import UsgsClient
from collector.weather_fetcher import WeatherClient
from core.exceptions import IngestError, RunFatalError
from core.usgs_ingest import UsgsIngestRun
from core.weather_ingest import WeatherIngestRun
from postgrest_store import open_store

logger = logging.getLogger("main")

PIPELINES = ("usgs", "weather")


async def run_pipeline(
    settings: Settings,
    pipeline: str,
    cadence: str = "scheduled",
    store=None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Dict[str, Any]:
    """Run one ingestion pipeline with its own HTTP client."""
    if pipeline not in PIPELINES:
        raise ValueError(f"Unknown pipeline: {pipeline}")
    owns_store = store is None
    store = store or open_store(settings)
    try:
        async with httpx.AsyncClient(
            timeout=settings.http_timeout_seconds,
            headers={"User-Agent": USER_AGENT},
            transport=transport,
        ) as http:
            if pipeline == "usgs":
                client = UsgsClient(
                    http,
                    timeout=settings.http_timeout_seconds,
                    live_period=settings.live_period,
                    delayed_period=settings.delayed_period,
                )
                summary = await UsgsIngestRun(store, client, settings).run(cadence)
                logger.info("USGS requests this run: %d", client.request_count)
                return summary
            weather = WeatherClient(http, timeout=settings.http_timeout_seconds)
            return await WeatherIngestRun(store, weather, settings).run(cadence)
    finally:
        if owns_store:
            await store.aclose()


def run_job(settings: Settings, pipeline: str) -> None:
    """Scheduler job wrapper: one event loop per run, errors logged not raised."""
    try:
        summary = asyncio.run(run_pipeline(settings, pipeline, cadence="scheduled"))
    except RunFatalError as e:
        logger.error("%s run aborted: %s (%s)", pipeline, e, e.detail)
        return
    except IngestError as e:
        logger.error("%s run failed: %s", pipeline, e)
        return
    logger.info("%s run %s: %s", pipeline, summary.get("run_id"), summary.get("status"))


def _selected(choice: str) -> List[str]:
    return list(PIPELINES) if choice == "both" else [choice]


def main():
    """Main entry point with scheduler."""
    parser = argparse.ArgumentParser(description="River Intel ingestion scheduler")
    parser.add_argument("--once", action="store_true", help="Run the selected pipelines once and exit")
    parser.add_argument("--pipeline", choices=["usgs", "weather", "both"], default="both")
    parser.add_argument("--cadence", default="manual", help="Cadence label recorded with --once runs")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    settings = load_settings()
    pipelines = _selected(args.pipeline)

    if args.once:
        exit_code = 0
        for pipeline in pipelines:
            try:
                summary = asyncio.run(run_pipeline(settings, pipeline, cadence=args.cadence))
            except RunFatalError as e:
                print(json.dumps({"error": str(e), "details": e.detail}, indent=2))
                exit_code = 1
                continue
            print(json.dumps(summary, indent=2, default=str))
        sys.exit(exit_code)

    if "usgs" in pipelines:
        schedule.every(settings.ingest_interval_minutes).minutes.do(run_job, settings, "usgs")
        logger.info("USGS ingest scheduled every %d minutes", settings.ingest_interval_minutes)
    if "weather" in pipelines:
        schedule.every().day.at(settings.weather_at).do(run_job, settings, "weather")
        logger.info("Weather ingest scheduled daily at %s", settings.weather_at)

    # Initial run so a restart does not wait a full interval
    for pipeline in pipelines:
        run_job(settings, pipeline)

    try:
        while True:
            schedule.run_pending()
            time.sleep(30)
    except KeyboardInterrupt:
        logger.info("Stopping scheduler")


if __name__ == "__main__":
    main()
