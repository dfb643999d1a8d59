from __future__ import annotations

import argparse
import asyncio
import json
import logging
from pathlib import Path
import sys

from dotenv import load_dotenv

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from config import load_settings
from collector.usgs_fetcher import UsgsClient
from core.backfill import DEFAULT_DAYS, backfill_daily_flow
from postgrest_store import open_store


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Backfill river_daily flow from USGS daily values")
    parser.add_argument("--days", type=int, default=DEFAULT_DAYS, help="Days to backfill")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    return parser


async def _main() -> int:
    load_dotenv()
    args = _build_parser().parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)

    settings = load_settings()
    store = open_store(settings)
    try:
        async with UsgsClient(timeout=settings.http_timeout_seconds) as client:
            result = await backfill_daily_flow(store, client, days=args.days, settings=settings)
    finally:
        await store.aclose()

    print(json.dumps(result, indent=2, default=str))
    return 0


if __name__ == "__main__":
    raise SystemExit(asyncio.run(_main()))
