from __future__ import annotations

import argparse
import asyncio
import json
import logging
from pathlib import Path
import sys

from dotenv import load_dotenv

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import httpx

from config import USER_AGENT, load_settings
from collector.ogc_fetcher import OgcClient
from collector.rate_limiter import DomainRateLimiter
from core.registry_sync import RegistrySync
from postgrest_store import open_store


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Sync USGS monitoring locations near each river")
    parser.add_argument("--river", help="Only rivers whose name, slug or id contains this text")
    parser.add_argument("--force", action="store_true", help="Re-probe rivers checked recently")
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
    limiter = DomainRateLimiter(settings.ogc_min_interval_seconds)
    try:
        async with httpx.AsyncClient(timeout=25.0, headers={"User-Agent": USER_AGENT}) as http:
            ogc = OgcClient(
                http,
                limiter,
                max_retries=settings.ogc_max_retries,
                base_backoff_seconds=settings.ogc_base_backoff_seconds,
                page_size=settings.ogc_page_size,
                max_pages=settings.ogc_max_pages,
            )
            summary = await RegistrySync(store, ogc, settings).run(river_match=args.river, force=args.force)
    finally:
        await store.aclose()

    print(json.dumps(summary, indent=2, default=str))
    return 1 if summary["failed"] else 0


if __name__ == "__main__":
    raise SystemExit(asyncio.run(_main()))
