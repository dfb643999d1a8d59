from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path
import sys

from dotenv import load_dotenv

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from config import load_settings
from collector.usgs_fetcher import UsgsClient
from core.temp_audit import audit_temp_availability
from postgrest_store import open_store


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Report water temperature availability per station")
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
            result = await audit_temp_availability(store, client)
    finally:
        await store.aclose()

    print(f"{'site':<10} {'IV':<5} {'DV':<5} {'source':<12} river")
    for row in result["report"]:
        print(
            f"{row['site_no']:<10} {str(row['has_temp_iv']):<5} {str(row['has_temp_dv']):<5} "
            f"{row['source']:<12} {row['river']}"
        )
    print(
        f"\n{result['sites']} sites: {result['iv']} live, "
        f"{result['dv_only']} daily only, {result['none']} without temperature"
    )
    if result["upsert_error"]:
        print(f"usgs_site_parameters not updated: {result['upsert_error']}")
    return 0


if __name__ == "__main__":
    raise SystemExit(asyncio.run(_main()))
