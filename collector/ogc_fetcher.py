"""
River Intel - USGS OGC API Fetcher
Monitoring-location search by bounding box and time-series metadata probes,
used to discover which nearby stations can report flow or water temperature.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx

from config import (
    FLOW_CAPABILITY_CODES,
    TEMP_CAPABILITY_CODES,
    USER_AGENT,
    USGS_OGC_BASE_URL,
)
from collector.rate_limiter import DomainRateLimiter
from core.exceptions import ProviderTransportError

logger = logging.getLogger("ogc_fetcher")

_RETRY_STATUS = {429, 500, 502, 503, 504}

BBox = Tuple[float, float, float, float]


@dataclass
class StationProbe:
    """One monitoring location and the parameter codes it publishes."""
    monitoring_location_id: str
    site_no: str
    station_name: Optional[str]
    latitude: Optional[float]
    longitude: Optional[float]
    parameter_codes: List[str] = field(default_factory=list)
    properties: Dict[str, Any] = field(default_factory=dict)

    @property
    def has_flow(self) -> bool:
        return any(c in FLOW_CAPABILITY_CODES for c in self.parameter_codes)

    @property
    def has_temp(self) -> bool:
        return any(c in TEMP_CAPABILITY_CODES for c in self.parameter_codes)

    @property
    def has_wq(self) -> bool:
        return any(
            c not in FLOW_CAPABILITY_CODES and c not in TEMP_CAPABILITY_CODES
            for c in self.parameter_codes
        )


def to_site_no(value: Optional[str]) -> Optional[str]:
    """'USGS-09085000' -> '09085000'; falls back to the first 6+ digit run."""
    if not value:
        return None
    match = re.search(r"USGS-(\d+)", value, re.IGNORECASE)
    if match:
        return match.group(1)
    digits = re.search(r"\d{6,}", value)
    return digits.group(0) if digits else None


def monitoring_id(feature: Dict[str, Any]) -> Optional[str]:
    props = feature.get("properties") or {}
    raw = (
        props.get("monitoring_location_id")
        or props.get("monitoringLocationIdentifier")
        or props.get("monitoring_location_identifier")
        or props.get("identifier")
        or feature.get("id")
    )
    if not raw:
        return None
    raw = str(raw)
    if raw.upper().startswith("USGS-"):
        return raw
    site_no = to_site_no(raw)
    return f"USGS-{site_no}" if site_no else raw


def extract_parameter_codes(ts_payload: Any) -> List[str]:
    if not isinstance(ts_payload, dict):
        return []
    features = ts_payload.get("features") or ts_payload.get("items") or []
    codes = set()
    for feature in features:
        props = (feature or {}).get("properties") or {}
        for key in ("parameter_code", "parameterCd", "observed_property_code", "variable_code"):
            value = props.get(key)
            if value and str(value).strip():
                codes.add(str(value).strip())
        for extra in props.get("parameter_codes") or []:
            if extra and str(extra).strip():
                codes.add(str(extra).strip())
    return sorted(codes)


def _as_float(raw: Any) -> Optional[float]:
    try:
        return float(raw)
    except (TypeError, ValueError):
        return None


def build_probe(feature: Dict[str, Any], ts_payload: Any) -> Optional[StationProbe]:
    location_id = monitoring_id(feature)
    site_no = to_site_no(location_id)
    if not location_id or not site_no:
        return None
    props = feature.get("properties") or {}
    coords = (feature.get("geometry") or {}).get("coordinates") or []
    return StationProbe(
        monitoring_location_id=location_id,
        site_no=site_no,
        station_name=props.get("monitoring_location_name") or props.get("name"),
        longitude=_as_float(coords[0] if len(coords) > 0 else props.get("longitude")),
        latitude=_as_float(coords[1] if len(coords) > 1 else props.get("latitude")),
        parameter_codes=extract_parameter_codes(ts_payload),
        properties=dict(props),
    )


def padded_bbox(lat: float, lon: float, pad_deg: float) -> BBox:
    return (lon - pad_deg, lat - pad_deg, lon + pad_deg, lat + pad_deg)


class OgcClient:
    """
    Rate-limited OGC API client.

    Every request waits on the shared DomainRateLimiter, then retries 429/5xx
    using Retry-After when given, otherwise exponential backoff with jitter.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        limiter: Optional[DomainRateLimiter] = None,
        max_retries: int = 6,
        base_backoff_seconds: float = 1.2,
        page_size: int = 100,
        max_pages: int = 10,
        timeout: float = 25.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout, headers={"User-Agent": USER_AGENT})
        self.limiter = limiter or DomainRateLimiter(0.9)
        self.max_retries = max_retries
        self.base_backoff_seconds = base_backoff_seconds
        self.page_size = page_size
        self.max_pages = max_pages
        self._sleep = sleep
        self._ts_cache: Dict[str, Any] = {}

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _backoff(self, attempt: int, retry_after: Optional[str]) -> float:
        try:
            seconds = float(retry_after) if retry_after else 0.0
        except ValueError:
            seconds = 0.0
        if seconds <= 0:
            seconds = self.base_backoff_seconds * (2 ** attempt)
        return seconds + random.uniform(0.0, 0.35)

    async def get_json(self, url: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        for attempt in range(self.max_retries + 1):
            await self.limiter.acquire(url)
            try:
                response = await self._client.get(url, params=params)
            except httpx.RequestError as e:
                if attempt >= self.max_retries:
                    raise ProviderTransportError(f"OGC network error: {e}") from e
                await self._sleep(self._backoff(attempt, None))
                continue

            if response.status_code < 400:
                try:
                    return response.json()
                except (json.JSONDecodeError, ValueError) as e:
                    raise ProviderTransportError("OGC returned invalid JSON", response.status_code) from e

            if response.status_code not in _RETRY_STATUS or attempt >= self.max_retries:
                raise ProviderTransportError(
                    f"HTTP {response.status_code}: {url}", status_code=response.status_code
                )
            delay = self._backoff(attempt, response.headers.get("retry-after"))
            logger.info("OGC %s -> %s, retry in %.1fs", url, response.status_code, delay)
            await self._sleep(delay)

        raise ProviderTransportError(f"HTTP retry failed: {url}")

    async def monitoring_locations(self, bbox: BBox, max_features: int = 40) -> List[Dict[str, Any]]:
        """Page through monitoring locations inside the bbox."""
        url = f"{USGS_OGC_BASE_URL}/monitoring-locations/items"
        bbox_param = ",".join(f"{v:.6f}" for v in bbox)
        out: List[Dict[str, Any]] = []
        for page in range(self.max_pages):
            payload = await self.get_json(url, params={
                "bbox": bbox_param,
                "f": "json",
                "limit": self.page_size,
                "offset": page * self.page_size,
            })
            chunk = payload.get("features") or payload.get("items") or []
            if not chunk:
                break
            out.extend(chunk)
            if len(chunk) < self.page_size:
                break
            if max_features > 0 and len(out) >= max_features:
                break
        return out[:max_features] if max_features > 0 else out

    async def time_series_metadata(self, location_id: str) -> Any:
        """Probe a location's published series; failures cache as empty."""
        if location_id in self._ts_cache:
            return self._ts_cache[location_id]
        url = f"{USGS_OGC_BASE_URL}/time-series-metadata/items"
        try:
            payload = await self.get_json(url, params={
                "monitoring_location_id": location_id,
                "f": "json",
                "limit": 500,
            })
        except ProviderTransportError as e:
            logger.warning("Metadata probe failed for %s: %s", location_id, e)
            payload = {}
        self._ts_cache[location_id] = payload
        return payload
