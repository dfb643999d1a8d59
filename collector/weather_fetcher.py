"""
River Intel - Weather Fetcher
Open-Meteo daily extremes and hourly wind for a river's coordinates, summarized
into one WeatherDay per local calendar date.
"""

from __future__ import annotations

import json
import logging
import math
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx

from config import OPEN_METEO_URL, USER_AGENT, WIND_AM_HOURS, WIND_PM_HOURS
from core.exceptions import ProviderTransportError
from core.models import WeatherDay

logger = logging.getLogger("weather_fetcher")

DAILY_FIELDS = (
    "temperature_2m_max",
    "temperature_2m_min",
    "precipitation_sum",
    "precipitation_probability_max",
    "wind_speed_10m_max",
)


def _finite(raw: Any) -> Optional[float]:
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    return value if math.isfinite(value) else None


def _at(values: Sequence[Any], idx: Optional[int]) -> Optional[float]:
    if idx is None or idx >= len(values):
        return None
    return _finite(values[idx])


def window_average(
    times: Sequence[Any],
    values: Sequence[Any],
    target: date,
    hours: Tuple[int, int],
) -> Optional[float]:
    """
    Mean of finite values whose local timestamp falls on `target` within the
    inclusive hour window. Returns None when no point contributes.
    """
    start, end = hours
    picked: List[float] = []
    for ts, raw in zip(times, values):
        if not isinstance(ts, str):
            continue
        try:
            when = datetime.fromisoformat(ts)
        except ValueError:
            continue
        value = _finite(raw)
        if value is None or when.date() != target:
            continue
        if start <= when.hour <= end:
            picked.append(value)
    if not picked:
        return None
    return round(sum(picked) / len(picked), 1)


def summarize_weather_day(payload: Dict[str, Any], river_id: int, target: date) -> WeatherDay:
    """Build the weather_daily row for `target` from an Open-Meteo response."""
    daily = payload.get("daily") or {}
    hourly = payload.get("hourly") or {}

    day_key = target.isoformat()
    daily_times = list(daily.get("time") or [])
    idx = daily_times.index(day_key) if day_key in daily_times else None
    if idx is None:
        logger.debug("Daily block has no entry for %s (river %s)", day_key, river_id)

    hourly_times = hourly.get("time") or []
    hourly_wind = hourly.get("wind_speed_10m") or hourly.get("windspeed_10m") or []

    return WeatherDay(
        river_id=river_id,
        date=target,
        wind_am_mph=window_average(hourly_times, hourly_wind, target, WIND_AM_HOURS),
        wind_pm_mph=window_average(hourly_times, hourly_wind, target, WIND_PM_HOURS),
        air_temp_high_f=_at(daily.get("temperature_2m_max") or [], idx),
        air_temp_low_f=_at(daily.get("temperature_2m_min") or [], idx),
        precip_mm=_at(daily.get("precipitation_sum") or [], idx),
        precip_probability_pct=_at(daily.get("precipitation_probability_max") or [], idx),
        wind_speed_max_mph=_at(daily.get("wind_speed_10m_max") or [], idx),
    )


class WeatherClient:
    def __init__(self, client: Optional[httpx.AsyncClient] = None, timeout: float = 15.0):
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout, headers={"User-Agent": USER_AGENT})
        self.timeout = timeout

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def fetch_forecast(self, latitude: float, longitude: float, tz_name: str) -> Dict[str, Any]:
        params = {
            "latitude": latitude,
            "longitude": longitude,
            "hourly": "wind_speed_10m",
            "daily": ",".join(DAILY_FIELDS),
            "temperature_unit": "fahrenheit",
            "windspeed_unit": "mph",
            "precipitation_unit": "mm",
            "timezone": tz_name,
        }
        try:
            response = await self._client.get(OPEN_METEO_URL, params=params)
        except httpx.TimeoutException as e:
            raise ProviderTransportError(f"Open-Meteo timeout after {self.timeout}s") from e
        except httpx.RequestError as e:
            raise ProviderTransportError(f"Open-Meteo network error: {e}") from e

        if response.status_code >= 400:
            raise ProviderTransportError(
                f"Open-Meteo HTTP {response.status_code}", status_code=response.status_code
            )
        try:
            data = response.json()
        except (json.JSONDecodeError, ValueError) as e:
            raise ProviderTransportError("Open-Meteo returned invalid JSON", response.status_code) from e
        if not isinstance(data, dict):
            raise ProviderTransportError("Open-Meteo returned an unexpected body", response.status_code)
        return data
