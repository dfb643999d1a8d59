"""
USGS WaterML-JSON time-series parser.

Turns a raw `value.timeSeries[]` payload into a ParsedSeries: the latest valid
reading per parameter code plus a merged recent history. Missing or malformed
data never raises; it simply yields absent values.
"""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timezone, tzinfo
from typing import Any, Dict, Iterable, List, Optional
import logging
import math

from config import (
    PARAM_WATER_TEMP,
    SENTINEL_THRESHOLD,
    WATER_TEMP_MAX_C,
    WATER_TEMP_MIN_C,
)
from core.models import HistoryRow, ParameterObservation, ParsedSeries, SeriesPoint
from core.timeutil import parse_timestamp, to_utc_iso

logger = logging.getLogger("timeseries_parser")

DEFAULT_HISTORY_LIMIT = 72
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _safe_float(raw: Any) -> Optional[float]:
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    return value if math.isfinite(value) else None


def is_valid_reading(raw: Any) -> bool:
    """Finite and above the provider sentinel threshold (-9999 etc.)."""
    value = _safe_float(raw)
    return value is not None and value > SENTINEL_THRESHOLD


def celsius_to_fahrenheit(celsius: float) -> float:
    return round(celsius * 9.0 / 5.0 + 32.0, 2)


def normalize_value(code: str, value: float) -> Optional[float]:
    """Apply unit policy. Water temperature outside the sanity band is dropped."""
    if code == PARAM_WATER_TEMP:
        if value < WATER_TEMP_MIN_C or value > WATER_TEMP_MAX_C:
            return None
        return celsius_to_fahrenheit(value)
    return value


def _series_code(ts: Dict[str, Any]) -> Optional[str]:
    codes = (ts.get("variable") or {}).get("variableCode") or []
    if not codes or not isinstance(codes, list):
        return None
    code = (codes[0] or {}).get("value")
    return str(code).strip() if code else None


def _raw_points(ts: Dict[str, Any]) -> Iterable[Dict[str, Any]]:
    for block in ts.get("values") or []:
        for row in (block or {}).get("value") or []:
            if isinstance(row, dict):
                yield row


def _latest_valid(rows: List[Dict[str, Any]], default_tz: Optional[tzinfo]):
    """Scan backward from the most recent point to the first valid one."""
    for row in reversed(rows):
        observed_at = parse_timestamp(row.get("dateTime"), default_tz)
        if observed_at is None or not is_valid_reading(row.get("value")):
            continue
        return row, observed_at, float(row["value"])
    return None, None, None


def _parse_code(
    code: str,
    rows: List[Dict[str, Any]],
    meta: Dict[str, Any],
    default_tz: Optional[tzinfo],
) -> ParameterObservation:
    rows = sorted(rows, key=lambda r: parse_timestamp(r.get("dateTime"), default_tz) or _EPOCH)
    obs = ParameterObservation(code=code)

    row, observed_at, raw_value = _latest_valid(rows, default_tz)
    if row is not None:
        obs.value = normalize_value(code, raw_value)
        obs.observed_at = observed_at if obs.value is not None else None
        obs.qualifiers = [str(q) for q in (row.get("qualifiers") or [])]

    latest = rows[-1] if rows else {}
    obs.summary = {
        "observed_at": to_utc_iso(observed_at) if row is not None else latest.get("dateTime"),
        "value": raw_value,
        "qualifiers": obs.qualifiers if row is not None else list(latest.get("qualifiers") or []),
        "unit": meta.get("unit"),
        "description": meta.get("description"),
    }

    for r in rows:
        if not is_valid_reading(r.get("value")):
            continue
        ts = parse_timestamp(r.get("dateTime"), default_tz)
        value = normalize_value(code, float(r["value"]))
        if ts is None or value is None:
            continue
        obs.points.append(SeriesPoint(code=code, observed_at=ts, value=value))
    return obs


def merge_history(
    observations: Iterable[ParameterObservation],
    limit: int = DEFAULT_HISTORY_LIMIT,
) -> List[HistoryRow]:
    """Merge per-code points by timestamp, ascending, keeping the last `limit` rows."""
    by_ts: Dict[datetime, HistoryRow] = {}
    for obs in observations:
        for point in obs.points:
            row = by_ts.setdefault(point.observed_at, HistoryRow(observed_at=point.observed_at))
            row.values[point.code] = point.value
    rows = sorted(by_ts.values(), key=lambda r: r.observed_at)
    if limit <= 0:
        return []
    return rows[-limit:]


def parse_time_series(
    payload: Any,
    default_tz: Optional[tzinfo] = None,
    history_limit: int = DEFAULT_HISTORY_LIMIT,
) -> ParsedSeries:
    """
    Parse a USGS IV/DV JSON payload.

    A code listed in the payload with no usable point is kept with value None
    (present but absent); a code not listed at all is missing from the result.
    `default_tz` localizes offset-less timestamps (daily values).
    """
    if not isinstance(payload, dict):
        return ParsedSeries()

    series = (payload.get("value") or {}).get("timeSeries") or []
    rows_by_code: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
    meta_by_code: Dict[str, Dict[str, Any]] = {}

    for ts in series:
        if not isinstance(ts, dict):
            continue
        code = _series_code(ts)
        if not code:
            continue
        rows_by_code[code].extend(_raw_points(ts))
        variable = ts.get("variable") or {}
        meta_by_code.setdefault(code, {
            "unit": (variable.get("unit") or {}).get("unitCode"),
            "description": variable.get("variableDescription"),
        })

    observations = {
        code: _parse_code(code, rows, meta_by_code.get(code, {}), default_tz)
        for code, rows in rows_by_code.items()
    }
    parsed = ParsedSeries(
        observations=observations,
        history=merge_history(observations.values(), history_limit),
    )
    logger.debug("Parsed %d series: %s", len(observations), parsed.parameter_codes)
    return parsed
