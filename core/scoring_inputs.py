"""
Stale-value policy for the scoring stage.

Stale observations are persisted as-is with an explicit `<role>_is_stale`
flag; whether scoring sees them is decided here, in one place.
"""

from typing import Any, Dict, Optional, Tuple

from config import STALE_POLICIES

FRESH = "fresh"
STALE_INCLUDED = "stale_included"
STALE_EXCLUDED = "stale_excluded"
MISSING = "missing"


def scoring_input(
    value: Optional[float],
    is_stale: Optional[bool],
    policy: str = "exclude",
) -> Tuple[Optional[float], str]:
    """
    Returns (value_for_scoring, status).

    `exclude` turns a stale value into a missing input; `include` passes it
    through flagged as stale_included.
    """
    if policy not in STALE_POLICIES:
        raise ValueError(f"Unknown stale value policy: {policy}")
    if value is None:
        return None, MISSING
    if not is_stale:
        return value, FRESH
    if policy == "include":
        return value, STALE_INCLUDED
    return None, STALE_EXCLUDED


def build_score_input_row(
    river_id: int,
    obs_date: str,
    daily: Optional[Dict[str, Any]],
    weather: Optional[Dict[str, Any]],
    policy: str,
    computed_at: str,
) -> Dict[str, Any]:
    """Materialize one river_score_inputs row from river_daily + weather_daily."""
    daily = daily or {}
    weather = weather or {}
    flow, flow_status = scoring_input(daily.get("flow_cfs"), daily.get("flow_is_stale"), policy)
    temp, temp_status = scoring_input(daily.get("water_temp_f"), daily.get("temp_is_stale"), policy)
    return {
        "river_id": river_id,
        "obs_date": obs_date,
        "flow_cfs": flow,
        "flow_status": flow_status,
        "flow_change_pct": daily.get("flow_change_pct"),
        "water_temp_f": temp,
        "temp_status": temp_status,
        "temp_unavailable_reason": daily.get("temp_unavailable_reason"),
        "wind_am_mph": weather.get("wind_am_mph"),
        "wind_pm_mph": weather.get("wind_pm_mph"),
        "air_temp_high_f": weather.get("air_temp_high_f"),
        "precip_mm": weather.get("precip_mm"),
        "stale_policy": policy,
        "computed_at": computed_at,
    }
