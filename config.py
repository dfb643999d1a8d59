"""
River Intel - Configuration
Central configuration for telemetry providers, freshness windows and storage.
"""

from dataclasses import dataclass
from typing import Mapping, Optional
import logging
import os

logger = logging.getLogger("config")

# ============================================================================
# PROVIDER ENDPOINTS
# ============================================================================

# USGS NWIS instantaneous values (live feed)
USGS_IV_URL = "https://waterservices.usgs.gov/nwis/iv/"

# USGS NWIS daily values (delayed feed)
USGS_DV_URL = "https://waterservices.usgs.gov/nwis/dv/"

# USGS OGC API (monitoring-location registry probes)
USGS_OGC_BASE_URL = "https://api.waterdata.usgs.gov/ogcapi/v0/collections"

# Open-Meteo forecast API
OPEN_METEO_URL = "https://api.open-meteo.com/v1/forecast"

USER_AGENT = "river-intel-ingest/1.0"

# ============================================================================
# USGS PARAMETER CODES
# ============================================================================

PARAM_FLOW = "00060"         # Discharge, cubic feet per second
PARAM_WATER_TEMP = "00010"   # Water temperature, degrees Celsius
PARAM_GAGE_HEIGHT = "00065"  # Gage height, feet

INGEST_PARAMETER_CODES = (PARAM_FLOW, PARAM_WATER_TEMP, PARAM_GAGE_HEIGHT)

# Alternate codes that also indicate capability in the OGC metadata
FLOW_CAPABILITY_CODES = frozenset({"00060", "72137"})
TEMP_CAPABILITY_CODES = frozenset({"00010", "72214"})

# Daily-value statistic: mean
DV_STAT_MEAN = "00003"

# Values at or below this are provider sentinels (-9999, -999999)
SENTINEL_THRESHOLD = -9990.0

# Sanity bound for water temperature readings (Celsius)
WATER_TEMP_MIN_C = -5.0
WATER_TEMP_MAX_C = 35.0

# ============================================================================
# DOWNSTREAM PROCEDURES
# ============================================================================

RPC_REFRESH_METRICS = "refresh_river_daily_metrics"
RPC_COMPUTE_SCORES = "compute_daily_scores"

# ============================================================================
# WEATHER SUMMARY WINDOWS (local hours, inclusive)
# ============================================================================

WIND_AM_HOURS = (6, 11)
WIND_PM_HOURS = (12, 18)

STALE_POLICIES = ("exclude", "include")
STORE_BACKENDS = ("sqlite", "postgrest")


@dataclass
class Settings:
    """Runtime settings resolved from the environment."""
    database_path: str = "river_intel.db"
    store_backend: str = "sqlite"
    supabase_url: Optional[str] = None
    supabase_service_role_key: Optional[str] = None
    default_timezone: str = "America/Denver"
    http_timeout_seconds: float = 30.0
    live_window_hours: float = 72.0
    delayed_window_hours: float = 240.0
    hourly_point_limit: int = 72
    live_period: str = "P7D"
    delayed_period: str = "P14D"
    stale_value_policy: str = "exclude"
    ingest_interval_minutes: int = 60
    weather_at: str = "05:30"
    # Registry sync (USGS OGC)
    ogc_min_interval_seconds: float = 0.9
    ogc_max_retries: int = 6
    ogc_base_backoff_seconds: float = 1.2
    ogc_max_stations_per_river: int = 40
    ogc_skip_fresh_hours: float = 24.0
    ogc_bbox_pad_deg: float = 0.12
    ogc_page_size: int = 100
    ogc_max_pages: int = 10


def _env_float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Invalid %s=%r, using default %s", key, raw, default)
        return default


def _env_int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid %s=%r, using default %s", key, raw, default)
        return default


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """Build Settings from environment variables (call load_dotenv() first)."""
    env = os.environ if env is None else env
    defaults = Settings()

    backend = (env.get("RIVER_STORE_BACKEND") or defaults.store_backend).strip().lower()
    if backend not in STORE_BACKENDS:
        raise ValueError(f"Unknown RIVER_STORE_BACKEND: {backend}")

    policy = (env.get("RIVER_STALE_VALUE_POLICY") or defaults.stale_value_policy).strip().lower()
    if policy not in STALE_POLICIES:
        raise ValueError(f"Unknown RIVER_STALE_VALUE_POLICY: {policy}")

    return Settings(
        database_path=env.get("RIVER_DB_PATH") or defaults.database_path,
        store_backend=backend,
        supabase_url=env.get("SUPABASE_URL") or None,
        supabase_service_role_key=env.get("SUPABASE_SERVICE_ROLE_KEY") or None,
        default_timezone=env.get("RIVER_DEFAULT_TIMEZONE") or defaults.default_timezone,
        http_timeout_seconds=_env_float(env, "RIVER_HTTP_TIMEOUT_SECONDS", defaults.http_timeout_seconds),
        live_window_hours=_env_float(env, "RIVER_LIVE_WINDOW_HOURS", defaults.live_window_hours),
        delayed_window_hours=_env_float(env, "RIVER_DELAYED_WINDOW_HOURS", defaults.delayed_window_hours),
        hourly_point_limit=_env_int(env, "RIVER_HOURLY_POINT_LIMIT", defaults.hourly_point_limit),
        live_period=env.get("USGS_IV_PERIOD") or defaults.live_period,
        delayed_period=env.get("USGS_DV_PERIOD") or defaults.delayed_period,
        stale_value_policy=policy,
        ingest_interval_minutes=_env_int(env, "RIVER_INGEST_INTERVAL_MINUTES", defaults.ingest_interval_minutes),
        weather_at=env.get("RIVER_WEATHER_AT") or defaults.weather_at,
        ogc_min_interval_seconds=_env_float(env, "USGS_OGC_MIN_INTERVAL_SECONDS", defaults.ogc_min_interval_seconds),
        ogc_max_retries=_env_int(env, "USGS_OGC_MAX_RETRIES", defaults.ogc_max_retries),
        ogc_base_backoff_seconds=_env_float(env, "USGS_OGC_BASE_BACKOFF_SECONDS", defaults.ogc_base_backoff_seconds),
        ogc_max_stations_per_river=_env_int(env, "USGS_OGC_MAX_STATIONS_PER_RIVER", defaults.ogc_max_stations_per_river),
        ogc_skip_fresh_hours=_env_float(env, "USGS_OGC_SKIP_FRESH_HOURS", defaults.ogc_skip_fresh_hours),
        ogc_bbox_pad_deg=_env_float(env, "USGS_OGC_BBOX_PAD_DEG", defaults.ogc_bbox_pad_deg),
        ogc_page_size=_env_int(env, "USGS_OGC_PAGE_SIZE", defaults.ogc_page_size),
        ogc_max_pages=_env_int(env, "USGS_OGC_MAX_PAGES", defaults.ogc_max_pages),
    )
