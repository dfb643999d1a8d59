from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from core.timeutil import to_utc_iso


class Role(str, Enum):
    FLOW = "flow"
    TEMPERATURE = "temperature"
    STAGE = "stage"


class Feed(str, Enum):
    LIVE = "live"          # instantaneous values
    DELAYED = "delayed"    # daily summaries


class SourceKind(str, Enum):
    LIVE = "live"
    DELAYED = "delayed"
    REGISTRY_FALLBACK = "registry_fallback"


class RunStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class AttemptOutcome(str, Enum):
    FRESH = "fresh"
    STALE = "stale"
    INVALID = "invalid"            # code present, no usable value
    CODE_ABSENT = "code_absent"    # station does not report the parameter
    TRANSPORT_ERROR = "transport_error"


# ============================================================================
# CONFIGURATION ROWS (read-only to the pipeline)
# ============================================================================

@dataclass
class River:
    id: int
    slug: str
    name: str
    lat: Optional[float] = None
    lon: Optional[float] = None
    default_site_no: Optional[str] = None
    timezone: Optional[str] = None
    is_active: bool = True

    @property
    def has_coordinates(self) -> bool:
        return self.lat is not None and self.lon is not None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "River":
        return cls(
            id=int(row["id"]),
            slug=row.get("slug") or str(row["id"]),
            name=row.get("name") or row.get("slug") or "",
            lat=_opt_float(row.get("lat")),
            lon=_opt_float(row.get("lon")),
            default_site_no=_opt_str(row.get("usgs_site_no")),
            timezone=row.get("timezone") or None,
            is_active=bool(row.get("is_active", True)),
        )


@dataclass
class StationRoleMapping:
    river_id: int
    role: Role
    site_no: str
    priority: int = 100
    is_active: bool = True

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "StationRoleMapping":
        return cls(
            river_id=int(row["river_id"]),
            role=Role(row["role"]),
            site_no=str(row["site_no"]).strip(),
            priority=int(row["priority"]) if row.get("priority") is not None else 100,
            is_active=bool(row.get("is_active", True)),
        )


@dataclass
class LegacySiteOverride:
    """Single-station-per-role override (one row per river)."""
    river_id: int
    flow_site_no: Optional[str] = None
    temp_site_no: Optional[str] = None
    stage_site_no: Optional[str] = None

    def site_for(self, role: Role) -> Optional[str]:
        return {
            Role.FLOW: self.flow_site_no,
            Role.TEMPERATURE: self.temp_site_no,
            Role.STAGE: self.stage_site_no,
        }[role]

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "LegacySiteOverride":
        return cls(
            river_id=int(row["river_id"]),
            flow_site_no=_opt_str(row.get("flow_site_no")),
            temp_site_no=_opt_str(row.get("temp_site_no")),
            stage_site_no=_opt_str(row.get("stage_site_no")),
        )


@dataclass
class StationCapability:
    river_id: int
    site_no: str
    has_flow: bool = False
    has_temp: bool = False
    station_name: Optional[str] = None
    checked_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "StationCapability":
        return cls(
            river_id=int(row["river_id"]),
            site_no=str(row["site_no"]).strip(),
            has_flow=bool(row.get("has_flow")),
            has_temp=bool(row.get("has_temp")),
            station_name=row.get("station_name"),
            checked_at=row.get("checked_at"),
        )


# ============================================================================
# PARSED PROVIDER DATA
# ============================================================================

@dataclass
class SeriesPoint:
    code: str
    observed_at: datetime
    value: float


@dataclass
class ParameterObservation:
    """
    Latest usable reading for one parameter code.

    value is None when the code was present but every point was a sentinel,
    non-finite or out of range.
    """
    code: str
    value: Optional[float] = None
    observed_at: Optional[datetime] = None
    qualifiers: List[str] = field(default_factory=list)
    summary: Dict[str, Any] = field(default_factory=dict)
    points: List[SeriesPoint] = field(default_factory=list)

    @property
    def has_value(self) -> bool:
        return self.value is not None and self.observed_at is not None


@dataclass
class HistoryRow:
    """All parameter values reported at one timestamp."""
    observed_at: datetime
    values: Dict[str, float] = field(default_factory=dict)


@dataclass
class ParsedSeries:
    observations: Dict[str, ParameterObservation] = field(default_factory=dict)
    history: List[HistoryRow] = field(default_factory=list)

    @property
    def parameter_codes(self) -> List[str]:
        return sorted(self.observations)

    def get(self, code: str) -> Optional[ParameterObservation]:
        return self.observations.get(code)

    def has_code(self, code: str) -> bool:
        return code in self.observations

    @property
    def raw_summary(self) -> Dict[str, Any]:
        return {code: obs.summary for code, obs in sorted(self.observations.items())}


# ============================================================================
# CASCADE TRACE
# ============================================================================

@dataclass
class CascadeAttempt:
    site_no: str
    feed: Feed
    source_kind: SourceKind
    outcome: AttemptOutcome
    value: Optional[float] = None
    observed_at: Optional[datetime] = None
    error: Optional[str] = None
    status_code: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "site_no": self.site_no,
            "feed": self.feed.value,
            "source_kind": self.source_kind.value,
            "outcome": self.outcome.value,
            "value": self.value,
            "observed_at": to_utc_iso(self.observed_at),
            "error": self.error,
        }


@dataclass
class RoleResolution:
    role: Role
    value: Optional[float] = None
    site_no: Optional[str] = None
    source_kind: Optional[SourceKind] = None
    feed: Optional[Feed] = None
    observed_at: Optional[datetime] = None
    is_stale: bool = False
    reason: Optional[str] = None
    attempts: List[CascadeAttempt] = field(default_factory=list)
    observation: Optional[ParameterObservation] = None
    series: Optional[ParsedSeries] = None

    @property
    def has_value(self) -> bool:
        return self.value is not None


# ============================================================================
# PERSISTED RECORDS
# ============================================================================

@dataclass
class DailyRecord:
    """
    One river_daily row. Roles left as None are not written, so a role that
    failed this run leaves its stored columns untouched.
    """
    river_id: int
    obs_date: date
    flow: Optional[RoleResolution] = None
    temperature: Optional[RoleResolution] = None
    stage: Optional[RoleResolution] = None
    parameter_codes: List[str] = field(default_factory=list)
    raw_summary: Dict[str, Any] = field(default_factory=dict)
    updated_at: Optional[datetime] = None

    def to_row(self) -> Dict[str, Any]:
        row: Dict[str, Any] = {
            "river_id": self.river_id,
            "obs_date": self.obs_date.isoformat(),
            "usgs_param_codes": list(self.parameter_codes),
            "usgs_raw": dict(self.raw_summary),
        }
        if self.updated_at is not None:
            row["updated_at"] = to_utc_iso(self.updated_at)

        if self.flow is not None:
            row.update({
                "flow_cfs": self.flow.value,
                "flow_site_no": self.flow.site_no,
                "flow_source_kind": _kind(self.flow),
                "flow_observed_at": to_utc_iso(self.flow.observed_at),
                "flow_is_stale": self.flow.is_stale,
                "flow_unavailable_reason": self.flow.reason,
            })
        if self.temperature is not None:
            row.update({
                "water_temp_f": self.temperature.value,
                "temp_site_no": self.temperature.site_no,
                "temp_source_kind": _kind(self.temperature),
                "temp_observed_at": to_utc_iso(self.temperature.observed_at),
                "temp_is_stale": self.temperature.is_stale,
                "temp_unavailable_reason": self.temperature.reason,
            })
        if self.stage is not None:
            row.update({
                "gage_height_ft": self.stage.value,
                "stage_site_no": self.stage.site_no,
            })
        return row


@dataclass
class HourlyRecord:
    river_id: int
    observed_at: datetime
    flow_cfs: Optional[float] = None
    water_temp_f: Optional[float] = None
    gage_height_ft: Optional[float] = None

    def to_row(self) -> Dict[str, Any]:
        return {
            "river_id": self.river_id,
            "observed_at": to_utc_iso(self.observed_at),
            "flow_cfs": self.flow_cfs,
            "water_temp_f": self.water_temp_f,
            "gage_height_ft": self.gage_height_ft,
        }


@dataclass
class WeatherDay:
    river_id: int
    date: date
    wind_am_mph: Optional[float] = None
    wind_pm_mph: Optional[float] = None
    air_temp_high_f: Optional[float] = None
    air_temp_low_f: Optional[float] = None
    precip_mm: Optional[float] = None
    precip_probability_pct: Optional[float] = None
    wind_speed_max_mph: Optional[float] = None

    def to_row(self) -> Dict[str, Any]:
        return {
            "river_id": self.river_id,
            "date": self.date.isoformat(),
            "wind_am_mph": self.wind_am_mph,
            "wind_pm_mph": self.wind_pm_mph,
            "air_temp_high_f": self.air_temp_high_f,
            "air_temp_low_f": self.air_temp_low_f,
            "precip_mm": self.precip_mm,
            "precip_probability_pct": self.precip_probability_pct,
            "wind_speed_max_mph": self.wind_speed_max_mph,
        }


def _kind(resolution: RoleResolution) -> Optional[str]:
    return resolution.source_kind.value if resolution.source_kind else None


def _opt_float(raw: Any) -> Optional[float]:
    if raw is None or raw == "":
        return None
    try:
        return float(raw)
    except (TypeError, ValueError):
        return None


def _opt_str(raw: Any) -> Optional[str]:
    if raw is None:
        return None
    text = str(raw).strip()
    return text or None
