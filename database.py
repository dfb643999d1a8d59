"""
River Intel - Database Module
SQLite store implementing the row/upsert/procedure contract used by the
ingestion pipelines.
"""

import asyncio
import json
import logging
import re
import sqlite3
from contextlib import contextmanager
from datetime import date, timedelta
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Union

from config import RPC_COMPUTE_SCORES, RPC_REFRESH_METRICS
from core.exceptions import StoreError
from core.scoring_inputs import build_score_input_row
from core.timeutil import to_utc_iso, utc_now

logger = logging.getLogger("database")


class _NotNull:
    def __repr__(self) -> str:
        return "NOT_NULL"


# Filter value meaning "column IS NOT NULL"
NOT_NULL = _NotNull()

Filters = Optional[Dict[str, Any]]
OrderBy = Optional[Union[str, Sequence[str]]]


# ============================================================================
# DATABASE SCHEMA
# ============================================================================

SCHEMA = """
CREATE TABLE IF NOT EXISTS rivers (
    id INTEGER PRIMARY KEY,
    slug TEXT UNIQUE,
    name TEXT,
    lat REAL,
    lon REAL,
    usgs_site_no TEXT,          -- default / fallback flow station
    timezone TEXT,              -- IANA zone; NULL = default zone
    is_active INTEGER DEFAULT 1
);

-- Ranked station alternatives per role (lower priority number wins)
CREATE TABLE IF NOT EXISTS river_station_roles (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    river_id INTEGER NOT NULL,
    role TEXT NOT NULL,         -- flow | temperature | stage
    site_no TEXT NOT NULL,
    priority INTEGER DEFAULT 100,
    is_active INTEGER DEFAULT 1,
    UNIQUE(river_id, role, site_no)
);

-- Legacy single-station override per role
CREATE TABLE IF NOT EXISTS river_usgs_map (
    river_id INTEGER PRIMARY KEY,
    flow_site_no TEXT,
    temp_site_no TEXT,
    stage_site_no TEXT
);

CREATE TABLE IF NOT EXISTS usgs_station_registry (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    river_id INTEGER NOT NULL,
    site_no TEXT NOT NULL,
    monitoring_location_id TEXT,
    station_name TEXT,
    latitude REAL,
    longitude REAL,
    parameter_codes TEXT,       -- JSON list
    has_flow INTEGER DEFAULT 0,
    has_temp INTEGER DEFAULT 0,
    has_wq INTEGER DEFAULT 0,
    metadata TEXT,              -- JSON
    ts_metadata TEXT,           -- JSON
    checked_at TEXT,
    is_active INTEGER DEFAULT 1,
    UNIQUE(river_id, site_no)
);

CREATE TABLE IF NOT EXISTS usgs_site_parameters (
    site_no TEXT PRIMARY KEY,
    has_temp_iv INTEGER DEFAULT 0,
    has_temp_dv INTEGER DEFAULT 0,
    checked_at TEXT
);

CREATE TABLE IF NOT EXISTS river_daily (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    river_id INTEGER NOT NULL,
    obs_date TEXT NOT NULL,

    flow_cfs REAL,
    flow_site_no TEXT,
    flow_source_kind TEXT,      -- live | delayed | registry_fallback
    flow_observed_at TEXT,
    flow_is_stale INTEGER DEFAULT 0,
    flow_unavailable_reason TEXT,

    water_temp_f REAL,
    temp_site_no TEXT,
    temp_source_kind TEXT,
    temp_observed_at TEXT,
    temp_is_stale INTEGER DEFAULT 0,
    temp_unavailable_reason TEXT,

    gage_height_ft REAL,
    stage_site_no TEXT,

    usgs_param_codes TEXT,      -- JSON list
    usgs_raw TEXT,              -- JSON per-code summary

    -- Filled by refresh_river_daily_metrics
    flow_change_pct REAL,
    temp_change_f REAL,

    updated_at TEXT,
    UNIQUE(river_id, obs_date)
);

CREATE TABLE IF NOT EXISTS river_hourly (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    river_id INTEGER NOT NULL,
    observed_at TEXT NOT NULL,
    flow_cfs REAL,
    water_temp_f REAL,
    gage_height_ft REAL,
    UNIQUE(river_id, observed_at)
);

CREATE TABLE IF NOT EXISTS weather_daily (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    river_id INTEGER NOT NULL,
    date TEXT NOT NULL,
    wind_am_mph REAL,
    wind_pm_mph REAL,
    air_temp_high_f REAL,
    air_temp_low_f REAL,
    precip_mm REAL,
    precip_probability_pct REAL,
    wind_speed_max_mph REAL,
    UNIQUE(river_id, date)
);

CREATE TABLE IF NOT EXISTS ingest_runs (
    id TEXT PRIMARY KEY,
    pipeline TEXT NOT NULL,     -- usgs | weather
    cadence TEXT,
    status TEXT NOT NULL,       -- running | success | partial | failed
    obs_date TEXT,
    started_at TEXT,
    finished_at TEXT,
    rivers_total INTEGER,
    rivers_ok INTEGER,
    rivers_failed INTEGER,
    error_message TEXT,
    rpc_errors TEXT             -- JSON
);

CREATE INDEX IF NOT EXISTS idx_ingest_runs_status
ON ingest_runs(status, started_at);

CREATE TABLE IF NOT EXISTS ingest_site_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id TEXT NOT NULL,
    river_id INTEGER NOT NULL,
    site_no TEXT,
    obs_date TEXT,
    status TEXT NOT NULL,       -- success | partial | failed
    http_status INTEGER,
    flow_cfs REAL,
    water_temp_f REAL,
    gage_height_ft REAL,
    flow_source_kind TEXT,
    temp_source_kind TEXT,
    temp_unavailable_reason TEXT,
    attempts TEXT,              -- JSON cascade trace
    error_message TEXT,
    created_at TEXT,
    UNIQUE(run_id, river_id)
);

CREATE TABLE IF NOT EXISTS river_score_inputs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    river_id INTEGER NOT NULL,
    obs_date TEXT NOT NULL,
    flow_cfs REAL,
    flow_status TEXT,
    flow_change_pct REAL,
    water_temp_f REAL,
    temp_status TEXT,
    temp_unavailable_reason TEXT,
    wind_am_mph REAL,
    wind_pm_mph REAL,
    air_temp_high_f REAL,
    precip_mm REAL,
    stale_policy TEXT,
    computed_at TEXT,
    UNIQUE(river_id, obs_date)
);
"""

JSON_COLUMNS = frozenset({
    "parameter_codes", "metadata", "ts_metadata",
    "usgs_param_codes", "usgs_raw", "attempts", "rpc_errors",
})

BOOL_COLUMNS = frozenset({
    "is_active", "has_flow", "has_temp", "has_wq",
    "flow_is_stale", "temp_is_stale", "has_temp_iv", "has_temp_dv",
})

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

METRICS_LOOKBACK_DAYS = 7

Procedure = Callable[[sqlite3.Connection, Dict[str, Any]], Any]


def _check_identifier(name: str) -> str:
    if not _IDENTIFIER.match(name or ""):
        raise StoreError("Invalid identifier", name)
    return name


def _encode(column: str, value: Any) -> Any:
    if column in JSON_COLUMNS and value is not None and not isinstance(value, str):
        return json.dumps(value, default=str)
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, date):
        return value.isoformat()
    return value


def _decode_row(row: sqlite3.Row) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for key in row.keys():
        value = row[key]
        if key in JSON_COLUMNS and isinstance(value, str):
            try:
                value = json.loads(value)
            except ValueError:
                pass
        elif key in BOOL_COLUMNS and value is not None:
            value = bool(value)
        out[key] = value
    return out


def _where(filters: Filters) -> tuple:
    if not filters:
        return "", []
    clauses, params = [], []
    for column, value in filters.items():
        _check_identifier(column)
        if value is None:
            clauses.append(f"{column} IS NULL")
        elif value is NOT_NULL:
            clauses.append(f"{column} IS NOT NULL")
        elif isinstance(value, (list, tuple, set, frozenset)):
            values = list(value)
            if not values:
                clauses.append("0")
                continue
            clauses.append(f"{column} IN ({', '.join('?' for _ in values)})")
            params.extend(_encode(column, v) for v in values)
        else:
            clauses.append(f"{column} = ?")
            params.append(_encode(column, value))
    return " WHERE " + " AND ".join(clauses), params


def _order(order_by: OrderBy) -> str:
    if not order_by:
        return ""
    items = [order_by] if isinstance(order_by, str) else list(order_by)
    parts = []
    for item in items:
        desc = item.startswith("-")
        column = _check_identifier(item.lstrip("-"))
        parts.append(f"{column} {'DESC' if desc else 'ASC'}")
    return " ORDER BY " + ", ".join(parts)


class SQLiteStore:
    """
    Row store over a single SQLite file.

    Methods are coroutines so pipelines can swap in the PostgREST store; each
    one opens its own connection inside a worker thread so the event loop is
    never blocked on disk.
    """

    def __init__(self, path: str, stale_policy: str = "exclude"):
        self.path = path
        self.stale_policy = stale_policy
        self._procedures: Dict[str, Procedure] = {
            RPC_REFRESH_METRICS: self._refresh_river_daily_metrics,
            RPC_COMPUTE_SCORES: self._compute_daily_scores,
        }
        self._columns: Dict[str, List[str]] = {}

    async def aclose(self) -> None:
        """Connections are per-operation; nothing to release."""

    # ------------------------------------------------------------------------
    # CONNECTION / SCHEMA
    # ------------------------------------------------------------------------

    @contextmanager
    def get_connection(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database connections."""
        conn = sqlite3.connect(self.path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def init_schema(self) -> None:
        """Create tables and add any columns missing from an older file."""
        try:
            with self.get_connection() as conn:
                conn.executescript(SCHEMA)
                self._auto_migrate(conn)
        except sqlite3.Error as e:
            raise StoreError("Schema initialization failed", str(e)) from e
        self._columns.clear()
        logger.info("Database initialized: %s", self.path)

    def _auto_migrate(self, conn: sqlite3.Connection) -> None:
        tmp = sqlite3.connect(":memory:")
        try:
            tmp.executescript(SCHEMA)
            tables = [r[0] for r in tmp.execute("SELECT name FROM sqlite_master WHERE type='table'")]
            for table in tables:
                if table.startswith("sqlite_"):
                    continue
                expected = {r[1]: r[2] for r in tmp.execute(f"PRAGMA table_info({table})")}
                actual = {r[1] for r in conn.execute(f"PRAGMA table_info({table})")}
                for column, col_type in expected.items():
                    if column not in actual:
                        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}")
                        logger.info("[MIGRATE] %s.%s (%s)", table, column, col_type)
        finally:
            tmp.close()

    def _table_columns(self, conn: sqlite3.Connection, table: str) -> List[str]:
        _check_identifier(table)
        if table not in self._columns:
            cols = [r[1] for r in conn.execute(f"PRAGMA table_info({table})")]
            if not cols:
                raise StoreError("Unknown table", table)
            self._columns[table] = cols
        return self._columns[table]

    def _check_columns(self, conn: sqlite3.Connection, table: str, columns: Sequence[str]) -> None:
        known = set(self._table_columns(conn, table))
        unknown = [c for c in columns if c not in known]
        if unknown:
            raise StoreError(f"Unknown column(s) for {table}", ", ".join(unknown))

    # ------------------------------------------------------------------------
    # ROW OPERATIONS
    # ------------------------------------------------------------------------

    async def select(
        self,
        table: str,
        filters: Filters = None,
        order_by: OrderBy = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self._select, table, filters, order_by, limit)

    async def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        return await asyncio.to_thread(self._insert, table, row)

    async def update(self, table: str, values: Dict[str, Any], filters: Filters) -> int:
        return await asyncio.to_thread(self._update, table, values, filters)

    async def upsert(
        self,
        table: str,
        rows: Union[Dict[str, Any], Sequence[Dict[str, Any]]],
        on_conflict: Union[str, Sequence[str]],
    ) -> int:
        """
        Insert or update on the conflict key. Only the columns present in each
        row are written; other stored columns keep their values.
        """
        return await asyncio.to_thread(self._upsert, table, rows, on_conflict)

    async def rpc(self, name: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await asyncio.to_thread(self._rpc, name, params)

    def _select(
        self,
        table: str,
        filters: Filters = None,
        order_by: OrderBy = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        try:
            with self.get_connection() as conn:
                self._table_columns(conn, table)
                where, params = _where(filters)
                sql = f"SELECT * FROM {table}{where}{_order(order_by)}"
                if limit is not None:
                    sql += " LIMIT ?"
                    params.append(int(limit))
                return [_decode_row(r) for r in conn.execute(sql, params).fetchall()]
        except sqlite3.Error as e:
            raise StoreError(f"select {table} failed", str(e)) from e

    def _insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        try:
            with self.get_connection() as conn:
                columns = list(row)
                self._check_columns(conn, table, columns)
                cursor = conn.execute(
                    f"INSERT INTO {table} ({', '.join(columns)}) "
                    f"VALUES ({', '.join('?' for _ in columns)})",
                    [_encode(c, row[c]) for c in columns],
                )
                inserted = dict(row)
                if "id" not in inserted:
                    inserted["id"] = cursor.lastrowid
                return inserted
        except sqlite3.Error as e:
            raise StoreError(f"insert {table} failed", str(e)) from e

    def _update(self, table: str, values: Dict[str, Any], filters: Filters) -> int:
        if not filters:
            raise StoreError(f"update {table} refused", "filters are required")
        try:
            with self.get_connection() as conn:
                columns = list(values)
                self._check_columns(conn, table, columns)
                where, params = _where(filters)
                assignments = ", ".join(f"{c} = ?" for c in columns)
                cursor = conn.execute(
                    f"UPDATE {table} SET {assignments}{where}",
                    [_encode(c, values[c]) for c in columns] + params,
                )
                return cursor.rowcount
        except sqlite3.Error as e:
            raise StoreError(f"update {table} failed", str(e)) from e

    def _upsert(
        self,
        table: str,
        rows: Union[Dict[str, Any], Sequence[Dict[str, Any]]],
        on_conflict: Union[str, Sequence[str]],
    ) -> int:
        if isinstance(rows, dict):
            rows = [rows]
        keys = [k.strip() for k in on_conflict.split(",")] if isinstance(on_conflict, str) else list(on_conflict)
        if not rows:
            return 0
        try:
            with self.get_connection() as conn:
                for row in rows:
                    columns = list(row)
                    self._check_columns(conn, table, columns + keys)
                    missing = [k for k in keys if k not in row]
                    if missing:
                        raise StoreError(f"upsert {table} row lacks conflict key", ", ".join(missing))
                    updates = [c for c in columns if c not in keys]
                    action = (
                        "DO UPDATE SET " + ", ".join(f"{c} = excluded.{c}" for c in updates)
                        if updates else "DO NOTHING"
                    )
                    conn.execute(
                        f"INSERT INTO {table} ({', '.join(columns)}) "
                        f"VALUES ({', '.join('?' for _ in columns)}) "
                        f"ON CONFLICT({', '.join(keys)}) {action}",
                        [_encode(c, row[c]) for c in columns],
                    )
                return len(rows)
        except sqlite3.Error as e:
            raise StoreError(f"upsert {table} failed", str(e)) from e

    # ------------------------------------------------------------------------
    # PROCEDURES
    # ------------------------------------------------------------------------

    def register_procedure(self, name: str, fn: Procedure) -> None:
        self._procedures[name] = fn

    def _rpc(self, name: str, params: Optional[Dict[str, Any]] = None) -> Any:
        procedure = self._procedures.get(name)
        if procedure is None:
            raise StoreError("Unknown procedure", name)
        try:
            with self.get_connection() as conn:
                return procedure(conn, dict(params or {}))
        except sqlite3.Error as e:
            raise StoreError(f"rpc {name} failed", str(e)) from e
        except (KeyError, ValueError) as e:
            raise StoreError(f"rpc {name} rejected parameters", str(e)) from e

    def _refresh_river_daily_metrics(self, conn: sqlite3.Connection, params: Dict[str, Any]) -> int:
        """Day-over-day flow change % and temperature change for one obs_date."""
        obs_date = date.fromisoformat(str(params["p_obs_date"]))
        earliest = (obs_date - timedelta(days=METRICS_LOOKBACK_DAYS)).isoformat()
        rows = conn.execute(
            "SELECT id, river_id, flow_cfs, water_temp_f FROM river_daily WHERE obs_date = ?",
            (obs_date.isoformat(),),
        ).fetchall()

        updated = 0
        for row in rows:
            prev = conn.execute(
                """
                SELECT flow_cfs, water_temp_f FROM river_daily
                WHERE river_id = ? AND obs_date < ? AND obs_date >= ?
                ORDER BY obs_date DESC LIMIT 1
                """,
                (row["river_id"], obs_date.isoformat(), earliest),
            ).fetchone()
            flow_change = None
            temp_change = None
            if prev is not None:
                if row["flow_cfs"] is not None and prev["flow_cfs"]:
                    flow_change = round((row["flow_cfs"] - prev["flow_cfs"]) / prev["flow_cfs"] * 100.0, 1)
                if row["water_temp_f"] is not None and prev["water_temp_f"] is not None:
                    temp_change = round(row["water_temp_f"] - prev["water_temp_f"], 2)
            conn.execute(
                "UPDATE river_daily SET flow_change_pct = ?, temp_change_f = ? WHERE id = ?",
                (flow_change, temp_change, row["id"]),
            )
            updated += 1
        return updated

    def _compute_daily_scores(self, conn: sqlite3.Connection, params: Dict[str, Any]) -> int:
        """Materialize river_score_inputs for one obs_date."""
        obs_date = date.fromisoformat(str(params["p_obs_date"])).isoformat()
        policy = params.get("p_stale_policy") or self.stale_policy
        daily = {
            r["river_id"]: _decode_row(r)
            for r in conn.execute("SELECT * FROM river_daily WHERE obs_date = ?", (obs_date,))
        }
        weather = {
            r["river_id"]: _decode_row(r)
            for r in conn.execute("SELECT * FROM weather_daily WHERE date = ?", (obs_date,))
        }
        computed_at = to_utc_iso(utc_now())
        count = 0
        for river_id in sorted(set(daily) | set(weather)):
            row = build_score_input_row(
                river_id, obs_date, daily.get(river_id), weather.get(river_id), policy, computed_at
            )
            columns = list(row)
            updates = [c for c in columns if c not in ("river_id", "obs_date")]
            conn.execute(
                f"INSERT INTO river_score_inputs ({', '.join(columns)}) "
                f"VALUES ({', '.join('?' for _ in columns)}) "
                f"ON CONFLICT(river_id, obs_date) DO UPDATE SET "
                + ", ".join(f"{c} = excluded.{c}" for c in updates),
                [row[c] for c in columns],
            )
            count += 1
        return count
