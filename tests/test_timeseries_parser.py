from datetime import datetime, timedelta, timezone
from pathlib import Path
from zoneinfo import ZoneInfo
import sys

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
sys.path.insert(0, str(Path(__file__).resolve().parent))

from collector.timeseries_parser import (
    celsius_to_fahrenheit,
    is_valid_reading,
    merge_history,
    normalize_value,
    parse_time_series,
)
from usgs_fakes import usgs_payload, usgs_series


def test_latest_valid_reading_skips_trailing_sentinel():
    parsed = parse_time_series(usgs_payload(flow=[
        ("2024-05-01T10:00:00.000-06:00", 412),
        ("2024-05-01T10:15:00.000-06:00", -999999),
    ]))

    obs = parsed.get("00060")
    assert obs.value == 412.0
    assert obs.observed_at == datetime(2024, 5, 1, 16, 0, tzinfo=timezone.utc)
    assert obs.qualifiers == ["P"]


def test_points_are_ordered_by_timestamp_before_picking_latest():
    parsed = parse_time_series(usgs_payload(flow=[
        ("2024-05-01T10:30:00.000-06:00", 300),
        ("2024-05-01T10:00:00.000-06:00", 100),
        ("2024-05-01T10:15:00.000-06:00", 200),
    ]))

    assert parsed.get("00060").value == 300.0
    assert [p.value for p in parsed.get("00060").points] == [100.0, 200.0, 300.0]


def test_water_temperature_is_converted_and_range_checked():
    parsed = parse_time_series(usgs_payload(temp=[("2024-05-01T10:00:00.000-06:00", 10.0)]))
    assert parsed.get("00010").value == 50.0

    hot = parse_time_series(usgs_payload(temp=[("2024-05-01T10:00:00.000-06:00", 41.0)]))
    obs = hot.get("00010")
    assert hot.has_code("00010")
    assert obs.value is None
    assert not obs.has_value


def test_code_absent_from_payload_is_missing_not_none_valued():
    parsed = parse_time_series(usgs_payload(flow=[("2024-05-01T10:00:00.000-06:00", 90)]))

    assert parsed.get("00010") is None
    assert not parsed.has_code("00010")
    assert parsed.parameter_codes == ["00060"]


def test_non_numeric_and_nan_values_are_invalid():
    parsed = parse_time_series(usgs_payload(stage=[
        ("2024-05-01T10:00:00.000-06:00", "NaN"),
        ("2024-05-01T10:15:00.000-06:00", "Ice"),
    ]))

    obs = parsed.get("00065")
    assert obs.value is None
    assert obs.points == []


def test_offsetless_daily_timestamps_use_default_zone():
    parsed = parse_time_series(
        usgs_payload(flow=[("2024-05-01T00:00:00.000", 250)]),
        default_tz=ZoneInfo("America/Denver"),
    )

    observed = parsed.get("00060").observed_at
    assert observed.utcoffset() == timedelta(hours=-6)
    assert observed.date().isoformat() == "2024-05-01"


def test_history_merges_codes_by_timestamp_and_keeps_last_rows():
    payload = {"value": {"timeSeries": [
        usgs_series("00060", [
            ("2024-05-01T10:00:00Z", 100),
            ("2024-05-01T10:15:00Z", 110),
            ("2024-05-01T10:30:00Z", 120),
        ]),
        usgs_series("00065", [
            ("2024-05-01T10:15:00Z", 2.5),
            ("2024-05-01T10:30:00Z", 2.6),
        ]),
    ]}}

    parsed = parse_time_series(payload, history_limit=2)

    assert [row.values for row in parsed.history] == [
        {"00060": 110.0, "00065": 2.5},
        {"00060": 120.0, "00065": 2.6},
    ]
    assert merge_history(parsed.observations.values(), limit=0) == []


def test_raw_summary_records_unit_and_latest_point():
    payload = {"value": {"timeSeries": [
        usgs_series("00060", [("2024-05-01T10:00:00Z", 100)], unit="ft3/s"),
    ]}}

    summary = parse_time_series(payload).raw_summary["00060"]

    assert summary["unit"] == "ft3/s"
    assert summary["value"] == 100.0
    assert summary["observed_at"] == "2024-05-01T10:00:00+00:00"


def test_malformed_payloads_yield_empty_series():
    assert parse_time_series(None).observations == {}
    assert parse_time_series({"value": None}).observations == {}
    assert parse_time_series({"value": {"timeSeries": [{"variable": {}}, "junk"]}}).observations == {}


def test_reading_helpers():
    assert is_valid_reading("12.5")
    assert not is_valid_reading(-9999)
    assert not is_valid_reading(None)
    assert not is_valid_reading(float("inf"))
    assert celsius_to_fahrenheit(0.0) == 32.0
    assert normalize_value("00010", -6.0) is None
    assert normalize_value("00060", -5.0) == -5.0
