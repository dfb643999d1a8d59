from pathlib import Path
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from core.scoring_inputs import (
    FRESH,
    MISSING,
    STALE_EXCLUDED,
    STALE_INCLUDED,
    build_score_input_row,
    scoring_input,
)


def test_stale_policy_decides_scoring_visibility():
    assert scoring_input(410.0, False, "exclude") == (410.0, FRESH)
    assert scoring_input(410.0, True, "exclude") == (None, STALE_EXCLUDED)
    assert scoring_input(410.0, True, "include") == (410.0, STALE_INCLUDED)
    assert scoring_input(None, True, "include") == (None, MISSING)


def test_unknown_policy_is_rejected():
    with pytest.raises(ValueError):
        scoring_input(1.0, False, "maybe")


def test_score_row_carries_reason_and_weather():
    row = build_score_input_row(
        7, "2024-05-01",
        {"flow_cfs": 300.0, "flow_is_stale": False, "temp_unavailable_reason": "no_temp_site_mapping"},
        {"wind_pm_mph": 14.0},
        "exclude",
        "2024-05-01T18:00:00+00:00",
    )

    assert row["flow_status"] == FRESH
    assert row["temp_status"] == MISSING
    assert row["temp_unavailable_reason"] == "no_temp_site_mapping"
    assert row["wind_pm_mph"] == 14.0
    assert row["wind_am_mph"] is None
