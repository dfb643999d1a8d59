import asyncio
from pathlib import Path
import sys

import httpx
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
sys.path.insert(0, str(Path(__file__).resolve().parent))

from collector.usgs_fetcher import UsgsClient
from core.exceptions import ProviderTransportError
from core.models import Feed
from usgs_fakes import usgs_payload


def _fetch(handler, feed=Feed.LIVE, site_no="07091200", **query):
    async def _run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            client = UsgsClient(http)
            series = await client.fetch_series(feed, site_no, **query)
            return series, client.request_count

    return asyncio.run(_run())


def test_live_request_parameters_and_parse():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json=usgs_payload(flow=[("2024-05-01T10:00:00.000-06:00", 412)]))

    series, count = _fetch(handler)

    assert series.get("00060").value == 412.0
    assert count == 1
    params = seen[0].url.params
    assert seen[0].url.path == "/nwis/iv/"
    assert params["sites"] == "07091200"
    assert params["parameterCd"] == "00060,00010,00065"
    assert params["period"] == "P7D"
    assert params["siteStatus"] == "all"
    assert "statCd" not in params


def test_delayed_request_uses_mean_statistic_and_date_range():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"value": {"timeSeries": []}})

    _fetch(handler, feed=Feed.DELAYED, codes=["00060"], start_date="2024-04-01", end_date="2024-05-01")

    params = seen[0].url.params
    assert seen[0].url.path == "/nwis/dv/"
    assert params["statCd"] == "00003"
    assert params["startDT"] == "2024-04-01"
    assert params["endDT"] == "2024-05-01"
    assert "period" not in params


def test_not_found_means_no_data():
    series, _ = _fetch(lambda request: httpx.Response(404, text="No sites found"))

    assert series.observations == {}


def test_server_error_is_transport_error_with_status():
    with pytest.raises(ProviderTransportError) as exc:
        _fetch(lambda request: httpx.Response(503, text="Service Unavailable"))

    assert exc.value.status_code == 503


def test_invalid_json_is_transport_error():
    with pytest.raises(ProviderTransportError):
        _fetch(lambda request: httpx.Response(200, text="<html>maintenance</html>"))


def test_timeout_is_transport_error():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(ProviderTransportError) as exc:
        _fetch(handler)

    assert "timeout" in str(exc.value)
    assert exc.value.status_code is None
