"""
River Intel - USGS NWIS Fetcher
Live feed = instantaneous values (IV), delayed feed = daily values (DV).
"""

from __future__ import annotations

import json
import logging
from datetime import tzinfo
from typing import Any, Dict, Iterable, Optional

import httpx

from config import (
    DV_STAT_MEAN,
    INGEST_PARAMETER_CODES,
    USER_AGENT,
    USGS_DV_URL,
    USGS_IV_URL,
)
from collector.timeseries_parser import DEFAULT_HISTORY_LIMIT, parse_time_series
from core.exceptions import ProviderTransportError
from core.models import Feed, ParsedSeries

logger = logging.getLogger("usgs_fetcher")

EMPTY_PAYLOAD: Dict[str, Any] = {"value": {"timeSeries": []}}


class UsgsClient:
    """
    Thin async client over the NWIS IV/DV JSON services.

    Pass an `httpx.AsyncClient` to share a connection pool (or a MockTransport
    in tests); otherwise the client owns one and closes it on `aclose()`.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
        live_period: Optional[str] = "P7D",
        delayed_period: str = "P14D",
    ):
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=timeout,
            headers={"User-Agent": USER_AGENT},
        )
        self.timeout = timeout
        self.live_period = live_period
        self.delayed_period = delayed_period
        self.request_count = 0

    async def __aenter__(self) -> "UsgsClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def build_params(
        self,
        feed: Feed,
        site_no: str,
        codes: Iterable[str],
        period: Optional[str] = None,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
    ) -> Dict[str, str]:
        params = {
            "format": "json",
            "sites": site_no,
            "parameterCd": ",".join(codes),
            "siteStatus": "all",
        }
        if feed == Feed.DELAYED:
            params["statCd"] = DV_STAT_MEAN
        if start_date or end_date:
            if start_date:
                params["startDT"] = start_date
            if end_date:
                params["endDT"] = end_date
        else:
            period = period or (self.live_period if feed == Feed.LIVE else self.delayed_period)
            if period:
                params["period"] = period
        return params

    async def fetch_payload(
        self,
        feed: Feed,
        site_no: str,
        codes: Iterable[str] = INGEST_PARAMETER_CODES,
        **query: Optional[str],
    ) -> Dict[str, Any]:
        """
        GET the raw JSON payload.

        A 404 means "no data for these criteria" and returns an empty payload;
        every other failure raises ProviderTransportError.
        """
        url = USGS_IV_URL if feed == Feed.LIVE else USGS_DV_URL
        params = self.build_params(feed, site_no, codes, **query)
        self.request_count += 1
        logger.debug("GET %s site=%s codes=%s", feed.value, site_no, params["parameterCd"])

        try:
            response = await self._client.get(url, params=params)
        except httpx.TimeoutException as e:
            raise ProviderTransportError(f"USGS {feed.value} timeout after {self.timeout}s") from e
        except httpx.RequestError as e:
            raise ProviderTransportError(f"USGS {feed.value} network error: {e}") from e

        if response.status_code == 404:
            return dict(EMPTY_PAYLOAD)
        if response.status_code >= 400:
            raise ProviderTransportError(
                f"USGS HTTP {response.status_code}", status_code=response.status_code
            )
        try:
            return response.json()
        except (json.JSONDecodeError, ValueError) as e:
            raise ProviderTransportError(
                f"USGS {feed.value} returned invalid JSON", status_code=response.status_code
            ) from e

    async def fetch_series(
        self,
        feed: Feed,
        site_no: str,
        codes: Iterable[str] = INGEST_PARAMETER_CODES,
        default_tz: Optional[tzinfo] = None,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        **query: Optional[str],
    ) -> ParsedSeries:
        payload = await self.fetch_payload(feed, site_no, codes, **query)
        return parse_time_series(payload, default_tz=default_tz, history_limit=history_limit)
