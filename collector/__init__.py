"""
River Intel - Collector Module
Provider clients for USGS (NWIS and OGC) and Open-Meteo.
"""

from .timeseries_parser import parse_time_series
from .usgs_fetcher import UsgsClient
from .weather_fetcher import WeatherClient, summarize_weather_day

__all__ = [
    "parse_time_series",
    "UsgsClient",
    "WeatherClient",
    "summarize_weather_day",
]
