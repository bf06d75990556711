"""Source providers: device metrics, site weather and power price."""

from providers.base import (
    MetricsSource,
    MetricsSourceError,
    PriceSource,
    PriceSourceError,
    SourceError,
    WeatherSource,
    WeatherSourceError,
)
from providers.bigquery import BigQueryMetricsSource
from providers.powercost import MeagPriceSource
from providers.weather import OpenMeteoWeatherSource

__all__ = [
    "BigQueryMetricsSource",
    "MeagPriceSource",
    "MetricsSource",
    "MetricsSourceError",
    "OpenMeteoWeatherSource",
    "PriceSource",
    "PriceSourceError",
    "SourceError",
    "WeatherSource",
    "WeatherSourceError",
]
