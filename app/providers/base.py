"""Source provider contracts (metrics, weather, power price)."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List

from core.config import SliceSettings
from core.models import MetricRow, PriceExtremes


class SourceError(Exception):
    """A data source could not produce a result."""


class MetricsSourceError(SourceError):
    """Metrics query failed; the run cannot continue."""


class WeatherSourceError(SourceError):
    """Weather lookup failed."""


class PriceSourceError(SourceError):
    """Power price lookup failed."""


class MetricsSource(ABC):
    """Base interface for device metric sources."""

    source_id: str = "unknown"

    @abstractmethod
    async def fetch_rows(self, slice_settings: SliceSettings, window_hours: int) -> List[MetricRow]:
        """Fetch every row for the slice inside the trailing window."""

    async def aclose(self) -> None:
        """Release any held resources."""


class WeatherSource(ABC):
    """Base interface for weather providers."""

    source_id: str = "unknown"

    @abstractmethod
    async def fetch_weather(self) -> Dict[str, Any]:
        """Return the weather payload keyed by site."""


class PriceSource(ABC):
    """Base interface for power price providers."""

    source_id: str = "unknown"

    @abstractmethod
    async def fetch_price_extremes(self) -> PriceExtremes:
        """Return today's min/max price in cents per kWh."""
