"""
Open-Meteo weather provider (no API key).

Returns a compact per-site payload: current conditions, today's high with its
hour window, and the hourly temperature points around now.
"""
from __future__ import annotations

import asyncio
import logging
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

import aiohttp

from core.config import WeatherSettings
from core.models import iso_utc
from providers.base import WeatherSource, WeatherSourceError

logger = logging.getLogger(__name__)

# Open-Meteo weather_code -> human label
WMO_LABELS = {
    0: "Clear sky",
    1: "Mainly clear",
    2: "Partly cloudy",
    3: "Overcast",
    45: "Fog",
    48: "Rime fog",
    51: "Light drizzle",
    53: "Moderate drizzle",
    55: "Dense drizzle",
    56: "Light freezing drizzle",
    57: "Dense freezing drizzle",
    61: "Light rain",
    63: "Moderate rain",
    65: "Heavy rain",
    66: "Light freezing rain",
    67: "Heavy freezing rain",
    71: "Light snow",
    73: "Moderate snow",
    75: "Heavy snow",
    77: "Snow grains",
    80: "Light rain showers",
    81: "Moderate rain showers",
    82: "Violent rain showers",
    85: "Light snow showers",
    86: "Heavy snow showers",
    95: "Thunderstorm",
    96: "Thunderstorm w/ slight hail",
    99: "Thunderstorm w/ heavy hail",
}


def code_label(code: Any) -> Optional[str]:
    if code is None:
        return None
    try:
        return WMO_LABELS.get(int(code))
    except (TypeError, ValueError):
        return None


def hour_label(dt: datetime) -> str:
    """12-hour label such as "6 AM"."""
    hour = dt.hour % 12 or 12
    return f"{hour} {'PM' if dt.hour >= 12 else 'AM'}"


def _parse_local(ts: str) -> Optional[datetime]:
    try:
        return datetime.strptime(str(ts), "%Y-%m-%dT%H:%M")
    except ValueError:
        return None


def summarize_forecast(payload: Dict[str, Any], now: datetime, tz: ZoneInfo) -> Dict[str, Any]:
    """
    Compact an Open-Meteo forecast response.

    Hourly timestamps come back as naive local strings ("2025-08-28T06:00");
    "today" and the forecast flag are decided against ``now`` in ``tz``.
    """
    current = payload.get("current") or {}
    hourly = payload.get("hourly") or {}
    times: List[str] = hourly.get("time") or []
    temps: List[Any] = hourly.get("temperature_2m") or []
    codes: List[Any] = hourly.get("weathercode") or hourly.get("weather_code") or []

    local_now = now.astimezone(tz)
    now_hour = local_now.strftime("%Y-%m-%dT%H:00")
    today = local_now.date()

    points = []
    high_at: Optional[datetime] = None
    high_f: Optional[float] = None
    code_counts: Counter = Counter()

    for i, ts in enumerate(times):
        dt = _parse_local(ts)
        temp = temps[i] if i < len(temps) else None
        points.append({
            "time_utc": ts,
            "label_local": hour_label(dt) if dt else None,
            "temp_f": temp,
            "forecast": ts > now_hour,
        })
        if dt is None or dt.date() != today:
            continue
        if temp is not None and (high_f is None or temp > high_f):
            high_f, high_at = temp, dt
        code = codes[i] if i < len(codes) else None
        if code is not None:
            code_counts[int(code)] += 1

    current_label = code_label(current.get("weather_code"))
    today_label = current_label
    if code_counts:
        # Most frequent code; ties go to the lowest code
        top_code = sorted(code_counts.items(), key=lambda kv: (-kv[1], kv[0]))[0][0]
        today_label = code_label(top_code)

    high_window = None
    if high_at is not None:
        high_window = f"{hour_label(high_at)} - {hour_label(high_at + timedelta(hours=1))}"

    return {
        "generatedAt": iso_utc(now),
        "current": {
            "temperature_f": current.get("temperature_2m"),
            "humidity_pct": current.get("relative_humidity_2m"),
            "label": current_label,
        },
        "today": {
            "high_f": high_f,
            "high_time_window_local": high_window,
            "label": today_label,
        },
        "hourly": {"points": points},
    }


class OpenMeteoWeatherSource(WeatherSource):
    """Weather for one site from api.open-meteo.com"""

    source_id = "open_meteo"

    def __init__(self, settings: WeatherSettings):
        self.settings = settings
        self.tz = ZoneInfo(settings.timezone)

    def _params(self) -> Dict[str, Any]:
        return {
            "latitude": self.settings.latitude,
            "longitude": self.settings.longitude,
            "hourly": "temperature_2m,relative_humidity_2m,weathercode",
            "current": "temperature_2m,relative_humidity_2m,weather_code,is_day",
            "temperature_unit": "fahrenheit",
            "timezone": self.settings.timezone,
            "past_hours": self.settings.past_hours,
            "forecast_hours": self.settings.forecast_hours,
        }

    async def fetch_weather(self) -> Dict[str, Any]:
        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(
                    self.settings.api_url,
                    params=self._params(),
                    timeout=aiohttp.ClientTimeout(total=self.settings.timeout),
                ) as response:
                    if response.status != 200:
                        raise WeatherSourceError(f"Open-Meteo HTTP {response.status}")
                    payload = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise WeatherSourceError(f"Open-Meteo request failed: {e}") from e

        summary = summarize_forecast(payload, datetime.now(timezone.utc), self.tz)
        logger.debug("Weather for %s: %s", self.settings.site, summary["current"])
        return {self.settings.site: summary}
