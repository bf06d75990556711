"""
Refresh pipeline: gate -> fetch -> aggregate -> assemble -> publish.

One invocation is one run. Metrics are mandatory; weather and power price are
best-effort and simply left out of the report when they fail.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from core.aggregator import aggregate_slice
from core.config import PipelineSettings
from core.models import PriceExtremes, SliceReport, iso_utc
from core.publisher import Publisher, load_page_template
from core.report import assemble_report
from core.schedule import build_schedule, should_run
from integrations import create_store
from integrations.base import RemoteStore
from providers.base import MetricsSource, PriceSource, WeatherSource
from providers.bigquery import BigQueryMetricsSource
from providers.powercost import MeagPriceSource
from providers.weather import OpenMeteoWeatherSource

logger = logging.getLogger(__name__)

SKIPPED = "skipped"
SUCCESS = "success"
FAILED = "failed"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RunResult:
    """Terminal outcome of one pipeline run."""

    status: str
    forced: bool = False
    snapshot_path: Optional[str] = None
    manifest_count: Optional[int] = None
    error: Optional[str] = None
    finished_at: datetime = field(default_factory=utc_now)

    @property
    def ok(self) -> bool:
        return self.status != FAILED

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["finished_at"] = iso_utc(self.finished_at)
        return data


class ReportPipeline:
    """Runs one refresh end to end."""

    def __init__(
        self,
        settings: PipelineSettings,
        metrics_source: MetricsSource,
        store: RemoteStore,
        weather_source: Optional[WeatherSource] = None,
        price_source: Optional[PriceSource] = None,
        page_template: Optional[str] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.settings = settings
        self.schedule = build_schedule(settings.schedule)
        self.metrics_source = metrics_source
        self.weather_source = weather_source
        self.price_source = price_source
        self.store = store
        self.clock = clock
        self.publisher = Publisher(
            store,
            settings.publish,
            settings.schedule.timezone,
            page_template if page_template is not None else load_page_template(settings.publish.page_template),
        )

    async def fetch_metrics_report(self, window_hours: int) -> List[SliceReport]:
        """Fetch every slice's rows concurrently, then aggregate each."""
        row_sets = await asyncio.gather(
            *(self.metrics_source.fetch_rows(s, window_hours) for s in self.settings.slices)
        )
        return [aggregate_slice(rows, s) for rows, s in zip(row_sets, self.settings.slices)]

    async def fetch_weather(self) -> Optional[Dict[str, Any]]:
        if self.weather_source is None:
            return None
        return await self.weather_source.fetch_weather()

    async def fetch_price_extremes(self) -> Optional[PriceExtremes]:
        if self.price_source is None:
            return None
        return await self.price_source.fetch_price_extremes()

    @staticmethod
    async def _optional(name: str, fetch: Callable[[], Awaitable[Any]]) -> Any:
        try:
            return await fetch()
        except Exception as e:
            logger.warning("⚠️ %s unavailable, continuing without it: %s", name, e)
            return None

    async def run(self, force: bool = False, now: Optional[datetime] = None) -> RunResult:
        """
        Execute one run. Never raises.

        Args:
            force: Bypass the schedule gate
            now: Run instant (defaults to the pipeline clock)

        Returns:
            RunResult with status skipped, success or failed
        """
        now = now or self.clock()

        if not should_run(now, self.schedule, force):
            logger.info("Refresh skipped: %s is outside the local schedule", iso_utc(now))
            return RunResult(status=SKIPPED, forced=force)

        window_hours = self.settings.publish.window_hours
        try:
            slices, weather, power_cost = await asyncio.gather(
                self.fetch_metrics_report(window_hours),
                self._optional("Weather", self.fetch_weather),
                self._optional("Power cost", self.fetch_price_extremes),
            )
            report = assemble_report(
                slices,
                generated_at=now,
                window_hours=window_hours,
                weather=weather,
                power_cost=power_cost,
            )
            published = await self.publisher.publish(report)
        except Exception as e:
            logger.error("❌ Refresh failed: %s", e, exc_info=True)
            return RunResult(status=FAILED, forced=force, error=str(e) or type(e).__name__)

        logger.info(
            "✅ Refresh published %s (%d in manifest%s)",
            published.snapshot_path,
            published.manifest_count,
            ", forced" if force else "",
        )
        return RunResult(
            status=SUCCESS,
            forced=force,
            snapshot_path=published.snapshot_path,
            manifest_count=published.manifest_count,
        )

    async def aclose(self) -> None:
        await self.metrics_source.aclose()
        await self.store.aclose()


def build_pipeline(settings: PipelineSettings) -> ReportPipeline:
    """Wire the configured sources and store into a pipeline."""
    return ReportPipeline(
        settings,
        metrics_source=BigQueryMetricsSource(settings.metrics),
        store=create_store(settings.store),
        weather_source=OpenMeteoWeatherSource(settings.weather) if settings.weather.enabled else None,
        price_source=MeagPriceSource(settings.price) if settings.price.enabled else None,
    )
