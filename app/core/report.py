"""Report assembly: merge slice aggregates and optional context into one document."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional, Sequence

from core.aggregator import TOTAL_KEY
from core.models import (
    OverallTotals,
    PriceExtremes,
    Report,
    SliceReport,
    SliceTotalsDocument,
    iso_utc,
    to_utc,
)


def latest_snapshot(slices: Sequence[SliceReport]) -> Optional[datetime]:
    """Latest of the per-slice instantaneous timestamps, ignoring slices without one."""
    stamps = [s.snapshot_ts for s in slices if s.snapshot_ts is not None]
    return max(stamps) if stamps else None


def _total(values: Dict[str, Optional[float]]) -> float:
    return values.get(TOTAL_KEY) or 0.0


def assemble_report(
    slices: Sequence[SliceReport],
    *,
    generated_at: datetime,
    window_hours: int,
    weather: Optional[Dict[str, Any]] = None,
    power_cost: Optional[PriceExtremes] = None,
) -> Report:
    """
    Build the immutable report.

    Args:
        slices: Aggregator output, one per slice
        generated_at: Capture time of this run (not any source timestamp)
        window_hours: Trailing window the aggregates cover
        weather: Optional weather payload keyed by site
        power_cost: Optional price extremes

    Returns:
        Report
    """
    overall = OverallTotals(
        current_phs=sum(_total(s.totals.current) for s in slices),
        avg_window_phs=sum(_total(s.totals.avg_window) for s in slices),
    )
    issues = {s.key: s.issues for s in slices}

    return Report(
        generated_at=to_utc(generated_at),
        window_hours=window_hours,
        current_snapshot_ts=iso_utc(latest_snapshot(slices)),
        overall=overall,
        slices={
            s.key: SliceTotalsDocument(
                label=s.label,
                snapshot_ts=iso_utc(s.snapshot_ts),
                current=s.totals.current,
                avg_window=s.totals.avg_window,
            )
            for s in slices
        },
        tables={s.key: s.table for s in slices},
        issues_by_group=issues if any(issues.values()) else None,
        weather=weather,
        power_cost=power_cost,
    )
