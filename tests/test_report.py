from datetime import datetime, timezone

import pytest

from core.aggregator import aggregate_slice
from core.config import CategorySettings, SliceSettings, TableSettings
from core.models import MetricRow, PriceExtremes
from core.report import assemble_report

GENERATED = datetime(2026, 10, 19, 10, 0, 12, 345000, tzinfo=timezone.utc)

SITE = SliceSettings(
    key="site",
    label="Site",
    client_name="Site",
    categories=[CategorySettings(label="antpool", match="pool_url", pattern="antpool")],
    table=TableSettings(mode="deployed", prefixes=["MB"]),
)
EMPTY = SliceSettings(key="empty", label="Empty", client_name="Empty")


def _rows(ts, rate, hashing=True):
    return [
        MetricRow(device_id="a", timestamp=ts, group="MB01", hashrate=rate, pool_urls=("antpool",)),
        MetricRow(device_id="b", timestamp=ts, group="MB01", hashrate=rate if hashing else 0),
    ]


def test_overall_totals_sum_slices_and_treat_missing_as_zero():
    ts = datetime(2026, 10, 19, 9, 50, tzinfo=timezone.utc)
    slices = [aggregate_slice(_rows(ts, 1e15), SITE), aggregate_slice([], EMPTY)]

    report = assemble_report(slices, generated_at=GENERATED, window_hours=24)

    assert report.overall.current_phs == pytest.approx(2.0)
    assert report.overall.avg_window_phs == pytest.approx(2.0)
    assert report.current_snapshot_ts == "2026-10-19T09:50:00.000Z"
    assert report.slices["empty"].current["total"] is None


def test_snapshot_ts_is_latest_across_slices():
    early = datetime(2026, 10, 19, 9, 40, tzinfo=timezone.utc)
    late = datetime(2026, 10, 19, 9, 50, tzinfo=timezone.utc)
    other = SITE.model_copy(update={"key": "other_site"})

    report = assemble_report(
        [aggregate_slice(_rows(late, 1e15), SITE), aggregate_slice(_rows(early, 1e15), other)],
        generated_at=GENERATED,
        window_hours=24,
    )

    assert report.current_snapshot_ts == "2026-10-19T09:50:00.000Z"
    assert report.slices["other_site"].snapshot_ts == "2026-10-19T09:40:00.000Z"


def test_no_snapshot_when_every_slice_is_empty():
    report = assemble_report([aggregate_slice([], EMPTY)], generated_at=GENERATED, window_hours=24)

    assert report.current_snapshot_ts is None
    assert report.to_document()["currentSnapshotTs"] is None


def test_document_omits_absent_optional_payloads():
    ts = datetime(2026, 10, 19, 9, 50, tzinfo=timezone.utc)
    report = assemble_report([aggregate_slice(_rows(ts, 1e15), SITE)], generated_at=GENERATED, window_hours=24)

    doc = report.to_document()

    assert doc["generatedAt"] == "2026-10-19T10:00:12.345Z"
    assert doc["windowHours"] == 24
    assert "weather" not in doc
    assert "powerCost" not in doc
    assert "issuesByGroup" not in doc
    assert doc["tables"]["site"]["rows"][0]["group"] == "MB01"


def test_document_includes_optional_payloads_when_present():
    ts = datetime(2026, 10, 19, 9, 50, tzinfo=timezone.utc)
    price = PriceExtremes(
        min_cents_kwh=3.215,
        max_cents_kwh=9.87,
        fetched_at=datetime(2026, 10, 19, 9, 59, tzinfo=timezone.utc),
        source="meagpower",
    )

    report = assemble_report(
        [aggregate_slice(_rows(ts, 1e15, hashing=False), SITE)],
        generated_at=GENERATED,
        window_hours=24,
        weather={"sylvania": {"current": {"temperature_f": 71.2}}},
        power_cost=price,
    )
    doc = report.to_document()

    assert doc["weather"]["sylvania"]["current"]["temperature_f"] == 71.2
    assert doc["powerCost"] == {
        "min_cents_kwh": 3.215,
        "max_cents_kwh": 9.87,
        "fetchedAt": "2026-10-19T09:59:00.000Z",
        "source": "meagpower",
    }
    assert doc["issuesByGroup"]["site"]["MB01"][0]["position"] == "R?.S?.P?"


def test_report_is_frozen():
    report = assemble_report([], generated_at=GENERATED, window_hours=24)

    with pytest.raises(Exception):
        report.window_hours = 12
