from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from core.aggregator import (
    aggregate_slice,
    build_group_table,
    build_rules,
    classify,
    collect_issues,
    current_split,
    group_sort_key,
    make_group_row,
    window_split,
)
from core.config import CategorySettings, SliceSettings, TableSettings
from core.models import MetricRow

T1 = datetime(2026, 10, 19, 9, 50, tzinfo=timezone.utc)
T0 = T1 - timedelta(hours=1)


def _row(device, ts=T1, hashrate=None, group="MB01", pools=(), workers=(), **extra):
    return MetricRow(
        device_id=device,
        timestamp=ts,
        slice_name="Sylvania",
        group=group,
        hashrate=hashrate,
        pool_urls=pools,
        workers=workers,
        **extra,
    )


SYLVANIA = SliceSettings(
    key="sylvania",
    label="Sylvania",
    client_name="Sylvania",
    categories=[
        CategorySettings(label="antpool", match="pool_url", pattern="antpool"),
        CategorySettings(label="blockware", match="pool_url", pattern="blockware"),
    ],
    table=TableSettings(mode="deployed", prefixes=["MB", "AB"], allow=["MB02", "MB10", "AB01"]),
    category_efficiency=["blockware"],
)

BITMAIN_RULES = build_rules([
    CategorySettings(label="kjdga", match="worker", pattern=r"(?:^|\.)kjdga"),
    CategorySettings(label="f2pool", match="pool_url", pattern="f2pool"),
])


def test_current_split_sums_to_total():
    rules = build_rules(SYLVANIA.categories)
    rows = [
        _row("a", hashrate=2e15, pools=("stratum+tcp://ss.antpool.com:3333",)),
        _row("b", hashrate=1e15, pools=(None, "stratum.blockware.co")),
        _row("c", hashrate=0.5e15, pools=("pool.example.org",)),
        _row("d", hashrate=None, pools=("antpool",)),
        _row("a", ts=T0, hashrate=9e15, pools=("antpool",)),
    ]

    split = current_split(rows, rules)

    assert split["total"] == pytest.approx(3.5)
    assert split["antpool"] == pytest.approx(2.0)
    assert split["blockware"] == pytest.approx(1.0)
    assert split["other"] == pytest.approx(0.5)
    assert split["antpool"] + split["blockware"] + split["other"] == pytest.approx(split["total"], rel=1e-9)


def test_first_matching_category_wins():
    rules = build_rules(SYLVANIA.categories)
    both = _row("a", hashrate=1.0, pools=("blockware.pool", "ANTPOOL.com"))
    assert classify(both, rules) == "antpool"

    kjdga_on_f2pool = _row("b", pools=("btc.f2pool.com",), workers=("acct.kjdga01",))
    assert classify(kjdga_on_f2pool, BITMAIN_RULES) == "kjdga"

    # "xkjdga" is not a kjdga worker (needs start or "." before it)
    lookalike = _row("c", pools=("btc.f2pool.com",), workers=("xkjdga",))
    assert classify(lookalike, BITMAIN_RULES) == "f2pool"


def test_null_pool_and_worker_values_fall_into_other():
    rules = build_rules(SYLVANIA.categories)
    row = _row("a", pools=(None, None, None), workers=(None,))

    assert classify(row, rules) == "other"
    assert classify(row, BITMAIN_RULES) == "other"


def test_window_split_averages_per_device_then_sums():
    rules = build_rules(SYLVANIA.categories)
    rows = [
        _row("a", ts=T0, hashrate=1e15, pools=("antpool",)),
        _row("a", ts=T1, hashrate=3e15, pools=("antpool",)),
        # device b moved from blockware to another pool during the window
        _row("b", ts=T0, hashrate=1e15, pools=("blockware",)),
        _row("b", ts=T1, hashrate=3e15, pools=("elsewhere",)),
        _row("c", ts=T1, hashrate=None),
    ]

    split = window_split(rows, rules)

    # b averages 2.0 overall but counts its full mean in each category it visited
    assert split["total"] == pytest.approx(4.0)
    assert split["antpool"] == pytest.approx(2.0)
    assert split["blockware"] == pytest.approx(1.0)
    assert split["other"] == pytest.approx(3.0)


def test_window_split_sums_per_device_category_means():
    rules = build_rules(SYLVANIA.categories)
    rows = [
        _row("a", ts=T0, hashrate=2e15, pools=("antpool",)),
        _row("a", ts=T1, hashrate=4e15, pools=("antpool",)),
        _row("b", ts=T0, hashrate=1e15, pools=("antpool",)),
        _row("c", ts=T1, hashrate=5e15, pools=("blockware",)),
    ]

    split = window_split(rows, rules)

    assert split["antpool"] == pytest.approx(4.0)
    assert split["blockware"] == pytest.approx(5.0)
    assert split["other"] == pytest.approx(0.0)
    assert split["total"] == pytest.approx(9.0)


def test_empty_window_yields_nulls():
    rules = build_rules(SYLVANIA.categories)

    assert current_split([], rules) == {"total": None, "antpool": None, "blockware": None, "other": None}
    assert window_split([], rules)["total"] is None


def test_rows_without_rates_sum_to_zero():
    rules = build_rules(SYLVANIA.categories)
    rows = [_row("a", hashrate=None), _row("b", hashrate="garbage")]

    assert current_split(rows, rules)["total"] == 0.0
    assert window_split(rows, rules)["total"] == 0.0


def _table_rows():
    return [
        _row("a", ts=T0, hashrate=5e12, group="MB02"),
        _row("b", ts=T1, hashrate=5e12, group="MB02"),
        _row("c", ts=T1, hashrate=0, group="MB02"),
        _row("d", ts=T1, hashrate=None, group="MB10"),
        _row("e", ts=T0, hashrate=5e12, group="AB01"),
        _row("f", ts=T1, hashrate=5e12, group="XX01"),
        _row("g", ts=T1, hashrate=5e12, group="MB99"),
        _row("h", ts=T1, hashrate=5e12, group=None),
    ]


def test_group_table_counts_and_percentages():
    table = build_group_table(_table_rows(), SYLVANIA.table)

    assert [r.group for r in table.rows] == ["AB01", "MB02", "MB10"]
    ab01, mb02, mb10 = table.rows

    assert (mb02.deployed, mb02.reachable, mb02.hashing, mb02.not_hashing) == (3, 2, 1, 1)
    assert mb02.efficiency_pct == pytest.approx(100 / 3)
    assert mb02.not_hashing_rate_pct == pytest.approx(50.0)

    assert (mb10.deployed, mb10.reachable, mb10.hashing) == (1, 1, 0)
    assert mb10.efficiency_pct == 0.0

    assert (ab01.deployed, ab01.reachable, ab01.hashing, ab01.not_hashing) == (1, 0, 0, 0)
    assert ab01.not_hashing_rate_pct is None


def test_group_table_totals_are_recomputed_from_sums():
    totals = build_group_table(_table_rows(), SYLVANIA.table).totals

    assert (totals.deployed, totals.reachable, totals.hashing, totals.not_hashing) == (5, 3, 1, 2)
    assert totals.efficiency_pct == pytest.approx(20.0)
    assert totals.not_hashing_rate_pct == pytest.approx(200 / 3)


def test_uptime_mode_uses_reachable_denominator():
    table = build_group_table(
        _table_rows(), TableSettings(mode="uptime", prefixes=["MB", "AB"], allow=["MB02", "AB01"])
    )
    ab01, mb02 = table.rows

    assert mb02.efficiency_pct == pytest.approx(50.0)
    assert ab01.efficiency_pct is None


def test_empty_allow_list_keeps_every_prefixed_group():
    table = build_group_table(_table_rows(), TableSettings(mode="deployed", prefixes=["MB"]))

    assert [r.group for r in table.rows] == ["MB02", "MB10", "MB99"]


def test_group_row_edge_cases():
    assert make_group_row("deployed", "MB01", 0, 0, 0).efficiency_pct is None
    assert make_group_row("deployed", "MB01", 5, 2, 3).not_hashing == 0


def test_group_sort_key_is_numeric_then_lexicographic():
    groups = ["MB10", "MB2", "AB01", "ZZ", "MB02"]

    assert sorted(groups, key=group_sort_key) == ["ZZ", "AB01", "MB02", "MB2", "MB10"]


def test_collect_issues_lists_non_hashing_devices_by_group():
    rows = [
        _row("f", hashrate=0, group="MB01", rack="Rack 3", row="2", ip="10.0.0.5", mac="AA-BB-CC-DD-EE-FF"),
        _row("g", hashrate=None, group="MB01", rack="1", row="1", index="1"),
        _row("h", hashrate=0, group="XX01"),
        _row("i", hashrate=7e12, group="MB01"),
        _row("j", hashrate=0, group="MBX"),
        _row("k", ts=T0, hashrate=0, group="MB02"),
    ]

    issues = collect_issues(rows, ["MB", "AB"])

    assert list(issues) == ["MB01"]
    assert [i.position for i in issues["MB01"]] == ["R1.S1.P1", "R3.S2.P?"]
    assert issues["MB01"][1].mac == "aa:bb:cc:dd:ee:ff"
    assert issues["MB01"][1].ip == "10.0.0.5"
    assert issues["MB01"][0].ip is None


def test_aggregate_slice_includes_category_efficiency():
    rows = [
        _row("a", ts=T0, hashrate=1e12, group="MB02", pools=("blockware",)),
        _row("b", ts=T0, hashrate=1e12, group="MB02", pools=("blockware",)),
        _row("b", ts=T1, hashrate=1e12, group="MB02", pools=("blockware",)),
        _row("c", ts=T1, hashrate=1e12, group="MB02", pools=("antpool",)),
    ]

    report = aggregate_slice(rows, SYLVANIA)

    assert report.key == "sylvania"
    assert report.snapshot_ts == T1
    efficiency = report.table.category_efficiency["blockware"]
    assert (efficiency.deployed, efficiency.hashing) == (2, 1)
    assert efficiency.efficiency_pct == pytest.approx(50.0)


def test_aggregate_slice_with_no_rows():
    report = aggregate_slice([], SYLVANIA)

    assert report.snapshot_ts is None
    assert report.totals.current["total"] is None
    assert report.table.rows == []
    assert report.table.totals.efficiency_pct is None
    assert report.issues == {}


def test_reserved_or_duplicate_labels_rejected():
    with pytest.raises(ValueError):
        build_rules([CategorySettings(label="other", match="pool_url", pattern="x")])

    with pytest.raises(ValueError):
        build_rules([
            CategorySettings(label="a", match="pool_url", pattern="x"),
            CategorySettings(label="a", match="worker", pattern="y"),
        ])


def test_metric_row_boundary_coercion():
    row = MetricRow(device_id=42, timestamp="1760867400.0", hashrate="1.5E15", pool_urls="solo.pool")

    assert row.device_id == "42"
    assert row.timestamp == datetime(2025, 10, 19, 9, 50, tzinfo=timezone.utc)
    assert row.hashrate == 1.5e15
    assert row.pool_urls == ("solo.pool",)

    assert MetricRow(device_id="x", timestamp=T1, hashrate="n/a").hashrate is None
    assert MetricRow(device_id="x", timestamp=T1, hashrate="nan").hashrate is None

    with pytest.raises(ValidationError):
        MetricRow(device_id=None, timestamp=T1)
    with pytest.raises(ValidationError):
        MetricRow(device_id="x", timestamp=None)
