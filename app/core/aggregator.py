"""
Category aggregation for fleet hashrate rows.

Turns raw per-device MetricRows for one slice into:
- instantaneous category split at the latest observed timestamp
- windowed average split (average per device, then sum)
- per-group availability/efficiency table
- per-category efficiency and the non-hashing device issue list
"""
from __future__ import annotations

import logging
import re
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from core.config import CategorySettings, SliceSettings, TableSettings
from core.models import (
    CategoryEfficiency,
    CategoryTotals,
    GroupTable,
    GroupTableRow,
    IssueEntry,
    MetricRow,
    SliceReport,
)

logger = logging.getLogger(__name__)

PH_SCALE = 1e15
OTHER_CATEGORY = "other"
TOTAL_KEY = "total"

Predicate = Callable[[MetricRow], bool]


@dataclass(frozen=True)
class CategoryRule:
    label: str
    predicate: Predicate


# ============================================================================
# PREDICATES
# ============================================================================

def _any_matches(values: Iterable[Optional[str]], regex: re.Pattern) -> bool:
    # Nulls coalesce to "" so they never match a non-empty pattern
    return any(regex.search((value or "").lower()) for value in values)


def pool_url_matches(pattern: str) -> Predicate:
    """Match when any configured pool URL contains ``pattern`` (case-insensitive regex)."""
    regex = re.compile(pattern, re.IGNORECASE)

    def predicate(row: MetricRow) -> bool:
        return _any_matches(row.pool_urls, regex)

    return predicate


def worker_matches(pattern: str) -> Predicate:
    """Match on the active worker or any per-pool worker name."""
    regex = re.compile(pattern, re.IGNORECASE)

    def predicate(row: MetricRow) -> bool:
        return _any_matches(row.workers, regex)

    return predicate


PREDICATE_BUILDERS: Dict[str, Callable[[str], Predicate]] = {
    "pool_url": pool_url_matches,
    "worker": worker_matches,
}


def build_rules(categories: Sequence[CategorySettings]) -> List[CategoryRule]:
    """Build the ordered rule chain; order in config is precedence order."""
    rules: List[CategoryRule] = []
    seen: Set[str] = set()
    for category in categories:
        if category.label in seen or category.label in {OTHER_CATEGORY, TOTAL_KEY}:
            raise ValueError(f"Duplicate or reserved category label '{category.label}'")
        seen.add(category.label)
        rules.append(CategoryRule(category.label, PREDICATE_BUILDERS[category.match](category.pattern)))
    return rules


def classify(row: MetricRow, rules: Sequence[CategoryRule]) -> str:
    """First matching rule wins; unmatched rows fall into ``other``."""
    for rule in rules:
        if rule.predicate(row):
            return rule.label
    return OTHER_CATEGORY


def category_labels(rules: Sequence[CategoryRule]) -> List[str]:
    return [rule.label for rule in rules] + [OTHER_CATEGORY]


# ============================================================================
# HELPERS
# ============================================================================

def pct_or_none(numerator: Optional[float], denominator: Optional[float]) -> Optional[float]:
    """Percentage, or None when the denominator is zero or missing."""
    if numerator is None or not denominator:
        return None
    return numerator / denominator * 100.0


def latest_timestamp(rows: Sequence[MetricRow]) -> Optional[datetime]:
    return max((row.timestamp for row in rows), default=None)


def rows_at(rows: Sequence[MetricRow], ts: Optional[datetime]) -> List[MetricRow]:
    if ts is None:
        return []
    return [row for row in rows if row.timestamp == ts]


def _is_hashing(row: MetricRow) -> bool:
    return row.hashrate is not None and row.hashrate > 0


# ============================================================================
# CATEGORY SPLITS
# ============================================================================

def current_split(rows: Sequence[MetricRow], rules: Sequence[CategoryRule]) -> Dict[str, Optional[float]]:
    """
    Instantaneous totals at the latest timestamp, in PH/s.

    Returns None for every key when the window has no rows.
    """
    labels = category_labels(rules)
    latest_rows = rows_at(rows, latest_timestamp(rows))
    if not latest_rows:
        return {TOTAL_KEY: None, **{label: None for label in labels}}

    sums = {label: 0.0 for label in labels}
    for row in latest_rows:
        if row.hashrate is None:
            continue
        sums[classify(row, rules)] += row.hashrate

    split: Dict[str, Optional[float]] = {TOTAL_KEY: sum(sums.values()) / PH_SCALE}
    split.update({label: value / PH_SCALE for label, value in sums.items()})
    return split


def window_split(rows: Sequence[MetricRow], rules: Sequence[CategoryRule]) -> Dict[str, Optional[float]]:
    """
    Windowed average totals, in PH/s.

    Each category value is the sum over devices of that device's mean rate
    while it was in the category. The window total is the sum over devices of
    each device's mean across all its samples, so a device that moved between
    categories during the window counts once per category it visited.
    """
    labels = category_labels(rules)
    samples: Dict[str, Dict[str, List[float]]] = defaultdict(lambda: defaultdict(list))
    for row in rows:
        if row.hashrate is None:
            continue
        samples[row.device_id][classify(row, rules)].append(row.hashrate)

    if not samples:
        if rows:
            return {TOTAL_KEY: 0.0, **{label: 0.0 for label in labels}}
        return {TOTAL_KEY: None, **{label: None for label in labels}}

    by_category = {label: 0.0 for label in labels}
    total = 0.0
    for per_category in samples.values():
        all_values = [v for values in per_category.values() for v in values]
        total += sum(all_values) / len(all_values)
        for label, values in per_category.items():
            by_category[label] += sum(values) / len(values)

    split: Dict[str, Optional[float]] = {TOTAL_KEY: total / PH_SCALE}
    split.update({label: value / PH_SCALE for label, value in by_category.items()})
    return split


# ============================================================================
# GROUP TABLES
# ============================================================================

_BOX_NUMBER_RE = re.compile(r"^[A-Z]{2}(\d+)", re.IGNORECASE)


def group_sort_key(group: Optional[str]) -> Tuple[int, str]:
    """Natural key: numeric part after the two-letter prefix, then the id itself."""
    text = str(group or "")
    match = _BOX_NUMBER_RE.match(text)
    return (int(match.group(1)) if match else 0, text)


def _prefix_regex(prefixes: Sequence[str]) -> Optional[re.Pattern]:
    if not prefixes:
        return None
    return re.compile("^(" + "|".join(re.escape(p) for p in prefixes) + ")", re.IGNORECASE)


def _efficiency(mode: str, deployed: int, reachable: int, hashing: int) -> Optional[float]:
    denominator = reachable if mode == "uptime" else deployed
    return pct_or_none(hashing, denominator)


def make_group_row(mode: str, group: Optional[str], deployed: int, reachable: int, hashing: int) -> GroupTableRow:
    not_hashing = max(0, reachable - hashing)
    return GroupTableRow(
        group=group,
        deployed=deployed,
        reachable=reachable,
        hashing=hashing,
        not_hashing=not_hashing,
        efficiency_pct=_efficiency(mode, deployed, reachable, hashing),
        not_hashing_rate_pct=pct_or_none(not_hashing, reachable),
    )


def table_totals(mode: str, rows: Sequence[GroupTableRow]) -> GroupTableRow:
    """Sum counts across rows and recompute percentages from the sums."""
    deployed = sum(r.deployed for r in rows)
    reachable = sum(r.reachable for r in rows)
    hashing = sum(r.hashing for r in rows)
    not_hashing = sum(r.not_hashing for r in rows)
    return GroupTableRow(
        group=None,
        deployed=deployed,
        reachable=reachable,
        hashing=hashing,
        not_hashing=not_hashing,
        efficiency_pct=_efficiency(mode, deployed, reachable, hashing),
        not_hashing_rate_pct=pct_or_none(not_hashing, reachable),
    )


def group_counts(rows: Sequence[MetricRow]) -> Dict[str, Tuple[int, int, int]]:
    """Per group: (deployed, reachable, hashing) distinct device counts."""
    latest = latest_timestamp(rows)
    deployed: Dict[str, Set[str]] = defaultdict(set)
    reachable: Dict[str, Set[str]] = defaultdict(set)
    hashing: Dict[str, Set[str]] = defaultdict(set)
    for row in rows:
        if row.group is None:
            continue
        deployed[row.group].add(row.device_id)
        if row.timestamp == latest:
            reachable[row.group].add(row.device_id)
            if _is_hashing(row):
                hashing[row.group].add(row.device_id)
    return {
        group: (len(devices), len(reachable.get(group, ())), len(hashing.get(group, ())))
        for group, devices in deployed.items()
    }


def build_group_table(rows: Sequence[MetricRow], table: TableSettings) -> GroupTable:
    prefix_re = _prefix_regex(table.prefixes)
    allow = {g.upper() for g in table.allow}

    table_rows: List[GroupTableRow] = []
    for group, (deployed, reachable, hashing) in group_counts(rows).items():
        if prefix_re is not None and not prefix_re.match(group):
            continue
        if allow and group.upper() not in allow:
            continue
        table_rows.append(make_group_row(table.mode, group, deployed, reachable, hashing))

    table_rows.sort(key=lambda r: group_sort_key(r.group))
    return GroupTable(mode=table.mode, rows=table_rows, totals=table_totals(table.mode, table_rows))


def category_efficiency(rows: Sequence[MetricRow], rule: CategoryRule) -> CategoryEfficiency:
    """Deployed = devices matching the category anywhere in the window; hashing = matching and > 0 at latest."""
    latest = latest_timestamp(rows)
    deployed: Set[str] = set()
    hashing: Set[str] = set()
    for row in rows:
        if not rule.predicate(row):
            continue
        deployed.add(row.device_id)
        if row.timestamp == latest and _is_hashing(row):
            hashing.add(row.device_id)
    return CategoryEfficiency(
        deployed=len(deployed),
        hashing=len(hashing),
        efficiency_pct=pct_or_none(len(hashing), len(deployed)),
    )


# ============================================================================
# ISSUES
# ============================================================================

_DIGITS_RE = re.compile(r"(\d+)")


def _digits(value: Optional[str]) -> str:
    match = _DIGITS_RE.search(value or "")
    return match.group(1) if match else "?"


def device_position(row: MetricRow) -> str:
    return f"R{_digits(row.rack)}.S{_digits(row.row)}.P{_digits(row.index)}"


def normalize_mac(mac: Optional[str]) -> Optional[str]:
    if not mac:
        return None
    return mac.replace("-", ":").lower()


def collect_issues(rows: Sequence[MetricRow], prefixes: Sequence[str]) -> Dict[str, List[IssueEntry]]:
    """Devices at the latest timestamp in a tracked group that are not hashing."""
    group_re = None
    if prefixes:
        group_re = re.compile("^(" + "|".join(re.escape(p) for p in prefixes) + r")\d+", re.IGNORECASE)

    found: List[Tuple[str, IssueEntry]] = []
    for row in rows_at(rows, latest_timestamp(rows)):
        if row.group is None or _is_hashing(row):
            continue
        if group_re is not None and not group_re.match(row.group):
            continue
        found.append((row.group, IssueEntry(position=device_position(row), ip=row.ip, mac=normalize_mac(row.mac))))

    found.sort(key=lambda item: (item[0], item[1].position))
    issues: Dict[str, List[IssueEntry]] = {}
    for group, entry in found:
        issues.setdefault(group, []).append(entry)
    return issues


# ============================================================================
# SLICE
# ============================================================================

def aggregate_slice(rows: Sequence[MetricRow], slice_settings: SliceSettings) -> SliceReport:
    """Run every computation for one slice's window of rows."""
    rules = build_rules(slice_settings.categories)
    rules_by_label = {rule.label: rule for rule in rules}

    table = build_group_table(rows, slice_settings.table)
    efficiencies: Dict[str, CategoryEfficiency] = {}
    for label in slice_settings.category_efficiency:
        rule = rules_by_label.get(label)
        if rule is None:
            logger.warning("Slice %s: no category '%s' for efficiency", slice_settings.key, label)
            continue
        efficiencies[label] = category_efficiency(rows, rule)
    if efficiencies:
        table = table.model_copy(update={"category_efficiency": efficiencies})

    report = SliceReport(
        key=slice_settings.key,
        label=slice_settings.label,
        snapshot_ts=latest_timestamp(rows),
        totals=CategoryTotals(current=current_split(rows, rules), avg_window=window_split(rows, rules)),
        table=table,
        issues=collect_issues(rows, slice_settings.table.prefixes),
    )
    logger.info(
        "Aggregated slice %s: %s rows, %s groups, snapshot %s",
        slice_settings.key,
        len(rows),
        len(table.rows),
        report.snapshot_ts,
    )
    return report
