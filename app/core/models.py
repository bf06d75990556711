"""
Report data structures.

MetricRow is the strict boundary schema for rows coming out of the metrics
source; everything downstream of the aggregator works on these models.
"""
from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Any, ClassVar, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


def to_utc(value: Any) -> Optional[datetime]:
    """Coerce datetimes, epoch seconds and ISO strings to aware UTC datetimes."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value.astimezone(timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        try:
            return datetime.fromtimestamp(float(text), tz=timezone.utc)
        except ValueError:
            pass
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00").replace(" UTC", "+00:00"))
        return parsed.replace(tzinfo=timezone.utc) if parsed.tzinfo is None else parsed.astimezone(timezone.utc)
    raise ValueError(f"Unsupported timestamp value: {value!r}")


def iso_utc(value: Optional[datetime]) -> Optional[str]:
    """ISO-8601 UTC with millisecond precision and a Z suffix."""
    if value is None:
        return None
    value = to_utc(value)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def _optional_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class MetricRow(BaseModel):
    """One observation of one device at one timestamp."""

    model_config = ConfigDict(frozen=True)

    device_id: str
    timestamp: datetime
    slice_name: str = ""
    group: Optional[str] = None
    hashrate: Optional[float] = None
    pool_urls: Tuple[Optional[str], ...] = ()
    workers: Tuple[Optional[str], ...] = ()
    rack: Optional[str] = None
    row: Optional[str] = None
    index: Optional[str] = None
    ip: Optional[str] = None
    mac: Optional[str] = None

    @field_validator("device_id", mode="before")
    @classmethod
    def _device_id(cls, value: Any) -> str:
        text = _optional_text(value)
        if text is None:
            raise ValueError("device_id is required")
        return text

    @field_validator("timestamp", mode="before")
    @classmethod
    def _timestamp(cls, value: Any) -> datetime:
        parsed = to_utc(value)
        if parsed is None:
            raise ValueError("timestamp is required")
        return parsed

    @field_validator("hashrate", mode="before")
    @classmethod
    def _hashrate(cls, value: Any) -> Optional[float]:
        # Unparseable rates become None (SAFE_CAST semantics)
        if value is None or isinstance(value, bool):
            return None
        try:
            rate = float(value)
        except (TypeError, ValueError):
            return None
        return rate if math.isfinite(rate) else None

    @field_validator("group", "rack", "row", "index", "ip", "mac", mode="before")
    @classmethod
    def _text(cls, value: Any) -> Optional[str]:
        return _optional_text(value)

    @field_validator("pool_urls", "workers", mode="before")
    @classmethod
    def _text_tuple(cls, value: Any) -> Tuple[Optional[str], ...]:
        if value is None:
            return ()
        if isinstance(value, str):
            value = [value]
        return tuple(_optional_text(v) for v in value)


class CategoryTotals(BaseModel):
    """Per-slice category split; each mapping has "total" plus one key per category."""

    model_config = ConfigDict(frozen=True)

    current: Dict[str, Optional[float]]
    avg_window: Dict[str, Optional[float]]


class GroupTableRow(BaseModel):
    model_config = ConfigDict(frozen=True)

    group: Optional[str] = None
    deployed: int = 0
    reachable: int = 0
    hashing: int = 0
    not_hashing: int = 0
    efficiency_pct: Optional[float] = None
    not_hashing_rate_pct: Optional[float] = None


class CategoryEfficiency(BaseModel):
    model_config = ConfigDict(frozen=True)

    deployed: int = 0
    hashing: int = 0
    efficiency_pct: Optional[float] = None


class GroupTable(BaseModel):
    model_config = ConfigDict(frozen=True)

    mode: str
    rows: List[GroupTableRow] = Field(default_factory=list)
    totals: GroupTableRow
    category_efficiency: Dict[str, CategoryEfficiency] = Field(default_factory=dict)


class IssueEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    position: str = "R?.S?.P?"
    ip: Optional[str] = None
    mac: Optional[str] = None


class SliceReport(BaseModel):
    """Aggregator output for one slice."""

    model_config = ConfigDict(frozen=True)

    key: str
    label: str
    snapshot_ts: Optional[datetime] = None
    totals: CategoryTotals
    table: GroupTable
    issues: Dict[str, List[IssueEntry]] = Field(default_factory=dict)


class PriceExtremes(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    min_cents_kwh: float
    max_cents_kwh: float
    fetched_at: datetime = Field(alias="fetchedAt")
    source: str


class OverallTotals(BaseModel):
    model_config = ConfigDict(frozen=True)

    current_phs: float = 0.0
    avg_window_phs: float = 0.0


class SliceTotalsDocument(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    label: str
    snapshot_ts: Optional[str] = Field(default=None, alias="snapshotTs")
    current: Dict[str, Optional[float]]
    avg_window: Dict[str, Optional[float]]


class Report(BaseModel):
    """The immutable report document persisted as latest, snapshot and manifest entry."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    generated_at: datetime = Field(alias="generatedAt")
    window_hours: int = Field(alias="windowHours")
    current_snapshot_ts: Optional[str] = Field(default=None, alias="currentSnapshotTs")
    overall: OverallTotals
    slices: Dict[str, SliceTotalsDocument]
    tables: Dict[str, GroupTable]
    issues_by_group: Optional[Dict[str, Dict[str, List[IssueEntry]]]] = Field(default=None, alias="issuesByGroup")
    weather: Optional[Dict[str, Any]] = None
    power_cost: Optional[PriceExtremes] = Field(default=None, alias="powerCost")

    OPTIONAL_FIELDS: ClassVar[Tuple[str, ...]] = ("issuesByGroup", "weather", "powerCost")

    def to_document(self) -> Dict[str, Any]:
        """JSON-ready dict; absent optional payloads are omitted, nulls elsewhere are kept."""
        doc = self.model_dump(mode="json", by_alias=True)
        doc["generatedAt"] = iso_utc(self.generated_at)
        if self.power_cost is not None:
            doc["powerCost"]["fetchedAt"] = iso_utc(self.power_cost.fetched_at)
        for key in self.OPTIONAL_FIELDS:
            if doc.get(key) is None:
                doc.pop(key, None)
        return doc


class ManifestEntry(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="allow")

    path: str
    label: str = ""
    generated_at: Optional[str] = Field(default=None, alias="generatedAt")
    snapshot_ts: Optional[str] = Field(default=None, alias="snapshotTs")

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class Manifest(BaseModel):
    model_config = ConfigDict(frozen=True)

    reports: List[ManifestEntry] = Field(default_factory=list)

    def to_document(self) -> Dict[str, Any]:
        return {"reports": [entry.to_document() for entry in self.reports]}
