"""
BigQuery Metrics Source

Pulls raw per-device telemetry rows from the Foreman customer-access table
through the BigQuery REST API (jobs.query + getQueryResults paging). All
aggregation happens in core.aggregator; the SQL here only filters by slice
and window.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError

from core.config import MetricsSettings, SliceSettings
from core.models import MetricRow
from providers.base import MetricsSource, MetricsSourceError

logger = logging.getLogger(__name__)


ROWS_SQL = """
SELECT
  CAST(miner_id AS STRING) AS miner_id,
  timestamp,
  client_name,
  sitemap_group_name,
  SAFE_CAST(avg_hash_rate AS FLOAT64) AS avg_hash_rate,
  pool_1_url,
  pool_2_url,
  pool_3_url,
  active_worker,
  pool_1_worker,
  pool_2_worker,
  pool_3_worker,
  CAST(miner_rack AS STRING) AS miner_rack,
  CAST(miner_row AS STRING) AS miner_row,
  CAST(miner_index AS STRING) AS miner_index,
  CAST(miner_ip AS STRING) AS miner_ip,
  CAST(miner_mac AS STRING) AS miner_mac
FROM `{table}`
WHERE client_name = @client
  AND timestamp >= TIMESTAMP_SUB(CURRENT_TIMESTAMP(), INTERVAL @hours HOUR)
"""

TABLES_SQL = """
SELECT table_name
FROM `{project}.{dataset}.INFORMATION_SCHEMA.TABLES`
WHERE table_type = 'BASE TABLE'
"""


def _cell_value(cell: Any) -> Any:
    value = cell.get("v") if isinstance(cell, dict) else cell
    if isinstance(value, list):
        return [_cell_value(v) for v in value]
    return value


def decode_rows(schema: Dict[str, Any], rows: Optional[List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    """Zip REST ``rows[].f[].v`` cells with the schema field names."""
    names = [field["name"] for field in (schema or {}).get("fields", [])]
    decoded = []
    for row in rows or []:
        cells = row.get("f", [])
        decoded.append({name: _cell_value(cell) for name, cell in zip(names, cells)})
    return decoded


def to_metric_row(record: Dict[str, Any]) -> MetricRow:
    """Map a Foreman column record onto the MetricRow schema."""
    return MetricRow(
        device_id=record.get("miner_id"),
        timestamp=record.get("timestamp"),
        slice_name=record.get("client_name") or "",
        group=record.get("sitemap_group_name"),
        hashrate=record.get("avg_hash_rate"),
        pool_urls=(record.get("pool_1_url"), record.get("pool_2_url"), record.get("pool_3_url")),
        workers=(
            record.get("active_worker"),
            record.get("pool_1_worker"),
            record.get("pool_2_worker"),
            record.get("pool_3_worker"),
        ),
        rack=record.get("miner_rack"),
        row=record.get("miner_row"),
        index=record.get("miner_index"),
        ip=record.get("miner_ip"),
        mac=record.get("miner_mac"),
    )


def _named_param(name: str, type_: str, value: Any) -> Dict[str, Any]:
    return {
        "name": name,
        "parameterType": {"type": type_},
        "parameterValue": {"value": str(value)},
    }


class BigQueryMetricsSource(MetricsSource):
    """Foreman telemetry via BigQuery"""

    source_id = "bigquery"

    def __init__(self, settings: MetricsSettings, transport: Optional[httpx.AsyncBaseTransport] = None):
        if not settings.project:
            raise MetricsSourceError("BigQuery project is not configured")
        self.settings = settings
        self._table: Optional[str] = settings.table or None
        headers = {}
        if settings.access_token:
            headers["Authorization"] = f"Bearer {settings.access_token}"
        self._client = httpx.AsyncClient(
            base_url=settings.api_url.rstrip("/"),
            timeout=settings.timeout,
            transport=transport,
            headers=headers,
        )

    async def _query(self, sql: str, params: Optional[List[Dict[str, Any]]] = None) -> List[Dict[str, Any]]:
        """Run a query and return every result row, following page tokens."""
        project = self.settings.project
        body: Dict[str, Any] = {
            "query": sql,
            "useLegacySql": False,
            "maxResults": self.settings.page_size,
            "timeoutMs": int(self.settings.timeout * 1000),
        }
        if params:
            body["parameterMode"] = "NAMED"
            body["queryParameters"] = params
        if self.settings.location:
            body["location"] = self.settings.location

        try:
            response = await self._client.post(f"/projects/{project}/queries", json=body)
            response.raise_for_status()
            data = response.json()

            schema = data.get("schema")
            rows: List[Dict[str, Any]] = []
            if data.get("jobComplete"):
                rows.extend(decode_rows(schema, data.get("rows")))
            page_token = data.get("pageToken")
            job = data.get("jobReference") or {}

            while not data.get("jobComplete") or page_token:
                job_id = job.get("jobId")
                if not job_id:
                    raise MetricsSourceError("BigQuery response missing jobReference")
                query_params: Dict[str, Any] = {
                    "maxResults": self.settings.page_size,
                    "timeoutMs": int(self.settings.timeout * 1000),
                }
                if page_token:
                    query_params["pageToken"] = page_token
                if job.get("location"):
                    query_params["location"] = job["location"]

                response = await self._client.get(f"/projects/{project}/queries/{job_id}", params=query_params)
                response.raise_for_status()
                data = response.json()
                if not data.get("jobComplete"):
                    page_token = None
                    continue
                schema = data.get("schema") or schema
                rows.extend(decode_rows(schema, data.get("rows")))
                page_token = data.get("pageToken")
        except httpx.HTTPStatusError as e:
            raise MetricsSourceError(
                f"BigQuery HTTP {e.response.status_code}: {e.response.text[:200]}"
            ) from e
        except httpx.HTTPError as e:
            raise MetricsSourceError(f"BigQuery request failed: {e}") from e

        if data.get("errors"):
            raise MetricsSourceError(f"BigQuery job errors: {data['errors']}")
        return rows

    async def resolve_table(self) -> str:
        """
        Fully-qualified customer table.

        When no table is configured, the dataset's base tables are listed and
        exactly one non-helper table must remain.
        """
        if self._table:
            if "." not in self._table:
                self._table = f"{self.settings.project}.{self.settings.dataset}.{self._table}"
            return self._table

        if not self.settings.dataset:
            raise MetricsSourceError("BigQuery dataset is not configured")

        records = await self._query(TABLES_SQL.format(project=self.settings.project, dataset=self.settings.dataset))
        names = [r.get("table_name") for r in records if r.get("table_name")]
        candidates = [n for n in names if n not in self.settings.excluded_tables]
        if len(candidates) != 1:
            raise MetricsSourceError(f"Set metrics.table. Found: {', '.join(names) or 'no tables'}")

        self._table = f"{self.settings.project}.{self.settings.dataset}.{candidates[0]}"
        logger.info("Discovered metrics table %s", self._table)
        return self._table

    async def fetch_rows(self, slice_settings: SliceSettings, window_hours: int) -> List[MetricRow]:
        table = await self.resolve_table()
        records = await self._query(
            ROWS_SQL.format(table=table),
            [
                _named_param("client", "STRING", slice_settings.client_name),
                _named_param("hours", "INT64", int(window_hours)),
            ],
        )

        rows = []
        rejected = 0
        for record in records:
            try:
                rows.append(to_metric_row(record))
            except ValidationError:
                rejected += 1
        if rejected:
            logger.warning("Rejected %d malformed rows for %s", rejected, slice_settings.key)

        logger.info("Fetched %d rows for %s (%dh window)", len(rows), slice_settings.key, window_hours)
        return rows

    async def aclose(self) -> None:
        await self._client.aclose()
