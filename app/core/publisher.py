"""
Report publisher.

Writes the latest report, the versioned snapshot with its viewer page, the
manifest and the "latest" redirect page, in that order, through a RemoteStore.
A failure at any step aborts the remaining ones.
"""
from __future__ import annotations

import html
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, List, Optional
from zoneinfo import ZoneInfo

from pydantic import ValidationError

from core.config import PublishSettings
from core.models import Manifest, ManifestEntry, Report, iso_utc
from integrations.base import RemoteStore

logger = logging.getLogger(__name__)

LATEST_PATH = "hash-report.json"
MANIFEST_PATH = "reports/index.json"
LATEST_REDIRECT_PATH = "reports/latest/index.html"

LATEST_REDIRECT_HTML = """<!doctype html><html><head><meta charset="utf-8"><title>Latest Hash Report</title>
<meta name="viewport" content="width=device-width, initial-scale=1"/>
<script>
(async function(){
  try{
    const r = await fetch('/reports/index.json', {cache:'no-cache'});
    const m = await r.json();
    const first = m && m.reports && m.reports[0] && m.reports[0].path;
    if(first){ location.replace(first); }
    else { document.body.innerHTML = '<p>No reports yet.</p>'; }
  }catch(e){
    document.body.innerHTML = '<p>Unable to load latest report.</p>';
  }
})();
</script>
</head><body></body></html>
"""

_APP_SCRIPT_RE = re.compile(r'<script\s+type="module"\s+src="\.?/app\.js"></script>', re.IGNORECASE)
_BODY_END_RE = re.compile(r"</body>\s*</html>\s*$", re.IGNORECASE)
_TITLE_RE = re.compile(r"<title>[^<]*</title>", re.IGNORECASE)


def snapshot_dir_name(generated_at: datetime, tz: ZoneInfo) -> str:
    """``YYYY-MM-DD_hh-mm-AM|PM`` in the report zone; unique per local minute."""
    local = generated_at.astimezone(tz)
    return local.strftime("%Y-%m-%d_%I-%M-") + ("PM" if local.hour >= 12 else "AM")


def human_label(generated_at: datetime, tz: ZoneInfo) -> str:
    """e.g. "Monday, October 19, 2026 at 6:00 AM"."""
    local = generated_at.astimezone(tz)
    hour = local.hour % 12 or 12
    period = "PM" if local.hour >= 12 else "AM"
    return f"{local:%A}, {local:%B} {local.day}, {local.year} at {hour}:{local:%M} {period}"


def render_report_page(template: str, label: str, timezone_name: str) -> str:
    """
    Adapt the viewer page for a snapshot directory.

    The app script is pinned to the site root, the page is told to fetch its
    report relative to its own directory, and the title carries the label.
    """
    page = _APP_SCRIPT_RE.sub('<script type="module" src="/app.js"></script>', template)

    inject = (
        "\n  <script>\n"
        "    window.__REPORT_FETCH_BASE__ = location.pathname.replace(/[^/]+$/, '');\n"
        f"    window.REPORT_TZ = '{timezone_name}';\n"
        "  </script>"
    )
    if _BODY_END_RE.search(page):
        page = _BODY_END_RE.sub(lambda _: f"{inject}\n</body></html>\n", page, count=1)
    else:
        page = page + inject + "\n"

    title = f"<title>Hash Report - {html.escape(label)}</title>"
    return _TITLE_RE.sub(lambda _: title, page, count=1)


def merge_manifest(existing: Any, entry: ManifestEntry, max_entries: int) -> Manifest:
    """
    Prepend ``entry``, drop any older entry with the same path, cap the length.

    Malformed existing content is tolerated: unusable entries are skipped.
    """
    reports = existing.get("reports") if isinstance(existing, dict) else None
    if existing is not None and not isinstance(reports, list):
        logger.warning("Manifest has no reports list; starting fresh")
        reports = []

    kept: List[ManifestEntry] = []
    for item in reports or []:
        if not isinstance(item, dict):
            continue
        try:
            old = ManifestEntry.model_validate(item)
        except ValidationError:
            logger.warning("Skipping malformed manifest entry: %r", item)
            continue
        if old.path != entry.path:
            kept.append(old)

    return Manifest(reports=([entry] + kept)[:max_entries])


def load_page_template(path: Optional[str]) -> str:
    """Read the viewer page template; a bare page is used when none is configured."""
    if path and Path(path).is_file():
        with open(path, "r", encoding="utf-8") as f:
            return f.read()
    if path:
        logger.warning("Page template not found: %s (using bare page)", path)
    return (
        '<!doctype html><html><head><meta charset="utf-8"><title>Hash Report</title></head>'
        '<body><div id="app"></div><script type="module" src="/app.js"></script></body></html>\n'
    )


@dataclass
class PublishResult:
    snapshot_path: str
    manifest_count: int


class Publisher:
    """Persists reports through a RemoteStore."""

    def __init__(self, store: RemoteStore, settings: PublishSettings, timezone_name: str, page_template: str):
        self.store = store
        self.settings = settings
        self.timezone_name = timezone_name
        self.tz = ZoneInfo(timezone_name)
        self.page_template = page_template

    async def publish(self, report: Report) -> PublishResult:
        """
        Publish one report.

        Raises:
            StoreError: on the first failing write; later steps are not attempted
        """
        document = report.to_document()
        generated_at = report.generated_at
        dir_name = snapshot_dir_name(generated_at, self.tz)
        label = human_label(generated_at, self.tz)

        # 1. Latest
        await self.store.write_json(LATEST_PATH, document, f"Update {LATEST_PATH}")

        # 2-3. Versioned snapshot and its page
        snapshot_json = f"reports/{dir_name}/hash-report.json"
        snapshot_page = f"reports/{dir_name}/index.html"
        await self.store.write_json(snapshot_json, document, f"Add {snapshot_json}")
        page = render_report_page(self.page_template, label, self.timezone_name)
        await self.store.write(snapshot_page, page, f"Add {snapshot_page}")

        # 4. Manifest
        entry = ManifestEntry(
            path=f"/reports/{dir_name}/",
            label=label,
            generated_at=iso_utc(generated_at),
            snapshot_ts=report.current_snapshot_ts,
        )
        existing = await self.store.read_json(MANIFEST_PATH, default={"reports": []})
        manifest = merge_manifest(existing, entry, self.settings.manifest_max_entries)
        await self.store.write_json(MANIFEST_PATH, manifest.to_document(), "Update reports index")

        # 5. Latest redirect
        await self.store.write(LATEST_REDIRECT_PATH, LATEST_REDIRECT_HTML, "Update latest redirect")

        logger.info("Published %s (%d reports in manifest)", entry.path, len(manifest.reports))
        return PublishResult(snapshot_path=entry.path, manifest_count=len(manifest.reports))
