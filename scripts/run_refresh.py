#!/usr/bin/env python3
"""
Run one hash report refresh from the command line (cron / CI).

Usage:
  python scripts/run_refresh.py
  python scripts/run_refresh.py --force
  python scripts/run_refresh.py --config /etc/hash-report/config.yaml

Exit status is 0 when the run published or was skipped by the schedule,
1 when it failed.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
APP_DIR = ROOT / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from core.config import AppConfig, ConfigError
from core.pipeline import SKIPPED, build_pipeline
from integrations.base import StoreError
from providers.base import SourceError

logger = logging.getLogger("run_refresh")


async def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Fetch, aggregate and publish the hash report")
    parser.add_argument("--config", default=None, help="YAML config path (default: $HASH_REPORT_CONFIG or bundled)")
    parser.add_argument("--force", action="store_true", help="Ignore the local schedule")
    args = parser.parse_args(argv)

    try:
        settings = AppConfig.load(args.config).settings()
        pipeline = build_pipeline(settings)
    except (ConfigError, StoreError, SourceError, ValueError) as e:
        logger.error("Configuration error: %s", e)
        return 1

    try:
        result = await pipeline.run(force=args.force)
    finally:
        await pipeline.aclose()

    if result.status == SKIPPED:
        logger.info("Skipped (outside local schedule)")
    elif result.ok:
        logger.info("Published %s (%s reports in manifest)", result.snapshot_path, result.manifest_count)
    return 0 if result.ok else 1


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[logging.StreamHandler(sys.stdout)]
    )
    sys.exit(asyncio.run(main()))
