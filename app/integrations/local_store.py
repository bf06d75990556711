"""Filesystem store; version tokens are SHA-1 digests of the file content."""
from __future__ import annotations

import hashlib
import logging
import os
from pathlib import Path
from typing import Optional

import aiofiles

from core.config import LocalStoreSettings
from integrations.base import ConflictError, NotFoundError, RemoteStore, StoreError, clean_path

logger = logging.getLogger(__name__)


def content_version(content: bytes) -> str:
    return hashlib.sha1(content).hexdigest()


class LocalFileStore(RemoteStore):
    """Store rooted at a local directory (e.g. the site's public/ folder)."""

    name = "local"

    def __init__(self, settings: LocalStoreSettings):
        self.root = Path(settings.root)

    def resolve(self, path: str) -> Path:
        relative = clean_path(path)
        if relative.startswith("public/"):
            relative = relative[len("public/"):]
        target = (self.root / relative).resolve()
        if self.root.resolve() not in target.parents and target != self.root.resolve():
            raise StoreError(f"Path escapes store root: {path}")
        return target

    async def _read_bytes(self, path: str) -> bytes:
        target = self.resolve(path)
        if not target.is_file():
            raise NotFoundError(path)
        try:
            async with aiofiles.open(target, "rb") as f:
                return await f.read()
        except OSError as e:
            raise StoreError(f"Local read failed for {path}: {e}") from e

    async def read(self, path: str) -> str:
        return (await self._read_bytes(path)).decode("utf-8")

    async def read_version(self, path: str) -> Optional[str]:
        try:
            return content_version(await self._read_bytes(path))
        except NotFoundError:
            return None

    async def compare_and_swap_write(
        self,
        path: str,
        expected_version: Optional[str],
        content: str,
        message: str,
    ) -> None:
        current = await self.read_version(path)
        if current != expected_version:
            raise ConflictError(f"{path} changed (expected {expected_version}, found {current})")

        target = self.resolve(path)
        try:
            os.makedirs(target.parent, exist_ok=True)
            async with aiofiles.open(target, "w", encoding="utf-8") as f:
                await f.write(content)
        except OSError as e:
            raise StoreError(f"Local write failed for {path}: {e}") from e
        logger.info("Wrote %s (%s)", target, message)
