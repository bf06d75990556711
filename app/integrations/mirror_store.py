"""Dual-write store: local working copy first, then GitHub."""
from __future__ import annotations

import logging
from typing import Optional

from integrations.base import RemoteStore

logger = logging.getLogger(__name__)


class MirroredStore(RemoteStore):
    """
    Reads and version checks go to the primary (GitHub); every write lands on
    the local mirror first so the working tree matches what was committed.
    """

    name = "mirror"

    def __init__(self, primary: RemoteStore, mirror: RemoteStore):
        self.primary = primary
        self.mirror = mirror

    async def read(self, path: str) -> str:
        return await self.primary.read(path)

    async def read_version(self, path: str) -> Optional[str]:
        return await self.primary.read_version(path)

    async def compare_and_swap_write(
        self,
        path: str,
        expected_version: Optional[str],
        content: str,
        message: str,
    ) -> None:
        await self.mirror.write(path, content, message)
        await self.primary.compare_and_swap_write(path, expected_version, content, message)

    async def aclose(self) -> None:
        await self.mirror.aclose()
        await self.primary.aclose()
