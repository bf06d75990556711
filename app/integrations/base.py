"""
Remote Store Interface

Path-addressed text/JSON storage with optimistic-concurrency writes.
Concrete stores implement ``read``, ``read_version`` and
``compare_and_swap_write``; ``write`` composes the last two.
"""
from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Remote store operation failed."""


class NotFoundError(StoreError):
    """Path does not exist in the store."""


class ConflictError(StoreError):
    """The path changed since its version was read."""


def clean_path(path: str) -> str:
    """Strip leading slashes and collapse repeated ones."""
    parts = [p for p in path.replace("\\", "/").split("/") if p]
    return "/".join(parts)


class RemoteStore(ABC):
    """Base class for report stores"""

    name: str = "store"

    @abstractmethod
    async def read(self, path: str) -> str:
        """
        Read text content.

        Raises:
            NotFoundError: if nothing exists at ``path``
        """

    @abstractmethod
    async def read_version(self, path: str) -> Optional[str]:
        """Return the current version token of ``path``, or None when it does not exist."""

    @abstractmethod
    async def compare_and_swap_write(
        self,
        path: str,
        expected_version: Optional[str],
        content: str,
        message: str,
    ) -> None:
        """
        Write ``content`` only if ``path`` is still at ``expected_version``.

        ``expected_version=None`` means create.

        Raises:
            ConflictError: if the path changed concurrently
        """

    async def write(self, path: str, content: str, message: Optional[str] = None) -> None:
        """Write-or-create: read the current version, then conditionally write against it."""
        version = await self.read_version(path)
        await self.compare_and_swap_write(path, version, content, message or f"Update {clean_path(path)}")
        logger.debug("%s wrote %s (%s)", self.name, path, "update" if version else "create")

    async def read_json(self, path: str, default: Any = None) -> Any:
        """Read and parse JSON, returning ``default`` when the path does not exist."""
        try:
            text = await self.read(path)
        except NotFoundError:
            return default
        if text.startswith("\ufeff"):
            text = text[1:]
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise StoreError(f"Invalid JSON at {path}: {e}") from e

    async def write_json(self, path: str, obj: Any, message: Optional[str] = None) -> None:
        await self.write(path, json.dumps(obj, indent=2), message)

    async def aclose(self) -> None:
        """Release any held resources."""
