"""
GitHub contents API store.

Each write is a commit on the configured branch. The blob SHA read before the
write is sent back with it, so GitHub rejects the update if the file moved.
"""
from __future__ import annotations

import base64
import logging
from typing import Any, Dict, Optional

import httpx

from core.config import GithubStoreSettings
from integrations.base import ConflictError, NotFoundError, RemoteStore, StoreError, clean_path

logger = logging.getLogger(__name__)


class GithubContentStore(RemoteStore):
    """Store backed by a GitHub repository."""

    name = "github"

    def __init__(self, settings: GithubStoreSettings, transport: Optional[httpx.AsyncBaseTransport] = None):
        if not settings.owner or not settings.repo or not settings.token:
            raise StoreError("GitHub store requires owner, repo and token")
        self.owner = settings.owner
        self.repo = settings.repo
        self.branch = settings.branch or "main"
        self.base_dir = clean_path(settings.base_dir or "")
        self._client = httpx.AsyncClient(
            base_url=settings.api_url.rstrip("/"),
            timeout=settings.timeout,
            transport=transport,
            headers={
                "Authorization": f"Bearer {settings.token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
            },
        )

    def repo_path(self, path: str) -> str:
        """Map a public path ("public/x.json" or "x.json") under the configured base directory."""
        relative = clean_path(path)
        if relative.startswith("public/"):
            relative = relative[len("public/"):]
        return clean_path(f"{self.base_dir}/{relative}")

    def _contents_url(self, path: str) -> str:
        return f"/repos/{self.owner}/{self.repo}/contents/{self.repo_path(path)}"

    async def _get(self, path: str) -> Dict[str, Any]:
        try:
            response = await self._client.get(self._contents_url(path), params={"ref": self.branch})
        except httpx.HTTPError as e:
            raise StoreError(f"GitHub read failed for {path}: {e}") from e

        if response.status_code == 404:
            raise NotFoundError(path)
        if response.status_code != 200:
            raise StoreError(f"GitHub read failed for {path}: {response.status_code} - {response.text[:200]}")

        data = response.json()
        if isinstance(data, list):
            # Directory listing, not a file
            raise NotFoundError(path)
        return data

    async def read(self, path: str) -> str:
        data = await self._get(path)
        if data.get("encoding", "base64") != "base64":
            return data.get("content") or ""
        return base64.b64decode(data.get("content") or "").decode("utf-8")

    async def read_version(self, path: str) -> Optional[str]:
        try:
            data = await self._get(path)
        except NotFoundError:
            return None
        return data.get("sha")

    async def compare_and_swap_write(
        self,
        path: str,
        expected_version: Optional[str],
        content: str,
        message: str,
    ) -> None:
        body: Dict[str, Any] = {
            "message": message,
            "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
            "branch": self.branch,
        }
        if expected_version:
            body["sha"] = expected_version

        try:
            response = await self._client.put(self._contents_url(path), json=body)
        except httpx.HTTPError as e:
            raise StoreError(f"GitHub write failed for {path}: {e}") from e

        if response.status_code in (409, 422):
            raise ConflictError(f"GitHub rejected write to {path}: {response.status_code} - {response.text[:200]}")
        if response.status_code not in (200, 201):
            raise StoreError(f"GitHub write failed for {path}: {response.status_code} - {response.text[:200]}")
        logger.info("✅ Committed %s to %s/%s@%s", self.repo_path(path), self.owner, self.repo, self.branch)

    async def aclose(self) -> None:
        await self._client.aclose()
