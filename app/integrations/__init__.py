"""
Report stores - where published reports, snapshots and the manifest live
"""
import logging

from core.config import StoreSettings
from .base import ConflictError, NotFoundError, RemoteStore, StoreError
from .github_store import GithubContentStore
from .local_store import LocalFileStore
from .mirror_store import MirroredStore

logger = logging.getLogger(__name__)


def create_store(settings: StoreSettings) -> RemoteStore:
    """
    Factory function to create the configured store backend.

    Args:
        settings: Store section of the pipeline settings

    Returns:
        RemoteStore instance

    Raises:
        StoreError: if the backend is missing required settings
    """
    if settings.backend == "github":
        store: RemoteStore = GithubContentStore(settings.github)
    elif settings.backend == "mirror":
        store = MirroredStore(GithubContentStore(settings.github), LocalFileStore(settings.local))
    else:
        store = LocalFileStore(settings.local)
    logger.info("Using %s report store", store.name)
    return store


__all__ = [
    'ConflictError',
    'GithubContentStore',
    'LocalFileStore',
    'MirroredStore',
    'NotFoundError',
    'RemoteStore',
    'StoreError',
    'create_store',
]
