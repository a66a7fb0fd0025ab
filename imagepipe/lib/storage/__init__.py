"""Bucketed object storage for uploaded files."""

from imagepipe.lib.storage.base import StorageBackend, StorageResult, StoredFile
from imagepipe.lib.storage.local import LocalStorageBackend
from imagepipe.lib.storage.manager import StorageManager, create_storage_backend
from imagepipe.lib.storage.paths import build_storage_path

__all__ = [
    "LocalStorageBackend",
    "StorageBackend",
    "StorageManager",
    "StorageResult",
    "StoredFile",
    "build_storage_path",
    "create_storage_backend",
]
