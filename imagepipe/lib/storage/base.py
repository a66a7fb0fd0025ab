"""Storage backend protocol and common types."""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable


@dataclass
class StoredFile:
    """Metadata for an object written to a backend."""

    key: str
    url: str | None
    content_type: str
    size: int
    content_hash: str


@dataclass
class StorageResult:
    """Outcome of one storage call as seen by the rest of the pipeline.

    Backends raise; the manager converts every call into one of these so
    storage failures are handled per call instead of crossing the subsystem
    boundary as exceptions.
    """

    ok: bool
    bucket: str
    path: str | None = None
    url: str | None = None
    value: Any = None
    error: str | None = None


@runtime_checkable
class StorageBackend(Protocol):
    """Interface for the backend that holds one bucket's objects."""

    public: bool

    async def put(self, key: str, data: bytes, content_type: str, upsert: bool = False) -> StoredFile:
        """Store data under *key*.

        Raises ``ObjectExistsError`` if *upsert* is false and the key is taken.
        """
        ...

    async def get(self, key: str) -> bytes:
        ...

    async def delete_many(self, keys: list[str]) -> None:
        """Remove keys. Keys that do not exist are ignored."""
        ...

    async def exists(self, key: str) -> bool:
        ...

    async def copy(self, source: str, destination: str) -> None:
        ...

    async def move(self, source: str, destination: str) -> None:
        ...

    def list_keys(self, prefix: str = "") -> AsyncIterator[str]:
        """Yield all keys under *prefix*."""
        ...

    def public_url(self, key: str) -> str | None:
        """Return the permanent URL of *key*, or ``None`` for private buckets."""
        ...

    async def signed_url(self, key: str, expires_in: int, download_filename: str | None = None) -> str:
        """Return a URL granting read access to *key* for *expires_in* seconds."""
        ...
