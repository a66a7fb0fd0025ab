"""Local filesystem storage backend."""

from __future__ import annotations

import asyncio
import hashlib
import shutil
import time
from collections.abc import AsyncIterator
from pathlib import Path
from urllib.parse import quote, urlencode

from imagepipe.lib.exceptions import ObjectExistsError, StorageError
from imagepipe.lib.signing import sign_object
from imagepipe.lib.storage.base import StoredFile


class LocalStorageBackend:
    """Store one bucket's objects under a directory, keyed by their path.

    Objects are served by :class:`imagepipe.middleware.storage.StorageFilesMiddleware`
    at ``/storage/{bucket}/{key}``. Private buckets are only reachable through
    signed URLs.
    """

    def __init__(
        self,
        base_path: Path,
        bucket: str = "uploads",
        *,
        public: bool = True,
        secret_key: str = "",
        base_url: str = "",
    ) -> None:
        self._base_path = base_path
        self._bucket = bucket
        self._secret_key = secret_key
        self._base_url = base_url.rstrip("/")
        self.public = public

    @property
    def base_path(self) -> Path:
        return self._base_path

    async def put(self, key: str, data: bytes, content_type: str, upsert: bool = False) -> StoredFile:
        path = self._key_to_path(key)
        await asyncio.to_thread(self._write_file, path, data, upsert)
        return StoredFile(
            key=key,
            url=self.public_url(key),
            content_type=content_type,
            size=len(data),
            content_hash=hashlib.sha256(data).hexdigest(),
        )

    async def get(self, key: str) -> bytes:
        path = self._key_to_path(key)
        return await asyncio.to_thread(path.read_bytes)

    async def delete_many(self, keys: list[str]) -> None:
        paths = [self._key_to_path(key) for key in keys]
        await asyncio.to_thread(self._unlink_all, paths)

    async def exists(self, key: str) -> bool:
        path = self._key_to_path(key)
        return await asyncio.to_thread(path.is_file)

    async def copy(self, source: str, destination: str) -> None:
        src = self._key_to_path(source)
        dst = self._key_to_path(destination)
        await asyncio.to_thread(self._copy_file, src, dst)

    async def move(self, source: str, destination: str) -> None:
        src = self._key_to_path(source)
        dst = self._key_to_path(destination)
        await asyncio.to_thread(self._move_file, src, dst)

    async def list_keys(self, prefix: str = "") -> AsyncIterator[str]:
        base = self._base_path
        for path in await asyncio.to_thread(self._walk, base):
            key = path.relative_to(base).as_posix()
            if key.startswith(prefix):
                yield key

    def public_url(self, key: str) -> str | None:
        if not self.public:
            return None
        return f"{self._base_url}{self._object_path(key)}"

    async def signed_url(self, key: str, expires_in: int, download_filename: str | None = None) -> str:
        if not self._secret_key:
            raise StorageError(f"Bucket {self._bucket!r} has no signing secret configured")
        expires = int(time.time()) + expires_in
        params = {
            "expires": expires,
            "signature": sign_object(self._bucket, key, expires, self._secret_key, download_filename),
        }
        if download_filename:
            params["download"] = download_filename
        return f"{self._base_url}{self._object_path(key)}?{urlencode(params)}"

    async def close(self) -> None:
        """No persistent resources to clean up."""

    # -- internal helpers --

    def _object_path(self, key: str) -> str:
        return f"/storage/{self._bucket}/{quote(key)}"

    def _key_to_path(self, key: str) -> Path:
        """Map a key to a file below the bucket directory."""
        if not key or key.startswith("/") or ".." in key.split("/"):
            raise StorageError(f"Invalid object key: {key!r}")
        return self._base_path / key

    @staticmethod
    def _write_file(path: Path, data: bytes, upsert: bool) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with open(path, "wb" if upsert else "xb") as f:
                f.write(data)
        except FileExistsError as exc:
            raise ObjectExistsError(f"Object already exists: {path.name}") from exc

    @staticmethod
    def _unlink_all(paths: list[Path]) -> None:
        for path in paths:
            path.unlink(missing_ok=True)

    @staticmethod
    def _copy_file(src: Path, dst: Path) -> None:
        if dst.exists():
            raise ObjectExistsError(f"Object already exists: {dst.name}")
        dst.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(src, dst)

    @classmethod
    def _move_file(cls, src: Path, dst: Path) -> None:
        cls._copy_file(src, dst)
        src.unlink()

    @staticmethod
    def _walk(base: Path) -> list[Path]:
        if not base.exists():
            return []
        return [p for p in base.rglob("*") if p.is_file()]
