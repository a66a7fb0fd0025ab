"""Storage manager: registry of named buckets and the adapter the pipeline talks to.

Every call is bounded by ``storage.call_timeout`` and returns a
:class:`StorageResult` instead of raising, so callers decide per call how a
storage failure affects their flow.
"""

from __future__ import annotations

import asyncio
import importlib
import logging
from collections.abc import Awaitable
from pathlib import Path
from typing import TYPE_CHECKING, Any

from imagepipe.lib import observability
from imagepipe.lib.exceptions import ObjectExistsError
from imagepipe.lib.storage.base import StorageResult
from imagepipe.lib.storage.local import LocalStorageBackend

if TYPE_CHECKING:
    from imagepipe.config import BucketConfig, StorageConfig
    from imagepipe.lib.storage.base import StorageBackend

logger = logging.getLogger(__name__)


class StorageManager:
    """Registry that lazily creates and caches storage backends by bucket name."""

    def __init__(self, config: StorageConfig, secret_key: str = "") -> None:
        self._config = config
        self._secret_key = secret_key
        self._backends: dict[str, StorageBackend] = {}

    @property
    def default_bucket(self) -> str:
        return self._config.default

    @property
    def private_bucket(self) -> str:
        return self._config.private

    @property
    def bucket_names(self) -> list[str]:
        return list(self._config.buckets.keys())

    @property
    def entity_folders(self) -> dict[str, str]:
        return self._config.entity_folders

    def bucket_config(self, name: str) -> BucketConfig:
        bucket_cfg = self._config.buckets.get(name)
        if bucket_cfg is None:
            raise KeyError(f"Unknown storage bucket: {name!r}")
        return bucket_cfg

    def get(self, name: str | None = None) -> StorageBackend:
        """Return the backend for *name*, creating it on first access."""
        name = name or self._config.default
        if name not in self._backends:
            self._backends[name] = create_storage_backend(
                self.bucket_config(name),
                bucket=name,
                secret_key=self._secret_key,
                base_url=self._config.base_url,
            )
        return self._backends[name]

    def is_public(self, bucket: str) -> bool:
        return self.bucket_config(bucket).public

    async def _call(self, op: str, bucket: str, path: str | None, call: Awaitable[Any]) -> tuple[Any, str | None]:
        try:
            value = await asyncio.wait_for(call, timeout=self._config.call_timeout)
        except TimeoutError:
            message = f"Storage {op} timed out after {self._config.call_timeout}s"
            logger.warning("%s (bucket=%s path=%s)", message, bucket, path)
            return None, message
        except ObjectExistsError as exc:
            return None, str(exc)
        except Exception as exc:
            logger.warning(
                "Storage %s failed (bucket=%s path=%s): %s", op, bucket, path, exc, exc_info=True
            )
            return None, str(exc) or type(exc).__name__
        return value, None

    def _backend_or_error(self, bucket: str) -> tuple[StorageBackend | None, str | None]:
        try:
            return self.get(bucket), None
        except (KeyError, ValueError, ImportError) as exc:
            return None, str(exc)

    async def put(
        self, bucket: str, path: str, data: bytes, content_type: str, upsert: bool | None = None
    ) -> StorageResult:
        """Store bytes at *path*.

        Fails if the path exists unless *upsert*, which defaults to the
        bucket's configured ``upsert`` flag.
        """
        backend, error = self._backend_or_error(bucket)
        if backend is None:
            return StorageResult(ok=False, bucket=bucket, path=path, error=error)
        if upsert is None:
            upsert = self.bucket_config(bucket).upsert
        with observability.span("storage.put", bucket=bucket, path=path, size=len(data)):
            stored, error = await self._call(
                "put", bucket, path, backend.put(path, data, content_type, upsert=upsert)
            )
        if error:
            return StorageResult(ok=False, bucket=bucket, path=path, error=error)
        return StorageResult(ok=True, bucket=bucket, path=path, url=stored.url, value=stored)

    async def delete(self, bucket: str, paths: list[str]) -> StorageResult:
        """Remove *paths* in one call. Missing objects are not an error."""
        backend, error = self._backend_or_error(bucket)
        if backend is None:
            return StorageResult(ok=False, bucket=bucket, value=list(paths), error=error)
        if not paths:
            return StorageResult(ok=True, bucket=bucket, value=[])
        with observability.span("storage.delete", bucket=bucket, count=len(paths)):
            _, error = await self._call("delete", bucket, ",".join(paths), backend.delete_many(list(paths)))
        return StorageResult(ok=error is None, bucket=bucket, value=list(paths), error=error)

    async def exists(self, bucket: str, path: str) -> StorageResult:
        backend, error = self._backend_or_error(bucket)
        if backend is None:
            return StorageResult(ok=False, bucket=bucket, path=path, error=error)
        found, error = await self._call("exists", bucket, path, backend.exists(path))
        return StorageResult(ok=error is None, bucket=bucket, path=path, value=found, error=error)

    async def copy(self, bucket: str, source: str, destination: str) -> StorageResult:
        backend, error = self._backend_or_error(bucket)
        if backend is None:
            return StorageResult(ok=False, bucket=bucket, path=destination, error=error)
        _, error = await self._call("copy", bucket, source, backend.copy(source, destination))
        return StorageResult(
            ok=error is None,
            bucket=bucket,
            path=destination,
            url=None if error else backend.public_url(destination),
            error=error,
        )

    async def move(self, bucket: str, source: str, destination: str) -> StorageResult:
        backend, error = self._backend_or_error(bucket)
        if backend is None:
            return StorageResult(ok=False, bucket=bucket, path=destination, error=error)
        _, error = await self._call("move", bucket, source, backend.move(source, destination))
        return StorageResult(
            ok=error is None,
            bucket=bucket,
            path=destination,
            url=None if error else backend.public_url(destination),
            error=error,
        )

    async def list_keys(self, bucket: str, prefix: str = "") -> StorageResult:
        backend, error = self._backend_or_error(bucket)
        if backend is None:
            return StorageResult(ok=False, bucket=bucket, error=error)

        async def collect() -> list[str]:
            return [key async for key in backend.list_keys(prefix)]

        keys, error = await self._call("list", bucket, prefix, collect())
        return StorageResult(ok=error is None, bucket=bucket, value=keys or [], error=error)

    def public_url(self, bucket: str, path: str) -> str | None:
        """Permanent URL for *path*, or ``None`` if the bucket is private."""
        backend, _ = self._backend_or_error(bucket)
        if backend is None:
            return None
        return backend.public_url(path)

    async def signed_url(
        self, bucket: str, path: str, expires_in: int, download_filename: str | None = None
    ) -> StorageResult:
        """Time-limited URL for *path*, optionally forcing a download filename."""
        backend, error = self._backend_or_error(bucket)
        if backend is None:
            return StorageResult(ok=False, bucket=bucket, path=path, error=error)
        url, error = await self._call(
            "sign", bucket, path, backend.signed_url(path, expires_in, download_filename)
        )
        return StorageResult(ok=error is None, bucket=bucket, path=path, url=url, error=error)

    async def close(self) -> None:
        """Release resources held by backends."""
        for backend in self._backends.values():
            close = getattr(backend, "close", None)
            if close is not None:
                await close()
        self._backends.clear()


def create_storage_backend(
    config: BucketConfig,
    bucket: str = "uploads",
    *,
    secret_key: str = "",
    base_url: str = "",
) -> StorageBackend:
    """Instantiate a storage backend from configuration."""
    backend_type = config.backend

    if backend_type == "local":
        return LocalStorageBackend(
            base_path=Path(config.local_path),
            bucket=bucket,
            public=config.public,
            secret_key=secret_key,
            base_url=base_url,
        )

    if backend_type == "s3":
        from imagepipe.lib.storage.s3 import S3StorageBackend

        return S3StorageBackend(config.s3, public=config.public)

    # Dynamic import: "module:ClassName"
    if ":" in backend_type:
        parts = backend_type.split(":")
        if len(parts) != 2:
            raise ValueError(
                f"Invalid backend spec '{backend_type}': must contain exactly one colon"
            )
        module_path, class_name = parts
        module = importlib.import_module(module_path)
        cls = getattr(module, class_name)
        return cls(config)

    raise ValueError(
        f"Unknown storage backend '{backend_type}'. "
        "Use 'local', 's3', or 'module:ClassName'."
    )
