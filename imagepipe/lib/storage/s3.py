"""S3-compatible storage backend (requires ``pip install imagepipe[s3]``)."""

from __future__ import annotations

import hashlib
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING

try:
    import aioboto3
except ImportError as exc:
    raise ImportError(
        "S3 storage backend requires aioboto3. Install it with: pip install imagepipe[s3]"
    ) from exc

from botocore.exceptions import ClientError

from imagepipe.lib.exceptions import ObjectExistsError, StorageError
from imagepipe.lib.storage.base import StoredFile

if TYPE_CHECKING:
    from imagepipe.config import S3Config

# DeleteObjects accepts at most this many keys per request
_DELETE_BATCH = 1000


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


class S3StorageBackend:
    """Store one bucket's objects in an S3-compatible bucket."""

    def __init__(self, config: S3Config, *, public: bool = True) -> None:
        self._config = config
        self._session = aioboto3.Session()
        self.public = public

    def _client_kwargs(self) -> dict:
        kwargs: dict = {
            "region_name": self._config.region,
        }
        if self._config.endpoint_url:
            kwargs["endpoint_url"] = self._config.endpoint_url
        if self._config.access_key_id:
            kwargs["aws_access_key_id"] = self._config.access_key_id
        if self._config.secret_access_key:
            kwargs["aws_secret_access_key"] = self._config.secret_access_key
        return kwargs

    def _client(self):
        return self._session.client("s3", **self._client_kwargs())

    def _full_key(self, key: str) -> str:
        if self._config.prefix:
            return f"{self._config.prefix.rstrip('/')}/{key}"
        return key

    def _relative_key(self, full_key: str) -> str:
        if self._config.prefix:
            prefix = self._config.prefix.rstrip("/") + "/"
            if full_key.startswith(prefix):
                return full_key[len(prefix):]
        return full_key

    async def put(self, key: str, data: bytes, content_type: str, upsert: bool = False) -> StoredFile:
        put_kwargs: dict = {
            "Bucket": self._config.bucket,
            "Key": self._full_key(key),
            "Body": data,
            "ContentType": content_type,
        }
        if self._config.cache_control:
            put_kwargs["CacheControl"] = self._config.cache_control
        if not upsert:
            # Conditional write: the store rejects the request if the key exists
            put_kwargs["IfNoneMatch"] = "*"

        async with self._client() as s3:
            try:
                await s3.put_object(**put_kwargs)
            except ClientError as exc:
                if _error_code(exc) in ("PreconditionFailed", "412"):
                    raise ObjectExistsError(f"Object already exists: {key}") from exc
                raise

        return StoredFile(
            key=key,
            url=self.public_url(key),
            content_type=content_type,
            size=len(data),
            content_hash=hashlib.sha256(data).hexdigest(),
        )

    async def get(self, key: str) -> bytes:
        async with self._client() as s3:
            response = await s3.get_object(Bucket=self._config.bucket, Key=self._full_key(key))
            return await response["Body"].read()

    async def delete_many(self, keys: list[str]) -> None:
        failed: list[str] = []
        async with self._client() as s3:
            for start in range(0, len(keys), _DELETE_BATCH):
                batch = keys[start:start + _DELETE_BATCH]
                response = await s3.delete_objects(
                    Bucket=self._config.bucket,
                    Delete={
                        "Objects": [{"Key": self._full_key(key)} for key in batch],
                        "Quiet": True,
                    },
                )
                failed.extend(
                    f"{err.get('Key')}: {err.get('Message') or err.get('Code')}"
                    for err in response.get("Errors", [])
                )
        if failed:
            raise StorageError("Failed to delete objects: " + "; ".join(failed))

    async def exists(self, key: str) -> bool:
        async with self._client() as s3:
            try:
                await s3.head_object(Bucket=self._config.bucket, Key=self._full_key(key))
                return True
            except ClientError as exc:
                if _error_code(exc) in ("404", "NoSuchKey", "NotFound"):
                    return False
                raise

    async def copy(self, source: str, destination: str) -> None:
        async with self._client() as s3:
            await s3.copy_object(
                Bucket=self._config.bucket,
                Key=self._full_key(destination),
                CopySource={"Bucket": self._config.bucket, "Key": self._full_key(source)},
            )

    async def move(self, source: str, destination: str) -> None:
        await self.copy(source, destination)
        await self.delete_many([source])

    async def list_keys(self, prefix: str = "") -> AsyncIterator[str]:
        async with self._client() as s3:
            paginator = s3.get_paginator("list_objects_v2")
            async for page in paginator.paginate(
                Bucket=self._config.bucket, Prefix=self._full_key(prefix)
            ):
                for obj in page.get("Contents", []):
                    yield self._relative_key(obj["Key"])

    def public_url(self, key: str) -> str | None:
        if not self.public:
            return None
        full_key = self._full_key(key)

        # CDN / custom public URL
        if self._config.public_url:
            return f"{self._config.public_url.rstrip('/')}/{full_key}"

        if self._config.endpoint_url:
            base = self._config.endpoint_url.rstrip("/")
            return f"{base}/{self._config.bucket}/{full_key}"
        return f"https://{self._config.bucket}.s3.{self._config.region}.amazonaws.com/{full_key}"

    async def signed_url(self, key: str, expires_in: int, download_filename: str | None = None) -> str:
        params: dict = {"Bucket": self._config.bucket, "Key": self._full_key(key)}
        if download_filename:
            params["ResponseContentDisposition"] = f'attachment; filename="{download_filename}"'
        async with self._client() as s3:
            return await s3.generate_presigned_url(
                "get_object",
                Params=params,
                ExpiresIn=expires_in,
            )

    async def close(self) -> None:
        """No persistent resources to clean up."""
