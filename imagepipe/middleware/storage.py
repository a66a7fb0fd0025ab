"""ASGI middleware for serving locally-stored objects."""

from __future__ import annotations

import logging
import mimetypes
from pathlib import Path
from typing import TYPE_CHECKING
from urllib.parse import parse_qs, quote

from litestar.types import ASGIApp, Receive, Scope, Send

from imagepipe.lib.imaging import detect_image_content_type
from imagepipe.lib.signing import verify_object_signature
from imagepipe.lib.storage.paths import safe_download_name
from imagepipe.middleware.helpers import send_forbidden, send_not_found

if TYPE_CHECKING:
    from imagepipe.config import StorageConfig

logger = logging.getLogger(__name__)


class StorageFilesMiddleware:
    """Serve objects from local buckets at ``/storage/{bucket}/{key}``.

    Only handles buckets configured with ``backend = "local"``. Remote
    backends (S3, etc.) serve via their own URLs and are not intercepted here.

    Public buckets are served as-is. Private buckets require the
    ``expires`` and ``signature`` query parameters produced by
    :meth:`LocalStorageBackend.signed_url`; a signed ``download`` parameter
    makes the response an attachment with that filename.
    """

    def __init__(self, app: ASGIApp, storage_config: StorageConfig, secret_key: str) -> None:
        self.app = app
        self._storage_config = storage_config
        self._secret_key = secret_key

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or not scope["path"].startswith("/storage/"):
            await self.app(scope, receive, send)
            return

        # Parse /storage/{bucket}/{key...}
        rest = scope["path"][len("/storage/"):]
        slash_idx = rest.find("/")
        if slash_idx == -1 or not rest[:slash_idx]:
            await send_not_found(send)
            return

        bucket = rest[:slash_idx]
        key = rest[slash_idx + 1:]

        if not key:
            await send_not_found(send)
            return

        bucket_cfg = self._storage_config.buckets.get(bucket)
        if bucket_cfg is None or bucket_cfg.backend != "local":
            await send_not_found(send)
            return

        # Security: reject traversal and null bytes
        if ".." in key.split("/") or "\x00" in key:
            await send_not_found(send)
            return

        qs = scope.get("query_string", b"")
        params = parse_qs(qs.decode("latin-1") if isinstance(qs, bytes) else qs)
        signature = params.get("signature", [None])[0]
        expires = params.get("expires", [None])[0]
        download = params.get("download", [None])[0]

        signed = signature is not None
        if signed or download or not bucket_cfg.public:
            if not verify_object_signature(bucket, key, expires, signature, self._secret_key, download):
                logger.info("Rejected storage request for %s/%s: bad or expired signature", bucket, key)
                await send_forbidden(send)
                return

        base_path = Path(bucket_cfg.local_path).resolve()
        try:
            resolved = (base_path / key).resolve()
        except (OSError, ValueError):
            await send_not_found(send)
            return

        if not resolved.is_relative_to(base_path) or not resolved.is_file():
            await send_not_found(send)
            return

        content = resolved.read_bytes()
        media_type = (
            mimetypes.guess_type(str(resolved))[0]
            or detect_image_content_type(content)
            or "application/octet-stream"
        )

        headers = [
            (b"content-type", media_type.encode()),
            (b"content-length", str(len(content)).encode()),
        ]
        if download:
            filename = safe_download_name(download)
            headers.append((
                b"content-disposition",
                f"attachment; filename=\"{filename}\"; filename*=UTF-8''{quote(filename)}".encode(),
            ))
        if not bucket_cfg.public or signed:
            headers.append((b"cache-control", b"private, no-store"))

        await send({"type": "http.response.start", "status": 200, "headers": headers})
        await send({"type": "http.response.body", "body": content})
