"""Tests for serving local bucket objects at /storage/."""

import time
from pathlib import Path
from urllib.parse import urlencode

import pytest

from imagepipe.lib.signing import sign_object
from imagepipe.middleware.storage import StorageFilesMiddleware

from conftest import SECRET, make_image


async def _downstream(scope, receive, send):
    await send({"type": "http.response.start", "status": 299, "headers": []})
    await send({"type": "http.response.body", "body": b"app"})


async def _call(middleware, path, params=None):
    messages = []

    async def send(message):
        messages.append(message)

    scope = {
        "type": "http",
        "path": path,
        "query_string": urlencode(params or {}).encode(),
    }
    await middleware(scope, None, send)
    start, body = messages
    return start["status"], dict(start["headers"]), body["body"]


@pytest.fixture
def middleware(storage_config):
    for bucket in storage_config.buckets.values():
        Path(bucket.local_path).mkdir(parents=True, exist_ok=True)
    return StorageFilesMiddleware(_downstream, storage_config=storage_config, secret_key=SECRET)


@pytest.fixture
def public_file(storage_config):
    data = make_image("PNG", (10, 10))
    path = Path(storage_config.buckets["uploads"].local_path) / "catalog_item" / "1" / "a.png"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return data


@pytest.fixture
def private_file(storage_config):
    path = Path(storage_config.buckets["private_files"].local_path) / "order" / "9" / "proof.webp"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"RIFF\x00\x00\x00\x00WEBPVP8 ")
    return path


def _signed(bucket, key, download=None, expires=None):
    expires = expires or int(time.time()) + 60
    params = {"expires": expires, "signature": sign_object(bucket, key, expires, SECRET, download)}
    if download:
        params["download"] = download
    return params


class TestStorageFilesMiddleware:
    @pytest.mark.asyncio
    async def test_passes_other_paths_through(self, middleware):
        status, _, body = await _call(middleware, "/api/images/stats")
        assert (status, body) == (299, b"app")

    @pytest.mark.asyncio
    async def test_serves_public_object(self, middleware, public_file):
        status, headers, body = await _call(middleware, "/storage/uploads/catalog_item/1/a.png")

        assert status == 200
        assert body == public_file
        assert headers[b"content-type"] == b"image/png"
        assert b"cache-control" not in headers

    @pytest.mark.asyncio
    async def test_missing_object_is_404(self, middleware):
        status, _, _ = await _call(middleware, "/storage/uploads/nope.png")
        assert status == 404

    @pytest.mark.asyncio
    async def test_unknown_bucket_is_404(self, middleware):
        status, _, _ = await _call(middleware, "/storage/other/a.png")
        assert status == 404

    @pytest.mark.asyncio
    async def test_traversal_is_404(self, middleware, public_file):
        status, _, _ = await _call(middleware, "/storage/uploads/../uploads/catalog_item/1/a.png")
        assert status == 404

    @pytest.mark.asyncio
    async def test_private_object_requires_signature(self, middleware, private_file):
        status, _, _ = await _call(middleware, "/storage/private_files/order/9/proof.webp")
        assert status == 403

    @pytest.mark.asyncio
    async def test_private_object_with_signature(self, middleware, private_file):
        key = "order/9/proof.webp"
        status, headers, body = await _call(
            middleware, f"/storage/private_files/{key}", _signed("private_files", key)
        )

        assert status == 200
        assert body == private_file.read_bytes()
        assert headers[b"cache-control"] == b"private, no-store"

    @pytest.mark.asyncio
    async def test_expired_signature_is_403(self, middleware, private_file):
        key = "order/9/proof.webp"
        params = _signed("private_files", key, expires=int(time.time()) - 5)
        status, _, _ = await _call(middleware, f"/storage/private_files/{key}", params)
        assert status == 403

    @pytest.mark.asyncio
    async def test_signed_download_sets_disposition(self, middleware, private_file):
        key = "order/9/proof.webp"
        params = _signed("private_files", key, download="Order 9 proof.webp")
        status, headers, _ = await _call(middleware, f"/storage/private_files/{key}", params)

        assert status == 200
        assert headers[b"content-disposition"].startswith(b'attachment; filename="Order 9 proof.webp"')

    @pytest.mark.asyncio
    async def test_unsigned_download_parameter_is_rejected(self, middleware, public_file):
        status, _, _ = await _call(
            middleware, "/storage/uploads/catalog_item/1/a.png", {"download": "x.png"}
        )
        assert status == 403
