"""Tests for the S3 storage backend against a stand-in client."""

from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

import pytest
from botocore.exceptions import ClientError

from imagepipe.config import S3Config
from imagepipe.lib.exceptions import ObjectExistsError, StorageError
from imagepipe.lib.storage.s3 import S3StorageBackend


def _client_error(code: str, operation: str = "PutObject") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class FakePaginator:
    def __init__(self, pages):
        self.pages = pages
        self.calls = []

    def paginate(self, **kwargs):
        self.calls.append(kwargs)
        return self._pages()

    async def _pages(self):
        for page in self.pages:
            yield page


@pytest.fixture
def s3_client():
    client = MagicMock()
    client.put_object = AsyncMock(return_value={})
    client.delete_objects = AsyncMock(return_value={})
    client.head_object = AsyncMock(return_value={})
    client.copy_object = AsyncMock(return_value={})
    client.generate_presigned_url = AsyncMock(return_value="https://signed.example/object")
    return client


def make_backend(client, public=True, **config):
    backend = S3StorageBackend(S3Config(bucket="assets", **config), public=public)

    @asynccontextmanager
    async def connect():
        yield client

    backend._client = connect
    return backend


class TestPut:
    @pytest.mark.asyncio
    async def test_conditional_write_by_default(self, s3_client):
        backend = make_backend(s3_client, prefix="media/")

        stored = await backend.put("order/1/design/a.webp", b"data", "image/webp")

        kwargs = s3_client.put_object.await_args.kwargs
        assert kwargs["Bucket"] == "assets"
        assert kwargs["Key"] == "media/order/1/design/a.webp"
        assert kwargs["IfNoneMatch"] == "*"
        assert kwargs["CacheControl"] == "max-age=31536000"
        assert stored.key == "order/1/design/a.webp"
        assert stored.size == 4
        assert stored.url == "https://assets.s3.us-east-1.amazonaws.com/media/order/1/design/a.webp"

    @pytest.mark.asyncio
    async def test_upsert_is_unconditional(self, s3_client):
        await make_backend(s3_client).put("a.webp", b"data", "image/webp", upsert=True)
        assert "IfNoneMatch" not in s3_client.put_object.await_args.kwargs

    @pytest.mark.asyncio
    async def test_precondition_failure_means_object_exists(self, s3_client):
        s3_client.put_object.side_effect = _client_error("PreconditionFailed")

        with pytest.raises(ObjectExistsError):
            await make_backend(s3_client).put("a.webp", b"data", "image/webp")

    @pytest.mark.asyncio
    async def test_other_client_errors_propagate(self, s3_client):
        s3_client.put_object.side_effect = _client_error("AccessDenied")

        with pytest.raises(ClientError):
            await make_backend(s3_client).put("a.webp", b"data", "image/webp")


class TestDeleteMany:
    @pytest.mark.asyncio
    async def test_batches_of_one_thousand(self, s3_client):
        keys = [f"k{i}.webp" for i in range(1001)]

        await make_backend(s3_client).delete_many(keys)

        batches = [c.kwargs["Delete"]["Objects"] for c in s3_client.delete_objects.await_args_list]
        assert [len(b) for b in batches] == [1000, 1]
        assert batches[1] == [{"Key": "k1000.webp"}]

    @pytest.mark.asyncio
    async def test_reported_errors_raise(self, s3_client):
        s3_client.delete_objects.return_value = {
            "Errors": [{"Key": "b.webp", "Code": "AccessDenied", "Message": "Access Denied"}]
        }

        with pytest.raises(StorageError, match="b.webp: Access Denied"):
            await make_backend(s3_client).delete_many(["a.webp", "b.webp"])


class TestExists:
    @pytest.mark.asyncio
    async def test_present(self, s3_client):
        assert await make_backend(s3_client).exists("a.webp") is True

    @pytest.mark.asyncio
    async def test_missing(self, s3_client):
        s3_client.head_object.side_effect = _client_error("404", "HeadObject")
        assert await make_backend(s3_client).exists("a.webp") is False

    @pytest.mark.asyncio
    async def test_other_errors_propagate(self, s3_client):
        s3_client.head_object.side_effect = _client_error("403", "HeadObject")
        with pytest.raises(ClientError):
            await make_backend(s3_client).exists("a.webp")


class TestListAndMove:
    @pytest.mark.asyncio
    async def test_list_keys_strips_prefix(self, s3_client):
        paginator = FakePaginator([
            {"Contents": [{"Key": "media/order/1/a.webp"}, {"Key": "media/order/1/b.webp"}]},
            {},
        ])
        s3_client.get_paginator.return_value = paginator

        keys = [key async for key in make_backend(s3_client, prefix="media").list_keys("order/")]

        assert keys == ["order/1/a.webp", "order/1/b.webp"]
        assert paginator.calls == [{"Bucket": "assets", "Prefix": "media/order/"}]

    @pytest.mark.asyncio
    async def test_move_copies_then_deletes(self, s3_client):
        await make_backend(s3_client).move("a.webp", "b.webp")

        copy = s3_client.copy_object.await_args.kwargs
        assert copy["Key"] == "b.webp"
        assert copy["CopySource"] == {"Bucket": "assets", "Key": "a.webp"}
        assert s3_client.delete_objects.await_args.kwargs["Delete"]["Objects"] == [{"Key": "a.webp"}]


class TestUrls:
    @pytest.mark.asyncio
    async def test_signed_download_sets_disposition(self, s3_client):
        url = await make_backend(s3_client, public=False).signed_url("a.webp", 600, "proof.webp")

        assert url == "https://signed.example/object"
        s3_client.generate_presigned_url.assert_awaited_once_with(
            "get_object",
            Params={
                "Bucket": "assets",
                "Key": "a.webp",
                "ResponseContentDisposition": 'attachment; filename="proof.webp"',
            },
            ExpiresIn=600,
        )

    @pytest.mark.asyncio
    async def test_signed_view_has_no_disposition(self, s3_client):
        await make_backend(s3_client).signed_url("a.webp", 60)
        params = s3_client.generate_presigned_url.await_args.kwargs["Params"]
        assert "ResponseContentDisposition" not in params

    def test_public_url_forms(self, s3_client):
        assert make_backend(s3_client, public_url="https://cdn.example/").public_url("a.webp") == (
            "https://cdn.example/a.webp"
        )
        assert make_backend(s3_client, endpoint_url="http://minio:9000").public_url("a.webp") == (
            "http://minio:9000/assets/a.webp"
        )
        assert make_backend(s3_client, public=False).public_url("a.webp") is None
