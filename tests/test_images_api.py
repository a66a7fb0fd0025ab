"""Integration tests for the JSON API using Litestar's TestClient."""

from unittest.mock import AsyncMock, patch
from urllib.parse import urlparse

import pytest
from litestar.testing import TestClient

from imagepipe.app_factory import create_app
from imagepipe.lib.storage import StorageResult

from conftest import fake_auth_middleware, make_image

STAFF = {"x-user-id": "u-1", "x-user-role": "staff"}
ADMIN = {"x-user-id": "u-9", "x-user-role": "admin"}


@pytest.fixture
def client(settings):
    app = create_app(settings, middleware=[fake_auth_middleware])
    with TestClient(app) as client:
        yield client


def _upload(client, path="/api/images/catalog_item/SKU-1", name="shirt.png", data=None, **form):
    data = data if data is not None else make_image("PNG", (800, 600))
    return client.post(path, files={"image": (name, data, "image/png")}, data=form, headers=STAFF)


class TestAuthentication:
    def test_health_needs_no_identity(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}

    def test_api_requires_identity(self, client):
        resp = client.get("/api/images/stats")
        assert resp.status_code == 401
        assert resp.json() == {"success": False, "message": "Authentication required"}


class TestUploadEndpoint:
    def test_single_upload(self, client):
        resp = _upload(client, isPrimary="true", altText="Front")

        assert resp.status_code == 201
        body = resp.json()
        assert body["success"] is True
        data = body["data"]
        assert data["status"] == "completed"
        assert data["isPrimary"] is True
        assert set(data["imageUrls"]) == {"thumbnail", "medium", "large", "original"}
        assert urlparse(data["url"]).path.startswith("/storage/uploads/catalog_item/SKU-1/gallery/")
        assert data["optimization"]["originalSize"] > 0

        image = client.get(f"/api/images/{data['id']}", headers=STAFF).json()["data"]
        assert image["isPrimary"] is True
        assert image["altText"] == "Front"
        assert image["uploadedBy"] == "u-1"

    def test_purpose_from_path(self, client):
        data = _upload(client, path="/api/images/order/ORD-1/design").json()["data"]
        image = client.get(f"/api/images/{data['id']}", headers=STAFF).json()["data"]
        assert image["imagePurpose"] == "design"
        assert image["entityType"] == "order"

    def test_multi_upload(self, client):
        files = [
            ("images", ("a.png", make_image("PNG", (300, 300)), "image/png")),
            ("images", ("b.jpg", make_image("JPEG", (300, 300)), "image/jpeg")),
        ]
        resp = client.post("/api/images/catalog_item/SKU-2", files=files, headers=STAFF)

        assert resp.status_code == 201
        data = resp.json()["data"]
        assert data["summary"] == {"total": 2, "successful": 2, "failed": 0}
        assert [i["filename"] for i in data["images"]] == ["a.png", "b.jpg"]

        listed = client.get("/api/images/catalog_item/SKU-2", headers=STAFF).json()["data"]
        assert [i["displayOrder"] for i in listed] == [0, 1]

    def test_missing_file(self, client):
        resp = client.post("/api/images/catalog_item/SKU-1", data={"altText": "x"}, headers=STAFF)
        assert resp.status_code == 400
        assert "No file provided" in resp.json()["message"]

    def test_rejected_type_stores_nothing(self, client):
        resp = client.post(
            "/api/images/catalog_item/SKU-1",
            files={"image": ("notes.txt", b"hello", "text/plain")},
            headers=STAFF,
        )
        assert resp.status_code == 400
        assert resp.json()["success"] is False
        assert "not allowed" in resp.json()["message"]
        assert client.get("/api/images/catalog_item/SKU-1", headers=STAFF).json()["data"] == []

    def test_unknown_entity_type(self, client):
        resp = _upload(client, path="/api/images/spaceship/1")
        assert resp.status_code == 400
        assert "Unknown entity type" in resp.json()["message"]

    def test_undecodable_image_is_generic_failure(self, client):
        resp = _upload(client, data=b"\x89PNG\r\n\x1a\n" + b"\x00" * 64)
        assert resp.status_code == 500
        assert resp.json() == {"success": False, "message": "Image processing failed"}


    def test_non_latin_entity_ids(self, client):
        first = _upload(client, path="/api/images/customer/客户")
        second = _upload(client, path="/api/images/customer/顾客")

        assert first.status_code == 201
        assert second.status_code == 201
        first_dir = urlparse(first.json()["data"]["url"]).path.rsplit("/", 2)[0]
        second_dir = urlparse(second.json()["data"]["url"]).path.rsplit("/", 2)[0]
        assert first_dir != second_dir
        listed = client.get("/api/images/customer/客户", headers=STAFF).json()["data"]
        assert [i["entityId"] for i in listed] == ["客户"]


class TestImageEndpoints:
    def test_get_unknown_image(self, client):
        resp = client.get("/api/images/00000000-0000-0000-0000-000000000000", headers=STAFF)
        assert resp.status_code == 404
        assert resp.json()["success"] is False

    def test_patch_image(self, client):
        image_id = _upload(client).json()["data"]["id"]

        resp = client.patch(
            f"/api/images/{image_id}",
            json={"altText": "Back", "caption": "Rear view", "metadata": {"color": "red"}},
            headers=STAFF,
        )

        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["altText"] == "Back"
        assert data["caption"] == "Rear view"
        assert data["metadata"]["color"] == "red"
        assert data["metadata"]["layout"] == "inline"

    def test_set_primary(self, client):
        first = _upload(client, isPrimary="true").json()["data"]["id"]
        second = _upload(client).json()["data"]["id"]

        resp = client.post(f"/api/images/{second}/primary", headers=STAFF)

        assert resp.status_code == 200
        assert resp.json()["data"]["isPrimary"] is True
        assert client.get(f"/api/images/{first}", headers=STAFF).json()["data"]["isPrimary"] is False

    def test_primary_lookup(self, client):
        missing = client.get("/api/images/catalog_item/SKU-1/primary", headers=STAFF)
        assert missing.status_code == 404

        image_id = _upload(client, isPrimary="true").json()["data"]["id"]
        _upload(client)

        resp = client.get("/api/images/catalog_item/SKU-1/primary", headers=STAFF)
        assert resp.status_code == 200
        assert resp.json()["data"]["id"] == image_id

    def test_search_pages_across_entities(self, client):
        _upload(client)
        _upload(client)
        _upload(client, path="/api/images/order/ORD-1")

        page = client.get("/api/images?entityType=catalog_item&limit=1", headers=STAFF).json()["data"]
        everything = client.get("/api/images", headers=STAFF).json()["data"]

        assert page["total"] == 2
        assert len(page["items"]) == 1
        assert everything["total"] == 3
        assert client.get("/api/images?limit=0", headers=STAFF).status_code == 400

    def test_search_deleted_is_admin_only(self, client):
        image_id = _upload(client).json()["data"]["id"]
        client.delete(f"/api/catalog/SKU-1/images/{image_id}", headers=STAFF)

        assert client.get("/api/images?includeDeleted=true", headers=STAFF).status_code == 403
        data = client.get("/api/images?includeDeleted=true", headers=ADMIN).json()["data"]
        assert [i["lifecycle"] for i in data["items"]] == ["soft_deleted"]
        assert client.get("/api/images", headers=ADMIN).json()["data"]["total"] == 0

    def test_stats(self, client):
        _upload(client)
        _upload(client, path="/api/images/order/ORD-1")

        everything = client.get("/api/images/stats", headers=ADMIN).json()["data"]
        orders = client.get("/api/images/stats?entityType=order", headers=ADMIN).json()["data"]

        assert everything["totalImages"] == 2
        assert orders["totalImages"] == 1

    def test_stats_are_admin_only(self, client):
        resp = client.get("/api/images/stats", headers=STAFF)

        assert resp.status_code == 403
        assert resp.json() == {"success": False, "message": "Insufficient permissions"}


class TestAccessEndpoints:
    def test_generate(self, client):
        image_id = _upload(client).json()["data"]["id"]

        resp = client.post(
            "/api/images/access/generate",
            json={"imageId": image_id, "expiresInSeconds": 600},
            headers=STAFF,
        )

        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["imageId"] == image_id
        assert "signature=" in data["signedUrl"]

    def test_ttl_out_of_bounds(self, client):
        image_id = _upload(client).json()["data"]["id"]
        resp = client.post(
            "/api/images/access/generate",
            json={"imageId": image_id, "expiresInSeconds": 30},
            headers=STAFF,
        )
        assert resp.status_code == 400

    def test_bulk_generate(self, client):
        image_id = _upload(client).json()["data"]["id"]

        resp = client.post(
            "/api/images/access/bulk-generate",
            json={"imageIds": [image_id, "not-a-uuid"]},
            headers=STAFF,
        )

        data = resp.json()["data"]
        assert data["summary"] == {"total": 2, "successful": 1, "failed": 1}
        assert data["results"][1] == {"id": "not-a-uuid", "ok": False, "error": "Invalid image id"}

    def test_entity_links(self, client):
        _upload(client, path="/api/images/order/ORD-1/design")
        _upload(client, path="/api/images/order/ORD-1/production")

        resp = client.get("/api/images/access/entity/order/ORD-1?purpose=design", headers=STAFF)
        assert resp.json()["data"]["summary"]["total"] == 1

        resp = client.post(
            "/api/images/access/entity-generate",
            json={"entityType": "order", "entityId": "ORD-1"},
            headers=STAFF,
        )
        assert resp.json()["data"]["summary"]["total"] == 2

    def test_download(self, client):
        image_id = _upload(client).json()["data"]["id"]

        resp = client.post(
            "/api/images/access/download",
            json={"imageId": image_id, "downloadFilename": "front.webp"},
            headers=STAFF,
        )

        assert resp.json()["data"]["filename"] == "front.webp"
        assert "download=front.webp" in resp.json()["data"]["downloadUrl"]


class TestResourceEndpoints:
    def test_reorder(self, client):
        first = _upload(client).json()["data"]["id"]
        second = _upload(client).json()["data"]["id"]

        resp = client.patch(
            "/api/catalog/SKU-1/reorder-images",
            json={
                "images": [
                    {"id": second, "order": 0, "isPrimary": True, "alt": "Hero"},
                    {"id": first, "order": 1},
                    {"id": "missing", "order": 2},
                ]
            },
            headers=STAFF,
        )

        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["summary"] == {"total": 3, "successful": 2, "failed": 1}

        listed = client.get("/api/images/catalog_item/SKU-1", headers=STAFF).json()["data"]
        assert [i["id"] for i in listed] == [second, first]
        assert listed[0]["isPrimary"] is True
        assert listed[0]["altText"] == "Hero"

    def test_reorder_unknown_collection(self, client):
        resp = client.patch("/api/spaceships/1/reorder-images", json={"images": []}, headers=STAFF)
        assert resp.status_code == 404

    def test_delete_and_restore(self, client):
        image_id = _upload(client).json()["data"]["id"]

        resp = client.delete(f"/api/catalog/SKU-1/images/{image_id}", headers=STAFF)

        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["lifecycle"] == "soft_deleted"
        assert data["storageDeleted"] is True
        assert client.get(f"/api/images/{image_id}", headers=STAFF).status_code == 404

        restored = client.post(f"/api/images/{image_id}/restore", headers=STAFF)
        assert restored.status_code == 409
        assert client.get(f"/api/images/{image_id}", headers=STAFF).status_code == 404

    def test_restore_when_objects_survived(self, client):
        image_id = _upload(client).json()["data"]["id"]
        storage = client.app.state.storage_manager
        down = StorageResult(ok=False, bucket="uploads", error="bucket offline")
        with patch.object(storage, "delete", AsyncMock(return_value=down)):
            client.delete(f"/api/catalog/SKU-1/images/{image_id}", headers=STAFF)

        restored = client.post(f"/api/images/{image_id}/restore", headers=STAFF)

        assert restored.status_code == 200
        data = restored.json()["data"]
        assert data["lifecycle"] == "active"
        assert data["processingStatus"] == "completed"

    def test_delete_from_other_resource_is_not_found(self, client):
        image_id = _upload(client).json()["data"]["id"]
        resp = client.delete(f"/api/orders/SKU-1/images/{image_id}", headers=STAFF)
        assert resp.status_code == 404

    def test_hard_delete_requires_admin(self, client):
        image_id = _upload(client).json()["data"]["id"]

        denied = client.delete(f"/api/catalog/SKU-1/images/{image_id}?hard=true", headers=STAFF)
        assert denied.status_code == 403

        resp = client.delete(f"/api/catalog/SKU-1/images/{image_id}?hard=true", headers=ADMIN)
        assert resp.status_code == 200
        assert resp.json()["data"]["lifecycle"] == "hard_deleted"
