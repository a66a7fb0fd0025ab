"""Shared helpers for the JSON API controllers."""

from __future__ import annotations

from typing import Any

from litestar import Request, Response
from litestar.status_codes import HTTP_200_OK

from imagepipe.db.models.image_asset import EntityType, ImageAsset, ImagePurpose
from imagepipe.db.services.access_link_service import AccessLinkIssuer
from imagepipe.db.services.upload_service import UploadOrchestrator
from imagepipe.lib.exceptions import NotFoundError, RequestValidationError
from imagepipe.lib.results import ItemResult, summarize
from imagepipe.lib.storage import StorageManager

# URL collection name -> owning entity type
RESOURCE_COLLECTIONS: dict[str, EntityType] = {
    "catalog": EntityType.CATALOG_ITEM,
    "orders": EntityType.ORDER,
    "design-tasks": EntityType.DESIGN_TASK,
    "customers": EntityType.CUSTOMER,
    "manufacturers": EntityType.MANUFACTURER,
    "users": EntityType.USER_PROFILE,
    "organizations": EntityType.ORGANIZATION,
}

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


def envelope(data: Any, status_code: int = HTTP_200_OK) -> Response:
    return Response(
        content={"success": True, "data": data},
        status_code=status_code,
        media_type="application/json",
    )


def results_payload(results: list[ItemResult]) -> dict[str, Any]:
    return {"results": [r.to_dict() for r in results], "summary": summarize(results)}


def get_orchestrator(request: Request) -> UploadOrchestrator:
    return request.app.state.upload_orchestrator


def get_access_links(request: Request) -> AccessLinkIssuer:
    return request.app.state.access_links


def get_storage(request: Request) -> StorageManager:
    return request.app.state.storage_manager


def parse_entity_type(value: str) -> EntityType:
    try:
        return EntityType(value.replace("-", "_").lower())
    except ValueError:
        allowed = ", ".join(e.value for e in EntityType)
        raise RequestValidationError(f"Unknown entity type {value!r}. Allowed: {allowed}") from None


def parse_purpose(value: str | None, default: ImagePurpose | None = ImagePurpose.GALLERY) -> ImagePurpose | None:
    if not value:
        return default
    try:
        return ImagePurpose(value.lower())
    except ValueError:
        allowed = ", ".join(p.value for p in ImagePurpose)
        raise RequestValidationError(f"Unknown image purpose {value!r}. Allowed: {allowed}") from None


def parse_collection(value: str) -> EntityType:
    entity_type = RESOURCE_COLLECTIONS.get(value)
    if entity_type is None:
        raise NotFoundError(f"Unknown resource collection {value!r}")
    return entity_type


def parse_bool(value: Any, name: str) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value or "").strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise RequestValidationError(f"{name} must be a boolean")


def parse_int(value: Any, name: str, default: int = 0) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        raise RequestValidationError(f"{name} must be an integer") from None


def serialize_asset(asset: ImageAsset) -> dict[str, Any]:
    return {
        "id": str(asset.id),
        "filename": asset.filename,
        "originalFilename": asset.original_filename,
        "fileSize": asset.file_size,
        "mimeType": asset.mime_type,
        "width": asset.image_width,
        "height": asset.image_height,
        "storagePath": asset.storage_path,
        "storageBucket": asset.storage_bucket,
        "url": asset.public_url,
        "entityType": asset.entity_type.value,
        "entityId": asset.entity_id,
        "imagePurpose": asset.image_purpose.value,
        "isPrimary": asset.is_primary,
        "displayOrder": asset.display_order,
        "processingStatus": asset.processing_status.value,
        "altText": asset.alt_text,
        "caption": asset.caption,
        "uploadedBy": asset.uploaded_by,
        "metadata": asset.metadata_ or {},
        "lifecycle": asset.lifecycle.value,
        "createdAt": asset.created_at.isoformat() if asset.created_at else None,
        "updatedAt": asset.updated_at.isoformat() if asset.updated_at else None,
        "deletedAt": asset.deleted_at.isoformat() if asset.deleted_at else None,
    }
