"""Image ordering and deletion under the business resource collections.

Every collection uses the same reorder semantic: each entry patches the
matching image of that resource (order, alt text, caption, metadata) and
``isPrimary`` goes through the primary-selection operation. Entries that do
not belong to the resource are reported as failed items.
"""

from __future__ import annotations

import logging
from typing import Any

from litestar import Controller, Request, delete, patch
from litestar.response import Response
from litestar.status_codes import HTTP_200_OK
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from imagepipe.auth.guards import ADMIN_ROLE, Role, auth_guard, require
from imagepipe.controllers.helpers import (
    envelope,
    get_orchestrator,
    parse_collection,
    results_payload,
)
from imagepipe.db.services import image_asset_service
from imagepipe.lib.exceptions import ImagePipeError, RequestValidationError
from imagepipe.lib.results import ItemResult

logger = logging.getLogger(__name__)


class ReorderEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    url: str | None = None
    order: int
    is_primary: bool | None = Field(default=None, alias="isPrimary")
    alt: str | None = None
    caption: str | None = None
    metadata: dict[str, Any] | None = None


class ReorderRequest(BaseModel):
    images: list[ReorderEntry]


class ResourceImagesController(Controller):
    path = "/api"
    guards = [auth_guard]

    @patch("/{collection:str}/{resource_id:str}/reorder-images")
    async def reorder_images(
        self,
        request: Request,
        db_session: AsyncSession,
        collection: str,
        resource_id: str,
        data: ReorderRequest,
    ) -> Response:
        entity_type = parse_collection(collection)
        if not data.images:
            raise RequestValidationError("images must not be empty")

        results = await image_asset_service.update_display_order(
            db_session,
            [(entry.id, entry.order) for entry in data.images],
            entity_type=entity_type,
            entity_id=resource_id,
        )

        for index, result in enumerate(results):
            entry = data.images[index]
            if not result.ok or not (entry.alt is not None or entry.caption is not None or entry.metadata):
                continue
            try:
                await image_asset_service.update_fields(
                    db_session,
                    result.id,
                    alt_text=entry.alt,
                    caption=entry.caption,
                    metadata=entry.metadata,
                )
            except (ImagePipeError, SQLAlchemyError) as exc:
                await db_session.rollback()
                logger.warning("Field update failed for image %s: %s", result.id, exc)
                results[index] = ItemResult.failure(result.id, "Field update failed")

        # Last entry flagged primary wins
        primary_index = next(
            (i for i in range(len(results) - 1, -1, -1) if results[i].ok and data.images[i].is_primary),
            None,
        )
        if primary_index is not None:
            index = primary_index
            result = results[index]
            try:
                await get_orchestrator(request).set_primary(db_session, entity_type, resource_id, result.id)
            except (ImagePipeError, SQLAlchemyError) as exc:
                await db_session.rollback()
                logger.warning("Primary update failed for image %s: %s", result.id, exc)
                results[index] = ItemResult.failure(result.id, "Primary update failed")

        return envelope(results_payload(results))

    @delete("/{collection:str}/{resource_id:str}/images/{image_id:str}", status_code=HTTP_200_OK)
    async def delete_image(
        self,
        request: Request,
        db_session: AsyncSession,
        collection: str,
        resource_id: str,
        image_id: str,
        hard: bool = False,
    ) -> Response:
        """Remove stored objects (best effort), then the image record.

        ``?hard=true`` removes the row instead of soft-deleting it and is
        limited to admins.
        """
        entity_type = parse_collection(collection)
        if hard:
            await require(request, Role(ADMIN_ROLE))

        outcome = await get_orchestrator(request).delete(
            db_session, image_id, hard=hard, entity_type=entity_type, entity_id=resource_id
        )
        return envelope(
            {
                "id": outcome.id,
                "lifecycle": outcome.lifecycle.value,
                "storageDeleted": outcome.storage_deleted,
                "warnings": outcome.warnings,
            }
        )
