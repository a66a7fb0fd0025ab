"""Image upload and asset management API."""

from __future__ import annotations

from typing import Annotated, Any
from uuid import UUID

from litestar import Controller, Request, get, patch, post
from litestar.datastructures import UploadFile
from litestar.params import Parameter
from litestar.response import Response
from litestar.status_codes import HTTP_200_OK, HTTP_201_CREATED
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from imagepipe.auth.guards import ADMIN_ROLE, Role, auth_guard, identity_id, require
from imagepipe.controllers.helpers import (
    envelope,
    get_orchestrator,
    parse_bool,
    parse_entity_type,
    parse_int,
    parse_purpose,
    serialize_asset,
)
from imagepipe.db.models.image_asset import ImagePurpose
from imagepipe.db.services import image_asset_service
from imagepipe.db.services.upload_service import UploadOutcome, UploadRequest
from imagepipe.lib.exceptions import NotFoundError, UploadValidationError

# Purposes validated under a policy other than "image"
_POLICY_FOR_PURPOSE = {
    ImagePurpose.PROFILE: "profile",
    ImagePurpose.LOGO: "profile",
    ImagePurpose.ATTACHMENT: "attachment",
}


class ImageUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    alt_text: str | None = Field(default=None, alias="altText")
    caption: str | None = None
    image_purpose: str | None = Field(default=None, alias="imagePurpose")
    display_order: int | None = Field(default=None, alias="displayOrder")
    metadata: dict[str, Any] | None = None


def _outcome_payload(outcome: UploadOutcome) -> dict[str, Any]:
    asset = outcome.asset
    payload: dict[str, Any] = {
        "status": outcome.state.value,
        "filename": outcome.request.filename,
    }
    if asset is not None:
        payload.update(
            id=str(asset.id),
            url=asset.public_url,
            imageUrls=outcome.image_urls(),
            assetIds=[str(a.id) for a in outcome.assets],
            isPrimary=outcome.request.is_primary,
        )
    if outcome.optimization:
        payload["optimization"] = outcome.optimization
    if outcome.warnings:
        payload["warnings"] = outcome.warnings
    return payload


async def _form_files(request: Request) -> tuple[list[UploadFile], Any]:
    form = await request.form()
    files = [f for f in form.getall("image", []) if isinstance(f, UploadFile)]
    files += [f for f in form.getall("images", []) if isinstance(f, UploadFile)]
    return files, form


class ImageController(Controller):
    """Upload, list and manage images attached to business entities."""

    path = "/api/images"
    guards = [auth_guard]

    @post(
        ["/{entity_type:str}/{entity_id:str}", "/{entity_type:str}/{entity_id:str}/{purpose:str}"],
        status_code=HTTP_201_CREATED,
    )
    async def upload(
        self,
        request: Request,
        db_session: AsyncSession,
        entity_type: str,
        entity_id: str,
        purpose: str | None = None,
    ) -> Response:
        """Accept one file in ``image`` or several in ``images``."""
        orchestrator = get_orchestrator(request)
        files, form = await _form_files(request)
        if not files:
            raise UploadValidationError("No file provided. Send it in the 'image' or 'images' field")
        max_files = request.app.state.settings.uploads.max_files
        if len(files) > max_files:
            raise UploadValidationError(f"At most {max_files} files per upload")

        kind = parse_entity_type(entity_type)
        image_purpose = parse_purpose(purpose or form.get("purpose"))
        is_primary = parse_bool(form.get("isPrimary"), "isPrimary")
        display_order = parse_int(form.get("displayOrder"), "displayOrder")
        uploaded_by = identity_id(request)

        uploads = []
        for index, upload_file in enumerate(files):
            uploads.append(
                UploadRequest(
                    entity_type=kind,
                    entity_id=entity_id,
                    filename=upload_file.filename or "upload",
                    content_type=upload_file.content_type or "",
                    data=await upload_file.read(),
                    purpose=image_purpose,
                    alt_text=form.get("altText") or None,
                    caption=form.get("caption") or None,
                    is_primary=is_primary and index == 0,
                    display_order=display_order + index,
                    layout=form.get("layout") or None,
                    uploaded_by=uploaded_by,
                    policy=_POLICY_FOR_PURPOSE.get(image_purpose, "image"),
                )
            )

        # Reject the whole request before anything is stored
        for upload_request in uploads:
            orchestrator.validate(upload_request)

        outcomes = [await orchestrator.upload(db_session, r) for r in uploads]

        if len(outcomes) == 1:
            outcome = outcomes[0]
            if not outcome.ok:
                raise outcome.error
            return envelope(_outcome_payload(outcome), HTTP_201_CREATED)

        if not any(o.ok for o in outcomes):
            raise outcomes[0].error
        return envelope(
            {
                "images": [_outcome_payload(o) for o in outcomes],
                "summary": {
                    "total": len(outcomes),
                    "successful": sum(1 for o in outcomes if o.ok),
                    "failed": sum(1 for o in outcomes if not o.ok),
                },
            },
            HTTP_201_CREATED,
        )

    @get("/{entity_type:str}/{entity_id:str}")
    async def list_images(
        self,
        db_session: AsyncSession,
        entity_type: str,
        entity_id: str,
        purpose: str | None = None,
    ) -> Response:
        assets = await image_asset_service.list_by_entity(
            db_session, parse_entity_type(entity_type), entity_id, parse_purpose(purpose, None)
        )
        return envelope([serialize_asset(a) for a in assets])

    @get("/")
    async def search(
        self,
        request: Request,
        db_session: AsyncSession,
        entity_type: Annotated[str | None, Parameter(query="entityType")] = None,
        entity_id: Annotated[str | None, Parameter(query="entityId")] = None,
        purpose: str | None = None,
        uploaded_by: Annotated[str | None, Parameter(query="uploadedBy")] = None,
        include_deleted: Annotated[bool, Parameter(query="includeDeleted")] = False,
        limit: Annotated[int, Parameter(ge=1, le=100)] = 50,
        offset: Annotated[int, Parameter(ge=0)] = 0,
    ) -> Response:
        """Page through images across entities, newest first.

        Soft-deleted rows are only listed for admins.
        """
        if include_deleted:
            await require(request, Role(ADMIN_ROLE))
        filters: dict[str, Any] = {
            "entity_type": parse_entity_type(entity_type) if entity_type else None,
            "entity_id": entity_id,
            "purpose": parse_purpose(purpose, None),
            "uploaded_by": uploaded_by,
            "include_deleted": include_deleted,
        }
        assets = await image_asset_service.list_assets(db_session, limit=limit, offset=offset, **filters)
        total = await image_asset_service.count_assets(db_session, **filters)
        return envelope(
            {
                "items": [serialize_asset(a) for a in assets],
                "total": total,
                "limit": limit,
                "offset": offset,
            }
        )

    @get("/{entity_type:str}/{entity_id:str}/primary")
    async def primary_image(self, db_session: AsyncSession, entity_type: str, entity_id: str) -> Response:
        kind = parse_entity_type(entity_type)
        asset = await image_asset_service.get_primary(db_session, kind, entity_id)
        if asset is None:
            raise NotFoundError(f"No primary image for {kind.value} {entity_id}")
        return envelope(serialize_asset(asset))

    @get("/stats", guards=[Role(ADMIN_ROLE)])
    async def stats(
        self,
        db_session: AsyncSession,
        entity_type: Annotated[str | None, Parameter(query="entityType")] = None,
    ) -> Response:
        kind = parse_entity_type(entity_type) if entity_type else None
        return envelope(await image_asset_service.get_stats(db_session, kind))

    @get("/{image_id:uuid}")
    async def get_image(self, db_session: AsyncSession, image_id: UUID) -> Response:
        asset = await image_asset_service.get_image_asset(db_session, image_id)
        if asset is None:
            raise NotFoundError(f"Image {image_id} not found")
        return envelope(serialize_asset(asset))

    @patch("/{image_id:uuid}")
    async def update_image(self, db_session: AsyncSession, image_id: UUID, data: ImageUpdate) -> Response:
        asset = await image_asset_service.update_fields(
            db_session,
            image_id,
            alt_text=data.alt_text,
            caption=data.caption,
            image_purpose=parse_purpose(data.image_purpose, None),
            display_order=data.display_order,
            metadata=data.metadata,
        )
        return envelope(serialize_asset(asset))

    @post("/{image_id:uuid}/primary", status_code=HTTP_200_OK)
    async def set_primary(
        self,
        request: Request,
        db_session: AsyncSession,
        image_id: UUID,
    ) -> Response:
        """Make an image the primary image of the entity it belongs to."""
        asset = await image_asset_service.get_image_asset(db_session, image_id)
        if asset is None:
            raise NotFoundError(f"Image {image_id} not found")
        asset = await get_orchestrator(request).set_primary(
            db_session, asset.entity_type, asset.entity_id, image_id
        )
        return envelope(serialize_asset(asset))

    @post("/{image_id:uuid}/restore", status_code=HTTP_200_OK)
    async def restore_image(self, request: Request, db_session: AsyncSession, image_id: UUID) -> Response:
        """Undo a soft delete. Answers 409 once the stored objects are gone."""
        asset = await get_orchestrator(request).restore(db_session, image_id)
        return envelope(serialize_asset(asset))
