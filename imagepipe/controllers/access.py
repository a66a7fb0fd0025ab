"""Signed access link API."""

from __future__ import annotations

from typing import Annotated

from litestar import Controller, Request, get, post
from litestar.params import Parameter
from litestar.response import Response
from litestar.status_codes import HTTP_200_OK
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from imagepipe.auth.guards import auth_guard
from imagepipe.controllers.helpers import (
    envelope,
    get_access_links,
    parse_entity_type,
    parse_purpose,
    results_payload,
)


class _Request(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    expires_in_seconds: int | None = Field(default=None, alias="expiresInSeconds")


class GenerateLinkRequest(_Request):
    image_id: str = Field(alias="imageId")
    variant: str | None = None


class BulkLinkRequest(_Request):
    image_ids: list[str] = Field(alias="imageIds")


class EntityLinkRequest(_Request):
    entity_type: str = Field(alias="entityType")
    entity_id: str = Field(alias="entityId")
    image_purpose: str | None = Field(default=None, alias="imagePurpose")


class DownloadLinkRequest(_Request):
    image_id: str = Field(alias="imageId")
    download_filename: str | None = Field(default=None, alias="downloadFilename")


class AccessLinkController(Controller):
    """Issue expiring URLs for stored images."""

    path = "/api/images/access"
    guards = [auth_guard]

    @post("/generate", status_code=HTTP_200_OK)
    async def generate(self, request: Request, db_session: AsyncSession, data: GenerateLinkRequest) -> Response:
        link = await get_access_links(request).generate_link(
            db_session, data.image_id, data.expires_in_seconds, variant=data.variant
        )
        return envelope(link)

    @post("/bulk-generate", status_code=HTTP_200_OK)
    async def bulk_generate(self, request: Request, db_session: AsyncSession, data: BulkLinkRequest) -> Response:
        """One result per id; failures are reported alongside successes."""
        results = await get_access_links(request).generate_bulk_links(
            db_session, data.image_ids, data.expires_in_seconds
        )
        return envelope(results_payload(results))

    @post("/entity-generate", status_code=HTTP_200_OK)
    async def entity_generate(self, request: Request, db_session: AsyncSession, data: EntityLinkRequest) -> Response:
        results = await get_access_links(request).generate_entity_links(
            db_session,
            parse_entity_type(data.entity_type),
            data.entity_id,
            parse_purpose(data.image_purpose, None),
            data.expires_in_seconds,
        )
        return envelope(results_payload(results))

    @get("/entity/{entity_type:str}/{entity_id:str}")
    async def entity_links(
        self,
        request: Request,
        db_session: AsyncSession,
        entity_type: str,
        entity_id: str,
        purpose: str | None = None,
        expires_in_seconds: Annotated[int | None, Parameter(query="expiresInSeconds")] = None,
    ) -> Response:
        results = await get_access_links(request).generate_entity_links(
            db_session,
            parse_entity_type(entity_type),
            entity_id,
            parse_purpose(purpose, None),
            expires_in_seconds,
        )
        return envelope(results_payload(results))

    @post("/download", status_code=HTTP_200_OK)
    async def download(self, request: Request, db_session: AsyncSession, data: DownloadLinkRequest) -> Response:
        link = await get_access_links(request).generate_download_link(
            db_session, data.image_id, data.download_filename, data.expires_in_seconds
        )
        return envelope(link)
