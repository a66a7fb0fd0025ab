"""Time-limited signed links for stored images, singly or in bulk."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from imagepipe.db.models.image_asset import EntityType, ImageAsset, ImagePurpose
from imagepipe.db.models.metadata import InlineVariantsMetadata, parse_asset_metadata
from imagepipe.db.services import image_asset_service
from imagepipe.db.services.image_asset_service import bounded, parse_asset_id
from imagepipe.lib.exceptions import AccessLinkError, NotFoundError, StorageError
from imagepipe.lib.results import ItemResult
from imagepipe.lib.storage.paths import safe_download_name

if TYPE_CHECKING:
    from imagepipe.config import AccessConfig
    from imagepipe.lib.storage.manager import StorageManager

logger = logging.getLogger(__name__)


class AccessLinkIssuer:
    """Issue signed URLs for assets held by the storage manager."""

    def __init__(self, storage: StorageManager, config: AccessConfig, db_timeout: float = 15.0) -> None:
        self.storage = storage
        self.config = config
        self.db_timeout = db_timeout

    def validate_ttl(self, ttl: int | None) -> int:
        """Return the TTL to use, rejecting values outside the policy range."""
        if ttl is None:
            return self.config.default_ttl
        if isinstance(ttl, bool) or not isinstance(ttl, int):
            raise AccessLinkError("expiresInSeconds must be an integer")
        if ttl < self.config.min_ttl or ttl > self.config.max_ttl:
            raise AccessLinkError(
                f"expiresInSeconds must be between {self.config.min_ttl} and {self.config.max_ttl}"
            )
        return ttl

    @staticmethod
    def _expires_at(ttl: int) -> str:
        return (datetime.now(timezone.utc) + timedelta(seconds=ttl)).isoformat()

    @staticmethod
    def _object_path(asset: ImageAsset, variant: str | None) -> str:
        if variant is None:
            return asset.storage_path
        metadata = parse_asset_metadata(asset.metadata_)
        if isinstance(metadata, InlineVariantsMetadata) and variant in metadata.variants:
            return metadata.variants[variant].path
        raise NotFoundError(f"Image {asset.id} has no {variant!r} variant")

    async def _sign(
        self, asset: ImageAsset, ttl: int, download: str | None = None, variant: str | None = None
    ) -> dict[str, Any]:
        path = self._object_path(asset, variant)
        result = await self.storage.signed_url(asset.storage_bucket, path, ttl, download)
        if not result.ok:
            raise StorageError(f"Could not sign {asset.storage_bucket}/{path}: {result.error}")
        return {
            "imageId": str(asset.id),
            "signedUrl": result.url,
            "expiresAt": self._expires_at(ttl),
        }

    async def _get(self, db_session: AsyncSession, image_id: UUID | str) -> ImageAsset:
        asset = await bounded(
            image_asset_service.get_image_asset(db_session, image_id), self.db_timeout
        )
        if asset is None:
            raise NotFoundError(f"Image {image_id} not found")
        return asset

    async def generate_link(
        self,
        db_session: AsyncSession,
        image_id: UUID | str,
        ttl: int | None = None,
        variant: str | None = None,
    ) -> dict[str, Any]:
        """``{imageId, signedUrl, expiresAt}`` for one active image."""
        ttl = self.validate_ttl(ttl)
        asset = await self._get(db_session, image_id)
        return await self._sign(asset, ttl, variant=variant)

    async def _sign_each(self, ids: list[Any], found: dict[UUID, ImageAsset], ttl: int) -> list[ItemResult]:
        results: list[ItemResult] = []
        for raw_id in ids:
            asset_id = parse_asset_id(raw_id)
            if asset_id is None:
                results.append(ItemResult.failure(raw_id, "Invalid image id"))
                continue
            asset = found.get(asset_id)
            if asset is None:
                results.append(ItemResult.failure(asset_id, "Image not found"))
                continue
            try:
                results.append(ItemResult.success(asset_id, await self._sign(asset, ttl)))
            except StorageError as exc:
                logger.warning("Signing failed for image %s: %s", asset_id, exc)
                results.append(ItemResult.failure(asset_id, "Could not generate link"))
        return results

    async def generate_bulk_links(
        self, db_session: AsyncSession, image_ids: list[Any], ttl: int | None = None
    ) -> list[ItemResult]:
        """One tagged result per requested id, in request order."""
        ttl = self.validate_ttl(ttl)
        if not image_ids:
            raise AccessLinkError("imageIds must not be empty")
        if len(image_ids) > self.config.max_bulk:
            raise AccessLinkError(f"At most {self.config.max_bulk} images per request")

        valid = [i for i in (parse_asset_id(raw) for raw in image_ids) if i is not None]
        found = await bounded(image_asset_service.get_image_assets(db_session, valid), self.db_timeout)
        return await self._sign_each(image_ids, found, ttl)

    async def generate_entity_links(
        self,
        db_session: AsyncSession,
        entity_type: EntityType | str,
        entity_id: str,
        purpose: ImagePurpose | str | None = None,
        ttl: int | None = None,
    ) -> list[ItemResult]:
        """Links for every active image of an entity, in display order."""
        ttl = self.validate_ttl(ttl)
        assets = await bounded(
            image_asset_service.list_by_entity(db_session, entity_type, entity_id, purpose),
            self.db_timeout,
        )
        return await self._sign_each([a.id for a in assets], {a.id: a for a in assets}, ttl)

    async def generate_download_link(
        self,
        db_session: AsyncSession,
        image_id: UUID | str,
        download_filename: str | None = None,
        ttl: int | None = None,
    ) -> dict[str, Any]:
        """A link whose response is an attachment named *download_filename*.

        Defaults to the name the file was uploaded with.
        """
        ttl = self.validate_ttl(ttl)
        asset = await self._get(db_session, image_id)
        filename = safe_download_name(download_filename or asset.original_filename)
        signed = await self._sign(asset, ttl, download=filename)
        return {
            "imageId": signed["imageId"],
            "downloadUrl": signed["signedUrl"],
            "filename": filename,
            "expiresAt": signed["expiresAt"],
        }
