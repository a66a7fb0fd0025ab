"""Image asset metadata store: CRUD plus primary, ordering and soft-delete rules.

Every read filters out soft-deleted rows unless ``include_deleted`` is passed.
``is_primary`` is only ever changed through :func:`set_primary` (or cleared by
:func:`soft_delete`), which keeps at most one primary per entity.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Iterable
from datetime import datetime, timezone
from typing import Any, TypeVar
from uuid import UUID

from sqlalchemy import and_, case, delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from imagepipe.db.models.image_asset import (
    AssetLifecycle,
    EntityType,
    ImageAsset,
    ImagePurpose,
    ProcessingStatus,
)
from imagepipe.db.models.metadata import asset_paths, merge_metadata
from imagepipe.lib.exceptions import MetadataError, NotFoundError
from imagepipe.lib.results import ItemResult

logger = logging.getLogger(__name__)

T = TypeVar("T")

_BYTES_PER_MB = 1024 * 1024


def _now() -> datetime:
    return datetime.now(timezone.utc)


def parse_asset_id(value: Any) -> UUID | None:
    """Return *value* as a UUID, or ``None`` if it is not one."""
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except (TypeError, ValueError):
        return None


async def bounded(call: Awaitable[T], timeout: float, what: str = "metadata call") -> T:
    """Await *call* with a timeout, reporting expiry as a :class:`MetadataError`."""
    try:
        return await asyncio.wait_for(call, timeout=timeout)
    except TimeoutError as exc:
        raise MetadataError(f"{what} timed out after {timeout}s") from exc


def _entity_filter(entity_type: EntityType | str, entity_id: str):
    return and_(
        ImageAsset.entity_type == EntityType(entity_type),
        ImageAsset.entity_id == str(entity_id),
    )


def _apply_filters(
    query,
    entity_type: EntityType | str | None = None,
    entity_id: str | None = None,
    purpose: ImagePurpose | str | None = None,
    uploaded_by: str | None = None,
    include_deleted: bool = False,
):
    filters = []
    if not include_deleted:
        filters.append(ImageAsset.deleted_at.is_(None))
    if entity_type is not None:
        filters.append(ImageAsset.entity_type == EntityType(entity_type))
    if entity_id is not None:
        filters.append(ImageAsset.entity_id == str(entity_id))
    if purpose is not None:
        filters.append(ImageAsset.image_purpose == ImagePurpose(purpose))
    if uploaded_by is not None:
        filters.append(ImageAsset.uploaded_by == uploaded_by)
    if filters:
        query = query.where(and_(*filters))
    # Bulk UPDATEs bypass the identity map; reads always reload row state
    return query.execution_options(populate_existing=True)


async def create_image_asset(db_session: AsyncSession, **fields: Any) -> ImageAsset:
    """Insert one row. ``id`` and timestamps are generated."""
    assets = await create_image_assets(db_session, [fields])
    return assets[0]


async def create_image_assets(db_session: AsyncSession, records: list[dict[str, Any]]) -> list[ImageAsset]:
    """Insert several rows in one transaction; all or none are written."""
    assets = []
    for record in records:
        record = dict(record)
        if "metadata" in record:
            record["metadata_"] = record.pop("metadata")
        assets.append(ImageAsset(**record))

    db_session.add_all(assets)
    try:
        await db_session.commit()
    except SQLAlchemyError:
        await db_session.rollback()
        raise
    for asset in assets:
        await db_session.refresh(asset)
    return assets


async def get_image_asset(
    db_session: AsyncSession, asset_id: UUID | str, include_deleted: bool = False
) -> ImageAsset | None:
    parsed = parse_asset_id(asset_id)
    if parsed is None:
        return None
    query = _apply_filters(select(ImageAsset).where(ImageAsset.id == parsed), include_deleted=include_deleted)
    result = await db_session.execute(query)
    return result.scalar_one_or_none()


async def get_image_assets(db_session: AsyncSession, asset_ids: Iterable[UUID]) -> dict[UUID, ImageAsset]:
    """Fetch several active rows at once, keyed by id. Missing ids are absent."""
    ids = list(asset_ids)
    if not ids:
        return {}
    query = _apply_filters(select(ImageAsset).where(ImageAsset.id.in_(ids)))
    result = await db_session.execute(query)
    return {asset.id: asset for asset in result.scalars().all()}


async def list_by_entity(
    db_session: AsyncSession,
    entity_type: EntityType | str,
    entity_id: str,
    purpose: ImagePurpose | str | None = None,
) -> list[ImageAsset]:
    """Active assets of an entity, ordered by ``display_order`` then ``created_at``."""
    query = _apply_filters(
        select(ImageAsset), entity_type=entity_type, entity_id=entity_id, purpose=purpose
    ).order_by(ImageAsset.display_order.asc(), ImageAsset.created_at.asc())
    result = await db_session.execute(query)
    return list(result.scalars().all())


async def list_assets(
    db_session: AsyncSession,
    entity_type: EntityType | str | None = None,
    entity_id: str | None = None,
    purpose: ImagePurpose | str | None = None,
    uploaded_by: str | None = None,
    include_deleted: bool = False,
    limit: int = 50,
    offset: int = 0,
) -> list[ImageAsset]:
    """List assets with optional filtering, newest first."""
    query = _apply_filters(
        select(ImageAsset),
        entity_type=entity_type,
        entity_id=entity_id,
        purpose=purpose,
        uploaded_by=uploaded_by,
        include_deleted=include_deleted,
    ).order_by(ImageAsset.created_at.desc())
    if offset:
        query = query.offset(offset)
    query = query.limit(limit)

    result = await db_session.execute(query)
    return list(result.scalars().all())


async def count_assets(
    db_session: AsyncSession,
    entity_type: EntityType | str | None = None,
    entity_id: str | None = None,
    purpose: ImagePurpose | str | None = None,
    uploaded_by: str | None = None,
    include_deleted: bool = False,
) -> int:
    """Count assets matching the given filters."""
    query = _apply_filters(
        select(func.count()).select_from(ImageAsset),
        entity_type=entity_type,
        entity_id=entity_id,
        purpose=purpose,
        uploaded_by=uploaded_by,
        include_deleted=include_deleted,
    )
    result = await db_session.execute(query)
    return result.scalar() or 0


async def update_fields(
    db_session: AsyncSession,
    asset_id: UUID | str,
    *,
    alt_text: str | None = None,
    caption: str | None = None,
    image_purpose: ImagePurpose | str | None = None,
    display_order: int | None = None,
    metadata: dict[str, Any] | None = None,
) -> ImageAsset:
    """Update display fields of an active asset. ``None`` leaves a field as it is.

    ``metadata`` is merged into the existing bag rather than replacing it.
    """
    asset = await get_image_asset(db_session, asset_id)
    if asset is None:
        raise NotFoundError(f"Image {asset_id} not found")

    if alt_text is not None:
        asset.alt_text = alt_text
    if caption is not None:
        asset.caption = caption
    if image_purpose is not None:
        asset.image_purpose = ImagePurpose(image_purpose)
    if display_order is not None:
        asset.display_order = int(display_order)
    if metadata:
        asset.metadata_ = merge_metadata(asset.metadata_, metadata)

    await db_session.commit()
    await db_session.refresh(asset)
    return asset


async def update_display_order(
    db_session: AsyncSession,
    updates: Iterable[tuple[Any, int]],
    entity_type: EntityType | str | None = None,
    entity_id: str | None = None,
) -> list[ItemResult[int]]:
    """Apply each ``(id, order)`` pair independently.

    When an entity is given, only that entity's rows may be changed. Returns
    one result per pair; a failed pair never stops the others.
    """
    results: list[ItemResult[int]] = []
    for raw_id, order in updates:
        asset_id = parse_asset_id(raw_id)
        if asset_id is None:
            results.append(ItemResult.failure(raw_id, "Invalid image id"))
            continue

        stmt = update(ImageAsset).where(
            ImageAsset.id == asset_id, ImageAsset.deleted_at.is_(None)
        )
        if entity_type is not None and entity_id is not None:
            stmt = stmt.where(_entity_filter(entity_type, entity_id))
        stmt = stmt.values(display_order=int(order), updated_at=_now()).execution_options(
            synchronize_session=False
        )

        try:
            result = await db_session.execute(stmt)
            await db_session.commit()
        except SQLAlchemyError as exc:
            await db_session.rollback()
            logger.warning("Display order update failed for image %s: %s", asset_id, exc)
            results.append(ItemResult.failure(asset_id, "Update failed"))
            continue

        if result.rowcount == 0:
            results.append(ItemResult.failure(asset_id, "Image not found"))
        else:
            results.append(ItemResult.success(asset_id, int(order)))
    return results


async def set_primary(
    db_session: AsyncSession,
    entity_type: EntityType | str,
    entity_id: str,
    image_id: UUID | str,
) -> ImageAsset:
    """Make *image_id* the only primary image of the entity.

    The unset-all and set-one phases run as a single UPDATE over the
    entity's active rows, so concurrent calls for the same entity cannot
    leave two primaries behind.
    """
    target = await get_image_asset(db_session, image_id)
    if (
        target is None
        or target.entity_type != EntityType(entity_type)
        or target.entity_id != str(entity_id)
    ):
        raise NotFoundError(f"Image {image_id} not found for {EntityType(entity_type).value} {entity_id}")

    stmt = (
        update(ImageAsset)
        .where(_entity_filter(entity_type, entity_id), ImageAsset.deleted_at.is_(None))
        .values(
            is_primary=case((ImageAsset.id == target.id, True), else_=False),
            updated_at=_now(),
        )
        .execution_options(synchronize_session=False)
    )
    await db_session.execute(stmt)
    await db_session.commit()
    await db_session.refresh(target)
    return target


async def get_primary(
    db_session: AsyncSession, entity_type: EntityType | str, entity_id: str
) -> ImageAsset | None:
    query = select(ImageAsset).where(
        _entity_filter(entity_type, entity_id),
        ImageAsset.deleted_at.is_(None),
        ImageAsset.is_primary.is_(True),
    ).execution_options(populate_existing=True)
    result = await db_session.execute(query)
    return result.scalars().first()


async def soft_delete(db_session: AsyncSession, asset_id: UUID | str) -> ImageAsset:
    """Mark an active asset deleted. A deleted asset is never primary."""
    asset = await get_image_asset(db_session, asset_id)
    if asset is None:
        raise NotFoundError(f"Image {asset_id} not found")

    asset.deleted_at = _now()
    asset.is_primary = False
    await db_session.commit()
    await db_session.refresh(asset)
    return asset


async def hard_delete(db_session: AsyncSession, asset_id: UUID | str) -> AssetLifecycle:
    """Physically remove the row, deleted or not."""
    parsed = parse_asset_id(asset_id)
    if parsed is None:
        raise NotFoundError(f"Image {asset_id} not found")
    result = await db_session.execute(
        delete(ImageAsset).where(ImageAsset.id == parsed).execution_options(synchronize_session=False)
    )
    await db_session.commit()
    if result.rowcount == 0:
        raise NotFoundError(f"Image {asset_id} not found")
    return AssetLifecycle.HARD_DELETED


async def restore(db_session: AsyncSession, asset_id: UUID | str) -> ImageAsset:
    """Bring a soft-deleted asset back. It returns as a non-primary image."""
    asset = await get_image_asset(db_session, asset_id, include_deleted=True)
    if asset is None or asset.deleted_at is None:
        raise NotFoundError(f"Deleted image {asset_id} not found")

    asset.deleted_at = None
    await db_session.commit()
    await db_session.refresh(asset)
    return asset


async def list_deleted_before(
    db_session: AsyncSession,
    cutoff: datetime,
    limit: int = 500,
    exclude_ids: Iterable[UUID] = (),
) -> list[ImageAsset]:
    """Soft-deleted assets whose deletion is older than *cutoff*, oldest first."""
    query = select(ImageAsset).where(ImageAsset.deleted_at.is_not(None), ImageAsset.deleted_at < cutoff)
    excluded = list(exclude_ids)
    if excluded:
        query = query.where(ImageAsset.id.not_in(excluded))
    query = query.order_by(ImageAsset.deleted_at.asc()).limit(limit)
    result = await db_session.execute(query)
    return list(result.scalars().all())


async def set_processing_status(
    db_session: AsyncSession, asset_id: UUID | str, status: ProcessingStatus | str
) -> ImageAsset:
    asset = await get_image_asset(db_session, asset_id)
    if asset is None:
        raise NotFoundError(f"Image {asset_id} not found")
    asset.processing_status = ProcessingStatus(status)
    await db_session.commit()
    await db_session.refresh(asset)
    return asset


async def get_stats(db_session: AsyncSession, entity_type: EntityType | str | None = None) -> dict[str, Any]:
    """Aggregate counts and sizes over active assets."""
    totals = await db_session.execute(
        _apply_filters(
            select(func.count(), func.coalesce(func.sum(ImageAsset.file_size), 0)).select_from(ImageAsset),
            entity_type=entity_type,
        )
    )
    total_images, total_bytes = totals.one()

    by_purpose = await db_session.execute(
        _apply_filters(
            select(ImageAsset.image_purpose, func.count()).select_from(ImageAsset),
            entity_type=entity_type,
        ).group_by(ImageAsset.image_purpose)
    )
    by_entity = await db_session.execute(
        _apply_filters(
            select(ImageAsset.entity_type, func.count()).select_from(ImageAsset),
            entity_type=entity_type,
        ).group_by(ImageAsset.entity_type)
    )

    total_bytes = int(total_bytes or 0)
    return {
        "totalImages": int(total_images or 0),
        "totalSizeBytes": total_bytes,
        "totalSizeMb": round(total_bytes / _BYTES_PER_MB, 2),
        "byPurpose": {ImagePurpose(p).value: int(n) for p, n in by_purpose.all()},
        "byEntityType": {EntityType(e).value: int(n) for e, n in by_entity.all()},
    }


async def live_storage_paths(db_session: AsyncSession, bucket: str) -> set[str]:
    """Every object path referenced by an active row in *bucket*."""
    result = await db_session.execute(
        select(ImageAsset.storage_path, ImageAsset.metadata_).where(
            ImageAsset.storage_bucket == bucket, ImageAsset.deleted_at.is_(None)
        )
    )
    paths: set[str] = set()
    for storage_path, metadata in result.all():
        paths.update(asset_paths(storage_path, metadata))
    return paths
