"""Upload orchestrator: validate, transcode, store, record.

Each upload walks the states in :class:`UploadState`. Variant and storage
failures are collected as warnings as long as at least one variant survives.
A failed metadata write after objects were stored triggers a compensating
delete of those objects; if that also fails the paths are logged and the
``image_orphaned`` hook fires so the leftovers can be reconciled later.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import PurePath
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from imagepipe.db.models.image_asset import (
    AssetLifecycle,
    EntityType,
    ImageAsset,
    ImagePurpose,
    ProcessingStatus,
)
from imagepipe.db.models.metadata import (
    LAYOUT_INLINE,
    LAYOUT_PER_VARIANT,
    LAYOUTS,
    InlineVariantsMetadata,
    SourceInfo,
    VariantInfo,
    VariantRowMetadata,
    asset_paths,
    dump_metadata,
)
from imagepipe.db.services import image_asset_service
from imagepipe.db.services.image_asset_service import bounded
from imagepipe.lib import observability
from imagepipe.lib.exceptions import (
    ConflictError,
    ImagePipeError,
    MetadataError,
    NotFoundError,
    StorageError,
    TranscodeError,
    UploadValidationError,
)
from imagepipe.lib.hooks import (
    AFTER_IMAGE_DELETE,
    AFTER_IMAGE_UPLOAD,
    AFTER_PRIMARY_CHANGED,
    BEFORE_IMAGE_UPLOAD,
    IMAGE_ORPHANED,
    IMAGE_STORAGE_PATH,
    IMAGE_UPLOAD_DATA,
    HookRegistry,
    hooks as default_hooks,
)
from imagepipe.lib.imaging import (
    TranscodedVariant,
    TranscodeResult,
    VariantTranscoder,
    detect_image_content_type,
)
from imagepipe.lib.results import ItemResult
from imagepipe.lib.storage.paths import build_storage_path
from imagepipe.lib.validation import CandidateFile, UploadPolicy, policies_from_config, validate_upload

if TYPE_CHECKING:
    from imagepipe.config import Settings
    from imagepipe.lib.storage.manager import StorageManager

logger = logging.getLogger(__name__)

# Variant used for the row's own path/url when the inline layout is used
_REPRESENTATIVE_ORDER = ("original", "large", "medium", "thumbnail")
# Variant reported as the optimized size
_OPTIMIZED_VARIANT = "medium"


class UploadState(str, enum.Enum):
    RECEIVED = "received"
    VALIDATED = "validated"
    TRANSCODING = "transcoding"
    PARTIALLY_TRANSCODED = "partially_transcoded"
    FULLY_TRANSCODED = "fully_transcoded"
    PERSISTING_STORAGE = "persisting_storage"
    PERSISTING_METADATA = "persisting_metadata"
    COMPLETED = "completed"
    COMPLETED_WITH_WARNINGS = "completed_with_warnings"
    FAILED = "failed"


@dataclass
class UploadRequest:
    """One file bound for one entity."""

    entity_type: EntityType
    entity_id: str
    filename: str
    content_type: str
    data: bytes
    purpose: ImagePurpose = ImagePurpose.GALLERY
    declared_size: int | None = None
    alt_text: str | None = None
    caption: str | None = None
    is_primary: bool = False
    display_order: int = 0
    layout: str | None = None
    uploaded_by: str | None = None
    policy: str = "image"
    bucket: str | None = None
    upsert: bool | None = None


@dataclass
class UploadOutcome:
    request: UploadRequest
    state: UploadState = UploadState.RECEIVED
    history: list[UploadState] = field(default_factory=lambda: [UploadState.RECEIVED])
    assets: list[ImageAsset] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    error: ImagePipeError | None = None
    bucket: str | None = None
    stored_paths: list[str] = field(default_factory=list)
    orphaned_paths: list[str] = field(default_factory=list)
    original_size: int = 0
    optimized_size: int | None = None

    def advance(self, state: UploadState) -> None:
        self.state = state
        self.history.append(state)

    def fail(self, error: ImagePipeError) -> UploadOutcome:
        self.error = error
        self.advance(UploadState.FAILED)
        return self

    @property
    def ok(self) -> bool:
        return self.state in (UploadState.COMPLETED, UploadState.COMPLETED_WITH_WARNINGS)

    @property
    def asset(self) -> ImageAsset | None:
        return self.assets[0] if self.assets else None

    @property
    def optimization(self) -> dict[str, Any] | None:
        if not self.original_size or self.optimized_size is None:
            return None
        savings = (1 - self.optimized_size / self.original_size) * 100
        return {
            "originalSize": self.original_size,
            "optimizedSize": self.optimized_size,
            "savingsPercent": round(savings, 1),
        }

    def image_urls(self) -> dict[str, str | None]:
        """Variant name to URL for everything this upload stored."""
        urls: dict[str, str | None] = {}
        for asset in self.assets:
            metadata = asset.metadata_ or {}
            if metadata.get("layout") == LAYOUT_PER_VARIANT:
                urls[metadata.get("variant", "original")] = asset.public_url
            else:
                for name, info in (metadata.get("variants") or {}).items():
                    urls[name] = info.get("url")
        return urls


@dataclass
class DeleteOutcome:
    id: str
    lifecycle: AssetLifecycle
    storage_deleted: bool
    warnings: list[str] = field(default_factory=list)


def _passthrough(request: UploadRequest, content_type: str) -> TranscodeResult:
    """Wrap a non-raster upload (PDF, SVG, ...) as a single stored original."""
    extension = PurePath(request.filename).suffix.lstrip(".").lower() or "bin"
    variant = TranscodedVariant(
        name="original",
        data=request.data,
        content_type=content_type,
        extension=extension,
        width=0,
        height=0,
    )
    return TranscodeResult(variants={"original": variant})


def _representative(stored: dict[str, tuple[TranscodedVariant, str, str | None]]) -> str:
    for name in _REPRESENTATIVE_ORDER:
        if name in stored:
            return name
    return max(stored, key=lambda n: stored[n][0].width * stored[n][0].height)


class UploadOrchestrator:
    """Coordinates the validator, transcoder, storage manager and metadata store."""

    def __init__(
        self,
        storage: StorageManager,
        transcoder: VariantTranscoder,
        policies: dict[str, UploadPolicy],
        *,
        db_timeout: float = 15.0,
        default_layout: str = LAYOUT_INLINE,
        hook_registry: HookRegistry | None = None,
    ) -> None:
        self.storage = storage
        self.transcoder = transcoder
        self.policies = policies
        self.db_timeout = db_timeout
        self.default_layout = default_layout
        self.hooks = hook_registry or default_hooks

    @classmethod
    def from_settings(
        cls, settings: Settings, storage: StorageManager, hook_registry: HookRegistry | None = None
    ) -> UploadOrchestrator:
        return cls(
            storage,
            VariantTranscoder.from_config(settings.imaging),
            policies_from_config(settings.uploads),
            db_timeout=settings.db.call_timeout,
            default_layout=settings.imaging.default_layout,
            hook_registry=hook_registry,
        )

    # -- upload --

    def validate(self, request: UploadRequest) -> str:
        """Check *request* against its policy; returns the normalised content type."""
        policy = self.policies.get(request.policy)
        if policy is None:
            raise UploadValidationError(f"Unknown upload policy {request.policy!r}")
        layout = request.layout or self.default_layout
        if layout not in LAYOUTS:
            raise UploadValidationError(f"Unknown layout {layout!r}. Use one of: {', '.join(LAYOUTS)}")
        candidate = CandidateFile(
            filename=request.filename,
            content_type=request.content_type,
            data=request.data,
            declared_size=request.declared_size,
        )
        return validate_upload(candidate, policy)

    async def upload(self, db_session: AsyncSession, request: UploadRequest) -> UploadOutcome:
        """Run one upload to a terminal state.

        Raises:
            UploadValidationError: if the file is rejected. Nothing has been
                stored or recorded at that point.
        """
        outcome = UploadOutcome(request=request, original_size=len(request.data))

        content_type = self.validate(request)
        outcome.advance(UploadState.VALIDATED)
        await self.hooks.do_action(BEFORE_IMAGE_UPLOAD, request)

        request.data = await self.hooks.apply_filters(IMAGE_UPLOAD_DATA, request.data, request)

        outcome.advance(UploadState.TRANSCODING)
        with observability.span(
            "upload.transcode", entity_type=request.entity_type.value, size=len(request.data)
        ) as current:
            if detect_image_content_type(request.data) is None:
                transcoded = _passthrough(request, content_type)
            else:
                transcoded = await self.transcoder.transcode(request.data)
            observability.annotate(
                current, variants=sorted(transcoded.variants), failed=[e.variant for e in transcoded.errors]
            )

        for err in transcoded.errors:
            outcome.warnings.append(f"{err.variant}: {err.message}")
        if not transcoded.succeeded:
            logger.warning(
                "No variants produced for %s (%s/%s): %s",
                request.filename, request.entity_type.value, request.entity_id, outcome.warnings,
            )
            return outcome.fail(TranscodeError("; ".join(outcome.warnings) or "No variants produced"))
        outcome.advance(
            UploadState.FULLY_TRANSCODED if transcoded.complete else UploadState.PARTIALLY_TRANSCODED
        )

        outcome.advance(UploadState.PERSISTING_STORAGE)
        bucket = request.bucket or self.storage.default_bucket
        outcome.bucket = bucket
        with observability.span("upload.store", bucket=bucket, variants=len(transcoded.variants)):
            stored = await self._store_variants(request, transcoded, bucket, outcome)
        if not stored:
            return outcome.fail(StorageError("No variant could be stored"))

        outcome.advance(UploadState.PERSISTING_METADATA)
        layout = request.layout or self.default_layout
        group_id = secrets.token_hex(8)
        records = self._build_records(request, transcoded, stored, bucket, layout, group_id, outcome)
        try:
            with observability.span("upload.record", rows=len(records), layout=layout):
                outcome.assets = await bounded(
                    image_asset_service.create_image_assets(db_session, records),
                    self.db_timeout,
                    "asset insert",
                )
        except (SQLAlchemyError, MetadataError) as exc:
            logger.warning("Metadata write failed for %s: %s", request.filename, exc)
            await self._compensate(request, bucket, outcome)
            await db_session.rollback()
            return outcome.fail(MetadataError("Could not record uploaded image"))

        primary = outcome.asset
        if request.is_primary and primary is not None:
            try:
                await self.set_primary(db_session, request.entity_type, request.entity_id, primary.id)
            except (SQLAlchemyError, ImagePipeError) as exc:
                logger.warning("Could not make image %s primary: %s", primary.id, exc)
                outcome.warnings.append(f"primary: {exc}")

        medium = stored.get(_OPTIMIZED_VARIANT)
        outcome.optimized_size = (medium or stored[_representative(stored)])[0].size
        outcome.advance(
            UploadState.COMPLETED_WITH_WARNINGS if outcome.warnings else UploadState.COMPLETED
        )
        logger.info(
            "Stored %s for %s/%s as %d variant(s) in %s",
            request.filename, request.entity_type.value, request.entity_id, len(stored), bucket,
        )
        if not await self._notify(AFTER_IMAGE_UPLOAD, outcome, warnings=outcome.warnings):
            if outcome.state is UploadState.COMPLETED:
                outcome.advance(UploadState.COMPLETED_WITH_WARNINGS)
        return outcome

    async def _notify(self, hook_name: str, *args: Any, warnings: list[str] | None = None, **kwargs: Any) -> bool:
        """Run an action whose work is already committed; a failing listener cannot undo it."""
        try:
            await self.hooks.do_action(hook_name, *args, **kwargs)
        except Exception:
            logger.exception("Listener for %s failed", hook_name)
            if warnings is not None:
                warnings.append(f"{hook_name}: listener failed")
            return False
        return True

    async def _store_variants(
        self,
        request: UploadRequest,
        transcoded: TranscodeResult,
        bucket: str,
        outcome: UploadOutcome,
    ) -> dict[str, tuple[TranscodedVariant, str, str | None]]:
        timestamp_ms = int(time.time() * 1000)
        token = secrets.token_hex(4)
        single = len(transcoded.variants) == 1

        names = list(transcoded.variants)
        paths = []
        for name in names:
            path = build_storage_path(
                request.entity_type,
                request.entity_id,
                request.purpose,
                transcoded.variants[name].extension,
                None if single else name,
                folders=self.storage.entity_folders,
                timestamp_ms=timestamp_ms,
                token=token,
            )
            paths.append(await self.hooks.apply_filters(IMAGE_STORAGE_PATH, path, request, name))

        results = await asyncio.gather(*(
            self.storage.put(
                bucket,
                path,
                transcoded.variants[name].data,
                transcoded.variants[name].content_type,
                upsert=request.upsert,
            )
            for name, path in zip(names, paths)
        ))

        stored: dict[str, tuple[TranscodedVariant, str, str | None]] = {}
        for name, path, result in zip(names, paths, results):
            if result.ok:
                stored[name] = (transcoded.variants[name], path, result.url)
                outcome.stored_paths.append(path)
            else:
                logger.warning("Storing variant %s at %s/%s failed: %s", name, bucket, path, result.error)
                outcome.warnings.append(f"{name}: storage failed")
        return stored

    def _build_records(
        self,
        request: UploadRequest,
        transcoded: TranscodeResult,
        stored: dict[str, tuple[TranscodedVariant, str, str | None]],
        bucket: str,
        layout: str,
        group_id: str,
        outcome: UploadOutcome,
    ) -> list[dict[str, Any]]:
        source = SourceInfo(
            format=transcoded.source_format,
            width=transcoded.source_width,
            height=transcoded.source_height,
            size=len(request.data),
        )

        def record(variant: TranscodedVariant, path: str, url: str | None, metadata) -> dict[str, Any]:
            return {
                "filename": PurePath(path).name,
                "original_filename": request.filename,
                "file_size": variant.size,
                "mime_type": variant.content_type,
                "image_width": variant.width or None,
                "image_height": variant.height or None,
                "storage_path": path,
                "storage_bucket": bucket,
                "public_url": url,
                "entity_type": request.entity_type,
                "entity_id": request.entity_id,
                "image_purpose": request.purpose,
                "is_primary": False,
                "display_order": request.display_order,
                "processing_status": ProcessingStatus.COMPLETED,
                "alt_text": request.alt_text,
                "caption": request.caption,
                "uploaded_by": request.uploaded_by,
                "metadata": dump_metadata(metadata),
            }

        if layout == LAYOUT_PER_VARIANT:
            ordered = sorted(stored, key=lambda n: n != _representative(stored))
            return [
                record(
                    stored[name][0],
                    stored[name][1],
                    stored[name][2],
                    VariantRowMetadata(
                        group_id=group_id, variant=name, warnings=outcome.warnings, source=source
                    ),
                )
                for name in ordered
            ]

        rep = _representative(stored)
        metadata = InlineVariantsMetadata(
            group_id=group_id,
            warnings=outcome.warnings,
            source=source,
            variants={
                name: VariantInfo(
                    path=path,
                    url=url,
                    width=variant.width,
                    height=variant.height,
                    size=variant.size,
                    content_type=variant.content_type,
                )
                for name, (variant, path, url) in stored.items()
            },
        )
        variant, path, url = stored[rep]
        return [record(variant, path, url, metadata)]

    async def _compensate(self, request: UploadRequest, bucket: str, outcome: UploadOutcome) -> None:
        """Remove objects written by a request whose metadata write failed."""
        paths = list(outcome.stored_paths)
        result = await self.storage.delete(bucket, paths)
        if result.ok:
            logger.info("Removed %d object(s) after failed metadata write", len(paths))
            return

        outcome.orphaned_paths = paths
        logger.error(
            "Orphaned objects in bucket %s after failed metadata write for %s/%s: %s (%s)",
            bucket, request.entity_type.value, request.entity_id, paths, result.error,
        )
        observability.orphaned(bucket, paths, result.error)
        await self._notify(IMAGE_ORPHANED, bucket=bucket, paths=paths, request=request)

    # -- mutations outside the upload path --

    async def set_primary(
        self,
        db_session: AsyncSession,
        entity_type: EntityType | str,
        entity_id: str,
        image_id: UUID | str,
    ) -> ImageAsset:
        asset = await bounded(
            image_asset_service.set_primary(db_session, entity_type, entity_id, image_id),
            self.db_timeout,
            "set primary",
        )
        await self._notify(AFTER_PRIMARY_CHANGED, asset)
        return asset

    async def delete(
        self,
        db_session: AsyncSession,
        image_id: UUID | str,
        *,
        hard: bool = False,
        entity_type: EntityType | str | None = None,
        entity_id: str | None = None,
    ) -> DeleteOutcome:
        """Delete stored objects, then the row.

        Storage failures are logged and reported as warnings; the row is
        soft-deleted (or removed when *hard*) regardless.
        """
        asset = await bounded(
            image_asset_service.get_image_asset(db_session, image_id, include_deleted=hard),
            self.db_timeout,
        )
        if asset is None or (
            entity_type is not None
            and (asset.entity_type != EntityType(entity_type) or asset.entity_id != str(entity_id))
        ):
            raise NotFoundError(f"Image {image_id} not found")

        asset_id = asset.id
        bucket = asset.storage_bucket
        paths = asset_paths(asset.storage_path, asset.metadata_)
        warnings: list[str] = []

        present = await self.storage.exists(bucket, asset.storage_path)
        if present.ok and not present.value:
            logger.warning("Storage object for image %s already missing: %s/%s", asset_id, bucket, asset.storage_path)
            warnings.append("storage object already missing")

        removed = await self.storage.delete(bucket, paths)
        if not removed.ok:
            logger.warning("Storage delete failed for image %s (%s/%s): %s", asset_id, bucket, paths, removed.error)
            warnings.append("storage delete failed")

        if hard:
            lifecycle = await bounded(
                image_asset_service.hard_delete(db_session, asset_id), self.db_timeout, "hard delete"
            )
        else:
            await bounded(image_asset_service.soft_delete(db_session, asset_id), self.db_timeout, "soft delete")
            lifecycle = AssetLifecycle.SOFT_DELETED

        await self._notify(
            AFTER_IMAGE_DELETE,
            asset_id=asset_id,
            bucket=bucket,
            paths=paths,
            lifecycle=lifecycle,
            warnings=warnings,
        )
        return DeleteOutcome(
            id=str(asset_id), lifecycle=lifecycle, storage_deleted=removed.ok, warnings=warnings
        )

    async def _missing_objects(self, bucket: str, paths: list[str]) -> list[str]:
        checks = await asyncio.gather(*(self.storage.exists(bucket, path) for path in paths))
        missing = []
        for path, result in zip(paths, checks):
            if not result.ok:
                raise StorageError(f"Could not check {bucket}/{path}: {result.error}")
            if not result.value:
                missing.append(path)
        return missing

    async def restore(self, db_session: AsyncSession, image_id: UUID | str) -> ImageAsset:
        """Bring back a soft-deleted image whose stored objects survived.

        The delete flow normally removes the objects, so most deleted images
        cannot come back. If only some variants are gone the row is restored
        with ``processing_status=failed``.

        Raises:
            NotFoundError: if there is no soft-deleted image with this id.
            ConflictError: if the image's main object no longer exists.
        """
        asset = await bounded(
            image_asset_service.get_image_asset(db_session, image_id, include_deleted=True),
            self.db_timeout,
        )
        if asset is None or asset.deleted_at is None:
            raise NotFoundError(f"Deleted image {image_id} not found")

        missing = await self._missing_objects(
            asset.storage_bucket, asset_paths(asset.storage_path, asset.metadata_)
        )
        if asset.storage_path in missing:
            raise ConflictError(f"Image {image_id} cannot be restored: its stored objects were removed")

        restored = await bounded(image_asset_service.restore(db_session, asset.id), self.db_timeout, "restore")
        if missing:
            logger.warning(
                "Restored image %s without %d variant object(s): %s", asset.id, len(missing), missing
            )
            restored = await bounded(
                image_asset_service.set_processing_status(db_session, asset.id, ProcessingStatus.FAILED),
                self.db_timeout,
                "processing status",
            )
        return restored

    # -- administrative cleanup --

    async def purge_deleted(
        self, db_session: AsyncSession, older_than: timedelta, batch_size: int = 500
    ) -> list[ItemResult]:
        """Hard-delete rows soft-deleted before ``now - older_than`` and their objects.

        Works through the backlog in batches until nothing is left; rows that
        fail are reported once and skipped by later batches.
        """
        cutoff = datetime.now(timezone.utc) - older_than
        results: list[ItemResult] = []
        failed: set[UUID] = set()
        while True:
            assets = await bounded(
                image_asset_service.list_deleted_before(
                    db_session, cutoff, limit=batch_size, exclude_ids=failed
                ),
                self.db_timeout,
            )
            if not assets:
                return results
            for asset in assets:
                asset_id = asset.id
                try:
                    outcome = await self.delete(db_session, asset_id, hard=True)
                except (ImagePipeError, SQLAlchemyError) as exc:
                    await db_session.rollback()
                    failed.add(asset_id)
                    results.append(ItemResult.failure(asset_id, str(exc)))
                    continue
                results.append(ItemResult.success(asset_id, outcome.lifecycle.value))

    async def scan_orphans(self, db_session: AsyncSession, bucket: str | None = None, prefix: str = "") -> list[str]:
        """Objects under *prefix* that no active row refers to."""
        bucket = bucket or self.storage.default_bucket
        listed = await self.storage.list_keys(bucket, prefix)
        if not listed.ok:
            raise StorageError(f"Could not list {bucket}/{prefix}: {listed.error}")
        live = await bounded(image_asset_service.live_storage_paths(db_session, bucket), self.db_timeout)
        return sorted(key for key in listed.value if key not in live)

    async def delete_orphans(self, db_session: AsyncSession, bucket: str | None = None, prefix: str = "") -> list[str]:
        bucket = bucket or self.storage.default_bucket
        orphans = await self.scan_orphans(db_session, bucket, prefix)
        if not orphans:
            return []
        result = await self.storage.delete(bucket, orphans)
        if not result.ok:
            raise StorageError(f"Could not delete orphans in {bucket}: {result.error}")
        logger.info("Deleted %d orphaned object(s) from %s", len(orphans), bucket)
        return orphans
