"""ImageAsset model: one stored image bound to a business entity."""

from __future__ import annotations

import enum
from datetime import datetime

from advanced_alchemy.types import DateTimeUTC, JsonB
from sqlalchemy import Boolean, Enum, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from imagepipe.db.base import Base


class EntityType(str, enum.Enum):
    CATALOG_ITEM = "catalog_item"
    ORDER = "order"
    DESIGN_TASK = "design_task"
    CUSTOMER = "customer"
    MANUFACTURER = "manufacturer"
    USER_PROFILE = "user_profile"
    ORGANIZATION = "organization"


class ImagePurpose(str, enum.Enum):
    GALLERY = "gallery"
    PROFILE = "profile"
    PRODUCTION = "production"
    DESIGN = "design"
    LOGO = "logo"
    THUMBNAIL = "thumbnail"
    HERO = "hero"
    ATTACHMENT = "attachment"


class ProcessingStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class AssetLifecycle(str, enum.Enum):
    """Lifecycle of an asset as reported to callers.

    ``hard_deleted`` is never stored; it is returned by operations that
    physically removed the row.
    """

    ACTIVE = "active"
    SOFT_DELETED = "soft_deleted"
    HARD_DELETED = "hard_deleted"


def _enum_column(enum_cls: type[enum.Enum]) -> Enum:
    return Enum(
        enum_cls,
        native_enum=False,
        length=32,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


class ImageAsset(Base):
    """A stored image and its ordering, primary and lifecycle fields."""

    __tablename__ = "image_assets"
    __table_args__ = (
        Index("ix_image_assets_entity", "entity_type", "entity_id"),
        UniqueConstraint("storage_bucket", "storage_path", name="uq_image_assets_bucket_path"),
    )

    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    original_filename: Mapped[str] = mapped_column(String(255), nullable=False)
    file_size: Mapped[int] = mapped_column(Integer, nullable=False)
    mime_type: Mapped[str] = mapped_column(String(128), nullable=False)
    image_width: Mapped[int | None] = mapped_column(Integer, nullable=True)
    image_height: Mapped[int | None] = mapped_column(Integer, nullable=True)

    storage_path: Mapped[str] = mapped_column(String(1024), nullable=False)
    storage_bucket: Mapped[str] = mapped_column(String(64), nullable=False)
    public_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)

    entity_type: Mapped[EntityType] = mapped_column(_enum_column(EntityType), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(255), nullable=False)
    image_purpose: Mapped[ImagePurpose] = mapped_column(
        _enum_column(ImagePurpose), nullable=False, default=ImagePurpose.GALLERY, index=True
    )

    is_primary: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    display_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processing_status: Mapped[ProcessingStatus] = mapped_column(
        _enum_column(ProcessingStatus), nullable=False, default=ProcessingStatus.PENDING
    )

    alt_text: Mapped[str | None] = mapped_column(String(500), nullable=True)
    caption: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    uploaded_by: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)

    # "metadata" is reserved on declarative classes
    metadata_: Mapped[dict] = mapped_column("metadata", JsonB, nullable=False, default=dict)

    deleted_at: Mapped[datetime | None] = mapped_column(DateTimeUTC(timezone=True), nullable=True, index=True)

    @property
    def lifecycle(self) -> AssetLifecycle:
        return AssetLifecycle.ACTIVE if self.deleted_at is None else AssetLifecycle.SOFT_DELETED
