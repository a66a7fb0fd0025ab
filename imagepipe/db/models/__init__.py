from imagepipe.db.models.image_asset import (
    AssetLifecycle,
    EntityType,
    ImageAsset,
    ImagePurpose,
    ProcessingStatus,
)

__all__ = ["AssetLifecycle", "EntityType", "ImageAsset", "ImagePurpose", "ProcessingStatus"]
