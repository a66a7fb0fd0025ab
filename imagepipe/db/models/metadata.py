"""Known shapes of the ``image_assets.metadata`` JSON column.

Rows written by the upload pipeline carry one of two layouts, tagged by the
``layout`` key. Anything else is a caller-defined bag and is left as a dict.
Extra keys are preserved on the typed shapes too, so callers can extend a
pipeline-written row without losing data.
"""

from __future__ import annotations

import logging
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)

LAYOUT_INLINE = "inline"
LAYOUT_PER_VARIANT = "per_variant"
LAYOUTS = (LAYOUT_INLINE, LAYOUT_PER_VARIANT)


class VariantInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    path: str
    url: str | None = None
    width: int
    height: int
    size: int
    content_type: str = Field(alias="contentType")


class SourceInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    format: str | None = None
    width: int | None = None
    height: int | None = None
    size: int


class _PipelineMetadata(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    group_id: str = Field(alias="groupId")
    warnings: list[str] = []
    source: SourceInfo | None = None


class InlineVariantsMetadata(_PipelineMetadata):
    """One row per upload; every stored variant is listed here."""

    layout: Literal["inline"] = LAYOUT_INLINE
    variants: dict[str, VariantInfo] = {}


class VariantRowMetadata(_PipelineMetadata):
    """One row per stored variant; siblings share ``group_id``."""

    layout: Literal["per_variant"] = LAYOUT_PER_VARIANT
    variant: str


AssetMetadata = InlineVariantsMetadata | VariantRowMetadata | dict[str, Any]


def parse_asset_metadata(data: dict[str, Any] | None) -> AssetMetadata:
    """Return the typed shape for *data*, or the dict itself for unknown layouts."""
    data = data or {}
    layout = data.get("layout")
    model: type[_PipelineMetadata] | None = {
        LAYOUT_INLINE: InlineVariantsMetadata,
        LAYOUT_PER_VARIANT: VariantRowMetadata,
    }.get(layout)
    if model is None:
        return data
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        logger.warning("Metadata tagged %r does not match its shape: %s", layout, exc)
        return data


def dump_metadata(metadata: AssetMetadata) -> dict[str, Any]:
    if isinstance(metadata, BaseModel):
        return metadata.model_dump(mode="json", by_alias=True, exclude_none=True)
    return dict(metadata)


def merge_metadata(current: dict[str, Any] | None, changes: dict[str, Any]) -> dict[str, Any]:
    """Shallow-merge caller changes, keeping the pipeline's own keys intact."""
    merged = dict(current or {})
    protected = {"layout", "groupId", "variants", "variant"} if merged.get("layout") in LAYOUTS else set()
    for key, value in changes.items():
        if key in protected:
            continue
        merged[key] = value
    return merged


def asset_paths(storage_path: str, metadata: dict[str, Any] | None) -> list[str]:
    """Every object path a row refers to: its own plus any inlined variants."""
    paths = [storage_path]
    parsed = parse_asset_metadata(metadata)
    if isinstance(parsed, InlineVariantsMetadata):
        for info in parsed.variants.values():
            if info.path not in paths:
                paths.append(info.path)
    return paths
