"""Variant generation using Pillow.

One decoded source image is rendered into a fixed set of named variants.
Each variant is produced independently: a failure or timeout for one name is
recorded as a :class:`VariantError` and the remaining variants still render.
"""

from __future__ import annotations

import asyncio
import io
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from PIL import Image, ImageOps, UnidentifiedImageError

from imagepipe.lib.exceptions import TranscodeError

if TYPE_CHECKING:
    from imagepipe.config import ImagingConfig

logger = logging.getLogger(__name__)

SOURCE_ERROR_KEY = "source"

_FORMAT_TO_CONTENT_TYPE = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "WEBP": "image/webp",
    "GIF": "image/gif",
}

_FORMAT_TO_EXTENSION = {
    "JPEG": "jpg",
    "PNG": "png",
    "WEBP": "webp",
    "GIF": "gif",
}

FIT_COVER = "cover"
FIT_INSIDE = "inside"
FIT_NONE = "none"


def detect_image_content_type(data: bytes) -> str | None:
    """Detect image content type from magic bytes.

    Returns ``None`` if the data does not match a known image signature.
    """
    if data[:3] == b"\xff\xd8\xff":
        return "image/jpeg"
    if data[:8] == b"\x89PNG\r\n\x1a\n":
        return "image/png"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    if data[:6] in (b"GIF87a", b"GIF89a"):
        return "image/gif"
    return None


def content_type_for_format(fmt: str) -> str:
    return _FORMAT_TO_CONTENT_TYPE.get(fmt.upper(), "application/octet-stream")


def extension_for_format(fmt: str) -> str:
    return _FORMAT_TO_EXTENSION.get(fmt.upper(), fmt.lower())


@dataclass(frozen=True)
class VariantSpec:
    """Target geometry and encoding for one named variant."""

    name: str
    width: int | None = None
    height: int | None = None
    fit: str = FIT_INSIDE
    quality: int = 85
    preserve_format: bool = False


DEFAULT_VARIANTS: tuple[VariantSpec, ...] = (
    VariantSpec("thumbnail", 150, 150, FIT_COVER, 80),
    VariantSpec("medium", 400, 400, FIT_INSIDE, 85),
    VariantSpec("large", 800, 800, FIT_INSIDE, 90),
    VariantSpec("original", None, None, FIT_NONE, 95),
)


@dataclass
class TranscodedVariant:
    name: str
    data: bytes
    content_type: str
    extension: str
    width: int
    height: int

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class VariantError:
    variant: str
    message: str


@dataclass
class TranscodeResult:
    """The variant set for one upload plus whatever could not be rendered."""

    variants: dict[str, TranscodedVariant] = field(default_factory=dict)
    errors: list[VariantError] = field(default_factory=list)
    source_format: str | None = None
    source_width: int | None = None
    source_height: int | None = None

    @property
    def succeeded(self) -> bool:
        return bool(self.variants)

    @property
    def complete(self) -> bool:
        return bool(self.variants) and not self.errors


def open_source(data: bytes, max_pixels: int | None = None) -> Image.Image:
    """Decode *data* and apply its EXIF orientation.

    Raises:
        TranscodeError: if the bytes are not a decodable image or exceed
            *max_pixels*.
    """
    try:
        img = Image.open(io.BytesIO(data))
        if max_pixels and img.width * img.height > max_pixels:
            raise TranscodeError(
                f"Image is {img.width}x{img.height}, above the {max_pixels} pixel limit"
            )
        fmt = img.format
        img.load()
        img = ImageOps.exif_transpose(img)
    except TranscodeError:
        raise
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
        raise TranscodeError(f"Could not decode image: {exc}") from exc

    # exif_transpose returns a copy without the format attribute
    img.format = fmt
    return img


def _fit_box(spec: VariantSpec, img: Image.Image) -> tuple[int, int]:
    return (spec.width or img.width, spec.height or img.height)


def _prepare_mode(img: Image.Image, fmt: str) -> Image.Image:
    has_alpha = img.mode in ("RGBA", "LA", "PA") or (
        img.mode == "P" and "transparency" in img.info
    )
    if fmt == "JPEG":
        return img.convert("RGB") if img.mode != "RGB" else img
    if img.mode not in ("RGB", "RGBA"):
        return img.convert("RGBA" if has_alpha else "RGB")
    return img


def render_variant(source: Image.Image, spec: VariantSpec, output_format: str = "WEBP") -> TranscodedVariant:
    """Render one variant synchronously.

    ``cover`` crops from the centre to exactly the target box. ``inside``
    shrinks to fit the box preserving aspect ratio and never enlarges.
    ``none`` only re-encodes.
    """
    fmt = (source.format or output_format) if spec.preserve_format else output_format
    fmt = fmt.upper()
    img = source.copy()

    if spec.fit == FIT_COVER:
        img = ImageOps.fit(img, _fit_box(spec, img), Image.LANCZOS, centering=(0.5, 0.5))
    elif spec.fit == FIT_INSIDE:
        box = _fit_box(spec, img)
        if img.width > box[0] or img.height > box[1]:
            img.thumbnail(box, Image.LANCZOS)
    elif spec.fit != FIT_NONE:
        raise ValueError(f"Unknown fit mode {spec.fit!r}")

    img = _prepare_mode(img, fmt)

    save_kwargs: dict = {}
    if fmt == "JPEG":
        save_kwargs.update(quality=spec.quality, optimize=True, progressive=True)
    elif fmt == "WEBP":
        save_kwargs.update(quality=spec.quality, method=6)
    elif fmt == "PNG":
        save_kwargs["optimize"] = True

    buf = io.BytesIO()
    img.save(buf, format=fmt, **save_kwargs)
    return TranscodedVariant(
        name=spec.name,
        data=buf.getvalue(),
        content_type=content_type_for_format(fmt),
        extension=extension_for_format(fmt),
        width=int(img.width),
        height=int(img.height),
    )


class VariantTranscoder:
    """Produce the configured variant set for an uploaded image."""

    def __init__(
        self,
        specs: tuple[VariantSpec, ...] | list[VariantSpec] = DEFAULT_VARIANTS,
        output_format: str = "WEBP",
        variant_timeout: float = 20.0,
        max_pixels: int | None = 50_000_000,
    ) -> None:
        self.specs = tuple(specs)
        self.output_format = output_format.upper()
        self.variant_timeout = variant_timeout
        self.max_pixels = max_pixels

    @classmethod
    def from_config(cls, config: ImagingConfig) -> VariantTranscoder:
        specs = [
            VariantSpec(
                name=name,
                width=v.width,
                height=v.height,
                fit=v.fit,
                quality=v.quality,
                preserve_format=v.preserve_format,
            )
            for name, v in config.variants.items()
        ]
        return cls(
            specs,
            output_format=config.output_format,
            variant_timeout=config.variant_timeout,
            max_pixels=config.max_pixels,
        )

    @property
    def variant_names(self) -> list[str]:
        return [spec.name for spec in self.specs]

    async def transcode(self, data: bytes) -> TranscodeResult:
        """Render every variant, collecting failures instead of raising."""
        result = TranscodeResult()
        try:
            source = await asyncio.to_thread(open_source, data, self.max_pixels)
        except TranscodeError as exc:
            result.errors.append(VariantError(SOURCE_ERROR_KEY, str(exc)))
            return result

        result.source_format = source.format
        result.source_width, result.source_height = source.size

        for spec in self.specs:
            try:
                variant = await asyncio.wait_for(
                    asyncio.to_thread(render_variant, source, spec, self.output_format),
                    timeout=self.variant_timeout,
                )
            except TimeoutError:
                logger.warning("Variant %s timed out after %ss", spec.name, self.variant_timeout)
                result.errors.append(
                    VariantError(spec.name, f"timed out after {self.variant_timeout}s")
                )
                continue
            except Exception as exc:
                logger.warning("Variant %s failed: %s", spec.name, exc, exc_info=True)
                result.errors.append(VariantError(spec.name, str(exc) or type(exc).__name__))
                continue
            result.variants[spec.name] = variant

        return result
