"""Pre-processing checks for uploaded files.

Runs before any decoding so that unacceptable input never reaches the
transcoder. Files that pass here but fail to decode are a transcoding
failure, not a validation failure.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import PurePath
from typing import TYPE_CHECKING

from imagepipe.lib.exceptions import UploadValidationError
from imagepipe.lib.imaging import detect_image_content_type

if TYPE_CHECKING:
    from imagepipe.config import UploadConfig

_EXTENSIONS = {
    "image/jpeg": {"jpg", "jpeg", "jpe", "jfif"},
    "image/png": {"png"},
    "image/webp": {"webp"},
    "image/gif": {"gif"},
    "application/pdf": {"pdf"},
    "application/postscript": {"ps", "eps", "ai"},
    "image/svg+xml": {"svg"},
}

# Declared types whose magic bytes are checked against the payload
_RASTER_TYPES = {"image/jpeg", "image/png", "image/webp", "image/gif"}

_MIME_ALIASES = {"image/jpg": "image/jpeg", "image/pjpeg": "image/jpeg"}


@dataclass(frozen=True)
class UploadPolicy:
    name: str
    allowed_types: frozenset[str]
    max_bytes: int


@dataclass
class CandidateFile:
    """An uploaded file as declared by the caller."""

    filename: str
    content_type: str
    data: bytes
    declared_size: int | None = None

    @property
    def size(self) -> int:
        return len(self.data)


def normalize_content_type(content_type: str | None) -> str:
    value = (content_type or "").split(";", 1)[0].strip().lower()
    return _MIME_ALIASES.get(value, value)


def policies_from_config(config: UploadConfig) -> dict[str, UploadPolicy]:
    return {
        name: UploadPolicy(
            name=name,
            allowed_types=frozenset(normalize_content_type(t) for t in policy.allowed_types),
            max_bytes=policy.max_bytes,
        )
        for name, policy in config.policies.items()
    }


def _format_mb(num_bytes: int) -> str:
    return f"{num_bytes / (1024 * 1024):g}MB"


def validate_upload(candidate: CandidateFile, policy: UploadPolicy) -> str:
    """Accept or reject *candidate* under *policy*.

    Returns:
        The normalised content type of the accepted file.

    Raises:
        UploadValidationError: with a client-facing message on rejection.
    """
    content_type = normalize_content_type(candidate.content_type)

    if candidate.size == 0:
        raise UploadValidationError(f"File {candidate.filename!r} is empty")

    if content_type not in policy.allowed_types:
        allowed = ", ".join(sorted(policy.allowed_types))
        raise UploadValidationError(
            f"File type {content_type or 'unknown'!r} is not allowed. Allowed types: {allowed}"
        )

    size = max(candidate.size, candidate.declared_size or 0)
    if size > policy.max_bytes:
        raise UploadValidationError(
            f"File {candidate.filename!r} is {size} bytes, above the {_format_mb(policy.max_bytes)} limit"
        )

    suffix = PurePath(candidate.filename or "").suffix.lower().lstrip(".")
    expected = _EXTENSIONS.get(content_type)
    if expected is not None and suffix not in expected:
        raise UploadValidationError(
            f"File extension {('.' + suffix) if suffix else '(none)'} does not match type {content_type}"
        )

    if content_type in _RASTER_TYPES:
        detected = detect_image_content_type(candidate.data)
        if detected != content_type:
            raise UploadValidationError(
                f"File content does not match declared type {content_type}"
            )

    return content_type
