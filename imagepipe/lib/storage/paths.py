"""Object path layout.

Paths are human-auditable::

    {entity_folder}/{entity_id}/{purpose}/{timestamp}-{token}[-{variant}].{ext}

so a bucket listing groups an entity's objects by purpose, and uploads that
land in the same millisecond are still distinguished by the random token.
"""

from __future__ import annotations

import hashlib
import re
import secrets
import time
from collections.abc import Mapping

_UNSAFE_SEGMENT = re.compile(r"[^A-Za-z0-9._-]+")
_UNSAFE_FILENAME = re.compile(r'[^A-Za-z0-9._ ()-]+')
_ID_DIGEST_LENGTH = 12


def _value(item) -> str:
    return str(getattr(item, "value", item))


def safe_segment(value: str) -> str:
    """Reduce *value* to a single path segment that cannot escape its parent."""
    cleaned = _UNSAFE_SEGMENT.sub("-", str(value)).strip(".-")
    if not cleaned:
        raise ValueError(f"{value!r} cannot be used as a path segment")
    return cleaned


def entity_segment(entity_id: str) -> str:
    """Path segment for an entity id.

    Ids that are already safe are used as they are. Anything else keeps its
    safe characters and gains a short digest of the full id, so ids that
    clean to the same text (or to nothing) still get their own folder.
    """
    value = str(entity_id)
    if not value:
        raise ValueError("Entity id must not be empty")
    cleaned = _UNSAFE_SEGMENT.sub("-", value).strip(".-")
    if cleaned == value:
        return cleaned
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()[:_ID_DIGEST_LENGTH]
    return f"{cleaned}-{digest}" if cleaned else digest


def safe_download_name(filename: str) -> str:
    """Strip characters that would break a Content-Disposition header."""
    name = _UNSAFE_FILENAME.sub("_", filename.rsplit("/", 1)[-1]).strip()
    return name or "download"


def entity_folder(entity_type, overrides: Mapping[str, str] | None = None) -> str:
    """Top-level folder for an entity type, with optional per-type overrides."""
    key = _value(entity_type)
    if overrides and key in overrides:
        return safe_segment(overrides[key])
    return safe_segment(key)


def generate_filename(
    extension: str,
    variant: str | None = None,
    *,
    timestamp_ms: int | None = None,
    token: str | None = None,
) -> str:
    stamp = timestamp_ms if timestamp_ms is not None else int(time.time() * 1000)
    token = token or secrets.token_hex(4)
    name = f"{stamp}-{token}"
    if variant:
        name = f"{name}-{safe_segment(variant)}"
    return f"{name}.{extension.lstrip('.').lower()}"


def build_storage_path(
    entity_type,
    entity_id: str,
    purpose,
    extension: str,
    variant: str | None = None,
    *,
    folders: Mapping[str, str] | None = None,
    timestamp_ms: int | None = None,
    token: str | None = None,
) -> str:
    """Build the object path for one stored file."""
    return "/".join(
        (
            entity_folder(entity_type, folders),
            entity_segment(entity_id),
            safe_segment(_value(purpose)),
            generate_filename(extension, variant, timestamp_ms=timestamp_ms, token=token),
        )
    )

