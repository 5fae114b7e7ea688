"""
Provider-agnostic description of one stored object.
"""

from __future__ import annotations

import posixpath
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

IMAGE_EXTENSIONS = frozenset({"jpg", "jpeg", "png", "gif", "webp", "svg", "bmp", "ico"})

_SIZE_UNITS = ("B", "KB", "MB", "GB", "TB")


class ObjectMetadata(BaseModel):
    """
    Immutable metadata for one stored object.

    Produced by provider adapters while listing; the engine never mutates it.

    Attributes:
        path: Provider-relative key (forward slashes, no leading slash).
        size: Size in bytes.
        last_modified: Last modification time (timezone-aware).
        etag: Provider entity tag, if any.
        content_type: MIME type, if known.
        cache_control: Cache-Control header value, if any.
        content_encoding: Content-Encoding header value, if any.
        storage_class: Provider storage class, if any.
        acl: Canned ACL name, if any.
        metadata: Custom key/value metadata.

    Example:
        >>> obj = ObjectMetadata(path="images/cat.JPG", size=2048,
        ...                      last_modified=datetime.now(UTC))
        >>> obj.extension, obj.filename, obj.formatted_size
        ('jpg', 'cat.JPG', '2.00 KB')
    """

    model_config = ConfigDict(frozen=True)

    path: str = Field(..., min_length=1, description="Provider-relative object key")
    size: int = Field(..., ge=0, description="Size in bytes")
    last_modified: datetime = Field(..., description="Last modification time")
    etag: str | None = None
    content_type: str | None = None
    cache_control: str | None = None
    content_encoding: str | None = None
    storage_class: str | None = None
    acl: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)

    @property
    def filename(self) -> str:
        return posixpath.basename(self.path)

    @property
    def directory(self) -> str:
        return posixpath.dirname(self.path)

    @property
    def extension(self) -> str | None:
        _, ext = posixpath.splitext(self.filename)
        return ext[1:].lower() if ext else None

    @property
    def formatted_size(self) -> str:
        """Human-readable size with two decimals, e.g. ``1.50 MB``."""
        size = float(self.size)
        unit = 0
        while size >= 1024 and unit < len(_SIZE_UNITS) - 1:
            size /= 1024
            unit += 1
        return f"{size:.2f} {_SIZE_UNITS[unit]}"

    def is_image(self) -> bool:
        """True for image content types, falling back to the file extension."""
        if self.content_type:
            return self.content_type.startswith("image/")
        return self.extension in IMAGE_EXTENSIONS

    def to_dict(self) -> dict[str, Any]:
        data = self.model_dump(mode="json")
        data["extension"] = self.extension
        data["is_image"] = self.is_image()
        return data


__all__ = ["ObjectMetadata", "IMAGE_EXTENSIONS"]
