"""
Static capability descriptors for storage providers.

The batch runner consults these to size batches and throttle; nothing here
performs I/O.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

KIB = 1024
MIB = 1024 * KIB
GIB = 1024 * MIB
TIB = 1024 * GIB


class ProviderType(Enum):
    """
    Closed set of supported provider variants.

    Selection is always by this tag; there is no runtime discovery of
    provider classes.
    """

    LOCAL = "local"
    """Local (or mounted) filesystem."""

    MEMORY = "memory"
    """In-process storage for tests and dry-run staging."""

    S3 = "s3"
    """Amazon S3."""

    DO_SPACES = "do_spaces"
    """DigitalOcean Spaces (S3 compatible)."""

    WASABI = "wasabi"
    """Wasabi (S3 compatible)."""

    BACKBLAZE_B2 = "backblaze_b2"
    """Backblaze B2 (S3 compatible API)."""

    CLOUDFLARE_R2 = "cloudflare_r2"
    """Cloudflare R2 (S3 compatible)."""

    GCS = "gcs"
    """Google Cloud Storage."""

    AZURE_BLOB = "azure_blob"
    """Azure Blob Storage."""

    @property
    def is_s3_compatible(self) -> bool:
        return self in (
            ProviderType.S3,
            ProviderType.DO_SPACES,
            ProviderType.WASABI,
            ProviderType.BACKBLAZE_B2,
            ProviderType.CLOUDFLARE_R2,
        )


@dataclass(frozen=True)
class ProviderCapabilities:
    """
    Immutable facts about a provider.

    Attributes:
        supports_*: Feature flags.
        max_file_size: Largest object in bytes (None = unlimited).
        max_part_size: Largest multipart part in bytes.
        min_part_size: Smallest multipart part in bytes.
        optimal_batch_size: Objects per batch the provider handles best.
        max_requests_per_second: Provider rate limit, if any.
        max_concurrent_connections: Connection limit, if any.
        supported_metadata_keys: Metadata headers preserved on write.
        available_regions: Regions the provider can serve from.

    Example:
        >>> caps = capabilities_for(ProviderType.LOCAL)
        >>> caps.optimal_batch_size, caps.supports("acls")
        (500, False)
    """

    supports_versioning: bool = False
    supports_acls: bool = False
    supports_server_side_copy: bool = False
    supports_multipart_upload: bool = False
    supports_metadata: bool = True
    supports_public_urls: bool = True
    supports_streaming: bool = True
    supports_multi_region: bool = False
    supports_presigned_urls: bool = False

    max_file_size: int | None = None
    max_part_size: int = 5 * GIB
    min_part_size: int = 5 * MIB
    optimal_batch_size: int = 100
    max_requests_per_second: int | None = None
    max_concurrent_connections: int | None = None

    supported_metadata_keys: tuple[str, ...] = ("Content-Type", "Cache-Control")
    available_regions: tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        """Validate limits."""
        if self.optimal_batch_size < 1:
            raise ValueError(f"optimal_batch_size must be >= 1, got {self.optimal_batch_size}")
        if self.min_part_size > self.max_part_size:
            raise ValueError(
                f"min_part_size ({self.min_part_size}) must be <= "
                f"max_part_size ({self.max_part_size})"
            )

    def supports(self, name: str) -> bool:
        """
        Check a capability by short name.

        ``"versioning"`` and ``"supports_versioning"`` are equivalent.
        Boolean flags are returned as is, sequences are supported when
        non-empty, numeric limits when set and positive.

        Args:
            name: Capability name.

        Returns:
            True if the provider has the capability; False for unknown names.
        """
        attr = name if name.startswith("supports_") else f"supports_{name}"
        if not hasattr(self, attr):
            attr = name
        value = getattr(self, attr, None)
        if isinstance(value, bool):
            return value
        if isinstance(value, tuple | list):
            return len(value) > 0
        if isinstance(value, int | float):
            return value > 0
        return False

    def allows_size(self, size: int) -> bool:
        return self.max_file_size is None or size <= self.max_file_size

    def to_dict(self) -> dict[str, Any]:
        """Grouped representation (features, limits, metadata, regions)."""
        return {
            "features": {
                "versioning": self.supports_versioning,
                "acls": self.supports_acls,
                "server_side_copy": self.supports_server_side_copy,
                "multipart_upload": self.supports_multipart_upload,
                "metadata": self.supports_metadata,
                "public_urls": self.supports_public_urls,
                "streaming": self.supports_streaming,
                "multi_region": self.supports_multi_region,
                "presigned_urls": self.supports_presigned_urls,
            },
            "limits": {
                "max_file_size": self.max_file_size,
                "max_part_size": self.max_part_size,
                "min_part_size": self.min_part_size,
                "optimal_batch_size": self.optimal_batch_size,
                "max_requests_per_second": self.max_requests_per_second,
                "max_concurrent_connections": self.max_concurrent_connections,
            },
            "metadata": {
                "supported_keys": list(self.supported_metadata_keys),
            },
            "regions": list(self.available_regions),
        }


_S3_CAPABILITIES = ProviderCapabilities(
    supports_versioning=True,
    supports_acls=True,
    supports_server_side_copy=True,
    supports_multipart_upload=True,
    supports_multi_region=True,
    supports_presigned_urls=True,
    max_file_size=5 * TIB,
    optimal_batch_size=100,
    supported_metadata_keys=(
        "Content-Type",
        "Cache-Control",
        "Content-Disposition",
        "Content-Encoding",
        "Content-Language",
    ),
    available_regions=(
        "us-east-1", "us-east-2", "us-west-1", "us-west-2",
        "eu-west-1", "eu-west-2", "eu-west-3", "eu-central-1", "eu-north-1",
        "ap-south-1", "ap-southeast-1", "ap-southeast-2", "ap-northeast-1", "ap-northeast-2",
        "sa-east-1", "ca-central-1",
    ),
)

_BUILTIN_CAPABILITIES: dict[ProviderType, ProviderCapabilities] = {
    ProviderType.S3: _S3_CAPABILITIES,
    ProviderType.DO_SPACES: replace(
        _S3_CAPABILITIES,
        supports_versioning=False,
        available_regions=("nyc3", "ams3", "sgp1", "sfo3", "fra1", "syd1"),
    ),
    ProviderType.WASABI: replace(
        _S3_CAPABILITIES,
        supports_versioning=False,
        available_regions=(
            "us-east-1", "us-east-2", "us-central-1", "us-west-1",
            "eu-central-1", "eu-west-1", "ap-northeast-1", "ap-southeast-1",
        ),
    ),
    ProviderType.BACKBLAZE_B2: replace(
        _S3_CAPABILITIES,
        supports_versioning=False,
        supports_acls=False,
        max_file_size=10 * TIB,
        available_regions=("us-west-001", "us-west-002", "us-west-004", "eu-central-003"),
    ),
    ProviderType.CLOUDFLARE_R2: replace(
        _S3_CAPABILITIES,
        supports_versioning=False,
        supports_acls=False,
        available_regions=("auto",),
    ),
    ProviderType.GCS: replace(
        _S3_CAPABILITIES,
        min_part_size=256 * KIB,
        supported_metadata_keys=(
            "Content-Type",
            "Cache-Control",
            "Content-Disposition",
            "Content-Encoding",
            "Content-Language",
        ),
        available_regions=("us", "eu", "asia", "us-central1", "us-east1", "europe-west1"),
    ),
    ProviderType.AZURE_BLOB: replace(
        _S3_CAPABILITIES,
        max_file_size=int(190.7 * GIB),
        max_part_size=100 * MIB,
        min_part_size=64 * KIB,
        available_regions=("eastus", "westus", "westeurope", "northeurope", "southeastasia"),
    ),
    ProviderType.LOCAL: ProviderCapabilities(
        supports_server_side_copy=True,
        supports_metadata=False,
        supports_public_urls=False,
        optimal_batch_size=500,
        supported_metadata_keys=("Content-Type",),
    ),
    ProviderType.MEMORY: ProviderCapabilities(
        supports_server_side_copy=True,
        supports_public_urls=False,
        optimal_batch_size=100,
    ),
}


def capabilities_for(provider_type: ProviderType) -> ProviderCapabilities:
    """
    Built-in capability descriptor for a provider type.

    Args:
        provider_type: Provider variant.

    Returns:
        The provider's ProviderCapabilities.
    """
    return _BUILTIN_CAPABILITIES[provider_type]


__all__ = [
    "KIB",
    "MIB",
    "GIB",
    "TIB",
    "ProviderType",
    "ProviderCapabilities",
    "capabilities_for",
]
