"""
Provider-agnostic object storage abstractions.

- ObjectMetadata: immutable description of one stored object
- ObjectIterator: lazy, paged, resumable listing
- ProviderCapabilities / ProviderType: static provider facts
- StorageProvider and its built-in implementations
"""

from objmigrate.storage.capabilities import (
    GIB,
    KIB,
    MIB,
    TIB,
    ProviderCapabilities,
    ProviderType,
    capabilities_for,
)
from objmigrate.storage.iterator import (
    CountableLister,
    ObjectIterator,
    ObjectPage,
    PageLister,
)
from objmigrate.storage.metadata import IMAGE_EXTENSIONS, ObjectMetadata
from objmigrate.storage.providers import (
    DEFAULT_CONTENT_TYPE,
    ConnectionCheck,
    InMemoryStorageProvider,
    LocalFilesystemProvider,
    ProviderFactory,
    ProviderRegistry,
    ProviderSettings,
    StorageProvider,
    WriteOptions,
    create_provider,
    guess_content_type,
)

__all__ = [
    # Metadata
    "ObjectMetadata",
    "IMAGE_EXTENSIONS",
    # Iterator
    "ObjectIterator",
    "ObjectPage",
    "PageLister",
    "CountableLister",
    # Capabilities
    "ProviderCapabilities",
    "ProviderType",
    "capabilities_for",
    "KIB",
    "MIB",
    "GIB",
    "TIB",
    # Providers
    "StorageProvider",
    "InMemoryStorageProvider",
    "LocalFilesystemProvider",
    "WriteOptions",
    "ConnectionCheck",
    "ProviderSettings",
    "ProviderFactory",
    "ProviderRegistry",
    "create_provider",
    "guess_content_type",
    "DEFAULT_CONTENT_TYPE",
]
