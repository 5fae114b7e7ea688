"""
Storage provider interface and built-in implementations.

The engine talks to every provider through the StorageProvider protocol:
paged listing, whole-object read/write, delete, existence and metadata
lookups, and a static capability descriptor. Object-store SDKs plug in as
additional implementations registered on a ProviderRegistry; the engine
never inspects provider classes at runtime.

Built-in implementations:
    - InMemoryStorageProvider: dict-backed, for tests and staging
    - LocalFilesystemProvider: a directory tree on local or mounted disk
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import mimetypes
import os
import posixpath
import tempfile
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field

from objmigrate.exceptions import ProviderIOError, ProviderNotAvailableError
from objmigrate.observability import ATTR_OBJECT_PATH, Tracer, create_tracer
from objmigrate.storage.capabilities import (
    ProviderCapabilities,
    ProviderType,
    capabilities_for,
)
from objmigrate.storage.iterator import ObjectIterator, ObjectPage
from objmigrate.storage.metadata import ObjectMetadata

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "application/octet-stream"


def guess_content_type(path: str) -> str:
    content_type, _ = mimetypes.guess_type(path)
    return content_type or DEFAULT_CONTENT_TYPE


@dataclass(frozen=True)
class WriteOptions:
    """
    Options for writing an object.

    Attributes:
        content_type: MIME type to store (guessed from the key when None).
        cache_control: Cache-Control value to store.
        metadata: Custom metadata to store.
    """

    content_type: str | None = None
    cache_control: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_metadata(cls, obj: ObjectMetadata) -> WriteOptions:
        """Carry a source object's headers over to its copy."""
        return cls(
            content_type=obj.content_type,
            cache_control=obj.cache_control,
            metadata=dict(obj.metadata),
        )


@dataclass(frozen=True)
class ConnectionCheck:
    """Result of a provider connectivity probe."""

    success: bool
    message: str
    latency_ms: float = 0.0


@runtime_checkable
class StorageProvider(Protocol):
    """
    Protocol for storage providers.

    ``list_page`` must return keys in ascending order strictly after
    ``start_after``; ObjectIterator relies on that for resumable cursors.
    Failures are reported as ProviderIOError with ``critical`` set for
    permission/authentication problems and ``retryable`` cleared for
    permanent ones (e.g. missing objects).
    """

    @property
    def provider_type(self) -> ProviderType: ...

    @property
    def name(self) -> str: ...

    def list(
        self,
        prefix: str = "",
        *,
        page_size: int = 1000,
        start_after: str | None = None,
    ) -> ObjectIterator: ...

    async def list_page(
        self,
        prefix: str,
        *,
        start_after: str | None,
        max_keys: int,
    ) -> ObjectPage: ...

    async def read(self, path: str) -> bytes: ...

    async def write(self, path: str, data: bytes, options: WriteOptions | None = None) -> None: ...

    async def delete(self, path: str) -> None: ...

    async def exists(self, path: str) -> bool: ...

    async def metadata(self, path: str) -> ObjectMetadata | None: ...

    def capabilities(self) -> ProviderCapabilities: ...

    async def test_connection(self) -> ConnectionCheck: ...


class InMemoryStorageProvider:
    """
    Dict-backed storage provider.

    Keeps operation counters (``reads``, ``writes``, ``deletes``) so tests
    can assert that a dry run touched nothing.

    Example:
        >>> provider = InMemoryStorageProvider("source")
        >>> await provider.write("a/b.txt", b"hello")
        >>> [obj.path async for obj in provider.list("a/")]
        ['a/b.txt']
    """

    def __init__(
        self,
        name: str = "memory",
        *,
        capabilities: ProviderCapabilities | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._name = name
        self._capabilities = capabilities or capabilities_for(ProviderType.MEMORY)
        self._objects: dict[str, tuple[bytes, ObjectMetadata]] = {}
        self._lock = asyncio.Lock()
        self.reads = 0
        self.writes = 0
        self.deletes = 0

    @property
    def provider_type(self) -> ProviderType:
        return ProviderType.MEMORY

    @property
    def name(self) -> str:
        return self._name

    def list(
        self,
        prefix: str = "",
        *,
        page_size: int = 1000,
        start_after: str | None = None,
    ) -> ObjectIterator:
        return ObjectIterator(
            self,
            prefix,
            page_size=page_size,
            start_after=start_after,
            tracer=self._tracer,
        )

    def _matching_keys(self, prefix: str, start_after: str | None) -> list[str]:
        return sorted(
            key
            for key in self._objects
            if key.startswith(prefix) and (start_after is None or key > start_after)
        )

    async def list_page(
        self,
        prefix: str,
        *,
        start_after: str | None,
        max_keys: int,
    ) -> ObjectPage:
        async with self._lock:
            keys = self._matching_keys(prefix, start_after)
            page_keys = keys[:max_keys]
            return ObjectPage(
                objects=[self._objects[key][1] for key in page_keys],
                is_truncated=len(keys) > max_keys,
            )

    async def count_objects(self, prefix: str, *, start_after: str | None = None) -> int:
        async with self._lock:
            return len(self._matching_keys(prefix, start_after))

    async def read(self, path: str) -> bytes:
        with self._tracer.span("objmigrate.provider.read", {ATTR_OBJECT_PATH: path}):
            async with self._lock:
                entry = self._objects.get(path)
                if entry is None:
                    raise ProviderIOError(
                        f"Object does not exist: {path}",
                        operation="read",
                        path=path,
                        retryable=False,
                    )
                self.reads += 1
                return entry[0]

    async def write(self, path: str, data: bytes, options: WriteOptions | None = None) -> None:
        options = options or WriteOptions()
        with self._tracer.span("objmigrate.provider.write", {ATTR_OBJECT_PATH: path}):
            metadata = ObjectMetadata(
                path=path,
                size=len(data),
                last_modified=datetime.now(UTC),
                etag=hashlib.md5(data, usedforsecurity=False).hexdigest(),
                content_type=options.content_type or guess_content_type(path),
                cache_control=options.cache_control,
                metadata=dict(options.metadata),
            )
            async with self._lock:
                self._objects[path] = (bytes(data), metadata)
                self.writes += 1

    async def delete(self, path: str) -> None:
        with self._tracer.span("objmigrate.provider.delete", {ATTR_OBJECT_PATH: path}):
            async with self._lock:
                self._objects.pop(path, None)
                self.deletes += 1

    async def exists(self, path: str) -> bool:
        async with self._lock:
            return path in self._objects

    async def metadata(self, path: str) -> ObjectMetadata | None:
        async with self._lock:
            entry = self._objects.get(path)
            return entry[1] if entry else None

    def capabilities(self) -> ProviderCapabilities:
        return self._capabilities

    async def test_connection(self) -> ConnectionCheck:
        return ConnectionCheck(success=True, message=f"In-memory provider '{self._name}' ready")

    @property
    def object_count(self) -> int:
        return len(self._objects)

    def keys(self) -> list[str]:
        return sorted(self._objects)


class LocalFilesystemProvider:
    """
    Storage provider backed by a directory tree.

    Keys are paths relative to ``root`` with forward slashes. Blocking file
    operations run in worker threads. Listing walks the tree in key order
    and prunes directories that lie entirely before the cursor, so each page
    costs roughly one path of the tree plus the page itself.

    Example:
        >>> provider = LocalFilesystemProvider("/srv/uploads")
        >>> async for obj in provider.list("2024/").images():
        ...     print(obj.path)
    """

    def __init__(
        self,
        root: str | Path,
        *,
        name: str | None = None,
        base_url: str | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._root = Path(root).resolve()
        self._name = name or f"local:{self._root}"
        self._base_url = base_url

    @property
    def provider_type(self) -> ProviderType:
        return ProviderType.LOCAL

    @property
    def name(self) -> str:
        return self._name

    @property
    def root(self) -> Path:
        return self._root

    def list(
        self,
        prefix: str = "",
        *,
        page_size: int = 1000,
        start_after: str | None = None,
    ) -> ObjectIterator:
        return ObjectIterator(
            self,
            prefix,
            page_size=page_size,
            start_after=start_after,
            tracer=self._tracer,
        )

    async def list_page(
        self,
        prefix: str,
        *,
        start_after: str | None,
        max_keys: int,
    ) -> ObjectPage:
        try:
            objects, truncated = await asyncio.to_thread(
                self._list_page_sync, prefix, start_after, max_keys
            )
        except OSError as e:
            raise self._io_error("list", prefix, e) from e
        return ObjectPage(objects=objects, is_truncated=truncated)

    def _list_page_sync(
        self,
        prefix: str,
        start_after: str | None,
        max_keys: int,
    ) -> tuple[list[ObjectMetadata], bool]:
        found: list[ObjectMetadata] = []
        if not self._root.is_dir():
            return found, False
        for key, entry in self._walk(self._root, "", prefix, start_after):
            if len(found) == max_keys:
                return found, True
            found.append(self._stat_to_metadata(key, entry.stat()))
        return found, False

    def _walk(
        self,
        directory: Path,
        base: str,
        prefix: str,
        start_after: str | None,
    ) -> Iterator[tuple[str, os.DirEntry[str]]]:
        # Directories sort as "name/" so the walk yields keys in byte order.
        with os.scandir(directory) as scan:
            entries = sorted(
                scan,
                key=lambda e: e.name + "/" if e.is_dir(follow_symlinks=False) else e.name,
            )
        for entry in entries:
            key = f"{base}{entry.name}"
            if entry.is_dir(follow_symlinks=False):
                dir_key = key + "/"
                if not (dir_key.startswith(prefix) or prefix.startswith(dir_key)):
                    continue
                if (
                    start_after is not None
                    and start_after >= dir_key
                    and not start_after.startswith(dir_key)
                ):
                    continue
                yield from self._walk(Path(entry.path), dir_key, prefix, start_after)
            elif entry.is_file():
                if not key.startswith(prefix):
                    continue
                if start_after is not None and key <= start_after:
                    continue
                yield key, entry

    def _stat_to_metadata(self, key: str, stat: os.stat_result) -> ObjectMetadata:
        mtime = int(stat.st_mtime)
        return ObjectMetadata(
            path=key,
            size=stat.st_size,
            last_modified=datetime.fromtimestamp(stat.st_mtime, tz=UTC),
            etag=hashlib.md5(f"{key}{mtime}".encode(), usedforsecurity=False).hexdigest(),
            content_type=guess_content_type(key),
        )

    def _resolve(self, path: str) -> Path:
        normalized = posixpath.normpath(path.lstrip("/"))
        if normalized.startswith("..") or normalized in ("", "."):
            raise ProviderIOError(
                f"Invalid object key: {path}",
                operation="resolve",
                path=path,
                retryable=False,
            )
        return self._root / normalized

    def _io_error(self, operation: str, path: str, error: OSError) -> ProviderIOError:
        if isinstance(error, PermissionError):
            return ProviderIOError(
                f"Permission denied during {operation} of {path}: {error}",
                operation=operation,
                path=path,
                critical=True,
            )
        if isinstance(error, FileNotFoundError | IsADirectoryError | NotADirectoryError):
            return ProviderIOError(
                f"Object does not exist: {path}",
                operation=operation,
                path=path,
                retryable=False,
            )
        return ProviderIOError(
            f"I/O error during {operation} of {path}: {error}",
            operation=operation,
            path=path,
        )

    async def read(self, path: str) -> bytes:
        with self._tracer.span("objmigrate.provider.read", {ATTR_OBJECT_PATH: path}):
            target = self._resolve(path)
            try:
                return await asyncio.to_thread(target.read_bytes)
            except OSError as e:
                raise self._io_error("read", path, e) from e

    async def write(self, path: str, data: bytes, options: WriteOptions | None = None) -> None:
        with self._tracer.span("objmigrate.provider.write", {ATTR_OBJECT_PATH: path}):
            target = self._resolve(path)
            try:
                await asyncio.to_thread(self._write_sync, target, data)
            except OSError as e:
                raise self._io_error("write", path, e) from e

    @staticmethod
    def _write_sync(target: Path, data: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=".objmigrate-")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
            os.replace(tmp_name, target)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    async def delete(self, path: str) -> None:
        with self._tracer.span("objmigrate.provider.delete", {ATTR_OBJECT_PATH: path}):
            target = self._resolve(path)
            try:
                await asyncio.to_thread(target.unlink, missing_ok=True)
            except OSError as e:
                raise self._io_error("delete", path, e) from e

    async def exists(self, path: str) -> bool:
        target = self._resolve(path)
        return await asyncio.to_thread(target.is_file)

    async def metadata(self, path: str) -> ObjectMetadata | None:
        target = self._resolve(path)
        try:
            stat = await asyncio.to_thread(target.stat)
        except FileNotFoundError:
            return None
        except OSError as e:
            raise self._io_error("stat", path, e) from e
        return self._stat_to_metadata(path, stat)

    def capabilities(self) -> ProviderCapabilities:
        caps = capabilities_for(ProviderType.LOCAL)
        if self._base_url is not None:
            caps = replace(caps, supports_public_urls=True)
        return caps

    async def test_connection(self) -> ConnectionCheck:
        started = time.monotonic()
        usable = await asyncio.to_thread(
            lambda: self._root.is_dir() and os.access(self._root, os.R_OK | os.W_OK)
        )
        latency = (time.monotonic() - started) * 1000
        if usable:
            return ConnectionCheck(True, f"Directory {self._root} is readable and writable", latency)
        return ConnectionCheck(False, f"Directory {self._root} is missing or not writable", latency)


class ProviderSettings(BaseModel):
    """
    Configuration selecting and parameterizing one provider.

    Credentials and endpoints live in ``options`` and are passed to the
    adapter untouched.
    """

    model_config = ConfigDict(frozen=True)

    provider_type: ProviderType
    name: str | None = None
    options: dict[str, Any] = Field(default_factory=dict)


ProviderFactory = Callable[[ProviderSettings], StorageProvider]


def _create_local(settings: ProviderSettings) -> StorageProvider:
    if "root" not in settings.options:
        raise ValueError("local provider requires a 'root' option")
    return LocalFilesystemProvider(
        settings.options["root"],
        name=settings.name,
        base_url=settings.options.get("base_url"),
    )


def _create_memory(settings: ProviderSettings) -> StorageProvider:
    return InMemoryStorageProvider(settings.name or "memory")


class ProviderRegistry:
    """
    Maps provider types to factories.

    Local and in-memory providers are registered by default; SDK-backed
    adapters (S3, GCS, Azure, ...) are registered by the host.

    Example:
        >>> registry = ProviderRegistry()
        >>> registry.register(ProviderType.S3, make_s3_adapter)
        >>> provider = registry.create(ProviderSettings(provider_type="s3", options={...}))
    """

    def __init__(self) -> None:
        self._factories: dict[ProviderType, ProviderFactory] = {
            ProviderType.LOCAL: _create_local,
            ProviderType.MEMORY: _create_memory,
        }

    def register(self, provider_type: ProviderType, factory: ProviderFactory) -> None:
        self._factories[provider_type] = factory
        logger.debug("Registered storage adapter for %s", provider_type.value)

    def is_registered(self, provider_type: ProviderType) -> bool:
        return provider_type in self._factories

    def create(self, settings: ProviderSettings) -> StorageProvider:
        """
        Build the provider for ``settings``.

        Raises:
            ProviderNotAvailableError: If no factory handles the type.
        """
        factory = self._factories.get(settings.provider_type)
        if factory is None:
            raise ProviderNotAvailableError(settings.provider_type.value)
        return factory(settings)


def create_provider(
    settings: ProviderSettings,
    registry: ProviderRegistry | None = None,
) -> StorageProvider:
    """Create a provider from settings using ``registry`` (or the built-ins)."""
    return (registry or ProviderRegistry()).create(settings)


__all__ = [
    "DEFAULT_CONTENT_TYPE",
    "guess_content_type",
    "WriteOptions",
    "ConnectionCheck",
    "StorageProvider",
    "InMemoryStorageProvider",
    "LocalFilesystemProvider",
    "ProviderSettings",
    "ProviderFactory",
    "ProviderRegistry",
    "create_provider",
]
