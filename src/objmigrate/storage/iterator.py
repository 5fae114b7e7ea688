"""
Lazy, paged listing of stored objects.

ObjectIterator walks a provider's namespace under a prefix one page at a
time. Only the current page is held in memory, which keeps listing of
millions of objects bounded. Listings are in ascending key order, so the
key of the last returned object doubles as the resume cursor stored in
checkpoints.

Usage:
    >>> iterator = provider.list("uploads/", page_size=500)
    >>> async for obj in iterator.larger_than(10 * 1024 * 1024):
    ...     print(obj.path, obj.formatted_size)
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from typing import Protocol, TypeVar, runtime_checkable

from objmigrate.exceptions import ObjectListingError
from objmigrate.observability import (
    ATTR_PAGE_SIZE,
    ATTR_PREFIX,
    Tracer,
    create_tracer,
)
from objmigrate.storage.metadata import ObjectMetadata

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class ObjectPage:
    """
    One page of a listing.

    Attributes:
        objects: Objects in ascending key order.
        is_truncated: True when the provider has more objects after this page.
    """

    objects: list[ObjectMetadata] = field(default_factory=list)
    is_truncated: bool = False


@runtime_checkable
class PageLister(Protocol):
    """Source of listing pages (implemented by storage providers)."""

    async def list_page(
        self,
        prefix: str,
        *,
        start_after: str | None,
        max_keys: int,
    ) -> ObjectPage:
        """
        Fetch up to ``max_keys`` objects under ``prefix``, in ascending key
        order, strictly after ``start_after``.
        """
        ...


@runtime_checkable
class CountableLister(Protocol):
    """Lister that can count objects without a full traversal."""

    async def count_objects(self, prefix: str, *, start_after: str | None = None) -> int: ...


class ObjectIterator:
    """
    Stateful async cursor over the objects under one prefix.

    Invariants:
        - At most one page of metadata is held at a time.
        - ``complete`` becomes True only after a page returns fewer items
          than requested or the lister reports no truncation.
        - A failed page fetch raises ObjectListingError and leaves the
          iterator failed; pages are never skipped.

    Derived sequences (``filter``, ``map``, ``images``, ``larger_than``,
    ``smaller_than``, ``batches``) consume this iterator: they are lazy,
    single-pass and not restartable.

    Example:
        >>> iterator = ObjectIterator(provider, "media/", page_size=100)
        >>> while iterator.valid():
        ...     obj = await iterator.next()
        ...     if obj is None:
        ...         break
        ...     handle(obj)
    """

    def __init__(
        self,
        lister: PageLister,
        prefix: str = "",
        *,
        page_size: int = 1000,
        start_after: str | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the iterator.

        Args:
            lister: Provider (or any PageLister) to fetch pages from.
            prefix: Key prefix to list.
            page_size: Objects requested per page.
            start_after: Seed cursor; iteration starts strictly after this key.
            tracer: Optional custom Tracer instance.
            enable_tracing: Whether to enable OpenTelemetry tracing.
        """
        if page_size < 1:
            raise ValueError(f"page_size must be >= 1, got {page_size}")
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._lister = lister
        self._prefix = prefix
        self._page_size = page_size
        self._origin = start_after
        self._cursor = start_after
        self._page: list[ObjectMetadata] = []
        self._position = 0
        self._complete = False
        self._failure: ObjectListingError | None = None
        self._total: int | None = None
        self._pages_fetched = 0

    @property
    def prefix(self) -> str:
        return self._prefix

    @property
    def page_size(self) -> int:
        return self._page_size

    @property
    def complete(self) -> bool:
        """True once the provider has signalled the end of the listing."""
        return self._complete

    @property
    def cursor(self) -> str | None:
        """Key of the last object returned (resume token)."""
        return self._cursor

    @property
    def pages_fetched(self) -> int:
        return self._pages_fetched

    @property
    def buffered(self) -> int:
        """Unread objects in the current page."""
        return len(self._page) - self._position

    def valid(self) -> bool:
        """True while unread items remain in the page or the listing is not complete."""
        if self._failure is not None:
            return False
        return self._position < len(self._page) or not self._complete

    async def next(self) -> ObjectMetadata | None:
        """
        Advance to the next object.

        Returns:
            The next object, or None once the listing is exhausted.

        Raises:
            ObjectListingError: If a page fetch fails (now or previously).
        """
        if self._failure is not None:
            raise self._failure

        while self._position >= len(self._page):
            if self._complete:
                return None
            await self._fetch_page()

        obj = self._page[self._position]
        self._position += 1
        self._cursor = obj.path
        return obj

    def __aiter__(self) -> ObjectIterator:
        return self

    async def __anext__(self) -> ObjectMetadata:
        obj = await self.next()
        if obj is None:
            raise StopAsyncIteration
        return obj

    async def rewind(self) -> None:
        """
        Restart from the iterator's origin.

        This discards the current page and re-lists from the start: an O(n)
        operation on large namespaces.
        """
        logger.debug("Rewinding listing of '%s' to %r", self._prefix, self._origin)
        self._cursor = self._origin
        self._page = []
        self._position = 0
        self._complete = False
        self._failure = None
        await self._fetch_page()

    async def count(self) -> int:
        """
        Count the objects this iterator covers from its origin.

        Uses the lister's cheap count when it has one; otherwise performs a
        full traversal on a separate cursor (O(n), avoid on hot paths). The
        result is cached.
        """
        if self._total is not None:
            return self._total

        if isinstance(self._lister, CountableLister):
            total = await self._lister.count_objects(self._prefix, start_after=self._origin)
        else:
            logger.debug("Counting '%s' by full traversal", self._prefix)
            walker = ObjectIterator(
                self._lister,
                self._prefix,
                page_size=self._page_size,
                start_after=self._origin,
                tracer=self._tracer,
            )
            total = 0
            async for _ in walker:
                total += 1

        self._total = total
        return total

    async def to_list(self) -> list[ObjectMetadata]:
        """Materialize the remaining objects. Avoid on large namespaces."""
        return [obj async for obj in self]

    async def filter(
        self,
        predicate: Callable[[ObjectMetadata], bool],
    ) -> AsyncIterator[ObjectMetadata]:
        async for obj in self:
            if predicate(obj):
                yield obj

    async def map(self, fn: Callable[[ObjectMetadata], T]) -> AsyncIterator[T]:
        async for obj in self:
            yield fn(obj)

    def images(self) -> AsyncIterator[ObjectMetadata]:
        return self.filter(lambda obj: obj.is_image())

    def larger_than(self, size: int) -> AsyncIterator[ObjectMetadata]:
        return self.filter(lambda obj: obj.size > size)

    def smaller_than(self, size: int) -> AsyncIterator[ObjectMetadata]:
        return self.filter(lambda obj: obj.size < size)

    async def batches(self, size: int) -> AsyncIterator[list[ObjectMetadata]]:
        """
        Yield lists of at most ``size`` objects.

        Each batch is requested lazily, so a consumer that stops early never
        causes further page fetches.
        """
        if size < 1:
            raise ValueError(f"batch size must be >= 1, got {size}")
        batch: list[ObjectMetadata] = []
        async for obj in self:
            batch.append(obj)
            if len(batch) >= size:
                yield batch
                batch = []
        if batch:
            yield batch

    async def _fetch_page(self) -> None:
        with self._tracer.span(
            "objmigrate.iterator.fetch_page",
            {
                ATTR_PREFIX: self._prefix,
                ATTR_PAGE_SIZE: self._page_size,
            },
        ):
            try:
                page = await self._lister.list_page(
                    self._prefix,
                    start_after=self._cursor,
                    max_keys=self._page_size,
                )
            except ObjectListingError as e:
                self._failure = e
                raise
            except Exception as e:
                failure = ObjectListingError(self._prefix, str(e))
                self._failure = failure
                raise failure from e

            self._page = list(page.objects)
            self._position = 0
            self._pages_fetched += 1
            if not page.is_truncated or len(self._page) < self._page_size:
                self._complete = True

            logger.debug(
                "Fetched page %d of '%s': %d objects (complete=%s)",
                self._pages_fetched,
                self._prefix,
                len(self._page),
                self._complete,
            )


__all__ = [
    "ObjectPage",
    "PageLister",
    "CountableLister",
    "ObjectIterator",
]
