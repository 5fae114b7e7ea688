"""
Unit tests for ObjectIterator.

Uses a recording lister so page fetches can be asserted precisely.
"""

from datetime import UTC, datetime

import pytest

from objmigrate.exceptions import ObjectListingError
from objmigrate.storage import InMemoryStorageProvider, ObjectIterator, ObjectMetadata, ObjectPage


def _obj(path: str, size: int = 0) -> ObjectMetadata:
    return ObjectMetadata(path=path, size=size, last_modified=datetime(2024, 1, 1, tzinfo=UTC))


class RecordingLister:
    """In-order lister over fixed keys; optionally fails on one call."""

    def __init__(self, keys: list[str], fail_on_call: int | None = None) -> None:
        self.keys = sorted(keys)
        self.sizes = {key: index for index, key in enumerate(self.keys)}
        self.fail_on_call = fail_on_call
        self.calls: list[tuple[str, str | None, int]] = []

    async def list_page(self, prefix: str, *, start_after: str | None, max_keys: int) -> ObjectPage:
        self.calls.append((prefix, start_after, max_keys))
        if self.fail_on_call == len(self.calls):
            raise RuntimeError("listing backend unavailable")
        matching = [
            key
            for key in self.keys
            if key.startswith(prefix) and (start_after is None or key > start_after)
        ]
        return ObjectPage(
            objects=[_obj(key, self.sizes[key]) for key in matching[:max_keys]],
            is_truncated=len(matching) > max_keys,
        )


def _keys(count: int) -> list[str]:
    return [f"k-{index:04d}" for index in range(count)]


class TestIteration:
    @pytest.mark.asyncio
    async def test_yields_every_object_in_order_across_pages(self) -> None:
        lister = RecordingLister(_keys(25))
        iterator = ObjectIterator(lister, page_size=10)

        paths = [obj.path async for obj in iterator]

        assert paths == _keys(25)
        assert iterator.pages_fetched == 3
        assert iterator.complete

    @pytest.mark.asyncio
    async def test_holds_a_single_page(self) -> None:
        iterator = ObjectIterator(RecordingLister(_keys(25)), page_size=10)

        await iterator.next()

        assert iterator.buffered == 9

    @pytest.mark.asyncio
    async def test_exact_multiple_completes_without_extra_fetch(self) -> None:
        lister = RecordingLister(_keys(20))
        iterator = ObjectIterator(lister, page_size=10)

        assert len(await iterator.to_list()) == 20
        assert len(lister.calls) == 2

    @pytest.mark.asyncio
    async def test_next_returns_none_when_exhausted(self) -> None:
        iterator = ObjectIterator(RecordingLister(_keys(2)), page_size=10)

        assert await iterator.next() is not None
        assert await iterator.next() is not None
        assert iterator.valid() is False
        assert await iterator.next() is None

    @pytest.mark.asyncio
    async def test_empty_listing(self) -> None:
        iterator = ObjectIterator(RecordingLister([]), page_size=10)

        assert iterator.valid() is True
        assert await iterator.next() is None
        assert iterator.valid() is False
        assert iterator.pages_fetched == 1

    @pytest.mark.asyncio
    async def test_prefix_is_passed_to_lister(self) -> None:
        lister = RecordingLister(["a/1", "a/2", "b/1"])

        paths = [obj.path async for obj in ObjectIterator(lister, "a/", page_size=5)]

        assert paths == ["a/1", "a/2"]
        assert lister.calls[0][0] == "a/"

    def test_rejects_invalid_page_size(self) -> None:
        with pytest.raises(ValueError):
            ObjectIterator(RecordingLister([]), page_size=0)


class TestCursor:
    @pytest.mark.asyncio
    async def test_cursor_tracks_last_returned_key(self) -> None:
        iterator = ObjectIterator(RecordingLister(_keys(5)), page_size=2)

        assert iterator.cursor is None
        await iterator.next()
        await iterator.next()
        await iterator.next()

        assert iterator.cursor == "k-0002"

    @pytest.mark.asyncio
    async def test_seeded_cursor_resumes_strictly_after(self) -> None:
        lister = RecordingLister(_keys(30))
        iterator = ObjectIterator(lister, page_size=10, start_after="k-0009")

        first = await iterator.next()

        assert first is not None
        assert first.path == "k-0010"
        assert lister.calls[0][1] == "k-0009"

    @pytest.mark.asyncio
    async def test_resumed_listing_plus_consumed_prefix_covers_everything(self) -> None:
        lister = RecordingLister(_keys(23))
        first = ObjectIterator(lister, page_size=5)
        consumed = [(await first.next()).path for _ in range(7)]  # type: ignore[union-attr]

        rest = await ObjectIterator(lister, page_size=5, start_after=first.cursor).to_list()

        assert consumed + [obj.path for obj in rest] == _keys(23)


class TestFailures:
    @pytest.mark.asyncio
    async def test_page_failure_raises_and_never_skips(self) -> None:
        lister = RecordingLister(_keys(25), fail_on_call=2)
        iterator = ObjectIterator(lister, page_size=10)
        for _ in range(10):
            await iterator.next()

        with pytest.raises(ObjectListingError) as exc_info:
            await iterator.next()

        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert iterator.valid() is False
        with pytest.raises(ObjectListingError):
            await iterator.next()
        assert len(lister.calls) == 2

    @pytest.mark.asyncio
    async def test_rewind_clears_failure_and_restarts(self) -> None:
        lister = RecordingLister(_keys(25), fail_on_call=2)
        iterator = ObjectIterator(lister, page_size=10)
        for _ in range(10):
            await iterator.next()
        with pytest.raises(ObjectListingError):
            await iterator.next()

        await iterator.rewind()

        assert [obj.path async for obj in iterator] == _keys(25)


class TestCount:
    @pytest.mark.asyncio
    async def test_count_by_traversal_leaves_cursor_alone(self) -> None:
        lister = RecordingLister(_keys(25))
        iterator = ObjectIterator(lister, page_size=10)

        assert await iterator.count() == 25
        assert iterator.cursor is None
        assert iterator.pages_fetched == 0

    @pytest.mark.asyncio
    async def test_count_is_cached(self) -> None:
        lister = RecordingLister(_keys(25))
        iterator = ObjectIterator(lister, page_size=10)

        await iterator.count()
        calls = len(lister.calls)
        await iterator.count()

        assert len(lister.calls) == calls

    @pytest.mark.asyncio
    async def test_count_uses_countable_lister(self, source: InMemoryStorageProvider) -> None:
        iterator = source.list("photos/")

        assert await iterator.count() == 250
        assert iterator.pages_fetched == 0

    @pytest.mark.asyncio
    async def test_count_respects_seed_cursor(self) -> None:
        iterator = ObjectIterator(RecordingLister(_keys(25)), page_size=10, start_after="k-0019")

        assert await iterator.count() == 5


class TestDerivedSequences:
    @pytest.mark.asyncio
    async def test_batches(self, source: InMemoryStorageProvider) -> None:
        sizes = [len(batch) async for batch in source.list("photos/", page_size=64).batches(100)]

        assert sizes == [100, 100, 50]

    @pytest.mark.asyncio
    async def test_batches_are_lazy(self) -> None:
        lister = RecordingLister(_keys(50))
        iterator = ObjectIterator(lister, page_size=10)

        async for batch in iterator.batches(5):
            assert len(batch) == 5
            break

        assert len(lister.calls) == 1

    @pytest.mark.asyncio
    async def test_batches_rejects_invalid_size(self) -> None:
        iterator = ObjectIterator(RecordingLister(_keys(3)), page_size=10)

        with pytest.raises(ValueError):
            async for _ in iterator.batches(0):
                pass

    @pytest.mark.asyncio
    async def test_size_filters_are_strict(self) -> None:
        keys = _keys(10)

        larger = [o.size async for o in ObjectIterator(RecordingLister(keys)).larger_than(7)]
        smaller = [o.size async for o in ObjectIterator(RecordingLister(keys)).smaller_than(2)]

        assert larger == [8, 9]
        assert smaller == [0, 1]

    @pytest.mark.asyncio
    async def test_images(self) -> None:
        lister = RecordingLister(["a.jpg", "b.txt", "c.png", "d.pdf"])

        paths = [obj.path async for obj in ObjectIterator(lister).images()]

        assert paths == ["a.jpg", "c.png"]

    @pytest.mark.asyncio
    async def test_filter_and_map(self) -> None:
        iterator = ObjectIterator(RecordingLister(_keys(6)), page_size=4)

        evens = iterator.filter(lambda obj: obj.size % 2 == 0)
        paths = [obj.path async for obj in evens]

        assert paths == ["k-0000", "k-0002", "k-0004"]
        names = [name async for name in ObjectIterator(RecordingLister(_keys(2))).map(lambda o: o.path.upper())]
        assert names == ["K-0000", "K-0001"]
