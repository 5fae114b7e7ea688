"""
Unit tests for tracer protocol and implementations.

Tests for:
- Tracer Protocol (runtime_checkable)
- NullTracer, OpenTelemetryTracer and MockTracer
- create_tracer() factory function
- Span emission from components that accept a tracer
"""

from __future__ import annotations

import pytest

from objmigrate.observability import (
    ATTR_OBJECT_PATH,
    ATTR_PREFIX,
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    Tracer,
    create_tracer,
)
from objmigrate.storage import InMemoryStorageProvider, ObjectIterator


class TestTracerProtocol:
    """Tests for Tracer protocol."""

    @pytest.mark.parametrize(
        "tracer",
        [NullTracer(), OpenTelemetryTracer(__name__), MockTracer()],
        ids=["null", "otel", "mock"],
    )
    def test_implementations_match_protocol(self, tracer: Tracer) -> None:
        """Every built-in tracer satisfies the protocol."""
        assert isinstance(tracer, Tracer)


class TestNullTracer:
    def test_span_yields_none(self) -> None:
        tracer = NullTracer()

        with tracer.span("operation", {"key": "value"}) as span:
            assert span is None

        assert tracer.enabled is False


class TestOpenTelemetryTracer:
    def test_span_yields_otel_span(self) -> None:
        tracer = OpenTelemetryTracer(__name__)

        with tracer.span("operation", {"key": "value"}) as span:
            assert span is not None

        assert tracer.enabled is True

    def test_span_without_attributes(self) -> None:
        with OpenTelemetryTracer(__name__).span("operation") as span:
            assert span is not None


class TestMockTracer:
    def test_records_spans(self) -> None:
        tracer = MockTracer()

        with tracer.span("first", {"a": 1}):
            pass
        with tracer.span("second"):
            pass

        assert tracer.spans == [("first", {"a": 1}), ("second", None)]
        assert tracer.span_names == ["first", "second"]

    def test_clear(self) -> None:
        tracer = MockTracer()
        with tracer.span("first"):
            pass

        tracer.clear()

        assert tracer.spans == []


class TestCreateTracer:
    def test_enabled_returns_otel_tracer(self) -> None:
        assert isinstance(create_tracer(__name__, True), OpenTelemetryTracer)

    def test_disabled_returns_null_tracer(self) -> None:
        assert isinstance(create_tracer(__name__, False), NullTracer)


class TestComponentSpans:
    """Components emit spans through the tracer they are given."""

    @pytest.mark.asyncio
    async def test_provider_operations_emit_spans(self) -> None:
        tracer = MockTracer()
        provider = InMemoryStorageProvider("mem", tracer=tracer)

        await provider.write("a.txt", b"1")
        await provider.read("a.txt")
        await provider.delete("a.txt")

        assert tracer.span_names == [
            "objmigrate.provider.write",
            "objmigrate.provider.read",
            "objmigrate.provider.delete",
        ]
        assert tracer.spans[0][1] == {ATTR_OBJECT_PATH: "a.txt"}

    @pytest.mark.asyncio
    async def test_iterator_emits_one_span_per_page(self) -> None:
        tracer = MockTracer()
        provider = InMemoryStorageProvider("mem", enable_tracing=False)
        for index in range(5):
            await provider.write(f"p/{index}", b"x")

        iterator = ObjectIterator(provider, "p/", page_size=2, tracer=tracer)
        await iterator.to_list()

        assert tracer.span_names == ["objmigrate.iterator.fetch_page"] * 3
        assert tracer.spans[0][1][ATTR_PREFIX] == "p/"  # type: ignore[index]
