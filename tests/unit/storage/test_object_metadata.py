"""
Unit tests for ObjectMetadata.
"""

from collections.abc import Callable

import pytest
from pydantic import ValidationError

from objmigrate.storage import ObjectMetadata


class TestDerivedFields:
    def test_extension_is_lower_cased(self, metadata_factory: Callable[..., ObjectMetadata]) -> None:
        assert metadata_factory("images/cat.JPG").extension == "jpg"

    def test_extension_absent(self, metadata_factory: Callable[..., ObjectMetadata]) -> None:
        assert metadata_factory("docs/README").extension is None

    def test_filename_and_directory(self, metadata_factory: Callable[..., ObjectMetadata]) -> None:
        obj = metadata_factory("2024/05/report.pdf")

        assert obj.filename == "report.pdf"
        assert obj.directory == "2024/05"

    def test_directory_at_root(self, metadata_factory: Callable[..., ObjectMetadata]) -> None:
        assert metadata_factory("report.pdf").directory == ""

    @pytest.mark.parametrize(
        ("size", "expected"),
        [
            (0, "0.00 B"),
            (1023, "1023.00 B"),
            (1536, "1.50 KB"),
            (5 * 1024 * 1024, "5.00 MB"),
            (3 * 1024**3, "3.00 GB"),
            (2 * 1024**4, "2.00 TB"),
        ],
    )
    def test_formatted_size(
        self,
        metadata_factory: Callable[..., ObjectMetadata],
        size: int,
        expected: str,
    ) -> None:
        assert metadata_factory("a.bin", size=size).formatted_size == expected


class TestIsImage:
    def test_content_type_decides(self, metadata_factory: Callable[..., ObjectMetadata]) -> None:
        assert metadata_factory("blob", content_type="image/webp").is_image()

    def test_content_type_overrides_extension(
        self, metadata_factory: Callable[..., ObjectMetadata]
    ) -> None:
        assert not metadata_factory("fake.jpg", content_type="text/plain").is_image()

    @pytest.mark.parametrize("path", ["a.jpeg", "b.PNG", "c.svg", "d.ico"])
    def test_extension_fallback(
        self, metadata_factory: Callable[..., ObjectMetadata], path: str
    ) -> None:
        assert metadata_factory(path).is_image()

    def test_non_image(self, metadata_factory: Callable[..., ObjectMetadata]) -> None:
        assert not metadata_factory("archive.zip").is_image()


class TestValidation:
    def test_is_frozen(self, metadata_factory: Callable[..., ObjectMetadata]) -> None:
        obj = metadata_factory("a.jpg")

        with pytest.raises(ValidationError):
            obj.size = 10  # type: ignore[misc]

    def test_rejects_negative_size(self, metadata_factory: Callable[..., ObjectMetadata]) -> None:
        with pytest.raises(ValidationError):
            metadata_factory("a.jpg", size=-1)

    def test_rejects_empty_path(self, metadata_factory: Callable[..., ObjectMetadata]) -> None:
        with pytest.raises(ValidationError):
            metadata_factory("")


class TestToDict:
    def test_includes_derived_fields(self, metadata_factory: Callable[..., ObjectMetadata]) -> None:
        data = metadata_factory("photos/a.PNG", size=10, metadata={"owner": "42"}).to_dict()

        assert data["path"] == "photos/a.PNG"
        assert data["extension"] == "png"
        assert data["is_image"] is True
        assert data["metadata"] == {"owner": "42"}
        assert data["last_modified"].startswith("2024-01-01T00:00:00")
