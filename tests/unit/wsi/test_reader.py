"""Unit tests for tile sources using mocked OpenSlide.

SlideReader tests mock openslide.OpenSlide to avoid needing real slide
files; ImageTileSource tests use small in-memory Pillow images.
"""

from __future__ import annotations

import ctypes
from pathlib import Path
from unittest.mock import MagicMock, patch

import openslide
import pytest
from PIL import Image

from patchembed.errors import SourceOpenError, ThumbnailUnavailable, TileFetchError
from patchembed.geometry import Region
from patchembed.wsi import (
    SUPPORTED_EXTENSIONS,
    ImageTileSource,
    SlideReader,
    open_tile_source,
)


@pytest.fixture
def mock_slide() -> MagicMock:
    """Create a mock OpenSlide object with a 4-level pyramid."""
    mock = MagicMock(spec=openslide.OpenSlide)
    mock.dimensions = (100000, 50000)
    mock.level_count = 4
    mock.level_downsamples = (1.0, 4.0, 16.0, 64.0)
    return mock


@pytest.fixture
def slide_file(tmp_path: Path) -> Path:
    fake_file = tmp_path / "slide.svs"
    fake_file.write_bytes(b"data")
    return fake_file


class TestSlideReaderInit:
    """Tests for SlideReader initialization."""

    def test_open_nonexistent_file_raises(self, tmp_path: Path) -> None:
        """Test opening a non-existent file raises SourceOpenError."""
        with pytest.raises(SourceOpenError, match="File not found"):
            SlideReader(tmp_path / "nonexistent.svs")

    def test_open_unsupported_extension_raises(self, tmp_path: Path) -> None:
        """Test opening an unsupported extension raises SourceOpenError."""
        fake_file = tmp_path / "file.jpg"
        fake_file.write_bytes(b"fake data")

        with pytest.raises(SourceOpenError, match="Unsupported file extension"):
            SlideReader(fake_file)

    @pytest.mark.parametrize("ext", sorted(SUPPORTED_EXTENSIONS))
    def test_openslide_error_wrapped(self, tmp_path: Path, ext: str) -> None:
        """Test OpenSlideError during init is wrapped for every extension."""
        fake_file = tmp_path / f"slide{ext}"
        fake_file.write_bytes(b"fake data")

        with (
            patch("patchembed.wsi.reader.openslide.OpenSlide") as mock_openslide,
            pytest.raises(SourceOpenError, match="Failed to open slide"),
        ):
            mock_openslide.side_effect = openslide.OpenSlideError("Bad file")
            SlideReader(fake_file)

    def test_path_is_resolved_to_absolute(self, slide_file: Path) -> None:
        with patch("patchembed.wsi.reader.openslide.OpenSlide"):
            reader = SlideReader(slide_file)
            assert reader.path == slide_file.resolve()
            reader.close()


class TestSlideReaderInfo:
    """Tests for SlideReader.get_info()."""

    def test_get_info_returns_level0_dimensions(
        self, slide_file: Path, mock_slide: MagicMock
    ) -> None:
        with patch(
            "patchembed.wsi.reader.openslide.OpenSlide", return_value=mock_slide
        ):
            reader = SlideReader(slide_file)
            info = reader.get_info()
            assert info.dimensions == (100000, 50000)
            assert reader.get_info() is info
            reader.close()


class TestSlideReaderThumbnail:
    """Tests for SlideReader.get_thumbnail()."""

    def test_thumbnail_is_rgb(self, slide_file: Path, mock_slide: MagicMock) -> None:
        mock_slide.get_thumbnail.return_value = Image.new("RGBA", (512, 256))
        with patch(
            "patchembed.wsi.reader.openslide.OpenSlide", return_value=mock_slide
        ):
            with SlideReader(slide_file) as reader:
                thumbnail = reader.get_thumbnail(512, 512)

        assert thumbnail.mode == "RGB"
        mock_slide.get_thumbnail.assert_called_once_with((512, 512))

    def test_thumbnail_failure_raises_thumbnail_unavailable(
        self, slide_file: Path, mock_slide: MagicMock
    ) -> None:
        mock_slide.get_thumbnail.side_effect = openslide.OpenSlideError("corrupt")
        with patch(
            "patchembed.wsi.reader.openslide.OpenSlide", return_value=mock_slide
        ):
            reader = SlideReader(slide_file)
            with pytest.raises(ThumbnailUnavailable, match="corrupt"):
                reader.get_thumbnail(512, 512)
            reader.close()

    def test_thumbnail_after_close_raises(
        self, slide_file: Path, mock_slide: MagicMock
    ) -> None:
        with patch(
            "patchembed.wsi.reader.openslide.OpenSlide", return_value=mock_slide
        ):
            reader = SlideReader(slide_file)
            reader.close()
            with pytest.raises(ThumbnailUnavailable, match="closed"):
                reader.get_thumbnail(512, 512)

    def test_invalid_size_raises(self, slide_file: Path, mock_slide: MagicMock) -> None:
        with patch(
            "patchembed.wsi.reader.openslide.OpenSlide", return_value=mock_slide
        ):
            reader = SlideReader(slide_file)
            with pytest.raises(ThumbnailUnavailable, match="Invalid thumbnail size"):
                reader.get_thumbnail(0, 512)
            reader.close()


class TestSlideReaderTile:
    """Tests for SlideReader.get_tile()."""

    def test_reads_from_best_level_and_fits_long_side(
        self, slide_file: Path, mock_slide: MagicMock
    ) -> None:
        mock_slide.get_best_level_for_downsample.return_value = 1
        mock_slide.read_region.return_value = Image.new("RGBA", (1000, 500))

        with patch(
            "patchembed.wsi.reader.openslide.OpenSlide", return_value=mock_slide
        ):
            with SlideReader(slide_file) as reader:
                tile = reader.get_tile(Region(x=100, y=200, width=4000, height=2000), 1000)

        mock_slide.get_best_level_for_downsample.assert_called_once_with(4.0)
        mock_slide.read_region.assert_called_once_with((100, 200), 1, (1000, 500))
        assert tile.mode == "RGB"
        assert tile.size == (1000, 500)

    def test_tile_is_resampled_to_target(
        self, slide_file: Path, mock_slide: MagicMock
    ) -> None:
        mock_slide.get_best_level_for_downsample.return_value = 0
        mock_slide.read_region.return_value = Image.new("RGBA", (300, 300))

        with patch(
            "patchembed.wsi.reader.openslide.OpenSlide", return_value=mock_slide
        ):
            with SlideReader(slide_file) as reader:
                tile = reader.get_tile(Region(x=0, y=0, width=300, height=300), 224)

        assert tile.size == (224, 224)

    @pytest.mark.parametrize(
        "error",
        [openslide.OpenSlideError("read failed"), ctypes.ArgumentError("bad arg")],
    )
    def test_read_failure_raises_tile_fetch_error(
        self, slide_file: Path, mock_slide: MagicMock, error: Exception
    ) -> None:
        mock_slide.get_best_level_for_downsample.return_value = 0
        mock_slide.read_region.side_effect = error

        with patch(
            "patchembed.wsi.reader.openslide.OpenSlide", return_value=mock_slide
        ):
            reader = SlideReader(slide_file)
            with pytest.raises(TileFetchError, match="Failed to read region"):
                reader.get_tile(Region(x=0, y=0, width=10, height=10), 10)
            reader.close()

    def test_tile_after_close_raises(
        self, slide_file: Path, mock_slide: MagicMock
    ) -> None:
        with patch(
            "patchembed.wsi.reader.openslide.OpenSlide", return_value=mock_slide
        ):
            reader = SlideReader(slide_file)
            reader.close()
            reader.close()  # idempotent
            with pytest.raises(TileFetchError, match="closed"):
                reader.get_tile(Region(x=0, y=0, width=10, height=10), 10)
        mock_slide.close.assert_called_once()


class TestImageTileSource:
    """Tests for the Pillow-backed tile source."""

    def test_info_and_thumbnail(self, tissue_image: Image.Image) -> None:
        source = ImageTileSource(tissue_image)
        assert source.get_info().dimensions == (128, 128)

        thumbnail = source.get_thumbnail(64, 64)
        assert thumbnail.size == (64, 64)
        # Source image is untouched
        assert source.get_info().dimensions == (128, 128)

    def test_get_tile_crops_and_scales(self, tissue_image: Image.Image) -> None:
        source = ImageTileSource(tissue_image)
        tile = source.get_tile(Region(x=0, y=0, width=64, height=32), 32)
        assert tile.size == (32, 16)
        assert tile.getpixel((0, 0)) == (150, 60, 120)

    def test_get_tile_pads_out_of_bounds_with_black(
        self, tissue_image: Image.Image
    ) -> None:
        source = ImageTileSource(tissue_image)
        tile = source.get_tile(Region(x=96, y=96, width=64, height=64), 64)
        assert tile.size == (64, 64)
        assert tile.getpixel((0, 0)) == (255, 255, 255)
        assert tile.getpixel((63, 63)) == (0, 0, 0)

    def test_invalid_resolution_raises(self, tissue_image: Image.Image) -> None:
        source = ImageTileSource(tissue_image)
        with pytest.raises(TileFetchError, match="Invalid target resolution"):
            source.get_tile(Region(x=0, y=0, width=8, height=8), 0)

    def test_open_from_disk(self, tmp_path: Path, tissue_image: Image.Image) -> None:
        path = tmp_path / "image.png"
        tissue_image.save(path)
        with ImageTileSource.open(path) as source:
            assert source.get_info().dimensions == (128, 128)

    def test_open_corrupt_file_raises(self, tmp_path: Path) -> None:
        path = tmp_path / "broken.png"
        path.write_bytes(b"not a png")
        with pytest.raises(SourceOpenError, match="Failed to open image"):
            ImageTileSource.open(path)


class TestOpenTileSource:
    """Tests for open_tile_source() dispatch."""

    def test_raster_extension_uses_pillow(
        self, tmp_path: Path, tissue_image: Image.Image
    ) -> None:
        path = tmp_path / "image.PNG"
        tissue_image.save(path, format="PNG")
        source = open_tile_source(path)
        assert isinstance(source, ImageTileSource)

    def test_slide_extension_uses_openslide(self, slide_file: Path) -> None:
        with patch("patchembed.wsi.reader.openslide.OpenSlide"):
            source = open_tile_source(slide_file)
            assert isinstance(source, SlideReader)
            source.close()

    def test_missing_raster_raises(self, tmp_path: Path) -> None:
        with pytest.raises(SourceOpenError, match="File not found"):
            open_tile_source(tmp_path / "missing.png")

    def test_unknown_extension_raises(self, tmp_path: Path) -> None:
        with pytest.raises(SourceOpenError, match="Unsupported file extension"):
            open_tile_source(tmp_path / "notes.txt")
