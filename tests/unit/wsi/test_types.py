"""Unit tests for tile-source type definitions."""

from __future__ import annotations

import pytest
from PIL import Image

from patchembed.wsi.types import ImageInfo, fit_long_side


class TestImageInfo:
    """Tests for ImageInfo dataclass."""

    def test_dimensions(self) -> None:
        assert ImageInfo(width=800, height=600).dimensions == (800, 600)

    def test_is_frozen(self) -> None:
        info = ImageInfo(width=1, height=1)
        with pytest.raises(AttributeError):
            info.width = 2  # type: ignore[misc]


class TestFitLongSide:
    """Tests for fit_long_side()."""

    def test_landscape_is_scaled_by_width(self) -> None:
        image = Image.new("RGB", (400, 200))
        assert fit_long_side(image, 100).size == (100, 50)

    def test_portrait_is_scaled_by_height(self) -> None:
        image = Image.new("RGB", (200, 400))
        assert fit_long_side(image, 800).size == (400, 800)

    def test_matching_size_returns_same_image(self) -> None:
        image = Image.new("RGB", (224, 100))
        assert fit_long_side(image, 224) is image

    def test_short_side_never_collapses(self) -> None:
        image = Image.new("RGB", (1000, 1))
        assert fit_long_side(image, 10).size == (10, 1)
