"""Type definitions for the tile-source layer.

The pipeline never talks to an image format directly. It depends on the
TileSource protocol below, implemented by SlideReader (OpenSlide pyramids)
and ImageTileSource (plain raster images), and by fakes in tests.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from PIL import Image

if TYPE_CHECKING:
    from patchembed.geometry import Region


@dataclass(frozen=True)
class ImageInfo:
    """Full-resolution dimensions of a source image.

    Attributes:
        width: Level-0 width in pixels.
        height: Level-0 height in pixels.
    """

    width: int
    height: int

    @property
    def dimensions(self) -> tuple[int, int]:
        """Return (width, height)."""
        return (self.width, self.height)


class TileSource(Protocol):
    """Protocol for anything that can serve thumbnails and region tiles."""

    def get_info(self) -> ImageInfo:
        """Return the full-resolution dimensions of the image."""
        ...

    def get_thumbnail(self, max_width: int, max_height: int) -> Image.Image:
        """Return an RGB thumbnail fitting inside (max_width, max_height).

        Raises:
            ThumbnailUnavailable: If the thumbnail cannot be produced.
        """
        ...

    def get_tile(self, region: Region, target_resolution: int) -> Image.Image:
        """Return the region as an RGB image whose long side is target_resolution.

        Raises:
            TileFetchError: If the region cannot be read.
        """
        ...


def fit_long_side(image: Image.Image, target_resolution: int) -> Image.Image:
    """Resize an image so its long side equals target_resolution.

    Aspect ratio is preserved and neither side drops below one pixel.
    """
    width, height = image.size
    long_side = max(width, height)
    if long_side == target_resolution:
        return image
    scale = target_resolution / long_side
    if width >= height:
        new_size = (target_resolution, max(1, round(height * scale)))
    else:
        new_size = (max(1, round(width * scale)), target_resolution)
    return image.resize(new_size, resample=Image.Resampling.LANCZOS)
