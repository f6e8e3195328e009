"""Tile sources backed by OpenSlide and Pillow.

SlideReader wraps openslide.OpenSlide for pyramidal whole-slide images;
ImageTileSource serves ordinary raster files through Pillow. Both satisfy
the TileSource protocol consumed by the segmenter and the pipeline driver.
"""

from __future__ import annotations

import ctypes
from pathlib import Path
from typing import TYPE_CHECKING

import openslide
from PIL import Image

from patchembed.errors import SourceOpenError, ThumbnailUnavailable, TileFetchError
from patchembed.wsi.types import ImageInfo, TileSource, fit_long_side

if TYPE_CHECKING:
    from types import TracebackType

    from patchembed.geometry import Region

# Pyramidal formats opened through OpenSlide (case-insensitive)
SUPPORTED_EXTENSIONS: frozenset[str] = frozenset(
    {
        ".svs",  # Aperio
        ".ndpi",  # Hamamatsu
        ".tiff",  # Generic tiled TIFF
        ".tif",  # Generic tiled TIFF (alternate extension)
        ".mrxs",  # 3DHISTECH MIRAX
        ".vms",  # Hamamatsu VMS
        ".vmu",  # Hamamatsu VMU
        ".scn",  # Leica SCN
        ".bif",  # Ventana BIF
        ".svslide",  # Aperio SVS (alternate)
    }
)

# Flat raster formats loaded fully into memory through Pillow
RASTER_EXTENSIONS: frozenset[str] = frozenset({".png", ".jpg", ".jpeg", ".bmp"})


class SlideReader:
    """Tile source for whole-slide images using OpenSlide.

    Locations are always Level-0 coordinates. Tiles are read from the
    coarsest pyramid level that still resolves the requested output size,
    then resampled so their long side matches the requested resolution.

    Usage:
        with SlideReader("/path/to/slide.svs") as reader:
            info = reader.get_info()
            thumb = reader.get_thumbnail(512, 512)
            tile = reader.get_tile(Region(x=0, y=0, width=2048, height=2048), 2048)
    """

    __slots__ = ("_info", "_path", "_slide")

    def __init__(self, path: str | Path) -> None:
        """Open a slide file.

        Args:
            path: Path to the slide.

        Raises:
            SourceOpenError: If the file doesn't exist, has an unsupported
                extension, or cannot be opened by OpenSlide.
        """
        self._path = Path(path).resolve()
        self._info: ImageInfo | None = None
        self._slide: openslide.OpenSlide | None

        if not self._path.exists():
            raise SourceOpenError("File not found", path=self._path)

        suffix = self._path.suffix.lower()
        if suffix not in SUPPORTED_EXTENSIONS:
            raise SourceOpenError(
                f"Unsupported file extension '{suffix}'. "
                f"Supported: {', '.join(sorted(SUPPORTED_EXTENSIONS))}",
                path=self._path,
            )

        try:
            self._slide = openslide.OpenSlide(str(self._path))
        except openslide.OpenSlideError as e:
            raise SourceOpenError(f"Failed to open slide: {e}", path=self._path) from e

    @property
    def path(self) -> Path:
        """Return the path to the slide file."""
        return self._path

    def _ensure_open(self) -> openslide.OpenSlide:
        slide = self._slide
        if slide is None:
            raise TileFetchError("Slide is closed", path=self._path)
        return slide

    def get_info(self) -> ImageInfo:
        """Return Level-0 dimensions (cached after the first call)."""
        if self._info is None:
            width, height = self._ensure_open().dimensions
            self._info = ImageInfo(width=width, height=height)
        return self._info

    def get_thumbnail(self, max_width: int, max_height: int) -> Image.Image:
        """Get an RGB thumbnail of the whole slide.

        Raises:
            ThumbnailUnavailable: If the slide is closed, the size is invalid,
                or OpenSlide fails.
        """
        if max_width <= 0 or max_height <= 0:
            raise ThumbnailUnavailable(
                f"Invalid thumbnail size {(max_width, max_height)}",
                path=self._path,
            )
        slide = self._slide
        if slide is None:
            raise ThumbnailUnavailable("Slide is closed", path=self._path)

        try:
            thumbnail = slide.get_thumbnail((max_width, max_height))
            return thumbnail.convert("RGB")
        except Exception as e:
            raise ThumbnailUnavailable(
                f"Failed to generate thumbnail: {e}", path=self._path
            ) from e

    def get_tile(self, region: Region, target_resolution: int) -> Image.Image:
        """Read a region and render it with long side target_resolution.

        Args:
            region: Bounds in Level-0 coordinates.
            target_resolution: Long side of the returned image in pixels.

        Returns:
            PIL Image in RGB mode. Pixels outside the slide are black.

        Raises:
            TileFetchError: If the read fails.
        """
        slide = self._ensure_open()
        if target_resolution <= 0:
            raise TileFetchError(
                f"Invalid target resolution {target_resolution}",
                path=self._path,
                region=region.to_tuple(),
            )

        downsample = region.long_side / target_resolution
        try:
            level = slide.get_best_level_for_downsample(downsample)
            level_downsample = slide.level_downsamples[level]
            size = (
                max(1, int(region.width / level_downsample)),
                max(1, int(region.height / level_downsample)),
            )
            rgba = slide.read_region((region.x, region.y), level, size)
        except (openslide.OpenSlideError, ctypes.ArgumentError) as e:
            raise TileFetchError(
                f"Failed to read region: {e}",
                path=self._path,
                region=region.to_tuple(),
            ) from e

        return fit_long_side(rgba.convert("RGB"), target_resolution)

    def close(self) -> None:
        """Close the slide and release resources."""
        if self._slide is None:
            return
        self._slide.close()
        self._slide = None

    def __enter__(self) -> SlideReader:
        """Enter context manager."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Exit context manager and close the slide."""
        self.close()

    def __repr__(self) -> str:
        """Return string representation."""
        return f"SlideReader(path={self._path!r})"


class ImageTileSource:
    """Tile source over an in-memory Pillow image.

    Intended for flat raster files and small test images; the whole image
    is held in memory.
    """

    __slots__ = ("_image",)

    def __init__(self, image: Image.Image) -> None:
        self._image = image.convert("RGB")

    @classmethod
    def open(cls, path: str | Path) -> ImageTileSource:
        """Load a raster file from disk.

        Raises:
            SourceOpenError: If Pillow cannot read the file.
        """
        try:
            with Image.open(path) as image:
                image.load()
                return cls(image)
        except (OSError, ValueError) as e:
            raise SourceOpenError(f"Failed to open image: {e}", path=path) from e

    def get_info(self) -> ImageInfo:
        width, height = self._image.size
        return ImageInfo(width=width, height=height)

    def get_thumbnail(self, max_width: int, max_height: int) -> Image.Image:
        if max_width <= 0 or max_height <= 0:
            raise ThumbnailUnavailable(
                f"Invalid thumbnail size {(max_width, max_height)}"
            )
        thumbnail = self._image.copy()
        thumbnail.thumbnail((max_width, max_height), Image.Resampling.LANCZOS)
        return thumbnail

    def get_tile(self, region: Region, target_resolution: int) -> Image.Image:
        if target_resolution <= 0:
            raise TileFetchError(
                f"Invalid target resolution {target_resolution}",
                region=region.to_tuple(),
            )
        # crop() pads out-of-bounds areas with black
        tile = self._image.crop((region.x, region.y, region.right, region.bottom))
        return fit_long_side(tile, target_resolution)

    def close(self) -> None:
        """Nothing to release; present for interface symmetry with SlideReader."""

    def __enter__(self) -> ImageTileSource:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()


def open_tile_source(path: str | Path) -> SlideReader | ImageTileSource:
    """Open a file with the tile source matching its extension.

    Raises:
        SourceOpenError: If the extension is not recognised or opening fails.
    """
    path = Path(path)
    suffix = path.suffix.lower()
    if suffix in SUPPORTED_EXTENSIONS:
        return SlideReader(path)
    if suffix in RASTER_EXTENSIONS:
        if not path.exists():
            raise SourceOpenError("File not found", path=path)
        return ImageTileSource.open(path)
    raise SourceOpenError(f"Unsupported file extension '{suffix}'", path=path)


__all__ = [
    "RASTER_EXTENSIONS",
    "SUPPORTED_EXTENSIONS",
    "ImageTileSource",
    "SlideReader",
    "TileSource",
    "open_tile_source",
]
