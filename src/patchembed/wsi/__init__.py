"""Tile-source layer for patchembed.

Abstractions over the image being embedded: its dimensions, a thumbnail for
tissue segmentation, and region tiles rendered at a requested resolution.

Key Components:
    - TileSource: Protocol consumed by the segmenter and pipeline driver
    - SlideReader: OpenSlide-backed source for pyramidal slides
    - ImageTileSource: Pillow-backed source for flat raster images
    - open_tile_source: Picks a source by file extension

Example:
    from patchembed.wsi import open_tile_source

    with open_tile_source("slide.svs") as source:
        info = source.get_info()
        thumb = source.get_thumbnail(512, 512)
"""

from patchembed.wsi.reader import (
    RASTER_EXTENSIONS,
    SUPPORTED_EXTENSIONS,
    ImageTileSource,
    SlideReader,
    open_tile_source,
)
from patchembed.wsi.types import ImageInfo, TileSource, fit_long_side

__all__ = [
    "RASTER_EXTENSIONS",
    "SUPPORTED_EXTENSIONS",
    "ImageInfo",
    "ImageTileSource",
    "SlideReader",
    "TileSource",
    "fit_long_side",
    "open_tile_source",
]
