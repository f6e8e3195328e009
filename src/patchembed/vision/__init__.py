"""Vision module: tissue segmentation of slide thumbnails into candidate regions."""

from __future__ import annotations

from patchembed.vision.constants import (
    DEFAULT_BACKGROUND_CUTOFF,
    DEFAULT_EMPTINESS_THRESHOLD,
    DEFAULT_GRID_DIM,
    DEFAULT_THUMBNAIL_SIZE,
)
from patchembed.vision.segmentation import (
    TissueSegmenter,
    grid_cell_size,
    segment_tissue,
)

__all__ = [
    "DEFAULT_BACKGROUND_CUTOFF",
    "DEFAULT_EMPTINESS_THRESHOLD",
    "DEFAULT_GRID_DIM",
    "DEFAULT_THUMBNAIL_SIZE",
    "TissueSegmenter",
    "grid_cell_size",
    "segment_tissue",
]
