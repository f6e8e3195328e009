"""Constants for tissue segmentation."""

from __future__ import annotations

# Long side of the thumbnail the tissue grid is sampled from
DEFAULT_THUMBNAIL_SIZE: int = 512

# Cells per axis when the caller does not give an explicit cell size
DEFAULT_GRID_DIM: int = 16

# Cells whose background fraction reaches this value are dropped
DEFAULT_EMPTINESS_THRESHOLD: float = 0.8

# A pixel is background when every RGB channel is strictly above this value
DEFAULT_BACKGROUND_CUTOFF: int = 200

_MAX_CHANNEL_VALUE: int = 255
