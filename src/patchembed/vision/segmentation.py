"""Grid-based tissue segmentation on a slide thumbnail.

A regular grid of cells is laid over the full-resolution image and mapped
proportionally onto a low-resolution thumbnail. Each cell is scored by the
fraction of its thumbnail pixels that look like blank glass (all three
channels brighter than a cutoff). Near-blank cells are dropped and the rest
are returned densest first, so the pipeline embeds tissue before edges.
"""

from __future__ import annotations

import math
from fractions import Fraction
from typing import TYPE_CHECKING

import numpy as np
import numpy.typing as npt

from patchembed.errors import ThumbnailUnavailable
from patchembed.geometry import CandidateRegion
from patchembed.vision.constants import (
    _MAX_CHANNEL_VALUE,
    DEFAULT_BACKGROUND_CUTOFF,
    DEFAULT_EMPTINESS_THRESHOLD,
    DEFAULT_GRID_DIM,
    DEFAULT_THUMBNAIL_SIZE,
)

if TYPE_CHECKING:
    from PIL import Image

    from patchembed.wsi.types import TileSource


def grid_cell_size(
    full_width: int,
    full_height: int,
    grid_dim: int = DEFAULT_GRID_DIM,
) -> tuple[int, int]:
    """Return the cell size that splits the image into grid_dim x grid_dim cells.

    Rounds up so the grid never grows an extra row or column.
    """
    if grid_dim <= 0:
        raise ValueError(f"grid_dim must be > 0, got {grid_dim}")
    return (math.ceil(full_width / grid_dim), math.ceil(full_height / grid_dim))


class TissueSegmenter:
    """Rank grid cells of a slide by how much tissue they contain.

    Attributes:
        emptiness_threshold: Cells with background fraction >= this are dropped.
        background_cutoff: Channel brightness above which a pixel is background.
    """

    __slots__ = ("_background_cutoff", "_emptiness_threshold")

    def __init__(
        self,
        emptiness_threshold: float = DEFAULT_EMPTINESS_THRESHOLD,
        background_cutoff: int = DEFAULT_BACKGROUND_CUTOFF,
    ) -> None:
        """Initialize the segmenter.

        Args:
            emptiness_threshold: Drop threshold in (0, 1].
            background_cutoff: Brightness cutoff in [0, 255].

        Raises:
            ValueError: If either parameter is out of range.
        """
        if not 0.0 < emptiness_threshold <= 1.0:
            raise ValueError(
                f"emptiness_threshold must be in (0, 1], got {emptiness_threshold}"
            )
        if not 0 <= background_cutoff <= _MAX_CHANNEL_VALUE:
            raise ValueError(
                f"background_cutoff must be in [0, 255], got {background_cutoff}"
            )
        self._emptiness_threshold = emptiness_threshold
        self._background_cutoff = background_cutoff

    @property
    def emptiness_threshold(self) -> float:
        """Return the drop threshold."""
        return self._emptiness_threshold

    @property
    def background_cutoff(self) -> int:
        """Return the background brightness cutoff."""
        return self._background_cutoff

    def background_mask(self, thumbnail: Image.Image) -> npt.NDArray[np.bool_]:
        """Classify every thumbnail pixel as background (True) or not."""
        if thumbnail.mode != "RGB":
            thumbnail = thumbnail.convert("RGB")
        pixels = np.asarray(thumbnail)
        return np.all(pixels > self._background_cutoff, axis=2)

    def segment(
        self,
        thumbnail: Image.Image,
        full_width: int,
        full_height: int,
        cell_width: int,
        cell_height: int,
    ) -> list[CandidateRegion]:
        """Score grid cells on a thumbnail and return the tissue-bearing ones.

        Algorithm:
        1. Lay a ceil(W / cw) x ceil(H / ch) grid over the full image.
        2. Map each cell onto the thumbnail by linear scaling.
        3. Count background pixels inside the cell's thumbnail footprint.
        4. Drop cells whose background fraction reaches the threshold.
        5. Scale the surviving cells' thumbnail top-left back to full
           resolution (truncating) and sort ascending by background fraction.
           The sort is stable, so ties keep row-major scan order.

        Args:
            thumbnail: Thumbnail of the whole image.
            full_width: Full-resolution image width.
            full_height: Full-resolution image height.
            cell_width: Grid cell width in full-resolution pixels.
            cell_height: Grid cell height in full-resolution pixels.

        Returns:
            CandidateRegions sorted densest first. Cells on the right and
            bottom border keep the full cell size even if that overshoots
            the image.

        Raises:
            ValueError: If any dimension is not positive.
        """
        if full_width <= 0 or full_height <= 0:
            raise ValueError(
                f"Image dimensions must be positive, got {full_width}x{full_height}"
            )
        if cell_width <= 0 or cell_height <= 0:
            raise ValueError(
                f"Cell dimensions must be positive, got {cell_width}x{cell_height}"
            )

        background = self.background_mask(thumbnail)
        thumb_height, thumb_width = background.shape
        if thumb_width == 0 or thumb_height == 0:
            raise ValueError("Thumbnail is empty")

        columns = math.ceil(full_width / cell_width)
        rows = math.ceil(full_height / cell_height)

        # Exact rationals keep the thumbnail -> full-resolution round trip
        # from truncating a pixel short.
        footprint_w = Fraction(cell_width * thumb_width, full_width)
        footprint_h = Fraction(cell_height * thumb_height, full_height)

        candidates: list[CandidateRegion] = []
        for row in range(rows):
            thumb_y = Fraction(row * cell_height * thumb_height, full_height)
            y0, y1 = _pixel_span(thumb_y, footprint_h, thumb_height)
            for column in range(columns):
                thumb_x = Fraction(column * cell_width * thumb_width, full_width)
                x0, x1 = _pixel_span(thumb_x, footprint_w, thumb_width)

                proportion = float(background[y0:y1, x0:x1].mean())
                if proportion >= self._emptiness_threshold:
                    continue

                candidates.append(
                    CandidateRegion(
                        x=math.trunc(thumb_x * full_width / thumb_width),
                        y=math.trunc(thumb_y * full_height / thumb_height),
                        width=cell_width,
                        height=cell_height,
                        empty_proportion=proportion,
                    )
                )

        candidates.sort(key=lambda candidate: candidate.empty_proportion)
        return candidates

    def segment_source(
        self,
        source: TileSource,
        *,
        cell_width: int | None = None,
        cell_height: int | None = None,
        grid_dim: int = DEFAULT_GRID_DIM,
        thumbnail_size: int = DEFAULT_THUMBNAIL_SIZE,
    ) -> list[CandidateRegion]:
        """Fetch a thumbnail from a tile source and segment it.

        When cell_width/cell_height are omitted the image is split into
        grid_dim cells per axis.

        Raises:
            ThumbnailUnavailable: If the source cannot describe the image or
                produce a thumbnail. Segmentation never partially succeeds.
        """
        try:
            info = source.get_info()
            thumbnail = source.get_thumbnail(thumbnail_size, thumbnail_size)
        except ThumbnailUnavailable:
            raise
        except Exception as e:
            raise ThumbnailUnavailable(f"Failed to obtain thumbnail: {e}") from e

        default_w, default_h = grid_cell_size(info.width, info.height, grid_dim)
        return self.segment(
            thumbnail,
            info.width,
            info.height,
            cell_width or default_w,
            cell_height or default_h,
        )


def _pixel_span(start: Fraction, extent: Fraction, limit: int) -> tuple[int, int]:
    """Return the [lo, hi) pixel range covered by a fractional span, at least 1 px."""
    lo = min(math.floor(start), limit - 1)
    hi = min(math.ceil(start + extent), limit)
    return lo, max(hi, lo + 1)


def segment_tissue(  # noqa: PLR0913
    thumbnail: Image.Image,
    full_width: int,
    full_height: int,
    cell_width: int,
    cell_height: int,
    emptiness_threshold: float = DEFAULT_EMPTINESS_THRESHOLD,
    background_cutoff: int = DEFAULT_BACKGROUND_CUTOFF,
) -> list[CandidateRegion]:
    """Convenience function wrapping TissueSegmenter.segment."""
    segmenter = TissueSegmenter(
        emptiness_threshold=emptiness_threshold,
        background_cutoff=background_cutoff,
    )
    return segmenter.segment(thumbnail, full_width, full_height, cell_width, cell_height)
