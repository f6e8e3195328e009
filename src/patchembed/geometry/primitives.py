"""Geometry primitives for the embedding pipeline.

Immutable Pydantic models for points and regions in full-resolution
(Level-0) pixel coordinates, where (0, 0) is the top-left corner of the
source image.
"""

from __future__ import annotations

from typing import Self

from pydantic import BaseModel, Field


class Point(BaseModel, frozen=True):
    """A 2D point in full-resolution pixel coordinates.

    Attributes:
        x: Horizontal position (pixels from left edge).
        y: Vertical position (pixels from top edge).
    """

    x: float = Field(..., ge=0, description="X coordinate (pixels from left)")
    y: float = Field(..., ge=0, description="Y coordinate (pixels from top)")

    def to_tuple(self) -> tuple[float, float]:
        """Convert to (x, y) tuple."""
        return (self.x, self.y)


class Region(BaseModel, frozen=True):
    """A rectangular region in full-resolution coordinates.

    The region spans top-left (x, y) to bottom-right
    (x + width, y + height), the latter exclusive. Regions produced by the
    tissue segmenter at the right or bottom border may extend past the true
    image extent; they are not clipped.

    Attributes:
        x: Left edge X coordinate (>= 0).
        y: Top edge Y coordinate (>= 0).
        width: Horizontal extent in pixels (> 0).
        height: Vertical extent in pixels (> 0).
    """

    x: int = Field(..., ge=0, description="Left edge X coordinate")
    y: int = Field(..., ge=0, description="Top edge Y coordinate")
    width: int = Field(..., gt=0, description="Width in pixels")
    height: int = Field(..., gt=0, description="Height in pixels")

    @property
    def right(self) -> int:
        """Return the X coordinate of the right edge (exclusive)."""
        return self.x + self.width

    @property
    def bottom(self) -> int:
        """Return the Y coordinate of the bottom edge (exclusive)."""
        return self.y + self.height

    @property
    def long_side(self) -> int:
        """Return the larger of width and height."""
        return max(self.width, self.height)

    @property
    def center(self) -> Point:
        """Return the exact (possibly fractional) centre point."""
        return Point(x=self.x + self.width / 2, y=self.y + self.height / 2)

    def to_tuple(self) -> tuple[int, int, int, int]:
        """Convert to (x, y, width, height) tuple."""
        return (self.x, self.y, self.width, self.height)

    @classmethod
    def from_tuple(cls, bbox: tuple[int, int, int, int]) -> Self:
        """Create Region from (x, y, width, height) tuple."""
        return cls(x=bbox[0], y=bbox[1], width=bbox[2], height=bbox[3])

    def contains_point(self, point: Point) -> bool:
        """Check if a point lies inside this region, edges included.

        Selections drawn by a user are treated as closed rectangles, so a
        point sitting exactly on the right or bottom edge counts as inside.
        """
        return (
            self.x <= point.x <= self.right and self.y <= point.y <= self.bottom
        )

    def intersects(self, other: Region) -> bool:
        """Check if this region overlaps with another."""
        return not (
            other.x >= self.right
            or other.right <= self.x
            or other.y >= self.bottom
            or other.bottom <= self.y
        )


class CandidateRegion(Region, frozen=True):
    """A tissue-bearing grid cell proposed by the segmenter.

    Attributes:
        empty_proportion: Fraction of sampled thumbnail pixels classified as
            background, in [0, 1]. Lower means denser tissue.
    """

    empty_proportion: float = Field(..., ge=0.0, le=1.0)

    def to_region(self) -> Region:
        """Drop the segmentation score and return the plain bounds."""
        return Region(x=self.x, y=self.y, width=self.width, height=self.height)
