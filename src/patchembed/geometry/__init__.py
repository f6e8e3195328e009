"""Geometry module for patchembed.

Coordinate primitives shared by the segmenter, the worker and the spatial
store. All coordinates are full-resolution (Level-0) pixels.

Example:
    from patchembed.geometry import Region

    region = Region(x=2048, y=4096, width=512, height=512)
    print(region.center)
"""

from patchembed.geometry.primitives import CandidateRegion, Point, Region

__all__ = [
    "CandidateRegion",
    "Point",
    "Region",
]
