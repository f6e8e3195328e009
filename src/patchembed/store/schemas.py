"""Persisted record types for the spatial embedding store."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from patchembed.geometry import Region


class EmbeddingRecord(BaseModel):
    """One embedding vector for one region of one image.

    Attributes:
        image_id: Identifier of the source image.
        region: Full-resolution bounds the vector describes.
        vector: Embedding values, length equal to the model's dimension.
        model: Name of the model that produced the vector.
        record_id: Store-assigned auto-increment id; None until persisted.
    """

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    image_id: str = Field(..., min_length=1)
    region: Region
    vector: tuple[float, ...] = Field(..., min_length=1)
    model: str = Field(..., min_length=1)
    record_id: int | None = None

    @property
    def dimension(self) -> int:
        """Return the vector length."""
        return len(self.vector)

    @property
    def spatial_key(self) -> tuple[str, int, int]:
        """Return the compound (image_id, x, y) ordering key."""
        return (self.image_id, self.region.x, self.region.y)


class ImageSummary(BaseModel):
    """Coarse per-image summary: every vector plus light metadata.

    Rewritten wholesale whenever a batch for the image finishes.
    """

    model_config = ConfigDict(frozen=True)

    image_id: str
    vectors: list[list[float]] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    updated_at: datetime
