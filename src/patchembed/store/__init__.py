"""Durable spatial store for embedding records."""

from patchembed.store.schemas import EmbeddingRecord, ImageSummary
from patchembed.store.spatial_store import STORE_VERSION, SpatialEmbeddingStore

__all__ = [
    "STORE_VERSION",
    "EmbeddingRecord",
    "ImageSummary",
    "SpatialEmbeddingStore",
]
