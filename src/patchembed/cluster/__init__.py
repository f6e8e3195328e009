"""Clustering and similarity search over embedding records."""

from patchembed.cluster.engine import (
    SUPPORTED_METHODS,
    ClusterAssignment,
    cosine_similarity,
    filter_by_similarity,
    find_similar,
    k_means,
    records_in_selection,
    run_clustering,
    similarity_to_centroid,
)

__all__ = [
    "SUPPORTED_METHODS",
    "ClusterAssignment",
    "cosine_similarity",
    "filter_by_similarity",
    "find_similar",
    "k_means",
    "records_in_selection",
    "run_clustering",
    "similarity_to_centroid",
]
