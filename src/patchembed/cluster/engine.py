"""Clustering and similarity over retrieved embedding records.

Implements:
- k-means with uniform random initial centroids (sampled with replacement)
- Cosine similarity, zero when either vector has zero norm
- Centroid similarity: mean of a selection scored against every record
- Strict threshold filtering of similarity scores

Everything here works on a read-only snapshot of records and never touches
the store.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np
import numpy.typing as npt

if TYPE_CHECKING:
    from patchembed.geometry import Region
    from patchembed.store.schemas import EmbeddingRecord

SUPPORTED_METHODS = ("kmeans",)
DEFAULT_SIMILARITY_THRESHOLD = 0.7
DEFAULT_MAX_ITERATIONS = 100


@dataclass(frozen=True)
class ClusterAssignment:
    """A record paired with the cluster it was assigned to."""

    record: EmbeddingRecord
    cluster_id: int


def _as_matrix(vectors: Sequence[Sequence[float]]) -> npt.NDArray[np.float64]:
    matrix = np.asarray(vectors, dtype=np.float64)
    if matrix.ndim != 2:
        raise ValueError("vectors must all have the same dimension")
    return matrix


def k_means(
    vectors: Sequence[Sequence[float]],
    k: int,
    max_iterations: int = DEFAULT_MAX_ITERATIONS,
    seed: int | None = None,
) -> list[int]:
    """Partition vectors into k clusters.

    Initial centroids are drawn uniformly at random, with replacement, from
    the input vectors. Each iteration assigns every vector to its nearest
    centroid by Euclidean distance (ties go to the lowest centroid index),
    then moves each centroid to the mean of its members. A centroid with no
    members stays where it is. Iteration stops when no assignment changes
    or after max_iterations.

    Args:
        vectors: Input vectors, all of the same dimension.
        k: Number of clusters (>= 1).
        max_iterations: Upper bound on assignment passes.
        seed: Seed for centroid sampling; None gives a different run each time.

    Returns:
        Cluster index in [0, k) for each input vector, in input order.

    Raises:
        ValueError: If k < 1 or max_iterations < 1.
    """
    if k < 1:
        raise ValueError(f"k must be >= 1, got {k}")
    if max_iterations < 1:
        raise ValueError(f"max_iterations must be >= 1, got {max_iterations}")
    if len(vectors) == 0:
        return []

    points = _as_matrix(vectors)
    rng = np.random.default_rng(seed)
    centroids = points[rng.integers(0, len(points), size=k)].copy()

    point_norms = np.einsum("ij,ij->i", points, points)[:, np.newaxis]
    assignment = np.full(len(points), -1, dtype=np.int64)
    for _ in range(max_iterations):
        # Squared distances as |p|^2 - 2 p.c + |c|^2, an N x k matrix
        distances = points @ centroids.T
        distances *= -2.0
        distances += point_norms
        distances += np.einsum("ij,ij->i", centroids, centroids)
        # argmin returns the first minimum, which is the lowest centroid index
        new_assignment = np.argmin(distances, axis=1)
        if np.array_equal(new_assignment, assignment):
            break
        assignment = new_assignment
        for cluster in range(k):
            members = points[assignment == cluster]
            if len(members):
                centroids[cluster] = members.mean(axis=0)

    return [int(cluster) for cluster in assignment]


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Return dot(a, b) / (|a| |b|), or 0.0 if either norm is zero."""
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        raise ValueError(f"Dimension mismatch: {va.shape} vs {vb.shape}")
    norm = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if norm == 0.0:
        return 0.0
    return float(np.dot(va, vb) / norm)


def similarity_to_centroid(
    selected: Sequence[EmbeddingRecord],
    records: Sequence[EmbeddingRecord],
) -> list[float]:
    """Score every record against the mean vector of a selection.

    Raises:
        ValueError: If the selection is empty.
    """
    if not selected:
        raise ValueError("Selection must contain at least one record")
    centroid = _as_matrix([record.vector for record in selected]).mean(axis=0)
    return [cosine_similarity(centroid, record.vector) for record in records]


def filter_by_similarity(
    scores: Sequence[float],
    threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
) -> list[int]:
    """Return indices whose score is strictly greater than threshold."""
    return [index for index, score in enumerate(scores) if score > threshold]


def records_in_selection(
    records: Sequence[EmbeddingRecord],
    selection: Region,
) -> list[EmbeddingRecord]:
    """Return records whose region centre lies inside the selection (edges included)."""
    return [
        record for record in records if selection.contains_point(record.region.center)
    ]


def find_similar(
    selected: Sequence[EmbeddingRecord],
    records: Sequence[EmbeddingRecord],
    threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
) -> list[tuple[EmbeddingRecord, float]]:
    """Return (record, score) for records more similar than threshold to the selection."""
    scores = similarity_to_centroid(selected, records)
    return [(records[i], scores[i]) for i in filter_by_similarity(scores, threshold)]


def run_clustering(
    records: Sequence[EmbeddingRecord],
    k: int,
    method: str = "kmeans",
    *,
    max_iterations: int = DEFAULT_MAX_ITERATIONS,
    seed: int | None = None,
) -> list[ClusterAssignment]:
    """Cluster records and pair each with its cluster id.

    Raises:
        ValueError: If method is not supported.
    """
    if method not in SUPPORTED_METHODS:
        raise ValueError(
            f"Unknown clustering method: {method!r}. "
            f"Supported: {', '.join(SUPPORTED_METHODS)}"
        )
    labels = k_means(
        [record.vector for record in records],
        k,
        max_iterations=max_iterations,
        seed=seed,
    )
    return [
        ClusterAssignment(record=record, cluster_id=label)
        for record, label in zip(records, labels, strict=True)
    ]
