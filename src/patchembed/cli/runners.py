"""CLI runners bridging typer commands to the embedding service.

Each runner opens what it needs, does one job and returns a plain result
object; formatting is left to cli.main.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from patchembed.cluster import engine
from patchembed.config import Settings, settings
from patchembed.errors import MalformedQuery
from patchembed.geometry import Region
from patchembed.models.registry import ModelRegistry
from patchembed.service import EmbeddingService
from patchembed.store.spatial_store import SpatialEmbeddingStore
from patchembed.utils.logging import get_logger
from patchembed.wsi.reader import open_tile_source

if TYPE_CHECKING:
    from patchembed.store.schemas import EmbeddingRecord


@dataclass
class GenerateOutcome:
    """Result from `patchembed generate`."""

    image_id: str
    model_id: str
    status: str
    total_regions: int
    succeeded: int
    failures: dict[int, str]
    records_written: int
    records_total: int


@dataclass
class ClusterOutcome:
    """Result from `patchembed cluster`."""

    image_id: str
    k: int
    sizes: dict[int, int] = field(default_factory=dict)
    assignments: list[dict[str, Any]] = field(default_factory=list)


def resolve_settings(store_dir: Path | None) -> Settings:
    """Return settings, overriding STORE_DIR when given on the command line."""
    if store_dir is None:
        return settings
    return settings.model_copy(update={"STORE_DIR": store_dir})


def parse_point(value: str | None, name: str) -> tuple[float, float] | None:
    """Parse an "X,Y" option into a bound.

    Raises:
        MalformedQuery: If the value is not two comma-separated numbers.
    """
    if value is None:
        return None
    parts = [part.strip() for part in value.split(",")]
    if len(parts) != 2:
        raise MalformedQuery(f"--{name} must be 'X,Y'", value=value)
    try:
        return (float(parts[0]), float(parts[1]))
    except ValueError as e:
        raise MalformedQuery(f"--{name} must contain numbers", value=value) from e


def record_to_dict(record: EmbeddingRecord, *, with_vector: bool = False) -> dict[str, Any]:
    """Serialise a record for JSON output."""
    data: dict[str, Any] = {
        "record_id": record.record_id,
        "image_id": record.image_id,
        "region": record.region.model_dump(),
        "model": record.model,
        "dimension": record.dimension,
    }
    if with_vector:
        data["vector"] = list(record.vector)
    return data


def list_models(config: Settings | None = None) -> list[dict[str, Any]]:
    """Return every registry entry as a dict."""
    config = config or settings
    registry = ModelRegistry.from_settings(config.MODEL_REGISTRY_PATH)
    return [model.model_dump() for model in registry]


def run_generate(
    *,
    image_path: Path,
    image_id: str | None,
    model_id: str | None,
    cell_size: int | None,
    config: Settings,
) -> GenerateOutcome:
    """Segment and embed one image file."""
    logger = get_logger(__name__)
    image_id = image_id or image_path.name

    async def _generate() -> GenerateOutcome:
        with open_tile_source(image_path) as source:
            async with EmbeddingService(source, image_id, config=config) as service:
                generated = await service.generate_embeddings(
                    model_id, cell_width=cell_size, cell_height=cell_size
                )
        batch = generated.batch
        return GenerateOutcome(
            image_id=image_id,
            model_id=batch.model_id,
            status=batch.status,
            total_regions=batch.total_regions,
            succeeded=len(batch.succeeded),
            failures=batch.failures,
            records_written=batch.records_written,
            records_total=len(generated.records),
        )

    logger.info("Running generate", image=str(image_path), image_id=image_id)
    return asyncio.run(_generate())


def run_query(
    *,
    image_id: str | None,
    lower: str | None,
    upper: str | None,
    latest_only: bool,
    config: Settings,
    model: str | None = None,
) -> list[EmbeddingRecord]:
    """Range query against the store."""
    lower_xy = parse_point(lower, "lower")
    upper_xy = parse_point(upper, "upper")
    with SpatialEmbeddingStore.from_settings(config) as store:
        return store.query_range(
            image_id, lower_xy, upper_xy, model=model, latest_only=latest_only
        )


def run_count(*, image_id: str | None, config: Settings) -> int:
    """Count stored records."""
    with SpatialEmbeddingStore.from_settings(config) as store:
        return store.count(image_id)


def run_cluster(
    *,
    image_id: str,
    k: int | None,
    method: str,
    seed: int | None,
    config: Settings,
    model: str | None = None,
) -> ClusterOutcome:
    """Cluster one image's latest records from a single model."""
    k = k or config.DEFAULT_CLUSTERS
    records = _latest_model_records(image_id, model, config)

    assignments = engine.run_clustering(
        records,
        k,
        method,
        max_iterations=config.KMEANS_MAX_ITERATIONS,
        seed=seed,
    )
    sizes: dict[int, int] = {}
    for assignment in assignments:
        sizes[assignment.cluster_id] = sizes.get(assignment.cluster_id, 0) + 1
    return ClusterOutcome(
        image_id=image_id,
        k=k,
        sizes=dict(sorted(sizes.items())),
        assignments=[
            {
                "record_id": assignment.record.record_id,
                "region": assignment.record.region.model_dump(),
                "cluster_id": assignment.cluster_id,
            }
            for assignment in assignments
        ],
    )


def run_similar(
    *,
    image_id: str,
    selection: Region,
    threshold: float | None,
    config: Settings,
    model: str | None = None,
) -> list[tuple[EmbeddingRecord, float]]:
    """Find records similar to a rectangular selection, within one model."""
    threshold = config.SIMILARITY_THRESHOLD if threshold is None else threshold
    records = _latest_model_records(image_id, model, config)

    selected = engine.records_in_selection(records, selection)
    if not selected:
        return []
    return engine.find_similar(selected, records, threshold)


def _latest_model_records(
    image_id: str, model: str | None, config: Settings
) -> list[EmbeddingRecord]:
    with SpatialEmbeddingStore.from_settings(config) as store:
        return store.query_range(
            image_id, model=model or config.DEFAULT_MODEL, latest_only=True
        )
