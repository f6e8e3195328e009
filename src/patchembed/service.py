"""Per-image facade over segmentation, the embedding pipeline and retrieval.

EmbeddingService owns the worker, channel and store for one loaded image and
exposes the operations a viewer needs: generate embeddings, read them back
by spatial range, cluster them, and find regions similar to a selection.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from patchembed.cluster import engine
from patchembed.config import Settings, settings
from patchembed.models.registry import ModelRegistry
from patchembed.pipeline.channel import EmbeddingWorkerChannel
from patchembed.pipeline.driver import PipelineDriver
from patchembed.pipeline.worker import EmbeddingWorker
from patchembed.store.spatial_store import SpatialEmbeddingStore
from patchembed.utils.logging import get_logger
from patchembed.vision.segmentation import TissueSegmenter

if TYPE_CHECKING:
    from types import TracebackType

    from patchembed.cluster.engine import ClusterAssignment
    from patchembed.geometry import CandidateRegion, Region
    from patchembed.models.backends import BackendFactory
    from patchembed.pipeline.messages import BatchResult, CancellationToken
    from patchembed.store.schemas import EmbeddingRecord
    from patchembed.store.spatial_store import Bound
    from patchembed.wsi.types import TileSource

logger = get_logger(__name__)


@dataclass
class GenerationResult:
    """Batch outcome plus every record now stored for the image."""

    batch: BatchResult
    records: list[EmbeddingRecord] = field(default_factory=list)
    regions: list[CandidateRegion] = field(default_factory=list)


class EmbeddingService:
    """Embedding lifecycle for one image.

    Usage:
        async with EmbeddingService(source, "slide-1") as service:
            generated = await service.generate_embeddings("CTransPath")
            clusters = service.run_clustering(generated.records, k=5)
    """

    def __init__(  # noqa: PLR0913
        self,
        source: TileSource,
        image_id: str,
        *,
        store: SpatialEmbeddingStore | None = None,
        registry: ModelRegistry | None = None,
        backend_factory: BackendFactory | None = None,
        config: Settings | None = None,
    ) -> None:
        """Wire up the pipeline for an image.

        Args:
            source: Tile source for the image.
            image_id: Identifier records are stored under.
            store: Shared store; opened from config (and closed with the
                service) when omitted.
            registry: Model registry; loaded from config when omitted.
            backend_factory: Builds inference backends; defaults to timm.
            config: Settings; defaults to the process-wide settings.
        """
        self._config = config or settings
        self._source = source
        self._image_id = image_id
        self._owns_store = store is None
        self._store = store or SpatialEmbeddingStore.from_settings(self._config)
        self._registry = registry or ModelRegistry.from_settings(
            self._config.MODEL_REGISTRY_PATH
        )
        self._worker = EmbeddingWorker(self._registry, backend_factory)
        self._channel = EmbeddingWorkerChannel(
            self._worker,
            poll_interval=self._config.WORKER_POLL_INTERVAL,
            max_wait=self._config.WORKER_MAX_WAIT,
        )
        self._segmenter = TissueSegmenter(
            emptiness_threshold=self._config.EMPTINESS_THRESHOLD,
            background_cutoff=self._config.BACKGROUND_CUTOFF,
        )
        self._driver: PipelineDriver | None = None

    @property
    def image_id(self) -> str:
        """Return the image identifier."""
        return self._image_id

    @property
    def store(self) -> SpatialEmbeddingStore:
        """Return the spatial store."""
        return self._store

    @property
    def registry(self) -> ModelRegistry:
        """Return the model registry."""
        return self._registry

    @property
    def driver(self) -> PipelineDriver | None:
        """Return the driver of the most recent generate call."""
        return self._driver

    async def segment(
        self,
        *,
        cell_width: int | None = None,
        cell_height: int | None = None,
    ) -> list[CandidateRegion]:
        """Find tissue-bearing regions of the image, densest first.

        Raises:
            ThumbnailUnavailable: If no thumbnail can be produced.
        """
        return await asyncio.to_thread(
            self._segmenter.segment_source,
            self._source,
            cell_width=cell_width,
            cell_height=cell_height,
            grid_dim=self._config.GRID_DIM,
            thumbnail_size=self._config.THUMBNAIL_SIZE,
        )

    async def generate_embeddings(
        self,
        model_id: str | None = None,
        *,
        cancel_token: CancellationToken | None = None,
        cell_width: int | None = None,
        cell_height: int | None = None,
    ) -> GenerationResult:
        """Segment the image, embed every candidate region and persist results.

        Per-region failures are recorded in the batch result; only a missing
        thumbnail aborts the call.

        Raises:
            ThumbnailUnavailable: If segmentation cannot start.
        """
        model_id = model_id or self._config.DEFAULT_MODEL
        regions = await self.segment(cell_width=cell_width, cell_height=cell_height)
        logger.info(
            "Generating embeddings",
            image_id=self._image_id,
            model_id=model_id,
            regions=len(regions),
        )

        self._driver = PipelineDriver(
            self._source,
            self._channel,
            self._store,
            image_id=self._image_id,
            model_id=model_id,
        )
        batch = await self._driver.run(regions, cancel_token)
        return GenerationResult(
            batch=batch,
            records=self._store.query_range(self._image_id, model=model_id),
            regions=regions,
        )

    def retrieve_embeddings(
        self,
        image_id: str | None = None,
        lower: Bound | None = None,
        upper: Bound | None = None,
        *,
        model: str | None = None,
        latest_only: bool = False,
    ) -> list[EmbeddingRecord]:
        """Range query over stored records; all images when image_id is None.

        Raises:
            MalformedQuery: If a bound is not an (x, y) pair.
        """
        return self._store.query_range(
            image_id, lower, upper, model=model, latest_only=latest_only
        )

    def count(self, image_id: str | None = None) -> int:
        """Return the number of stored records."""
        return self._store.count(image_id)

    def run_clustering(
        self,
        records: Sequence[EmbeddingRecord] | None = None,
        k: int | None = None,
        method: str = "kmeans",
        *,
        seed: int | None = None,
        model_id: str | None = None,
    ) -> list[ClusterAssignment]:
        """Cluster records.

        Without explicit records, clusters this image's latest records from
        model_id (default: DEFAULT_MODEL).
        """
        if records is None:
            records = self._model_records(model_id)
        return engine.run_clustering(
            records,
            k or self._config.DEFAULT_CLUSTERS,
            method,
            max_iterations=self._config.KMEANS_MAX_ITERATIONS,
            seed=seed,
        )

    def find_similar(
        self,
        selection: Region,
        records: Sequence[EmbeddingRecord] | None = None,
        threshold: float | None = None,
        *,
        model_id: str | None = None,
    ) -> list[tuple[EmbeddingRecord, float]]:
        """Find records similar to those whose centre falls inside selection.

        Without explicit records, searches this image's latest records from
        model_id (default: DEFAULT_MODEL). Returns an empty list when the
        selection contains no records.
        """
        if records is None:
            records = self._model_records(model_id)
        selected = engine.records_in_selection(records, selection)
        if not selected:
            logger.info("Selection contains no records", selection=selection.to_tuple())
            return []
        if threshold is None:
            threshold = self._config.SIMILARITY_THRESHOLD
        return engine.find_similar(selected, records, threshold)

    def _model_records(self, model_id: str | None) -> list[EmbeddingRecord]:
        return self._store.query_range(
            self._image_id,
            model=model_id or self._config.DEFAULT_MODEL,
            latest_only=True,
        )

    async def aclose(self) -> None:
        """Stop the worker channel and close an owned store."""
        await self._channel.aclose()
        if self._owns_store:
            self._store.close()

    async def __aenter__(self) -> EmbeddingService:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.aclose()
