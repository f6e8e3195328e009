"""Embedding worker: tile -> sub-patches -> tensors -> vectors.

A delivered tile is rescaled so that ``tile_resolution`` source pixels become
``tile_size_for_model`` model pixels, then cut row-major into model-sized
squares. Squares that overhang the rescaled tile are padded with black.
Each square is normalised into a [1, 3, S, S] float32 tensor and run through
the model's backend; the first vector of the output is kept as the
embedding.
"""

from __future__ import annotations

import math
import threading
from typing import TYPE_CHECKING

import cv2
import numpy as np
import numpy.typing as npt

from patchembed.errors import WorkerError
from patchembed.geometry import Region
from patchembed.models.backends import create_backend
from patchembed.models.registry import ModelRegistry
from patchembed.pipeline.messages import EmbeddingsReady, WorkerFailure
from patchembed.store.schemas import EmbeddingRecord
from patchembed.utils.logging import get_logger
from patchembed.vision.constants import _MAX_CHANNEL_VALUE

if TYPE_CHECKING:
    from PIL import Image

    from patchembed.models.backends import BackendFactory, InferenceBackend
    from patchembed.models.registry import ImageTransforms, ModelSpec
    from patchembed.pipeline.messages import PipelineJob, WorkerResponse

logger = get_logger(__name__)


def split_into_subpatches(
    tile: Image.Image,
    region: Region,
    spec: ModelSpec,
) -> list[tuple[Region, npt.NDArray[np.uint8]]]:
    """Cut a tile into model-sized RGB squares.

    Args:
        tile: RGB tile covering region.
        region: Full-resolution bounds of the tile.
        spec: Model geometry (tile_resolution, tile_size_for_model).

    Returns:
        (sub_region, pixels) pairs in row-major order. pixels has shape
        (S, S, 3); sub_region is in full-resolution image coordinates.
    """
    pixels = np.asarray(tile.convert("RGB"), dtype=np.uint8)
    tile_h, tile_w = pixels.shape[:2]
    size = spec.tile_size_for_model
    resolution = spec.tile_resolution

    rows = math.ceil(tile_h / resolution)
    columns = math.ceil(tile_w / resolution)

    scaled_w = max(1, round(tile_w * size / resolution))
    scaled_h = max(1, round(tile_h * size / resolution))
    if (scaled_w, scaled_h) != (tile_w, tile_h):
        shrinking = scaled_w < tile_w
        interpolation = cv2.INTER_AREA if shrinking else cv2.INTER_LINEAR
        pixels = cv2.resize(pixels, (scaled_w, scaled_h), interpolation=interpolation)

    canvas = np.zeros((rows * size, columns * size, 3), dtype=np.uint8)
    copy_h = min(scaled_h, canvas.shape[0])
    copy_w = min(scaled_w, canvas.shape[1])
    canvas[:copy_h, :copy_w] = pixels[:copy_h, :copy_w]

    # Tile pixels -> full-resolution pixels
    scale_x = region.width / tile_w
    scale_y = region.height / tile_h
    sub_w = max(1, int(resolution * scale_x))
    sub_h = max(1, int(resolution * scale_y))

    patches: list[tuple[Region, npt.NDArray[np.uint8]]] = []
    for row in range(rows):
        for column in range(columns):
            sub_region = Region(
                x=region.x + int(column * resolution * scale_x),
                y=region.y + int(row * resolution * scale_y),
                width=sub_w,
                height=sub_h,
            )
            square = canvas[
                row * size : (row + 1) * size,
                column * size : (column + 1) * size,
            ]
            patches.append((sub_region, square))
    return patches


def to_tensor(
    patch: npt.NDArray[np.uint8],
    transforms: ImageTransforms,
) -> npt.NDArray[np.float32]:
    """Normalise an (S, S, 3) uint8 square into a [1, 3, S, S] float32 tensor."""
    values = patch.astype(np.float32) / _MAX_CHANNEL_VALUE
    mean = np.asarray(transforms.mean, dtype=np.float32)
    std = np.asarray(transforms.std, dtype=np.float32)
    values = (values - mean) / std
    return np.ascontiguousarray(values.transpose(2, 0, 1)[np.newaxis])


def first_vector(output: npt.NDArray[np.floating]) -> npt.NDArray[np.float32]:
    """Return the leading vector along the last axis (the CLS token or pooled row)."""
    output = np.asarray(output, dtype=np.float32)
    if output.ndim == 0 or output.size == 0:
        raise WorkerError("Model returned an empty output")
    return output.reshape(-1, output.shape[-1])[0]


class EmbeddingWorker:
    """Turns PipelineJobs into WorkerResponses.

    Backends are created on first use of a model and cached by model name.
    process() never raises: every failure becomes a WorkerFailure.
    """

    def __init__(
        self,
        registry: ModelRegistry | None = None,
        backend_factory: BackendFactory | None = None,
    ) -> None:
        self._registry = registry or ModelRegistry()
        self._backend_factory = backend_factory or create_backend
        self._backends: dict[str, InferenceBackend] = {}
        self._lock = threading.Lock()

    @property
    def registry(self) -> ModelRegistry:
        """Return the model registry."""
        return self._registry

    def _backend_for(self, spec: ModelSpec) -> InferenceBackend:
        with self._lock:
            backend = self._backends.get(spec.model_name)
            if backend is None:
                backend = self._backend_factory(spec)
                self._backends[spec.model_name] = backend
            return backend

    def embed(self, job: PipelineJob) -> list[EmbeddingRecord]:
        """Embed every sub-patch of a job's tile.

        Raises:
            ModelNotFound: If job.model_id is unknown or disabled.
            WorkerError: If inference fails or returns the wrong dimension.
        """
        spec = self._registry.get(job.model_id)
        backend = self._backend_for(spec)
        transforms = spec.image_transforms

        records: list[EmbeddingRecord] = []
        for sub_region, patch in split_into_subpatches(job.tile, job.region, spec):
            vector = first_vector(backend.run(to_tensor(patch, transforms)))
            if vector.shape[0] != spec.embedding_dimension:
                raise WorkerError(
                    f"Expected {spec.embedding_dimension}-d embedding, "
                    f"got {vector.shape[0]}",
                    model=spec.model_name,
                )
            records.append(
                EmbeddingRecord(
                    image_id=job.image_id,
                    region=sub_region,
                    vector=tuple(vector.tolist()),
                    model=spec.model_name,
                )
            )
        return records

    def process(self, job: PipelineJob) -> WorkerResponse:
        """Run one job, reporting failures as messages."""
        try:
            records = self.embed(job)
        except WorkerError as e:
            logger.warning("Worker job failed", region_index=job.index, error=str(e))
            return WorkerFailure(reason=str(e), is_final=job.is_final)
        except Exception as e:
            logger.exception("Inference raised", region_index=job.index)
            return WorkerFailure(
                reason=f"{type(e).__name__}: {e}", is_final=job.is_final
            )
        return EmbeddingsReady(records=records, is_final=job.is_final)
