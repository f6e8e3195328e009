"""Shared pytest fixtures and configuration."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from pathlib import Path

import numpy as np
import numpy.typing as npt
import pytest
from PIL import Image

from patchembed.config import Settings
from patchembed.models.registry import ModelRegistry, ModelSpec
from patchembed.store.spatial_store import SpatialEmbeddingStore
from patchembed.utils.logging import clear_correlation_context, configure_logging

TINY_DIMENSION = 4


class MeanColorBackend:
    """Backend whose embedding is the per-channel mean of the input plus a bias.

    Deterministic, so similar-looking patches get similar vectors.
    """

    def __init__(self, dimension: int = TINY_DIMENSION) -> None:
        self.dimension = dimension
        self.calls = 0
        self.shapes: list[tuple[int, ...]] = []

    def run(self, tensor: npt.NDArray[np.float32]) -> npt.NDArray[np.float32]:
        self.calls += 1
        self.shapes.append(tensor.shape)
        means = tensor.mean(axis=(2, 3))[0]
        vector = np.ones(self.dimension, dtype=np.float32)
        vector[: min(3, self.dimension)] += means[: min(3, self.dimension)]
        # [1, tokens, dim] like a transformer's last hidden state
        return np.stack([vector, np.zeros_like(vector)])[np.newaxis]


@pytest.fixture(autouse=True)
def reset_logging_context() -> Iterator[None]:
    """Reset correlation context and stdout log handlers between tests."""
    clear_correlation_context()
    yield
    clear_correlation_context()
    root = logging.getLogger()
    for handler in list(root.handlers):
        if type(handler) is logging.StreamHandler:
            root.removeHandler(handler)


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Create a Settings instance with test-safe defaults."""
    return Settings(
        _env_file=None,  # type: ignore[call-arg]
        HUGGINGFACE_TOKEN="test-hf-token",
        LOG_LEVEL="DEBUG",
        LOG_FORMAT="console",
        STORE_DIR=tmp_path / "store",
        WORKER_POLL_INTERVAL=0.01,
        WORKER_MAX_WAIT=2.0,
        DEFAULT_MODEL="Tiny",
    )


@pytest.fixture
def configure_test_logging() -> Iterator[None]:
    """Configure logging for tests with console output."""
    configure_logging(level="DEBUG", log_format="console")
    yield


@pytest.fixture
def store() -> Iterator[SpatialEmbeddingStore]:
    """In-memory spatial store."""
    with SpatialEmbeddingStore() as memory_store:
        yield memory_store


@pytest.fixture
def tiny_spec() -> ModelSpec:
    """Small model: 32 source pixels per sub-patch, 16x16 model input."""
    return ModelSpec(
        model_name="Tiny",
        model_url="local:tiny",
        embedding_dimension=TINY_DIMENSION,
        tile_resolution=32,
        tile_size_for_model=16,
    )


@pytest.fixture
def tiny_registry(tiny_spec: ModelSpec) -> ModelRegistry:
    """Registry holding only the tiny model plus a disabled one."""
    disabled = tiny_spec.model_copy(update={"model_name": "Off", "enabled": False})
    return ModelRegistry([tiny_spec, disabled])


@pytest.fixture
def mean_color_backend() -> MeanColorBackend:
    """A single shared deterministic backend instance."""
    return MeanColorBackend()


@pytest.fixture
def backend_factory(
    mean_color_backend: MeanColorBackend,
) -> Callable[[ModelSpec], MeanColorBackend]:
    """Factory that always hands out the shared deterministic backend."""

    def factory(spec: ModelSpec) -> MeanColorBackend:
        mean_color_backend.dimension = spec.embedding_dimension
        return mean_color_backend

    return factory


@pytest.fixture
def tissue_image() -> Image.Image:
    """128x128 RGB image: white glass with tissue in the top-left quadrant.

    With a 64px grid the top-left cell is all tissue, the top-right and
    bottom-left cells are half tissue, and the bottom-right is blank.
    """
    pixels = np.full((128, 128, 3), 255, dtype=np.uint8)
    pixels[0:64, 0:64] = (150, 60, 120)
    pixels[0:32, 64:128] = (160, 70, 130)  # half of top-right cell
    pixels[64:96, 0:64] = (140, 50, 110)  # half of bottom-left cell
    return Image.fromarray(pixels)
