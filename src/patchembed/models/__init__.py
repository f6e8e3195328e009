"""Embedding model registry and inference backends."""

from patchembed.models.backends import (
    BackendFactory,
    InferenceBackend,
    TimmBackend,
    create_backend,
)
from patchembed.models.registry import (
    DEFAULT_MODELS,
    ImageTransforms,
    ModelRegistry,
    ModelSpec,
)

__all__ = [
    "DEFAULT_MODELS",
    "BackendFactory",
    "ImageTransforms",
    "InferenceBackend",
    "ModelRegistry",
    "ModelSpec",
    "TimmBackend",
    "create_backend",
]
