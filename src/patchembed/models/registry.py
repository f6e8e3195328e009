"""Registry of embedding models the worker can run.

Each entry fixes the model's input geometry (how many full-resolution pixels
one sub-patch covers and the square size the network expects) and its
per-channel normalisation. Built-in entries can be replaced by a JSON file
pointed to by MODEL_REGISTRY_PATH.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from pathlib import Path
from typing import Literal, Self

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator

from patchembed.errors import ModelNotFound

_IMAGENET_MEAN = (0.485, 0.456, 0.406)
_IMAGENET_STD = (0.229, 0.224, 0.225)


class ImageTransforms(BaseModel, frozen=True):
    """Per-channel normalisation applied after scaling pixels to [0, 1]."""

    mean: tuple[float, float, float] = _IMAGENET_MEAN
    std: tuple[float, float, float] = _IMAGENET_STD

    @model_validator(mode="after")
    def _validate_std(self) -> Self:
        if any(value <= 0 for value in self.std):
            raise ValueError("std values must be positive")
        return self


class ModelSpec(BaseModel):
    """Description of one embedding model.

    Attributes:
        model_name: Registry key, e.g. "CTransPath".
        model_url: Weights location understood by the backend
            (for timm, a model name or "hf-hub:<repo>" reference).
        embedding_dimension: Length of the vectors the model produces.
        tile_resolution: Full-resolution pixels covered by one sub-patch side.
        tile_size_for_model: Square input size S of the NCHW tensor.
        image_transforms: Normalisation parameters.
        stem: Patch-embedding layer the checkpoint was trained with. "conv"
            selects the convolutional stem CTransPath replaces the Swin
            patch projection with.
        gated: Weights need HUGGINGFACE_TOKEN to download.
        enabled: Disabled models are listed but cannot be selected.
    """

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    model_name: str = Field(..., min_length=1)
    model_url: str = Field(..., min_length=1)
    embedding_dimension: int = Field(..., gt=0)
    tile_resolution: int = Field(..., gt=0)
    tile_size_for_model: int = Field(..., gt=0)
    image_transforms: ImageTransforms = Field(default_factory=ImageTransforms)
    stem: Literal["patch", "conv"] = "patch"
    gated: bool = False
    enabled: bool = True


DEFAULT_MODELS: tuple[ModelSpec, ...] = (
    ModelSpec(
        model_name="CTransPath",
        model_url="hf-hub:1aurent/swin_tiny_patch4_window7_224.CTransPath",
        embedding_dimension=768,
        tile_resolution=224,
        tile_size_for_model=224,
        stem="conv",
    ),
    ModelSpec(
        model_name="ResNet50",
        model_url="hf-hub:timm/resnet50.a1_in1k",
        embedding_dimension=2048,
        tile_resolution=256,
        tile_size_for_model=224,
    ),
    ModelSpec(
        model_name="UNI",
        model_url="hf-hub:MahmoodLab/UNI",
        embedding_dimension=1024,
        tile_resolution=224,
        tile_size_for_model=224,
        gated=True,
        enabled=False,  # Gated weights; enable once HUGGINGFACE_TOKEN is granted
    ),
)

_MODEL_LIST_ADAPTER = TypeAdapter(list[ModelSpec])


class ModelRegistry:
    """Ordered, name-indexed collection of ModelSpecs."""

    __slots__ = ("_models",)

    def __init__(self, models: Iterable[ModelSpec] = DEFAULT_MODELS) -> None:
        self._models: dict[str, ModelSpec] = {}
        for model in models:
            if model.model_name in self._models:
                raise ValueError(f"Duplicate model name: {model.model_name!r}")
            self._models[model.model_name] = model

    @classmethod
    def from_json(cls, path: str | Path) -> ModelRegistry:
        """Load a registry from a JSON list of model entries."""
        models = _MODEL_LIST_ADAPTER.validate_json(Path(path).read_bytes())
        return cls(models)

    @classmethod
    def from_settings(cls, registry_path: Path | None) -> ModelRegistry:
        """Use the JSON override when configured, else the built-in entries."""
        if registry_path is None:
            return cls()
        return cls.from_json(registry_path)

    def get(self, name: str) -> ModelSpec:
        """Select an enabled model by name.

        Raises:
            ModelNotFound: If the name is unknown or the model is disabled.
        """
        model = self._models.get(name)
        if model is None:
            raise ModelNotFound(
                f"Model not found: {name}. Available: "
                + ", ".join(self.enabled_names())
            )
        if not model.enabled:
            raise ModelNotFound(f"Model is disabled: {name}")
        return model

    def enabled_names(self) -> list[str]:
        """Return enabled model names in registry order."""
        return [name for name, model in self._models.items() if model.enabled]

    def __iter__(self) -> Iterator[ModelSpec]:
        return iter(self._models.values())

    def __len__(self) -> int:
        return len(self._models)

    def __contains__(self, name: object) -> bool:
        return name in self._models
