"""Inference backends that turn a normalised tensor into model output.

The worker only depends on the InferenceBackend protocol. The default
implementation runs timm models through PyTorch; both are optional
dependencies (``pip install patchembed[torch]``) and are imported lazily so
the rest of the package works without them.
"""

from __future__ import annotations

import os
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, Protocol

import numpy as np
import numpy.typing as npt

from patchembed.errors import WorkerError
from patchembed.utils.logging import get_logger

if TYPE_CHECKING:
    from patchembed.models.registry import ModelSpec

logger = get_logger(__name__)


class InferenceBackend(Protocol):
    """Protocol for running one model on a [1, 3, S, S] float32 tensor."""

    def run(self, tensor: npt.NDArray[np.float32]) -> npt.NDArray[np.float32]:
        """Run the model.

        Args:
            tensor: Normalised NCHW input.

        Returns:
            Raw model output. Its last axis is the embedding dimension; the
            first vector along the remaining axes is used as the embedding.
        """
        ...


BackendFactory = Callable[["ModelSpec"], InferenceBackend]


def conv_stem_layer(nn: Any) -> type:
    """Build the convolutional patch embedding used by CTransPath.

    CTransPath swaps the Swin 4x4 patch projection for two stride-2 3x3
    convolutions (with batch norm and ReLU) followed by a 1x1 projection. The
    hub checkpoint only loads into a model built with this stem, passed to
    timm as ``embed_layer``.

    Args:
        nn: The ``torch.nn`` module.

    Returns:
        An ``nn.Module`` subclass with timm's patch-embed constructor.
    """

    class ConvStem(nn.Module):  # type: ignore[misc, name-defined]
        def __init__(
            self,
            img_size: int | tuple[int, int] = 224,
            patch_size: int = 4,
            in_chans: int = 3,
            embed_dim: int = 768,
            norm_layer: Any = None,
            **kwargs: Any,
        ) -> None:
            super().__init__()
            if patch_size != 4 or embed_dim % 8:
                raise ValueError(
                    "ConvStem needs patch_size 4 and embed_dim divisible by 8"
                )
            if isinstance(img_size, int):
                img_size = (img_size, img_size)
            self.img_size = img_size
            self.patch_size = (patch_size, patch_size)
            self.grid_size = (img_size[0] // patch_size, img_size[1] // patch_size)
            self.num_patches = self.grid_size[0] * self.grid_size[1]

            layers: list[Any] = []
            in_dim, out_dim = in_chans, embed_dim // 8
            for _ in range(2):
                layers += [
                    nn.Conv2d(in_dim, out_dim, 3, stride=2, padding=1, bias=False),
                    nn.BatchNorm2d(out_dim),
                    nn.ReLU(inplace=True),
                ]
                in_dim, out_dim = out_dim, out_dim * 2
            layers.append(nn.Conv2d(in_dim, embed_dim, kernel_size=1))
            self.proj = nn.Sequential(*layers)
            self.norm = norm_layer(embed_dim) if norm_layer else nn.Identity()

        def forward(self, x: Any) -> Any:
            # NCHW -> NHWC, the layout Swin stages consume
            return self.norm(self.proj(x).permute(0, 2, 3, 1))

    return ConvStem


class TimmBackend:
    """Run a timm model (local name or ``hf-hub:`` reference) with PyTorch."""

    __slots__ = ("_device", "_model", "_torch")

    def __init__(
        self,
        spec: ModelSpec,
        *,
        device: str = "cpu",
        huggingface_token: str | None = None,
    ) -> None:
        """Load model weights.

        Args:
            spec: Registry entry; model_url is passed to timm.create_model.
            device: Torch device string.
            huggingface_token: Token for gated hub weights.

        Raises:
            WorkerError: If torch/timm are missing or the weights fail to load.
        """
        try:
            import timm  # noqa: PLC0415
            import torch  # noqa: PLC0415
        except ImportError as e:
            raise WorkerError(
                "The torch backend requires the 'torch' extra "
                "(pip install patchembed[torch])",
                model=spec.model_name,
            ) from e

        if huggingface_token:
            os.environ.setdefault("HF_TOKEN", huggingface_token)

        create_kwargs: dict[str, Any] = {}
        if spec.stem == "conv":
            create_kwargs["embed_layer"] = conv_stem_layer(torch.nn)

        logger.info("Loading model", model=spec.model_name, url=spec.model_url)
        try:
            model = timm.create_model(
                spec.model_url, pretrained=True, num_classes=0, **create_kwargs
            )
        except Exception as e:
            raise WorkerError(
                f"Failed to load model weights: {e}", model=spec.model_name
            ) from e

        self._torch: Any = torch
        self._device = device
        self._model = model.to(device).eval()

    def run(self, tensor: npt.NDArray[np.float32]) -> npt.NDArray[np.float32]:
        torch = self._torch
        with torch.inference_mode():
            batch = torch.from_numpy(np.ascontiguousarray(tensor)).to(self._device)
            output = self._model(batch)
        if isinstance(output, (list, tuple)):
            output = output[-1]
        return output.detach().cpu().numpy().astype(np.float32, copy=False)


def create_backend(spec: ModelSpec) -> InferenceBackend:
    """Default BackendFactory: build a TimmBackend on CPU.

    Raises:
        ConfigError: If the model is gated and HUGGINGFACE_TOKEN is not set.
    """
    from patchembed.config import settings  # noqa: PLC0415

    if spec.gated:
        token: str | None = settings.require_huggingface_token()
    else:
        token = settings.HUGGINGFACE_TOKEN
    return TimmBackend(spec, huggingface_token=token)
