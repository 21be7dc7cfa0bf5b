from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple, Union

import numpy as np

from ..errors import InferenceError, ModelLoadError
from ..types import DimRange
from .base import InferenceBackend


logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


@dataclass(frozen=True)
class TorchScriptBackendConfig:
    """
    Configuration for TorchScript inference.

    - device: "cpu" or "cuda" (if available)
    - half: cast inputs to float16 (only if the model expects it)
    - output_index: if the model returns multiple outputs, select this index
    - input_shape: (width, height) the traced model was exported for
    - embedding_dim: text-embedding width; None for models traced without a text input
    """

    device: str = "cpu"
    half: bool = False
    output_index: int = 0
    input_shape: Tuple[int, int] = (640, 640)
    embedding_dim: Optional[int] = None


class TorchScriptBackend(InferenceBackend):
    """
    TorchScript backend using `torch.jit.load`.

    The traced module is called as `model(images)` or, when `embedding_dim` is
    set, `model(images, txt_feats)`. TorchScript modules carry mutable
    per-call state on CUDA, so calls are serialized by the engine.
    """

    name = "torchscript"
    concurrent_safe = False

    def __init__(self, model_path: PathLike, cfg: TorchScriptBackendConfig = TorchScriptBackendConfig()):
        try:
            import torch  # type: ignore
        except Exception as e:  # pragma: no cover
            raise ImportError("torch is required for the TorchScript backend. Install with `pip install torch`.") from e

        self._torch = torch
        self.model_path = Path(model_path)
        if not self.model_path.exists():
            raise ModelLoadError("model file not found", detail=str(self.model_path))

        self.device = torch.device(cfg.device)
        self.half = cfg.half
        self.output_index = cfg.output_index
        self.embedding_dim = cfg.embedding_dim
        w, h = (int(v) for v in cfg.input_shape)
        self._width = DimRange.fixed(w)
        self._height = DimRange.fixed(h)

        try:
            model = torch.jit.load(str(self.model_path), map_location=self.device)
        except Exception as exc:
            raise ModelLoadError("failed to load TorchScript model", detail=f"{self.model_path}: {exc}") from exc
        model.eval()
        self.model = model
        logger.info("Loaded %s on %s (half=%s)", self.model_path.name, self.device, self.half)

    @property
    def input_height(self) -> DimRange:
        return self._height

    @property
    def input_width(self) -> DimRange:
        return self._width

    def _to_device(self, arr: np.ndarray):
        x = self._torch.as_tensor(np.ascontiguousarray(arr), device=self.device)
        x = x.half() if self.half else x.float()
        return x.contiguous()

    def infer(self, blob: np.ndarray, embedding: Optional[np.ndarray] = None) -> np.ndarray:
        torch = self._torch
        args = [self._to_device(blob)]
        if self.embedding_dim is not None:
            if embedding is None:
                raise InferenceError("model requires class embeddings but none were given")
            args.append(self._to_device(embedding)[None, ...])

        try:
            with torch.no_grad():
                y = self.model(*args)
        except Exception as exc:
            raise InferenceError("TorchScript forward pass failed", detail=str(exc)) from exc

        if isinstance(y, (tuple, list)):
            y = y[self.output_index]

        if hasattr(y, "detach"):
            y = y.detach()
        return y.float().to("cpu").numpy()
