"""
Inference engine adapter: owns a loaded backend and exposes one forward pass.

The handle is read-only after `load`. Backends that report
`concurrent_safe = False` (or whose safety is unknown) have `infer` serialized
behind a per-handle lock; ONNX Runtime sessions run concurrently.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Callable, Optional, Sequence, Tuple, Union

import numpy as np

from .backends.base import CallableBackend, InferenceBackend
from .config import resolve_path
from .errors import InferenceError, ModelLoadError, YoloWorldError
from .vocabulary import VocabularyEmbedding


logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

_ONNX_SUFFIXES = {".onnx"}
_TORCHSCRIPT_SUFFIXES = {".torchscript", ".ts", ".pt"}


class EngineHandle:
    """
    Loaded network plus the input size it will be fed.

    Use `load()` for model files or `EngineHandle.from_callable()` to wrap any
    `fn(tensor, embedding) -> raw` function.
    """

    def __init__(
        self,
        backend: InferenceBackend,
        input_shape: Optional[Tuple[int, int]] = None,
        *,
        model_path: Optional[PathLike] = None,
    ):
        self.backend = backend
        self.model_path = Path(model_path) if model_path is not None else None

        if input_shape is None:
            input_shape = (backend.input_width.opt, backend.input_height.opt)
        w, h = (int(v) for v in input_shape)
        if w % 32 or h % 32 or w <= 0 or h <= 0:
            raise ModelLoadError("input shape must be positive multiples of 32", detail=f"got ({w}, {h})")
        if not backend.input_width.contains(w) or not backend.input_height.contains(h):
            raise ModelLoadError(
                "input shape is outside what the model accepts",
                detail=f"requested ({w}, {h}), model width {backend.input_width}, height {backend.input_height}",
            )
        self.input_shape: Tuple[int, int] = (w, h)
        self._lock = None if backend.concurrent_safe else threading.Lock()

    @classmethod
    def from_callable(
        cls,
        fn: Callable[[np.ndarray, Optional[np.ndarray]], np.ndarray],
        input_shape: Tuple[int, int] = (640, 640),
        *,
        embedding_dim: Optional[int] = None,
        concurrent_safe: bool = False,
        model_class_names: Optional[Sequence[str]] = None,
    ) -> "EngineHandle":
        backend = CallableBackend(
            fn,
            input_shape,
            embedding_dim=embedding_dim,
            concurrent_safe=concurrent_safe,
            model_class_names=tuple(model_class_names) if model_class_names is not None else None,
        )
        return cls(backend, input_shape)

    @property
    def concurrent_safe(self) -> bool:
        return self._lock is None

    @property
    def embedding_dim(self) -> Optional[int]:
        return self.backend.embedding_dim

    @property
    def accepts_text(self) -> bool:
        return self.backend.accepts_text

    @property
    def model_class_names(self) -> Optional[Tuple[str, ...]]:
        return self.backend.model_class_names

    @property
    def tensor_shape(self) -> Tuple[int, int, int, int]:
        w, h = self.input_shape
        return (1, 3, h, w)

    def infer(self, tensor: np.ndarray, vocabulary: VocabularyEmbedding) -> np.ndarray:
        return infer(self, tensor, vocabulary)

    def warmup(self, num_classes: int = 1) -> None:
        """Run one throwaway forward pass so the first real call is not slowed by lazy init."""

        dim = self.embedding_dim if self.embedding_dim is not None else 0
        n = getattr(self.backend, "text_num_classes", None) or num_classes
        dummy_vocab = VocabularyEmbedding(
            class_names=tuple(f"class{i}" for i in range(n)),
            vectors=np.zeros((n, dim), dtype=np.float32),
        )
        infer(self, np.zeros(self.tensor_shape, dtype=np.float32), dummy_vocab)
        logger.debug("Warm-up pass done for %s", self.model_path or self.backend.name)

    def __repr__(self) -> str:
        return (
            f"EngineHandle(backend={self.backend.name!r}, model_path={self.model_path}, "
            f"input_shape={self.input_shape}, concurrent_safe={self.concurrent_safe})"
        )


def infer(handle: EngineHandle, tensor: np.ndarray, vocabulary: VocabularyEmbedding) -> np.ndarray:
    """
    Run the network on one preprocessed tensor.

    Shapes are checked exactly; a mismatch is an `InferenceError`, never a
    silent reshape. Any backend failure is re-raised as `InferenceError`.
    """

    if not isinstance(tensor, np.ndarray):
        raise InferenceError("input tensor must be a NumPy array", detail=f"got {type(tensor).__name__}")
    if tuple(tensor.shape) != handle.tensor_shape:
        raise InferenceError(
            "input tensor shape does not match the model input",
            detail=f"expected {handle.tensor_shape}, got {tuple(tensor.shape)}",
        )

    embedding = None
    if handle.accepts_text:
        if handle.embedding_dim is not None and vocabulary.embedding_dim != handle.embedding_dim:
            raise InferenceError(
                "vocabulary embedding dimension does not match the model text input",
                detail=f"model expects {handle.embedding_dim}, got {vocabulary.embedding_dim}",
            )
        embedding = vocabulary.vectors

    try:
        if handle._lock is None:
            raw = handle.backend.infer(tensor, embedding)
        else:
            with handle._lock:
                raw = handle.backend.infer(tensor, embedding)
    except YoloWorldError:
        raise
    except Exception as exc:
        raise InferenceError(f"{handle.backend.name} backend failed", detail=str(exc)) from exc

    raw = np.asarray(raw)
    if raw.ndim != 3 or raw.shape[0] != 1:
        raise InferenceError("model output must be shaped [1, rows, cols]", detail=f"got {raw.shape}")
    return raw


def load(
    model_path: PathLike,
    *,
    backend: Optional[str] = None,
    input_shape: Optional[Tuple[int, int]] = None,
    root: Optional[PathLike] = "auto",
    warmup: bool = False,
    onnx_providers: Optional[Sequence[str]] = None,
    onnx_input_name: Optional[str] = None,
    onnx_text_input_name: Optional[str] = None,
    onnx_output_name: Optional[str] = None,
    torch_device: str = "cpu",
    torch_half: bool = False,
    torch_output_index: int = 0,
    torch_embedding_dim: Optional[int] = None,
) -> EngineHandle:
    """
    Load a model file and return an `EngineHandle`.

    Args:
        model_path: path to the model file; relative paths resolve against `root`
        backend: "onnxruntime" or "torchscript"; None infers it from the extension
        input_shape: (width, height) to feed; None uses the model's static size (or 640x640)
        warmup: run one dummy forward pass before returning
    """

    resolved = resolve_path(model_path, root=root)
    if not resolved.exists():
        raise ModelLoadError("model file not found", detail=str(resolved))

    chosen = backend
    if chosen is None:
        suffix = resolved.suffix.lower()
        if suffix in _ONNX_SUFFIXES:
            chosen = "onnxruntime"
        elif suffix in _TORCHSCRIPT_SUFFIXES:
            chosen = "torchscript"
        else:
            raise ModelLoadError(
                f"Could not infer backend from extension '{suffix}'", detail="pass backend=... explicitly"
            )

    chosen = chosen.lower()
    if chosen == "onnxruntime":
        from .backends.onnxruntime_backend import OnnxRuntimeBackend, OnnxRuntimeBackendConfig

        impl: InferenceBackend = OnnxRuntimeBackend(
            resolved,
            OnnxRuntimeBackendConfig(
                providers=onnx_providers,
                input_name=onnx_input_name,
                text_input_name=onnx_text_input_name,
                output_name=onnx_output_name,
                input_shape=input_shape,
            ),
        )
    elif chosen == "torchscript":
        from .backends.torchscript_backend import TorchScriptBackend, TorchScriptBackendConfig

        impl = TorchScriptBackend(
            resolved,
            TorchScriptBackendConfig(
                device=torch_device,
                half=torch_half,
                output_index=torch_output_index,
                input_shape=input_shape or (640, 640),
                embedding_dim=torch_embedding_dim,
            ),
        )
    else:
        raise ModelLoadError(f"Unsupported backend: {backend!r}")

    handle = EngineHandle(impl, input_shape, model_path=resolved)
    logger.info("Engine ready: %r", handle)
    if warmup:
        try:
            handle.warmup()
        except InferenceError as exc:
            raise ModelLoadError("warm-up forward pass failed", detail=str(exc)) from exc
    return handle
