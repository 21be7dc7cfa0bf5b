from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from ..errors import InferenceError, ModelLoadError
from ..metadata import parse_names_metadata
from ..types import DimRange
from .base import InferenceBackend


logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

_FLOAT_TYPES = {"tensor(float)", "tensor(float16)"}


@dataclass(frozen=True)
class OnnxRuntimeBackendConfig:
    """
    Configuration for ONNX Runtime inference.

    - providers: ORT execution providers (e.g., ["CUDAExecutionProvider", "CPUExecutionProvider"])
    - input_name/text_input_name/output_name: override auto-selected I/O names if needed
    - input_shape: (width, height) the caller will feed; must match static model dims
    - max_input_side: upper bound reported for dynamic H/W dims
    """

    providers: Optional[Sequence[str]] = None
    input_name: Optional[str] = None
    text_input_name: Optional[str] = None
    output_name: Optional[str] = None
    input_shape: Optional[Tuple[int, int]] = None
    max_input_side: int = 1920
    intra_op_num_threads: int = 0


def _dim(value: Any) -> Optional[int]:
    # ORT reports symbolic dims as strings (e.g. "height") or None.
    return int(value) if isinstance(value, int) and value > 0 else None


class OnnxRuntimeBackend(InferenceBackend):
    """
    ONNX Runtime backend for YOLO-World exports.

    Expects an NCHW float32 blob shaped (1, 3, H, W) and, when the model has a
    text input, a float32 `[N, D]` (or `[1, N, D]`) class-embedding matrix.
    Returns the prediction output as a NumPy array.

    `InferenceSession.run` is safe to call concurrently, so this backend
    reports `concurrent_safe = True`.
    """

    name = "onnxruntime"
    concurrent_safe = True

    def __init__(self, model_path: PathLike, cfg: OnnxRuntimeBackendConfig = OnnxRuntimeBackendConfig()):
        try:
            import onnxruntime as ort  # type: ignore
        except Exception as e:  # pragma: no cover
            raise ImportError(
                "onnxruntime is required for the ONNX backend. Install it with `pip install onnxruntime` "
                "(or `onnxruntime-gpu`)."
            ) from e

        self._ort = ort
        self.model_path = Path(model_path)
        if not self.model_path.exists():
            raise ModelLoadError("model file not found", detail=str(self.model_path))

        sess_opts = ort.SessionOptions()
        if cfg.intra_op_num_threads > 0:
            sess_opts.intra_op_num_threads = int(cfg.intra_op_num_threads)
        providers = list(cfg.providers) if cfg.providers is not None else None
        try:
            self.session = ort.InferenceSession(str(self.model_path), sess_options=sess_opts, providers=providers)
        except Exception as exc:
            raise ModelLoadError("failed to load ONNX model", detail=f"{self.model_path}: {exc}") from exc

        self._discover_io(cfg)
        self._read_metadata()
        logger.info(
            "Loaded %s: image=%s%s text=%s%s output=%s%s providers=%s",
            self.model_path.name,
            self.input_name,
            self._image_shape,
            self.text_input_name,
            self._text_shape,
            self.output_name,
            self._output_shape,
            list(self.providers_in_use),
        )

    # ------------------------------------------------------------------ #
    # I/O discovery
    # ------------------------------------------------------------------ #
    def _discover_io(self, cfg: OnnxRuntimeBackendConfig) -> None:
        inputs = {i.name: i for i in self.session.get_inputs()}
        outputs = {o.name: o for o in self.session.get_outputs()}

        if cfg.input_name is not None:
            if cfg.input_name not in inputs:
                raise ModelLoadError(f"Input name {cfg.input_name!r} not found", detail=f"available: {list(inputs)}")
            image_in = inputs[cfg.input_name]
        else:
            rank4 = [i for i in inputs.values() if len(i.shape or ()) == 4]
            if not rank4:
                raise ModelLoadError("model has no rank-4 image input", detail=f"inputs: {self._describe(inputs.values())}")
            image_in = rank4[0]

        shape = list(image_in.shape or ())
        if len(shape) != 4:
            raise ModelLoadError(f"image input {image_in.name!r} must be rank 4 [1, 3, H, W]", detail=f"got {shape}")
        if image_in.type not in _FLOAT_TYPES:
            raise ModelLoadError(f"image input {image_in.name!r} must be float", detail=f"got {image_in.type}")
        batch, channels = _dim(shape[0]), _dim(shape[1])
        if batch not in (None, 1):
            raise ModelLoadError("image input batch must be 1", detail=f"got {shape}")
        if channels != 3:
            raise ModelLoadError("image input must have 3 channels", detail=f"got {shape}")

        self.input_name = image_in.name
        self._input_dtype = np.float16 if image_in.type == "tensor(float16)" else np.float32
        self._image_shape = shape
        self._height = self._dim_range(_dim(shape[2]), cfg, axis=1, label="height")
        self._width = self._dim_range(_dim(shape[3]), cfg, axis=0, label="width")

        # Text / vocabulary input
        others = [i for name, i in inputs.items() if name != self.input_name]
        if cfg.text_input_name is not None:
            if cfg.text_input_name not in inputs:
                raise ModelLoadError(
                    f"Text input name {cfg.text_input_name!r} not found", detail=f"available: {list(inputs)}"
                )
            text_in = inputs[cfg.text_input_name]
        else:
            candidates = [i for i in others if i.type in _FLOAT_TYPES and len(i.shape or ()) in (2, 3)]
            text_in = candidates[0] if candidates else None

        unused = [i.name for i in others if text_in is None or i.name != text_in.name]
        if unused:
            raise ModelLoadError("model has inputs this backend cannot feed", detail=f"{unused}")

        self.text_input_name: Optional[str] = None
        self._text_shape: List[Any] = []
        self.embedding_dim = None
        self._text_num_classes: Optional[int] = None
        if text_in is not None:
            tshape = list(text_in.shape or ())
            if len(tshape) not in (2, 3):
                raise ModelLoadError(
                    f"text input {text_in.name!r} must be [N, D] or [1, N, D]", detail=f"got {tshape}"
                )
            if len(tshape) == 3 and _dim(tshape[0]) not in (None, 1):
                raise ModelLoadError("text input batch must be 1", detail=f"got {tshape}")
            self.text_input_name = text_in.name
            self._text_dtype = np.float16 if text_in.type == "tensor(float16)" else np.float32
            self._text_shape = tshape
            self.embedding_dim = _dim(tshape[-1])
            if self.embedding_dim is None:
                raise ModelLoadError("text input embedding dimension must be static", detail=f"got {tshape}")
            self._text_num_classes = _dim(tshape[-2])

        # Prediction output
        if cfg.output_name is not None:
            if cfg.output_name not in outputs:
                raise ModelLoadError(f"Output name {cfg.output_name!r} not found", detail=f"available: {list(outputs)}")
            out = outputs[cfg.output_name]
        else:
            # If output_name not provided, pick first output.
            out = self.session.get_outputs()[0]
        oshape = list(out.shape or ())
        if len(oshape) != 3:
            raise ModelLoadError(f"output {out.name!r} must be rank 3", detail=f"got {oshape}")
        if _dim(oshape[0]) not in (None, 1):
            raise ModelLoadError("output batch must be 1", detail=f"got {oshape}")
        self.output_name = out.name
        self._output_shape = oshape

    def _dim_range(self, static: Optional[int], cfg: OnnxRuntimeBackendConfig, *, axis: int, label: str) -> DimRange:
        wanted = int(cfg.input_shape[axis]) if cfg.input_shape is not None else None
        if static is not None:
            if static % 32:
                raise ModelLoadError(f"model input {label} must be a multiple of 32", detail=f"got {static}")
            if wanted is not None and wanted != static:
                raise ModelLoadError(
                    f"configured input {label} does not match the model",
                    detail=f"model {static}, configured {wanted}",
                )
            return DimRange.fixed(static)
        opt = wanted if wanted is not None else 640
        return DimRange(min=32, opt=opt, max=max(cfg.max_input_side, opt))

    def _read_metadata(self) -> None:
        meta = self.session.get_modelmeta().custom_metadata_map or {}
        self.metadata: Dict[str, str] = dict(meta)
        names = parse_names_metadata(self.metadata.get("names"))
        self.model_class_names = tuple(names) if names else None

    @staticmethod
    def _describe(nodes) -> List[str]:
        return [f"{n.name}{list(n.shape or ())}" for n in nodes]

    # ------------------------------------------------------------------ #
    # Properties
    # ------------------------------------------------------------------ #
    @property
    def input_height(self) -> DimRange:
        return self._height

    @property
    def input_width(self) -> DimRange:
        return self._width

    @property
    def text_num_classes(self) -> Optional[int]:
        """Static class count baked into the text input shape, if any."""
        return self._text_num_classes

    @property
    def providers_in_use(self) -> Sequence[str]:
        # ORT returns providers in priority order for this session.
        return tuple(self.session.get_providers())

    @property
    def available_providers(self) -> Sequence[str]:
        return tuple(self._ort.get_available_providers())

    # ------------------------------------------------------------------ #
    # Inference
    # ------------------------------------------------------------------ #
    def infer(self, blob: np.ndarray, embedding: Optional[np.ndarray] = None) -> np.ndarray:
        inputs: Dict[str, Any] = {self.input_name: np.ascontiguousarray(blob, dtype=self._input_dtype)}

        if self.text_input_name is not None:
            if embedding is None:
                raise InferenceError("model requires class embeddings but none were given")
            txt = np.ascontiguousarray(embedding, dtype=self._text_dtype)
            if self._text_num_classes is not None and txt.shape[0] != self._text_num_classes:
                raise InferenceError(
                    "vocabulary size does not match the model's static text input",
                    detail=f"model {self._text_num_classes} classes, got {txt.shape[0]}",
                )
            if len(self._text_shape) == 3:
                txt = txt[None, ...]
            inputs[self.text_input_name] = txt

        try:
            outputs = self.session.run([self.output_name], inputs)
        except Exception as exc:
            raise InferenceError("ONNX Runtime forward pass failed", detail=str(exc)) from exc
        return outputs[0]
