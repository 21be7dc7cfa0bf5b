from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Callable, Optional, Tuple

import numpy as np

from ..types import DimRange


class InferenceBackend(ABC):
    """
    Execution backend contract used by `EngineHandle`.

    A backend owns the loaded network and exposes one forward pass. It reports
    the I/O contract it discovered at load time so the engine can validate
    tensors before they reach the runtime.
    """

    name: str = "backend"
    #: True only if `infer` may be called from several threads at once.
    concurrent_safe: bool = False
    #: Dimension of the text-embedding input; None if the model takes no text input.
    embedding_dim: Optional[int] = None
    #: Class names stored in the model artifact, if any.
    model_class_names: Optional[Tuple[str, ...]] = None

    @property
    @abstractmethod
    def input_height(self) -> DimRange:
        ...

    @property
    @abstractmethod
    def input_width(self) -> DimRange:
        ...

    @property
    def accepts_text(self) -> bool:
        return self.embedding_dim is not None

    @abstractmethod
    def infer(self, blob: np.ndarray, embedding: Optional[np.ndarray] = None) -> np.ndarray:
        """Run one forward pass and return the raw prediction tensor."""


class CallableBackend(InferenceBackend):
    """
    Wrap any `fn(blob, embedding) -> raw` callable as a backend.

    Concurrency safety of an arbitrary callable is unknown, so it defaults to
    serialized access.
    """

    name = "callable"

    def __init__(
        self,
        fn: Callable[[np.ndarray, Optional[np.ndarray]], np.ndarray],
        input_shape: Tuple[int, int],
        *,
        embedding_dim: Optional[int] = None,
        concurrent_safe: bool = False,
        model_class_names: Optional[Tuple[str, ...]] = None,
    ):
        self._fn = fn
        w, h = (int(v) for v in input_shape)
        self._width = DimRange.fixed(w)
        self._height = DimRange.fixed(h)
        self.embedding_dim = embedding_dim
        self.concurrent_safe = concurrent_safe
        self.model_class_names = tuple(model_class_names) if model_class_names is not None else None

    @property
    def input_height(self) -> DimRange:
        return self._height

    @property
    def input_width(self) -> DimRange:
        return self._width

    def infer(self, blob: np.ndarray, embedding: Optional[np.ndarray] = None) -> np.ndarray:
        return np.asarray(self._fn(blob, embedding))
