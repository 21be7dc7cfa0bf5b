"""
Class-name vocabulary -> embedding vectors consumed by the detector.

YOLO-World style models take the class list at inference time as a
`[N_classes, D_embed]` float input. Three encoders are provided:

- `LookupVocabularyEncoder`: precomputed table (e.g. CLIP text features dumped to .npz)
- `OnnxTextEncoder`: runs an exported text tower with ONNX Runtime
- `ExportedVocabularyEncoder`: model whose classes were baked in at export
  time; produces zero-width vectors and only checks the class list
"""

from __future__ import annotations

import json
import logging
import threading
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Mapping, Optional, Sequence, Tuple, Union

import numpy as np

from .errors import InferenceError, InvalidVocabulary, ModelLoadError


logger = logging.getLogger(__name__)

PathLike = Union[str, Path]
ClassNames = Tuple[str, ...]


def normalize_class_names(class_names: Sequence[str]) -> ClassNames:
    """
    Validate a class list and strip surrounding whitespace from each entry.

    Duplicates are kept: every occurrence gets its own index.
    """

    if class_names is None:
        raise InvalidVocabulary("class_names is required")
    if isinstance(class_names, (str, bytes)):
        raise InvalidVocabulary(
            "class_names must be a sequence of strings, not a single string",
            detail=f"got {class_names!r}",
        )
    names = list(class_names)
    if not names:
        raise InvalidVocabulary("class_names must not be empty")

    cleaned = []
    for i, name in enumerate(names):
        if not isinstance(name, str):
            raise InvalidVocabulary(f"class_names[{i}] must be a string", detail=f"got {type(name).__name__}")
        stripped = name.strip()
        if not stripped:
            raise InvalidVocabulary(f"class_names[{i}] is blank")
        cleaned.append(stripped)
    return tuple(cleaned)


@dataclass(frozen=True, eq=False)
class VocabularyEmbedding:
    """
    Embedding rows in caller order: row i belongs to class_names[i].
    """

    class_names: ClassNames
    vectors: np.ndarray

    def __post_init__(self) -> None:
        vectors = np.array(self.vectors, dtype=np.float32, copy=True)
        if vectors.ndim != 2 or vectors.shape[0] != len(self.class_names):
            raise InvalidVocabulary(
                "embedding must have one row per class",
                detail=f"{len(self.class_names)} classes, vectors shape {vectors.shape}",
            )
        vectors.setflags(write=False)
        object.__setattr__(self, "class_names", tuple(self.class_names))
        object.__setattr__(self, "vectors", vectors)

    def __len__(self) -> int:
        return len(self.class_names)

    @property
    def num_classes(self) -> int:
        return len(self.class_names)

    @property
    def embedding_dim(self) -> int:
        return int(self.vectors.shape[1])

    def name_of(self, class_index: int) -> str:
        return self.class_names[class_index]


class VocabularyEncoder(ABC):
    """
    Base encoder. Subclasses implement `_encode_texts`; `encode` validates the
    input and the produced matrix.
    """

    #: Expected vector length; None means "whatever the encoder returns".
    embedding_dim: Optional[int] = None
    normalize: bool = False

    def encode(self, class_names: Sequence[str]) -> VocabularyEmbedding:
        names = normalize_class_names(class_names)
        vectors = np.asarray(self._encode_texts(names), dtype=np.float32)

        if vectors.ndim != 2 or vectors.shape[0] != len(names):
            raise InvalidVocabulary(
                "encoder returned a malformed embedding matrix",
                detail=f"expected ({len(names)}, D), got {vectors.shape}",
            )
        if self.embedding_dim is not None and vectors.shape[1] != self.embedding_dim:
            raise InvalidVocabulary(
                "embedding length does not match the expected dimension",
                detail=f"expected {self.embedding_dim}, got {vectors.shape[1]}",
            )
        if self.normalize and vectors.shape[1] > 0:
            norms = np.linalg.norm(vectors, axis=1, keepdims=True)
            vectors = vectors / np.maximum(norms, 1e-12)

        return VocabularyEmbedding(class_names=names, vectors=vectors)

    @abstractmethod
    def _encode_texts(self, names: ClassNames) -> np.ndarray:
        ...


def encode(class_names: Sequence[str], encoder: VocabularyEncoder) -> VocabularyEmbedding:
    return encoder.encode(class_names)


class LookupVocabularyEncoder(VocabularyEncoder):
    """
    Precomputed name -> vector table.

    Typical usage with features dumped offline:
        enc = LookupVocabularyEncoder.from_npz("Models/clip_vocab.npz")
        vocab = enc.encode(["person", "shoe"])
    """

    def __init__(self, table: Mapping[str, Sequence[float]], *, normalize: bool = False):
        if not table:
            raise InvalidVocabulary("lookup table is empty")
        self._table: Dict[str, np.ndarray] = {}
        dims = set()
        for name, vec in table.items():
            arr = np.asarray(vec, dtype=np.float32).reshape(-1)
            dims.add(arr.shape[0])
            self._table[str(name).strip()] = arr
        if len(dims) != 1:
            raise InvalidVocabulary("lookup table vectors differ in length", detail=f"lengths {sorted(dims)}")
        self.embedding_dim = dims.pop()
        self.normalize = normalize

    @classmethod
    def from_npz(cls, path: PathLike, *, normalize: bool = False) -> "LookupVocabularyEncoder":
        """
        Load a table saved as `np.savez(path, names=[...], embeddings=[N, D])`.
        """

        p = Path(path)
        if not p.exists():
            raise FileNotFoundError(f"Vocabulary table not found: {p}")
        with np.load(p, allow_pickle=False) as data:
            if "names" not in data or "embeddings" not in data:
                raise InvalidVocabulary(f"{p} must contain 'names' and 'embeddings' arrays")
            names = [str(n) for n in data["names"].tolist()]
            embeddings = np.asarray(data["embeddings"], dtype=np.float32)
        if embeddings.ndim != 2 or embeddings.shape[0] != len(names):
            raise InvalidVocabulary(
                f"{p}: embeddings shape does not match names",
                detail=f"{len(names)} names, embeddings {embeddings.shape}",
            )
        return cls(dict(zip(names, embeddings)), normalize=normalize)

    @classmethod
    def from_json(cls, path: PathLike, *, normalize: bool = False) -> "LookupVocabularyEncoder":
        """Load a `{"name": [floats...], ...}` JSON object."""

        p = Path(path)
        if not p.exists():
            raise FileNotFoundError(f"Vocabulary table not found: {p}")
        try:
            payload = json.loads(p.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise InvalidVocabulary(f"Invalid vocabulary JSON: {p}") from exc
        if not isinstance(payload, dict):
            raise InvalidVocabulary("vocabulary JSON must be an object mapping name -> vector")
        return cls(payload, normalize=normalize)

    @property
    def known_names(self) -> Tuple[str, ...]:
        return tuple(self._table.keys())

    def _encode_texts(self, names: ClassNames) -> np.ndarray:
        missing = sorted({n for n in names if n not in self._table})
        if missing:
            raise InvalidVocabulary("class names not present in the lookup table", detail=f"missing {missing}")
        return np.stack([self._table[n] for n in names], axis=0)


class ExportedVocabularyEncoder(VocabularyEncoder):
    """
    For models exported with a fixed class list (no text input).

    Produces `[N, 0]` vectors. If `expected_names` is set, any other class list
    is rejected because the model cannot be re-prompted.
    """

    embedding_dim = 0

    def __init__(self, expected_names: Optional[Sequence[str]] = None):
        self.expected_names = normalize_class_names(expected_names) if expected_names is not None else None

    def _encode_texts(self, names: ClassNames) -> np.ndarray:
        if self.expected_names is not None and names != self.expected_names:
            raise InvalidVocabulary(
                "model vocabulary is fixed at export time",
                detail=f"expected {list(self.expected_names)}, got {list(names)}",
            )
        return np.zeros((len(names), 0), dtype=np.float32)


class OnnxTextEncoder(VocabularyEncoder):
    """
    Text tower (e.g. CLIP ViT-B/32 text model) exported to ONNX.

    `tokenizer` maps a batch of strings to an int64 `[N, L]` token-id array; the
    model's first output must be `[N, D]` text features.
    """

    def __init__(
        self,
        model_path: PathLike,
        tokenizer: Callable[[Sequence[str]], np.ndarray],
        *,
        providers: Optional[Sequence[str]] = None,
        input_name: Optional[str] = None,
        output_name: Optional[str] = None,
        normalize: bool = True,
    ):
        try:
            import onnxruntime as ort  # type: ignore
        except Exception as e:  # pragma: no cover
            raise ImportError(
                "onnxruntime is required for OnnxTextEncoder. Install it with `pip install onnxruntime`."
            ) from e

        self.model_path = Path(model_path)
        if not self.model_path.exists():
            raise ModelLoadError("text encoder model not found", detail=str(self.model_path))
        try:
            self.session = ort.InferenceSession(
                str(self.model_path), providers=list(providers) if providers is not None else None
            )
        except Exception as exc:
            raise ModelLoadError("failed to load text encoder", detail=f"{self.model_path}: {exc}") from exc

        self.tokenizer = tokenizer
        self.input_name = input_name or self.session.get_inputs()[0].name
        output = self.session.get_outputs()[0]
        self.output_name = output_name or output.name
        dim = output.shape[-1] if output.shape else None
        self.embedding_dim = dim if isinstance(dim, int) else None
        self.normalize = normalize
        logger.info("Loaded text encoder %s (dim=%s)", self.model_path, self.embedding_dim)

    def _encode_texts(self, names: ClassNames) -> np.ndarray:
        tokens = np.asarray(self.tokenizer(list(names)), dtype=np.int64)
        if tokens.ndim != 2 or tokens.shape[0] != len(names):
            raise InvalidVocabulary(
                "tokenizer must return one row per class name",
                detail=f"{len(names)} names, tokens shape {tokens.shape}",
            )
        try:
            out = self.session.run([self.output_name], {self.input_name: tokens})[0]
        except Exception as exc:
            raise InferenceError("text encoder forward pass failed", stage="vocabulary", detail=str(exc)) from exc
        return out


class VocabularyCache:
    """
    Thread-safe memo of class list -> `VocabularyEmbedding`.

    Keys are the normalized class-name tuples, compared by value. With
    `max_entries=1` this is the classic "last class list" cache; larger values
    let concurrent callers with different class lists share one pipeline
    without evicting each other. `max_entries=0` disables caching.
    """

    def __init__(self, encoder: VocabularyEncoder, max_entries: int = 8):
        if max_entries < 0:
            raise ValueError(f"max_entries must be >= 0, got {max_entries}")
        self.encoder = encoder
        self.max_entries = int(max_entries)
        self._entries: "OrderedDict[ClassNames, VocabularyEmbedding]" = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def get(self, class_names: Sequence[str]) -> VocabularyEmbedding:
        key = normalize_class_names(class_names)
        if self.max_entries == 0:
            return self.encoder.encode(key)

        with self._lock:
            hit = self._entries.get(key)
            if hit is not None:
                self._entries.move_to_end(key)
                self.hits += 1
                return hit
            self.misses += 1

        # Encode outside the lock; encoding is pure so a concurrent duplicate is harmless.
        logger.debug("Encoding vocabulary of %d classes", len(key))
        embedding = self.encoder.encode(key)

        with self._lock:
            self._entries[key] = embedding
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)
        return embedding
