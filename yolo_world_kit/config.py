from __future__ import annotations

import json
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple, Union

from .errors import check_threshold
from .preprocess import PAD_COLOR, check_input_shape
from .vocabulary import normalize_class_names


PathLike = Union[str, Path]


def find_project_root(
    start: Optional[PathLike] = None,
    markers: Sequence[str] = ("pyproject.toml", "setup.py", ".git", "requirements.txt"),
) -> Path:
    """
    Best-effort project root discovery.

    Useful when models live next to the project (e.g. `<root>/Models/yolov8s-worldv2.onnx`).
    """

    p = Path(start) if start is not None else Path.cwd()
    p = p.resolve()

    # If a file is provided, start from its directory.
    if p.is_file():
        p = p.parent

    for parent in (p, *p.parents):
        for m in markers:
            if (parent / m).exists():
                return parent
    return p


def resolve_path(path: PathLike, root: Optional[PathLike] = "auto") -> Path:
    """
    Resolve `path` to an absolute Path.

    - Absolute paths are returned as-is.
    - Relative paths are resolved against `root` if provided, the project root otherwise.
    """

    p = Path(path)
    if p.is_absolute():
        return p

    if root == "auto" or root is None:
        base = find_project_root()
    else:
        base = Path(root).resolve()

    return (base / p).resolve()


@dataclass(frozen=True)
class DetectorConfig:
    """
    Recognized options for a detection pipeline.

    Thresholds are validated here so a bad config fails before a model is
    loaded.
    """

    model_path: str
    conf_threshold: float = 0.25
    iou_threshold: float = 0.45
    input_shape: Tuple[int, int] = (640, 640)
    class_names: Optional[Tuple[str, ...]] = None
    vocabulary_path: Optional[str] = None
    backend: Optional[str] = None
    providers: Optional[Tuple[str, ...]] = None
    max_detections: int = 300
    class_conf_thresholds: Optional[Tuple[Tuple[str, float], ...]] = None
    class_agnostic: bool = False
    apply_nms: bool = True
    anchors_first: Optional[bool] = None
    pad_color: Tuple[int, int, int] = PAD_COLOR
    vocabulary_cache_size: int = 8
    warmup: bool = False
    input_name: Optional[str] = None
    text_input_name: Optional[str] = None
    output_name: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.model_path or not str(self.model_path).strip():
            raise ValueError("model_path is required")
        object.__setattr__(self, "model_path", str(self.model_path))
        object.__setattr__(self, "conf_threshold", check_threshold("conf_threshold", self.conf_threshold, stage="config"))
        object.__setattr__(self, "iou_threshold", check_threshold("iou_threshold", self.iou_threshold, stage="config"))
        object.__setattr__(self, "input_shape", check_input_shape(self.input_shape))
        if self.class_names is not None:
            object.__setattr__(self, "class_names", normalize_class_names(self.class_names))
        if self.providers is not None:
            object.__setattr__(self, "providers", tuple(str(p) for p in self.providers))
        if self.max_detections <= 0:
            raise ValueError("max_detections must be > 0")
        if self.vocabulary_cache_size < 0:
            raise ValueError("vocabulary_cache_size must be >= 0")
        if self.class_conf_thresholds is not None:
            items = (
                self.class_conf_thresholds.items()
                if isinstance(self.class_conf_thresholds, Mapping)
                else self.class_conf_thresholds
            )
            checked = tuple(
                (str(name).strip(), check_threshold(f"class_conf_thresholds[{name!r}]", value, stage="config"))
                for name, value in items
            )
            object.__setattr__(self, "class_conf_thresholds", checked)
        color = tuple(int(c) for c in self.pad_color)
        if len(color) != 3 or any(c < 0 or c > 255 for c in color):
            raise ValueError(f"pad_color must be three values in [0, 255], got {self.pad_color!r}")
        object.__setattr__(self, "pad_color", color)

    @property
    def class_conf_map(self) -> Dict[str, float]:
        return dict(self.class_conf_thresholds or ())

    def with_overrides(self, **changes: Any) -> "DetectorConfig":
        return replace(self, **changes)


def _require_number(payload: Dict[str, Any], key: str) -> float:
    value = payload[key]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{key} must be a number")
    return float(value)


def _require_int(payload: Dict[str, Any], key: str) -> int:
    value = payload[key]
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{key} must be an integer")
    return int(value)


def _require_bool(payload: Dict[str, Any], key: str) -> bool:
    value = payload[key]
    if not isinstance(value, bool):
        raise ValueError(f"{key} must be true or false")
    return value


def _require_str_list(payload: Dict[str, Any], key: str) -> Tuple[str, ...]:
    value = payload[key]
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ValueError(f"{key} must be a list of strings")
    return tuple(value)


def _require_int_pair(payload: Dict[str, Any], key: str, size: int = 2) -> Tuple[int, ...]:
    value = payload[key]
    if (
        not isinstance(value, list)
        or len(value) != size
        or any(isinstance(v, bool) or not isinstance(v, int) for v in value)
    ):
        raise ValueError(f"{key} must be a list of {size} integers")
    return tuple(value)


_NUMBER_KEYS = {"conf_threshold", "iou_threshold"}
_INT_KEYS = {"max_detections", "vocabulary_cache_size"}
_BOOL_KEYS = {"class_agnostic", "apply_nms", "warmup"}
_STR_KEYS = {"model_path", "vocabulary_path", "backend", "input_name", "text_input_name", "output_name"}


def load_detector_config(path: PathLike, **overrides: Any) -> DetectorConfig:
    """
    Load a `DetectorConfig` from a JSON object.

    A relative `model_path` is resolved against the directory of the config
    file. Keyword `overrides` win over file values.
    """

    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Detector config not found: {p}")
    raw = p.read_text(encoding="utf-8")
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid detector config JSON: {p}") from exc
    if not isinstance(payload, dict):
        raise ValueError("Detector config must be a JSON object")

    allowed = {f.name for f in fields(DetectorConfig)}
    unknown = sorted(set(payload.keys()) - allowed)
    if unknown:
        raise ValueError(f"Unknown detector config keys: {unknown}")
    if "model_path" not in payload and "model_path" not in overrides:
        raise ValueError("Missing required key: model_path")

    kwargs: Dict[str, Any] = {}
    for key in payload:
        if payload[key] is None:
            kwargs[key] = None
        elif key in _NUMBER_KEYS:
            kwargs[key] = _require_number(payload, key)
        elif key in _INT_KEYS:
            kwargs[key] = _require_int(payload, key)
        elif key in _BOOL_KEYS:
            kwargs[key] = _require_bool(payload, key)
        elif key in _STR_KEYS:
            if not isinstance(payload[key], str):
                raise ValueError(f"{key} must be a string")
            kwargs[key] = payload[key]
        elif key in {"class_names", "providers"}:
            kwargs[key] = _require_str_list(payload, key)
        elif key == "input_shape":
            kwargs[key] = _require_int_pair(payload, key)
        elif key == "pad_color":
            kwargs[key] = _require_int_pair(payload, key, size=3)
        elif key == "anchors_first":
            kwargs[key] = _require_bool(payload, key)
        elif key == "class_conf_thresholds":
            value = payload[key]
            if not isinstance(value, dict):
                raise ValueError("class_conf_thresholds must be an object mapping class name -> threshold")
            kwargs[key] = tuple((name, _require_number(value, name)) for name in value)

    if "model_path" in kwargs and kwargs["model_path"] is not None:
        kwargs["model_path"] = str(resolve_path(kwargs["model_path"], root=p.parent))
    if kwargs.get("vocabulary_path") is not None:
        kwargs["vocabulary_path"] = str(resolve_path(kwargs["vocabulary_path"], root=p.parent))

    kwargs.update(overrides)
    return DetectorConfig(**kwargs)
