"""
Error taxonomy for the detection pipeline.

Every error is terminal for the current `detect` call. The `stage` attribute
names the pipeline step that failed so callers can decide on a retry policy
(e.g. reload the model after a `ModelLoadError`) without re-running.
"""

from __future__ import annotations

from typing import Optional


class YoloWorldError(Exception):
    """Base class for all errors raised by yolo_world_kit."""

    stage: str = "pipeline"

    def __init__(self, message: str, *, stage: Optional[str] = None, detail: Optional[str] = None):
        if stage is not None:
            self.stage = stage
        self.detail = detail
        self.message = message
        super().__init__(self._format())

    def _format(self) -> str:
        text = f"[{self.stage}] {self.message}"
        if self.detail:
            text = f"{text} ({self.detail})"
        return text


class InvalidVocabulary(YoloWorldError, ValueError):
    """Empty or malformed class-name list."""

    stage = "vocabulary"


class ChannelOrderMismatch(YoloWorldError, ValueError):
    """Image pixel format is unknown or does not match its buffer."""

    stage = "preprocess"


class ModelLoadError(YoloWorldError, RuntimeError):
    """Model artifact is missing, corrupt, or does not match the expected I/O contract."""

    stage = "load"


class InferenceError(YoloWorldError, RuntimeError):
    """Execution backend failed, or produced/received a tensor of the wrong shape."""

    stage = "infer"


class InvalidThreshold(YoloWorldError, ValueError):
    """Confidence or IoU threshold outside [0, 1]."""

    stage = "postprocess"


def check_threshold(name: str, value: float, *, stage: str = "postprocess") -> float:
    """Return `value` as float, raising `InvalidThreshold` unless 0 <= value <= 1."""

    try:
        v = float(value)
    except (TypeError, ValueError) as exc:
        raise InvalidThreshold(f"{name} must be a number", stage=stage, detail=f"got {value!r}") from exc
    # NaN fails both comparisons.
    if not 0.0 <= v <= 1.0:
        raise InvalidThreshold(f"{name} must be within [0, 1]", stage=stage, detail=f"got {value!r}")
    return v
