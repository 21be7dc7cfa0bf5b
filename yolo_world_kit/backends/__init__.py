"""
Inference backends for yolo_world_kit.

Runtime-specific backends are imported lazily by `yolo_world_kit.engine.load`
so pre/post-processing stays usable without installing inference runtimes.
"""

from __future__ import annotations

from .base import CallableBackend, InferenceBackend

__all__ = ["CallableBackend", "InferenceBackend"]
