from __future__ import annotations

import logging


def configure_logging(level: str = "INFO") -> None:
    """
    Basic console logging for scripts using yolo_world_kit.

    The library itself only creates module loggers; call this from the
    application entry point.
    """

    resolved = getattr(logging, (level or "INFO").upper(), logging.INFO)
    logging.basicConfig(
        level=resolved,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    logging.getLogger("onnxruntime").setLevel(logging.WARNING)
