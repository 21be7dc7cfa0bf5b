from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple, Union

import numpy as np

from .errors import ChannelOrderMismatch
from .letterbox import letterbox
from .types import Image, LetterboxTransform, PixelFormat


STRIDE = 32
PAD_COLOR: Tuple[int, int, int] = (114, 114, 114)


def check_input_shape(shape: Tuple[int, int], stride: int = STRIDE) -> Tuple[int, int]:
    """Validate a (width, height) network input size."""

    try:
        w, h = (int(v) for v in shape)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"input_shape must be a (width, height) pair, got {shape!r}") from exc
    if w <= 0 or h <= 0 or w % stride or h % stride:
        raise ValueError(f"input_shape must be positive multiples of {stride}, got ({w}, {h})")
    return w, h


def to_rgb(image: Image) -> np.ndarray:
    """Return a 3-channel RGB uint8 view/copy of `image`."""

    try:
        import cv2  # type: ignore
    except Exception as e:  # pragma: no cover
        raise ImportError("OpenCV is required for preprocessing. Install with `pip install opencv-python`.") from e

    fmt = image.pixel_format
    px = image.pixels
    if fmt is PixelFormat.RGB:
        return px.copy()
    if fmt is PixelFormat.BGR:
        return np.ascontiguousarray(px[:, :, ::-1])
    if fmt is PixelFormat.RGBA:
        return cv2.cvtColor(px.copy(), cv2.COLOR_RGBA2RGB)
    if fmt is PixelFormat.BGRA:
        return cv2.cvtColor(px.copy(), cv2.COLOR_BGRA2RGB)
    raise ChannelOrderMismatch(f"Unsupported pixel format {fmt!r}")  # pragma: no cover


def preprocess(
    image: Union[Image, np.ndarray],
    target_shape: Tuple[int, int] = (640, 640),
    color: Tuple[int, int, int] = PAD_COLOR,
) -> Tuple[np.ndarray, LetterboxTransform]:
    """
    Letterbox `image` into a normalized NCHW float32 tensor.

    Bare arrays are treated as BGR (OpenCV-style). Returns the (1, 3, H, W)
    tensor in RGB order with values in [0, 1], and the transform needed to map
    network coordinates back to `image`.
    """

    img = Image.from_array(image)
    target = check_input_shape(target_shape)

    rgb = to_rgb(img)
    padded, transform = letterbox(rgb, new_shape=target, color=color)

    # HWC -> CHW, normalize, add batch
    blob = padded.astype(np.float32) / 255.0
    blob = np.ascontiguousarray(np.transpose(blob, (2, 0, 1))[None, ...])
    return blob, transform


@dataclass(frozen=True)
class ImagePreprocessor:
    target_shape: Tuple[int, int] = (640, 640)
    color: Tuple[int, int, int] = PAD_COLOR

    def __post_init__(self) -> None:
        object.__setattr__(self, "target_shape", check_input_shape(self.target_shape))

    def __call__(self, image: Union[Image, np.ndarray]) -> Tuple[np.ndarray, LetterboxTransform]:
        return preprocess(image, self.target_shape, self.color)
