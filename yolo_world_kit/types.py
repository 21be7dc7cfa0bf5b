from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

import numpy as np

from .errors import ChannelOrderMismatch


class PixelFormat(str, Enum):
    RGB = "RGB"
    BGR = "BGR"
    RGBA = "RGBA"
    BGRA = "BGRA"

    @property
    def channels(self) -> int:
        return 4 if self in (PixelFormat.RGBA, PixelFormat.BGRA) else 3

    @classmethod
    def parse(cls, value: Union[str, "PixelFormat"]) -> "PixelFormat":
        if isinstance(value, PixelFormat):
            return value
        try:
            return cls(str(value).upper())
        except ValueError as exc:
            supported = ", ".join(f.value for f in cls)
            raise ChannelOrderMismatch(
                f"Unsupported pixel format {value!r}", detail=f"supported: {supported}"
            ) from exc


@dataclass(frozen=True, eq=False)
class Image:
    """
    Decoded image handed to the pipeline.

    `pixels` is an (H, W, C) uint8 array; the constructor takes a read-only
    copy so the buffer cannot change during a detection call.
    """

    pixels: np.ndarray
    pixel_format: PixelFormat = PixelFormat.RGB

    def __post_init__(self) -> None:
        fmt = PixelFormat.parse(self.pixel_format)
        arr = np.asarray(self.pixels)
        if arr.dtype != np.uint8:
            raise ChannelOrderMismatch("Image buffer must be uint8", detail=f"got dtype {arr.dtype}")
        if arr.ndim != 3 or arr.shape[2] != fmt.channels:
            raise ChannelOrderMismatch(
                f"{fmt.value} image must have shape (H, W, {fmt.channels})",
                detail=f"got shape {arr.shape}",
            )
        if arr.shape[0] == 0 or arr.shape[1] == 0:
            raise ValueError(f"Image must not be empty, got shape {arr.shape}")
        frozen = np.array(arr, copy=True, order="C")
        frozen.setflags(write=False)
        object.__setattr__(self, "pixels", frozen)
        object.__setattr__(self, "pixel_format", fmt)

    @classmethod
    def from_array(cls, array: Union[np.ndarray, "Image"], pixel_format: Union[str, PixelFormat] = PixelFormat.BGR) -> "Image":
        """Wrap an ndarray; bare arrays are treated as OpenCV-style BGR by default."""

        if isinstance(array, Image):
            return array
        if array is None or not hasattr(array, "shape"):
            raise TypeError("image must be a NumPy array or yolo_world_kit.Image")
        return cls(pixels=array, pixel_format=PixelFormat.parse(pixel_format))

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def size(self) -> Tuple[int, int]:
        return self.width, self.height


@dataclass(frozen=True)
class LetterboxTransform:
    """
    Mapping between original image pixels and network-input pixels.

    tensor = original * scale + pad, and original = (tensor - pad) / scale.
    """

    scale: float
    pad_x: float
    pad_y: float
    orig_size: Tuple[int, int] = (0, 0)
    input_size: Tuple[int, int] = (0, 0)

    def __post_init__(self) -> None:
        if not self.scale > 0:
            raise ValueError(f"scale must be > 0, got {self.scale}")
        if self.pad_x < 0 or self.pad_y < 0:
            raise ValueError(f"padding must be >= 0, got ({self.pad_x}, {self.pad_y})")

    @classmethod
    def identity(cls, size: Tuple[int, int]) -> "LetterboxTransform":
        return cls(scale=1.0, pad_x=0.0, pad_y=0.0, orig_size=tuple(size), input_size=tuple(size))

    @property
    def is_identity(self) -> bool:
        return self.scale == 1.0 and self.pad_x == 0.0 and self.pad_y == 0.0

    def to_tensor_space(self, boxes: np.ndarray) -> np.ndarray:
        out = np.array(boxes, dtype=np.float64, copy=True).reshape(-1, 4)
        out[:, [0, 2]] = out[:, [0, 2]] * self.scale + self.pad_x
        out[:, [1, 3]] = out[:, [1, 3]] * self.scale + self.pad_y
        return out

    def to_image_space(self, boxes: np.ndarray) -> np.ndarray:
        out = np.array(boxes, dtype=np.float64, copy=True).reshape(-1, 4)
        out[:, [0, 2]] = (out[:, [0, 2]] - self.pad_x) / self.scale
        out[:, [1, 3]] = (out[:, [1, 3]] - self.pad_y) / self.scale
        return out


@dataclass(frozen=True)
class Detection:
    """
    One detected object in original image coordinates.
    """

    x_min: float
    y_min: float
    x_max: float
    y_max: float
    class_index: int
    class_name: str
    confidence: float

    def as_xyxy(self) -> Tuple[float, float, float, float]:
        return self.x_min, self.y_min, self.x_max, self.y_max

    @property
    def width(self) -> float:
        return self.x_max - self.x_min

    @property
    def height(self) -> float:
        return self.y_max - self.y_min

    @property
    def area(self) -> float:
        return max(0.0, self.width) * max(0.0, self.height)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bbox": [self.x_min, self.y_min, self.x_max, self.y_max],
            "class_index": self.class_index,
            "class_name": self.class_name,
            "confidence": self.confidence,
        }


@dataclass(frozen=True)
class DimRange:
    """
    Accepted range for one model input dimension (min <= opt <= max).

    Static dimensions have min == opt == max. Unbounded dynamic dimensions use
    `max=None`.
    """

    min: int
    opt: int
    max: Optional[int] = None

    def __post_init__(self) -> None:
        # Widen the bounds so they always bracket `opt`.
        object.__setattr__(self, "min", min(self.min, self.opt))
        if self.max is not None:
            object.__setattr__(self, "max", max(self.max, self.opt))

    @classmethod
    def fixed(cls, value: int) -> "DimRange":
        return cls(min=value, opt=value, max=value)

    @property
    def is_static(self) -> bool:
        return self.max is not None and self.min == self.max

    def contains(self, value: int) -> bool:
        if value < self.min:
            return False
        return self.max is None or value <= self.max
