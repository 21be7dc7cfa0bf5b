from typing import Tuple

import numpy as np

from .types import LetterboxTransform


def letterbox(
    image: np.ndarray,
    new_shape: Tuple[int, int] = (640, 640),
    color: Tuple[int, int, int] = (114, 114, 114),
) -> Tuple[np.ndarray, LetterboxTransform]:
    """
    Resize `image` keeping its aspect ratio and center it on a `new_shape` canvas.

    Args:
        image: (H, W, C) array
        new_shape: (width, height) of the network input
        color: fill value for the padded border

    Returns:
        padded: (new_h, new_w, C) array
        transform: scale + left/top padding, the inverse of which maps network
            coordinates back onto `image`

    Padding split: the left/top side receives floor(slack / 2) pixels and the
    right/bottom side the remainder, so `pad_x`/`pad_y` are whole pixels and
    are exactly where the resized image was written.

    `scale` is the requested ratio `r`. The resized size is rounded to whole
    pixels, so the scale actually applied per axis (`resized_w / w`,
    `resized_h / h`) can differ from `r` by up to 0.5 px over the image
    extent; inverse-mapped boxes inherit that error (at most 0.5 network px,
    i.e. 0.5 / r original px, at the far edge).
    """
    try:
        import cv2  # type: ignore
    except Exception as e:  # pragma: no cover
        raise ImportError("OpenCV is required for letterbox(). Install with `pip install opencv-python`.") from e

    if isinstance(new_shape, int):
        new_shape = (new_shape, new_shape)

    h, w = image.shape[:2]
    new_w, new_h = int(new_shape[0]), int(new_shape[1])

    # Scale ratio (new / old)
    r = min(new_w / w, new_h / h)

    resized_w = min(new_w, max(1, int(round(w * r))))
    resized_h = min(new_h, max(1, int(round(h * r))))
    dw, dh = new_w - resized_w, new_h - resized_h

    left, top = dw // 2, dh // 2
    right, bottom = dw - left, dh - top

    if (w, h) != (resized_w, resized_h):
        image = cv2.resize(image, (resized_w, resized_h), interpolation=cv2.INTER_LINEAR)

    if dw or dh:
        image = cv2.copyMakeBorder(image, top, bottom, left, right, cv2.BORDER_CONSTANT, value=color)

    transform = LetterboxTransform(
        scale=float(r),
        pad_x=float(left),
        pad_y=float(top),
        orig_size=(int(w), int(h)),
        input_size=(new_w, new_h),
    )
    return image, transform
