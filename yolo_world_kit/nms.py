from dataclasses import dataclass
from typing import Optional

import numpy as np


@dataclass
class NMSConfig:
    iou_threshold: float = 0.45
    max_detections: int = 300
    # If True, boxes suppress each other regardless of class.
    class_agnostic: bool = False


def box_iou(box: np.ndarray, boxes: np.ndarray) -> np.ndarray:
    """
    IoU between one xyxy box (4,) and many boxes (N, 4).
    """

    xx1 = np.maximum(box[0], boxes[:, 0])
    yy1 = np.maximum(box[1], boxes[:, 1])
    xx2 = np.minimum(box[2], boxes[:, 2])
    yy2 = np.minimum(box[3], boxes[:, 3])

    w = np.maximum(0.0, xx2 - xx1)
    h = np.maximum(0.0, yy2 - yy1)
    inter = w * h
    area = max(0.0, box[2] - box[0]) * max(0.0, box[3] - box[1])
    areas = np.maximum(0.0, boxes[:, 2] - boxes[:, 0]) * np.maximum(0.0, boxes[:, 3] - boxes[:, 1])
    union = area + areas - inter
    return inter / np.maximum(union, 1e-6)


def nms(boxes: np.ndarray, scores: np.ndarray, cfg: NMSConfig) -> np.ndarray:
    """
    Greedy NumPy NMS over one group of boxes. Expects boxes shape (N,4) in xyxy
    and scores shape (N,). Returns kept indices, highest score first.

    Ordering is stable: for equal scores the lower index is visited first, so
    the earlier-decoded box wins.
    """

    if boxes.size == 0:
        return np.empty((0,), dtype=np.int64)

    order = np.argsort(-scores, kind="stable")
    keep = []

    while order.size > 0 and len(keep) < cfg.max_detections:
        i = order[0]
        keep.append(i)

        iou = box_iou(boxes[i], boxes[order[1:]])
        inds = np.where(iou <= cfg.iou_threshold)[0]
        order = order[inds + 1]

    return np.array(keep, dtype=np.int64)


def batched_nms(
    boxes: np.ndarray,
    scores: np.ndarray,
    class_ids: np.ndarray,
    cfg: NMSConfig,
    max_detections: Optional[int] = None,
) -> np.ndarray:
    """
    Class-aware NMS: boxes only suppress boxes of the same class.

    Returns kept indices sorted by score descending, ties by original index.
    """

    limit = cfg.max_detections if max_detections is None else max_detections
    if boxes.size == 0:
        return np.empty((0,), dtype=np.int64)

    if cfg.class_agnostic:
        return nms(boxes, scores, cfg)[:limit]

    kept = []
    for cls in np.unique(class_ids):
        idx = np.where(class_ids == cls)[0]
        keep_local = nms(boxes[idx], scores[idx], cfg)
        kept.extend(idx[keep_local].tolist())

    if not kept:
        return np.empty((0,), dtype=np.int64)

    kept_arr = np.array(kept, dtype=np.int64)
    # Primary key: score descending; secondary: original index ascending.
    order = np.lexsort((kept_arr, -scores[kept_arr]))
    return kept_arr[order][:limit]
