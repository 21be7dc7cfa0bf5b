from __future__ import annotations

from dataclasses import dataclass
from typing import List, Mapping, Optional, Tuple

import numpy as np

from .errors import InferenceError, check_threshold
from .nms import NMSConfig, batched_nms
from .types import Detection, LetterboxTransform
from .vocabulary import VocabularyEmbedding


@dataclass
class PostprocessConfig:
    """
    Post-processing settings for YOLO-World outputs.
    """

    conf_threshold: float = 0.25
    iou_threshold: float = 0.45
    max_detections: int = 300
    # If False, skip NMS and only keep top `max_detections` by score.
    apply_nms: bool = True
    # If True, NMS suppresses across classes; default is per-class.
    class_agnostic: bool = False
    # True: rows are anchors, (N, 4 + C). False: channels first, (4 + C, N).
    # None picks whichever axis equals 4 + C, preferring (N, 4 + C).
    anchors_first: Optional[bool] = None
    # Stricter per-class thresholds keyed by class name. The global
    # conf_threshold stays the floor for every class.
    class_conf_thresholds: Optional[Mapping[str, float]] = None

    def __post_init__(self) -> None:
        self.conf_threshold = check_threshold("conf_threshold", self.conf_threshold)
        self.iou_threshold = check_threshold("iou_threshold", self.iou_threshold)
        if self.max_detections <= 0:
            raise ValueError("max_detections must be > 0")
        if self.class_conf_thresholds:
            self.class_conf_thresholds = {
                str(k).strip(): check_threshold(f"class_conf_thresholds[{k!r}]", v)
                for k, v in dict(self.class_conf_thresholds).items()
            }


class YoloWorldPostprocessor:
    """
    Turn the raw prediction tensor into `Detection`s in original image coordinates.

    Supported layouts (per image):
    - (1, N, 4 + C): [cx, cy, w, h, class_scores...] per anchor row
    - (1, 4 + C, N): same data channels-first, as Ultralytics exports emit it

    C is the vocabulary size, so the layout is never guessed from magnitudes.
    """

    def __init__(self, cfg: Optional[PostprocessConfig] = None):
        self.cfg = cfg if cfg is not None else PostprocessConfig()

    def process(
        self,
        raw: np.ndarray,
        transform: LetterboxTransform,
        vocabulary: VocabularyEmbedding,
        orig_size: Optional[Tuple[int, int]] = None,
    ) -> List[Detection]:
        """
        Args:
            raw: model output for a single image
            transform: letterbox transform used to build the input tensor
            vocabulary: class list the model was prompted with
            orig_size: (width, height) of the original image; defaults to transform.orig_size
        """

        boxes_xyxy, scores, class_ids = self._decode(raw, vocabulary.num_classes)
        if boxes_xyxy.shape[0] == 0:
            return []

        # Filter by score
        keep = scores >= self._thresholds(vocabulary)[class_ids]
        boxes_xyxy, scores, class_ids = boxes_xyxy[keep], scores[keep], class_ids[keep]
        if boxes_xyxy.shape[0] == 0:
            return []

        # Scale boxes back to original image, drop boxes clamped to nothing.
        # Clamping comes before NMS so suppression sees the boxes that are returned.
        boxes_xyxy = self._scale_boxes(boxes_xyxy, transform, orig_size)
        valid = (boxes_xyxy[:, 2] > boxes_xyxy[:, 0]) & (boxes_xyxy[:, 3] > boxes_xyxy[:, 1])
        boxes_xyxy, scores, class_ids = boxes_xyxy[valid], scores[valid], class_ids[valid]
        if boxes_xyxy.shape[0] == 0:
            return []

        # NMS (optional) / Top-K
        if self.cfg.apply_nms:
            nms_cfg = NMSConfig(
                iou_threshold=self.cfg.iou_threshold,
                max_detections=self.cfg.max_detections,
                class_agnostic=self.cfg.class_agnostic,
            )
            idx = batched_nms(boxes_xyxy, scores, class_ids, nms_cfg)
        else:
            idx = np.argsort(-scores, kind="stable")[: self.cfg.max_detections]
        boxes_xyxy, scores, class_ids = boxes_xyxy[idx], scores[idx], class_ids[idx]

        return [
            Detection(
                x_min=float(x1),
                y_min=float(y1),
                x_max=float(x2),
                y_max=float(y2),
                class_index=int(cls_id),
                class_name=vocabulary.name_of(int(cls_id)),
                confidence=float(score),
            )
            for (x1, y1, x2, y2), score, cls_id in zip(boxes_xyxy, scores, class_ids)
        ]

    # ------------------------------------------------------------------ #
    # Internal helpers
    # ------------------------------------------------------------------ #
    def _decode(self, raw: np.ndarray, num_classes: int) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        Decode the raw grid into xyxy boxes (tensor space), best score and best class per row.
        """

        p = np.asarray(raw)
        if p.size == 0:
            return np.empty((0, 4)), np.empty((0,), dtype=np.float32), np.empty((0,), dtype=np.int64)
        if p.ndim == 3:
            if p.shape[0] != 1:
                raise InferenceError(
                    "batch > 1 is not supported", stage="postprocess", detail=f"got shape {p.shape}"
                )
            p = p[0]
        if p.ndim != 2:
            raise InferenceError("unsupported output rank", stage="postprocess", detail=f"got shape {p.shape}")

        channels = 4 + num_classes
        rows = self._as_rows(p, channels)

        boxes = rows[:, :4].astype(np.float64)
        class_scores = rows[:, 4:]
        class_ids = np.argmax(class_scores, axis=1)
        scores = class_scores[np.arange(class_scores.shape[0]), class_ids].astype(np.float32)

        # Convert cxcywh -> xyxy
        cx, cy, w_box, h_box = boxes.T
        boxes_xyxy = np.stack([cx - w_box / 2, cy - h_box / 2, cx + w_box / 2, cy + h_box / 2], axis=1)
        return boxes_xyxy, scores, class_ids.astype(np.int64)

    def _as_rows(self, p: np.ndarray, channels: int) -> np.ndarray:
        first = self.cfg.anchors_first
        if first is None:
            if p.shape[1] == channels:
                first = True
            elif p.shape[0] == channels:
                first = False
        if first is True and p.shape[1] == channels:
            return p
        if first is False and p.shape[0] == channels:
            return p.T
        raise InferenceError(
            "output does not match the vocabulary size",
            stage="postprocess",
            detail=f"expected 4 + {channels - 4} = {channels} values per box, got shape {p.shape}",
        )

    def _thresholds(self, vocabulary: VocabularyEmbedding) -> np.ndarray:
        # float64 so float32 scores are compared against the exact threshold value.
        thr = np.full((vocabulary.num_classes,), self.cfg.conf_threshold, dtype=np.float64)
        if self.cfg.class_conf_thresholds:
            for i, name in enumerate(vocabulary.class_names):
                if name in self.cfg.class_conf_thresholds:
                    thr[i] = max(thr[i], self.cfg.class_conf_thresholds[name])
        return thr

    def _scale_boxes(
        self,
        boxes: np.ndarray,
        transform: LetterboxTransform,
        orig_size: Optional[Tuple[int, int]],
    ) -> np.ndarray:
        """
        Map boxes from the letterboxed canvas to the original image and clamp them.
        """

        orig_w, orig_h = orig_size if orig_size is not None else transform.orig_size
        if orig_w <= 0 or orig_h <= 0:
            raise ValueError(f"original image size is required, got ({orig_w}, {orig_h})")

        boxes = transform.to_image_space(boxes)
        boxes[:, [0, 2]] = np.clip(boxes[:, [0, 2]], 0, orig_w - 1)
        boxes[:, [1, 3]] = np.clip(boxes[:, [1, 3]], 0, orig_h - 1)
        return boxes


def postprocess(
    raw: np.ndarray,
    transform: LetterboxTransform,
    vocabulary: VocabularyEmbedding,
    conf_threshold: float = 0.25,
    iou_threshold: float = 0.45,
    orig_size: Optional[Tuple[int, int]] = None,
    **kwargs,
) -> List[Detection]:
    """
    Functional form of `YoloWorldPostprocessor(PostprocessConfig(...)).process(...)`.

    `orig_size` is required when `transform` was built without one.
    """

    cfg = PostprocessConfig(conf_threshold=conf_threshold, iou_threshold=iou_threshold, **kwargs)
    return YoloWorldPostprocessor(cfg).process(raw, transform, vocabulary, orig_size=orig_size)
