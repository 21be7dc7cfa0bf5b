from __future__ import annotations

import logging
import time
from dataclasses import replace
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np

from .config import DetectorConfig, PathLike, resolve_path
from .engine import EngineHandle, infer, load
from .errors import InferenceError, InvalidVocabulary, ModelLoadError
from .postprocess import PostprocessConfig, YoloWorldPostprocessor
from .preprocess import PAD_COLOR, ImagePreprocessor
from .types import Detection, Image
from .vocabulary import (
    ExportedVocabularyEncoder,
    LookupVocabularyEncoder,
    VocabularyCache,
    VocabularyEmbedding,
    VocabularyEncoder,
)


logger = logging.getLogger(__name__)

ImageLike = Union[Image, np.ndarray]


class YoloWorldPipeline:
    """
    Plug-and-play pipeline: vocabulary -> preprocess (letterbox) -> inference -> postprocess.

    Bare `np.ndarray` images are treated as BGR (OpenCV-style); wrap them in
    `yolo_world_kit.Image` to declare another pixel format. Returns a list of
    `Detection` in original image coordinates, highest confidence first.

    One instance can be shared between threads: the engine is read-only after
    load and the vocabulary cache is keyed by class list and locked.
    """

    def __init__(
        self,
        engine: EngineHandle,
        encoder: VocabularyEncoder,
        *,
        post_cfg: Optional[PostprocessConfig] = None,
        pad_color: Tuple[int, int, int] = PAD_COLOR,
        class_names: Optional[Sequence[str]] = None,
        vocabulary_cache_size: int = 8,
        config: Optional[DetectorConfig] = None,
        root: Optional[PathLike] = "auto",
    ):
        self.engine = engine
        # Base for relative model paths in per-call configs; same as used at load.
        self.root = root
        self.encoder = encoder
        self.config = config
        self.post_cfg = post_cfg if post_cfg is not None else PostprocessConfig()
        self.post = YoloWorldPostprocessor(self.post_cfg)
        self.preprocessor = ImagePreprocessor(target_shape=engine.input_shape, color=pad_color)
        self.vocabulary = VocabularyCache(encoder, max_entries=vocabulary_cache_size)
        if class_names is None:
            class_names = engine.model_class_names
        self.default_class_names = tuple(class_names) if class_names else None

    def encode_vocabulary(self, class_names: Optional[Sequence[str]] = None) -> VocabularyEmbedding:
        if class_names is None:
            if self.default_class_names is None:
                raise InvalidVocabulary("no class_names given and the pipeline has no default vocabulary")
            class_names = self.default_class_names
        return self.vocabulary.get(class_names)

    def _post_for_call(
        self,
        config: Optional[DetectorConfig],
        conf_threshold: Optional[float],
        iou_threshold: Optional[float],
    ) -> YoloWorldPostprocessor:
        if config is None and conf_threshold is None and iou_threshold is None:
            return self.post

        cfg = self.post_cfg
        if config is not None:
            requested = resolve_path(config.model_path, root=self.root)
            if self.engine.model_path is not None and requested != self.engine.model_path:
                raise ValueError(
                    f"config.model_path {config.model_path!r} differs from the loaded model {str(self.engine.model_path)!r}; "
                    "use load_pipeline() for another model"
                )
            cfg = post_config_from(config)
        changes = {}
        if conf_threshold is not None:
            changes["conf_threshold"] = conf_threshold
        if iou_threshold is not None:
            changes["iou_threshold"] = iou_threshold
        if changes:
            # replace() re-runs __post_init__, so thresholds are validated here.
            cfg = replace(cfg, **changes)
        return YoloWorldPostprocessor(cfg)

    def detect(
        self,
        image: ImageLike,
        class_names: Optional[Sequence[str]] = None,
        config: Optional[DetectorConfig] = None,
        *,
        conf_threshold: Optional[float] = None,
        iou_threshold: Optional[float] = None,
    ) -> List[Detection]:
        """
        Detect `class_names` in `image`.

        Args:
            image: `Image` or (H, W, 3) uint8 BGR array
            class_names: ordered class list; None uses the pipeline default
            config: per-call thresholds/NMS settings; must name the loaded model
            conf_threshold/iou_threshold: per-call overrides, win over `config`
        """

        post = self._post_for_call(config, conf_threshold, iou_threshold)
        vocab = self.encode_vocabulary(class_names)
        img = Image.from_array(image)

        t0 = time.perf_counter()
        blob, transform = self.preprocessor(img)
        t1 = time.perf_counter()
        raw = infer(self.engine, blob, vocab)
        t2 = time.perf_counter()
        detections = post.process(raw, transform, vocab, orig_size=img.size)
        t3 = time.perf_counter()

        logger.debug(
            "detect %dx%d classes=%d -> %d dets (pre %.1fms, infer %.1fms, post %.1fms)",
            img.width,
            img.height,
            len(vocab),
            len(detections),
            (t1 - t0) * 1000.0,
            (t2 - t1) * 1000.0,
            (t3 - t2) * 1000.0,
        )
        return detections

    def __call__(self, image: ImageLike, class_names: Optional[Sequence[str]] = None) -> List[Detection]:
        return self.detect(image, class_names)


def post_config_from(config: DetectorConfig) -> PostprocessConfig:
    return PostprocessConfig(
        conf_threshold=config.conf_threshold,
        iou_threshold=config.iou_threshold,
        max_detections=config.max_detections,
        apply_nms=config.apply_nms,
        class_agnostic=config.class_agnostic,
        anchors_first=config.anchors_first,
        class_conf_thresholds=config.class_conf_map or None,
    )


def _default_encoder(config: DetectorConfig, engine: EngineHandle) -> VocabularyEncoder:
    if config.vocabulary_path is not None:
        path = Path(config.vocabulary_path)
        if path.suffix.lower() == ".npz":
            return LookupVocabularyEncoder.from_npz(path)
        if path.suffix.lower() == ".json":
            return LookupVocabularyEncoder.from_json(path)
        raise ValueError(f"Unsupported vocabulary table format '{path.suffix}' ({path})")
    if engine.accepts_text:
        raise ValueError(
            "model takes class embeddings at runtime; set vocabulary_path or pass encoder= to load_pipeline()"
        )
    # Classes stored in the model metadata are the only list it can answer for.
    return ExportedVocabularyEncoder(expected_names=engine.model_class_names)


def load_pipeline(
    config: DetectorConfig,
    *,
    encoder: Optional[VocabularyEncoder] = None,
    root: Optional[PathLike] = "auto",
    torch_device: str = "cpu",
    torch_half: bool = False,
) -> YoloWorldPipeline:
    """
    Create a pipeline for the model named in `config`.

    Typical usage:
        cfg = DetectorConfig(model_path="Models/yolov8s-worldv2.onnx", vocabulary_path="Models/clip_vocab.npz")
        pipe = load_pipeline(cfg)
        dets = pipe.detect(frame_bgr, ["person", "shoe"])

    Without `encoder`, the encoder comes from `config.vocabulary_path`, or, for
    models exported with a fixed class list, `ExportedVocabularyEncoder`.
    """

    embedding_dim = encoder.embedding_dim if encoder is not None and encoder.embedding_dim else None
    engine = load(
        config.model_path,
        backend=config.backend,
        input_shape=config.input_shape,
        root=root,
        onnx_providers=config.providers,
        onnx_input_name=config.input_name,
        onnx_text_input_name=config.text_input_name,
        onnx_output_name=config.output_name,
        torch_device=torch_device,
        torch_half=torch_half,
        torch_embedding_dim=embedding_dim,
    )
    if encoder is None:
        encoder = _default_encoder(config, engine)

    pipeline = YoloWorldPipeline(
        engine,
        encoder,
        post_cfg=post_config_from(config),
        pad_color=config.pad_color,
        class_names=config.class_names,
        vocabulary_cache_size=config.vocabulary_cache_size,
        config=config,
        root=root,
    )
    if config.warmup:
        # Warm up with the real default vocabulary when there is one.
        n = len(pipeline.default_class_names) if pipeline.default_class_names else 1
        try:
            engine.warmup(num_classes=n)
        except InferenceError as exc:
            raise ModelLoadError("warm-up forward pass failed", detail=str(exc)) from exc
    return pipeline


def detect(image: ImageLike, class_names: Sequence[str], config: DetectorConfig) -> List[Detection]:
    """
    One-shot detection: load the model in `config`, run it once, return detections.

    Loading dominates the cost; keep a `load_pipeline()` result around when
    processing more than one image.
    """

    return load_pipeline(config).detect(image, class_names)
