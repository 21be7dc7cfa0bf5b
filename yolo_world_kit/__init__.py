"""
Open-vocabulary (YOLO-World) detection runtime.

Give it an image and any list of class names; it letterboxes the image,
runs the exported detector with the class embeddings, and returns
NMS-filtered detections in original image coordinates. Pre/post-processing
needs only NumPy and OpenCV; ONNX Runtime / TorchScript are loaded when a
model of that kind is opened.
"""

from .config import DetectorConfig, find_project_root, load_detector_config, resolve_path
from .engine import EngineHandle, infer, load
from .errors import (
    ChannelOrderMismatch,
    InferenceError,
    InvalidThreshold,
    InvalidVocabulary,
    ModelLoadError,
    YoloWorldError,
)
from .letterbox import letterbox
from .logging_config import configure_logging
from .metadata import load_class_names, parse_names_metadata
from .nms import NMSConfig, batched_nms, box_iou, nms
from .postprocess import PostprocessConfig, YoloWorldPostprocessor, postprocess
from .preprocess import ImagePreprocessor, preprocess
from .runtime import YoloWorldPipeline, detect, load_pipeline
from .types import Detection, DimRange, Image, LetterboxTransform, PixelFormat
from .vocabulary import (
    ExportedVocabularyEncoder,
    LookupVocabularyEncoder,
    OnnxTextEncoder,
    VocabularyCache,
    VocabularyEmbedding,
    VocabularyEncoder,
    encode,
)

__all__ = [
    "ChannelOrderMismatch",
    "Detection",
    "DetectorConfig",
    "DimRange",
    "EngineHandle",
    "ExportedVocabularyEncoder",
    "Image",
    "ImagePreprocessor",
    "InferenceError",
    "InvalidThreshold",
    "InvalidVocabulary",
    "LetterboxTransform",
    "LookupVocabularyEncoder",
    "ModelLoadError",
    "NMSConfig",
    "OnnxTextEncoder",
    "PixelFormat",
    "PostprocessConfig",
    "VocabularyCache",
    "VocabularyEmbedding",
    "VocabularyEncoder",
    "YoloWorldError",
    "YoloWorldPipeline",
    "YoloWorldPostprocessor",
    "batched_nms",
    "box_iou",
    "configure_logging",
    "detect",
    "encode",
    "find_project_root",
    "infer",
    "letterbox",
    "load",
    "load_class_names",
    "load_detector_config",
    "load_pipeline",
    "nms",
    "parse_names_metadata",
    "postprocess",
    "preprocess",
    "resolve_path",
]
