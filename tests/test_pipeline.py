import tempfile
import threading
import unittest

import numpy as np

from yolo_world_kit.backends.base import CallableBackend
from yolo_world_kit.config import DetectorConfig, resolve_path
from yolo_world_kit.engine import EngineHandle
from yolo_world_kit.errors import ChannelOrderMismatch, InferenceError, InvalidThreshold, InvalidVocabulary
from yolo_world_kit.postprocess import PostprocessConfig
from yolo_world_kit.runtime import YoloWorldPipeline
from yolo_world_kit.types import Image, PixelFormat
from yolo_world_kit.vocabulary import LookupVocabularyEncoder


GRAY = 114 / 255.0
TABLE = {"shoe": [1.0, 0.0, 0.0], "hat": [0.6, 0.0, 0.0], "sock": [0.0, 1.0, 0.0]}


def _stub_detector(blob, emb):
    """
    Finds the bounding box of all non-gray pixels and reports it once.

    Class j scores 0.9 * emb[j, 0]. Output is channels-first (1, 4 + C, 1).
    """

    num_classes = emb.shape[0]
    out = np.zeros((1, 4 + num_classes, 1), dtype=np.float32)
    mask = np.any(np.abs(blob[0] - GRAY) > 1e-3, axis=0)
    ys, xs = np.nonzero(mask)
    if xs.size == 0:
        return out
    x1, x2 = xs.min(), xs.max() + 1
    y1, y2 = ys.min(), ys.max() + 1
    out[0, :4, 0] = [(x1 + x2) / 2, (y1 + y2) / 2, x2 - x1, y2 - y1]
    out[0, 4:, 0] = 0.9 * emb[:, 0]
    return out


class CountingLookup(LookupVocabularyEncoder):
    def __init__(self, table):
        super().__init__(table)
        self.calls = 0

    def _encode_texts(self, names):
        self.calls += 1
        return super()._encode_texts(names)


def _scene() -> np.ndarray:
    img = np.full((720, 1280, 3), 114, dtype=np.uint8)
    img[200:400, 400:800] = 255
    return img


def _pipeline(fn=_stub_detector, **kwargs) -> YoloWorldPipeline:
    engine = EngineHandle.from_callable(fn, (640, 640), embedding_dim=3)
    return YoloWorldPipeline(engine, kwargs.pop("encoder", None) or CountingLookup(TABLE), **kwargs)


class TestYoloWorldPipeline(unittest.TestCase):
    def test_detects_rectangle_in_original_coordinates(self) -> None:
        pipe = _pipeline(post_cfg=PostprocessConfig(conf_threshold=0.5, iou_threshold=0.5))
        dets = pipe.detect(_scene(), ["shoe"])
        self.assertEqual(len(dets), 1)
        d = dets[0]
        self.assertEqual((d.class_index, d.class_name), (0, "shoe"))
        self.assertAlmostEqual(d.confidence, 0.9, places=5)
        self.assertTrue(np.allclose(d.as_xyxy(), (400, 200, 800, 400), atol=1.0))

    def test_rgb_image_gives_same_result(self) -> None:
        pipe = _pipeline()
        bgr = pipe.detect(_scene(), ["shoe"])
        rgb = pipe.detect(Image(_scene()[:, :, ::-1], PixelFormat.RGB), ["shoe"])
        self.assertEqual(bgr, rgb)

    def test_blank_image_has_no_detections(self) -> None:
        pipe = _pipeline(post_cfg=PostprocessConfig(conf_threshold=0.5, iou_threshold=0.5))
        self.assertEqual(pipe.detect(np.full((720, 1280, 3), 114, dtype=np.uint8), ["shoe"]), [])

    def test_repeated_calls_are_identical(self) -> None:
        pipe = _pipeline()
        self.assertEqual(pipe.detect(_scene(), ["shoe", "sock"]), pipe(_scene(), ["shoe", "sock"]))

    def test_vocabulary_encoded_once_per_class_list(self) -> None:
        enc = CountingLookup(TABLE)
        pipe = _pipeline(encoder=enc)
        for _ in range(3):
            pipe.detect(_scene(), ["shoe", "hat"])
        self.assertEqual(enc.calls, 1)
        pipe.detect(_scene(), ["hat", "shoe"])
        self.assertEqual(enc.calls, 2)

    def test_class_index_follows_caller_order(self) -> None:
        pipe = _pipeline()
        self.assertEqual(pipe.detect(_scene(), ["shoe", "hat"])[0].class_index, 0)
        self.assertEqual(pipe.detect(_scene(), ["hat", "shoe"])[0].class_index, 1)

    def test_invalid_vocabulary(self) -> None:
        pipe = _pipeline()
        with self.assertRaises(InvalidVocabulary):
            pipe.detect(_scene(), [])
        with self.assertRaises(InvalidVocabulary):
            pipe.detect(_scene())
        with self.assertRaises(InvalidVocabulary):
            pipe.detect(_scene(), ["glove"])

    def test_default_class_names(self) -> None:
        pipe = _pipeline(class_names=["sock", "shoe"])
        dets = pipe.detect(_scene())
        self.assertEqual((dets[0].class_index, dets[0].class_name), (1, "shoe"))

    def test_results_respect_invariants(self) -> None:
        pipe = _pipeline(post_cfg=PostprocessConfig(conf_threshold=0.3))
        dets = pipe.detect(_scene(), ["sock", "hat", "shoe"])
        self.assertEqual([d.class_name for d in dets], ["shoe"])
        for d in dets:
            self.assertGreaterEqual(d.confidence, 0.3)
            self.assertTrue(0 <= d.x_min < d.x_max <= 1279)
            self.assertTrue(0 <= d.y_min < d.y_max <= 719)

    def test_per_call_thresholds(self) -> None:
        pipe = _pipeline()
        self.assertEqual(pipe.detect(_scene(), ["shoe"], conf_threshold=0.95), [])
        self.assertEqual(len(pipe.detect(_scene(), ["shoe"])), 1)
        with self.assertRaises(InvalidThreshold):
            pipe.detect(_scene(), ["shoe"], conf_threshold=1.5)
        with self.assertRaises(InvalidThreshold):
            pipe.detect(_scene(), ["shoe"], iou_threshold=-0.1)

    def test_per_call_config(self) -> None:
        pipe = _pipeline()
        strict = DetectorConfig(model_path="stub.onnx", conf_threshold=0.95)
        self.assertEqual(pipe.detect(_scene(), ["shoe"], strict), [])
        by_class = DetectorConfig(model_path="stub.onnx", class_conf_thresholds={"shoe": 0.95})
        self.assertEqual(pipe.detect(_scene(), ["shoe"], by_class), [])

    def test_per_call_config_resolves_against_load_root(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            engine = EngineHandle(
                CallableBackend(_stub_detector, (640, 640), embedding_dim=3),
                (640, 640),
                model_path=resolve_path("m.onnx", root=tmp),
            )
            pipe = YoloWorldPipeline(engine, CountingLookup(TABLE), root=tmp)
            dets = pipe.detect(_scene(), ["shoe"], DetectorConfig(model_path="m.onnx"))
            self.assertEqual(len(dets), 1)
            with self.assertRaises(ValueError):
                pipe.detect(_scene(), ["shoe"], DetectorConfig(model_path="other.onnx"))

    def test_errors_propagate(self) -> None:
        def broken(blob, emb):
            raise RuntimeError("out of memory")

        with self.assertRaises(InferenceError):
            _pipeline(fn=broken).detect(_scene(), ["shoe"])
        with self.assertRaises(ChannelOrderMismatch):
            _pipeline().detect(_scene().astype(np.float32), ["shoe"])
        with self.assertRaises(ChannelOrderMismatch):
            _pipeline().detect(Image(_scene(), "BGRA"), ["shoe"])

    def test_wrong_embedding_width_is_inference_error(self) -> None:
        pipe = _pipeline(encoder=LookupVocabularyEncoder({"shoe": [1.0, 0.0]}))
        with self.assertRaises(InferenceError):
            pipe.detect(_scene(), ["shoe"])

    def test_stage_timings_logged(self) -> None:
        with self.assertLogs("yolo_world_kit.runtime", level="DEBUG") as logs:
            _pipeline().detect(_scene(), ["shoe"])
        self.assertTrue(any("infer" in line for line in logs.output))

    def test_shared_pipeline_across_threads(self) -> None:
        pipe = _pipeline()
        expected = {("shoe", "hat"): 0, ("hat", "shoe"): 1}
        errors = []

        def worker(names):
            for _ in range(5):
                dets = pipe.detect(_scene(), list(names))
                if len(dets) != 1 or dets[0].class_index != expected[names] or dets[0].class_name != "shoe":
                    errors.append((names, dets))

        threads = [threading.Thread(target=worker, args=(names,)) for names in list(expected) * 3]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(errors, [])


if __name__ == "__main__":
    unittest.main()
