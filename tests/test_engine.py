import importlib.util
import tempfile
import threading
import time
import unittest
from pathlib import Path
from typing import Tuple

import numpy as np

from yolo_world_kit.config import DetectorConfig
from yolo_world_kit.engine import EngineHandle, infer, load
from yolo_world_kit.errors import InferenceError, InvalidVocabulary, ModelLoadError
from yolo_world_kit.runtime import _default_encoder, detect, load_pipeline
from yolo_world_kit.types import DimRange
from yolo_world_kit.vocabulary import LookupVocabularyEncoder, VocabularyEmbedding


HAS_ONNX = importlib.util.find_spec("onnx") is not None and importlib.util.find_spec("onnxruntime") is not None

# cx, cy, w, h, score(shoe), score(sock) per anchor, in 64x64 tensor space.
PREDS = np.array(
    [
        [20, 20, 10, 10, 0.9, 0.1],
        [21, 20, 10, 10, 0.6, 0.1],
        [40, 40, 8, 8, 0.1, 0.8],
        [50, 50, 4, 4, 0.05, 0.05],
        [10, 50, 6, 6, 0.3, 0.2],
    ],
    dtype=np.float32,
)

TABLE = {"shoe": [1.0, 0.0, 0.0, 0.0], "sock": [0.0, 1.0, 0.0, 0.0]}

HAS_TORCH = importlib.util.find_spec("torch") is not None

if HAS_TORCH:
    import torch

    class TinyWorldModule(torch.nn.Module):
        """(1, 4 + C, 5) grid filled with the image mean; echoes the text features as a second output."""

        def forward(self, images: torch.Tensor, txt_feats: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
            grid = torch.zeros([1, 4 + txt_feats.shape[1], 5], dtype=images.dtype) + images.mean()
            return grid, txt_feats

    class ImagesOnlyModule(torch.nn.Module):
        def forward(self, images: torch.Tensor) -> torch.Tensor:
            return torch.zeros([1, 6, 5], dtype=images.dtype)


def _vocab(n: int, dim: int) -> VocabularyEmbedding:
    return VocabularyEmbedding(class_names=tuple(f"c{i}" for i in range(n)), vectors=np.ones((n, dim)))


def _write_tiny_world_model(path: Path, names: str = "{0: 'shoe', 1: 'sock'}") -> None:
    """
    Write a 64x64 YOLO-World style ONNX graph whose prediction output is a constant.

    Inputs: images [1, 3, 64, 64], txt_feats [num_classes, 4]
    Output 0: [1, 6, 5] channels-first predictions (PREDS transposed)
    """

    import onnx
    from onnx import TensorProto, helper

    preds = PREDS.T[None, ...]
    const = helper.make_node(
        "Constant",
        inputs=[],
        outputs=["output0"],
        value=helper.make_tensor("preds", TensorProto.FLOAT, list(preds.shape), preds.flatten().tolist()),
    )
    pool = helper.make_node("GlobalAveragePool", inputs=["images"], outputs=["pooled"])
    echo = helper.make_node("Identity", inputs=["txt_feats"], outputs=["txt_echo"])

    graph = helper.make_graph(
        [const, pool, echo],
        "tiny_world",
        inputs=[
            helper.make_tensor_value_info("images", TensorProto.FLOAT, [1, 3, 64, 64]),
            helper.make_tensor_value_info("txt_feats", TensorProto.FLOAT, ["num_classes", 4]),
        ],
        outputs=[
            helper.make_tensor_value_info("output0", TensorProto.FLOAT, list(preds.shape)),
            helper.make_tensor_value_info("pooled", TensorProto.FLOAT, [1, 3, 1, 1]),
            helper.make_tensor_value_info("txt_echo", TensorProto.FLOAT, ["num_classes", 4]),
        ],
    )
    model = helper.make_model(graph, opset_imports=[helper.make_opsetid("", 13)])
    model.ir_version = 8
    helper.set_model_props(model, {"names": names})
    onnx.save(model, str(path))


class TestEngineHandle(unittest.TestCase):
    def test_callable_handle_shapes(self) -> None:
        h = EngineHandle.from_callable(lambda blob, emb: np.zeros((1, 5, 6)), (320, 256))
        self.assertEqual(h.input_shape, (320, 256))
        self.assertEqual(h.tensor_shape, (1, 3, 256, 320))
        self.assertFalse(h.accepts_text)
        self.assertFalse(h.concurrent_safe)
        self.assertIn("callable", repr(h))

    def test_input_shape_must_be_stride_multiple(self) -> None:
        with self.assertRaises(ModelLoadError):
            EngineHandle.from_callable(lambda blob, emb: blob, (100, 64))

    def test_tensor_shape_mismatch(self) -> None:
        h = EngineHandle.from_callable(lambda blob, emb: np.zeros((1, 5, 6)), (64, 64))
        with self.assertRaises(InferenceError):
            infer(h, np.zeros((1, 3, 32, 32), dtype=np.float32), _vocab(2, 0))
        with self.assertRaises(InferenceError):
            infer(h, [[0.0]], _vocab(2, 0))

    def test_embedding_dimension_mismatch(self) -> None:
        h = EngineHandle.from_callable(lambda blob, emb: np.zeros((1, 5, 6)), (64, 64), embedding_dim=3)
        self.assertTrue(h.accepts_text)
        with self.assertRaises(InferenceError):
            h.infer(np.zeros(h.tensor_shape, dtype=np.float32), _vocab(2, 2))
        out = h.infer(np.zeros(h.tensor_shape, dtype=np.float32), _vocab(2, 3))
        self.assertEqual(out.shape, (1, 5, 6))

    def test_embedding_only_passed_to_text_models(self) -> None:
        seen = []

        def fn(blob, emb):
            seen.append(emb)
            return np.zeros((1, 5, 6))

        h = EngineHandle.from_callable(fn, (64, 64))
        h.infer(np.zeros(h.tensor_shape, dtype=np.float32), _vocab(2, 0))
        self.assertIsNone(seen[0])

    def test_backend_failure_wrapped(self) -> None:
        def boom(blob, emb):
            raise RuntimeError("device lost")

        h = EngineHandle.from_callable(boom, (64, 64))
        with self.assertRaises(InferenceError) as ctx:
            h.infer(np.zeros(h.tensor_shape, dtype=np.float32), _vocab(1, 0))
        self.assertIsInstance(ctx.exception.__cause__, RuntimeError)
        self.assertEqual(ctx.exception.stage, "infer")

    def test_output_rank_checked(self) -> None:
        h = EngineHandle.from_callable(lambda blob, emb: np.zeros((5, 6)), (64, 64))
        with self.assertRaises(InferenceError):
            h.infer(np.zeros(h.tensor_shape, dtype=np.float32), _vocab(1, 0))

    def test_unsafe_backend_is_serialized(self) -> None:
        active = []
        peak = []
        guard = threading.Lock()

        def fn(blob, emb):
            with guard:
                active.append(1)
                peak.append(len(active))
            time.sleep(0.01)
            with guard:
                active.pop()
            return np.zeros((1, 5, 6))

        h = EngineHandle.from_callable(fn, (64, 64))
        threads = [
            threading.Thread(target=h.infer, args=(np.zeros(h.tensor_shape, dtype=np.float32), _vocab(1, 0)))
            for _ in range(6)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(max(peak), 1)

    def test_concurrent_safe_backend_runs_in_parallel(self) -> None:
        barrier = threading.Barrier(2, timeout=5)

        def fn(blob, emb):
            barrier.wait()
            return np.zeros((1, 5, 6))

        h = EngineHandle.from_callable(fn, (64, 64), concurrent_safe=True)
        self.assertTrue(h.concurrent_safe)
        errors = []

        def run():
            try:
                h.infer(np.zeros(h.tensor_shape, dtype=np.float32), _vocab(1, 0))
            except InferenceError as exc:
                errors.append(exc)

        threads = [threading.Thread(target=run) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(errors, [])

    def test_warmup_uses_zero_vocabulary(self) -> None:
        calls = []

        def fn(blob, emb):
            calls.append((blob.shape, None if emb is None else emb.shape))
            return np.zeros((1, 5, 7))

        h = EngineHandle.from_callable(fn, (64, 64), embedding_dim=7)
        h.warmup(num_classes=3)
        self.assertEqual(calls, [((1, 3, 64, 64), (3, 7))])


class TestDimRange(unittest.TestCase):
    def test_bounds(self) -> None:
        r = DimRange(min=32, opt=640, max=1920)
        self.assertTrue(r.contains(32))
        self.assertFalse(r.contains(2048))
        self.assertFalse(r.is_static)
        self.assertTrue(DimRange.fixed(640).is_static)
        self.assertTrue(DimRange(min=32, opt=640).contains(10_000))
        # Bounds widen to include opt.
        self.assertEqual(DimRange(min=700, opt=640, max=600), DimRange(min=640, opt=640, max=640))


class TestLoad(unittest.TestCase):
    def test_missing_file(self) -> None:
        with self.assertRaises(ModelLoadError):
            load("/nonexistent/model.onnx")

    def test_unknown_extension(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            p = Path(tmp) / "model.bin"
            p.write_bytes(b"\x00")
            with self.assertRaises(ModelLoadError):
                load(p)
            with self.assertRaises(ModelLoadError):
                load(p, backend="tensorflow")


class TestDefaultEncoder(unittest.TestCase):
    def test_fixed_class_model_only_answers_for_its_own_names(self) -> None:
        engine = EngineHandle.from_callable(
            lambda blob, emb: np.zeros((1, 5, 6)), (64, 64), model_class_names=("person", "car")
        )
        enc = _default_encoder(DetectorConfig(model_path="m.onnx"), engine)
        with self.assertRaises(InvalidVocabulary):
            enc.encode(["car", "person"])
        with self.assertRaises(InvalidVocabulary):
            enc.encode(["person"])
        vocab = enc.encode(["person", "car"])
        self.assertEqual(vocab.class_names, ("person", "car"))
        self.assertEqual(vocab.vectors.shape, (2, 0))

    def test_text_model_needs_a_vocabulary_source(self) -> None:
        engine = EngineHandle.from_callable(lambda blob, emb: np.zeros((1, 5, 6)), (64, 64), embedding_dim=4)
        with self.assertRaises(ValueError):
            _default_encoder(DetectorConfig(model_path="m.onnx"), engine)


@unittest.skipUnless(HAS_TORCH, "torch not installed")
class TestTorchScriptBackend(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = Path(self._tmp.name)
        self.model_path = self.tmp / "tiny_world.torchscript"
        torch.jit.script(TinyWorldModule()).save(str(self.model_path))

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_raw_output_with_embeddings(self) -> None:
        h = load(self.model_path, input_shape=(64, 64), torch_embedding_dim=4)
        self.assertEqual(h.backend.name, "torchscript")
        self.assertFalse(h.concurrent_safe)
        self.assertTrue(h.accepts_text)
        self.assertEqual(h.tensor_shape, (1, 3, 64, 64))

        vocab = LookupVocabularyEncoder(TABLE).encode(["shoe", "sock"])
        raw = h.infer(np.full(h.tensor_shape, 0.5, dtype=np.float32), vocab)
        self.assertIsInstance(raw, np.ndarray)
        self.assertEqual(raw.shape, (1, 6, 5))
        self.assertTrue(np.allclose(raw, 0.5))

    def test_output_index_selects_tuple_member(self) -> None:
        h = load(self.model_path, input_shape=(64, 64), torch_embedding_dim=4, torch_output_index=1)
        vocab = LookupVocabularyEncoder(TABLE).encode(["shoe", "sock"])
        raw = h.infer(np.zeros(h.tensor_shape, dtype=np.float32), vocab)
        self.assertEqual(raw.shape, (1, 2, 4))
        self.assertTrue(np.allclose(raw[0], vocab.vectors))

    def test_images_only_model(self) -> None:
        path = self.tmp / "images_only.pt"
        torch.jit.script(ImagesOnlyModule()).save(str(path))
        h = load(path, input_shape=(64, 64), warmup=True)
        self.assertFalse(h.accepts_text)
        raw = h.infer(np.zeros(h.tensor_shape, dtype=np.float32), _vocab(2, 0))
        self.assertEqual(raw.shape, (1, 6, 5))

        # Declaring a text input the traced module does not have fails at call time.
        h = load(path, input_shape=(64, 64), torch_embedding_dim=4)
        with self.assertRaises(InferenceError):
            h.infer(np.zeros(h.tensor_shape, dtype=np.float32), _vocab(2, 4))

    def test_corrupt_file(self) -> None:
        bad = self.tmp / "bad.pt"
        bad.write_bytes(b"not a zip archive")
        with self.assertRaises(ModelLoadError):
            load(bad)


@unittest.skipUnless(HAS_ONNX, "onnx/onnxruntime not installed")
class TestOnnxRuntimeBackend(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = Path(self._tmp.name)
        self.model_path = self.tmp / "tiny_world.onnx"
        _write_tiny_world_model(self.model_path)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_io_contract_discovered(self) -> None:
        h = load(self.model_path)
        self.assertEqual(h.input_shape, (64, 64))
        self.assertTrue(h.concurrent_safe)
        self.assertEqual(h.embedding_dim, 4)
        self.assertEqual(h.model_class_names, ("shoe", "sock"))
        self.assertEqual(h.backend.text_input_name, "txt_feats")
        self.assertEqual(h.backend.output_name, "output0")
        self.assertIn("CPUExecutionProvider", h.backend.providers_in_use)

    def test_raw_output(self) -> None:
        h = load(self.model_path, warmup=True)
        vocab = LookupVocabularyEncoder(TABLE).encode(["shoe", "sock"])
        raw = h.infer(np.zeros(h.tensor_shape, dtype=np.float32), vocab)
        self.assertEqual(raw.shape, (1, 6, 5))
        self.assertTrue(np.allclose(raw[0].T, PREDS))

    def test_input_shape_mismatch(self) -> None:
        with self.assertRaises(ModelLoadError):
            load(self.model_path, input_shape=(640, 640))

    def test_corrupt_file(self) -> None:
        bad = self.tmp / "bad.onnx"
        bad.write_bytes(b"definitely not protobuf")
        with self.assertRaises(ModelLoadError):
            load(bad)

    def test_pipeline_end_to_end(self) -> None:
        cfg = DetectorConfig(model_path=str(self.model_path), input_shape=(64, 64))
        pipe = load_pipeline(cfg, encoder=LookupVocabularyEncoder(TABLE))
        image = np.full((64, 64, 3), 114, dtype=np.uint8)

        dets = pipe.detect(image, ["shoe", "sock"])
        self.assertEqual([(d.class_name, round(d.confidence, 3)) for d in dets], [("shoe", 0.9), ("sock", 0.8), ("shoe", 0.3)])
        self.assertTrue(np.allclose(dets[0].as_xyxy(), (15, 15, 25, 25)))

        # Class list stored in the model is the default vocabulary.
        self.assertEqual([d.class_name for d in pipe.detect(image)], ["shoe", "sock", "shoe"])

    def test_model_without_encoder_needs_vocabulary(self) -> None:
        cfg = DetectorConfig(model_path=str(self.model_path), input_shape=(64, 64))
        with self.assertRaises(ValueError):
            load_pipeline(cfg)

    def test_one_shot_detect_with_vocabulary_table(self) -> None:
        table = self.tmp / "vocab.npz"
        np.savez(table, names=np.array(list(TABLE)), embeddings=np.array(list(TABLE.values()), dtype=np.float32))
        cfg = DetectorConfig(
            model_path=str(self.model_path),
            input_shape=(64, 64),
            vocabulary_path=str(table),
            conf_threshold=0.5,
            warmup=True,
        )
        dets = detect(np.full((64, 64, 3), 114, dtype=np.uint8), ["shoe", "sock"], cfg)
        self.assertEqual([d.class_name for d in dets], ["shoe", "sock"])


if __name__ == "__main__":
    unittest.main()
