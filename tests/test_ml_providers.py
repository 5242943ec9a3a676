from __future__ import annotations

import io
import math
import threading
import time
from typing import List

import numpy as np
import pytest
from PIL import Image

from conftest import FakeOrtSession, lazy, png_bytes, unit_embedding
from equipment_vision.config import EmbeddingModelConfig, NsfwModelConfig, PersonModelConfig
from equipment_vision.errors import EmbeddingError, ModelLoadError
from equipment_vision.ml.embedding import (
    EmbeddingProvider,
    fp16_to_float32,
    input_layout_and_size,
    l2_normalize_checked,
)
from equipment_vision.ml.nsfw import NsfwClassifier, aggregate_nsfw_score, nsfw_input_layout
from equipment_vision.ml.person import (
    BoundingBox,
    PersonDetection,
    PersonDetector,
    letterbox,
    non_max_suppression,
    parse_person_detections,
)
from equipment_vision.ml.runtime import LazySession, resolve_ort_log_level
from equipment_vision.ml.safety import SafetyProvider


def test_fp16_bit_patterns_decode_per_ieee754() -> None:
    decoded = fp16_to_float32([0x3C00, 0xC000, 0x0000, 0x8000, 0x7C00, 0xFC00, 0x0001, 0x7BFF])

    assert decoded[0] == 1.0
    assert decoded[1] == -2.0
    assert decoded[2] == 0.0
    assert math.copysign(1.0, decoded[3]) == -1.0
    assert decoded[4] == math.inf
    assert decoded[5] == -math.inf
    assert decoded[6] == pytest.approx(2.0**-24)
    assert decoded[7] == 65504.0
    assert math.isnan(fp16_to_float32([0x7E00])[0])


def test_fp16_arrays_pass_through() -> None:
    values = np.asarray([0.5, -1.25], dtype=np.float16)

    decoded = fp16_to_float32(values)

    assert decoded.dtype == np.float32
    assert decoded.tolist() == [0.5, -1.25]


def test_l2_normalize_checked() -> None:
    vector = l2_normalize_checked([3.0, 4.0], 2)

    assert vector.tolist() == pytest.approx([0.6, 0.8])
    with pytest.raises(EmbeddingError, match="unexpected embed length"):
        l2_normalize_checked([1.0, 2.0, 3.0], 2)
    with pytest.raises(EmbeddingError, match="NaN"):
        l2_normalize_checked([float("nan"), 1.0], 2)
    with pytest.raises(EmbeddingError, match="zero or invalid norm"):
        l2_normalize_checked([0.0, 0.0], 2)
    with pytest.raises(EmbeddingError, match="zero or invalid norm"):
        l2_normalize_checked([math.inf, 1.0], 2)


@pytest.mark.parametrize(
    "shape,expected",
    [
        ([1, 3, 224, 224], ("NCHW", 224)),
        ([1, 256, 256, 3], ("NHWC", 256)),
        (["batch", 3, "height", "width"], ("NCHW", None)),
        ([1, "h", "w", 3], ("NHWC", None)),
    ],
)
def test_input_layout_and_size(shape: list, expected: tuple) -> None:
    assert input_layout_and_size(shape) == expected


def test_embedding_provider_decodes_fp16_output() -> None:
    raw = np.zeros((1, 512), dtype=np.float16)
    raw[0, 0] = 3.0
    raw[0, 1] = 4.0
    provider = EmbeddingProvider(EmbeddingModelConfig(), lazy(FakeOrtSession(raw)))

    vector = provider.embed(png_bytes())

    assert vector.dtype == np.float32
    assert vector[:2].tolist() == pytest.approx([0.6, 0.8])


def test_embedding_provider_probes_dynamic_input_sizes() -> None:
    def _only_224(feed):
        tensor = next(iter(feed.values()))
        if tensor.shape[-1] != 224:
            raise RuntimeError(f"bad input size {tensor.shape}")
        return [unit_embedding(1.0)]

    session = FakeOrtSession(_only_224, shape=["batch", 3, "height", "width"])
    provider = EmbeddingProvider(EmbeddingModelConfig(probe_sizes=[256, 224]), lazy(session))

    provider.embed(png_bytes())
    provider.embed(png_bytes())

    sizes = [next(iter(feed.values())).shape[-1] for feed in session.feeds]
    assert sizes == [256, 224, 224]


def test_embedding_provider_raises_when_no_probe_size_fits() -> None:
    def _reject(_feed):
        raise RuntimeError("nope")

    provider = EmbeddingProvider(
        EmbeddingModelConfig(probe_sizes=[256, 224]),
        lazy(FakeOrtSession(_reject, shape=[1, 3, "h", "w"])),
    )

    with pytest.raises(EmbeddingError, match="no probe size"):
        provider.embed(png_bytes())


def test_embedding_provider_rejects_wrong_width() -> None:
    provider = EmbeddingProvider(EmbeddingModelConfig(), lazy(FakeOrtSession([[1.0, 2.0]])))

    with pytest.raises(EmbeddingError, match="unexpected embed length 2"):
        provider.embed(png_bytes())


def test_embedding_provider_sends_nhwc_when_model_declares_it() -> None:
    session = FakeOrtSession([unit_embedding(1.0)], shape=[1, 224, 224, 3])
    provider = EmbeddingProvider(EmbeddingModelConfig(), lazy(session))

    provider.embed(png_bytes())

    assert next(iter(session.feeds[0].values())).shape == (1, 224, 224, 3)


def test_aggregate_nsfw_score_variants() -> None:
    assert aggregate_nsfw_score([0.7]) == pytest.approx(0.7)
    assert aggregate_nsfw_score([1.7]) == 1.0
    assert aggregate_nsfw_score([0.3, 0.7]) == pytest.approx(0.7)
    assert aggregate_nsfw_score([0.0, 0.0]) == pytest.approx(0.5)

    labels = ["drawings", "hentai", "neutral", "porn", "sexy"]
    probs = [0.1, 0.1, 0.5, 0.2, 0.1]
    assert aggregate_nsfw_score(probs, labels, ["porn", "hentai", "sexy"]) == pytest.approx(0.4)
    assert aggregate_nsfw_score(probs, labels, []) == pytest.approx(0.4)
    assert aggregate_nsfw_score([0.1, 0.2, 0.7]) == pytest.approx(0.7)
    assert aggregate_nsfw_score([]) == 0.0


def test_nsfw_input_layout() -> None:
    assert nsfw_input_layout([1, 3, 299, 299], 224) == ("NCHW", 299)
    assert nsfw_input_layout([1, 224, 224, 3], 299) == ("NHWC", 224)
    assert nsfw_input_layout(["n", "h", "w", 3], 224) == ("NHWC", 224)
    assert nsfw_input_layout(None, 224) == ("NHWC", 224)


def test_nsfw_classifier_uses_vgg_bgr_preprocessing() -> None:
    session = FakeOrtSession([[0.2, 0.8]], shape=[1, 224, 224, 3])
    config = NsfwModelConfig(preprocessing="vgg", color="bgr")
    classifier = NsfwClassifier(config, lazy(session))

    score = classifier.score(png_bytes(color=(200, 30, 30)))

    tensor = next(iter(session.feeds[0].values()))
    assert tensor.shape == (1, 224, 224, 3)
    # BGR order minus the VGG channel means.
    assert tensor[0, 0, 0].tolist() == pytest.approx([30 - 104, 30 - 117, 200 - 123])
    assert score == pytest.approx(0.8)


def _dense_row(cx: float, cy: float, w: float, h: float, obj: float, person: float) -> List[float]:
    return [cx, cy, w, h, obj, person, 0.05]


def test_parse_dense_detections_filters_and_suppresses() -> None:
    config = PersonModelConfig()
    rows = [
        _dense_row(320, 320, 100, 200, 0.95, 0.9),
        _dense_row(322, 322, 100, 200, 0.90, 0.9),  # overlaps the first
        _dense_row(100, 100, 100, 200, 0.30, 0.9),  # objectness too low
        _dense_row(500, 320, 100, 200, 0.70, 0.7),  # 0.49 combined score
        _dense_row(320, 320, 10, 10, 0.95, 0.95),  # too small
        _dense_row(320, 320, 200, 100, 0.95, 0.95),  # wider than tall
    ]

    detections = parse_person_detections([rows], config, 640)

    assert len(detections) == 1
    assert detections[0].score == pytest.approx(0.95 * 0.9)
    assert detections[0].bbox.to_list() == [270.0, 220.0, 370.0, 420.0]


def test_parse_dense_detections_applies_sigmoid_to_logits() -> None:
    rows = [_dense_row(320, 320, 100, 200, 4.0, 4.0)]

    [detection] = parse_person_detections([rows], PersonModelConfig(scores_are_logits=True), 640)

    sig = 1.0 / (1.0 + math.exp(-4.0))
    assert detection.score == pytest.approx(sig * sig)


def test_score_interpretation_follows_config_not_value_range() -> None:
    """A logit that happens to fall in [0, 1] is still squashed when the model emits logits."""

    rows = [_dense_row(320, 320, 100, 200, 0.9, 0.9)]

    [as_probability] = parse_person_detections([rows], PersonModelConfig(), 640)
    assert as_probability.score == pytest.approx(0.81)
    # sigmoid(0.9) ** 2 is about 0.506, below the 0.55 confidence floor.
    assert parse_person_detections([rows], PersonModelConfig(scores_are_logits=True), 640) == []

    nms_rows = [[100, 100, 200, 300, 1.7, 0]]
    [clamped] = parse_person_detections(nms_rows, PersonModelConfig(), 640)
    assert clamped.score == 1.0


def test_parse_nms_detections_keeps_person_class_only() -> None:
    rows = [
        [100, 100, 200, 300, 0.9, 0],
        [100, 100, 200, 300, 0.9, 2],
        [300, 100, 400, 300, 0.4, 0],
    ]

    detections = parse_person_detections(rows, PersonModelConfig(), 640)

    assert [d.bbox.to_list() for d in detections] == [[100.0, 100.0, 200.0, 300.0]]


def test_parse_unrecognized_layout_returns_nothing() -> None:
    assert parse_person_detections([[1.0, 2.0, 3.0]], PersonModelConfig(), 640) == []
    assert parse_person_detections([], PersonModelConfig(), 640) == []


def test_non_max_suppression_keeps_highest_score() -> None:
    strong = PersonDetection(bbox=BoundingBox(0, 0, 10, 20), score=0.9)
    weak = PersonDetection(bbox=BoundingBox(1, 1, 11, 21), score=0.6)
    apart = PersonDetection(bbox=BoundingBox(50, 50, 60, 70), score=0.7)

    assert non_max_suppression([weak, apart, strong], 0.45) == [strong, apart]


def test_letterbox_pads_with_gray() -> None:
    tensor = letterbox(Image.open(io.BytesIO(png_bytes(color=(255, 255, 255), size=(64, 32)))).convert("RGB"), 64)

    assert tensor.shape == (1, 3, 64, 64)
    assert tensor[0, :, 0, 0].tolist() == pytest.approx([114 / 255.0] * 3)
    assert tensor[0, :, 32, 32].tolist() == pytest.approx([1.0] * 3)


def test_safety_provider_without_detector_reports_unknown_person() -> None:
    classifier = NsfwClassifier(NsfwModelConfig(), lazy(FakeOrtSession([[0.6, 0.4]])))

    result = SafetyProvider(classifier).check(png_bytes())

    assert result.nsfw_score == pytest.approx(0.4)
    assert result.has_person is None
    assert result.person_count == 0


def test_safety_provider_skips_disabled_detector() -> None:
    classifier = NsfwClassifier(NsfwModelConfig(), lazy(FakeOrtSession([[0.6, 0.4]])))
    detector_session = FakeOrtSession([[100, 100, 200, 300, 0.9, 0]], shape=[1, 3, 640, 640])
    detector = PersonDetector(PersonModelConfig(enabled=False), lazy(detector_session))

    result = SafetyProvider(classifier, detector).check(png_bytes())

    assert result.has_person is None
    assert detector_session.feeds == []


def test_lazy_session_loads_once_under_concurrency() -> None:
    loads: List[int] = []

    def _loader() -> object:
        loads.append(1)
        time.sleep(0.05)
        return object()

    handle = LazySession("embedding", _loader)
    results: List[object] = []
    threads = [threading.Thread(target=lambda: results.append(handle.get())) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(loads) == 1
    assert len({id(result) for result in results}) == 1
    assert handle.loaded

    handle.close()
    assert not handle.loaded


def test_lazy_session_wraps_loader_errors_and_retries() -> None:
    attempts: List[int] = []

    def _loader() -> object:
        attempts.append(1)
        if len(attempts) == 1:
            raise OSError("corrupt model file")
        return "session"

    handle = LazySession("nsfw", _loader)

    with pytest.raises(ModelLoadError, match="corrupt model file"):
        handle.get()
    assert handle.get() == "session"


@pytest.mark.parametrize("value,expected", [(None, 3), ("0", 0), (9, 4), (-2, 0), ("verbose", 3)])
def test_resolve_ort_log_level(value, expected) -> None:
    assert resolve_ort_log_level(value) == expected
