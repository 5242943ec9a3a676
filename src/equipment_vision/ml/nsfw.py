"""NSFW classifier: configurable preprocessing and score aggregation."""

from __future__ import annotations

from typing import Any, Sequence

import numpy as np
from PIL import Image

from equipment_vision.config import NsfwModelConfig
from equipment_vision.ml.embedding import decode_image, resize_cover
from equipment_vision.ml.runtime import LazySession

IMAGENET_MEAN = np.asarray([0.485, 0.456, 0.406], dtype=np.float32)
IMAGENET_STD = np.asarray([0.229, 0.224, 0.225], dtype=np.float32)
VGG_MEAN = np.asarray([104.0, 117.0, 123.0], dtype=np.float32)
SAFE_LABELS = ("neutral", "drawings")


def nsfw_input_layout(shape: Sequence[Any] | None, default_size: int) -> tuple[str, int]:
    """Return ``(layout, size)`` for the classifier input; NHWC unless the shape says ``[1,3,S,S]``."""

    dims = list(shape or [])
    if len(dims) == 4 and dims[1] == 3:
        size = dims[2] if isinstance(dims[2], int) and dims[2] > 0 else default_size
        return "NCHW", size
    if len(dims) == 4 and isinstance(dims[1], int) and dims[1] > 0:
        return "NHWC", dims[1]
    return "NHWC", default_size


def preprocess_nsfw(image: Image.Image, config: NsfwModelConfig, layout: str, size: int) -> np.ndarray:
    pixels = np.asarray(resize_cover(image, size), dtype=np.float32)
    if config.color.lower() == "bgr":
        pixels = pixels[..., ::-1]

    if config.preprocessing.lower() == "vgg":
        pixels = pixels - VGG_MEAN
    else:
        pixels = (pixels / 255.0 - IMAGENET_MEAN) / IMAGENET_STD

    if layout == "NCHW":
        pixels = pixels.transpose(2, 0, 1)
    return np.ascontiguousarray(pixels[np.newaxis, ...], dtype=np.float32)


def _softmax(values: np.ndarray) -> np.ndarray:
    shifted = np.exp(values - np.max(values))
    return shifted / np.sum(shifted)


def _as_probabilities(values: np.ndarray) -> np.ndarray:
    if np.all(values >= 0.0) and np.all(values <= 1.0) and abs(float(np.sum(values)) - 1.0) < 1e-3:
        return values
    return _softmax(values)


def aggregate_nsfw_score(
    raw: Any,
    output_labels: Sequence[str] = (),
    nsfw_classes: Sequence[str] = (),
) -> float:
    """Collapse classifier output into a single NSFW probability in [0, 1].

    One output value is read as a sigmoid probability and clamped. Several
    values are treated as class scores: with matching labels the NSFW classes
    are summed (or the safe classes subtracted from one), two unlabeled
    classes read the second as NSFW, and anything else takes the max.
    """

    values = np.asarray(raw, dtype=np.float64).reshape(-1)
    if values.size == 0:
        return 0.0
    if values.size == 1:
        return float(np.clip(values[0], 0.0, 1.0))

    probs = _as_probabilities(values)
    labels = [label.strip().lower() for label in output_labels]

    if len(labels) == probs.size:
        wanted = {label.strip().lower() for label in nsfw_classes}
        if wanted & set(labels):
            score = sum(float(p) for label, p in zip(labels, probs) if label in wanted)
        elif any(label in SAFE_LABELS for label in labels):
            score = 1.0 - sum(float(p) for label, p in zip(labels, probs) if label in SAFE_LABELS)
        else:
            score = float(np.max(probs))
    elif probs.size == 2:
        score = float(probs[1])
    else:
        score = float(np.max(probs))

    return float(np.clip(score, 0.0, 1.0))


class NsfwClassifier:
    """Score image bytes with the configured NSFW model."""

    def __init__(self, config: NsfwModelConfig, session: LazySession) -> None:
        self._config = config
        self._session = session

    def warmup(self) -> None:
        self._session.warmup()

    def close(self) -> None:
        self._session.close()

    def score(self, data: bytes) -> float:
        session = self._session.get()
        model_input = session.get_inputs()[0]
        layout, size = nsfw_input_layout(getattr(model_input, "shape", None), self._config.input_size)
        tensor = preprocess_nsfw(decode_image(data), self._config, layout, size)
        outputs = session.run(None, {model_input.name: tensor})
        return aggregate_nsfw_score(outputs[0], self._config.output_labels, self._config.nsfw_classes)


__all__ = ["NsfwClassifier", "aggregate_nsfw_score", "nsfw_input_layout", "preprocess_nsfw"]
