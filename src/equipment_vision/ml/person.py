"""Person detector supporting dense YOLO grids and post-NMS detection lists."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, List, Sequence

import numpy as np
from PIL import Image

from equipment_vision.config import PersonModelConfig
from equipment_vision.ml.embedding import decode_image
from equipment_vision.ml.runtime import LazySession
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "person_detector"})

PERSON_CLASS_ID = 0
LETTERBOX_PAD = 114
NMS_IOU_THRESHOLD = 0.45
# Post-NMS exports emit exactly [x1, y1, x2, y2, score, class_id] per row.
NMS_ROW_WIDTH = 6


@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned box in letterboxed input pixel coordinates."""

    x_min: float
    y_min: float
    x_max: float
    y_max: float

    @property
    def width(self) -> float:
        return max(0.0, self.x_max - self.x_min)

    @property
    def height(self) -> float:
        return max(0.0, self.y_max - self.y_min)

    def to_list(self) -> list[float]:
        return [round(self.x_min, 2), round(self.y_min, 2), round(self.x_max, 2), round(self.y_max, 2)]


@dataclass
class PersonDetection:
    bbox: BoundingBox
    score: float


def iou(a: BoundingBox, b: BoundingBox) -> float:
    """Compute intersection-over-union for two boxes."""

    inter_w = max(0.0, min(a.x_max, b.x_max) - max(a.x_min, b.x_min))
    inter_h = max(0.0, min(a.y_max, b.y_max) - max(a.y_min, b.y_min))
    inter_area = inter_w * inter_h
    if inter_area <= 0.0:
        return 0.0

    union = a.width * a.height + b.width * b.height - inter_area
    if union <= 0.0:
        return 0.0
    return inter_area / union


def non_max_suppression(detections: Sequence[PersonDetection], iou_threshold: float) -> List[PersonDetection]:
    """Keep only the highest-score detection among heavily overlapping boxes."""

    kept: List[PersonDetection] = []
    for det in sorted(detections, key=lambda item: item.score, reverse=True):
        if all(iou(det.bbox, other.bbox) < iou_threshold for other in kept):
            kept.append(det)
    return kept


def letterbox(image: Image.Image, size: int) -> np.ndarray:
    """Fit ``image`` into a padded ``size``x``size`` square and return a 1x3xSxS tensor in [0, 1]."""

    width, height = image.size
    scale = min(size / width, size / height)
    new_w = max(1, round(width * scale))
    new_h = max(1, round(height * scale))
    canvas = Image.new("RGB", (size, size), (LETTERBOX_PAD, LETTERBOX_PAD, LETTERBOX_PAD))
    canvas.paste(image.resize((new_w, new_h), Image.Resampling.BILINEAR), ((size - new_w) // 2, (size - new_h) // 2))
    pixels = np.asarray(canvas, dtype=np.float32) / 255.0
    return np.ascontiguousarray(pixels.transpose(2, 0, 1)[np.newaxis, ...])


def _probability(value: float, logits: bool) -> float:
    if logits:
        return 1.0 / (1.0 + math.exp(-value))
    return min(1.0, max(0.0, value))


def _passes_geometry(bbox: BoundingBox, config: PersonModelConfig, input_size: int) -> bool:
    if bbox.width <= 0.0 or bbox.height <= 0.0:
        return False
    area_fraction = (bbox.width * bbox.height) / float(input_size * input_size)
    if not config.area_min <= area_fraction <= config.area_max:
        return False
    aspect = bbox.height / bbox.width
    return config.aspect_min <= aspect <= config.aspect_max


def parse_person_detections(raw: Any, config: PersonModelConfig, input_size: int) -> List[PersonDetection]:
    """Decode detector output into accepted person boxes.

    The layout is chosen by the trailing dimension: six columns means a
    post-NMS list, anything wider is a dense ``[cx, cy, w, h, obj, classes...]``
    grid that still needs confidence filtering and NMS.
    """

    rows = np.asarray(raw, dtype=np.float32)
    if rows.size == 0:
        return []
    rows = rows.reshape(-1, rows.shape[-1])
    columns = rows.shape[1]

    accepted: List[PersonDetection] = []
    if columns == NMS_ROW_WIDTH:
        for x1, y1, x2, y2, score, class_id in rows.tolist():
            if int(round(class_id)) != PERSON_CLASS_ID:
                continue
            confidence = _probability(score, config.scores_are_logits)
            if confidence < config.confidence:
                continue
            bbox = BoundingBox(x1, y1, x2, y2)
            if _passes_geometry(bbox, config, input_size):
                accepted.append(PersonDetection(bbox=bbox, score=confidence))
        return accepted

    if columns < NMS_ROW_WIDTH:
        LOGGER.warning("person_output_unrecognized", extra={"columns": columns})
        return []

    for row in rows.tolist():
        cx, cy, w, h = row[0], row[1], row[2], row[3]
        objectness = _probability(row[4], config.scores_are_logits)
        if objectness < config.objectness_min:
            continue
        confidence = objectness * _probability(row[5 + PERSON_CLASS_ID], config.scores_are_logits)
        if confidence < config.confidence:
            continue
        bbox = BoundingBox(cx - w / 2.0, cy - h / 2.0, cx + w / 2.0, cy + h / 2.0)
        if _passes_geometry(bbox, config, input_size):
            accepted.append(PersonDetection(bbox=bbox, score=confidence))

    return non_max_suppression(accepted, NMS_IOU_THRESHOLD)


class PersonDetector:
    """Detect people in image bytes with a YOLO-style ONNX model."""

    def __init__(self, config: PersonModelConfig, session: LazySession) -> None:
        self._config = config
        self._session = session

    @property
    def enabled(self) -> bool:
        return self._config.enabled

    def warmup(self) -> None:
        self._session.warmup()

    def close(self) -> None:
        self._session.close()

    def detect(self, data: bytes) -> List[PersonDetection]:
        session = self._session.get()
        size = self._config.input_size
        tensor = letterbox(decode_image(data), size)
        outputs = session.run(None, {session.get_inputs()[0].name: tensor})
        return parse_person_detections(outputs[0], self._config, size)


__all__ = [
    "BoundingBox",
    "PersonDetection",
    "PersonDetector",
    "iou",
    "letterbox",
    "non_max_suppression",
    "parse_person_detections",
]
