"""Image embedding provider built on an ONNX vision encoder."""

from __future__ import annotations

import io
from dataclasses import dataclass
from threading import Lock
from typing import Any, Sequence

import numpy as np
from PIL import Image

from equipment_vision.config import EmbeddingModelConfig
from equipment_vision.errors import EmbeddingError
from equipment_vision.ml.runtime import LazySession
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "embedding"})

_MIN_NORM = 1e-12


@dataclass(frozen=True)
class EmbeddingModel:
    """Identity of the encoder that produced a vector; vectors only compare within one identity."""

    vendor: str
    name: str
    version: str


def fp16_to_float32(values: Any) -> np.ndarray:
    """Decode IEEE-754 half precision values to float32.

    Accepts float16 arrays as well as raw 16-bit patterns (``0x3c00`` -> 1.0).
    Subnormals, signed infinities, and NaN decode per the standard.
    """

    arr = np.asarray(values)
    if arr.dtype == np.float16:
        return arr.astype(np.float32)
    bits = arr.astype(np.uint16)
    return bits.view(np.float16).astype(np.float32)


def l2_normalize_checked(vector: Sequence[float] | np.ndarray, expected_dim: int) -> np.ndarray:
    """Return ``vector / ||vector||`` or raise :class:`EmbeddingError`.

    Wrong length, NaN components, and zero or non-finite norms all indicate a
    preprocessing bug upstream and must never produce a "normalized" vector.
    """

    arr = np.asarray(vector, dtype=np.float32).reshape(-1)
    if arr.shape[0] != expected_dim:
        raise EmbeddingError(f"unexpected embed length {arr.shape[0]} (expected {expected_dim})")
    if np.isnan(arr).any():
        raise EmbeddingError("embedding contains NaN")
    norm = float(np.sqrt(np.sum(arr.astype(np.float64) ** 2)))
    if not np.isfinite(norm) or norm < _MIN_NORM:
        raise EmbeddingError("zero or invalid norm")
    return (arr / norm).astype(np.float32)


def decode_image(data: bytes) -> Image.Image:
    with Image.open(io.BytesIO(data)) as image:
        return image.convert("RGB")


def resize_cover(image: Image.Image, size: int) -> Image.Image:
    """Scale so the short side equals ``size`` and center-crop to a square."""

    width, height = image.size
    scale = max(size / width, size / height)
    resized = image.resize(
        (max(size, round(width * scale)), max(size, round(height * scale))),
        Image.Resampling.BICUBIC,
    )
    left = (resized.width - size) // 2
    top = (resized.height - size) // 2
    return resized.crop((left, top, left + size, top + size))


def image_to_tensor(
    image: Image.Image,
    mean: Sequence[float],
    std: Sequence[float],
    layout: str,
) -> np.ndarray:
    """Normalize an RGB image and return a batch-of-one float32 tensor in ``layout``."""

    pixels = np.asarray(image, dtype=np.float32) / 255.0
    pixels = (pixels - np.asarray(mean, dtype=np.float32)) / np.asarray(std, dtype=np.float32)
    if layout == "NCHW":
        pixels = pixels.transpose(2, 0, 1)
    return np.ascontiguousarray(pixels[np.newaxis, ...], dtype=np.float32)


def input_layout_and_size(shape: Sequence[Any]) -> tuple[str, int | None]:
    """Infer ``(layout, spatial size)`` from a declared model input shape.

    Symbolic or missing spatial dimensions yield ``None`` for the size.
    """

    dims = list(shape)
    if len(dims) == 4 and dims[-1] == 3 and dims[1] != 3:
        layout = "NHWC"
        spatial = dims[1]
    else:
        layout = "NCHW"
        spatial = dims[2] if len(dims) == 4 else None
    size = spatial if isinstance(spatial, int) and spatial > 0 else None
    return layout, size


class EmbeddingProvider:
    """Convert image bytes into an L2-normalized embedding vector."""

    def __init__(self, config: EmbeddingModelConfig, session: LazySession) -> None:
        self._config = config
        self._session = session
        self._resolved_size: int | None = None
        self._size_lock = Lock()

    @property
    def model(self) -> EmbeddingModel:
        return EmbeddingModel(vendor=self._config.vendor, name=self._config.name, version=self._config.version)

    @property
    def dim(self) -> int:
        return self._config.dim

    def warmup(self) -> None:
        self._session.warmup()

    def close(self) -> None:
        self._session.close()

    def _layout_and_size(self, session: Any) -> tuple[str, int | None]:
        layout, size = input_layout_and_size(session.get_inputs()[0].shape)
        if self._config.layout in {"NCHW", "NHWC"}:
            layout = self._config.layout
        return layout, self._resolved_size or size

    def _run(self, session: Any, image: Image.Image, size: int, layout: str) -> np.ndarray:
        tensor = image_to_tensor(resize_cover(image, size), self._config.mean, self._config.std, layout)
        outputs = session.run(None, {session.get_inputs()[0].name: tensor})
        return np.asarray(outputs[0])

    def embed(self, data: bytes) -> np.ndarray:
        session = self._session.get()
        image = decode_image(data)
        layout, size = self._layout_and_size(session)

        if size is not None:
            raw = self._run(session, image, size, layout)
        else:
            raw = self._probe(session, image, layout)

        if raw.dtype == np.float16:
            raw = fp16_to_float32(raw)
        return l2_normalize_checked(raw, self._config.dim)

    def _probe(self, session: Any, image: Image.Image, layout: str) -> np.ndarray:
        """Try the configured candidate sizes for a model with dynamic spatial dims."""

        errors: list[str] = []
        for candidate in self._config.probe_sizes:
            try:
                raw = self._run(session, image, candidate, layout)
            except Exception as exc:
                LOGGER.info("embedding_probe_rejected", extra={"size": candidate, "error": str(exc)})
                errors.append(f"{candidate}: {exc}")
                continue
            with self._size_lock:
                self._resolved_size = candidate
            LOGGER.info("embedding_probe_selected", extra={"size": candidate, "layout": layout})
            return raw
        raise EmbeddingError("no probe size accepted by the embedding model: " + "; ".join(errors))


__all__ = [
    "EmbeddingModel",
    "EmbeddingProvider",
    "decode_image",
    "fp16_to_float32",
    "image_to_tensor",
    "input_layout_and_size",
    "l2_normalize_checked",
    "resize_cover",
]
