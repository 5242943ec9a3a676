"""Helpers that store and read embeddings on image rows together with their model identity."""

from __future__ import annotations

import time
from typing import Any, Sequence

import numpy as np

from equipment_vision.ml.embedding import EmbeddingModel


def apply_embedding(row: Any, vector: Sequence[float] | np.ndarray, model: EmbeddingModel) -> None:
    """Write ``vector`` and the encoder identity onto a gym, global, or candidate row."""

    row.embedding = [float(value) for value in np.asarray(vector, dtype=np.float32).reshape(-1)]
    row.model_vendor = model.vendor
    row.model_name = model.name
    row.model_version = model.version
    row.updated_at = time.time()


def row_model(row: Any) -> EmbeddingModel | None:
    if not (row.model_vendor and row.model_name and row.model_version):
        return None
    return EmbeddingModel(vendor=row.model_vendor, name=row.model_name, version=row.model_version)


def row_vector(row: Any) -> np.ndarray | None:
    if row.embedding is None:
        return None
    return np.asarray(row.embedding, dtype=np.float32).reshape(-1)


def copy_embedding(src: Any, dst: Any) -> bool:
    """Copy the embedding and model identity from ``src`` to ``dst``. Returns False when ``src`` has none."""

    vector = row_vector(src)
    model = row_model(src)
    if vector is None or model is None:
        return False
    apply_embedding(dst, vector, model)
    return True


__all__ = ["apply_embedding", "copy_embedding", "row_model", "row_vector"]
