"""Content hashing helpers for image blobs, model files, and query vectors."""

from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Final, Sequence

import numpy as np

CONTENT_HASH_ALGO: Final[str] = "sha256"
VECTOR_HASH_LENGTH: Final[int] = 16


def compute_content_hash(data: bytes) -> str:
    """Return the lowercase hex sha256 of an in-memory blob."""

    return hashlib.sha256(data).hexdigest()


def compute_file_hash(path: Path, chunk_size: int = 1 << 20) -> str:
    """Compute the sha256 of a file, streaming it in ``chunk_size`` pieces.

    Model files are hundreds of megabytes, so the file is never read into
    memory at once.
    """

    digest = hashlib.sha256()
    with path.open("rb") as handle:
        while True:
            chunk = handle.read(chunk_size)
            if not chunk:
                break
            digest.update(chunk)
    return digest.hexdigest()


def vector_fingerprint(vector: Sequence[float] | np.ndarray) -> str:
    """Return a short fingerprint of a float32 vector for dedup/debug logging."""

    payload = np.asarray(vector, dtype=np.float32).tobytes()
    return hashlib.sha256(payload).hexdigest()[:VECTOR_HASH_LENGTH]


__all__ = [
    "CONTENT_HASH_ALGO",
    "compute_content_hash",
    "compute_file_hash",
    "vector_fingerprint",
]
