"""Ensure model files exist locally, downloading and verifying them when needed."""

from __future__ import annotations

from pathlib import Path

import httpx

from equipment_vision.blob_store import BlobStore
from equipment_vision.config import ModelSourceConfig
from equipment_vision.errors import ChecksumMismatchError, ModelLoadError
from equipment_vision.hasher import compute_file_hash
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "model_files"})


def _matches(path: Path, expected_sha256: str | None) -> bool:
    if not expected_sha256:
        return True
    return compute_file_hash(path) == expected_sha256.lower()


def _download_url(
    url: str,
    dest: Path,
    timeout: float,
    transport: httpx.BaseTransport | None = None,
) -> None:
    with httpx.Client(timeout=timeout, follow_redirects=True, transport=transport) as client:
        with client.stream("GET", url) as response:
            response.raise_for_status()
            with dest.open("wb") as handle:
                for chunk in response.iter_bytes():
                    handle.write(chunk)


def ensure_model_file(
    source: ModelSourceConfig,
    *,
    blob_store: BlobStore | None = None,
    timeout: float = 120.0,
    transport: httpx.BaseTransport | None = None,
) -> Path:
    """Return a local path for the model described by ``source``.

    An existing file is kept when no sha256 is configured or when it matches.
    A stale file is removed and fetched again from the object store (when an
    object key is configured) or from the URL. A download that does not match
    the configured sha256 raises :class:`ChecksumMismatchError`.
    """

    path = Path(source.path)
    if path.exists():
        if _matches(path, source.sha256):
            return path
        LOGGER.warning("model_checksum_stale", extra={"path": str(path)})
        path.unlink()

    if not source.object_key and not source.url:
        raise ModelLoadError(f"Model file {path} is missing and no download source is configured")

    path.parent.mkdir(parents=True, exist_ok=True)
    partial_path = path.with_name(path.name + ".part")

    LOGGER.info(
        "model_download_start",
        extra={"path": str(path), "object_key": source.object_key, "url": source.url},
    )
    try:
        if source.object_key:
            if blob_store is None:
                raise ModelLoadError(f"Model {path} needs an object store to download {source.object_key}")
            blob_store.download_file(source.object_key, partial_path, bucket=source.bucket)
        else:
            _download_url(str(source.url), partial_path, timeout, transport)

        if not _matches(partial_path, source.sha256):
            raise ChecksumMismatchError(f"Checksum mismatch for {path}")
    except BaseException:
        partial_path.unlink(missing_ok=True)
        raise

    partial_path.replace(path)
    LOGGER.info("model_download_complete", extra={"path": str(path), "size_bytes": path.stat().st_size})
    return path


__all__ = ["ensure_model_file"]
