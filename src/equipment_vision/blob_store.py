"""Blob store adapter: head/get/copy/delete on storage keys in an S3-compatible bucket."""

from __future__ import annotations

import io
from dataclasses import dataclass
from pathlib import Path
from typing import Final, Protocol

from minio import Minio
from minio.commonconfig import CopySource
from minio.error import S3Error

from equipment_vision.config import BlobStoreConfig
from equipment_vision.errors import BlobNotFoundError
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "blob_store"})

_MISSING_CODES: Final[frozenset[str]] = frozenset({"NoSuchKey", "NoSuchObject", "NotFound", "ResourceNotFound"})


@dataclass(frozen=True)
class BlobHead:
    content_type: str | None
    content_length: int


class BlobStore(Protocol):
    """Operations the pipeline needs from object storage."""

    def head_object(self, key: str) -> BlobHead:
        """Return metadata for ``key``; raise :class:`BlobNotFoundError` when missing."""

    def get_object_bytes(self, key: str) -> bytes:
        """Return the full object body; raise :class:`BlobNotFoundError` when missing."""

    def put_object_bytes(self, key: str, data: bytes, content_type: str | None = None) -> None:
        ...

    def copy_object_if_missing(self, src: str, dst: str) -> bool:
        """Copy ``src`` to ``dst`` unless ``dst`` already exists. Returns True when a copy happened."""

    def delete_object_ignore_missing(self, key: str) -> None:
        ...

    def download_file(self, key: str, dest: Path, bucket: str | None = None) -> None:
        ...


def _is_missing(exc: S3Error) -> bool:
    return exc.code in _MISSING_CODES


class MinioBlobStore:
    """:class:`BlobStore` backed by a MinIO/S3 client."""

    def __init__(self, config: BlobStoreConfig, client: Minio | None = None) -> None:
        self._bucket = config.bucket
        self._client = client or Minio(
            endpoint=config.endpoint,
            access_key=config.access_key,
            secret_key=config.secret_key,
            secure=config.secure,
        )

    def ensure_bucket(self) -> None:
        if not self._client.bucket_exists(self._bucket):
            self._client.make_bucket(self._bucket)
            LOGGER.info("blob_bucket_created", extra={"bucket": self._bucket})

    def head_object(self, key: str) -> BlobHead:
        try:
            stat = self._client.stat_object(self._bucket, key)
        except S3Error as exc:
            if _is_missing(exc):
                raise BlobNotFoundError(key) from exc
            raise
        return BlobHead(content_type=stat.content_type, content_length=int(stat.size or 0))

    def exists(self, key: str) -> bool:
        try:
            self.head_object(key)
        except BlobNotFoundError:
            return False
        return True

    def get_object_bytes(self, key: str) -> bytes:
        try:
            response = self._client.get_object(self._bucket, key)
        except S3Error as exc:
            if _is_missing(exc):
                raise BlobNotFoundError(key) from exc
            raise
        try:
            return response.read()
        finally:
            response.close()
            response.release_conn()

    def put_object_bytes(self, key: str, data: bytes, content_type: str | None = None) -> None:
        self._client.put_object(
            self._bucket,
            key,
            io.BytesIO(data),
            length=len(data),
            content_type=content_type or "application/octet-stream",
        )

    def copy_object_if_missing(self, src: str, dst: str) -> bool:
        if src == dst or self.exists(dst):
            return False
        try:
            self._client.copy_object(self._bucket, dst, CopySource(self._bucket, src))
        except S3Error as exc:
            if _is_missing(exc):
                raise BlobNotFoundError(src) from exc
            raise
        LOGGER.info("blob_copied", extra={"src": src, "dst": dst})
        return True

    def delete_object_ignore_missing(self, key: str) -> None:
        try:
            self._client.remove_object(self._bucket, key)
        except S3Error as exc:
            if not _is_missing(exc):
                raise
            LOGGER.warning("blob_delete_missing", extra={"key": key})

    def download_file(self, key: str, dest: Path, bucket: str | None = None) -> None:
        try:
            self._client.fget_object(bucket or self._bucket, key, str(dest))
        except S3Error as exc:
            if _is_missing(exc):
                raise BlobNotFoundError(key) from exc
            raise


__all__ = ["BlobHead", "BlobStore", "MinioBlobStore"]
