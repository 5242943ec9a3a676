"""Exception hierarchy shared by the pipeline, search, and workflow layers.

Every error carries a stable ``code`` so callers (API handlers, CLIs, the
worker's ``last_error`` column) can classify failures without string matching.
"""

from __future__ import annotations


class EquipmentVisionError(Exception):
    """Base class for all application errors."""

    code: str = "UNKNOWN_ERROR"

    def __init__(self, message: str = "", code: str | None = None) -> None:
        self.message = message
        if code:
            self.code = code
        super().__init__(message)

    def to_dict(self) -> dict[str, str]:
        return {"error_code": self.code, "message": self.message}


# Blob store
class BlobNotFoundError(EquipmentVisionError):
    code = "BLOB_NOT_FOUND"

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"Object not found: {key}")


class StorageKeyError(EquipmentVisionError):
    code = "INVALID_STORAGE_KEY"


# Intake / content validation
class UploadValidationError(EquipmentVisionError):
    code = "UPLOAD_INVALID"


class DuplicateImageError(EquipmentVisionError):
    code = "DUPLICATE_IMAGE"


# Models
class ChecksumMismatchError(EquipmentVisionError):
    code = "CHECKSUM_MISMATCH"


class ModelLoadError(EquipmentVisionError):
    code = "MODEL_LOAD_FAILED"


class EmbeddingError(EquipmentVisionError):
    code = "EMBEDDING_INVALID"


# Queue
class UnsupportedJobTypeError(EquipmentVisionError):
    code = "UNSUPPORTED_JOB_TYPE"


# Workflows
class NotFoundError(EquipmentVisionError):
    code = "NOT_FOUND"


class InvalidStateError(EquipmentVisionError):
    code = "INVALID_STATE"


class ScopeError(EquipmentVisionError):
    code = "SCOPE_INVALID"


__all__ = [
    "EquipmentVisionError",
    "BlobNotFoundError",
    "StorageKeyError",
    "UploadValidationError",
    "DuplicateImageError",
    "ChecksumMismatchError",
    "ModelLoadError",
    "EmbeddingError",
    "UnsupportedJobTypeError",
    "NotFoundError",
    "InvalidStateError",
    "ScopeError",
]
