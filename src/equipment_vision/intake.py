"""Upload finalization and pipeline entry points for new images."""

from __future__ import annotations

import time
import uuid
from typing import Callable

from sqlalchemy import select

from equipment_vision.blob_store import BlobStore
from equipment_vision.config import IntakeConfig
from equipment_vision.db import STATUS_PENDING, GymImage, SessionFactory
from equipment_vision.errors import BlobNotFoundError, DuplicateImageError, StorageKeyError, UploadValidationError
from equipment_vision.storage_keys import parse_storage_key
from equipment_vision.task_queue import JobQueueStore, JobType, priority_for_source
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "intake"})


class IntakeService:
    def __init__(
        self,
        session_factory: SessionFactory,
        blob_store: BlobStore,
        queue: JobQueueStore,
        config: IntakeConfig,
        kick: Callable[[], object] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._blob_store = blob_store
        self._queue = queue
        self._config = config
        self._kick = kick

    def _validate_upload(self, gym_id: str, storage_key: str) -> str:
        """Check key shape and the stored object; return its content type."""

        try:
            parsed = parse_storage_key(storage_key)
        except StorageKeyError as exc:
            raise UploadValidationError(str(exc)) from exc
        if parsed.kind != "upload":
            raise UploadValidationError(f"Key {storage_key} is not a gym upload key")
        if parsed.get("gym_id") != gym_id:
            raise UploadValidationError(f"Key {storage_key} does not belong to gym {gym_id}")

        try:
            head = self._blob_store.head_object(storage_key)
        except BlobNotFoundError as exc:
            raise UploadValidationError("Uploaded object not found") from exc

        content_type = (head.content_type or "").split(";", 1)[0].strip().lower()
        if content_type not in self._config.allowed_content_types:
            raise UploadValidationError(f"Unsupported content type: {head.content_type}")
        if head.content_length <= 0:
            raise UploadValidationError("Uploaded object is empty")
        if head.content_length > self._config.max_image_bytes:
            raise UploadValidationError(
                f"Uploaded object is {head.content_length} bytes, limit is {self._config.max_image_bytes}"
            )
        return content_type

    def finalize_gym_image(
        self,
        *,
        gym_id: str,
        equipment_id: str,
        storage_key: str,
        sha256: str | None = None,
        uploader_user_id: str | None = None,
        gym_equipment_id: str | None = None,
        source: str = "gym_manager",
    ) -> GymImage:
        """Register an uploaded gym photo and queue it for hashing and safety screening.

        Validation failures raise immediately and nothing is written. SAFETY
        queues EMBED itself once the image passes.
        """

        content_type = self._validate_upload(gym_id, storage_key)
        priority = priority_for_source(source)

        with self._session_factory() as session:
            if sha256:
                duplicate = session.execute(
                    select(GymImage.id).where(GymImage.gym_id == gym_id, GymImage.sha256 == sha256).limit(1)
                ).scalar_one_or_none()
                if duplicate is not None:
                    raise DuplicateImageError(f"Image already exists in gym {gym_id}: {duplicate}")

            now = time.time()
            image = GymImage(
                id=str(uuid.uuid4()),
                gym_id=gym_id,
                equipment_id=equipment_id,
                gym_equipment_id=gym_equipment_id,
                storage_key=storage_key,
                sha256=sha256,
                status=STATUS_PENDING,
                uploaded_by_user_id=uploader_user_id,
                mime_type=content_type,
                created_at=now,
                updated_at=now,
            )
            session.add(image)
            session.flush()

            if not sha256:
                self._queue.enqueue(
                    JobType.HASH, image_id=image.id, storage_key=storage_key, priority=priority, session=session
                )
            self._queue.enqueue(
                JobType.SAFETY, image_id=image.id, storage_key=storage_key, priority=priority, session=session
            )
            session.commit()

        LOGGER.info("gym_image_finalized", extra={"gym_image_id": image.id, "gym_id": gym_id, "storage_key": storage_key})
        if self._kick is not None:
            self._kick()
        return image

    def queue_image_processing(
        self,
        *,
        storage_key: str,
        image_id: str | None = None,
        source: str | None = None,
    ) -> int | None:
        """Queue a HASH job unless one is already pending or running for the same image.

        Returns the new job id, or ``None`` when an active job already exists.
        """

        if self._queue.has_active_job(storage_key=storage_key, image_id=image_id):
            LOGGER.info("queue_image_processing_skipped", extra={"storage_key": storage_key, "image_id": image_id})
            return None

        job_id = self._queue.enqueue(
            JobType.HASH,
            image_id=image_id,
            storage_key=storage_key,
            priority=priority_for_source(source),
        )
        if self._kick is not None:
            self._kick()
        return job_id


__all__ = ["IntakeService"]
