"""Promotion of gym images into the global catalog and training-candidate review."""

from __future__ import annotations

import time
import uuid
from typing import Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from equipment_vision.blob_store import BlobStore
from equipment_vision.catalog import copy_safety_fields, find_global_by_sha, materialize_global_image
from equipment_vision.db import (
    STATUS_APPROVED,
    STATUS_QUARANTINED,
    STATUS_REJECTED,
    GlobalImage,
    GymImage,
    SessionFactory,
    TrainingCandidate,
)
from equipment_vision.embedding_index import copy_embedding
from equipment_vision.errors import BlobNotFoundError, InvalidStateError, NotFoundError
from equipment_vision.storage_keys import approved_gym_key, file_ext_from, promoted_global_key
from equipment_vision.suggestions import SuggestionService
from equipment_vision.task_queue import JobQueueStore, JobType, priority_for_source
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "promotion"})


class PromotionService:
    def __init__(
        self,
        session_factory: SessionFactory,
        blob_store: BlobStore,
        queue: JobQueueStore,
        suggestions: SuggestionService,
        kick: Callable[[], object] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._blob_store = blob_store
        self._queue = queue
        self._suggestions = suggestions
        self._kick = kick

    def _maybe_kick(self, needed: bool) -> None:
        if needed and self._kick is not None:
            self._kick()

    def promote_in_session(self, session: Session, gym_image: GymImage, *, force: bool = False) -> tuple[GlobalImage, bool]:
        """Copy an approved gym image into the global catalog.

        Returns the global row and whether an EMBED job was queued for it.
        """

        if not force:
            if gym_image.status != STATUS_APPROVED:
                raise InvalidStateError(f"Gym image {gym_image.id} must be APPROVED before promotion")
            if gym_image.is_safe is not True:
                raise InvalidStateError(f"Gym image {gym_image.id} has not passed safety screening")

        existing = find_global_by_sha(session, gym_image.equipment_id, gym_image.sha256)
        if existing is not None:
            LOGGER.info("promotion_duplicate", extra={"gym_image_id": gym_image.id, "global_image_id": existing.id})
            return existing, False

        try:
            head = self._blob_store.head_object(gym_image.storage_key)
        except BlobNotFoundError as exc:
            raise NotFoundError("Source object not found") from exc

        name = gym_image.sha256 or str(uuid.uuid4())
        dest_key = promoted_global_key(
            gym_image.equipment_id, name, file_ext_from(gym_image.storage_key, head.content_type)
        )
        image, embedded = materialize_global_image(
            session,
            self._blob_store,
            source=gym_image,
            source_key=gym_image.storage_key,
            equipment_id=gym_image.equipment_id,
            dest_key=dest_key,
            sha256=gym_image.sha256,
        )
        if not embedded:
            self._queue.enqueue(
                JobType.EMBED,
                image_id=image.id,
                storage_key=dest_key,
                priority=priority_for_source("admin"),
                session=session,
            )

        LOGGER.info(
            "gym_image_promoted",
            extra={"gym_image_id": gym_image.id, "global_image_id": image.id, "embedding_copied": embedded},
        )
        return image, not embedded

    def promote_gym_image_to_global(self, gym_image_id: str, *, force: bool = False) -> GlobalImage:
        with self._session_factory() as session:
            gym_image = session.get(GymImage, gym_image_id)
            if gym_image is None:
                raise NotFoundError(f"Gym image {gym_image_id} not found")
            image, queued = self.promote_in_session(session, gym_image, force=force)
            session.commit()
        self._maybe_kick(queued)
        return image

    def approve_candidate_in_session(
        self,
        session: Session,
        candidate: TrainingCandidate,
        approved_by: str | None = None,
    ) -> tuple[GymImage, bool]:
        """Turn a processed training candidate into an APPROVED gym image.

        Returns the gym image and whether an EMBED job was queued for it. The
        caller commits.
        """

        if candidate.status == STATUS_QUARANTINED or candidate.is_safe is False:
            raise InvalidStateError(f"Candidate {candidate.id} is quarantined")
        if not candidate.sha256:
            raise InvalidStateError(f"Candidate {candidate.id} has not been processed yet")

        image = session.execute(
            select(GymImage)
            .where(GymImage.gym_id == candidate.gym_id, GymImage.sha256 == candidate.sha256)
            .limit(1)
        ).scalar_one_or_none()

        queued = False
        now = time.time()
        if image is None:
            ext = file_ext_from(candidate.storage_key)
            dest_key = approved_gym_key(candidate.gym_equipment_id, candidate.sha256, ext)
            self._blob_store.copy_object_if_missing(candidate.storage_key, dest_key)
            image = GymImage(
                id=str(uuid.uuid4()),
                gym_id=candidate.gym_id,
                equipment_id=candidate.equipment_id,
                gym_equipment_id=candidate.gym_equipment_id,
                storage_key=dest_key,
                sha256=candidate.sha256,
                status=STATUS_APPROVED,
                uploaded_by_user_id=candidate.uploader_user_id,
                approved_by_user_id=approved_by,
                approved_at=now,
                created_at=now,
                updated_at=now,
            )
            copy_safety_fields(candidate, image)
            if not copy_embedding(candidate, image):
                queued = True
            session.add(image)
            session.flush()
            if queued:
                self._queue.enqueue(
                    JobType.EMBED,
                    image_id=image.id,
                    storage_key=dest_key,
                    priority=priority_for_source("gym_equipment"),
                    session=session,
                )
        elif image.status != STATUS_APPROVED:
            image.status = STATUS_APPROVED
            image.approved_by_user_id = approved_by
            image.approved_at = now
            image.updated_at = now

        candidate.status = STATUS_APPROVED
        candidate.approved_image_id = image.id
        candidate.updated_at = now

        self._suggestions.suggest_in_session(session, image)
        LOGGER.info("training_candidate_approved", extra={"candidate_id": candidate.id, "gym_image_id": image.id})
        return image, queued

    def approve_training_candidate(self, candidate_id: str, approved_by: str | None = None) -> GymImage:
        with self._session_factory() as session:
            candidate = session.get(TrainingCandidate, candidate_id)
            if candidate is None:
                raise NotFoundError(f"Training candidate {candidate_id} not found")
            image, queued = self.approve_candidate_in_session(session, candidate, approved_by)
            session.commit()
        self._maybe_kick(queued)
        return image

    def reject_training_candidate(self, candidate_id: str, reason: str | None = None) -> None:
        with self._session_factory() as session:
            candidate = session.get(TrainingCandidate, candidate_id)
            if candidate is None:
                raise NotFoundError(f"Training candidate {candidate_id} not found")
            candidate.status = STATUS_REJECTED
            candidate.rejection_reason = reason
            candidate.updated_at = time.time()
            session.commit()
        LOGGER.info("training_candidate_rejected", extra={"candidate_id": candidate_id})


__all__ = ["PromotionService"]
