"""Moderator actions on gym images."""

from __future__ import annotations

import time
from typing import Callable, List

from sqlalchemy import select

from equipment_vision.blob_store import BlobStore
from equipment_vision.db import STATUS_APPROVED, STATUS_REJECTED, GlobalImage, GymImage, SessionFactory
from equipment_vision.errors import InvalidStateError, NotFoundError
from equipment_vision.knn import clamp_limit
from equipment_vision.promotion import PromotionService
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "moderation"})


class ModerationService:
    def __init__(
        self,
        session_factory: SessionFactory,
        blob_store: BlobStore,
        promotion: PromotionService,
        kick: Callable[[], object] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._blob_store = blob_store
        self._promotion = promotion
        self._kick = kick

    def approve_gym_image(
        self,
        gym_image_id: str,
        approved_by: str | None = None,
        *,
        force: bool = False,
    ) -> GlobalImage:
        """Approve a gym image and promote it to the global catalog in one transaction."""

        with self._session_factory() as session:
            image = session.get(GymImage, gym_image_id)
            if image is None:
                raise NotFoundError(f"Gym image {gym_image_id} not found")
            if not force and image.is_safe is not True:
                raise InvalidStateError(f"Gym image {gym_image_id} has not passed safety screening")

            now = time.time()
            image.status = STATUS_APPROVED
            image.approved_by_user_id = approved_by
            image.approved_at = now
            image.updated_at = now
            global_image, queued = self._promotion.promote_in_session(session, image, force=force)
            session.commit()

        LOGGER.info("gym_image_approved", extra={"gym_image_id": gym_image_id, "global_image_id": global_image.id})
        if queued and self._kick is not None:
            self._kick()
        return global_image

    def reject_gym_image(self, gym_image_id: str, *, delete_object: bool = False) -> None:
        with self._session_factory() as session:
            image = session.get(GymImage, gym_image_id)
            if image is None:
                raise NotFoundError(f"Gym image {gym_image_id} not found")
            image.status = STATUS_REJECTED
            image.updated_at = time.time()
            storage_key = image.storage_key
            session.commit()

        if delete_object:
            self._blob_store.delete_object_ignore_missing(storage_key)
        LOGGER.info("gym_image_rejected", extra={"gym_image_id": gym_image_id, "deleted_object": delete_object})

    def candidate_global_images(self, equipment_id: str, limit: int = 20) -> List[GymImage]:
        """Approved, safe gym images for the equipment whose content is not yet in the global catalog."""

        already_global = select(GlobalImage.sha256).where(
            GlobalImage.equipment_id == equipment_id,
            GlobalImage.sha256.is_not(None),
        )
        with self._session_factory() as session:
            return list(
                session.execute(
                    select(GymImage)
                    .where(
                        GymImage.equipment_id == equipment_id,
                        GymImage.status == STATUS_APPROVED,
                        GymImage.is_safe.is_(True),
                        GymImage.sha256.is_not(None),
                        GymImage.sha256.not_in(already_global),
                    )
                    .order_by(GymImage.created_at.desc())
                    .limit(clamp_limit(limit))
                ).scalars()
            )


__all__ = ["ModerationService"]
