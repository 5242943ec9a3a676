"""Shared steps for writing images into the global catalog."""

from __future__ import annotations

import time
import uuid
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from equipment_vision.blob_store import BlobStore
from equipment_vision.db import STATUS_APPROVED, GlobalImage, GymImage
from equipment_vision.embedding_index import copy_embedding
from equipment_vision.imaging import read_image_metadata

_SAFETY_FIELDS = ("is_safe", "nsfw_score", "has_person", "person_count", "person_boxes", "safety_reasons")


def copy_safety_fields(src: Any, dst: Any) -> None:
    for name in _SAFETY_FIELDS:
        setattr(dst, name, getattr(src, name))


def find_global_by_sha(session: Session, equipment_id: str, sha256: str | None) -> GlobalImage | None:
    if not sha256:
        return None
    return session.execute(
        select(GlobalImage)
        .where(GlobalImage.equipment_id == equipment_id, GlobalImage.sha256 == sha256)
        .limit(1)
    ).scalar_one_or_none()


def count_global_images(session: Session, equipment_id: str) -> int:
    return int(
        session.execute(
            select(func.count())
            .select_from(GlobalImage)
            .where(GlobalImage.equipment_id == equipment_id, GlobalImage.status == STATUS_APPROVED)
        ).scalar_one()
    )


def materialize_global_image(
    session: Session,
    blob_store: BlobStore,
    *,
    source: GymImage | None,
    source_key: str,
    equipment_id: str,
    dest_key: str,
    sha256: str | None,
) -> tuple[GlobalImage, bool]:
    """Copy a blob to its permanent global key and insert the catalog row.

    The embedding is copied from ``source`` when it has one; the returned flag
    tells the caller whether an EMBED job is still needed.
    """

    blob_store.copy_object_if_missing(source_key, dest_key)

    if source is not None and source.width and source.height:
        width, height, mime_type = source.width, source.height, source.mime_type
    else:
        meta = read_image_metadata(blob_store.get_object_bytes(dest_key))
        width, height, mime_type = meta.width, meta.height, meta.mime_type

    now = time.time()
    image = GlobalImage(
        id=str(uuid.uuid4()),
        equipment_id=equipment_id,
        storage_key=dest_key,
        sha256=sha256,
        status=STATUS_APPROVED,
        source_gym_image_id=source.id if source is not None else None,
        width=width,
        height=height,
        mime_type=mime_type,
        created_at=now,
        updated_at=now,
    )
    embedded = False
    if source is not None:
        copy_safety_fields(source, image)
        embedded = copy_embedding(source, image)
    session.add(image)
    session.flush()
    return image, embedded


__all__ = ["copy_safety_fields", "count_global_images", "find_global_by_sha", "materialize_global_image"]
