"""Global catalog suggestions: usefulness scoring, idempotent upsert, and admin review."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, List, Sequence

import numpy as np
from sqlalchemy import select
from sqlalchemy.orm import Session

from equipment_vision.blob_store import BlobStore
from equipment_vision.catalog import count_global_images, find_global_by_sha, materialize_global_image
from equipment_vision.config import PromotionConfig
from equipment_vision.db import (
    STATUS_APPROVED,
    STATUS_PENDING,
    STATUS_REJECTED,
    GlobalImage,
    GlobalImageSuggestion,
    GymImage,
    SessionFactory,
    dialect_insert,
)
from equipment_vision.embedding_index import row_vector
from equipment_vision.errors import BlobNotFoundError, InvalidStateError, NotFoundError
from equipment_vision.storage_keys import approved_global_key, file_ext_from, staging_global_key
from equipment_vision.task_queue import JobQueueStore, JobType, priority_for_source
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "suggestions"})

NO_GLOBAL = "NO_GLOBAL"
LOW_COVERAGE = "LOW_COVERAGE"
GROWTH = "GROWTH"
HI_RES = "HI_RES"
FRESH = "FRESH"
NEAR_DUP = "NEAR_DUP"
NEAR_DUP_STRONG = "NEAR_DUP_STRONG"

NEAR_DUP_THRESHOLD = 0.985
NEAR_DUP_STRONG_THRESHOLD = 0.995


def cosine(a: Sequence[float] | np.ndarray, b: Sequence[float] | np.ndarray) -> float:
    """Cosine similarity of two vectors; 0.0 when either has zero norm or lengths differ."""

    lhs = np.asarray(a, dtype=np.float64).reshape(-1)
    rhs = np.asarray(b, dtype=np.float64).reshape(-1)
    if lhs.shape != rhs.shape:
        return 0.0
    denom = float(np.linalg.norm(lhs) * np.linalg.norm(rhs))
    if denom == 0.0:
        return 0.0
    return float(np.dot(lhs, rhs) / denom)


def score_global_candidate(global_count: int, hi_res: bool, sim_max: float) -> tuple[float, List[str]]:
    """Return ``(usefulness score in [0, 1], reason codes)`` for a promotion candidate."""

    score = 0.0
    reasons: List[str] = []

    if global_count == 0:
        score += 0.6
        reasons.append(NO_GLOBAL)
    elif global_count < 3:
        score += 0.3
        reasons.append(LOW_COVERAGE)
    elif global_count < 15:
        score += 0.15
        reasons.append(GROWTH)

    if hi_res:
        score += 0.1
        reasons.append(HI_RES)

    score += 0.05
    reasons.append(FRESH)

    if sim_max >= NEAR_DUP_STRONG_THRESHOLD:
        score -= 0.5
        reasons.append(NEAR_DUP_STRONG)
    elif sim_max >= NEAR_DUP_THRESHOLD:
        score -= 0.25
        reasons.append(NEAR_DUP)

    return round(min(1.0, max(0.0, score)), 4), reasons


@dataclass
class SuggestionOutcome:
    """What ``maybe_suggest_global_from_gym_image`` decided."""

    suggested: bool
    skipped_reason: str | None = None
    score: float | None = None
    reasons: List[str] = field(default_factory=list)
    near_dup_image_id: str | None = None
    near_dup_score: float = 0.0


class SuggestionService:
    def __init__(
        self,
        session_factory: SessionFactory,
        blob_store: BlobStore,
        queue: JobQueueStore,
        config: PromotionConfig,
        kick: Callable[[], object] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._blob_store = blob_store
        self._queue = queue
        self._config = config
        self._kick = kick

    def _is_hi_res(self, key: str) -> bool:
        try:
            head = self._blob_store.head_object(key)
        except BlobNotFoundError:
            return False
        return head.content_length >= self._config.hi_res_bytes

    def _nearest_global(self, session: Session, gym_image: GymImage, vector: np.ndarray) -> tuple[str | None, float]:
        rows = session.execute(
            select(GlobalImage.id, GlobalImage.embedding)
            .where(
                GlobalImage.equipment_id == gym_image.equipment_id,
                GlobalImage.embedding.is_not(None),
                GlobalImage.model_vendor == gym_image.model_vendor,
                GlobalImage.model_name == gym_image.model_name,
                GlobalImage.model_version == gym_image.model_version,
            )
            .limit(self._config.near_dup_scan_limit)
        ).all()

        best_id: str | None = None
        best_score = 0.0
        for image_id, embedding in rows:
            similarity = cosine(vector, embedding)
            if similarity > best_score:
                best_id, best_score = image_id, similarity
        return best_id, best_score

    def suggest_in_session(self, session: Session, gym_image: GymImage) -> SuggestionOutcome:
        """Score ``gym_image`` and upsert its suggestion row; the caller commits."""

        if gym_image.status != STATUS_APPROVED or gym_image.is_safe is False:
            return SuggestionOutcome(suggested=False, skipped_reason="not_eligible")
        if not gym_image.sha256:
            return SuggestionOutcome(suggested=False, skipped_reason="no_hash")
        vector = row_vector(gym_image)
        if vector is None:
            return SuggestionOutcome(suggested=False, skipped_reason="no_vector")
        if find_global_by_sha(session, gym_image.equipment_id, gym_image.sha256) is not None:
            return SuggestionOutcome(suggested=False, skipped_reason="global_duplicate")

        global_count = count_global_images(session, gym_image.equipment_id)
        if global_count >= self._config.ample_global_count:
            return SuggestionOutcome(suggested=False, skipped_reason="ample_coverage")

        staging_key = staging_global_key(
            gym_image.equipment_id, gym_image.sha256, file_ext_from(gym_image.storage_key, gym_image.mime_type)
        )
        self._blob_store.copy_object_if_missing(gym_image.storage_key, staging_key)

        near_id, sim_max = self._nearest_global(session, gym_image, vector)
        hi_res = self._is_hi_res(gym_image.storage_key)
        score, reasons = score_global_candidate(global_count, hi_res, sim_max)
        near_dup_id = near_id if sim_max >= NEAR_DUP_THRESHOLD else None

        now = time.time()
        stmt = dialect_insert(session, GlobalImageSuggestion).values(
            id=str(uuid.uuid4()),
            equipment_id=gym_image.equipment_id,
            gym_image_id=gym_image.id,
            storage_key=staging_key,
            sha256=gym_image.sha256,
            usefulness_score=score,
            reason_codes=reasons,
            near_dup_image_id=near_dup_id,
            status=STATUS_PENDING,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["sha256"],
            set_={
                "gym_image_id": stmt.excluded.gym_image_id,
                "storage_key": stmt.excluded.storage_key,
                "usefulness_score": stmt.excluded.usefulness_score,
                "reason_codes": stmt.excluded.reason_codes,
                "near_dup_image_id": stmt.excluded.near_dup_image_id,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        session.execute(stmt)

        LOGGER.info(
            "global_suggestion_upserted",
            extra={"gym_image_id": gym_image.id, "score": score, "reasons": reasons, "near_dup_image_id": near_dup_id},
        )
        return SuggestionOutcome(
            suggested=True,
            score=score,
            reasons=reasons,
            near_dup_image_id=near_dup_id,
            near_dup_score=sim_max,
        )

    def maybe_suggest_global_from_gym_image(self, gym_image_id: str) -> SuggestionOutcome:
        with self._session_factory() as session:
            gym_image = session.get(GymImage, gym_image_id)
            if gym_image is None:
                raise NotFoundError(f"Gym image {gym_image_id} not found")
            outcome = self.suggest_in_session(session, gym_image)
            session.commit()
        if not outcome.suggested:
            LOGGER.info("global_suggestion_skipped", extra={"gym_image_id": gym_image_id, "reason": outcome.skipped_reason})
        return outcome

    def list_global_suggestions(self, status: str = STATUS_PENDING, limit: int | None = None) -> List[GlobalImageSuggestion]:
        capped = max(1, min(100, limit or self._config.suggestion_list_limit))
        with self._session_factory() as session:
            return list(
                session.execute(
                    select(GlobalImageSuggestion)
                    .where(GlobalImageSuggestion.status == status)
                    .order_by(GlobalImageSuggestion.usefulness_score.desc(), GlobalImageSuggestion.created_at.asc())
                    .limit(capped)
                ).scalars()
            )

    def approve_global_suggestion(self, suggestion_id: str) -> GlobalImage:
        """Promote a pending suggestion into the global catalog, reusing an existing row with the same hash."""

        needs_embed = False
        with self._session_factory() as session:
            suggestion = session.get(GlobalImageSuggestion, suggestion_id)
            if suggestion is None:
                raise NotFoundError(f"Suggestion {suggestion_id} not found")
            if suggestion.status != STATUS_PENDING:
                raise InvalidStateError(f"Suggestion {suggestion_id} is {suggestion.status}, expected PENDING")

            image = find_global_by_sha(session, suggestion.equipment_id, suggestion.sha256)
            if image is None:
                gym_image = session.get(GymImage, suggestion.gym_image_id)
                dest_key = approved_global_key(
                    suggestion.equipment_id, suggestion.sha256, file_ext_from(suggestion.storage_key)
                )
                image, embedded = materialize_global_image(
                    session,
                    self._blob_store,
                    source=gym_image,
                    source_key=suggestion.storage_key,
                    equipment_id=suggestion.equipment_id,
                    dest_key=dest_key,
                    sha256=suggestion.sha256,
                )
                if not embedded:
                    self._queue.enqueue(
                        JobType.EMBED, image_id=image.id, storage_key=dest_key,
                        priority=priority_for_source("admin"), session=session,
                    )
                    needs_embed = True

            suggestion.status = STATUS_APPROVED
            suggestion.approved_image_id = image.id
            suggestion.updated_at = time.time()
            session.commit()

        LOGGER.info("global_suggestion_approved", extra={"suggestion_id": suggestion_id, "global_image_id": image.id})
        if needs_embed and self._kick is not None:
            self._kick()
        return image

    def reject_global_suggestion(self, suggestion_id: str) -> None:
        with self._session_factory() as session:
            suggestion = session.get(GlobalImageSuggestion, suggestion_id)
            if suggestion is None:
                raise NotFoundError(f"Suggestion {suggestion_id} not found")
            suggestion.status = STATUS_REJECTED
            suggestion.updated_at = time.time()
            session.commit()
        LOGGER.info("global_suggestion_rejected", extra={"suggestion_id": suggestion_id})


__all__ = [
    "SuggestionOutcome",
    "SuggestionService",
    "cosine",
    "score_global_candidate",
]
