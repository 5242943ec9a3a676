"""Equipment recognition for user photos, with confirm/discard follow-ups."""

from __future__ import annotations

import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List

from equipment_vision.blob_store import BlobStore
from equipment_vision.config import QueueConfig, RecognitionConfig
from equipment_vision.db import STATUS_PENDING, GymEquipment, RecognitionAttempt, SessionFactory, TrainingCandidate
from equipment_vision.errors import InvalidStateError, NotFoundError
from equipment_vision.hasher import vector_fingerprint
from equipment_vision.knn import KnnSearchEngine, Neighbor
from equipment_vision.ml.embedding import EmbeddingProvider
from equipment_vision.storage_keys import candidate_key, file_ext_from
from equipment_vision.task_queue import JobQueueStore, JobType, priority_for_source
from equipment_vision.worker import BurstOptions
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "recognition"})

GYM_ACCEPT = "GYM_ACCEPT"
GLOBAL_ACCEPT = "GLOBAL_ACCEPT"
GYM_SELECT = "GYM_SELECT"
RETAKE = "RETAKE"

CONSENT_UNKNOWN = "unknown"
CONSENT_GRANTED = "granted"
CONSENT_DENIED = "denied"


@dataclass
class EquipmentMatch:
    equipment_id: str
    best_score: float
    source: str
    images: List[Neighbor] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "equipment_id": self.equipment_id,
            "best_score": round(self.best_score, 4),
            "source": self.source,
            "image_ids": [hit.id for hit in self.images],
        }


@dataclass
class RecognitionResult:
    attempt_id: str
    decision: str
    best_equipment_id: str | None
    best_score: float | None
    candidates: List[EquipmentMatch]


def group_by_equipment(hits: List[Neighbor], source: str, per_equipment: int) -> "OrderedDict[str, EquipmentMatch]":
    """Group ranked hits by equipment, keeping at most ``per_equipment`` images each."""

    grouped: "OrderedDict[str, EquipmentMatch]" = OrderedDict()
    for hit in sorted(hits, key=lambda item: item.score, reverse=True):
        match = grouped.get(hit.equipment_id)
        if match is None:
            match = EquipmentMatch(equipment_id=hit.equipment_id, best_score=hit.score, source=source)
            grouped[hit.equipment_id] = match
        if len(match.images) < per_equipment:
            match.images.append(hit)
    return grouped


def merge_matches(
    gym: "OrderedDict[str, EquipmentMatch]",
    global_: "OrderedDict[str, EquipmentMatch]",
    top_equipment: int,
) -> List[EquipmentMatch]:
    """Combine gym and global groups, keeping the stronger match per equipment."""

    merged: Dict[str, EquipmentMatch] = dict(global_)
    for equipment_id, match in gym.items():
        current = merged.get(equipment_id)
        if current is None or match.best_score >= current.best_score:
            merged[equipment_id] = match
    ranked = sorted(merged.values(), key=lambda item: item.best_score, reverse=True)
    return ranked[:top_equipment]


def decide(gym_top: float | None, global_top: float | None, config: RecognitionConfig) -> str:
    gym_score = gym_top if gym_top is not None else -1.0
    global_score = global_top if global_top is not None else -1.0

    if gym_score >= config.accept_threshold and gym_score >= global_score:
        return GYM_ACCEPT
    if global_score >= config.accept_threshold:
        return GLOBAL_ACCEPT
    if max(gym_score, global_score) >= config.select_threshold:
        return GYM_SELECT
    return RETAKE


class RecognitionService:
    def __init__(
        self,
        *,
        session_factory: SessionFactory,
        blob_store: BlobStore,
        embedder: EmbeddingProvider,
        knn: KnnSearchEngine,
        queue: JobQueueStore,
        config: RecognitionConfig,
        queue_config: QueueConfig,
        kick: Callable[..., object] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._blob_store = blob_store
        self._embedder = embedder
        self._knn = knn
        self._queue = queue
        self._config = config
        self._queue_config = queue_config
        self._kick = kick

    def recognize(self, gym_id: str, storage_key: str, limit: int | None = None) -> RecognitionResult:
        """Embed an uploaded photo and rank likely equipment from the gym and the global catalog."""

        vector = self._embedder.embed(self._blob_store.get_object_bytes(storage_key))
        gym_hits = self._knn.knn_from_vector_gym(vector, gym_id, limit)
        global_hits = self._knn.knn_from_vector_global(vector, limit, gym_id=gym_id)

        per_equipment = max(1, self._config.per_equipment)
        gym_groups = group_by_equipment(gym_hits, "gym", per_equipment)
        global_groups = group_by_equipment(global_hits, "global", per_equipment)
        candidates = merge_matches(gym_groups, global_groups, max(1, self._config.top_equipment))

        gym_top = gym_hits[0].score if gym_hits else None
        global_top = global_hits[0].score if global_hits else None
        decision = decide(gym_top, global_top, self._config)
        best = candidates[0] if candidates else None

        now = time.time()
        attempt = RecognitionAttempt(
            id=str(uuid.uuid4()),
            gym_id=gym_id,
            storage_key=storage_key,
            vector_hash=vector_fingerprint(vector),
            best_equipment_id=best.equipment_id if best else None,
            best_score=best.best_score if best else None,
            decision=decision,
            consent=CONSENT_UNKNOWN,
            candidates=[match.to_dict() for match in candidates],
            created_at=now,
            updated_at=now,
        )
        with self._session_factory() as session:
            session.add(attempt)
            session.commit()

        LOGGER.info(
            "recognition_decided",
            extra={"attempt_id": attempt.id, "gym_id": gym_id, "decision": decision, "gym_top": gym_top, "global_top": global_top},
        )
        return RecognitionResult(
            attempt_id=attempt.id,
            decision=decision,
            best_equipment_id=attempt.best_equipment_id,
            best_score=attempt.best_score,
            candidates=candidates,
        )

    def confirm(self, attempt_id: str, gym_equipment_id: str, uploader_user_id: str | None = None) -> TrainingCandidate:
        """Keep the photo as a training candidate for the chosen gym equipment and queue its processing."""

        with self._session_factory() as session:
            attempt = session.get(RecognitionAttempt, attempt_id)
            if attempt is None:
                raise NotFoundError(f"Recognition attempt {attempt_id} not found")
            if attempt.consent == CONSENT_DENIED:
                raise InvalidStateError(f"Recognition attempt {attempt_id} was discarded")
            gym_equipment = session.get(GymEquipment, gym_equipment_id)
            if gym_equipment is None or gym_equipment.gym_id != attempt.gym_id:
                raise NotFoundError(f"Gym equipment {gym_equipment_id} not found in gym {attempt.gym_id}")

            dest_key = candidate_key(attempt.gym_id, str(uuid.uuid4()), file_ext_from(attempt.storage_key))
            self._blob_store.copy_object_if_missing(attempt.storage_key, dest_key)

            now = time.time()
            candidate = TrainingCandidate(
                id=str(uuid.uuid4()),
                gym_id=attempt.gym_id,
                gym_equipment_id=gym_equipment_id,
                equipment_id=gym_equipment.equipment_id,
                storage_key=dest_key,
                status=STATUS_PENDING,
                source="recognition_user",
                uploader_user_id=uploader_user_id,
                recognition_attempt_id=attempt.id,
                created_at=now,
                updated_at=now,
            )
            session.add(candidate)
            attempt.consent = CONSENT_GRANTED
            attempt.updated_at = now
            session.flush()
            self._queue.enqueue(
                JobType.HASH,
                image_id=candidate.id,
                storage_key=dest_key,
                priority=priority_for_source("recognition_user"),
                session=session,
            )
            session.commit()

        LOGGER.info("recognition_confirmed", extra={"attempt_id": attempt_id, "candidate_id": candidate.id})
        if self._kick is not None:
            self._kick(
                BurstOptions.from_config(
                    self._queue_config, max_runtime_seconds=300.0, idle_exit_seconds=4.0, batch_size=1
                )
            )
        return candidate

    def discard(self, attempt_id: str) -> None:
        with self._session_factory() as session:
            attempt = session.get(RecognitionAttempt, attempt_id)
            if attempt is None:
                raise NotFoundError(f"Recognition attempt {attempt_id} not found")
            attempt.consent = CONSENT_DENIED
            attempt.updated_at = time.time()
            storage_key = attempt.storage_key
            session.commit()

        self._blob_store.delete_object_ignore_missing(storage_key)
        LOGGER.info("recognition_discarded", extra={"attempt_id": attempt_id})


__all__ = [
    "EquipmentMatch",
    "RecognitionResult",
    "RecognitionService",
    "decide",
    "group_by_equipment",
    "merge_matches",
]
