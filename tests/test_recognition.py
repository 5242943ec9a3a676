from __future__ import annotations

import re
from collections import OrderedDict

import numpy as np
import pytest

from conftest import KickRecorder, add_rows, png_bytes
from equipment_vision.config import QueueConfig, RecognitionConfig
from equipment_vision.db import GymEquipment, RecognitionAttempt, TrainingCandidate
from equipment_vision.errors import InvalidStateError, NotFoundError
from equipment_vision.knn import Neighbor
from equipment_vision.recognition import (
    CONSENT_DENIED,
    CONSENT_GRANTED,
    CONSENT_UNKNOWN,
    GLOBAL_ACCEPT,
    GYM_ACCEPT,
    GYM_SELECT,
    RETAKE,
    EquipmentMatch,
    RecognitionService,
    decide,
    group_by_equipment,
    merge_matches,
)
from equipment_vision.worker import BurstOptions

UPLOAD_KEY = "private/uploads/gym-1/2026/10/3f2b8c1e-9a4d-4c6b-8e2f-1a2b3c4d5e6f.png"


class FakeEmbedder:
    def __init__(self) -> None:
        self.inputs = []

    def embed(self, data: bytes) -> np.ndarray:
        self.inputs.append(data)
        return np.array([0.6, 0.8], dtype=np.float32)


class FakeKnn:
    def __init__(self, gym_hits, global_hits) -> None:
        self.gym_hits = gym_hits
        self.global_hits = global_hits
        self.calls = []

    def knn_from_vector_gym(self, vector, gym_id, limit=None):
        self.calls.append(("gym", gym_id, limit))
        return list(self.gym_hits)

    def knn_from_vector_global(self, vector, limit=None, gym_id=None):
        self.calls.append(("global", gym_id, limit))
        return list(self.global_hits)


def _hit(image_id: str, equipment_id: str, score: float) -> Neighbor:
    return Neighbor(id=image_id, equipment_id=equipment_id, score=score, storage_key=f"k/{image_id}.jpg")


def _service(session_factory, blob_store, queue, knn, kick=None, embedder=None) -> RecognitionService:
    return RecognitionService(
        session_factory=session_factory,
        blob_store=blob_store,
        embedder=embedder or FakeEmbedder(),
        knn=knn,
        queue=queue,
        config=RecognitionConfig(),
        queue_config=QueueConfig(),
        kick=kick,
    )


@pytest.mark.parametrize(
    ("gym_top", "global_top", "expected"),
    [
        (0.9, 0.8, GYM_ACCEPT),
        (0.9, 0.9, GYM_ACCEPT),
        (0.86, 0.95, GLOBAL_ACCEPT),
        (None, 0.85, GLOBAL_ACCEPT),
        (0.7, None, GYM_SELECT),
        (0.5, 0.6, GYM_SELECT),
        (0.59, 0.2, RETAKE),
        (None, None, RETAKE),
    ],
)
def test_decide(gym_top, global_top, expected) -> None:
    assert decide(gym_top, global_top, RecognitionConfig()) == expected


def test_group_by_equipment_caps_images_per_equipment() -> None:
    hits = [
        _hit("a3", "eq-a", 0.7),
        _hit("a1", "eq-a", 0.9),
        _hit("b1", "eq-b", 0.85),
        _hit("a2", "eq-a", 0.8),
    ]

    grouped = group_by_equipment(hits, "gym", per_equipment=2)

    assert list(grouped) == ["eq-a", "eq-b"]
    assert grouped["eq-a"].best_score == 0.9
    assert [hit.id for hit in grouped["eq-a"].images] == ["a1", "a2"]
    assert grouped["eq-b"].source == "gym"


def test_merge_matches_keeps_stronger_source() -> None:
    gym = OrderedDict(
        (match.equipment_id, match)
        for match in (EquipmentMatch("eq-a", 0.7, "gym"), EquipmentMatch("eq-c", 0.95, "gym"))
    )
    global_ = OrderedDict(
        (match.equipment_id, match)
        for match in (EquipmentMatch("eq-a", 0.9, "global"), EquipmentMatch("eq-b", 0.8, "global"))
    )

    merged = merge_matches(gym, global_, top_equipment=2)

    assert [(match.equipment_id, match.source) for match in merged] == [("eq-c", "gym"), ("eq-a", "global")]


def test_recognize_persists_attempt(session_factory, blob_store, queue) -> None:
    blob_store.put_object_bytes(UPLOAD_KEY, png_bytes(), "image/png")
    knn = FakeKnn(
        gym_hits=[_hit("g1", "eq-a", 0.92), _hit("g2", "eq-a", 0.9)],
        global_hits=[_hit("x1", "eq-b", 0.88)],
    )
    embedder = FakeEmbedder()
    service = _service(session_factory, blob_store, queue, knn, embedder=embedder)

    result = service.recognize("gym-1", UPLOAD_KEY, limit=5)

    assert embedder.inputs == [png_bytes()]
    assert knn.calls == [("gym", "gym-1", 5), ("global", "gym-1", 5)]
    assert result.decision == GYM_ACCEPT
    assert result.best_equipment_id == "eq-a"
    assert result.best_score == pytest.approx(0.92)
    assert [match.equipment_id for match in result.candidates] == ["eq-a", "eq-b"]

    with session_factory() as session:
        attempt = session.get(RecognitionAttempt, result.attempt_id)
        assert attempt.consent == CONSENT_UNKNOWN
        assert attempt.decision == GYM_ACCEPT
        assert len(attempt.vector_hash) == 16
        assert attempt.candidates[0] == {
            "equipment_id": "eq-a",
            "best_score": 0.92,
            "source": "gym",
            "image_ids": ["g1", "g2"],
        }


def test_recognize_without_hits_asks_for_retake(session_factory, blob_store, queue) -> None:
    blob_store.put_object_bytes(UPLOAD_KEY, png_bytes(), "image/png")
    service = _service(session_factory, blob_store, queue, FakeKnn([], []))

    result = service.recognize("gym-1", UPLOAD_KEY)

    assert result.decision == RETAKE
    assert result.best_equipment_id is None
    assert result.candidates == []


def _recognized(session_factory, blob_store, queue, kick=None):
    blob_store.put_object_bytes(UPLOAD_KEY, png_bytes(), "image/png")
    add_rows(
        session_factory,
        GymEquipment(id="ge-1", gym_id="gym-1", equipment_id="eq-1"),
        GymEquipment(id="ge-other", gym_id="gym-2", equipment_id="eq-1"),
    )
    service = _service(session_factory, blob_store, queue, FakeKnn([_hit("g1", "eq-1", 0.7)], []), kick=kick)
    return service, service.recognize("gym-1", UPLOAD_KEY)


def test_confirm_creates_candidate_and_queues_hash(session_factory, blob_store, queue) -> None:
    kick = KickRecorder()
    service, result = _recognized(session_factory, blob_store, queue, kick)

    candidate = service.confirm(result.attempt_id, "ge-1", uploader_user_id="user-5")

    assert re.fullmatch(r"private/gym/gym-1/candidates/[0-9a-f-]{36}\.png", candidate.storage_key)
    assert candidate.storage_key in blob_store.objects
    assert UPLOAD_KEY in blob_store.objects
    assert candidate.equipment_id == "eq-1"
    assert candidate.source == "recognition_user"

    with session_factory() as session:
        stored = session.get(TrainingCandidate, candidate.id)
        assert stored.status == "PENDING"
        assert stored.recognition_attempt_id == result.attempt_id
        assert stored.uploader_user_id == "user-5"
        assert session.get(RecognitionAttempt, result.attempt_id).consent == CONSENT_GRANTED

    jobs = queue.claim_batch(10, "test")
    assert [(job.job_type, job.image_id, job.storage_key, job.priority) for job in jobs] == [
        ("HASH", candidate.id, candidate.storage_key, 100)
    ]

    assert len(kick.calls) == 1
    (options,) = kick.calls[0]
    assert isinstance(options, BurstOptions)
    assert (options.max_runtime_seconds, options.idle_exit_seconds, options.batch_size) == (300.0, 4.0, 1)


def test_confirm_rejects_unknown_targets(session_factory, blob_store, queue) -> None:
    service, result = _recognized(session_factory, blob_store, queue)

    with pytest.raises(NotFoundError):
        service.confirm("missing", "ge-1")
    with pytest.raises(NotFoundError):
        service.confirm(result.attempt_id, "ge-missing")
    with pytest.raises(NotFoundError):
        service.confirm(result.attempt_id, "ge-other")
    assert queue.count_by_status() == {}


def test_discard_deletes_blob_and_blocks_confirm(session_factory, blob_store, queue) -> None:
    service, result = _recognized(session_factory, blob_store, queue)

    service.discard(result.attempt_id)

    assert UPLOAD_KEY not in blob_store.objects
    with session_factory() as session:
        assert session.get(RecognitionAttempt, result.attempt_id).consent == CONSENT_DENIED
    with pytest.raises(InvalidStateError):
        service.confirm(result.attempt_id, "ge-1")
    with pytest.raises(NotFoundError):
        service.discard("missing")
