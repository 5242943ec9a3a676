"""Queue and KNN behaviour against a real PostgreSQL server with pgvector."""

from __future__ import annotations

import math
import os
from typing import Iterator

import pytest
from sqlalchemy import delete, select
from sqlalchemy.exc import DBAPIError

from conftest import add_rows, make_global_image, make_gym_image, unit_embedding
from equipment_vision.config import QueueConfig
from equipment_vision.db import STATUS_PENDING, Base, ImageJob, make_session_factory
from equipment_vision.errors import ScopeError
from equipment_vision.knn import KnnSearchEngine, Scope
from equipment_vision.ml.embedding import EmbeddingModel
from equipment_vision.task_queue import JobQueueStore, JobType
from pg_server import postgres_available, temporary_postgres

pytestmark = pytest.mark.skipif(not postgres_available(), reason="PostgreSQL server binaries (initdb) not available")

MODEL = EmbeddingModel(vendor="local", name="openclip-vit-b32", version="1.0")


@pytest.fixture(scope="module")
def pg_url(tmp_path_factory) -> Iterator[str]:
    try:
        with temporary_postgres(tmp_path_factory.mktemp("pg")) as url:
            yield url
    except RuntimeError as exc:
        if hasattr(os, "geteuid") and os.geteuid() == 0:
            pytest.skip(f"initdb cannot run as root: {exc}")
        raise


@pytest.fixture
def pg_session_factory(pg_url: str):
    factory = make_session_factory(pg_url)
    try:
        with factory() as session:
            session.execute(select(1))
    except DBAPIError as exc:
        if "vector" in str(exc).lower():
            pytest.skip(f"pgvector extension not installed: {exc}")
        raise

    yield factory

    with factory() as session:
        for table in reversed(Base.metadata.sorted_tables):
            session.execute(delete(table))
        session.commit()


def _knn(session_factory) -> KnnSearchEngine:
    return KnnSearchEngine(session_factory, MODEL, dim=512, auto_min_score=0.8, default_limit=10)


def test_knn_ranks_by_cosine_similarity_and_filters(pg_session_factory) -> None:
    add_rows(
        pg_session_factory,
        make_global_image("src", embedding=unit_embedding(1.0)),
        make_global_image("near", embedding=unit_embedding(1.0, 0.1)),
        make_global_image("mid", embedding=unit_embedding(1.0, 1.0)),
        make_global_image("far", embedding=unit_embedding(0.0, 1.0)),
        make_global_image("other-model", embedding=unit_embedding(1.0), model_version="2.0"),
        make_global_image("unapproved", embedding=unit_embedding(1.0), status=STATUS_PENDING),
    )

    hits = _knn(pg_session_factory).search(scope=Scope.GLOBAL, image_id="src")

    assert [hit.id for hit in hits] == ["near", "mid", "far"]
    assert hits[0].score == pytest.approx(1.0 / math.sqrt(1.01), abs=1e-4)
    assert hits[1].score == pytest.approx(1.0 / math.sqrt(2.0), abs=1e-4)
    assert hits[2].score == pytest.approx(0.0, abs=1e-4)


def test_knn_min_score_and_limit_cap(pg_session_factory) -> None:
    add_rows(
        pg_session_factory,
        *[make_global_image(f"g-{index:03d}", embedding=unit_embedding(1.0, index / 100.0)) for index in range(105)],
    )
    engine = _knn(pg_session_factory)

    capped = engine.search(scope=Scope.GLOBAL, vector=unit_embedding(1.0), limit=500)
    assert len(capped) == 100
    assert capped[0].id == "g-000"
    assert [hit.score for hit in capped] == sorted((hit.score for hit in capped), reverse=True)

    close = engine.search(scope=Scope.GLOBAL, vector=unit_embedding(1.0), limit=500, min_score=0.99)
    assert close and all(hit.score >= 0.99 for hit in close)
    assert len(close) < 100


def test_knn_gym_scope_and_auto_fallback(pg_session_factory) -> None:
    add_rows(
        pg_session_factory,
        make_gym_image("mine", embedding=unit_embedding(1.0, 0.05)),
        make_gym_image("theirs", gym_id="gym-2", embedding=unit_embedding(1.0)),
        make_global_image("weak", embedding=unit_embedding(0.2, 1.0)),
    )
    engine = _knn(pg_session_factory)

    gym_hits = engine.knn_from_vector_gym(unit_embedding(1.0), gym_id="gym-1")
    assert [hit.id for hit in gym_hits] == ["mine"]

    auto_hits = engine.search(scope=Scope.AUTO, vector=unit_embedding(1.0), gym_id="gym-1")
    assert [hit.id for hit in auto_hits] == ["mine"]


def test_knn_source_from_gym_table_and_missing_source(pg_session_factory) -> None:
    add_rows(
        pg_session_factory,
        make_gym_image("upload", status=STATUS_PENDING, embedding=unit_embedding(0.0, 1.0)),
        make_global_image("match", embedding=unit_embedding(0.0, 1.0)),
    )
    engine = _knn(pg_session_factory)

    hits = engine.search(scope=Scope.GLOBAL, image_id="upload")
    assert [hit.id for hit in hits] == ["match"]
    assert hits[0].score == pytest.approx(1.0, abs=1e-4)

    with pytest.raises(ScopeError, match="No embedding found"):
        engine.search(scope=Scope.GLOBAL, image_id="nobody")


def test_claim_batch_skips_rows_locked_by_another_transaction(pg_session_factory, clock) -> None:
    queue = JobQueueStore(pg_session_factory, QueueConfig(), clock=clock)
    locked = [queue.enqueue(JobType.HASH, storage_key=f"k/locked-{n}.jpg", priority=100) for n in range(2)]
    free = [queue.enqueue(JobType.HASH, storage_key=f"k/free-{n}.jpg", priority=n) for n in range(2)]

    holder = pg_session_factory()
    try:
        holder.execute(select(ImageJob.id).where(ImageJob.id.in_(locked)).with_for_update()).all()

        claimed = queue.claim_batch(10, "runner-b")
        assert [job.id for job in claimed] == [free[1], free[0]]
    finally:
        holder.rollback()
        holder.close()

    assert [job.id for job in queue.claim_batch(10, "runner-c")] == locked
    assert queue.claim_batch(10, "runner-d") == []
