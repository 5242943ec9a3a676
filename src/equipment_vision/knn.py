"""KNN search over stored embeddings using pgvector's cosine distance operator.

Search tables are chosen through the closed :class:`Scope` enum, never by
string interpolation, and only rows embedded by the active encoder (same
vendor/name/version) take part in a comparison.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Sequence

import numpy as np
from sqlalchemy import Select, func, literal, select

from equipment_vision.db import STATUS_APPROVED, GlobalImage, GymEquipment, GymImage, SessionFactory
from equipment_vision.errors import ScopeError
from equipment_vision.ml.embedding import EmbeddingModel
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "knn"})

MIN_LIMIT = 1
MAX_LIMIT = 100


class Scope(str, Enum):
    GLOBAL = "GLOBAL"
    GYM = "GYM"
    AUTO = "AUTO"


@dataclass(frozen=True)
class Neighbor:
    id: str
    equipment_id: str
    score: float
    storage_key: str


# Where a source image's embedding is looked up, in preference order.
_SOURCE_LOOKUP_ORDER: dict[Scope, tuple[Any, ...]] = {
    Scope.GLOBAL: (GlobalImage, GymImage),
    Scope.GYM: (GymImage, GlobalImage),
}
_SEARCH_TABLE: dict[Scope, Any] = {Scope.GLOBAL: GlobalImage, Scope.GYM: GymImage}


def clamp_limit(limit: int | None, default: int = 10) -> int:
    value = default if limit is None else int(limit)
    return max(MIN_LIMIT, min(MAX_LIMIT, value))


def clamp_score(score: float | None) -> float | None:
    if score is None:
        return None
    return max(0.0, min(1.0, float(score)))


class KnnSearchEngine:
    """Scope-aware nearest-neighbour search against gym and global image tables."""

    def __init__(
        self,
        session_factory: SessionFactory,
        model: EmbeddingModel,
        *,
        dim: int,
        auto_min_score: float = 0.8,
        default_limit: int = 10,
    ) -> None:
        self._session_factory = session_factory
        self._model = model
        self._dim = dim
        self._auto_min_score = auto_min_score
        self._default_limit = default_limit

    def _model_filter(self, table: Any) -> list[Any]:
        return [
            table.embedding.is_not(None),
            table.model_vendor == self._model.vendor,
            table.model_name == self._model.name,
            table.model_version == self._model.version,
        ]

    def _source_embedding(self, scope: Scope, image_id: str) -> Any:
        """COALESCE over the ordered lookups, so the first table holding the id wins."""

        lookups = [
            select(table.embedding)
            .where(table.id == image_id, *self._model_filter(table))
            .limit(1)
            .correlate(None)
            .scalar_subquery()
            for table in _SOURCE_LOOKUP_ORDER[scope]
        ]
        return func.coalesce(*lookups)

    def _require_source(self, scope: Scope, image_id: str) -> None:
        """Raise :class:`ScopeError` when no table holds an embedding for ``image_id`` under the active model."""

        with self._session_factory() as session:
            found = session.execute(select(self._source_embedding(scope, image_id))).scalar()
        if found is None:
            LOGGER.info("knn_source_missing", extra={"image_id": image_id, "scope": scope.value})
            raise ScopeError(f"No embedding found for image {image_id}")

    def _check_vector(self, vector: Sequence[float] | np.ndarray) -> list[float]:
        values = [float(v) for v in np.asarray(vector, dtype=np.float32).reshape(-1)]
        if len(values) != self._dim:
            raise ScopeError(f"query vector has length {len(values)}, expected {self._dim}")
        return values

    def build_statement(
        self,
        scope: Scope,
        *,
        source: Any,
        limit: int,
        gym_id: str | None = None,
        exclude_id: str | None = None,
        min_score: float | None = None,
        restrict_to_gym_equipment: str | None = None,
    ) -> Select:
        """Return the ranked neighbour query for a concrete (non-AUTO) scope."""

        table = _SEARCH_TABLE[scope]
        distance = table.embedding.cosine_distance(source)
        score = (literal(1.0) - distance).label("score")

        stmt = select(table.id, table.equipment_id, table.storage_key, score).where(
            table.status == STATUS_APPROVED,
            *self._model_filter(table),
        )
        if scope is Scope.GYM:
            stmt = stmt.where(GymImage.gym_id == gym_id)
        if restrict_to_gym_equipment is not None:
            stmt = stmt.where(
                table.equipment_id.in_(
                    select(GymEquipment.equipment_id).where(GymEquipment.gym_id == restrict_to_gym_equipment)
                )
            )
        if exclude_id is not None:
            stmt = stmt.where(table.id != exclude_id)
        if min_score is not None:
            stmt = stmt.where(literal(1.0) - distance >= min_score)
        return stmt.order_by(distance.asc()).limit(limit)

    def _run(self, stmt: Select) -> List[Neighbor]:
        with self._session_factory() as session:
            rows = session.execute(stmt).all()
        return [
            Neighbor(id=row.id, equipment_id=row.equipment_id, score=float(row.score), storage_key=row.storage_key)
            for row in rows
            if row.score is not None
        ]

    def search(
        self,
        *,
        scope: Scope | str,
        image_id: str | None = None,
        vector: Sequence[float] | np.ndarray | None = None,
        gym_id: str | None = None,
        limit: int | None = None,
        min_score: float | None = None,
    ) -> List[Neighbor]:
        """Rank neighbours of a stored image (``image_id``) or of a raw ``vector``.

        GLOBAL searches the global catalog, GYM searches one gym's images, AUTO
        runs GLOBAL first and only falls back to GYM when the best global
        score is below ``min_score`` (or the configured default threshold).
        An ``image_id`` with no embedding from the active model raises
        :class:`ScopeError`.
        """

        scope = Scope(scope)
        if (image_id is None) == (vector is None):
            raise ScopeError("exactly one of image_id or vector is required")
        if scope in (Scope.GYM, Scope.AUTO) and not gym_id:
            raise ScopeError("gymId is required")

        capped = clamp_limit(limit, self._default_limit)
        threshold = clamp_score(min_score)
        query_vector = self._check_vector(vector) if vector is not None else None

        def _scoped(target: Scope, score_floor: float | None) -> List[Neighbor]:
            source = query_vector if query_vector is not None else self._source_embedding(target, str(image_id))
            stmt = self.build_statement(
                target,
                source=source,
                limit=capped,
                gym_id=gym_id,
                exclude_id=image_id,
                min_score=score_floor,
            )
            hits = self._run(stmt)
            # A NULL source ranks nothing; only an empty result needs the existence check.
            if not hits and query_vector is None:
                self._require_source(target, str(image_id))
            return hits

        if scope is not Scope.AUTO:
            return _scoped(scope, threshold)

        auto_threshold = threshold if threshold is not None else self._auto_min_score
        global_hits = _scoped(Scope.GLOBAL, None)
        if global_hits and global_hits[0].score >= auto_threshold:
            LOGGER.info("knn_auto_global", extra={"top_score": global_hits[0].score, "threshold": auto_threshold})
            return global_hits

        LOGGER.info(
            "knn_auto_fallback_gym",
            extra={"top_score": global_hits[0].score if global_hits else None, "threshold": auto_threshold},
        )
        return _scoped(Scope.GYM, None)

    def knn_from_vector_global(
        self,
        vector: Sequence[float] | np.ndarray,
        limit: int | None = None,
        gym_id: str | None = None,
    ) -> List[Neighbor]:
        """Search the global catalog with an unpersisted vector, optionally limited to a gym's equipment."""

        stmt = self.build_statement(
            Scope.GLOBAL,
            source=self._check_vector(vector),
            limit=clamp_limit(limit, self._default_limit),
            restrict_to_gym_equipment=gym_id,
        )
        return self._run(stmt)

    def knn_from_vector_gym(
        self,
        vector: Sequence[float] | np.ndarray,
        gym_id: str,
        limit: int | None = None,
    ) -> List[Neighbor]:
        if not gym_id:
            raise ScopeError("gymId is required")
        stmt = self.build_statement(
            Scope.GYM,
            source=self._check_vector(vector),
            limit=clamp_limit(limit, self._default_limit),
            gym_id=gym_id,
        )
        return self._run(stmt)


__all__ = ["KnnSearchEngine", "Neighbor", "Scope", "clamp_limit", "clamp_score"]
