"""Application wiring: one place that builds sessions, stores, models, and services from settings."""

from __future__ import annotations

from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Any

from equipment_vision.blob_store import BlobStore, MinioBlobStore
from equipment_vision.config import ModelSourceConfig, Settings, load_settings
from equipment_vision.db import SessionFactory, make_session_factory
from equipment_vision.intake import IntakeService
from equipment_vision.knn import KnnSearchEngine
from equipment_vision.ml.embedding import EmbeddingProvider
from equipment_vision.ml.model_files import ensure_model_file
from equipment_vision.ml.nsfw import NsfwClassifier
from equipment_vision.ml.person import PersonDetector
from equipment_vision.ml.runtime import LazySession, create_inference_session, resolve_ort_log_level
from equipment_vision.ml.safety import SafetyProvider
from equipment_vision.moderation import ModerationService
from equipment_vision.promotion import PromotionService
from equipment_vision.recognition import RecognitionService
from equipment_vision.suggestions import SuggestionService
from equipment_vision.task_queue import JobQueueStore
from equipment_vision.worker import BurstOptions, PipelineWorker
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "context"})


def _load_session(source: ModelSourceConfig, settings: Settings, blob_store: BlobStore | None) -> Any:
    path: Path = ensure_model_file(
        source,
        blob_store=blob_store,
        timeout=settings.models.download_timeout_seconds,
    )
    return create_inference_session(path, resolve_ort_log_level(settings.models.ort_log_level))


def build_model_sessions(settings: Settings, blob_store: BlobStore | None) -> dict[str, LazySession]:
    """Return lazy session handles keyed by model role; nothing is loaded yet."""

    models = settings.models
    sessions = {
        "embedding": LazySession("embedding", partial(_load_session, models.embedding.source, settings, blob_store)),
        "nsfw": LazySession("nsfw", partial(_load_session, models.nsfw.source, settings, blob_store)),
    }
    if models.person.enabled:
        sessions["person"] = LazySession("person", partial(_load_session, models.person.source, settings, blob_store))
    return sessions


@dataclass
class AppContext:
    settings: Settings
    session_factory: SessionFactory
    blob_store: BlobStore
    model_sessions: dict[str, LazySession]
    embedder: EmbeddingProvider
    safety: SafetyProvider
    queue: JobQueueStore
    knn: KnnSearchEngine
    suggestions: SuggestionService
    promotion: PromotionService
    moderation: ModerationService
    intake: IntakeService
    recognition: RecognitionService
    worker: PipelineWorker

    def kick(self, options: BurstOptions | None = None) -> Any:
        """Start a background burst run; returns without waiting."""

        return self.worker.kick_in_background(options)

    def close(self) -> None:
        self.embedder.close()
        self.safety.close()


def build_context(
    settings: Settings | None = None,
    *,
    blob_store: BlobStore | None = None,
    session_factory: SessionFactory | None = None,
) -> AppContext:
    """Wire every service from ``settings`` (loaded from disk when omitted)."""

    settings = settings or load_settings()
    session_factory = session_factory or make_session_factory(settings.databases.primary_url)
    blob_store = blob_store or MinioBlobStore(settings.blob_store)

    model_sessions = build_model_sessions(settings, blob_store)
    embedder = EmbeddingProvider(settings.models.embedding, model_sessions["embedding"])
    detector = None
    if "person" in model_sessions:
        detector = PersonDetector(settings.models.person, model_sessions["person"])
    safety = SafetyProvider(NsfwClassifier(settings.models.nsfw, model_sessions["nsfw"]), detector)

    queue = JobQueueStore(session_factory, settings.queue)
    knn = KnnSearchEngine(
        session_factory,
        embedder.model,
        dim=settings.models.embedding.dim,
        auto_min_score=settings.search.auto_min_score,
        default_limit=settings.search.default_limit,
    )

    # Services kick the worker, which is built last; the holder breaks the cycle.
    holder: dict[str, PipelineWorker] = {}

    def _kick(options: BurstOptions | None = None) -> Any:
        return holder["worker"].kick_in_background(options)

    suggestions = SuggestionService(session_factory, blob_store, queue, settings.promotion, kick=_kick)
    promotion = PromotionService(session_factory, blob_store, queue, suggestions, kick=_kick)
    moderation = ModerationService(session_factory, blob_store, promotion, kick=_kick)
    intake = IntakeService(session_factory, blob_store, queue, settings.intake, kick=_kick)
    recognition = RecognitionService(
        session_factory=session_factory,
        blob_store=blob_store,
        embedder=embedder,
        knn=knn,
        queue=queue,
        config=settings.recognition,
        queue_config=settings.queue,
        kick=_kick,
    )
    worker = PipelineWorker(
        session_factory=session_factory,
        queue=queue,
        blob_store=blob_store,
        embedder=embedder,
        safety=safety,
        safety_config=settings.safety,
        promotion=promotion,
    )
    holder["worker"] = worker

    LOGGER.info(
        "context_ready",
        extra={"embedding_model": embedder.model.name, "person_detector": detector is not None},
    )
    return AppContext(
        settings=settings,
        session_factory=session_factory,
        blob_store=blob_store,
        model_sessions=model_sessions,
        embedder=embedder,
        safety=safety,
        queue=queue,
        knn=knn,
        suggestions=suggestions,
        promotion=promotion,
        moderation=moderation,
        intake=intake,
        recognition=recognition,
        worker=worker,
    )


__all__ = ["AppContext", "build_context", "build_model_sessions"]
