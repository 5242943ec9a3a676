"""CLI to fetch configured ONNX model files and warm up their sessions ahead of worker runs."""

from __future__ import annotations

import typer

from equipment_vision.blob_store import MinioBlobStore
from equipment_vision.config import ModelSourceConfig, Settings, load_settings
from equipment_vision.context import build_model_sessions
from equipment_vision.ml.model_files import ensure_model_file
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "download_models"})


def _resolve_sources(settings: Settings, include_person: bool) -> dict[str, ModelSourceConfig]:
    """Return the model sources to ensure, keyed by model role."""

    sources = {
        "embedding": settings.models.embedding.source,
        "nsfw": settings.models.nsfw.source,
    }
    if include_person:
        sources["person"] = settings.models.person.source
    return sources


def main(
    include_person: bool | None = typer.Option(
        None,
        "--include-person/--skip-person",
        help="Whether to fetch the person detector. Defaults to config.models.person.enabled.",
    ),
    warmup: bool = typer.Option(
        True,
        "--warmup/--no-warmup",
        help="Create each inference session after the files are in place.",
    ),
) -> None:
    """Download and verify model files, then optionally load each session once."""

    settings = load_settings()
    person_enabled = settings.models.person.enabled if include_person is None else include_person
    blob_store = MinioBlobStore(settings.blob_store)

    sources = _resolve_sources(settings, include_person=person_enabled)
    LOGGER.info("model_download_prepare", extra={"models": sorted(sources)})

    for role, source in sources.items():
        path = ensure_model_file(source, blob_store=blob_store, timeout=settings.models.download_timeout_seconds)
        LOGGER.info("model_file_ready", extra={"model": role, "path": str(path)})

    if warmup:
        settings.models.person.enabled = person_enabled
        for role, session in build_model_sessions(settings, blob_store).items():
            session.warmup()
            LOGGER.info("model_warm", extra={"model": role})

    LOGGER.info("model_download_finished", extra={"models": sorted(sources)})


def run() -> None:
    typer.run(main)


if __name__ == "__main__":
    typer.run(main)


__all__ = ["main", "run"]
