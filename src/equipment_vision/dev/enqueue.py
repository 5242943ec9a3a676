"""CLI to enqueue a pipeline job for a storage key or image id."""

from __future__ import annotations

from typing import Optional

import typer

from equipment_vision.config import load_settings
from equipment_vision.db import make_session_factory
from equipment_vision.task_queue import JobQueueStore, JobType, priority_for_source
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "enqueue"})


def main(
    job_type: str = typer.Option(
        JobType.HASH.value,
        "--type",
        help="Job type to enqueue: HASH, SAFETY or EMBED.",
    ),
    storage_key: Optional[str] = typer.Option(None, "--key", help="Blob storage key of the image."),
    image_id: Optional[str] = typer.Option(None, "--image-id", help="Id of the owning image row."),
    source: Optional[str] = typer.Option(
        "backfill",
        "--source",
        help="Upload source used to pick the priority (recognition_user, gym_manager, admin, backfill).",
    ),
    priority: Optional[int] = typer.Option(None, "--priority", help="Explicit priority, overriding --source."),
    skip_active: bool = typer.Option(
        True,
        "--skip-active/--allow-duplicate",
        help="Skip when a pending or processing job already exists for the same image.",
    ),
) -> None:
    """Insert one pending job into the image queue."""

    parsed = JobType.parse(job_type.upper())
    if parsed is None:
        raise typer.BadParameter(f"unknown job type {job_type!r}", param_hint="--type")
    if not storage_key and not image_id:
        raise typer.BadParameter("one of --key or --image-id is required")

    settings = load_settings()
    queue = JobQueueStore(make_session_factory(settings.databases.primary_url), settings.queue)

    if skip_active and queue.has_active_job(storage_key=storage_key, image_id=image_id):
        LOGGER.info("enqueue_skipped_active", extra={"storage_key": storage_key, "image_id": image_id})
        typer.echo("skipped: active job exists")
        return

    job_id = queue.enqueue(
        parsed,
        image_id=image_id,
        storage_key=storage_key,
        priority=priority if priority is not None else priority_for_source(source),
    )
    LOGGER.info("enqueue_complete", extra={"job_id": job_id, "job_type": parsed.value})
    typer.echo(f"job_id={job_id}")


def run() -> None:
    typer.run(main)


if __name__ == "__main__":
    typer.run(main)


__all__ = ["main", "run"]
