"""CLI for the image pipeline worker: burst, drain, continuous loop, stale sweep, and status."""

from __future__ import annotations

import signal
import threading
from typing import Optional

import typer

from equipment_vision.config import load_settings
from equipment_vision.context import build_context
from equipment_vision.db import make_session_factory
from equipment_vision.task_queue import JobQueueStore
from equipment_vision.worker import BurstOptions
from utils.logging import get_logger


LOGGER = get_logger(__name__, extra={"component": "worker_cli"})

app = typer.Typer(add_completion=False, help="Run the equipment image pipeline worker.")


@app.command("burst")
def burst(
    max_runtime: Optional[float] = typer.Option(
        None,
        "--max-runtime",
        min=1.0,
        help="Stop after this many seconds even if jobs remain.",
    ),
    idle_exit: Optional[float] = typer.Option(
        None,
        "--idle-exit",
        min=0.0,
        help="Exit after the queue has been empty for this many seconds.",
    ),
    batch_size: Optional[int] = typer.Option(
        None,
        "--batch-size",
        min=1,
        help="Maximum number of jobs to claim per iteration.",
    ),
) -> None:
    """Drain the queue under the global runner lease, within time bounds."""

    ctx = build_context()
    options = BurstOptions.from_config(
        ctx.settings.queue,
        max_runtime_seconds=max_runtime,
        idle_exit_seconds=idle_exit,
        batch_size=batch_size,
    )
    processed = ctx.worker.kick_burst_runner(options)
    typer.echo(f"processed={processed}")


@app.command("drain")
def drain(
    batch_size: Optional[int] = typer.Option(None, "--batch-size", min=1, help="Jobs to claim per batch."),
    max_jobs: Optional[int] = typer.Option(None, "--max-jobs", min=1, help="Stop after this many jobs."),
) -> None:
    """Process jobs until a claim comes back empty."""

    ctx = build_context()
    processed = ctx.worker.run_once(batch_size=batch_size, max_jobs=max_jobs)
    typer.echo(f"processed={processed}")


@app.command("loop")
def loop(
    poll_interval: Optional[float] = typer.Option(
        None,
        "--poll-interval",
        min=0.05,
        help="Seconds to sleep when the queue is empty.",
    ),
) -> None:
    """Run continuously until interrupted."""

    ctx = build_context()
    stop = threading.Event()

    def _handle_signal(signum: int, _frame: object) -> None:
        LOGGER.info("worker_signal", extra={"signal": signum})
        stop.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    try:
        ctx.worker.run_forever(stop, poll_interval=poll_interval)
    finally:
        ctx.close()


def _queue_only() -> JobQueueStore:
    settings = load_settings()
    return JobQueueStore(make_session_factory(settings.databases.primary_url), settings.queue)


@app.command("sweep")
def sweep() -> None:
    """Return processing jobs with expired leases to pending."""

    reset = _queue_only().reset_stale_jobs()
    typer.echo(f"reset={reset}")


@app.command("status")
def status() -> None:
    """Print job counts per status."""

    counts = _queue_only().count_by_status()
    for name in ("pending", "processing", "done", "failed"):
        typer.echo(f"{name}: {counts.get(name, 0)}")


def main() -> None:
    """Entrypoint used when invoking the module as a script."""

    app()


if __name__ == "__main__":
    app()


__all__ = ["app", "main"]
