"""Pipeline worker: claims image jobs and runs the HASH -> SAFETY -> EMBED stages.

Each stage enqueues the next one for the same image, so per-image ordering is
causal rather than priority based. Every handler failure is converted into a
queue-level retry (``mark_failed`` with exponential backoff) or, for job types
without a handler, a terminal ``mark_exhausted`` on the last allowed attempt.
The batch loop never dies on a job error. A :class:`ModelLoadError` is not a
job error: the claimed jobs go back to pending uncharged and the error
propagates out of the run.
"""

from __future__ import annotations

import os
import socket
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from equipment_vision.blob_store import BlobStore
from equipment_vision.config import QueueConfig, SafetyConfig
from equipment_vision.db import (
    STATUS_APPROVED,
    STATUS_PENDING,
    STATUS_QUARANTINED,
    GlobalImage,
    GymImage,
    SessionFactory,
    TrainingCandidate,
)
from equipment_vision.embedding_index import apply_embedding
from equipment_vision.errors import BlobNotFoundError, ModelLoadError, NotFoundError, UnsupportedJobTypeError
from equipment_vision.hasher import compute_content_hash
from equipment_vision.ml.embedding import EmbeddingProvider
from equipment_vision.ml.safety import SafetyProvider, SafetyResult
from equipment_vision.promotion import PromotionService
from equipment_vision.storage_keys import candidate_hash_key, is_candidate_key, quarantine_key_for
from equipment_vision.task_queue import ClaimedJob, JobQueueStore, JobType
from equipment_vision.trust import can_auto_approve
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "worker"})

REASON_NSFW = "NSFW"
REASON_PERSON = "PERSON"

# Where a job's owning row is looked up, in order: (model, row column, job attribute).
_TARGET_LOOKUPS: tuple[tuple[Any, str, str], ...] = (
    (TrainingCandidate, "storage_key", "storage_key"),
    (GymImage, "id", "image_id"),
    (GlobalImage, "id", "image_id"),
    (GymImage, "storage_key", "storage_key"),
    (GlobalImage, "storage_key", "storage_key"),
    (TrainingCandidate, "id", "image_id"),
)


@dataclass(frozen=True)
class BurstOptions:
    """Bounds for one :meth:`PipelineWorker.kick_burst_runner` invocation."""

    idle_exit_seconds: float
    batch_size: int
    lease_ttl_seconds: float
    max_runtime_seconds: float

    @classmethod
    def from_config(cls, config: QueueConfig, **overrides: Any) -> "BurstOptions":
        values = {
            "idle_exit_seconds": config.idle_exit_seconds,
            "batch_size": config.batch_size,
            "lease_ttl_seconds": config.lease_ttl_seconds,
            "max_runtime_seconds": config.max_runtime_seconds,
        }
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**values)


def safety_verdict(result: SafetyResult, block_threshold: float) -> tuple[bool, List[str]]:
    """Return ``(is_safe, reasons)``: blocked when NSFW reaches the threshold or a person is present."""

    reasons: List[str] = []
    if result.nsfw_score >= block_threshold:
        reasons.append(REASON_NSFW)
    if result.has_person:
        reasons.append(REASON_PERSON)
    return not reasons, reasons


def resolve_job_target(session: Session, job: ClaimedJob) -> Any | None:
    """Return the row a job operates on: the first lookup that finds one wins."""

    for model, column, attribute in _TARGET_LOOKUPS:
        value = getattr(job, attribute)
        if value is None:
            continue
        row = session.execute(select(model).where(getattr(model, column) == value).limit(1)).scalar_one_or_none()
        if row is not None:
            return row
    return None


def _default_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class PipelineWorker:
    """Runs queued image jobs against the blob store, models, and database."""

    def __init__(
        self,
        *,
        session_factory: SessionFactory,
        queue: JobQueueStore,
        blob_store: BlobStore,
        embedder: EmbeddingProvider,
        safety: SafetyProvider,
        safety_config: SafetyConfig,
        promotion: PromotionService | None = None,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._session_factory = session_factory
        self._queue = queue
        self._blob_store = blob_store
        self._embedder = embedder
        self._safety = safety
        self._safety_config = safety_config
        self._promotion = promotion
        self._sleep = sleep
        self._monotonic = monotonic
        self._run_lock = threading.Lock()
        self._owner = _default_owner()

    # Stage handlers

    def _job_key(self, job: ClaimedJob) -> str:
        if job.storage_key:
            return job.storage_key
        with self._session_factory() as session:
            target = resolve_job_target(session, job)
            if target is None:
                raise NotFoundError(f"No storage key or image row for job {job.id}")
            return target.storage_key

    def _update_target(self, job: ClaimedJob, values: dict[str, Any]) -> bool:
        """Set ``values`` on the job's owning row and commit. Returns False when no row exists."""

        with self._session_factory() as session:
            target = resolve_job_target(session, job)
            if target is None:
                LOGGER.warning("job_target_missing", extra={"job_id": job.id, "job_type": job.job_type})
                return False
            for name, value in values.items():
                setattr(target, name, value)
            target.updated_at = time.time()
            session.commit()
        return True

    def _hash_already_applied(self, job: ClaimedJob, key: str) -> bool:
        """True when an earlier run already hashed the row and moved its blob away from ``key``."""

        with self._session_factory() as session:
            target = resolve_job_target(session, job)
            if target is None or not target.sha256 or target.storage_key == key:
                return False
            current_key = target.storage_key
        try:
            self._blob_store.head_object(current_key)
        except BlobNotFoundError:
            return False
        return True

    def _handle_hash(self, job: ClaimedJob) -> None:
        key = self._job_key(job)
        try:
            data = self._blob_store.get_object_bytes(key)
        except BlobNotFoundError:
            if self._hash_already_applied(job, key):
                LOGGER.info("hash_already_applied", extra={"job_id": job.id, "storage_key": key})
                return
            raise
        sha256 = compute_content_hash(data)

        if not is_candidate_key(key):
            # Backfill path: record the hash, leave the blob where it is.
            self._update_target(job, {"sha256": sha256})
            LOGGER.info("hash_recorded", extra={"job_id": job.id, "sha256": sha256})
            return

        hashed_key = candidate_hash_key(key, sha256)
        if hashed_key != key:
            self._blob_store.copy_object_if_missing(key, hashed_key)

        with self._session_factory() as session:
            target = resolve_job_target(session, job)
            already_moved = target is not None and target.sha256 == sha256 and target.storage_key == hashed_key
            if target is None:
                LOGGER.warning("job_target_missing", extra={"job_id": job.id, "job_type": job.job_type})
            elif not already_moved:
                target.sha256 = sha256
                target.storage_key = hashed_key
                target.updated_at = time.time()
            # A rerun after the commit below already has its SAFETY job.
            if not already_moved:
                self._queue.enqueue(
                    JobType.SAFETY,
                    image_id=job.image_id,
                    storage_key=hashed_key,
                    priority=job.priority,
                    session=session,
                )
            session.commit()

        if hashed_key != key:
            self._blob_store.delete_object_ignore_missing(key)
        LOGGER.info("hash_moved", extra={"job_id": job.id, "sha256": sha256, "storage_key": hashed_key})

    def _handle_safety(self, job: ClaimedJob) -> None:
        key = self._job_key(job)
        result = self._safety.check(self._blob_store.get_object_bytes(key))
        is_safe, reasons = safety_verdict(result, self._safety_config.block_threshold)

        signals = {
            "is_safe": is_safe,
            "nsfw_score": result.nsfw_score,
            "has_person": result.has_person,
            "person_count": result.person_count,
            "person_boxes": result.person_boxes,
            "safety_reasons": reasons,
        }

        if is_safe:
            with self._session_factory() as session:
                target = resolve_job_target(session, job)
                if target is None:
                    raise NotFoundError(f"No image row for SAFETY job {job.id}")
                for name, value in signals.items():
                    setattr(target, name, value)
                target.updated_at = time.time()
                self._queue.enqueue(
                    JobType.EMBED,
                    image_id=job.image_id,
                    storage_key=key,
                    priority=job.priority,
                    session=session,
                )
                session.commit()
            LOGGER.info("safety_passed", extra={"job_id": job.id, "nsfw_score": result.nsfw_score})
            return

        self._quarantine(job, key, signals)
        LOGGER.info(
            "safety_quarantined",
            extra={"job_id": job.id, "nsfw_score": result.nsfw_score, "has_person": result.has_person, "reasons": reasons},
        )

    def _quarantine(self, job: ClaimedJob, key: str, signals: dict[str, Any]) -> None:
        """Mark the owning row QUARANTINED and move its blob out of the pipeline paths."""

        full = {"status": STATUS_QUARANTINED, **signals}
        try:
            self._update_target(job, full)
        except SQLAlchemyError as exc:
            LOGGER.warning("quarantine_write_fallback", extra={"job_id": job.id, "error": str(exc)})
            self._update_target(
                job,
                {"status": STATUS_QUARANTINED, "is_safe": False, "has_person": signals["has_person"]},
            )

        quarantine_key = quarantine_key_for(key)
        if quarantine_key is None or quarantine_key == key:
            return
        self._blob_store.copy_object_if_missing(key, quarantine_key)
        self._update_target(job, {"storage_key": quarantine_key})
        self._blob_store.delete_object_ignore_missing(key)

    def _handle_embed(self, job: ClaimedJob) -> None:
        key = self._job_key(job)
        vector = self._embedder.embed(self._blob_store.get_object_bytes(key))
        model = self._embedder.model

        queued_embed = False
        with self._session_factory() as session:
            target = resolve_job_target(session, job)
            if target is None:
                raise NotFoundError(f"No image row for EMBED job {job.id}")
            apply_embedding(target, vector, model)

            if isinstance(target, TrainingCandidate):
                if (
                    self._promotion is not None
                    and target.status == STATUS_PENDING
                    and target.is_safe is not False
                    and can_auto_approve(session, target.gym_id, target.uploader_user_id)
                ):
                    _, queued_embed = self._promotion.approve_candidate_in_session(session, target)
                    LOGGER.info("candidate_auto_approved", extra={"job_id": job.id, "candidate_id": target.id})
            elif isinstance(target, GymImage):
                if (
                    target.status == STATUS_PENDING
                    and target.is_safe is True
                    and can_auto_approve(session, target.gym_id, target.uploaded_by_user_id)
                ):
                    target.status = STATUS_APPROVED
                    target.approved_at = time.time()
                    LOGGER.info("gym_image_auto_approved", extra={"job_id": job.id, "gym_image_id": target.id})
            session.commit()

        LOGGER.info(
            "embedding_written",
            extra={"job_id": job.id, "vendor": model.vendor, "model": model.name, "version": model.version},
        )
        if queued_embed:
            LOGGER.info("embed_follow_up_queued", extra={"job_id": job.id})

    # Dispatch

    def _dispatch(self, job: ClaimedJob) -> None:
        job_type = JobType.parse(job.job_type)
        if job_type is JobType.HASH:
            self._handle_hash(job)
        elif job_type is JobType.SAFETY:
            self._handle_safety(job)
        elif job_type is JobType.EMBED:
            self._handle_embed(job)
        elif job_type is JobType.PROMOTE or job_type is None:
            raise UnsupportedJobTypeError(f"Unsupported job type: {job.job_type}")
        else:
            raise AssertionError(f"unhandled job type {job_type!r}")

    def _is_handled(self, job: ClaimedJob) -> bool:
        return JobType.parse(job.job_type) in (JobType.HASH, JobType.SAFETY, JobType.EMBED)

    def process_job(self, job: ClaimedJob) -> bool:
        """Run one claimed job and record the outcome. Returns True when it succeeded."""

        if not self._is_handled(job) and job.attempts + 1 >= self._queue.config.max_retries:
            LOGGER.error("worker_job_unsupported", extra={"job_id": job.id, "job_type": job.job_type})
            self._queue.mark_exhausted(job.id, f"Unsupported job type: {job.job_type}")
            return False

        try:
            self._dispatch(job)
        except ModelLoadError as exc:
            # Hand the job back uncharged; the run stops here.
            LOGGER.error("worker_model_unavailable", extra={"job_id": job.id, "job_type": job.job_type, "error": str(exc)})
            self._queue.release_jobs([job.id])
            raise
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            LOGGER.error(
                "worker_job_error",
                extra={"job_id": job.id, "job_type": job.job_type, "attempts": job.attempts, "error": message},
            )
            self._queue.mark_failed(job.id, message, self._queue.backoff_for(job.attempts))
            return False

        self._queue.mark_done(job.id)
        return True

    def _process_batch(self, jobs: List[ClaimedJob]) -> int:
        handled = 0
        for index, job in enumerate(jobs):
            try:
                self.process_job(job)
            except ModelLoadError:
                self._queue.release_jobs([rest.id for rest in jobs[index + 1 :]])
                raise
            except Exception as exc:
                # Queue bookkeeping failed; the stale-job sweep will return the row to pending.
                LOGGER.error("worker_queue_error", extra={"job_id": job.id, "error": str(exc)})
            handled += 1
        return handled

    # Run modes

    def process_once(self, batch_size: int | None = None) -> int:
        """Claim and process a single batch; returns the number of jobs handled."""

        jobs = self._queue.claim_batch(batch_size or self._queue.config.batch_size, self._owner)
        return self._process_batch(jobs)

    def run_once(self, batch_size: int | None = None, max_jobs: int | None = None) -> int:
        """Drain the queue until a claim comes back empty.

        Overlapping calls within this process are no-ops returning 0, so one
        process never drains the queue twice in parallel.
        """

        if not self._run_lock.acquire(blocking=False):
            LOGGER.info("run_once_busy")
            return 0

        size = batch_size or self._queue.config.batch_size
        processed = 0
        try:
            while True:
                limit = size
                if max_jobs is not None:
                    remaining = max_jobs - processed
                    if remaining <= 0:
                        break
                    limit = min(limit, remaining)
                jobs = self._queue.claim_batch(limit, self._owner)
                if not jobs:
                    break
                processed += self._process_batch(jobs)
        finally:
            self._run_lock.release()

        LOGGER.info("run_once_complete", extra={"processed": processed})
        return processed

    def kick_burst_runner(self, options: BurstOptions | None = None) -> int:
        """Drain the queue under the global runner lease, within the given time bounds.

        Returns immediately with 0 when another runner holds the lease. The
        lease is released on every exit path.
        """

        opts = options or BurstOptions.from_config(self._queue.config)
        owner = _default_owner()
        if not self._queue.try_acquire_lease(owner, opts.lease_ttl_seconds):
            LOGGER.info("burst_lease_busy", extra={"owner": owner})
            return 0

        processed = 0
        try:
            self._queue.reset_stale_jobs()
            started = self._monotonic()
            last_work = started
            while True:
                now = self._monotonic()
                if now - started >= opts.max_runtime_seconds:
                    LOGGER.info("burst_max_runtime", extra={"processed": processed})
                    break
                if not self._queue.renew_lease(owner, opts.lease_ttl_seconds):
                    LOGGER.warning("burst_lease_lost", extra={"owner": owner})
                    break

                jobs = self._queue.claim_batch(opts.batch_size, owner)
                if jobs:
                    processed += self._process_batch(jobs)
                    last_work = self._monotonic()
                    continue

                idle_for = self._monotonic() - last_work
                if idle_for >= opts.idle_exit_seconds:
                    break
                self._sleep(min(self._queue.config.poll_interval_seconds, opts.idle_exit_seconds - idle_for))
        finally:
            self._queue.release_lease(owner)

        LOGGER.info("burst_complete", extra={"processed": processed, "owner": owner})
        return processed

    def kick_in_background(self, options: BurstOptions | None = None) -> threading.Thread:
        """Start a burst run on a daemon thread and return without waiting for it."""

        def _target() -> None:
            try:
                self.kick_burst_runner(options)
            except Exception as exc:
                LOGGER.error("burst_runner_crashed", extra={"error": str(exc)})

        thread = threading.Thread(target=_target, name="burst-runner", daemon=True)
        thread.start()
        return thread

    def run_forever(self, stop_event: Optional[threading.Event] = None, poll_interval: float | None = None) -> None:
        """Continuous mode: drain, sweep stale rows, sleep when idle, until ``stop_event`` is set."""

        interval = poll_interval if poll_interval is not None else self._queue.config.poll_interval_seconds
        stop = stop_event or threading.Event()
        LOGGER.info("worker_loop_start", extra={"owner": self._owner})
        while not stop.is_set():
            self._queue.reset_stale_jobs()
            if self.run_once() == 0:
                stop.wait(interval)
        LOGGER.info("worker_loop_stop", extra={"owner": self._owner})


__all__ = ["BurstOptions", "PipelineWorker", "resolve_job_target", "safety_verdict"]
