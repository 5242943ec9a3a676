"""Durable image job queue: enqueue, atomic claim, retry transitions, and the runner lease.

Jobs live in the ``image_jobs`` table. A claim flips up to ``limit`` pending
rows to ``processing`` in one UPDATE .. WHERE id IN (SELECT .. FOR UPDATE SKIP
LOCKED) .. RETURNING statement, so concurrent workers never receive the same
row. A separate named lease row (``worker_leases``) keeps burst runners from
draining the queue twice in parallel.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.orm import Session

from equipment_vision.config import QueueConfig
from equipment_vision.db import ImageJob, SessionFactory, WorkerLease, dialect_insert
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "task_queue"})

MAX_ERROR_LENGTH = 3000
_MAX_BACKOFF_EXPONENT = 30


class JobType(str, Enum):
    HASH = "HASH"
    SAFETY = "SAFETY"
    EMBED = "EMBED"
    PROMOTE = "PROMOTE"

    @classmethod
    def parse(cls, value: str) -> Optional["JobType"]:
        try:
            return cls(value)
        except ValueError:
            return None


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"


PRIORITY_BY_SOURCE: Dict[str, int] = {
    "recognition_user": 100,
    "gym_manager": 80,
    "gym_equipment": 80,
    "admin": 20,
    "backfill": 20,
}


def priority_for_source(source: str | None) -> int:
    return PRIORITY_BY_SOURCE.get(source or "", 0)


@dataclass(frozen=True)
class ClaimedJob:
    """Snapshot of a job row at claim time."""

    id: int
    job_type: str
    image_id: str | None
    storage_key: str | None
    attempts: int
    priority: int


@dataclass(frozen=True)
class RetryState:
    """Row state after a failed attempt."""

    attempts: int
    status: JobStatus
    scheduled_at: float | None


def compute_backoff(attempts: int, base_seconds: float, max_seconds: float) -> float:
    """Return ``min(base * 2**attempts, max)`` where ``attempts`` counts earlier failures."""

    exponent = min(max(0, attempts), _MAX_BACKOFF_EXPONENT)
    return float(min(base_seconds * (2**exponent), max_seconds))


def next_retry_state(attempts: int, max_retries: int, now: float, delay_seconds: float) -> RetryState:
    """Pure transition for a failed attempt: back to pending with a delay, or permanently failed."""

    next_attempts = attempts + 1
    if next_attempts < max_retries:
        return RetryState(attempts=next_attempts, status=JobStatus.PENDING, scheduled_at=now + max(0.0, delay_seconds))
    return RetryState(attempts=next_attempts, status=JobStatus.FAILED, scheduled_at=None)


def _claim_order(row) -> tuple:
    """Sort key matching the claim query's ORDER BY."""

    created_at = float(row.created_at or 0.0)
    due_at = float(row.scheduled_at) if row.scheduled_at is not None else created_at
    return (-int(row.priority or 0), due_at, created_at, row.id)


def _truncate_error(error: str) -> str:
    return error[:MAX_ERROR_LENGTH]


class JobQueueStore:
    """Queue operations over the ``image_jobs`` and ``worker_leases`` tables."""

    def __init__(
        self,
        session_factory: SessionFactory,
        config: QueueConfig,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._session_factory = session_factory
        self._config = config
        self._clock = clock

    @property
    def config(self) -> QueueConfig:
        return self._config

    def backoff_for(self, attempts: int) -> float:
        return compute_backoff(attempts, self._config.backoff_base_seconds, self._config.backoff_max_seconds)

    def enqueue(
        self,
        job_type: JobType,
        *,
        image_id: str | None = None,
        storage_key: str | None = None,
        priority: int = 0,
        scheduled_at: float | None = None,
        session: Session | None = None,
    ) -> int:
        """Insert a pending job and return its id.

        When ``session`` is given the row joins that transaction and the caller
        commits; otherwise the insert is committed immediately. No uniqueness is
        enforced here.
        """

        if image_id is None and storage_key is None:
            raise ValueError("a job needs an image_id or a storage_key")

        now = self._clock()
        row = ImageJob(
            job_type=JobType(job_type).value,
            image_id=image_id,
            storage_key=storage_key,
            status=JobStatus.PENDING.value,
            priority=priority,
            scheduled_at=scheduled_at,
            attempts=0,
            created_at=now,
            updated_at=now,
        )

        if session is not None:
            session.add(row)
            session.flush()
            job_id = row.id
        else:
            with self._session_factory() as own_session:
                own_session.add(row)
                own_session.commit()
                job_id = row.id

        LOGGER.info(
            "job_enqueued",
            extra={"job_id": job_id, "job_type": row.job_type, "storage_key": storage_key, "image_id": image_id, "priority": priority},
        )
        return job_id

    def claim_batch(self, limit: int, owner: str = "worker") -> List[ClaimedJob]:
        """Atomically move up to ``limit`` due pending jobs to ``processing`` and return them."""

        if limit <= 0:
            return []

        now = self._clock()
        due = (
            select(ImageJob.id)
            .where(
                ImageJob.status == JobStatus.PENDING.value,
                ImageJob.finished_at.is_(None),
                or_(ImageJob.scheduled_at.is_(None), ImageJob.scheduled_at <= now),
            )
            .order_by(
                ImageJob.priority.desc(),
                func.coalesce(ImageJob.scheduled_at, ImageJob.created_at).asc(),
                ImageJob.created_at.asc(),
                ImageJob.id.asc(),
            )
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        stmt = (
            update(ImageJob)
            .where(ImageJob.id.in_(due), ImageJob.status == JobStatus.PENDING.value)
            .values(
                status=JobStatus.PROCESSING.value,
                started_at=now,
                lease_owner=owner,
                lease_expires_at=now + self._config.stale_job_timeout_seconds,
                updated_at=now,
            )
            .returning(
                ImageJob.id,
                ImageJob.job_type,
                ImageJob.image_id,
                ImageJob.storage_key,
                ImageJob.attempts,
                ImageJob.priority,
                ImageJob.scheduled_at,
                ImageJob.created_at,
            )
            .execution_options(synchronize_session=False)
        )

        with self._session_factory() as session:
            rows = session.execute(stmt).all()
            session.commit()

        # RETURNING carries no ordering guarantee; restore the claim order.
        rows = sorted(rows, key=_claim_order)
        jobs = [
            ClaimedJob(
                id=row.id,
                job_type=row.job_type,
                image_id=row.image_id,
                storage_key=row.storage_key,
                attempts=int(row.attempts or 0),
                priority=int(row.priority or 0),
            )
            for row in rows
        ]
        if jobs:
            LOGGER.info("jobs_claimed", extra={"count": len(jobs), "owner": owner, "job_ids": [job.id for job in jobs]})
        return jobs

    def mark_done(self, job_id: int) -> None:
        now = self._clock()
        with self._session_factory() as session:
            session.execute(
                update(ImageJob)
                .where(ImageJob.id == job_id)
                .values(
                    status=JobStatus.DONE.value,
                    finished_at=now,
                    last_error=None,
                    lease_owner=None,
                    lease_expires_at=None,
                    updated_at=now,
                )
            )
            session.commit()
        LOGGER.info("job_done", extra={"job_id": job_id})

    def mark_failed(self, job_id: int, error: str, delay_seconds: float | None = None) -> RetryState | None:
        """Record a failed attempt, rescheduling with backoff until retries run out."""

        now = self._clock()
        with self._session_factory() as session:
            row = session.get(ImageJob, job_id)
            if row is None:
                LOGGER.warning("job_mark_failed_missing", extra={"job_id": job_id})
                return None

            attempts = int(row.attempts or 0)
            delay = self.backoff_for(attempts) if delay_seconds is None else delay_seconds
            state = next_retry_state(attempts, self._config.max_retries, now, delay)

            row.attempts = state.attempts
            row.status = state.status.value
            row.scheduled_at = state.scheduled_at
            row.last_error = _truncate_error(error)
            row.started_at = None
            row.lease_owner = None
            row.lease_expires_at = None
            row.finished_at = now if state.status is JobStatus.FAILED else None
            row.updated_at = now
            session.commit()

        LOGGER.info(
            "job_failed",
            extra={"job_id": job_id, "attempts": state.attempts, "status": state.status.value, "delay_seconds": delay},
        )
        return state

    def mark_exhausted(self, job_id: int, error: str) -> None:
        """Fail a job permanently on this attempt without scheduling another one."""

        now = self._clock()
        with self._session_factory() as session:
            session.execute(
                update(ImageJob)
                .where(ImageJob.id == job_id)
                .values(
                    attempts=ImageJob.attempts + 1,
                    status=JobStatus.FAILED.value,
                    finished_at=now,
                    last_error=_truncate_error(error),
                    lease_owner=None,
                    lease_expires_at=None,
                    updated_at=now,
                )
            )
            session.commit()
        LOGGER.info("job_exhausted", extra={"job_id": job_id})

    def release_jobs(self, job_ids: List[int]) -> int:
        """Hand claimed jobs back to ``pending`` without charging an attempt."""

        if not job_ids:
            return 0
        now = self._clock()
        with self._session_factory() as session:
            result = session.execute(
                update(ImageJob)
                .where(ImageJob.id.in_(job_ids), ImageJob.status == JobStatus.PROCESSING.value)
                .values(
                    status=JobStatus.PENDING.value,
                    started_at=None,
                    lease_owner=None,
                    lease_expires_at=None,
                    updated_at=now,
                )
            )
            session.commit()
        count = int(result.rowcount or 0)
        LOGGER.warning("jobs_released", extra={"job_ids": list(job_ids), "count": count})
        return count

    def reset_stale_jobs(self) -> int:
        """Return ``processing`` jobs whose lease has expired to ``pending``."""

        now = self._clock()
        stale_before = now - self._config.stale_job_timeout_seconds
        with self._session_factory() as session:
            result = session.execute(
                update(ImageJob)
                .where(
                    ImageJob.status == JobStatus.PROCESSING.value,
                    or_(
                        ImageJob.lease_expires_at <= now,
                        ImageJob.lease_expires_at.is_(None) & (ImageJob.started_at <= stale_before),
                    ),
                )
                .values(
                    status=JobStatus.PENDING.value,
                    started_at=None,
                    lease_owner=None,
                    lease_expires_at=None,
                    updated_at=now,
                )
            )
            session.commit()
        count = int(result.rowcount or 0)
        if count:
            LOGGER.warning("stale_jobs_reset", extra={"count": count})
        return count

    def has_active_job(self, *, storage_key: str | None = None, image_id: str | None = None) -> bool:
        """Return True when a pending or processing job targets the key or image."""

        targets = []
        if storage_key is not None:
            targets.append(ImageJob.storage_key == storage_key)
        if image_id is not None:
            targets.append(ImageJob.image_id == image_id)
        if not targets:
            return False

        with self._session_factory() as session:
            found = session.execute(
                select(ImageJob.id)
                .where(
                    ImageJob.status.in_([JobStatus.PENDING.value, JobStatus.PROCESSING.value]),
                    or_(*targets),
                )
                .limit(1)
            ).scalar_one_or_none()
        return found is not None

    def count_by_status(self) -> Dict[str, int]:
        with self._session_factory() as session:
            rows = session.execute(select(ImageJob.status, func.count()).group_by(ImageJob.status)).all()
        return {status: int(count) for status, count in rows}

    # Runner lease

    def try_acquire_lease(self, owner: str, ttl_seconds: float | None = None) -> bool:
        """Take the named runner lease if it is free, expired, or already ours. Never blocks."""

        now = self._clock()
        ttl = self._config.lease_ttl_seconds if ttl_seconds is None else ttl_seconds
        with self._session_factory() as session:
            stmt = dialect_insert(session, WorkerLease).values(
                name=self._config.lease_name,
                owner=owner,
                lease_until=now + ttl,
                heartbeat_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["name"],
                set_={"owner": owner, "lease_until": now + ttl, "heartbeat_at": now},
                where=or_(WorkerLease.lease_until <= now, WorkerLease.owner == owner),
            ).returning(WorkerLease.name)
            acquired = session.execute(stmt).first() is not None
            session.commit()

        LOGGER.info("lease_acquire", extra={"lease": self._config.lease_name, "owner": owner, "acquired": acquired})
        return acquired

    def renew_lease(self, owner: str, ttl_seconds: float | None = None) -> bool:
        now = self._clock()
        ttl = self._config.lease_ttl_seconds if ttl_seconds is None else ttl_seconds
        with self._session_factory() as session:
            result = session.execute(
                update(WorkerLease)
                .where(
                    WorkerLease.name == self._config.lease_name,
                    WorkerLease.owner == owner,
                    WorkerLease.lease_until > now,
                )
                .values(lease_until=now + ttl, heartbeat_at=now)
            )
            session.commit()
        return int(result.rowcount or 0) > 0

    def release_lease(self, owner: str) -> None:
        with self._session_factory() as session:
            session.execute(
                delete(WorkerLease).where(
                    WorkerLease.name == self._config.lease_name,
                    WorkerLease.owner == owner,
                )
            )
            session.commit()
        LOGGER.info("lease_released", extra={"lease": self._config.lease_name, "owner": owner})


__all__ = [
    "ClaimedJob",
    "JobQueueStore",
    "JobStatus",
    "JobType",
    "PRIORITY_BY_SOURCE",
    "RetryState",
    "compute_backoff",
    "next_retry_state",
    "priority_for_source",
]
