"""SQLAlchemy schema definitions, engine cache, and session management."""

from __future__ import annotations

from functools import partial
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Final

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    JSON,
    Boolean,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    text,
)
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column

from utils.logging import get_logger

LOGGER = get_logger(__name__)

EMBEDDING_DIM: Final[int] = 512

# Image / candidate lifecycle
STATUS_PENDING: Final[str] = "PENDING"
STATUS_APPROVED: Final[str] = "APPROVED"
STATUS_REJECTED: Final[str] = "REJECTED"
STATUS_QUARANTINED: Final[str] = "QUARANTINED"

SessionFactory = Callable[[], Session]


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""


class ImageJob(Base):
    """Durable queue row for one pipeline stage of one image."""

    __tablename__ = "image_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_type: Mapped[str] = mapped_column(String, nullable=False)
    image_id: Mapped[str | None] = mapped_column(String, nullable=True)
    storage_key: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default="pending")
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    scheduled_at: Mapped[float | None] = mapped_column(Float, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    lease_owner: Mapped[str | None] = mapped_column(String, nullable=True)
    lease_expires_at: Mapped[float | None] = mapped_column(Float, nullable=True)
    started_at: Mapped[float | None] = mapped_column(Float, nullable=True)
    finished_at: Mapped[float | None] = mapped_column(Float, nullable=True)
    created_at: Mapped[float] = mapped_column(Float, nullable=False)
    updated_at: Mapped[float] = mapped_column(Float, nullable=False)

    __table_args__ = (
        Index("idx_image_jobs_claim", "status", "priority", "scheduled_at"),
        Index("idx_image_jobs_storage_key", "storage_key"),
        Index("idx_image_jobs_image_id", "image_id"),
    )


class WorkerLease(Base):
    """Named advisory lease that lets only one burst runner drain the queue."""

    __tablename__ = "worker_leases"

    name: Mapped[str] = mapped_column(String, primary_key=True)
    owner: Mapped[str] = mapped_column(String, nullable=False)
    lease_until: Mapped[float] = mapped_column(Float, nullable=False)
    heartbeat_at: Mapped[float] = mapped_column(Float, nullable=False)


class Gym(Base):
    __tablename__ = "gyms"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    auto_approve_trusted_uploads: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    app_role: Mapped[str] = mapped_column(String, nullable=False, default="USER")


class GymManagementRole(Base):
    """Per-gym role grant (GYM_ADMIN, GYM_MODERATOR, ...)."""

    __tablename__ = "gym_management_roles"

    user_id: Mapped[str] = mapped_column(String, primary_key=True)
    gym_id: Mapped[str] = mapped_column(String, primary_key=True)
    role: Mapped[str] = mapped_column(String, nullable=False)


class GymEquipment(Base):
    """An equipment type installed at a gym."""

    __tablename__ = "gym_equipment"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    gym_id: Mapped[str] = mapped_column(String, nullable=False)
    equipment_id: Mapped[str] = mapped_column(String, nullable=False)

    __table_args__ = (UniqueConstraint("gym_id", "equipment_id", name="uq_gym_equipment"),)


class _SafetyColumns:
    """Safety and embedding columns shared by every image-bearing table."""

    embedding: Mapped[Any | None] = mapped_column(Vector(EMBEDDING_DIM), nullable=True)
    model_vendor: Mapped[str | None] = mapped_column(String, nullable=True)
    model_name: Mapped[str | None] = mapped_column(String, nullable=True)
    model_version: Mapped[str | None] = mapped_column(String, nullable=True)
    is_safe: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    nsfw_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    has_person: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    person_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    person_boxes: Mapped[list[Any] | None] = mapped_column(JSON, nullable=True)
    safety_reasons: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)


class GymImage(_SafetyColumns, Base):
    """Gym-scoped equipment image."""

    __tablename__ = "gym_images"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    gym_id: Mapped[str] = mapped_column(String, nullable=False)
    equipment_id: Mapped[str] = mapped_column(String, nullable=False)
    gym_equipment_id: Mapped[str | None] = mapped_column(String, nullable=True)
    storage_key: Mapped[str] = mapped_column(String, nullable=False)
    sha256: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default=STATUS_PENDING)
    uploaded_by_user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    width: Mapped[int | None] = mapped_column(Integer, nullable=True)
    height: Mapped[int | None] = mapped_column(Integer, nullable=True)
    mime_type: Mapped[str | None] = mapped_column(String, nullable=True)
    approved_by_user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    approved_at: Mapped[float | None] = mapped_column(Float, nullable=True)
    created_at: Mapped[float] = mapped_column(Float, nullable=False)
    updated_at: Mapped[float] = mapped_column(Float, nullable=False)

    __table_args__ = (
        Index("idx_gym_images_gym_sha", "gym_id", "sha256"),
        Index("idx_gym_images_storage_key", "storage_key"),
        Index("idx_gym_images_equipment_status", "equipment_id", "status"),
    )


class GlobalImage(_SafetyColumns, Base):
    """Image in the cross-gym canonical equipment catalog."""

    __tablename__ = "global_images"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    equipment_id: Mapped[str] = mapped_column(String, nullable=False)
    storage_key: Mapped[str] = mapped_column(String, nullable=False)
    sha256: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default=STATUS_APPROVED)
    source_gym_image_id: Mapped[str | None] = mapped_column(String, nullable=True)
    width: Mapped[int | None] = mapped_column(Integer, nullable=True)
    height: Mapped[int | None] = mapped_column(Integer, nullable=True)
    mime_type: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[float] = mapped_column(Float, nullable=False)
    updated_at: Mapped[float] = mapped_column(Float, nullable=False)

    __table_args__ = (
        Index("idx_global_images_equipment_sha", "equipment_id", "sha256"),
        Index("idx_global_images_storage_key", "storage_key"),
    )


class TrainingCandidate(_SafetyColumns, Base):
    """User-confirmed recognition photo waiting for moderation."""

    __tablename__ = "training_candidates"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    gym_id: Mapped[str] = mapped_column(String, nullable=False)
    gym_equipment_id: Mapped[str] = mapped_column(String, nullable=False)
    equipment_id: Mapped[str] = mapped_column(String, nullable=False)
    storage_key: Mapped[str] = mapped_column(String, nullable=False)
    sha256: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default=STATUS_PENDING)
    source: Mapped[str] = mapped_column(String, nullable=False, default="recognition_user")
    uploader_user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    recognition_attempt_id: Mapped[str | None] = mapped_column(String, nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    approved_image_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[float] = mapped_column(Float, nullable=False)
    updated_at: Mapped[float] = mapped_column(Float, nullable=False)

    __table_args__ = (Index("idx_training_candidates_storage_key", "storage_key"),)


class GlobalImageSuggestion(Base):
    """Proposal to promote a gym image into the global catalog."""

    __tablename__ = "global_image_suggestions"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    equipment_id: Mapped[str] = mapped_column(String, nullable=False)
    gym_image_id: Mapped[str] = mapped_column(String, nullable=False)
    storage_key: Mapped[str] = mapped_column(String, nullable=False)
    sha256: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    usefulness_score: Mapped[float] = mapped_column(Float, nullable=False)
    reason_codes: Mapped[list[str]] = mapped_column(JSON, nullable=False)
    near_dup_image_id: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default=STATUS_PENDING)
    approved_image_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[float] = mapped_column(Float, nullable=False)
    updated_at: Mapped[float] = mapped_column(Float, nullable=False)

    __table_args__ = (Index("idx_global_suggestions_status_score", "status", "usefulness_score"),)


class RecognitionAttempt(Base):
    """One recognize call; updated when the user confirms or discards."""

    __tablename__ = "recognition_attempts"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    gym_id: Mapped[str] = mapped_column(String, nullable=False)
    storage_key: Mapped[str] = mapped_column(String, nullable=False)
    vector_hash: Mapped[str] = mapped_column(String, nullable=False)
    best_equipment_id: Mapped[str | None] = mapped_column(String, nullable=True)
    best_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    decision: Mapped[str] = mapped_column(String, nullable=False)
    consent: Mapped[str] = mapped_column(String, nullable=False, default="unknown")
    candidates: Mapped[list[Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[float] = mapped_column(Float, nullable=False)
    updated_at: Mapped[float] = mapped_column(Float, nullable=False)


_ENGINE_CACHE: dict[str, Engine] = {}
_ENGINE_LOCK = Lock()


def _normalize_target(target: str | Path) -> str:
    if isinstance(target, Path):
        return f"sqlite:///{target.resolve()}"

    raw = str(target).strip()
    if not raw:
        raise ValueError("database target cannot be empty")

    if "://" not in raw:
        return f"sqlite:///{Path(raw).resolve()}"

    url = make_url(raw)
    if url.drivername.startswith("sqlite"):
        database = url.database or ""
        if database not in {":memory:", ""}:
            db_path = Path(database)
            if not db_path.is_absolute():
                db_path = (Path.cwd() / db_path).resolve()
            url = url.set(database=str(db_path))
        return url.render_as_string(hide_password=False)

    return raw


def _get_engine(target: str | Path) -> Engine:
    """Return a cached engine for the target, creating the schema on first use."""

    normalized = _normalize_target(target)
    engine = _ENGINE_CACHE.get(normalized)
    if engine is not None:
        return engine

    with _ENGINE_LOCK:
        engine = _ENGINE_CACHE.get(normalized)
        if engine is not None:
            return engine

        sa_url = make_url(normalized)
        is_sqlite = sa_url.drivername.startswith("sqlite")

        engine_kwargs: dict[str, object] = {}
        if is_sqlite:
            if sa_url.database and sa_url.database != ":memory:":
                Path(sa_url.database).parent.mkdir(parents=True, exist_ok=True)
            engine_kwargs["connect_args"] = {"timeout": 30.0, "check_same_thread": False}
        else:
            engine_kwargs["pool_pre_ping"] = True

        engine = create_engine(normalized, **engine_kwargs)

        if is_sqlite:

            @event.listens_for(engine, "connect")
            def _set_sqlite_pragma(dbapi_connection: Any, connection_record: Any) -> None:
                cursor = dbapi_connection.cursor()
                try:
                    cursor.execute("PRAGMA journal_mode=WAL")
                    cursor.execute("PRAGMA busy_timeout = 30000")
                finally:
                    cursor.close()

        if sa_url.drivername.startswith("postgresql"):
            with engine.begin() as conn:
                conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))

        try:
            Base.metadata.create_all(engine)
        except OperationalError as exc:
            # Concurrent cold starts can race between the existence check and CREATE TABLE.
            if "already exists" not in str(exc).lower():
                raise
            LOGGER.info("db_create_all_table_exists_race", extra={"error": str(exc)})

        _ENGINE_CACHE[normalized] = engine
        return engine


def open_primary_session(target: str | Path) -> Session:
    """Open a SQLAlchemy session for the primary database."""

    return Session(_get_engine(target), expire_on_commit=False)


def make_session_factory(target: str | Path) -> SessionFactory:
    """Return a zero-argument callable that opens sessions on ``target``."""

    return partial(open_primary_session, target)


def dialect_insert(session: Session, table: Any) -> Any:
    """Return a dialect-aware INSERT statement supporting ON CONFLICT."""

    bind = session.get_bind()
    if bind is None:
        raise RuntimeError("Session is not bound to an engine.")

    name = bind.dialect.name
    if name == "sqlite":
        return sqlite_insert(table)
    if name.startswith("postgresql"):
        return pg_insert(table)
    raise NotImplementedError(f"Unsupported dialect for upsert: {name}")


__all__ = [
    "Base",
    "EMBEDDING_DIM",
    "GlobalImage",
    "GlobalImageSuggestion",
    "Gym",
    "GymEquipment",
    "GymImage",
    "GymManagementRole",
    "ImageJob",
    "RecognitionAttempt",
    "STATUS_APPROVED",
    "STATUS_PENDING",
    "STATUS_QUARANTINED",
    "STATUS_REJECTED",
    "SessionFactory",
    "TrainingCandidate",
    "User",
    "WorkerLease",
    "dialect_insert",
    "make_session_factory",
    "open_primary_session",
]
