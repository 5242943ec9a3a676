"""Configuration loader and typed settings for the equipment vision pipeline."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any

import yaml

CLIP_MEAN: tuple[float, float, float] = (0.48145466, 0.4578275, 0.40821073)
CLIP_STD: tuple[float, float, float] = (0.26862954, 0.26130258, 0.27577711)

DEFAULT_EMBED_MODEL_URL = (
    "https://huggingface.co/immich-app/ViT-B-32__openai/resolve/main/visual/model.onnx"
)
DEFAULT_NSFW_MODEL_URL = "https://huggingface.co/onnx-community/open_nsfw/resolve/main/model.onnx"
DEFAULT_NSFW_CLASSES: list[str] = ["porn", "hentai", "soft", "sexy", "nsfw"]


@dataclass
class DatabaseConfig:
    """Primary relational store (postgres with pgvector in production, sqlite in tests)."""

    primary_url: str = "sqlite:///data/equipment_vision.db"


@dataclass
class BlobStoreConfig:
    """S3-compatible object store holding every image blob and model file."""

    endpoint: str = "localhost:9000"
    access_key: str = ""
    secret_key: str = ""
    bucket: str = "equipment-images"
    secure: bool = False


@dataclass
class QueueConfig:
    """Retry, lease, and burst-runner knobs for the job queue."""

    max_retries: int = 3
    backoff_base_seconds: float = 7.0
    backoff_max_seconds: float = 60.0
    # Twice the default burst runtime: a job older than this cannot belong to a live runner.
    stale_job_timeout_seconds: float = 600.0
    lease_name: str = "image-runner"
    lease_ttl_seconds: float = 30.0
    batch_size: int = 5
    idle_exit_seconds: float = 4.0
    max_runtime_seconds: float = 300.0
    poll_interval_seconds: float = 0.5


@dataclass
class ModelSourceConfig:
    """Where a model file lives locally and where to fetch it from when missing."""

    path: str = ""
    url: str | None = None
    object_key: str | None = None
    bucket: str | None = None
    sha256: str | None = None


@dataclass
class EmbeddingModelConfig:
    """Vision encoder used for EMBED jobs and recognition queries."""

    source: ModelSourceConfig = field(
        default_factory=lambda: ModelSourceConfig(path="models/openclip-vit-b32.onnx", url=DEFAULT_EMBED_MODEL_URL)
    )
    vendor: str = "local"
    name: str = "openclip-vit-b32"
    version: str = "1.0"
    dim: int = 512
    mean: list[float] = field(default_factory=lambda: list(CLIP_MEAN))
    std: list[float] = field(default_factory=lambda: list(CLIP_STD))
    layout: str = "auto"
    probe_sizes: list[int] = field(default_factory=lambda: [256, 224])


@dataclass
class NsfwModelConfig:
    """NSFW classifier preprocessing and output aggregation."""

    source: ModelSourceConfig = field(
        default_factory=lambda: ModelSourceConfig(path="models/nsfw.onnx", url=DEFAULT_NSFW_MODEL_URL)
    )
    preprocessing: str = "imagenet"
    color: str = "rgb"
    input_size: int = 224
    output_labels: list[str] = field(default_factory=list)
    nsfw_classes: list[str] = field(default_factory=lambda: list(DEFAULT_NSFW_CLASSES))


@dataclass
class PersonModelConfig:
    """Person detector thresholds; areas are fractions of the letterboxed frame."""

    enabled: bool = True
    source: ModelSourceConfig = field(default_factory=lambda: ModelSourceConfig(path="models/person.onnx"))
    input_size: int = 640
    confidence: float = 0.55
    objectness_min: float = 0.45
    area_min: float = 0.015
    area_max: float = 0.65
    aspect_min: float = 1.10
    aspect_max: float = 5.0
    # True when objectness and class scores are raw logits rather than probabilities.
    scores_are_logits: bool = False


@dataclass
class ModelsConfig:
    """Grouping of all ONNX model settings."""

    embedding: EmbeddingModelConfig = field(default_factory=EmbeddingModelConfig)
    nsfw: NsfwModelConfig = field(default_factory=NsfwModelConfig)
    person: PersonModelConfig = field(default_factory=PersonModelConfig)
    ort_log_level: int = 3
    download_timeout_seconds: float = 120.0


@dataclass
class SafetyConfig:
    block_threshold: float = 0.8


@dataclass
class SearchConfig:
    auto_min_score: float = 0.8
    default_limit: int = 10


@dataclass
class RecognitionConfig:
    accept_threshold: float = 0.85
    select_threshold: float = 0.6
    per_equipment: int = 3
    top_equipment: int = 5


@dataclass
class PromotionConfig:
    ample_global_count: int = 15
    near_dup_scan_limit: int = 200
    hi_res_bytes: int = 300 * 1024
    suggestion_list_limit: int = 50


@dataclass
class IntakeConfig:
    max_image_bytes: int = 10_000_000
    allowed_content_types: list[str] = field(default_factory=lambda: ["image/jpeg", "image/png", "image/webp"])


@dataclass
class Settings:
    """Top-level application settings."""

    databases: DatabaseConfig = field(default_factory=DatabaseConfig)
    blob_store: BlobStoreConfig = field(default_factory=BlobStoreConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    models: ModelsConfig = field(default_factory=ModelsConfig)
    safety: SafetyConfig = field(default_factory=SafetyConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    recognition: RecognitionConfig = field(default_factory=RecognitionConfig)
    promotion: PromotionConfig = field(default_factory=PromotionConfig)
    intake: IntakeConfig = field(default_factory=IntakeConfig)


def _as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    return {}


def _accepts(current: Any, value: Any) -> bool:
    """Return True when ``value`` may replace ``current`` without changing its type."""

    if isinstance(current, bool):
        return isinstance(value, bool)
    if isinstance(current, float):
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if isinstance(current, int):
        return isinstance(value, int) and not isinstance(value, bool)
    if isinstance(current, list):
        return isinstance(value, list)
    if current is None:
        return isinstance(value, str)
    return isinstance(value, type(current))


def _apply_section(target: Any, raw: dict[str, Any]) -> None:
    """Copy well-typed values from a YAML mapping onto a dataclass, recursively."""

    for item in fields(target):
        if item.name not in raw:
            continue
        current = getattr(target, item.name)
        value = raw[item.name]
        if is_dataclass(current):
            _apply_section(current, _as_dict(value))
        elif _accepts(current, value):
            setattr(target, item.name, float(value) if isinstance(current, float) else value)


def _env(name: str) -> str | None:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return None
    return value.strip()


def _apply_model_source_env(source: ModelSourceConfig, prefix: str) -> None:
    if (path := _env(f"{prefix}_MODEL_PATH")) is not None:
        source.path = path
    if (url := _env(f"{prefix}_MODEL_URL")) is not None:
        source.url = url
    if (key := _env(f"{prefix}_MODEL_KEY")) is not None:
        source.object_key = key
    if (bucket := _env(f"{prefix}_MODEL_BUCKET")) is not None:
        source.bucket = bucket
    if (sha := _env(f"{prefix}_MODEL_SHA256")) is not None:
        source.sha256 = sha.lower()


def _apply_env_overrides(settings: Settings) -> None:
    """Apply deployment overrides that usually arrive through the environment."""

    if (url := _env("DATABASE_URL")) is not None:
        settings.databases.primary_url = url

    blob = settings.blob_store
    if (endpoint := _env("BLOB_ENDPOINT")) is not None:
        blob.endpoint = endpoint
    if (access_key := _env("BLOB_ACCESS_KEY")) is not None:
        blob.access_key = access_key
    if (secret_key := _env("BLOB_SECRET_KEY")) is not None:
        blob.secret_key = secret_key
    if (bucket := _env("BLOB_BUCKET")) is not None:
        blob.bucket = bucket
    if (secure := _env("BLOB_SECURE")) is not None:
        blob.secure = secure.lower() in {"1", "true", "yes"}

    _apply_model_source_env(settings.models.embedding.source, "EMBED")
    _apply_model_source_env(settings.models.nsfw.source, "NSFW")
    _apply_model_source_env(settings.models.person.source, "PERSON")

    if (level := _env("ORT_LOG_LEVEL")) is not None:
        try:
            settings.models.ort_log_level = int(level)
        except ValueError:
            pass

    if (block := _env("NSFW_BLOCK")) is not None:
        try:
            settings.safety.block_threshold = float(block)
        except ValueError:
            pass


def _resolve_settings_path(settings_path: Path | None) -> Path:
    if settings_path is not None:
        return settings_path
    env_path = _env("EQUIPMENT_VISION_SETTINGS")
    if env_path is not None:
        return Path(env_path)
    return Path("config") / "settings.yaml"


def load_settings(settings_path: Path | None = None) -> Settings:
    """Load application settings from a YAML file, falling back to defaults.

    Missing or malformed files yield default settings. Environment overrides
    are applied last so deployments can inject secrets and model locations
    without editing the YAML file.
    """

    path = _resolve_settings_path(settings_path)
    settings = Settings()

    if path.exists() and path.is_file():
        with path.open("r", encoding="utf-8") as fp:
            try:
                raw = yaml.safe_load(fp) or {}
            except yaml.YAMLError:
                raw = {}
        if isinstance(raw, dict):
            _apply_section(settings, raw)

    _apply_env_overrides(settings)
    return settings


__all__ = [
    "BlobStoreConfig",
    "DatabaseConfig",
    "EmbeddingModelConfig",
    "IntakeConfig",
    "ModelSourceConfig",
    "ModelsConfig",
    "NsfwModelConfig",
    "PersonModelConfig",
    "PromotionConfig",
    "QueueConfig",
    "RecognitionConfig",
    "SafetyConfig",
    "SearchConfig",
    "Settings",
    "load_settings",
]
