from __future__ import annotations

import io
import time
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Callable, Dict, List

import numpy as np
import pytest
from PIL import Image

from equipment_vision.blob_store import BlobHead
from equipment_vision.config import QueueConfig
from equipment_vision.db import EMBEDDING_DIM, STATUS_APPROVED, GlobalImage, GymImage, SessionFactory, make_session_factory
from equipment_vision.errors import BlobNotFoundError
from equipment_vision.ml.runtime import LazySession
from equipment_vision.task_queue import JobQueueStore


class FakeBlobStore:
    """In-memory blob store keyed by storage key."""

    def __init__(self) -> None:
        self.objects: Dict[str, tuple[bytes, str]] = {}
        self.deleted: List[str] = []

    def put_object_bytes(self, key: str, data: bytes, content_type: str | None = None) -> None:
        self.objects[key] = (data, content_type or "application/octet-stream")

    def head_object(self, key: str) -> BlobHead:
        if key not in self.objects:
            raise BlobNotFoundError(key)
        data, content_type = self.objects[key]
        return BlobHead(content_type=content_type, content_length=len(data))

    def get_object_bytes(self, key: str) -> bytes:
        if key not in self.objects:
            raise BlobNotFoundError(key)
        return self.objects[key][0]

    def copy_object_if_missing(self, src: str, dst: str) -> bool:
        if src == dst or dst in self.objects:
            return False
        if src not in self.objects:
            raise BlobNotFoundError(src)
        self.objects[dst] = self.objects[src]
        return True

    def delete_object_ignore_missing(self, key: str) -> None:
        self.deleted.append(key)
        self.objects.pop(key, None)

    def download_file(self, key: str, dest: Path, bucket: str | None = None) -> None:
        Path(dest).write_bytes(self.get_object_bytes(key))


class FakeOrtSession:
    """Stand-in for an onnxruntime InferenceSession returning a fixed output."""

    def __init__(self, output: Any, shape: List[Any] | None = None, name: str = "input") -> None:
        self._output = output
        self._input = SimpleNamespace(name=name, shape=shape or [1, 3, 224, 224])
        self.feeds: List[Dict[str, np.ndarray]] = []

    def get_inputs(self) -> List[SimpleNamespace]:
        return [self._input]

    def run(self, _output_names: Any, feed: Dict[str, np.ndarray]) -> List[Any]:
        self.feeds.append(feed)
        output = self._output(feed) if callable(self._output) else self._output
        return [np.asarray(output)]


def png_bytes(color: tuple[int, int, int] = (200, 30, 30), size: tuple[int, int] = (32, 24)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


def unit_embedding(*head: float) -> List[float]:
    """Return a full-width embedding whose leading components are ``head``."""

    values = [0.0] * EMBEDDING_DIM
    for index, value in enumerate(head):
        values[index] = value
    return values


def lazy(session: Any, name: str = "fake") -> LazySession:
    return LazySession(name, lambda: session)


@pytest.fixture
def session_factory(tmp_path: Path) -> SessionFactory:
    return make_session_factory(tmp_path / "data" / "primary.db")


@pytest.fixture
def blob_store() -> FakeBlobStore:
    return FakeBlobStore()


@pytest.fixture
def queue_config() -> QueueConfig:
    return QueueConfig()


@pytest.fixture
def clock() -> Callable[[], float]:
    state = {"now": 1_000_000.0}

    def _now() -> float:
        return state["now"]

    _now.state = state  # type: ignore[attr-defined]
    return _now


@pytest.fixture
def queue(session_factory: SessionFactory, queue_config: QueueConfig, clock: Callable[[], float]) -> JobQueueStore:
    return JobQueueStore(session_factory, queue_config, clock=clock)


def advance(clock: Callable[[], float], seconds: float) -> None:
    clock.state["now"] += seconds  # type: ignore[attr-defined]


def add_rows(session_factory: SessionFactory, *rows: Any) -> None:
    with session_factory() as session:
        session.add_all(rows)
        session.commit()


def make_gym_image(image_id: str = "img-1", **overrides: Any) -> Any:
    """Approved, safe, embedded gym image row; override any column."""

    now = time.time()
    values: Dict[str, Any] = dict(
        id=image_id,
        gym_id="gym-1",
        equipment_id="eq-1",
        gym_equipment_id="ge-1",
        storage_key=f"private/gym/ge-1/approved/{image_id}.png",
        sha256=(image_id.encode().hex() + "0" * 64)[:64],
        status=STATUS_APPROVED,
        is_safe=True,
        nsfw_score=0.01,
        has_person=False,
        person_count=0,
        person_boxes=[],
        safety_reasons=[],
        embedding=unit_embedding(1.0),
        model_vendor="local",
        model_name="openclip-vit-b32",
        model_version="1.0",
        created_at=now,
        updated_at=now,
    )
    values.update(overrides)
    return GymImage(**values)


def make_global_image(image_id: str = "glob-1", **overrides: Any) -> Any:
    now = time.time()
    values: Dict[str, Any] = dict(
        id=image_id,
        equipment_id="eq-1",
        storage_key=f"private/global/equipment/eq-1/approved/{image_id}.jpg",
        sha256=(image_id.encode().hex() + "f" * 64)[:64],
        status=STATUS_APPROVED,
        is_safe=True,
        embedding=unit_embedding(0.0, 1.0),
        model_vendor="local",
        model_name="openclip-vit-b32",
        model_version="1.0",
        created_at=now,
        updated_at=now,
    )
    values.update(overrides)
    return GlobalImage(**values)


class KickRecorder:
    def __init__(self) -> None:
        self.calls: List[Any] = []

    def __call__(self, *args: Any) -> None:
        self.calls.append(args)
