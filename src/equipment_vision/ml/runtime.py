"""Lazily initialized, process-wide ONNX Runtime sessions.

Inference sessions are expensive to create and safe to share read-only, so
each model is wrapped in a :class:`LazySession` that loads on first use under
a lock (at most one concurrent load) and exposes explicit ``warmup``/``close``.
"""

from __future__ import annotations

from pathlib import Path
from threading import Lock
from typing import Any, Callable

import onnxruntime as ort

from equipment_vision.errors import ModelLoadError
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "ml_runtime"})


def resolve_ort_log_level(value: int | str | None, default: int = 3) -> int:
    """Clamp an ORT severity level to 0 (verbose) .. 4 (fatal)."""

    if value is None:
        return default
    try:
        level = int(value)
    except (TypeError, ValueError):
        return default
    return max(0, min(4, level))


def build_session_options(log_level: int) -> ort.SessionOptions:
    options = ort.SessionOptions()
    options.intra_op_num_threads = 1
    options.inter_op_num_threads = 1
    options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_BASIC
    options.enable_cpu_mem_arena = False
    options.log_severity_level = resolve_ort_log_level(log_level)
    return options


def create_inference_session(model_path: Path, log_level: int) -> ort.InferenceSession:
    """Create a CPU inference session for ``model_path``."""

    return ort.InferenceSession(
        str(model_path),
        sess_options=build_session_options(log_level),
        providers=["CPUExecutionProvider"],
    )


class LazySession:
    """Holds one inference session, created on first :meth:`get` call.

    ``loader`` must return a ready session (typically: ensure the model file
    exists, then call :func:`create_inference_session`). Failures are raised as
    :class:`ModelLoadError` and the next call retries the load.
    """

    def __init__(self, name: str, loader: Callable[[], Any]) -> None:
        self.name = name
        self._loader = loader
        self._session: Any | None = None
        self._lock = Lock()

    @property
    def loaded(self) -> bool:
        return self._session is not None

    def get(self) -> Any:
        session = self._session
        if session is not None:
            return session

        with self._lock:
            if self._session is not None:
                return self._session
            LOGGER.info("model_session_loading", extra={"model": self.name})
            try:
                self._session = self._loader()
            except ModelLoadError:
                raise
            except Exception as exc:
                LOGGER.error("model_session_load_failed", extra={"model": self.name, "error": str(exc)})
                raise ModelLoadError(f"Failed to load model {self.name}: {exc}") from exc
            LOGGER.info("model_session_ready", extra={"model": self.name})
            return self._session

    def warmup(self) -> None:
        self.get()

    def close(self) -> None:
        with self._lock:
            self._session = None


__all__ = ["LazySession", "build_session_options", "create_inference_session", "resolve_ort_log_level"]
