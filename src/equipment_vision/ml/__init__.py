"""Model-related helpers: ONNX sessions, embedding, and safety screening."""

from .embedding import EmbeddingModel, EmbeddingProvider, fp16_to_float32, l2_normalize_checked
from .runtime import LazySession
from .safety import SafetyProvider, SafetyResult

__all__ = [
    "EmbeddingModel",
    "EmbeddingProvider",
    "LazySession",
    "SafetyProvider",
    "SafetyResult",
    "fp16_to_float32",
    "l2_normalize_checked",
]
