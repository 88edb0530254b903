"""Inference backends: one streaming interface over three wire protocols."""

from __future__ import annotations

from infill.backends.base import (
    BackendCapabilities,
    CompletionRequest,
    HTTPBackend,
    InferenceBackend,
    RewriteRequest,
)
from infill.backends.factory import (
    BackendType,
    create_auto,
    create_backend,
    detect_backend_type,
    validate_backend,
)
from infill.backends.llamacpp import LlamaCppBackend
from infill.backends.ollama import OllamaBackend
from infill.backends.openai_compat import VLLMBackend
from infill.backends.retry import RetryPolicy, is_network_retryable

__all__ = [
    "BackendCapabilities",
    "BackendType",
    "CompletionRequest",
    "HTTPBackend",
    "InferenceBackend",
    "LlamaCppBackend",
    "OllamaBackend",
    "RetryPolicy",
    "RewriteRequest",
    "VLLMBackend",
    "create_auto",
    "create_backend",
    "detect_backend_type",
    "is_network_retryable",
    "validate_backend",
]
