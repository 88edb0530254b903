"""Backend selection and endpoint-based auto-detection."""

from __future__ import annotations

import logging
from enum import Enum
from urllib.parse import urlsplit

import httpx

from infill.backends.base import HTTPBackend
from infill.backends.llamacpp import LlamaCppBackend
from infill.backends.ollama import OllamaBackend
from infill.backends.openai_compat import VLLMBackend

logger = logging.getLogger(__name__)


class BackendType(str, Enum):
    OLLAMA = "ollama"
    VLLM = "vllm"
    LLAMACPP = "llamacpp"


_BACKENDS: dict[BackendType, type[HTTPBackend]] = {
    BackendType.OLLAMA: OllamaBackend,
    BackendType.VLLM: VLLMBackend,
    BackendType.LLAMACPP: LlamaCppBackend,
}

_DEFAULT_PORTS = {
    11434: BackendType.OLLAMA,
    8000: BackendType.VLLM,
    8080: BackendType.LLAMACPP,
}


def create_backend(
    backend_type: BackendType | str,
    endpoint: str,
    bearer_token: str = "",
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> HTTPBackend:
    """Instantiate the backend for ``backend_type``."""
    try:
        kind = BackendType(backend_type)
    except ValueError:
        supported = ", ".join(t.value for t in BackendType)
        raise ValueError(
            f"Unknown backend type: {backend_type}. Supported types: {supported}"
        ) from None

    logger.info(
        "Creating %s backend: endpoint=%s, has_token=%s",
        kind.value, endpoint, bool(bearer_token),
    )
    return _BACKENDS[kind](endpoint, bearer_token, transport=transport)


def detect_backend_type(endpoint: str) -> BackendType:
    """Guess the protocol from the endpoint's port, then its path.

    Falls back to Ollama when nothing matches or the URL cannot be parsed.
    """
    try:
        url = urlsplit(endpoint)
        port = url.port
    except ValueError:
        return BackendType.OLLAMA

    if port in _DEFAULT_PORTS:
        return _DEFAULT_PORTS[port]

    path = url.path
    if path.startswith("/v1/"):
        return BackendType.VLLM
    if path.startswith("/api/"):
        return BackendType.OLLAMA
    if path in ("/completion", "/health"):
        return BackendType.LLAMACPP
    return BackendType.OLLAMA


def create_auto(
    endpoint: str,
    bearer_token: str = "",
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> HTTPBackend:
    backend_type = detect_backend_type(endpoint)
    logger.info("Auto-detected backend type %s for %s", backend_type.value, endpoint)
    return create_backend(backend_type, endpoint, bearer_token, transport=transport)


async def validate_backend(
    backend_type: BackendType | str,
    endpoint: str,
    bearer_token: str = "",
    model: str | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> bool:
    """Check that a backend can be built and, if ``model`` is given, serves it."""
    try:
        backend = create_backend(backend_type, endpoint, bearer_token, transport=transport)
    except ValueError as e:
        logger.warning("Backend validation failed: %s", e)
        return False

    try:
        if model:
            return await backend.check_model(model)
        return True
    finally:
        await backend.close()
