"""Tests for backend selection and endpoint detection."""

from __future__ import annotations

import httpx
import pytest

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


class TestDetectBackendType:
    @pytest.mark.parametrize("endpoint,expected", [
        ("http://localhost:11434", BackendType.OLLAMA),
        ("http://localhost:8000", BackendType.VLLM),
        ("http://localhost:8080", BackendType.LLAMACPP),
        ("https://gpu.example.com/v1/", BackendType.VLLM),
        ("https://gpu.example.com/api/generate", BackendType.OLLAMA),
        ("https://gpu.example.com/completion", BackendType.LLAMACPP),
        ("https://gpu.example.com/health", BackendType.LLAMACPP),
        ("https://gpu.example.com", BackendType.OLLAMA),
        ("http://localhost:8000/api/", BackendType.VLLM),
        ("http://host:notaport", BackendType.OLLAMA),
        ("", BackendType.OLLAMA),
    ])
    def test_detection(self, endpoint: str, expected: BackendType):
        assert detect_backend_type(endpoint) == expected


class TestCreateBackend:
    @pytest.mark.parametrize("kind,cls", [
        ("ollama", OllamaBackend),
        (BackendType.VLLM, VLLMBackend),
        ("llamacpp", LlamaCppBackend),
    ])
    def test_creates_each_type(self, kind, cls):
        backend = create_backend(kind, "http://localhost:9999/")
        assert isinstance(backend, cls)
        assert backend.endpoint == "http://localhost:9999"

    def test_unknown_type(self):
        with pytest.raises(ValueError, match="Unknown backend type: tgi"):
            create_backend("tgi", "http://localhost:9999")

    def test_create_auto(self):
        assert isinstance(create_auto("http://localhost:8080"), LlamaCppBackend)
        assert isinstance(create_auto("http://localhost:8000", "token"), VLLMBackend)


class TestValidateBackend:
    @staticmethod
    def _transport(body: bytes, status_code: int = 200) -> httpx.MockTransport:
        async def _handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(status_code=status_code, content=body, request=request)

        return httpx.MockTransport(_handler)

    async def test_without_model_only_constructs(self):
        assert await validate_backend("ollama", "http://localhost:11434")

    async def test_with_model(self):
        transport = self._transport(b'{"models": [{"name": "qwen2.5-coder:7b"}]}')
        assert await validate_backend(
            "ollama", "http://localhost:11434", model="qwen2.5-coder:7b", transport=transport,
        )
        assert not await validate_backend(
            "ollama", "http://localhost:11434", model="missing", transport=transport,
        )

    async def test_unknown_type_is_invalid(self):
        assert not await validate_backend("tgi", "http://localhost:9999")
