"""Ollama backend.

Speaks Ollama's native API: raw-mode ``/api/generate`` for fill-in-middle,
chat-templated ``/api/generate`` for rewrites, NDJSON responses throughout.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncGenerator, Callable

from infill.backends.base import (
    BackendCapabilities,
    CompletionRequest,
    HTTPBackend,
    RewriteRequest,
)
from infill.exceptions import BackendError
from infill.prompts.fim import adapt_prompt, build_stop_sequences
from infill.prompts.rewrite import build_rewrite_prompt

logger = logging.getLogger(__name__)

_CAPABILITIES = BackendCapabilities(
    supports_fim=True,
    supports_streaming=True,
    supports_kv_cache=False,
    supports_model_download=True,
    max_context_tokens=32768,
    default_model="qwen2.5-coder:7b",
)


class OllamaBackend(HTTPBackend):
    """Backend for a local or remote Ollama server."""

    label = "Ollama"

    async def check_model(self, model_name: str) -> bool:
        try:
            data = await self._get_json("/api/tags")
        except BackendError as e:
            logger.info("Model check failed: %s", e)
            return False

        models = data.get("models") or []
        exists = any(
            isinstance(m, dict) and m.get("name") == model_name for m in models
        )
        logger.info("Model %s exists: %s", model_name, exists)
        return exists

    async def download_model(
        self,
        model_name: str,
        on_progress: Callable[[float], None] | None = None,
    ) -> None:
        logger.info("Pulling model from Ollama: %s", model_name)
        async for line in self._post_lines("/api/pull", {"name": model_name}):
            if not line.strip():
                continue
            logger.debug("[pull] %s", line)
            if on_progress is None:
                continue
            try:
                data = json.loads(line)
            except json.JSONDecodeError:
                continue
            completed = data.get("completed")
            total = data.get("total")
            if completed and total:
                on_progress(completed / total)
        logger.info("Model pull completed: %s", model_name)

    def stream_completion(self, request: CompletionRequest) -> AsyncGenerator[str, None]:
        fim = adapt_prompt(request.prefix, request.suffix, request.fill_format)
        payload = {
            "model": request.model,
            "prompt": fim.prompt,
            "raw": True,
            "options": {
                "stop": build_stop_sequences(request.fill_format, request.stop),
                "num_predict": request.max_tokens,
                "temperature": request.temperature,
            },
        }
        logger.debug(
            "Streaming completion: model=%s, format=%s",
            request.model, request.fill_format.value,
        )
        return self._stream_tokens(
            "/api/generate", payload, request.cancel, request.timeout,
        )

    def stream_rewrite(self, request: RewriteRequest) -> AsyncGenerator[str, None]:
        payload = {
            "model": request.model,
            "prompt": build_rewrite_prompt(
                request.selected_text, request.instruction, request.context,
                request.output_format,
            ),
            "raw": False,
            "options": {
                "num_predict": request.max_tokens,
                "temperature": request.temperature,
            },
        }
        return self._stream_tokens(
            "/api/generate", payload, request.cancel, request.timeout, kind="rewrite",
        )

    def capabilities(self) -> BackendCapabilities:
        return _CAPABILITIES

    def _parse_line(self, line: str) -> tuple[str, bool] | None:
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("Skipping malformed Ollama line: %s", line[:200])
            return None
        if not isinstance(data, dict):
            logger.debug("Skipping unexpected Ollama line: %s", line[:200])
            return None
        return data.get("response") or "", bool(data.get("done", False))
