"""llama.cpp server backend.

Uses the native ``/completion`` endpoint, which streams ``data: {content,
stop}`` events. The server hosts a single model file, so model checks go
through ``/health``.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncGenerator

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

SSE_PREFIX = "data: "

_CAPABILITIES = BackendCapabilities(
    supports_fim=True,
    supports_streaming=True,
    supports_kv_cache=False,
    supports_model_download=False,
    max_context_tokens=8192,
    default_model="local-model",
)


class LlamaCppBackend(HTTPBackend):
    """Backend for ``llama-server``."""

    label = "llama.cpp"

    async def check_model(self, model_name: str) -> bool:
        # Whatever model the server was launched with is the one it serves.
        try:
            data = await self._get_json("/health")
        except BackendError as e:
            logger.info("Health check failed: %s", e)
            return False
        healthy = data.get("status") == "ok"
        logger.info("llama.cpp server healthy: %s", healthy)
        return healthy

    def stream_completion(self, request: CompletionRequest) -> AsyncGenerator[str, None]:
        fim = adapt_prompt(request.prefix, request.suffix, request.fill_format)
        payload = {
            "prompt": fim.prompt,
            "n_predict": request.max_tokens,
            "temperature": request.temperature,
            "stop": build_stop_sequences(request.fill_format, request.stop),
            "stream": True,
        }
        logger.debug("Streaming completion: format=%s", request.fill_format.value)
        return self._stream_tokens(
            "/completion", payload, request.cancel, request.timeout,
        )

    def stream_rewrite(self, request: RewriteRequest) -> AsyncGenerator[str, None]:
        payload = {
            "prompt": build_rewrite_prompt(
                request.selected_text, request.instruction, request.context,
                request.output_format,
            ),
            "n_predict": request.max_tokens,
            "temperature": request.temperature,
            "stream": True,
        }
        return self._stream_tokens(
            "/completion", payload, request.cancel, request.timeout, kind="rewrite",
        )

    def capabilities(self) -> BackendCapabilities:
        return _CAPABILITIES

    def _parse_line(self, line: str) -> tuple[str, bool] | None:
        if not line.startswith(SSE_PREFIX):
            return None
        try:
            event = json.loads(line[len(SSE_PREFIX):])
        except json.JSONDecodeError:
            logger.debug("Skipping malformed SSE line: %s", line[:200])
            return None
        if not isinstance(event, dict):
            logger.debug("Skipping unexpected SSE event: %s", line[:200])
            return None
        return event.get("content") or "", bool(event.get("stop", False))
